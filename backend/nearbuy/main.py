# /nearbuy/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request

from nearbuy.config.settings import settings
from nearbuy.utils.lifecycle import lifespan
from nearbuy.utils.metrics import response_time_histogram
from nearbuy.routes import webhooks, public

app = FastAPI(
    title="NearBuy WhatsApp Pipeline",
    version="1.0.0",
    description="Webhook intake and prioritized notification delivery for NearBuy",
    lifespan=lifespan,
    openapi_url="/openapi.json" if settings.environment != "production" else None,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url=None,
)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix="/webhook")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "nearbuy.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
        workers=settings.workers if settings.environment == "production" else 1
    )
