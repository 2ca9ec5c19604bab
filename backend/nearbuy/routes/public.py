# /nearbuy/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from nearbuy.config.settings import settings
from nearbuy.models.domain import utcnow
from nearbuy.utils.dependencies import verify_metrics_access

# Health probes, the root endpoint and the Prometheus scrape endpoint. The
# /metrics endpoint is protected by an API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "NearBuy WhatsApp Pipeline",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    """Readiness probe checking the store and, when used, Redis."""
    services = await request.app.state.services.health()
    if any(state != "connected" for state in services.values()):
        raise HTTPException(status_code=503, detail={"status": "not_ready", "services": services})
    return {"status": "ready", "services": services}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
