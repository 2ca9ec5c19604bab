# /nearbuy/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import FastAPI

from nearbuy.config.settings import Settings, settings
from nearbuy.jobs.base import JobHandler, JobRunner
from nearbuy.jobs.send_batch_notification import SendBatchNotification
from nearbuy.jobs.send_whatsapp_message import SendWhatsAppMessage
from nearbuy.services.db_service import DatabaseService
from nearbuy.services.dispatch_gateway import FlowRouter, WebhookDispatcher
from nearbuy.services.memory_store import InMemoryStore
from nearbuy.services.notification_service import NotificationBatcher, NotificationService
from nearbuy.services.outbound import OutboundSender, QuietHoursPolicy
from nearbuy.services.whatsapp_service import WhatsAppService
from nearbuy.utils.alerting import alerting_service
from nearbuy.utils.circuit_breaker import CircuitBreaker, RedisCircuitBreaker
from nearbuy.utils.locks import InMemoryLeaseStore, RedisLeaseStore
from nearbuy.utils.logging import setup_logging
from nearbuy.utils.queue import InMemoryPriorityQueue, RedisPriorityQueue
from nearbuy.utils.rate_limiter import InMemoryRateBudget, RedisRateBudget

# This file wires the pipeline together and manages the application's
# lifespan: building services on startup and closing clients on shutdown.

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Everything the HTTP app, the worker and the scheduler share."""

    def __init__(self, settings_obj: Settings, router: Optional[FlowRouter] = None,
                 redis_client: Any = None, whatsapp: Optional[WhatsAppService] = None):
        self.settings = settings_obj
        self.redis = redis_client
        prefix = settings_obj.queue.key_prefix

        if settings_obj.queue_backend == "redis":
            self.redis = self.redis or redis.Redis(
                connection_pool=redis.ConnectionPool.from_url(settings_obj.redis_url, max_connections=20)
            )
            self.leases = RedisLeaseStore(self.redis, prefix=prefix)
            self.queue = RedisPriorityQueue(self.redis, self.leases, prefix=prefix,
                                            unique_for=settings_obj.queue.unique_for_seconds)
            self.rate_budget = RedisRateBudget(self.redis, prefix=prefix)
            breaker = RedisCircuitBreaker(self.redis, "whatsapp")
        else:
            self.leases = InMemoryLeaseStore()
            self.queue = InMemoryPriorityQueue(self.leases, unique_for=settings_obj.queue.unique_for_seconds)
            self.rate_budget = InMemoryRateBudget()
            breaker = CircuitBreaker("whatsapp")

        if settings_obj.store_backend == "mongo":
            self.store = DatabaseService(settings_obj.mongo_uri, settings_obj.max_pool_size,
                                         settings_obj.min_pool_size, tls=settings_obj.mongo_ssl)
        else:
            self.store = InMemoryStore()

        self.whatsapp = whatsapp or WhatsAppService(
            settings_obj.whatsapp_access_token,
            settings_obj.whatsapp_phone_id,
            breaker,
            api_version=settings_obj.whatsapp_api_version,
            timeout=settings_obj.whatsapp_api_timeout,
        )
        self.sender = OutboundSender(self.whatsapp, self.rate_budget,
                                     QuietHoursPolicy(settings_obj.quiet_hours), settings_obj.rate_limits)

        unique_for = settings_obj.queue.unique_for_seconds
        self.message_handler = SendWhatsAppMessage(self.store, self.sender, settings_obj.retry, unique_for)
        self.batch_handler = SendBatchNotification(self.store, self.sender, settings_obj.retry, unique_for)
        self.handlers: Dict[str, JobHandler] = {
            self.message_handler.kind: self.message_handler,
            self.batch_handler.kind: self.batch_handler,
        }

        self.notifications = NotificationService(self.queue, self.message_handler)
        self.batcher = NotificationBatcher(self.store, self.queue, self.batch_handler,
                                           settings_obj.batching, settings_obj.quiet_hours.tz)
        self.dispatcher = WebhookDispatcher(
            self.leases, self.store, router=router,
            expected_object=settings_obj.whatsapp_expected_object,
            dedup_seconds=settings_obj.inbound_dedup_seconds,
        )

    def job_runner(self) -> JobRunner:
        return JobRunner(self.queue, self.handlers,
                         claim_lease_seconds=self.settings.queue.claim_lease_seconds,
                         alerting=alerting_service)

    async def health(self) -> Dict[str, str]:
        services = {"database": "connected" if await self.store.health_check() else "error"}
        if self.redis is not None:
            try:
                await self.redis.ping()
                services["cache"] = "connected"
            except redis.RedisError:
                services["cache"] = "error"
        return services

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.whatsapp.close()
        client = getattr(self.store, "client", None)
        if client:
            client.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_services(settings_obj: Settings = settings, router: Optional[FlowRouter] = None) -> ServiceContainer:
    return ServiceContainer(settings_obj, router=router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    services = getattr(app.state, "services", None) or build_services(settings)
    app.state.services = services
    await services.store.create_indexes()

    pool = None
    if settings.run_workers_in_app:
        # Imported here; the worker module imports this one for its own startup.
        from nearbuy.workers.notification_worker import WorkerPool
        pool = WorkerPool(services.job_runner(), settings.queue.workers, settings.queue.poll_interval_seconds)
        await pool.start()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    if pool:
        await pool.stop()
    await services.close()
    await alerting_service.cleanup()
