"""
FastAPI application for crmsync
Webhook receipt, health probes and admin endpoints. Also the composition
root: every pipeline component is built here and injected into the next.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .amocrm.client import AccountRateLimiter, AmoCRMClient
from .cache.config_cache import ConfigCache
from .cache.dedup import DeduplicationStore
from .cache.redis_cache import RedisCache
from .config import Settings, get_settings
from .database.init_db import DatabaseManager
from .database.store import SqlConfigurationStore
from .exceptions import QueueFullError
from .lptracker.client import LPTrackerClient
from .models import WebhookSource
from .tasks.queue import AMOCRM_WEBHOOK_TOPIC, JobQueue, build_job_queue
from .utils.helpers import safe_json_loads
from .utils.log_sink import LogSink
from .utils.monitoring import MonitoringManager
from .utils.security import SecurityManager
from .webhooks.dispatcher import ActionDispatcher, AdapterPool
from .webhooks.enricher import EventEnricher
from .webhooks.processor import WebhookProcessor


def configure_logging(settings: Settings) -> None:
    """Setup structured logging"""
    logging.basicConfig(format="%(message)s", level=settings.log_level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger("crmsync.main")


@dataclass
class Services:
    """Wired pipeline components"""
    database: DatabaseManager
    cache: RedisCache
    store: SqlConfigurationStore
    config_cache: ConfigCache
    dedup: DeduplicationStore
    log_sink: LogSink
    queue: JobQueue
    read_api: AmoCRMClient
    dispatcher: ActionDispatcher
    processor: WebhookProcessor
    monitoring: MonitoringManager

    async def start(self) -> None:
        await self.database.init_database()
        await self.log_sink.start()
        self.processor.register_workers()
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()
        await self.log_sink.stop()
        await self.dispatcher.close()
        await self.read_api.close()
        await self.cache.close()
        await self.database.close()


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()

    database = DatabaseManager(settings.database_url)
    cache = RedisCache(namespace=settings.cache_namespace)
    store = SqlConfigurationStore(database, SecurityManager(settings.encryption_key))
    config_cache = ConfigCache(cache, store)
    dedup = DeduplicationStore(cache, settings.dedup_ttl_seconds)

    # изменения конфигурации сбрасывают кеш пользователя
    store.add_change_listener(config_cache.invalidate)

    log_sink = LogSink(
        persist=store.persist_log_event if settings.log_sink_persist else None,
        max_queue_size=settings.log_sink_queue_size
    )
    queue = build_job_queue(settings)

    amocrm_limiter = AccountRateLimiter(settings.amocrm_rate_limit)
    lptracker_limiter = AccountRateLimiter(settings.lptracker_rate_limit)

    read_api = AmoCRMClient(config_cache, rate_limiter=amocrm_limiter)
    dispatcher = ActionDispatcher(
        amocrm_pool=AdapterPool(
            "amocrm",
            lambda: AmoCRMClient(config_cache, rate_limiter=amocrm_limiter),
            settings.adapter_pool_size
        ),
        lptracker_pool=AdapterPool(
            "lptracker",
            lambda: LPTrackerClient(config_cache, rate_limiter=lptracker_limiter),
            settings.adapter_pool_size
        ),
        log_sink=log_sink,
    )
    monitoring = MonitoringManager(database, cache, queue, AMOCRM_WEBHOOK_TOPIC)

    processor = WebhookProcessor(
        queue=queue,
        store=store,
        config_cache=config_cache,
        dedup=dedup,
        enricher=EventEnricher(read_api, log_sink),
        dispatcher=dispatcher,
        log_sink=log_sink,
        monitoring=monitoring,
    )

    return Services(
        database=database,
        cache=cache,
        store=store,
        config_cache=config_cache,
        dedup=dedup,
        log_sink=log_sink,
        queue=queue,
        read_api=read_api,
        dispatcher=dispatcher,
        processor=processor,
        monitoring=monitoring,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    settings = get_settings()
    logger.info("Starting crmsync", version="1.0.0", environment=settings.environment)

    services = getattr(app.state, "services", None)
    if services is None:
        services = app.state.services = build_services(settings)

    try:
        await services.start()
        logger.info("Application startup completed")
        yield
    finally:
        logger.info("Shutting down application")
        await services.stop()
        logger.info("Application shutdown completed")


async def read_webhook_body(request: Request) -> Dict[str, Any]:
    """AmoCRM posts form fields, LPTracker posts JSON"""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        return {key: value for key, value in form.items()}

    body = await request.body()
    data = safe_json_loads(body.decode("utf-8"), default=None)
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook body")
    return data


def create_app(services: Optional[Services] = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="crmsync",
        description="AmoCRM / LPTracker webhook automation",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None
    )
    if services is not None:
        app.state.services = services

    def get_services(request: Request) -> Services:
        return request.app.state.services

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests"""
        start_time = datetime.utcnow()
        request_id = f"{int(start_time.timestamp())}-{id(request)}"

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            url=str(request.url),
            client_ip=request.client.host if request.client else None
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                duration_seconds=round((datetime.utcnow() - start_time).total_seconds(), 3)
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=round((datetime.utcnow() - start_time).total_seconds(), 3)
        )
        return response

    # Error handlers
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.status_code,
                    "message": exc.detail,
                    "timestamp": datetime.utcnow().isoformat()
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": 500,
                    "message": "Internal server error",
                    "timestamp": datetime.utcnow().isoformat()
                }
            }
        )

    # Webhooks
    async def accept_webhook(request: Request, source: WebhookSource) -> Dict[str, Any]:
        payload = await read_webhook_body(request)
        try:
            job_id = await get_services(request).processor.submit(source, payload)
        except QueueFullError:
            raise HTTPException(status_code=503, detail="Webhook queue is full")
        except Exception as e:
            logger.error("Webhook enqueue failed", source=source.value, error=str(e))
            raise HTTPException(status_code=503, detail="Webhook queue unavailable")

        return {"status": "accepted", "job_id": job_id, "timestamp": datetime.utcnow().isoformat()}

    @app.post("/webhooks/amocrm")
    async def amocrm_webhook(request: Request):
        """Handle AmoCRM lead webhooks"""
        return await accept_webhook(request, WebhookSource.AMOCRM)

    @app.post("/webhooks/lptracker")
    async def lptracker_webhook(request: Request):
        """Handle LPTracker lead webhooks"""
        return await accept_webhook(request, WebhookSource.LPTRACKER)

    # Health probes
    @app.get("/health")
    async def health_check(request: Request):
        """Comprehensive health check"""
        health_status = await get_services(request).monitoring.health_check()
        status_code = 503 if health_status["status"] == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=health_status)

    @app.get("/ready")
    async def readiness(request: Request):
        result = await get_services(request).monitoring.readiness()
        return JSONResponse(status_code=200 if result["status"] == "ready" else 503, content=result)

    @app.get("/live")
    async def liveness(request: Request):
        return get_services(request).monitoring.liveness()

    # Admin
    @app.get("/admin/queue-stats")
    async def queue_stats(request: Request):
        return get_services(request).processor.get_queue_stats()

    @app.get("/admin/metrics")
    async def performance_metrics(request: Request):
        return await get_services(request).processor.get_performance_metrics()

    @app.post("/admin/cache/invalidate/{user_id}")
    async def invalidate_user_cache(user_id: str, request: Request):
        removed = await get_services(request).processor.invalidate_user_cache(user_id)
        return {"status": "ok", "user_id": user_id, "removed": removed}

    @app.post("/admin/cache/clear")
    async def clear_caches(request: Request):
        removed = await get_services(request).processor.clear_all_caches()
        return {"status": "ok", "removed": removed}

    @app.post("/admin/cache/preload/{user_id}")
    async def preload_user(user_id: str, request: Request):
        await get_services(request).processor.preload_critical_data(user_id)
        return {"status": "ok", "user_id": user_id}

    @app.get("/admin/jobs/{topic}/failed")
    async def failed_jobs(topic: str, request: Request):
        try:
            jobs = get_services(request).queue.get_failed_jobs(topic)
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown topic")
        return [
            {
                "id": job.id,
                "attempts": job.attempts_made,
                "reason": job.failed_reason,
                "finished_at": job.finished_at,
                "data": job.data,
            }
            for job in jobs
        ]

    @app.post("/admin/jobs/{topic}/{job_id}/retry")
    async def retry_job(topic: str, job_id: str, request: Request):
        try:
            requeued = await get_services(request).queue.retry_failed_job(topic, job_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown topic")
        if not requeued:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"status": "requeued", "job_id": job_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "crmsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
        access_log=True
    )
