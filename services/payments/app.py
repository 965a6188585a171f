"""
Payment service entry point.

    uvicorn services.payments.app:app --port 4007

Startup builds every component once and hangs it on app.state; routes
resolve them through services.payments.dependencies.
"""
import logging

import uvicorn
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from services.payments.db.pool import create_pool
from services.payments.dedup import EventDeduplicator
from services.payments.middleware.trace import TraceMiddleware
from services.payments.pending_auth import PendingAuthExchange
from services.payments.phoenix import PhoenixWorkflow
from services.payments.routes.session import router as session_router
from services.payments.routes.system import router as system_router
from services.payments.routes.webhook import router as webhook_router
from services.payments.services import stripe_service
from services.payments.services.notifications import NotificationGateway
from services.payments.services.provisioner import ProjectProvisioner
from services.payments.services.tokens import TokenIssuer
from services.payments.settings import SERVICE_NAME, load_settings
from services.payments.webhook_handlers import EventRouter
from services.shared.config import csv_env
from services.shared.kv_store import build_kv_store
from services.shared.logging import configure_logging

logger = logging.getLogger("payments.app")

CORS_ORIGINS = csv_env("CORS_ORIGIN", "*")

app = FastAPI(title=SERVICE_NAME)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(TraceMiddleware)
app.include_router(webhook_router)
app.include_router(session_router)
app.include_router(system_router)


@app.on_event("startup")
async def startup():
    configure_logging("payment-service")
    settings = load_settings()
    stripe_service.configure(settings.stripe_secret_key)

    pool = await create_pool(settings.database_url)

    dedup = EventDeduplicator(
        build_kv_store(
            settings.kv_backend,
            name="dedup",
            redis_url=settings.redis_url,
            max_entries=settings.dedup_max_entries,
            sweep_interval=settings.dedup_sweep_interval,
        ),
        ttl_seconds=settings.dedup_ttl_seconds,
        max_entries=settings.dedup_max_entries,
    )
    token_issuer = TokenIssuer(
        settings.jwt_secret,
        settings.jwt_refresh_secret,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_days=settings.refresh_token_ttl_days,
    )
    pending_auth = PendingAuthExchange(
        build_kv_store(
            settings.kv_backend,
            name="pending_auth",
            redis_url=settings.redis_url,
            sweep_interval=settings.pending_auth_sweep_interval,
        ),
        token_issuer,
        ttl_seconds=settings.pending_auth_ttl_seconds,
        grace_seconds=settings.pending_auth_grace_seconds,
    )
    notifications = NotificationGateway(settings.notification_service_url, settings.internal_secret)
    workflow = PhoenixWorkflow(
        pool,
        provisioner=ProjectProvisioner(settings.project_service_url, settings.internal_secret),
        notifications=notifications,
        pending_auth=pending_auth,
        token_issuer=token_issuer,
        storage_base_bytes=settings.storage_base_bytes,
    )

    await dedup.start()
    await pending_auth.start()

    app.state.settings = settings
    app.state.pool = pool
    app.state.dedup = dedup
    app.state.pending_auth = pending_auth
    app.state.event_router = EventRouter(
        pool, workflow, notifications, storage_base_bytes=settings.storage_base_bytes
    )
    logger.info(
        "payment_service_started",
        extra={
            "kv_backend": settings.kv_backend,
            "project_service_url": settings.project_service_url,
            "notification_service_url": settings.notification_service_url,
        },
    )


@app.on_event("shutdown")
async def shutdown():
    if hasattr(app.state, "dedup"):
        await app.state.dedup.stop()
    if hasattr(app.state, "pending_auth"):
        await app.state.pending_auth.stop()
    if hasattr(app.state, "pool"):
        await app.state.pool.close()
    logger.info("payment_service_stopped")


def main() -> None:
    uvicorn.run(app, host="0.0.0.0", port=load_settings().port, log_config=None)


if __name__ == "__main__":
    main()
