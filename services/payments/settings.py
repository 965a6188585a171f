"""Environment-driven configuration for the payment service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from services.shared.config import int_env, optional_env, require_env

logger = logging.getLogger("payments.settings")

SERVICE_NAME = "capturit-payment-service"
DEV_INTERNAL_SECRET = "dev-internal-secret"
GIB = 1024 ** 3


@dataclass(frozen=True)
class PaymentSettings:
    stripe_secret_key: str
    stripe_webhook_secret: str
    database_url: str
    jwt_secret: str
    jwt_refresh_secret: str
    project_service_url: str = "http://project-service:4003"
    notification_service_url: str = "http://notification-service:4008"
    internal_secret: str = DEV_INTERNAL_SECRET
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_days: int = 7
    dedup_ttl_seconds: int = 86400
    dedup_max_entries: int = 10000
    dedup_sweep_interval: int = 3600
    pending_auth_ttl_seconds: int = 600
    pending_auth_grace_seconds: int = 120
    pending_auth_sweep_interval: int = 300
    kv_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    storage_base_gb: int = 5
    port: int = 4007

    @property
    def storage_base_bytes(self) -> int:
        return self.storage_base_gb * GIB


def _database_url() -> str:
    url = optional_env("DATABASE_URL").strip()
    if url:
        return url
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    db = os.getenv("PG_DB", "capturit")
    user = os.getenv("PG_USER", "capturit")
    password = os.getenv("PG_PASS", "")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def load_settings() -> PaymentSettings:
    """Read settings from the environment. Raises RuntimeError on missing secrets."""
    internal_secret = optional_env("INTERNAL_SECRET", DEV_INTERNAL_SECRET)
    if internal_secret == DEV_INTERNAL_SECRET:
        logger.warning("INTERNAL_SECRET not set, using development placeholder")

    return PaymentSettings(
        stripe_secret_key=require_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=require_env("STRIPE_WEBHOOK_SECRET"),
        database_url=_database_url(),
        jwt_secret=require_env("JWT_SECRET"),
        jwt_refresh_secret=require_env("JWT_REFRESH_SECRET"),
        project_service_url=optional_env("PROJECT_SERVICE_URL", "http://project-service:4003").rstrip("/"),
        notification_service_url=optional_env(
            "NOTIFICATION_SERVICE_URL", "http://notification-service:4008"
        ).rstrip("/"),
        internal_secret=internal_secret,
        access_token_ttl_seconds=int_env("ACCESS_TOKEN_TTL_SECONDS", 900),
        refresh_token_ttl_days=int_env("REFRESH_TOKEN_TTL_DAYS", 7),
        dedup_ttl_seconds=int_env("DEDUP_TTL_SECONDS", 86400),
        dedup_max_entries=int_env("DEDUP_MAX_ENTRIES", 10000),
        dedup_sweep_interval=int_env("DEDUP_SWEEP_INTERVAL", 3600),
        pending_auth_ttl_seconds=int_env("PENDING_AUTH_TTL_SECONDS", 600),
        pending_auth_grace_seconds=int_env("PENDING_AUTH_GRACE_SECONDS", 120),
        pending_auth_sweep_interval=int_env("PENDING_AUTH_SWEEP_INTERVAL", 300),
        kv_backend=optional_env("KV_BACKEND", "memory"),
        redis_url=optional_env("REDIS_URL", "redis://localhost:6379/0"),
        storage_base_gb=int_env("STORAGE_BASE_GB", 5),
        port=int_env("PORT", 4007),
    )
