"""FastAPI dependencies resolving the components built at startup."""
from __future__ import annotations

from fastapi import Request


async def get_db_pool(request: Request):
    return request.app.state.pool


async def get_dedup(request: Request):
    return request.app.state.dedup


async def get_event_router(request: Request):
    return request.app.state.event_router


async def get_pending_auth(request: Request):
    return request.app.state.pending_auth


async def get_webhook_secret(request: Request) -> str:
    return request.app.state.settings.stripe_webhook_secret
