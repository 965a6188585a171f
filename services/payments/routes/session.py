"""Post-payment auto-login."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from services.payments.dependencies import get_db_pool, get_pending_auth
from services.payments.pending_auth import ExchangeRefused

logger = logging.getLogger("payments.session")

router = APIRouter(prefix="/auth/session", tags=["auth"])


@router.get("/{session_id}")
async def exchange_session(
    session_id: str,
    pool=Depends(get_db_pool),
    pending_auth=Depends(get_pending_auth),
):
    """Exchange a checkout session id for the account's access and refresh tokens."""
    try:
        tokens = await pending_auth.exchange(session_id, pool)
    except ExchangeRefused as exc:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})
    except Exception:
        logger.exception("session_exchange_failed", extra={"session_id": session_id})
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    return {"success": True, "data": tokens.to_response()}
