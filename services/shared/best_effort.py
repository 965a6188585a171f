"""Fire-and-forget wrapper for side calls that must never fail the caller."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from services.shared.logging import log_exception
from services.shared.metrics import notification_failures_total

logger = logging.getLogger("payments.best_effort")


async def best_effort(label: str, thunk: Callable[[], Awaitable[Any]], **context) -> bool:
    """
    Await thunk() and swallow any exception it raises.

    Failures are logged at WARNING with the label and context and counted
    in payments_notification_failures_total. Returns True on success.
    Cancellation still propagates.
    """
    try:
        await thunk()
    except Exception as exc:
        notification_failures_total.labels(label=label).inc()
        log_exception(
            logger,
            "best_effort_call_failed",
            exc,
            {"label": label, **context},
            level=logging.WARNING,
        )
        return False
    return True
