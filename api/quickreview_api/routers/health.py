"""Health-check endpoint.

Always returns HTTP 200 so load-balancers see the service as alive; the
``db`` and ``counter_store`` fields report downstream reachability.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from quickreview_api import __version__
from quickreview_api.dependencies import CounterStoreDep, SessionDep

logger = logging.getLogger(__name__)

# Short timeout so probes respond quickly when Redis is unreachable.
_COUNTER_STORE_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, counter_store: CounterStoreDep) -> dict[str, Any]:
    """Return service health with dependency checks."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "counter_store": "ok",
    }

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"

    try:
        reachable = await asyncio.wait_for(counter_store.ping(), timeout=_COUNTER_STORE_TIMEOUT)
    except TimeoutError:
        reachable = False
    if not reachable:
        result["counter_store"] = "unavailable"

    return result
