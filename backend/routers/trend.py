"""Trend router - reconciled daily series with ETag support."""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from middleware.auth import SessionUser, get_session_user
from middleware.rate_limit import limiter
from routers.deps import failure_payload, get_trend_cache, to_wire
from services.errors import AccountNotFoundError, PersistenceError, truncate_message
from services.freshness import CacheBackend, FreshnessLayer, etag_matches, trend_cache_key
from services.identity import AccountIdentityResolver
from services.metric_store import MetricStore
from services.trend import TrendReconciler, snap_days

router = APIRouter(tags=["trend"])
logger = logging.getLogger(__name__)


def _parse_days(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


@router.get("/trend")
@limiter.limit("60/minute")
async def get_trend(
    request: Request,  # Required for rate limiting - must be named 'request'
    user: Annotated[SessionUser, Depends(get_session_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[CacheBackend, Depends(get_trend_cache)],
    days: Optional[str] = None,
    x_ig_account_id: Annotated[Optional[str], Header()] = None,
    if_none_match: Annotated[Optional[str], Header()] = None,
):
    """Daily reach, impressions, interactions and followers with KPI deltas.

    `days` snaps to 7/14/30/60/90/365. Send the returned ETag back as
    If-None-Match to get a 304 while nothing changed.
    """
    try:
        identity = await AccountIdentityResolver(db).resolve_for_user(
            user.user_id, x_ig_account_id
        )
    except AccountNotFoundError as e:
        return failure_payload(e)

    window = snap_days(_parse_days(days))

    async def compute() -> dict:
        result = await TrendReconciler(MetricStore(db)).build(identity, window)
        return to_wire(result)

    freshness = FreshnessLayer(cache)
    try:
        payload, etag = await freshness.get_or_compute(
            trend_cache_key(identity.canonical_id, window),
            compute,
            cacheable=lambda p: bool(p.get("ok")),
        )
    except PersistenceError as e:
        logger.error(f"Trend read failed for {identity.canonical_id}: {e}")
        return {"ok": False, "error": "service_error", "message": truncate_message(e.message)}

    headers = {"ETag": etag, "Cache-Control": "private, no-cache"}
    if etag_matches(if_none_match, etag):
        return Response(status_code=304, headers=headers)
    return JSONResponse(content=payload, headers=headers)
