"""Sync router - cron-triggered ingestion jobs."""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db
from middleware.auth import verify_cron_caller
from routers.deps import (
    failure_payload,
    get_graph_client,
    schema_missing_response,
    to_wire,
)
from services.account_insights import AccountInsightsJob
from services.days import utc_now
from services.errors import PipelineError, SchemaMissingError
from services.follower_snapshot import FollowerSnapshotJob
from services.graph_client import GraphClient
from services.media_sync import MediaSyncJob
from services.metric_store import MetricStore

router = APIRouter(prefix="/sync", tags=["sync"])
settings = get_settings()
logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MediaSyncRequest(CamelModel):
    """Both fields optional: no account means every credentialed account."""
    account_id: Optional[str] = None
    lookback_days: Optional[int] = None


class BackfillRequest(CamelModel):
    account_id: str
    days: Optional[int] = None


@router.post("/media")
async def sync_media(
    caller: Annotated[str, Depends(verify_cron_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[GraphClient, Depends(get_graph_client)],
    body: Optional[MediaSyncRequest] = None,
):
    """Pull recent media and insights, then recompute daily media aggregates."""
    body = body or MediaSyncRequest()
    logger.info(f"Media sync triggered via {caller}")

    store = MetricStore(db)
    job = MediaSyncJob(store, graph, followers=FollowerSnapshotJob(store))
    try:
        report = await job.run(account_id=body.account_id, lookback_days=body.lookback_days)
    except SchemaMissingError as e:
        return schema_missing_response(e)
    return to_wire(report)


@router.post("/account-insights")
async def sync_account_insights(
    caller: Annotated[str, Depends(verify_cron_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[GraphClient, Depends(get_graph_client)],
    debug: Annotated[bool, Query()] = False,
):
    """Write the most recent completed day of account insights per account."""
    logger.info(f"Account insights triggered via {caller}")

    store = MetricStore(db)
    job = AccountInsightsJob(store, graph, followers=FollowerSnapshotJob(store))
    try:
        report = await job.run(debug=debug or settings.debug)
    except SchemaMissingError as e:
        return schema_missing_response(e)
    return to_wire(report)


@router.post("/account-insights/backfill")
async def backfill_account_insights(
    body: BackfillRequest,
    caller: Annotated[str, Depends(verify_cron_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[GraphClient, Depends(get_graph_client)],
):
    """Fill completed days missing from the account snapshot store."""
    store = MetricStore(db)
    job = AccountInsightsJob(store, graph)
    try:
        report = await job.backfill(body.account_id, days=body.days)
    except SchemaMissingError as e:
        return schema_missing_response(e)
    except PipelineError as e:
        logger.warning(f"Backfill for {body.account_id} failed: {e.code}")
        return failure_payload(e)
    return to_wire(report)


@router.get("/diag")
async def sync_diagnostics(
    caller: Annotated[str, Depends(verify_cron_caller)],
):
    """Cron wiring as this instance sees it; never includes secrets."""
    return {
        "ok": True,
        "authorizedVia": caller,
        "cronSecretConfigured": bool(settings.cron_secret),
        "trustMarkerHeader": settings.trust_cron_marker_header,
        "markerHeader": settings.cron_marker_header,
        "cacheBackend": settings.trend_cache_backend,
        "graphApiVersion": settings.graph_api_version,
        "serverTimeUtc": utc_now().isoformat(),
    }
