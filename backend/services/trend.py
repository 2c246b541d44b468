"""Trend reconciliation across the three metric stores.

account_daily_snapshot, media_daily_aggregate and ig_daily_followers are
written by different jobs under different keys. Reads merge them into one
point per calendar day: the account snapshot wins per field, the media
aggregate fills what it lacks, and nothing is averaged or summed across
sources. Days without data stay in the series with null fields.
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional, Sequence

from pydantic import BaseModel, Field

from services.days import iter_days, today_utc, utc_now, window
from services.errors import SchemaMissingError
from services.identity import AccountIdentity
from services.metric_store import (
    FollowerRow,
    MediaAggregateRow,
    MetricStore,
    SnapshotRow,
)

logger = logging.getLogger(__name__)

ALLOWED_WINDOWS = (7, 14, 30, 60, 90, 365)
DEFAULT_WINDOW = 90

FOLLOWERS_QUERY_FAILED = "followers_query_failed"
FOLLOWERS_HINT = (
    "Follower history requires the ig_daily_followers table keyed by "
    "(account_id, day). Run the migrations, then the next sync will start filling it."
)


def snap_days(value: Optional[int]) -> int:
    """Snap a requested window to the nearest allowed size."""
    if value is None or value < 1:
        return DEFAULT_WINDOW
    if value in ALLOWED_WINDOWS:
        return value
    # Ties go to the larger window
    return min(ALLOWED_WINDOWS, key=lambda allowed: (abs(allowed - value), -allowed))


class TrendPoint(BaseModel):
    date: date
    reach: Optional[int] = None
    impressions: Optional[int] = None
    interactions: Optional[int] = None
    engaged_accounts: Optional[int] = None
    followers: Optional[int] = None


class KpiValue(BaseModel):
    last: Optional[int] = None
    delta: Optional[int] = None


class TrendKpi(BaseModel):
    reach: KpiValue = Field(default_factory=KpiValue)
    interactions: KpiValue = Field(default_factory=KpiValue)
    followers: KpiValue = Field(default_factory=KpiValue)


class TrendResult(BaseModel):
    ok: bool = True
    error: Optional[str] = None
    message: Optional[str] = None
    hint: Optional[str] = None
    partial: bool = False
    account_id: str
    days: int
    range_start: date
    range_end: date
    available_days: int = 0
    points: list[TrendPoint] = Field(default_factory=list)
    kpi: TrendKpi = Field(default_factory=TrendKpi)


def _first(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None:
            return value
    return None


def merge_points(
    start: date,
    end: date,
    snapshots: Sequence[SnapshotRow],
    aggregates: Sequence[MediaAggregateRow],
    followers: Sequence[FollowerRow],
) -> list[TrendPoint]:
    snapshot_by_day = {row.day: row for row in snapshots}
    aggregate_by_day = {row.day: row for row in aggregates}
    followers_by_day = {row.day: row.followers_count for row in followers}

    points = []
    for day in iter_days(start, end):
        snap = snapshot_by_day.get(day)
        agg = aggregate_by_day.get(day)
        points.append(
            TrendPoint(
                date=day,
                reach=_first(snap.reach if snap else None, agg.total_reach if agg else None),
                impressions=_first(
                    snap.impressions if snap else None, agg.total_impressions if agg else None
                ),
                interactions=_first(
                    snap.total_interactions if snap else None,
                    agg.total_interactions if agg else None,
                ),
                engaged_accounts=snap.accounts_engaged if snap else None,
                followers=followers_by_day.get(day),
            )
        )
    return points


def kpi_value(values: Sequence[Optional[int]]) -> KpiValue:
    """Latest non-null value and its change from the previous non-null one."""
    present = [v for v in values if v is not None]
    if not present:
        return KpiValue()
    delta = present[-1] - present[-2] if len(present) >= 2 else None
    return KpiValue(last=present[-1], delta=delta)


def build_kpi(points: Sequence[TrendPoint]) -> TrendKpi:
    return TrendKpi(
        reach=kpi_value([p.reach for p in points]),
        interactions=kpi_value([p.interactions for p in points]),
        followers=kpi_value([p.followers for p in points]),
    )


class TrendReconciler:
    def __init__(self, store: MetricStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def build(self, identity: AccountIdentity, days: Optional[int] = None) -> TrendResult:
        """Dense per-day series for `identity` over the snapped window.

        A missing follower table degrades the result instead of failing it;
        the other stores missing is raised as SchemaMissingError.
        """
        days = snap_days(days)
        start, end = window(days, today_utc(self.clock()))

        snapshots: list[SnapshotRow] = []
        if identity.ig_user_id is not None:
            snapshots = await self.store.read_account_snapshots(
                identity.ig_user_id, identity.page_id, start, end
            )
        aggregates = await self.store.read_media_aggregates(identity.canonical_id, start, end)

        followers_error: Optional[SchemaMissingError] = None
        try:
            followers = await self.store.read_follower_counts(
                identity.canonical_id, start, end, legacy_ig_user_id=identity.ig_user_id
            )
        except SchemaMissingError as e:
            logger.warning(f"Follower history unavailable for {identity.canonical_id}: {e}")
            followers = []
            followers_error = e

        points = merge_points(start, end, snapshots, aggregates, followers)
        result = TrendResult(
            account_id=identity.canonical_id,
            days=days,
            range_start=start,
            range_end=end,
            available_days=max(
                len({r.day for r in snapshots} | {r.day for r in aggregates}),
                len(followers),
            ),
            points=points,
            kpi=build_kpi(points),
        )
        if followers_error is not None:
            result.ok = False
            result.partial = True
            result.error = FOLLOWERS_QUERY_FAILED
            result.message = followers_error.message
            result.hint = FOLLOWERS_HINT
        return result
