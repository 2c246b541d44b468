"""Account-level daily insights.

Graph reports account insights per day, but the value for the current UTC
day keeps changing until the day is over. Only completed days are stored,
and the daily run writes just the most recent completed one. Gaps are
filled with `backfill`.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from config import get_settings
from models.account_snapshot import AccountDailySnapshot
from services.days import iter_days, today_utc, utc_now
from services.errors import (
    MissingCredentialError,
    PersistenceError,
    SchemaMissingError,
    UpstreamError,
)
from services.follower_snapshot import FollowerSnapshotJob
from services.graph_client import GraphClient, SeriesValue
from services.identity import AccountIdentity
from services.metric_store import CredentialRow, MetricStore, SnapshotRow

logger = logging.getLogger(__name__)
settings = get_settings()

SOURCE_DAILY = "daily_insights"
SOURCE_BACKFILL = "backfill_graph"


class ReadbackDiagnostics(BaseModel):
    rows_len: int = 0
    first_day: Optional[date] = None
    last_day: Optional[date] = None
    error: Optional[str] = None


class AccountInsightsResult(BaseModel):
    account_id: str
    ok: bool = True
    day: Optional[date] = None
    skipped_reason: Optional[str] = None
    values: dict[str, Optional[int]] = Field(default_factory=dict)
    readback: Optional[ReadbackDiagnostics] = None

    def skip(self, reason: str) -> "AccountInsightsResult":
        self.ok = False
        self.skipped_reason = reason
        return self


class AccountInsightsReport(BaseModel):
    ok: bool = True
    day: date
    upserted: int = 0
    skipped: int = 0
    total: int = 0
    accounts: list[AccountInsightsResult] = Field(default_factory=list)


class BackfillReport(BaseModel):
    ok: bool = True
    account_id: str
    requested: int = 0
    inserted: int = 0
    skipped_no_data: int = 0
    missing: list[date] = Field(default_factory=list)
    failed_days: list[date] = Field(default_factory=list)


def bucket_by_day(series: dict[str, list[SeriesValue]]) -> dict[date, dict[str, int]]:
    """Group series values by the day prefix of their end timestamp."""
    buckets: dict[date, dict[str, int]] = {}
    for metric, values in series.items():
        for point in values:
            if point.day is None:
                continue
            buckets.setdefault(point.day, {})[metric] = point.value
    return buckets


def completed_days(buckets: dict[date, dict[str, int]], today: date) -> dict[date, dict[str, int]]:
    return {day: values for day, values in buckets.items() if day < today}


def snapshot_row(
    credential: CredentialRow, day: date, values: dict[str, int], source: str
) -> SnapshotRow:
    return SnapshotRow(
        ig_user_id=credential.ig_user_id,
        page_id=credential.page_id,
        day=day,
        account_id=credential.account_id,
        reach=values.get("reach"),
        impressions=values.get("impressions"),
        total_interactions=values.get("total_interactions"),
        accounts_engaged=values.get("accounts_engaged"),
        source_used=source,
    )


class AccountInsightsJob:
    def __init__(
        self,
        store: MetricStore,
        graph: GraphClient,
        followers: Optional[FollowerSnapshotJob] = None,
        clock: Callable[[], datetime] = utc_now,
        trailing_days: Optional[int] = None,
    ):
        self.store = store
        self.graph = graph
        self.followers = followers
        self.clock = clock
        self.trailing_days = trailing_days or settings.insights_trailing_days

    async def run(self, debug: bool = False) -> AccountInsightsReport:
        """Write the latest completed day for every credentialed account."""
        await self.store.ensure_tables(AccountDailySnapshot)

        today = today_utc(self.clock())
        credentials = await self.store.list_credentials()
        report = AccountInsightsReport(day=today - timedelta(days=1), total=len(credentials))
        logger.info(f"Account insights starting for {len(credentials)} account(s)")

        for credential in credentials:
            result = await self.sync_account(credential, today, debug=debug)
            report.accounts.append(result)
            if result.ok:
                report.upserted += 1
            else:
                report.skipped += 1

        logger.info(
            f"Account insights finished: {report.upserted} upserted, {report.skipped} skipped"
        )
        return report

    async def sync_account(
        self, credential: CredentialRow, today: date, debug: bool = False
    ) -> AccountInsightsResult:
        result = AccountInsightsResult(account_id=credential.account_id)
        if not credential.ig_user_id or not credential.page_id or not credential.access_token:
            return result.skip("missing_identifiers")

        try:
            page = await self.graph.exchange_token(credential.access_token, credential.page_id)
        except UpstreamError as e:
            logger.warning(f"Token exchange failed for account {credential.account_id}: {e.code}")
            return result.skip(e.code)

        await self._capture_followers(credential, page.followers_count)

        since = today - timedelta(days=self.trailing_days)
        try:
            series = await self.graph.fetch_account_series(
                credential.ig_user_id, page.token, since, today + timedelta(days=1)
            )
        except UpstreamError as e:
            logger.warning(f"Insights fetch failed for account {credential.account_id}: {e.code}")
            return result.skip(e.code)

        completed = completed_days(bucket_by_day(series), today)
        if not completed:
            return result.skip("no_completed_day")

        latest = max(completed)
        try:
            await self.store.upsert_account_snapshot(
                snapshot_row(credential, latest, completed[latest], SOURCE_DAILY)
            )
        except SchemaMissingError:
            raise
        except PersistenceError as e:
            logger.error(f"Snapshot upsert failed for account {credential.account_id}: {e}")
            return result.skip(e.code)

        result.day = latest
        result.values = dict(completed[latest])
        if debug:
            result.readback = await self._read_back(credential, today)
        return result

    async def _read_back(self, credential: CredentialRow, today: date) -> ReadbackDiagnostics:
        start = today - timedelta(days=settings.insights_readback_days)
        try:
            rows = await self.store.read_account_snapshots(
                credential.ig_user_id, credential.page_id, start, today
            )
        except PersistenceError as e:
            diagnostics = ReadbackDiagnostics(error=e.message)
        else:
            diagnostics = ReadbackDiagnostics(
                rows_len=len(rows),
                first_day=rows[0].day if rows else None,
                last_day=rows[-1].day if rows else None,
            )
        logger.info(
            f"Snapshot read-back for {credential.ig_user_id}/{credential.page_id}: "
            f"rows_len={diagnostics.rows_len} first_day={diagnostics.first_day} "
            f"last_day={diagnostics.last_day}"
        )
        return diagnostics

    async def _capture_followers(self, credential: CredentialRow, followers_count: Optional[int]) -> None:
        if self.followers is None:
            return
        identity = AccountIdentity(
            canonical_id=credential.account_id,
            user_id=credential.user_id,
            ig_user_id=credential.ig_user_id,
            page_id=credential.page_id,
        )
        try:
            await self.followers.capture(identity, followers_count)
        except PersistenceError as e:
            logger.warning(f"Follower capture failed for account {credential.account_id}: {e}")

    async def backfill(self, account_id: str, days: Optional[int] = None) -> BackfillReport:
        """Fill completed days in the last `days` that have no snapshot row.

        Days Graph returns nothing for are counted, not written.
        """
        if days is None or days < 1:
            days = settings.insights_backfill_default_days
        days = min(days, settings.insights_backfill_max_days)

        await self.store.ensure_tables(AccountDailySnapshot)
        credential = await self.store.get_credential(account_id)
        if credential is None or not credential.ig_user_id or not credential.page_id:
            raise MissingCredentialError(f"no usable credential for account {account_id}")

        today = today_utc(self.clock())
        start, end = today - timedelta(days=days), today - timedelta(days=1)
        existing = {
            row.day
            for row in await self.store.read_account_snapshots(
                credential.ig_user_id, credential.page_id, start, end
            )
        }
        missing = [day for day in iter_days(start, end) if day not in existing]
        report = BackfillReport(account_id=account_id, requested=len(missing), missing=missing)
        if not missing:
            return report

        page = await self.graph.exchange_token(credential.access_token, credential.page_id)
        series = await self.graph.fetch_account_series(
            credential.ig_user_id, page.token, missing[0], missing[-1] + timedelta(days=1)
        )
        buckets = completed_days(bucket_by_day(series), today)

        for day in missing:
            values = buckets.get(day)
            if not values:
                report.skipped_no_data += 1
                continue
            try:
                await self.store.upsert_account_snapshot(
                    snapshot_row(credential, day, values, SOURCE_BACKFILL)
                )
            except SchemaMissingError:
                raise
            except PersistenceError as e:
                logger.warning(f"Backfill upsert failed for account {account_id} on {day}: {e}")
                report.failed_days.append(day)
                continue
            report.inserted += 1

        if report.failed_days:
            report.ok = False

        logger.info(
            f"Backfill for account {account_id}: {report.inserted} inserted, "
            f"{report.skipped_no_data} without data, {len(report.failed_days)} failed"
        )
        return report
