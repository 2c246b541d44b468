"""Media sync - recent posts, per-post insights and daily media aggregates.

For each credentialed account:
1. Exchange the stored user token for a page token (captures followers too)
2. List media back to the lookback cutoff, capped at `max_items`
3. Fetch insights per item, one metric at a time
4. Upsert every fetched item into media_raw, null metrics included
5. Recompute media_daily_aggregate for each touched completed day from
   all stored rows for that day, not just the ones fetched this run

Accounts are processed one after another. Failures are contained to the
smallest unit that can fail: a metric, an item, a day, an account. Only a
missing table aborts the whole run.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from config import get_settings
from services.days import today_utc, utc_now
from services.errors import (
    MissingCredentialError,
    PersistenceError,
    SchemaMissingError,
    UpstreamAuthExpired,
    UpstreamError,
    UpstreamRateLimited,
)
from services.follower_snapshot import FollowerSnapshotJob
from services.graph_client import (
    GraphClient,
    MediaItem,
    MetricFailure,
    ResilientInsights,
    polite_pause,
)
from services.identity import AccountIdentity
from services.metric_store import (
    CredentialRow,
    MediaAggregateRow,
    MediaRow,
    MetricStore,
)

logger = logging.getLogger(__name__)
settings = get_settings()

# Failures that end insight fetches for the rest of an account
HALTING_CODES = {UpstreamAuthExpired.code, UpstreamRateLimited.code}


class FetchPolicy(BaseModel):
    """Pacing for Graph calls within one account."""
    per_item_delay_seconds: float = 0.0
    request_timeout_seconds: float = 20.0
    max_concurrency: int = 1
    max_items: int = 300

    @classmethod
    def from_settings(cls) -> "FetchPolicy":
        return cls(
            per_item_delay_seconds=settings.per_item_delay_seconds,
            request_timeout_seconds=settings.graph_timeout_seconds,
            max_concurrency=max(1, settings.insights_max_concurrency),
            max_items=settings.media_sync_max_items,
        )


class InsightFailure(BaseModel):
    media_id: str
    status: Optional[int] = None
    message: str = ""


class MediaSyncSummary(BaseModel):
    media_fetched: int = 0
    media_upserted: int = 0
    days_recomputed: int = 0
    rows_aggregated: int = 0

    def add(self, other: "MediaSyncSummary") -> None:
        self.media_fetched += other.media_fetched
        self.media_upserted += other.media_upserted
        self.days_recomputed += other.days_recomputed
        self.rows_aggregated += other.rows_aggregated


class MediaSyncDiagnostics(BaseModel):
    paging_pages: int = 0
    per_item_insight_failures: int = 0
    first_error: Optional[InsightFailure] = None

    def add(self, other: "MediaSyncDiagnostics") -> None:
        self.paging_pages += other.paging_pages
        self.per_item_insight_failures += other.per_item_insight_failures
        if self.first_error is None:
            self.first_error = other.first_error


class AccountSyncResult(BaseModel):
    account_id: str
    ok: bool = True
    error: Optional[str] = None
    message: Optional[str] = None
    summary: MediaSyncSummary = Field(default_factory=MediaSyncSummary)
    diagnostics: MediaSyncDiagnostics = Field(default_factory=MediaSyncDiagnostics)
    days: list[date] = Field(default_factory=list)
    failed_days: list[date] = Field(default_factory=list)

    def fail(self, code: str, message: str) -> "AccountSyncResult":
        self.ok = False
        self.error = code
        self.message = message
        return self


class MediaSyncReport(BaseModel):
    ok: bool = True
    error: Optional[str] = None
    lookback_days: int
    summary: MediaSyncSummary = Field(default_factory=MediaSyncSummary)
    diagnostics: MediaSyncDiagnostics = Field(default_factory=MediaSyncDiagnostics)
    accounts: list[AccountSyncResult] = Field(default_factory=list)


def clamp_lookback(lookback_days: Optional[int]) -> int:
    """Default when unset or non-positive, capped at the configured maximum."""
    if lookback_days is None or lookback_days < 1:
        return settings.media_sync_default_lookback_days
    return min(lookback_days, settings.media_sync_max_lookback_days)


def aggregate_day(account_id: str, day: date, rows: list[MediaRow]) -> MediaAggregateRow:
    """Totals over every stored post for one day.

    Reach and impressions stay null unless at least one post reported them,
    so "no data" is distinguishable from zero.
    """
    likes = sum(r.like_count for r in rows)
    comments = sum(r.comments_count for r in rows)
    saves = sum(r.saves or 0 for r in rows)
    shares = sum(r.shares or 0 for r in rows)
    reach = [r.reach for r in rows if r.reach is not None]
    impressions = [r.impressions for r in rows if r.impressions is not None]
    return MediaAggregateRow(
        account_id=account_id,
        day=day,
        media_count=len(rows),
        total_likes=likes,
        total_comments=comments,
        total_saves=saves,
        total_shares=shares,
        total_interactions=likes + comments + saves + shares,
        total_reach=sum(reach) if reach else None,
        total_impressions=sum(impressions) if impressions else None,
    )


def build_media_row(account_id: str, item: MediaItem, insights: ResilientInsights) -> MediaRow:
    metrics = insights.metrics
    return MediaRow(
        account_id=account_id,
        media_id=item.id,
        media_type=item.media_type,
        permalink=item.permalink,
        caption=item.caption,
        published_at=item.published_at,
        published_day=item.day,
        like_count=item.like_count,
        comments_count=item.comments_count,
        reach=metrics.get("reach"),
        impressions=metrics.get("impressions"),
        saves=metrics.get("saved"),
        shares=metrics.get("shares"),
        plays=metrics.get("plays"),
        raw_payload=item.raw,
    )


class MediaSyncJob:
    def __init__(
        self,
        store: MetricStore,
        graph: GraphClient,
        followers: Optional[FollowerSnapshotJob] = None,
        policy: Optional[FetchPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.graph = graph
        self.followers = followers
        self.policy = policy or FetchPolicy.from_settings()
        self.clock = clock

    async def run(
        self,
        account_id: Optional[str] = None,
        lookback_days: Optional[int] = None,
    ) -> MediaSyncReport:
        """Sync one account, or every credentialed account when none is given."""
        lookback = clamp_lookback(lookback_days)
        report = MediaSyncReport(lookback_days=lookback)

        if account_id:
            credential = await self.store.get_credential(account_id)
            if credential is None:
                result = AccountSyncResult(account_id=account_id).fail(
                    MissingCredentialError.code, "no stored credential for account"
                )
                report.accounts.append(result)
                report.ok = False
                report.error = result.error
                return report
            credentials = [credential]
        else:
            credentials = await self.store.list_credentials()

        logger.info(f"Media sync starting for {len(credentials)} account(s), lookback {lookback}d")
        for credential in credentials:
            result = await self.sync_account(credential, lookback)
            report.accounts.append(result)
            report.summary.add(result.summary)
            report.diagnostics.add(result.diagnostics)
            if not result.ok and report.ok:
                report.ok = False
                report.error = result.error

        logger.info(
            f"Media sync finished: {report.summary.media_upserted} media upserted, "
            f"{report.summary.days_recomputed} day(s) recomputed"
        )
        return report

    async def sync_account(self, credential: CredentialRow, lookback_days: int) -> AccountSyncResult:
        result = AccountSyncResult(account_id=credential.account_id)
        now = self.clock()

        if not credential.ig_user_id or not credential.page_id or not credential.access_token:
            return result.fail(MissingCredentialError.code, "credential is missing Graph identifiers")
        if credential.is_expired(now):
            return result.fail(MissingCredentialError.code, "stored token has expired")

        identity = AccountIdentity(
            canonical_id=credential.account_id,
            user_id=credential.user_id,
            ig_user_id=credential.ig_user_id,
            page_id=credential.page_id,
        )

        graph = self.graph.with_timeout(self.policy.request_timeout_seconds)
        try:
            page = await graph.exchange_token(credential.access_token, credential.page_id)
        except UpstreamError as e:
            logger.warning(f"Token exchange failed for account {credential.account_id}: {e.code}")
            return result.fail(e.code, e.message)

        await self._capture_followers(identity, page.followers_count)

        today = today_utc(now)
        cutoff = today - timedelta(days=lookback_days)
        try:
            listing = await graph.list_media(
                credential.ig_user_id, page.token, cutoff, self.policy.max_items
            )
        except UpstreamError as e:
            logger.warning(f"Media listing failed for account {credential.account_id}: {e.code}")
            return result.fail(e.code, e.message)

        result.summary.media_fetched = len(listing.items)
        result.diagnostics.paging_pages = listing.page_count

        insights = await self._fetch_insights(graph, listing.items, page.token)
        rows: list[MediaRow] = []
        for item, item_insights in zip(listing.items, insights):
            if item_insights.failed:
                result.diagnostics.per_item_insight_failures += 1
                if result.diagnostics.first_error is None:
                    failure = item_insights.errors[0]
                    result.diagnostics.first_error = InsightFailure(
                        media_id=item.id, status=failure.status, message=failure.message
                    )
            rows.append(build_media_row(credential.account_id, item, item_insights))

        try:
            result.summary.media_upserted = await self.store.upsert_media_records(rows)
        except SchemaMissingError:
            raise
        except PersistenceError as e:
            logger.error(f"media_raw upsert failed for account {credential.account_id}: {e}")
            return result.fail(e.code, e.message)

        touched = sorted({item.day for item in listing.items if item.day and cutoff <= item.day < today})
        for day in touched:
            try:
                day_rows = await self.store.list_media_for_day(credential.account_id, day)
                await self.store.upsert_media_aggregate(
                    aggregate_day(credential.account_id, day, day_rows)
                )
            except SchemaMissingError:
                raise
            except PersistenceError as e:
                logger.warning(
                    f"Skipping aggregate for account {credential.account_id} on {day}: {e}"
                )
                result.failed_days.append(day)
                continue
            result.days.append(day)
            result.summary.days_recomputed += 1
            result.summary.rows_aggregated += len(day_rows)

        logger.info(
            f"Account {credential.account_id}: {result.summary.media_fetched} fetched, "
            f"{result.diagnostics.per_item_insight_failures} insight failure(s), "
            f"{result.summary.days_recomputed} day(s) recomputed"
        )
        return result

    async def _capture_followers(self, identity: AccountIdentity, followers_count: Optional[int]) -> None:
        if self.followers is None:
            return
        try:
            await self.followers.capture(identity, followers_count)
        except PersistenceError as e:
            # Follower history is optional; media sync still proceeds
            logger.warning(f"Follower capture failed for account {identity.canonical_id}: {e}")

    async def _fetch_insights(
        self, graph: GraphClient, items: list[MediaItem], token: str
    ) -> list[ResilientInsights]:
        """Insights per item, in listing order.

        Once an item hits an expired token or throttling, no further calls
        are made for this account; the remaining items carry that failure
        and are stored with null metrics.
        """
        halted: Optional[MetricFailure] = None

        def halting_failure(insights: ResilientInsights) -> Optional[MetricFailure]:
            return next((f for f in insights.errors if f.code in HALTING_CODES), None)

        def skipped() -> ResilientInsights:
            return ResilientInsights(errors=[halted.model_copy()])

        if self.policy.max_concurrency <= 1:
            results = []
            for index, item in enumerate(items):
                if halted is not None:
                    results.append(skipped())
                    continue
                if index:
                    await polite_pause(self.policy.per_item_delay_seconds)
                insights = await graph.fetch_resilient_insights(item.id, item.is_video_like, token)
                halted = halting_failure(insights)
                results.append(insights)
            if halted is not None:
                logger.warning(f"Stopped insight fetches after {halted.code}")
            return results

        semaphore = asyncio.Semaphore(self.policy.max_concurrency)

        async def fetch(item: MediaItem) -> ResilientInsights:
            nonlocal halted
            async with semaphore:
                if halted is not None:
                    return skipped()
                insights = await graph.fetch_resilient_insights(item.id, item.is_video_like, token)
                if halted is None:
                    halted = halting_failure(insights)
                await polite_pause(self.policy.per_item_delay_seconds)
                return insights

        tasks = [asyncio.create_task(fetch(item)) for item in items]
        try:
            results = list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        if halted is not None:
            logger.warning(f"Stopped insight fetches after {halted.code}")
        return results
