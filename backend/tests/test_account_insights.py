"""Tests for the account insights job and backfill."""

from datetime import date, timedelta

import pytest

from conftest import StubGraph, TODAY, add_account, fixed_clock
from services.account_insights import (
    SOURCE_BACKFILL,
    SOURCE_DAILY,
    AccountInsightsJob,
    bucket_by_day,
    completed_days,
)
from services.errors import (
    MissingCredentialError,
    PersistenceError,
    SchemaMissingError,
    UpstreamAuthExpired,
)
from services.follower_snapshot import FollowerSnapshotJob
from services.graph_client import SeriesValue
from services.metric_store import MetricStore, SnapshotRow

YESTERDAY = TODAY - timedelta(days=1)


def series_for(days: list[date], reach: int = 100) -> dict[str, list[SeriesValue]]:
    """Reach and engaged-account values for each day, stamped like Graph does."""
    return {
        "reach": [SeriesValue(end_time=f"{d.isoformat()}T07:00:00+0000", value=reach + i) for i, d in enumerate(days)],
        "accounts_engaged": [SeriesValue(end_time=f"{d.isoformat()}T07:00:00+0000", value=10) for d in days],
    }


def make_job(session, graph) -> AccountInsightsJob:
    return AccountInsightsJob(MetricStore(session), graph, clock=fixed_clock, trailing_days=4)


class TestBucketing:
    def test_groups_by_end_time_day_and_drops_today(self) -> None:
        buckets = bucket_by_day(series_for([YESTERDAY, TODAY]))

        assert set(buckets) == {YESTERDAY, TODAY}
        assert buckets[YESTERDAY] == {"reach": 100, "accounts_engaged": 10}
        assert set(completed_days(buckets, TODAY)) == {YESTERDAY}


class TestAccountInsightsRun:
    @pytest.mark.asyncio
    async def test_writes_latest_completed_day_only(self, session) -> None:
        await add_account(session)
        days = [TODAY - timedelta(days=n) for n in range(4, -1, -1)]
        graph = StubGraph(series=series_for(days))

        report = await make_job(session, graph).run()

        assert report.ok
        assert report.day == YESTERDAY
        assert report.upserted == 1
        assert report.total == 1
        assert report.accounts[0].day == YESTERDAY
        assert graph.series_calls == [(TODAY - timedelta(days=4), TODAY + timedelta(days=1))]

        rows = await MetricStore(session).read_account_snapshots(1784, 555, TODAY - timedelta(days=10), TODAY)
        assert [r.day for r in rows] == [YESTERDAY]
        assert rows[0].reach == 103
        assert rows[0].accounts_engaged == 10
        assert rows[0].source_used == SOURCE_DAILY

    @pytest.mark.asyncio
    async def test_only_current_day_in_series_writes_nothing(self, session) -> None:
        await add_account(session)
        graph = StubGraph(series=series_for([TODAY]))

        report = await make_job(session, graph).run()

        assert report.upserted == 0
        assert report.skipped == 1
        assert report.accounts[0].skipped_reason == "no_completed_day"
        rows = await MetricStore(session).read_account_snapshots(1784, 555, TODAY - timedelta(days=10), TODAY)
        assert rows == []

    @pytest.mark.asyncio
    async def test_exchange_failure_skips_account(self, session) -> None:
        await add_account(session)
        graph = StubGraph(exchange_error=UpstreamAuthExpired("token expired", status=401, graph_code=190))

        report = await make_job(session, graph).run()

        assert report.skipped == 1
        assert report.accounts[0].skipped_reason == "upstream_auth_expired"
        assert graph.series_calls == []

    @pytest.mark.asyncio
    async def test_missing_identifiers_skip_account(self, session) -> None:
        await add_account(session, account_id="acct-1")
        await add_account(session, account_id="acct-2", ig_user_id=None, page_id=None)
        graph = StubGraph(series=series_for([YESTERDAY]))

        report = await make_job(session, graph).run()

        assert report.total == 2
        assert report.upserted == 1
        skipped = next(a for a in report.accounts if a.account_id == "acct-2")
        assert skipped.skipped_reason == "missing_identifiers"

    @pytest.mark.asyncio
    async def test_missing_snapshot_table_aborts(self, session_without_snapshots) -> None:
        await add_account(session_without_snapshots)

        with pytest.raises(SchemaMissingError) as exc:
            await make_job(session_without_snapshots, StubGraph()).run()
        assert exc.value.table == "account_daily_snapshot"

    @pytest.mark.asyncio
    async def test_debug_reads_back_recent_rows(self, session) -> None:
        await add_account(session)
        graph = StubGraph(series=series_for([TODAY - timedelta(days=2), YESTERDAY]))

        report = await make_job(session, graph).run(debug=True)

        readback = report.accounts[0].readback
        assert readback.rows_len == 1
        assert readback.first_day == YESTERDAY
        assert readback.last_day == YESTERDAY

    @pytest.mark.asyncio
    async def test_captures_followers_when_configured(self, session) -> None:
        await add_account(session)
        store = MetricStore(session)
        job = AccountInsightsJob(
            store,
            StubGraph(series=series_for([YESTERDAY]), followers_count=250),
            followers=FollowerSnapshotJob(store, clock=fixed_clock),
            clock=fixed_clock,
        )

        await job.run()

        rows = await store.read_follower_counts("acct-1", TODAY, TODAY)
        assert rows[0].followers_count == 250


class TestBackfill:
    @pytest.mark.asyncio
    async def test_fills_only_missing_days(self, session) -> None:
        await add_account(session)
        store = MetricStore(session)
        present = TODAY - timedelta(days=2)
        await store.upsert_account_snapshot(
            SnapshotRow(ig_user_id=1784, page_id=555, day=present, reach=999, source_used=SOURCE_DAILY)
        )
        days = [TODAY - timedelta(days=n) for n in range(5, 0, -1)]
        # No data for the oldest day
        graph = StubGraph(series=series_for(days[1:]))

        report = await make_job(session, graph).backfill("acct-1", days=5)

        assert report.requested == 4
        assert present not in report.missing
        assert report.inserted == 3
        assert report.skipped_no_data == 1

        rows = {r.day: r for r in await store.read_account_snapshots(1784, 555, days[0], YESTERDAY)}
        assert rows[present].reach == 999
        assert rows[present].source_used == SOURCE_DAILY
        assert rows[YESTERDAY].source_used == SOURCE_BACKFILL
        assert days[0] not in rows

    @pytest.mark.asyncio
    async def test_nothing_missing_skips_graph(self, session) -> None:
        await add_account(session)
        store = MetricStore(session)
        await store.upsert_account_snapshot(
            SnapshotRow(ig_user_id=1784, page_id=555, day=YESTERDAY, reach=1)
        )
        graph = StubGraph()

        report = await make_job(session, graph).backfill("acct-1", days=1)

        assert report.requested == 0
        assert graph.series_calls == []

    @pytest.mark.asyncio
    async def test_unknown_account_raises(self, session) -> None:
        with pytest.raises(MissingCredentialError):
            await make_job(session, StubGraph()).backfill("nobody")

    @pytest.mark.asyncio
    async def test_failed_day_does_not_stop_the_backfill(self, session) -> None:
        await add_account(session)
        days = [TODAY - timedelta(days=n) for n in range(3, 0, -1)]
        job = make_job(session, StubGraph(series=series_for(days)))
        original = job.store.upsert_account_snapshot

        async def flaky(row):
            if row.day == days[1]:
                raise PersistenceError("deadlock detected")
            await original(row)

        job.store.upsert_account_snapshot = flaky
        report = await job.backfill("acct-1", days=3)

        assert not report.ok
        assert report.inserted == 2
        assert report.failed_days == [days[1]]
        rows = await MetricStore(session).read_account_snapshots(1784, 555, days[0], YESTERDAY)
        assert [r.day for r in rows] == [days[0], days[2]]

    @pytest.mark.asyncio
    async def test_missing_table_during_backfill_raises(self, session) -> None:
        await add_account(session)
        job = make_job(session, StubGraph(series=series_for([YESTERDAY])))

        async def missing(row):
            raise SchemaMissingError("account_daily_snapshot")

        job.store.upsert_account_snapshot = missing
        with pytest.raises(SchemaMissingError):
            await job.backfill("acct-1", days=1)
