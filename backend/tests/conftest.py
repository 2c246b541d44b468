"""pytest configuration and fixtures."""

import os

# Set required environment variables for testing before any imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SESSION_JWT_SECRET", "test-session-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("TREND_CACHE_BACKEND", "memory")

from datetime import date, datetime, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database import Base  # noqa: E402
from models import AccountCredential, InstagramAccount  # noqa: E402
from services.errors import UpstreamError  # noqa: E402
from services.graph_client import (  # noqa: E402
    MediaItem,
    MediaListing,
    PageToken,
    ResilientInsights,
    SeriesValue,
)

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
TODAY = date(2024, 5, 10)


def fixed_clock() -> datetime:
    return NOW


def _memory_engine():
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest_asyncio.fixture
async def engine():
    engine = _memory_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


async def _session_without(table_name: str):
    engine = _memory_engine()
    tables = [t for t in Base.metadata.sorted_tables if t.name != table_name]
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest_asyncio.fixture
async def session_without_followers():
    """Schema where the follower history table was never migrated."""
    async for session in _session_without("ig_daily_followers"):
        yield session


@pytest_asyncio.fixture
async def session_without_snapshots():
    """Schema where the account snapshot table was never migrated."""
    async for session in _session_without("account_daily_snapshot"):
        yield session


async def add_account(
    session,
    account_id: str = "acct-1",
    user_id: str = "user-1",
    ig_user_id: Optional[int] = 1784,
    page_id: Optional[int] = 555,
    is_active: bool = True,
    token: Optional[str] = "user-token",
    updated_at: Optional[datetime] = None,
    revoked_at: Optional[datetime] = None,
) -> InstagramAccount:
    """Insert an account, plus a credential when a token is given."""
    account = InstagramAccount(
        id=account_id,
        user_id=user_id,
        ig_user_id=ig_user_id,
        page_id=page_id,
        username=f"creator_{account_id}",
        is_active=is_active,
        updated_at=updated_at or NOW,
        revoked_at=revoked_at,
    )
    session.add(account)
    if token is not None:
        session.add(
            AccountCredential(
                account_id=account_id,
                ig_user_id=ig_user_id,
                page_id=page_id,
                access_token=token,
            )
        )
    await session.commit()
    return account


def media_item(media_id: str, timestamp: str, media_type: str = "IMAGE", likes: int = 0, comments: int = 0) -> MediaItem:
    return MediaItem.from_graph({
        "id": media_id,
        "media_type": media_type,
        "timestamp": timestamp,
        "permalink": f"https://instagram.test/p/{media_id}",
        "like_count": likes,
        "comments_count": comments,
    })


class StubGraph:
    """In-memory stand-in for GraphClient used by the job tests."""

    def __init__(
        self,
        items: Optional[list[MediaItem]] = None,
        insights: Optional[dict[str, ResilientInsights]] = None,
        series: Optional[dict[str, list[SeriesValue]]] = None,
        followers_count: Optional[int] = 1000,
        exchange_error: Optional[UpstreamError] = None,
        listing_error: Optional[UpstreamError] = None,
    ):
        self.items = items or []
        self.insights = insights or {}
        self.series = series or {}
        self.followers_count = followers_count
        self.exchange_error = exchange_error
        self.listing_error = listing_error
        self.series_calls: list[tuple[date, date]] = []
        self.insight_calls: list[str] = []
        self.timeouts: list[Optional[float]] = []

    def with_timeout(self, timeout):
        self.timeouts.append(timeout)
        return self

    async def exchange_token(self, user_token, page_id):
        if self.exchange_error is not None:
            raise self.exchange_error
        return PageToken(token="page-token", followers_count=self.followers_count)

    async def list_media(self, ig_user_id, token, cutoff_day, max_items=300):
        if self.listing_error is not None:
            raise self.listing_error
        items = [i for i in self.items if cutoff_day is None or i.day is None or i.day >= cutoff_day]
        return MediaListing(items=items[:max_items], page_count=1)

    async def fetch_resilient_insights(self, item_id, is_video_like, token):
        self.insight_calls.append(item_id)
        return self.insights.get(
            item_id,
            ResilientInsights(metrics={"reach": 100, "saved": 2, "impressions": 150}),
        )

    async def fetch_account_series(self, ig_user_id, token, since, until, metrics=None):
        self.series_calls.append((since, until))
        return self.series


@pytest.fixture
def stub_graph() -> StubGraph:
    return StubGraph()
