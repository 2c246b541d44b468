"""Per-post media records and the daily aggregates derived from them."""

from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Date, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class MediaRecord(Base):
    """One Instagram post as last seen by the media sync.

    Re-upserted on every sync, never deleted. Insight columns are nullable
    because each metric is fetched independently and may be unavailable.
    """

    __tablename__ = "media_raw"
    __table_args__ = (
        UniqueConstraint("account_id", "media_id", name="uq_media_raw_account_media"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    account_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    media_id: Mapped[str] = mapped_column(String(64), nullable=False)

    media_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    permalink: Mapped[str | None] = mapped_column(Text, nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    published_day: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)

    # Public counters from the listing
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Best-effort insights
    reach: Mapped[int | None] = mapped_column(Integer, nullable=True)
    impressions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    saves: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shares: Mapped[int | None] = mapped_column(Integer, nullable=True)
    plays: Mapped[int | None] = mapped_column(Integer, nullable=True)

    raw_payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<MediaRecord {self.media_id} {self.published_day}>"


class DailyMediaAggregate(Base):
    """Engagement totals over all posts published on one UTC day.

    Always recomputed from scratch out of media_raw rows for that day.
    """

    __tablename__ = "media_daily_aggregate"
    __table_args__ = (
        UniqueConstraint("account_id", "day", name="uq_media_daily_aggregate_account_day"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    account_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)

    media_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_comments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_saves: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_interactions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_reach: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_impressions: Mapped[int | None] = mapped_column(Integer, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<DailyMediaAggregate {self.account_id} {self.day}: {self.media_count} media>"
