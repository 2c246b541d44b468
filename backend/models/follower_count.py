"""DailyFollowerCount model - one follower sample per account per day."""

from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class DailyFollowerCount(Base):
    """Follower count captured during a sync.

    Unlike the other stores this is written for the current day; repeated
    captures on one day overwrite each other.
    """

    __tablename__ = "ig_daily_followers"
    __table_args__ = (
        UniqueConstraint("account_id", "day", name="uq_ig_daily_followers_account_day"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Older rows were keyed only by this
    ig_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    followers_count: Mapped[int] = mapped_column(Integer, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<DailyFollowerCount {self.account_id} {self.day}={self.followers_count}>"
