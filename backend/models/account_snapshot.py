"""AccountDailySnapshot model - account-level Graph insights per completed day."""

from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class AccountDailySnapshot(Base):
    """Account insights for a single fully-elapsed UTC day.

    Keyed by the legacy numeric identifiers. Never written for the current day.
    """

    __tablename__ = "account_daily_snapshot"
    __table_args__ = (
        UniqueConstraint("ig_user_id", "page_id", "day", name="uq_account_daily_snapshot_ids_day"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    ig_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    page_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    reach: Mapped[int | None] = mapped_column(Integer, nullable=True)
    impressions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_interactions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    accounts_engaged: Mapped[int | None] = mapped_column(Integer, nullable=True)

    source_used: Mapped[str] = mapped_column(String(50), default="daily_insights", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<AccountDailySnapshot {self.ig_user_id}/{self.page_id} {self.day}>"
