"""Connected Instagram accounts and their stored Graph credentials."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class InstagramAccount(Base):
    """An Instagram Business/Creator account connected by a user.

    `id` is the canonical account identifier used by the newer stores.
    `ig_user_id` and `page_id` are the numeric Graph identifiers that the
    account-level snapshot table is still keyed by.
    """

    __tablename__ = "instagram_accounts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    ig_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    page_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<InstagramAccount @{self.username} ({self.ig_user_id})>"


class AccountCredential(Base):
    """User access token for an account's linked Facebook Page.

    The token is exchanged for a page-scoped token before every job run.
    When several rows exist for an account, the most recently updated wins.
    """

    __tablename__ = "account_credentials"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("instagram_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Legacy numeric identifiers, copied at connect time
    ig_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    page_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the token is expired."""
        if not self.expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    def __repr__(self) -> str:
        return f"<AccountCredential account={self.account_id}>"
