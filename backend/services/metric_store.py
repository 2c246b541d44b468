"""Persistence for the metric stores.

All writes are `INSERT ... ON CONFLICT DO UPDATE` on each table's composite
conflict key, so re-running any job only overwrites rows it already wrote.
Each write commits on its own; a failed write is rolled back and raised as
`PersistenceError`, or `SchemaMissingError` when the table is not there.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Sequence
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.account import AccountCredential, InstagramAccount
from models.account_snapshot import AccountDailySnapshot
from models.follower_count import DailyFollowerCount
from models.media import DailyMediaAggregate, MediaRecord
from services.errors import PersistenceError, SchemaMissingError

logger = logging.getLogger(__name__)

MISSING_SCHEMA_CODES = {"42P01", "42703"}
MISSING_SCHEMA_PATTERNS = ("does not exist", "no such table", "no such column", "undefinedtable")


class StoreRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class MediaRow(StoreRow):
    account_id: str
    media_id: str
    media_type: Optional[str] = None
    permalink: Optional[str] = None
    caption: Optional[str] = None
    published_at: Optional[datetime] = None
    published_day: Optional[date] = None
    like_count: int = 0
    comments_count: int = 0
    reach: Optional[int] = None
    impressions: Optional[int] = None
    saves: Optional[int] = None
    shares: Optional[int] = None
    plays: Optional[int] = None
    raw_payload: Optional[dict] = None


class MediaAggregateRow(StoreRow):
    account_id: str
    day: date
    media_count: int = 0
    total_likes: int = 0
    total_comments: int = 0
    total_saves: int = 0
    total_shares: int = 0
    total_interactions: int = 0
    total_reach: Optional[int] = None
    total_impressions: Optional[int] = None


class SnapshotRow(StoreRow):
    ig_user_id: int
    page_id: int
    day: date
    account_id: Optional[str] = None
    reach: Optional[int] = None
    impressions: Optional[int] = None
    total_interactions: Optional[int] = None
    accounts_engaged: Optional[int] = None
    source_used: str = "daily_insights"


class FollowerRow(StoreRow):
    account_id: str
    day: date
    followers_count: int
    ig_user_id: Optional[int] = None
    captured_at: Optional[datetime] = None


class CredentialRow(StoreRow):
    account_id: str
    user_id: Optional[str] = None
    ig_user_id: Optional[int] = None
    page_id: Optional[int] = None
    access_token: str = Field(repr=False)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at


def translate_db_error(error: SQLAlchemyError, table: str) -> PersistenceError:
    """Classify a driver error as missing schema or a generic persistence failure."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(error).lower()
    if code in MISSING_SCHEMA_CODES or any(p in text for p in MISSING_SCHEMA_PATTERNS):
        return SchemaMissingError(table, f"missing_table_{table}")
    return PersistenceError(f"{table}: {str(error).splitlines()[0][:200]}")


class MetricStore:
    """Reads and idempotent writes over the four metric stores."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self, model: Any):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise PersistenceError(f"upserts not supported on dialect {dialect}")

    async def _upsert(
        self,
        model: Any,
        rows: Sequence[dict],
        conflict_cols: Sequence[str],
        timestamp_col: str = "updated_at",
    ) -> int:
        if not rows:
            return 0
        table = model.__tablename__
        now = datetime.now(timezone.utc)
        values = [{"id": str(uuid4()), timestamp_col: now, **row} for row in rows]

        stmt = self._insert(model).values(values)
        update_cols = [c for c in values[0] if c not in ("id", *conflict_cols)]
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_cols),
            set_={c: stmt.excluded[c] for c in update_cols},
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise translate_db_error(e, table) from e
        return len(values)

    async def _select(self, stmt, table: str) -> list:
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise translate_db_error(e, table) from e
        return list(result.scalars().all())

    async def ensure_tables(self, *models: Any) -> None:
        """Probe each table with a trivial select; raises SchemaMissingError."""
        for model in models:
            await self._select(select(model.id).limit(1), model.__tablename__)

    # --- Media ---

    async def upsert_media_records(self, rows: Iterable[MediaRow]) -> int:
        # One listing can repeat an item across pages; the last copy wins
        by_key: dict[tuple[str, str], dict] = {}
        for row in rows:
            by_key[(row.account_id, row.media_id)] = row.model_dump()
        return await self._upsert(MediaRecord, list(by_key.values()), ("account_id", "media_id"))

    async def list_media_for_day(self, account_id: str, day: date) -> list[MediaRow]:
        records = await self._select(
            select(MediaRecord).where(
                MediaRecord.account_id == account_id,
                MediaRecord.published_day == day,
            ),
            MediaRecord.__tablename__,
        )
        return [MediaRow.model_validate(r) for r in records]

    async def upsert_media_aggregate(self, row: MediaAggregateRow) -> None:
        await self._upsert(DailyMediaAggregate, [row.model_dump()], ("account_id", "day"))

    async def read_media_aggregates(
        self, account_id: str, start: date, end: date
    ) -> list[MediaAggregateRow]:
        records = await self._select(
            select(DailyMediaAggregate)
            .where(
                DailyMediaAggregate.account_id == account_id,
                DailyMediaAggregate.day >= start,
                DailyMediaAggregate.day <= end,
            )
            .order_by(DailyMediaAggregate.day),
            DailyMediaAggregate.__tablename__,
        )
        return [MediaAggregateRow.model_validate(r) for r in records]

    # --- Account snapshots ---

    async def upsert_account_snapshot(self, row: SnapshotRow) -> None:
        await self._upsert(
            AccountDailySnapshot, [row.model_dump()], ("ig_user_id", "page_id", "day")
        )

    async def read_account_snapshots(
        self,
        ig_user_id: int,
        page_id: Optional[int],
        start: date,
        end: date,
    ) -> list[SnapshotRow]:
        stmt = select(AccountDailySnapshot).where(
            AccountDailySnapshot.ig_user_id == ig_user_id,
            AccountDailySnapshot.day >= start,
            AccountDailySnapshot.day <= end,
        )
        if page_id is not None:
            stmt = stmt.where(AccountDailySnapshot.page_id == page_id)
        records = await self._select(
            stmt.order_by(AccountDailySnapshot.day), AccountDailySnapshot.__tablename__
        )
        return [SnapshotRow.model_validate(r) for r in records]

    # --- Followers ---

    async def upsert_follower_count(self, row: FollowerRow) -> None:
        values = row.model_dump(exclude={"captured_at"})
        if row.captured_at is not None:
            values["captured_at"] = row.captured_at
        await self._upsert(
            DailyFollowerCount, [values], ("account_id", "day"), timestamp_col="captured_at"
        )

    async def read_follower_counts(
        self,
        account_id: str,
        start: date,
        end: date,
        legacy_ig_user_id: Optional[int] = None,
    ) -> list[FollowerRow]:
        """Follower rows by canonical id, else by the legacy IG user id."""
        table = DailyFollowerCount.__tablename__
        in_range = (DailyFollowerCount.day >= start, DailyFollowerCount.day <= end)
        records = await self._select(
            select(DailyFollowerCount)
            .where(DailyFollowerCount.account_id == account_id, *in_range)
            .order_by(DailyFollowerCount.day),
            table,
        )
        if not records and legacy_ig_user_id is not None:
            records = await self._select(
                select(DailyFollowerCount)
                .where(DailyFollowerCount.ig_user_id == legacy_ig_user_id, *in_range)
                .order_by(DailyFollowerCount.day),
                table,
            )
        return [FollowerRow.model_validate(r) for r in records]

    # --- Credentials ---

    def _credential_query(self, account_id: Optional[str] = None):
        stmt = (
            select(AccountCredential, InstagramAccount)
            .join(InstagramAccount, InstagramAccount.id == AccountCredential.account_id)
            .where(InstagramAccount.revoked_at.is_(None))
            .order_by(AccountCredential.account_id, AccountCredential.updated_at.desc())
        )
        if account_id is not None:
            stmt = stmt.where(AccountCredential.account_id == account_id)
        return stmt

    async def list_credentials(self, account_id: Optional[str] = None) -> list[CredentialRow]:
        """Latest credential per non-revoked account."""
        try:
            result = await self.session.execute(self._credential_query(account_id))
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise translate_db_error(e, AccountCredential.__tablename__) from e

        latest: dict[str, CredentialRow] = {}
        for credential, account in result.all():
            if credential.account_id in latest:
                continue
            latest[credential.account_id] = CredentialRow(
                account_id=credential.account_id,
                user_id=account.user_id,
                ig_user_id=credential.ig_user_id or account.ig_user_id,
                page_id=credential.page_id or account.page_id,
                access_token=credential.access_token,
                expires_at=credential.expires_at,
            )
        return list(latest.values())

    async def get_credential(self, account_id: str) -> Optional[CredentialRow]:
        credentials = await self.list_credentials(account_id)
        return credentials[0] if credentials else None
