"""Resolve a caller to one connected Instagram account.

Newer stores are keyed by the canonical account id, the account snapshot
table by the numeric Graph ids. Everything that reads across stores goes
through `AccountIdentity` so both key sets travel together.
"""

import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.account import InstagramAccount
from services.errors import AccountNotFoundError
from services.metric_store import translate_db_error

logger = logging.getLogger(__name__)


class AccountIdentity(BaseModel):
    canonical_id: str
    user_id: Optional[str] = None
    ig_user_id: Optional[int] = None
    page_id: Optional[int] = None
    username: Optional[str] = None

    @property
    def legacy_numeric_ids(self) -> Optional[tuple[int, int]]:
        """(ig_user_id, page_id) when both are known."""
        if self.ig_user_id is None or self.page_id is None:
            return None
        return (self.ig_user_id, self.page_id)

    @classmethod
    def from_account(cls, account: InstagramAccount) -> "AccountIdentity":
        return cls(
            canonical_id=account.id,
            user_id=account.user_id,
            ig_user_id=account.ig_user_id,
            page_id=account.page_id,
            username=account.username,
        )


class AccountIdentityResolver:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _first(self, stmt) -> Optional[InstagramAccount]:
        try:
            result = await self.session.execute(stmt.limit(1))
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise translate_db_error(e, InstagramAccount.__tablename__) from e
        return result.scalars().first()

    async def resolve_for_user(
        self, user_id: str, account_hint: Optional[str] = None
    ) -> AccountIdentity:
        """Pick the user's account: the hinted one, else active, else most recent.

        A hint that does not belong to the user is ignored rather than
        rejected, so a stale client-side selection never locks anyone out.
        """
        owned = select(InstagramAccount).where(
            InstagramAccount.user_id == user_id,
            InstagramAccount.revoked_at.is_(None),
        )

        account = None
        if account_hint:
            account = await self._first(owned.where(InstagramAccount.id == account_hint))
            if account is None:
                logger.info(f"Ignoring account hint {account_hint} for user {user_id}")
        if account is None:
            account = await self._first(
                owned.where(InstagramAccount.is_active.is_(True))
                .order_by(InstagramAccount.updated_at.desc())
            )
        if account is None:
            account = await self._first(owned.order_by(InstagramAccount.updated_at.desc()))
        if account is None:
            raise AccountNotFoundError(f"no connected account for user {user_id}")
        return AccountIdentity.from_account(account)

    async def resolve_account(self, account_id: str) -> AccountIdentity:
        account = await self._first(
            select(InstagramAccount).where(InstagramAccount.id == account_id)
        )
        if account is None or account.revoked_at is not None:
            raise AccountNotFoundError(f"account {account_id} not found")
        return AccountIdentity.from_account(account)
