"""Daily follower-count capture.

The follower count arrives with the page-token exchange both sync jobs
already make, so capturing it costs no extra Graph call.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from services.days import today_utc, utc_now
from services.identity import AccountIdentity
from services.metric_store import FollowerRow, MetricStore

logger = logging.getLogger(__name__)


class FollowerSnapshotJob:
    def __init__(self, store: MetricStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def capture(
        self, identity: AccountIdentity, followers_count: Optional[int]
    ) -> Optional[FollowerRow]:
        """Upsert today's follower count; the last capture of the day wins."""
        if followers_count is None:
            return None
        now = self.clock()
        row = FollowerRow(
            account_id=identity.canonical_id,
            ig_user_id=identity.ig_user_id,
            day=today_utc(now),
            followers_count=followers_count,
            captured_at=now,
        )
        await self.store.upsert_follower_count(row)
        logger.info(
            f"Captured {followers_count} followers for account {identity.canonical_id} on {row.day}"
        )
        return row
