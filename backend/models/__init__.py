"""Database models."""

from database import Base

# Accounts
from models.account import AccountCredential, InstagramAccount

# Metric stores
from models.account_snapshot import AccountDailySnapshot
from models.follower_count import DailyFollowerCount
from models.media import DailyMediaAggregate, MediaRecord

__all__ = [
    # Base
    "Base",
    # Accounts
    "InstagramAccount",
    "AccountCredential",
    # Metric stores
    "MediaRecord",
    "DailyMediaAggregate",
    "AccountDailySnapshot",
    "DailyFollowerCount",
]
