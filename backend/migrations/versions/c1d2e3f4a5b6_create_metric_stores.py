"""create accounts and metric stores

Revision ID: c1d2e3f4a5b6
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'c1d2e3f4a5b6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Connected accounts
    op.create_table(
        'instagram_accounts',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('ig_user_id', sa.BigInteger(), nullable=True),
        sa.Column('page_id', sa.BigInteger(), nullable=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_instagram_accounts_user_id', 'instagram_accounts', ['user_id'])
    op.create_index('ix_instagram_accounts_ig_user_id', 'instagram_accounts', ['ig_user_id'])

    op.create_table(
        'account_credentials',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('ig_user_id', sa.BigInteger(), nullable=True),
        sa.Column('page_id', sa.BigInteger(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('scope', sa.String(500), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['instagram_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_account_credentials_account_id', 'account_credentials', ['account_id'])

    # Per-post records and daily media aggregates
    op.create_table(
        'media_raw',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('media_id', sa.String(64), nullable=False),
        sa.Column('media_type', sa.String(50), nullable=True),
        sa.Column('permalink', sa.Text(), nullable=True),
        sa.Column('caption', sa.Text(), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('published_day', sa.Date(), nullable=True),
        sa.Column('like_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('comments_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reach', sa.Integer(), nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('saves', sa.Integer(), nullable=True),
        sa.Column('shares', sa.Integer(), nullable=True),
        sa.Column('plays', sa.Integer(), nullable=True),
        sa.Column('raw_payload', JSONType, nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'media_id', name='uq_media_raw_account_media'),
    )
    op.create_index('ix_media_raw_account_id', 'media_raw', ['account_id'])
    op.create_index('ix_media_raw_published_day', 'media_raw', ['published_day'])

    op.create_table(
        'media_daily_aggregate',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('media_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_likes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_comments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_saves', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_shares', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_interactions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_reach', sa.Integer(), nullable=True),
        sa.Column('total_impressions', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'day', name='uq_media_daily_aggregate_account_day'),
    )
    op.create_index('ix_media_daily_aggregate_account_id', 'media_daily_aggregate', ['account_id'])

    # Account-level insights, completed days only
    op.create_table(
        'account_daily_snapshot',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('ig_user_id', sa.BigInteger(), nullable=False),
        sa.Column('page_id', sa.BigInteger(), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=True),
        sa.Column('reach', sa.Integer(), nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('total_interactions', sa.Integer(), nullable=True),
        sa.Column('accounts_engaged', sa.Integer(), nullable=True),
        sa.Column('source_used', sa.String(50), nullable=False, server_default='daily_insights'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('ig_user_id', 'page_id', 'day', name='uq_account_daily_snapshot_ids_day'),
    )
    op.create_index('ix_account_daily_snapshot_account_id', 'account_daily_snapshot', ['account_id'])

    # Follower history
    op.create_table(
        'ig_daily_followers',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('ig_user_id', sa.BigInteger(), nullable=True),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('followers_count', sa.Integer(), nullable=False),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'day', name='uq_ig_daily_followers_account_day'),
    )
    op.create_index('ix_ig_daily_followers_ig_user_id', 'ig_daily_followers', ['ig_user_id'])


def downgrade() -> None:
    op.drop_table('ig_daily_followers')
    op.drop_table('account_daily_snapshot')
    op.drop_table('media_daily_aggregate')
    op.drop_table('media_raw')
    op.drop_table('account_credentials')
    op.drop_table('instagram_accounts')
