"""Initial schema — card catalog, prices, users, watchlist, notifications, job leases

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- card_variants: one row per purchasable printing/finish ---
    op.create_table(
        "card_variants",
        sa.Column("variant_key", sa.String(), primary_key=True, comment="scryfall:<id>[-foil]"),
        sa.Column("game", sa.String(), nullable=False, server_default="mtg"),
        sa.Column("card_key", sa.String(), nullable=False, comment="Oracle identity"),
        sa.Column("printing_key", sa.String(), nullable=False, comment="<set>:<collector_number>"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("set_code", sa.String(), nullable=True),
        sa.Column("collector_number", sa.String(), nullable=True),
        sa.Column("oracle_text", sa.Text(), nullable=True),
        sa.Column("type_line", sa.String(), nullable=True),
        sa.Column("colors", JSONB(), nullable=True),
        sa.Column("color_identity", JSONB(), nullable=True),
        sa.Column("cmc", sa.Float(), nullable=True),
        sa.Column("mana_cost", sa.String(), nullable=True),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("image_uri", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_card_variants_game_name", "card_variants", ["game", "name"])
    op.create_index(
        "ix_card_variants_game_set_number",
        "card_variants",
        ["game", "set_code", "collector_number"],
    )

    # --- price_cache: current price per (market, variant, kind, currency) ---
    op.create_table(
        "price_cache",
        sa.Column("market", sa.String(), nullable=False),
        sa.Column("variant_key", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("amount", sa.DECIMAL(12, 2), nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("market", "variant_key", "kind", "currency"),
    )
    op.create_index("ix_price_cache_variant_key", "price_cache", ["variant_key"])

    # --- price_points: append-only daily history ---
    op.create_table(
        "price_points",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("variant_key", sa.String(), nullable=False),
        sa.Column("market", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("amount", sa.DECIMAL(12, 2), nullable=False),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("price_date", sa.DATE(), nullable=False, comment="UTC calendar day"),
        sa.UniqueConstraint(
            "variant_key", "market", "kind", "price_date",
            name="uq_price_points_variant_market_kind_day",
        ),
    )
    op.create_index(
        "ix_price_points_market_variant_recorded",
        "price_points",
        ["market", "variant_key", "recorded_at"],
    )

    # --- users / push_tokens ---
    op.create_table(
        "users",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("banned", sa.BOOLEAN(), server_default="false", nullable=False),
    )

    op.create_table(
        "push_tokens",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token", sa.String(), nullable=False, unique=True),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_push_tokens_user_id", "push_tokens", ["user_id"])

    # --- watchlist_entries ---
    op.create_table(
        "watchlist_entries",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_key", sa.String(), nullable=False),
        sa.Column("market", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("threshold_amount", sa.DECIMAL(12, 2), nullable=False),
        sa.Column("direction", sa.String(), nullable=False, comment="'above' or 'below'"),
        sa.Column("enabled", sa.BOOLEAN(), server_default="true", nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "direction IN ('above', 'below')", name="ck_watchlist_entries_direction"
        ),
    )
    op.create_index(
        "ix_watchlist_entries_user_enabled", "watchlist_entries", ["user_id", "enabled"]
    )

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", JSONB(), nullable=True),
        sa.Column("read", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notifications_user_read_created",
        "notifications",
        ["user_id", "read", "created_at"],
    )

    # --- job_leases: lease-backend leader lock (unused with advisory locks) ---
    op.create_table(
        "job_leases",
        sa.Column("lock_id", sa.INTEGER(), primary_key=True, autoincrement=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("holder", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_leases")
    op.drop_index("ix_notifications_user_read_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_watchlist_entries_user_enabled", table_name="watchlist_entries")
    op.drop_table("watchlist_entries")
    op.drop_index("ix_push_tokens_user_id", table_name="push_tokens")
    op.drop_table("push_tokens")
    op.drop_table("users")
    op.drop_index("ix_price_points_market_variant_recorded", table_name="price_points")
    op.drop_table("price_points")
    op.drop_index("ix_price_cache_variant_key", table_name="price_cache")
    op.drop_table("price_cache")
    op.drop_index("ix_card_variants_game_set_number", table_name="card_variants")
    op.drop_index("ix_card_variants_game_name", table_name="card_variants")
    op.drop_table("card_variants")
