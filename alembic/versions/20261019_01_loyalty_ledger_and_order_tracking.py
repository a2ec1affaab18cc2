"""Create loyalty programs, tiers, accounts, ledger, referrals and orders."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


transaction_type = sa.Enum(
    "earn", "redeem", "bonus", "expire", "adjustment", name="loyalty_transaction_type"
)
reward_type = sa.Enum("points", "discount", "free_item", "credit", name="referral_reward_type")
referral_status = sa.Enum("pending", "completed", "rewarded", "expired", name="referral_status")
order_status = sa.Enum(
    "pending", "confirmed", "preparing", "ready", "completed", "cancelled", name="order_status"
)


def _enum_column(enum_type: sa.Enum) -> postgresql.ENUM:
    return postgresql.ENUM(*enum_type.enums, name=enum_type.name, create_type=False)


def _uuid() -> sa.types.TypeEngine:
    return postgresql.UUID(as_uuid=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (transaction_type, reward_type, referral_status, order_status):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "loyalty_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("points_per_dollar", sa.Numeric(8, 2), nullable=False, server_default="1"),
        sa.Column("welcome_bonus_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_bonus_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("store_id", name="uq_loyalty_programs_store_id"),
    )
    op.create_index("ix_loyalty_programs_store_id", "loyalty_programs", ["store_id"])

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "program_id",
            _uuid(),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("min_points", sa.Integer(), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("free_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("priority_support", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("early_access_promos", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("birthday_reward_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier_color", sa.String(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("program_id", "name", name="uq_loyalty_tiers_program_name"),
        sa.UniqueConstraint("program_id", "min_points", name="uq_loyalty_tiers_program_min_points"),
        sa.CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points_non_negative"),
    )
    op.create_index("ix_loyalty_tiers_program_id", "loyalty_tiers", ["program_id"])

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("customer_id", _uuid(), nullable=False),
        sa.Column(
            "program_id",
            _uuid(),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "current_tier_id",
            _uuid(),
            sa.ForeignKey("loyalty_tiers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_order_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_tier_change_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("customer_id", "program_id", name="uq_loyalty_accounts_customer_program"),
        sa.UniqueConstraint("referral_code", name="uq_loyalty_accounts_referral_code"),
        sa.CheckConstraint("total_points >= 0", name="ck_loyalty_accounts_total_points_non_negative"),
        sa.CheckConstraint("lifetime_points >= 0", name="ck_loyalty_accounts_lifetime_points_non_negative"),
    )
    op.create_index("ix_loyalty_accounts_customer_id", "loyalty_accounts", ["customer_id"])
    op.create_index("ix_loyalty_accounts_program_id", "loyalty_accounts", ["program_id"])

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("transaction_type", _enum_column(transaction_type), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "account_id",
            "order_id",
            "transaction_type",
            name="uq_loyalty_transactions_account_order_type",
        ),
        sa.UniqueConstraint(
            "account_id",
            "idempotency_key",
            name="uq_loyalty_transactions_account_idempotency_key",
        ),
        sa.CheckConstraint("points <> 0", name="ck_loyalty_transactions_points_nonzero"),
    )
    op.create_index("ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"])

    op.create_table(
        "referral_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("referrer_reward_type", _enum_column(reward_type), nullable=False),
        sa.Column("referrer_reward_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("referee_reward_type", _enum_column(reward_type), nullable=False),
        sa.Column("referee_reward_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("min_order_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("max_referrals_per_customer", sa.Integer(), nullable=True),
        sa.Column("referral_ttl_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("store_id", name="uq_referral_programs_store_id"),
    )
    op.create_index("ix_referral_programs_store_id", "referral_programs", ["store_id"])

    op.create_table(
        "referrals",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "program_id",
            _uuid(),
            sa.ForeignKey("referral_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column(
            "referrer_account_id",
            _uuid(),
            sa.ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referee_account_id",
            _uuid(),
            sa.ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", _enum_column(referral_status), nullable=False, server_default="pending"),
        sa.Column("referrer_rewarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referee_rewarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("qualifying_order_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rewarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("program_id", "referee_account_id", name="uq_referrals_program_referee"),
    )
    op.create_index("ix_referrals_program_id", "referrals", ["program_id"])
    op.create_index("ix_referrals_referral_code", "referrals", ["referral_code"])
    op.create_index("ix_referrals_referrer_account_id", "referrals", ["referrer_account_id"])

    op.create_table(
        "orders",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", _uuid(), nullable=True),
        sa.Column(
            "loyalty_account_id",
            _uuid(),
            sa.ForeignKey("loyalty_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", _enum_column(order_status), nullable=False, server_default="pending"),
        sa.Column("total", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("estimated_ready_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_store_id", "orders", ["store_id"])
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])


def downgrade() -> None:
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_index("ix_orders_store_id", table_name="orders")
    op.drop_index("ix_orders_order_number", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_referrals_referrer_account_id", table_name="referrals")
    op.drop_index("ix_referrals_referral_code", table_name="referrals")
    op.drop_index("ix_referrals_program_id", table_name="referrals")
    op.drop_table("referrals")

    op.drop_index("ix_referral_programs_store_id", table_name="referral_programs")
    op.drop_table("referral_programs")

    op.drop_index("ix_loyalty_transactions_account_id", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")

    op.drop_index("ix_loyalty_accounts_program_id", table_name="loyalty_accounts")
    op.drop_index("ix_loyalty_accounts_customer_id", table_name="loyalty_accounts")
    op.drop_table("loyalty_accounts")

    op.drop_index("ix_loyalty_tiers_program_id", table_name="loyalty_tiers")
    op.drop_table("loyalty_tiers")

    op.drop_index("ix_loyalty_programs_store_id", table_name="loyalty_programs")
    op.drop_table("loyalty_programs")

    bind = op.get_bind()
    for enum_type in (order_status, referral_status, reward_type, transaction_type):
        enum_type.drop(bind, checkfirst=True)
