"""Add the loyalty rewards catalog and the member listing index."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


loyalty_reward_type = sa.Enum(
    "discount", "free_item", "free_delivery", "gift_card", "merchandise", name="loyalty_reward_type"
)


def upgrade() -> None:
    loyalty_reward_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column(
            "reward_type",
            postgresql.ENUM(*loyalty_reward_type.enums, name="loyalty_reward_type", create_type=False),
            nullable=False,
        ),
        sa.Column("reward_value", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("program_id", "name", name="uq_loyalty_rewards_program_name"),
        sa.CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        sa.CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_loyalty_rewards_stock_non_negative",
        ),
    )
    op.create_index("ix_loyalty_rewards_program_id", "loyalty_rewards", ["program_id"])

    op.create_index(
        "ix_loyalty_accounts_program_lifetime",
        "loyalty_accounts",
        ["program_id", sa.text("lifetime_points DESC"), "id"],
    )


def downgrade() -> None:
    op.drop_index("ix_loyalty_accounts_program_lifetime", table_name="loyalty_accounts")
    op.drop_index("ix_loyalty_rewards_program_id", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")
    loyalty_reward_type.drop(op.get_bind(), checkfirst=True)
