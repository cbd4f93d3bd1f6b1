"""Create membership tier, enrollment and CRM sync queue tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENROLLMENT_STATUS = sa.Enum("active", "expired", "cancelled", name="enrollment_status_enum")
SYNC_ACTION_TYPE = sa.Enum("add_to_tier", "remove_from_tier", "move_tier", name="crm_sync_action_type_enum")
SYNC_STATUS = sa.Enum(
    "pending",
    "processing",
    "completed",
    "failed",
    "superseded",
    name="crm_sync_status_enum",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "club_programs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "membership_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("club_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_months", sa.Integer(), nullable=False),
        sa.Column("min_purchase_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("tier_order", sa.Integer(), nullable=True),
        sa.Column("crm_club_id", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_membership_tiers_crm_club_id", "membership_tiers", ["crm_club_id"], unique=True)

    op.create_table(
        "tier_promotions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tier_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_tiers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("crm_promotion_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_tier_promotions_tier_id", "tier_promotions", ["tier_id"])

    op.create_table(
        "tier_loyalty_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tier_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_tiers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("crm_loyalty_tier_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("tier_title", sa.String(length=255), nullable=True),
        sa.Column("earn_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("initial_points_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("tier_id", name="uq_tier_loyalty_configs_tier_id"),
    )

    op.create_table(
        "membership_enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_crm_id", sa.String(length=255), nullable=False),
        sa.Column(
            "tier_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_tiers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", ENROLLMENT_STATUS, nullable=False, server_default="active"),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_membership_enrollments_customer_crm_id", "membership_enrollments", ["customer_crm_id"])
    op.create_index("ix_membership_enrollments_tier_id", "membership_enrollments", ["tier_id"])
    op.create_index("ix_membership_enrollments_expires_at", "membership_enrollments", ["expires_at"])

    op.create_table(
        "crm_sync_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("action_type", SYNC_ACTION_TYPE, nullable=False),
        sa.Column("customer_crm_id", sa.String(length=255), nullable=False),
        sa.Column(
            "enrollment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "old_tier_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_tiers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "new_tier_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("membership_tiers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", SYNC_STATUS, nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("superseded_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_crm_sync_queue_attempts_bounded"),
    )
    op.create_index("ix_crm_sync_queue_status_next_retry", "crm_sync_queue", ["status", "next_retry_at"])
    op.create_index("ix_crm_sync_queue_enrollment_created", "crm_sync_queue", ["enrollment_id", "created_at"])
    op.create_index("ix_crm_sync_queue_customer_created", "crm_sync_queue", ["customer_crm_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_crm_sync_queue_customer_created", table_name="crm_sync_queue")
    op.drop_index("ix_crm_sync_queue_enrollment_created", table_name="crm_sync_queue")
    op.drop_index("ix_crm_sync_queue_status_next_retry", table_name="crm_sync_queue")
    op.drop_table("crm_sync_queue")
    op.drop_index("ix_membership_enrollments_expires_at", table_name="membership_enrollments")
    op.drop_index("ix_membership_enrollments_tier_id", table_name="membership_enrollments")
    op.drop_index("ix_membership_enrollments_customer_crm_id", table_name="membership_enrollments")
    op.drop_table("membership_enrollments")
    op.drop_table("tier_loyalty_configs")
    op.drop_index("ix_tier_promotions_tier_id", table_name="tier_promotions")
    op.drop_table("tier_promotions")
    op.drop_index("ix_membership_tiers_crm_club_id", table_name="membership_tiers")
    op.drop_table("membership_tiers")
    op.drop_table("club_programs")

    bind = op.get_bind()
    SYNC_STATUS.drop(bind, checkfirst=True)
    SYNC_ACTION_TYPE.drop(bind, checkfirst=True)
    ENROLLMENT_STATUS.drop(bind, checkfirst=True)
