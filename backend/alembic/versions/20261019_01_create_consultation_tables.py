"""create consultation tables

Revision ID: 20261019_01
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


USER_ROLE = sa.Enum("CLIENT", "LAWYER", "ADMIN", name="user_role")
LAWYER_ONLINE_STATUS = sa.Enum("online", "offline", name="lawyer_online_status")
CONSULTATION_STATUS = sa.Enum(
    "PENDING", "TRIAL", "ACTIVE", "COMPLETED", "CANCELLED", name="consultation_status"
)
MESSAGE_TYPE = sa.Enum("TEXT", "IMAGE", "DOCUMENT", "SYSTEM", name="message_type")
PAYMENT_STATUS = sa.Enum("PENDING", "SUCCEEDED", "FAILED", name="payment_status")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        onupdate=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("role", USER_ROLE, nullable=False, server_default="CLIENT"),
        sa.Column("first_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("avatar_url", sa.String(length=512), nullable=True),
        sa.Column("expo_push_token", sa.String(length=255), nullable=True),
        sa.Column("notification_preferences", sa.JSON(), nullable=True),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "lawyer_profiles",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("online_status", LAWYER_ONLINE_STATUS, nullable=False, server_default="offline"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", name="uq_lawyer_profiles_user_id"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "consultations",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("client_id", sa.String(length=32), nullable=False),
        sa.Column("lawyer_id", sa.String(length=32), nullable=False),
        sa.Column("status", CONSULTATION_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["client_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["lawyer_id"], ["lawyer_profiles.id"], ondelete="CASCADE"),
        mysql_charset="utf8mb4",
    )
    op.create_index(
        "ix_consultations_status_created", "consultations", ["status", "created_at"], unique=False
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("consultation_id", sa.String(length=32), nullable=False),
        sa.Column("sender_id", sa.String(length=32), nullable=False),
        sa.Column("message_type", MESSAGE_TYPE, nullable=False, server_default="TEXT"),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("file_url", sa.String(length=1024), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("reply_to_id", sa.String(length=32), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["consultation_id"], ["consultations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reply_to_id"], ["messages.id"], ondelete="SET NULL"),
        mysql_charset="utf8mb4",
    )
    op.create_index(
        "ix_messages_consultation_created", "messages", ["consultation_id", "created_at"], unique=False
    )
    op.create_index("ix_messages_unread", "messages", ["consultation_id", "is_read"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("consultation_id", sa.String(length=32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", PAYMENT_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("provider_reference", sa.String(length=255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["consultation_id"], ["consultations.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("consultation_id", name="uq_payments_consultation_id"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_index("ix_messages_unread", table_name="messages")
    op.drop_index("ix_messages_consultation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_consultations_status_created", table_name="consultations")
    op.drop_table("consultations")
    op.drop_table("lawyer_profiles")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (PAYMENT_STATUS, MESSAGE_TYPE, CONSULTATION_STATUS, LAWYER_ONLINE_STATUS, USER_ROLE):
        enum.drop(bind, checkfirst=True)
