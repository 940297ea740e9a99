"""Initial mirror schema: users, instances, billing windows, accounts

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Ids come from the SQLite primary, so no autoincrement on the mirror
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("username", sa.Text(), nullable=False, unique=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("passkey", sa.Text(), nullable=True),
        sa.Column("eakey", sa.Text(), nullable=False, unique=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )

    op.create_table(
        "instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("country_code", sa.Text(), nullable=False),
        sa.Column("phone_number", sa.Text(), nullable=False),
        sa.Column("active", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )

    op.create_table(
        "billing_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("instance_id", sa.Integer(), sa.ForeignKey("instances.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("started_at", sa.BigInteger(), nullable=False),
        sa.Column("ended_at", sa.BigInteger(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "billing",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("amount_in_wallet", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_spent", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount_spent", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("average_hourly_consumption", sa.Float(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "user_property",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("instance_status", sa.Text(), nullable=False, server_default="inactive"),
        sa.Column("instance_usage", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("api_key_active", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_index("idx_instances_user", "instances", ["user_id"])
    op.create_index("idx_billing_records_user", "billing_records", ["user_id", "started_at"])

    # At most one open billing window per instance
    op.create_index(
        "idx_billing_records_one_open",
        "billing_records",
        ["instance_id"],
        unique=True,
        postgresql_where=sa.text("ended_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("idx_billing_records_one_open")
    op.drop_index("idx_billing_records_user")
    op.drop_index("idx_instances_user")
    op.drop_table("user_property")
    op.drop_table("billing")
    op.drop_table("billing_records")
    op.drop_table("instances")
    op.drop_table("users")
