"""Mirror (PostgreSQL) schema for Meterline.

The SQLite primary keeps its own DDL in db.py. This metadata describes the
mirror and is the one place its shape is defined: db.PG_SCHEMA is compiled
from it, and Alembic autogenerates against it.

Ids are never generated by the mirror. Every row arrives with the id SQLite
assigned, so no column here may render as SERIAL/IDENTITY.
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

metadata = sa.MetaData()


def _id():
    return sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False)


users = sa.Table(
    "users", metadata,
    _id(),
    sa.Column("username", sa.Text(), nullable=False, unique=True),
    sa.Column("email", sa.Text(), nullable=False, unique=True),
    sa.Column("password_hash", sa.Text(), nullable=False),
    sa.Column("passkey", sa.Text(), nullable=True),
    sa.Column("eakey", sa.Text(), nullable=False, unique=True),
    sa.Column("created_at", sa.BigInteger(), nullable=False),
)

instances = sa.Table(
    "instances", metadata,
    _id(),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("country_code", sa.Text(), nullable=False),
    sa.Column("phone_number", sa.Text(), nullable=False),
    sa.Column("active", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("created_at", sa.BigInteger(), nullable=False),
    sa.Index("idx_instances_user", "user_id"),
)

billing_records = sa.Table(
    "billing_records", metadata,
    _id(),
    sa.Column("instance_id", sa.Integer(), sa.ForeignKey("instances.id"), nullable=False),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("started_at", sa.BigInteger(), nullable=False),
    sa.Column("ended_at", sa.BigInteger(), nullable=True),
    sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Index("idx_billing_records_user", "user_id", "started_at"),
    # At most one open window per instance
    sa.Index(
        "idx_billing_records_one_open", "instance_id",
        unique=True, postgresql_where=sa.text("ended_at IS NULL"),
    ),
)

billing = sa.Table(
    "billing", metadata,
    _id(),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
    sa.Column("amount_in_wallet", sa.Float(), nullable=False, server_default=sa.text("0")),
    sa.Column("amount_spent", sa.Float(), nullable=False, server_default=sa.text("0")),
    sa.Column("total_amount_spent", sa.Float(), nullable=False, server_default=sa.text("0")),
    sa.Column("average_hourly_consumption", sa.Float(), nullable=False,
              server_default=sa.text("0")),
)

user_property = sa.Table(
    "user_property", metadata,
    _id(),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
    sa.Column("instance_status", sa.Text(), nullable=False, server_default="inactive"),
    sa.Column("instance_usage", sa.Float(), nullable=False, server_default=sa.text("0")),
    sa.Column("api_key_active", sa.Boolean(), nullable=False, server_default=sa.false()),
)


def mirror_ddl():
    """CREATE statements for the mirror, in dependency order, safe to re-run."""
    dialect = postgresql.dialect()
    statements = []
    for table in metadata.sorted_tables:
        statements.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
    for table in metadata.sorted_tables:
        for index in sorted(table.indexes, key=lambda i: i.name):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    return tuple(s.strip() for s in statements)
