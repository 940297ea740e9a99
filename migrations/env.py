"""Alembic environment for the Meterline mirror.

Revisions are checked against schema.metadata. Autogenerate refuses to emit
any column that would let the mirror mint its own ids, since every mirrored
row carries the id the SQLite primary assigned.
"""

import os
import sys
from logging.config import fileConfig

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dotenv import load_dotenv

load_dotenv(os.path.join(ROOT, ".env"))

from alembic import context
from alembic.operations import ops

from schema import metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def mirror_url():
    """Mirror DSN from the environment, pinned to the psycopg 3 driver."""
    url = (os.environ.get("METERLINE_POSTGRES_DSN")
           or os.environ.get("DATABASE_URL")
           or config.get_main_option("sqlalchemy.url"))
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def reject_generated_ids(context_, revision, directives):
    """Fail autogenerate if a new table would get a SERIAL/IDENTITY key."""
    script = directives[0]
    for op_ in script.upgrade_ops.ops:
        if not isinstance(op_, ops.CreateTableOp):
            continue
        for col in op_.columns:
            if getattr(col, "primary_key", False) and col.autoincrement is not False:
                raise ValueError(
                    f"{op_.table_name}.{col.name}: mirror ids come from the primary, "
                    "declare autoincrement=False"
                )


def run_migrations_offline():
    context.configure(
        url=mirror_url(),
        target_metadata=metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    from sqlalchemy import create_engine

    engine = create_engine(mirror_url())
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=metadata,
                compare_type=True,
                process_revision_directives=reject_generated_ids,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
