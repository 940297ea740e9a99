# Meterline Storage Layer
# SQLite is the primary (authoritative) store. PostgreSQL is an optional,
# best-effort mirror.
#
#   - Every mutating statement runs on SQLite first, inside BEGIN IMMEDIATE
#   - After the primary commit, the same statements are replayed on Postgres
#   - Mirror failures are logged and counted, never raised
#   - A heartbeat issues SELECT 1 through the same path every few seconds
#
# There is NO consistency guarantee between the two stores. Never read the
# mirror for anything that matters; all reads here go to SQLite.

# Auto-load .env file (must be before any os.environ reads)
from dotenv import load_dotenv
load_dotenv()

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Optional

from errors import PrimaryError, SecondaryError
from schema import mirror_ddl

log = logging.getLogger("meterline")

# ── Configuration ─────────────────────────────────────────────────────

DEFAULT_DB_FILE = os.path.join(os.path.dirname(__file__), "meterline.db")

# Secondary store. Anything that is not a postgres:// DSN means primary-only.
POSTGRES_DSN = os.environ.get(
    "METERLINE_POSTGRES_DSN", os.environ.get("DATABASE_URL", "")
)

HEARTBEAT_INTERVAL_SEC = float(os.environ.get("METERLINE_HEARTBEAT_SEC", "5"))


def _db_path():
    return os.environ.get("METERLINE_DB_PATH", DEFAULT_DB_FILE)


# ── SQLite Backend ────────────────────────────────────────────────────

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    passkey TEXT,
    eakey TEXT NOT NULL UNIQUE,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS instances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    country_code TEXT NOT NULL,
    phone_number TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_instances_user ON instances(user_id);

CREATE TABLE IF NOT EXISTS billing_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL REFERENCES instances(id),
    user_id INTEGER NOT NULL REFERENCES users(id),
    started_at INTEGER NOT NULL,
    ended_at INTEGER,
    amount_cents INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_billing_records_user
    ON billing_records(user_id, started_at);
CREATE INDEX IF NOT EXISTS idx_billing_records_instance
    ON billing_records(instance_id, started_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_billing_records_one_open
    ON billing_records(instance_id) WHERE ended_at IS NULL;

CREATE TABLE IF NOT EXISTS billing (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
    amount_in_wallet REAL NOT NULL DEFAULT 0,
    amount_spent REAL NOT NULL DEFAULT 0,
    total_amount_spent REAL NOT NULL DEFAULT 0,
    average_hourly_consumption REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS user_property (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
    instance_status TEXT NOT NULL DEFAULT 'inactive',
    instance_usage REAL NOT NULL DEFAULT 0,
    api_key_active INTEGER NOT NULL DEFAULT 0
);
"""


def open_sqlite(path):
    """Open the long-lived primary connection in WAL mode with the schema in place.

    isolation_level=None leaves transaction control to the coordinator.
    check_same_thread=False is safe because every use is under the coordinator lock.
    """
    conn = sqlite3.connect(
        path, timeout=30, isolation_level=None, check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SQLITE_SCHEMA)
    return conn


# ── PostgreSQL Backend ────────────────────────────────────────────────

# Compiled from schema.metadata, which the Alembic revisions also track.
PG_SCHEMA = mirror_ddl()


def _to_pg(sql):
    """Translate qmark placeholders to psycopg's %s style."""
    return sql.replace("?", "%s")


def connect_postgres(dsn):
    """Open the single mirror connection and make sure its tables exist."""
    import psycopg

    conn = psycopg.connect(dsn, autocommit=False)
    for stmt in PG_SCHEMA:
        conn.execute(stmt)
    conn.commit()
    return conn


# ── Unit of Work ──────────────────────────────────────────────────────


class UnitOfWork:
    """Statements issued inside one primary transaction.

    Reads go straight to SQLite. Writes are also recorded so the coordinator
    can replay them on the mirror once the primary has committed.
    """

    def __init__(self, conn):
        self.conn = conn
        self.statements = []

    def fetchone(self, sql, params=()):
        row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, sql, params=()):
        return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def execute(self, sql, params=()):
        """Run a mutating statement. Returns rows affected."""
        cur = self.conn.execute(sql, params)
        self.statements.append((sql, tuple(params)))
        return cur.rowcount

    def insert(self, table, values):
        """Insert one row and return its primary-assigned id.

        The mirrored statement carries that id explicitly so both stores
        agree on keys.
        """
        cols = list(values)
        params = tuple(values[c] for c in cols)
        cur = self.conn.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})",
            params,
        )
        row_id = cur.lastrowid
        self.statements.append((
            f"INSERT INTO {table} (id, {', '.join(cols)}) "
            f"VALUES (?, {', '.join('?' for _ in cols)})",
            (row_id,) + params,
        ))
        return row_id


# ── Dual-Write Coordinator ────────────────────────────────────────────


class DualWriteCoordinator:
    """Serializes all store access and mirrors committed writes.

    One lock guards both connections. A transaction holds it from BEGIN
    through the mirror replay, so operations never interleave. A slow
    mirror therefore stalls everyone; that is the price of this design.

    Modes:
        dual:          primary + mirror
        primary-only:  mirror unconfigured or unreachable at startup.
                       Permanent for the process lifetime.
    """

    def __init__(self, db_path: Optional[str] = None,
                 secondary_dsn: Optional[str] = None, secondary=None):
        self.db_path = db_path or _db_path()
        self._lock = threading.Lock()
        self._primary = open_sqlite(self.db_path)
        self._secondary = secondary

        dsn = POSTGRES_DSN if secondary_dsn is None else secondary_dsn
        if self._secondary is None and dsn.startswith("postgres"):
            try:
                self._secondary = connect_postgres(dsn)
            except Exception as e:
                log.warning(
                    "Postgres offline: %s. Operating in primary-only mode.", e
                )
                self._secondary = None

        self.mirror_ok = 0
        self.mirror_failed = 0
        self.last_secondary_error: Optional[SecondaryError] = None
        self.heartbeats = 0
        self._heartbeat_thread = None
        self._stop = threading.Event()

        log.info("Storage initialized: primary=%s mode=%s", self.db_path, self.mode)

    @property
    def mode(self):
        return "dual" if self._secondary is not None else "primary-only"

    # ── Reads / writes ────────────────────────────────────────────────

    @contextmanager
    def read(self):
        """Lock-held primary connection for SELECTs."""
        with self._lock:
            try:
                yield self._primary
            except sqlite3.Error as e:
                log.error("PRIMARY READ FAILED: %s", e)
                raise PrimaryError(str(e)) from e

    @contextmanager
    def transaction(self):
        """One atomic unit on the primary, mirrored after commit.

        Any exception rolls the primary back and skips the mirror.
        sqlite3 errors are re-raised as PrimaryError; classified errors
        raised by the caller propagate unchanged.
        """
        with self._lock:
            conn = self._primary
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                log.error("PRIMARY BEGIN FAILED: %s", e)
                raise PrimaryError(str(e)) from e

            uow = UnitOfWork(conn)
            try:
                yield uow
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                log.error("PRIMARY WRITE FAILED: %s", e)
                raise PrimaryError(str(e), {"statements": len(uow.statements)}) from e
            except BaseException:
                self._rollback()
                raise

            self._mirror(uow.statements)

    def write(self, sql, params=()):
        """Execute one mutating statement on the primary, then the mirror."""
        with self.transaction() as uow:
            return uow.execute(sql, params)

    def _rollback(self):
        if self._primary.in_transaction:
            self._primary.execute("ROLLBACK")

    def _mirror(self, statements):
        """Replay committed statements on the secondary. Never raises."""
        if self._secondary is None or not statements:
            return
        try:
            for sql, params in statements:
                self._secondary.execute(_to_pg(sql), params)
            self._secondary.commit()
            self.mirror_ok += 1
        except Exception as e:
            try:
                self._secondary.rollback()
            except Exception as rb:
                log.debug("Mirror rollback failed: %s", rb)
            self.mirror_failed += 1
            self.last_secondary_error = SecondaryError(
                str(e), {"statements": len(statements), "first": statements[0][0]}
            )
            log.warning(
                "MIRROR FAILED statements=%d first=%r err=%s",
                len(statements), statements[0][0].strip()[:80], e,
            )

    # ── Heartbeat ─────────────────────────────────────────────────────

    def start_heartbeat(self, interval: Optional[float] = None):
        """Issue SELECT 1 through the write path every `interval` seconds."""
        if self._heartbeat_thread is not None and self._heartbeat_thread.is_alive():
            return
        interval = HEARTBEAT_INTERVAL_SEC if interval is None else interval
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval):
                try:
                    self.write("SELECT 1")
                    self.heartbeats += 1
                except PrimaryError as e:
                    log.error("HEARTBEAT primary failed: %s", e)

        self._heartbeat_thread = threading.Thread(
            target=_loop, name="meterline-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()
        log.info("Heartbeat started (every %.1fs)", interval)

    def stop_heartbeat(self, timeout=2.0):
        self._stop.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=timeout)
            self._heartbeat_thread = None

    # ── Observability ─────────────────────────────────────────────────

    def healthcheck(self):
        """Basic readiness check for the primary store."""
        try:
            with self.read() as conn:
                conn.execute("SELECT 1").fetchone()
            return {"ok": True, "db_path": self.db_path, "mode": self.mode}
        except PrimaryError as exc:
            log.error("STORAGE HEALTHCHECK FAILED db=%s err=%s", self.db_path, exc)
            return {"ok": False, "db_path": self.db_path, "error": str(exc)}

    def stats(self):
        return {
            "mode": self.mode,
            "mirror_ok": self.mirror_ok,
            "mirror_failed": self.mirror_failed,
            "last_secondary_error": (
                str(self.last_secondary_error) if self.last_secondary_error else None
            ),
            "heartbeats": self.heartbeats,
        }

    def close(self):
        self.stop_heartbeat()
        with self._lock:
            self._primary.close()
            if self._secondary is not None:
                try:
                    self._secondary.close()
                except Exception as e:
                    log.debug("Mirror close failed: %s", e)
                self._secondary = None


# ── Singleton ─────────────────────────────────────────────────────────

_coordinator = None
_coordinator_lock = threading.Lock()


def get_coordinator():
    """Get the process-wide DualWriteCoordinator."""
    global _coordinator
    if _coordinator is not None:
        return _coordinator

    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = DualWriteCoordinator()
        return _coordinator


def set_coordinator(coordinator):
    """Replace the process-wide coordinator (tests, CLI --db)."""
    global _coordinator
    with _coordinator_lock:
        _coordinator = coordinator
