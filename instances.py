# Meterline Instance Lifecycle
# inactive ⇄ active. No terminal state; instances cycle as often as users like.
#
# Activating opens a billing window. Deactivating closes it and prices it.
# Both run as one primary transaction under the coordinator lock, so an
# instance can never carry two open windows.

import logging
import os
import re
import time
from enum import Enum
from typing import Callable, Optional

from db import get_coordinator
from errors import Conflict, Inconsistent, NotFound
from pricing import SECONDS_PER_HOUR, charge_cents

LOG_FILE = os.environ.get(
    "METERLINE_LOG_FILE", os.path.join(os.path.dirname(__file__), "meterline.log")
)
DEBUG_MODE = os.environ.get("DEBUG_MODE", "").lower() in ("1", "true")


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=None):
    """Console + file. Configured once per process."""
    log_file = log_file or LOG_FILE
    level = level or (logging.DEBUG if DEBUG_MODE else logging.INFO)
    logger = logging.getLogger("meterline")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = setup_logging()


# ── States ────────────────────────────────────────────────────────────


class InstanceState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


def wall_clock() -> int:
    return int(time.time())


# ── Validation ────────────────────────────────────────────────────────

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")


def _validate_country(value):
    code = str(value or "").strip().upper()
    if not _COUNTRY_RE.match(code):
        raise ValueError(f"Invalid country_code: {value!r} (expected ISO 3166-1 alpha-2)")
    return code


def _validate_phone(value):
    phone = re.sub(r"[\s().-]", "", str(value or ""))
    if not _PHONE_RE.match(phone):
        raise ValueError(f"Invalid phone_number: {value!r}")
    return phone


def _with_status(instance):
    instance["status"] = (
        InstanceState.ACTIVE.value if instance["active"] else InstanceState.INACTIVE.value
    )
    return instance


# ── Lifecycle ─────────────────────────────────────────────────────────


class InstanceLifecycle:
    """State machine over the `instances` table and its billing windows.

    Args:
        coordinator: DualWriteCoordinator to run statements through.
        clock: Returns the current Unix time in whole seconds. Inject a
            fake in tests.
    """

    def __init__(self, coordinator=None, clock: Optional[Callable[[], int]] = None):
        self.db = coordinator or get_coordinator()
        self.clock = clock or wall_clock

    # ── Provisioning ──────────────────────────────────────────────────

    def create_instance(self, user_id: int, country_code: str, phone_number: str) -> dict:
        """Provision a new instance. It starts inactive."""
        country = _validate_country(country_code)
        phone = _validate_phone(phone_number)
        now = self.clock()

        with self.db.transaction() as tx:
            if tx.fetchone("SELECT id FROM users WHERE id = ?", (user_id,)) is None:
                raise NotFound(f"User {user_id} not found", {"user_id": user_id})
            instance_id = tx.insert("instances", {
                "user_id": user_id,
                "country_code": country,
                "phone_number": phone,
                "active": 0,
                "created_at": now,
            })

        log.info("INSTANCE %d created user=%d country=%s", instance_id, user_id, country)
        return _with_status({
            "id": instance_id,
            "user_id": user_id,
            "country_code": country,
            "phone_number": phone,
            "active": 0,
            "created_at": now,
        })

    def get_instance(self, instance_id: int) -> dict:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM instances WHERE id = ?", (instance_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"Instance {instance_id} not found", {"instance_id": instance_id})
        return _with_status(dict(row))

    def list_instances(self, user_id: int) -> list:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM instances WHERE user_id = ? ORDER BY id ASC", (user_id,)
            ).fetchall()
        return [_with_status(dict(r)) for r in rows]

    # ── Transitions ───────────────────────────────────────────────────

    def activate(self, instance_id: int) -> dict:
        """inactive → active. Opens a billing window and returns it.

        Raises:
            NotFound: unknown instance.
            Conflict: instance is already active.
        """
        now = self.clock()
        with self.db.transaction() as tx:
            instance = self._load(tx, instance_id)
            if instance["active"]:
                raise Conflict(
                    "Instance is already active", {"instance_id": instance_id}
                )

            # Conditional on active = 0 so a second writer can never flip it twice
            updated = tx.execute(
                "UPDATE instances SET active = 1 WHERE id = ? AND active = 0",
                (instance_id,),
            )
            if updated != 1:
                raise Conflict(
                    "Instance is already active", {"instance_id": instance_id}
                )

            record = {
                "instance_id": instance_id,
                "user_id": instance["user_id"],
                "started_at": now,
                "ended_at": None,
                "amount_cents": 0,
            }
            record["id"] = tx.insert("billing_records", record)
            self._sync_property(tx, instance["user_id"])

        log.info("ACTIVATE instance=%d user=%d window=%d started_at=%d",
                 instance_id, instance["user_id"], record["id"], now)
        return record

    def deactivate(self, instance_id: int) -> dict:
        """active → inactive. Closes and prices the open window, returns it.

        Raises:
            NotFound: unknown instance.
            Conflict: instance is already inactive.
            Inconsistent: the instance is active but the ledger disagrees.
        """
        now = self.clock()
        with self.db.transaction() as tx:
            instance = self._load(tx, instance_id)
            if not instance["active"]:
                raise Conflict(
                    "Instance is already inactive", {"instance_id": instance_id}
                )
            user_id = instance["user_id"]
            context = {"instance_id": instance_id, "user_id": user_id, "now": now}

            user = tx.fetchone("SELECT created_at FROM users WHERE id = ?", (user_id,))
            if user is None:
                raise self._inconsistent("Instance owner does not exist", context)

            window = tx.fetchone(
                "SELECT * FROM billing_records "
                "WHERE instance_id = ? AND ended_at IS NULL",
                (instance_id,),
            )
            if window is None:
                raise self._inconsistent(
                    "Active instance has no open billing window", context
                )

            duration = now - window["started_at"]
            if duration < 0:
                context.update(window_id=window["id"], started_at=window["started_at"])
                raise self._inconsistent(
                    "Billing window started in the future", context
                )

            amount = charge_cents(duration, user["created_at"], window["started_at"])

            tx.execute(
                "UPDATE billing_records SET ended_at = ?, amount_cents = ? "
                "WHERE id = ? AND ended_at IS NULL",
                (now, amount, window["id"]),
            )
            tx.execute("UPDATE instances SET active = 0 WHERE id = ?", (instance_id,))
            tx.execute(
                "UPDATE user_property SET instance_usage = instance_usage + ? "
                "WHERE user_id = ?",
                (round(duration / SECONDS_PER_HOUR, 6), user_id),
            )
            self._sync_property(tx, user_id)

        window.update(ended_at=now, amount_cents=amount)
        log.info("DEACTIVATE instance=%d user=%d window=%d duration=%ds charge=%dc",
                 instance_id, user_id, window["id"], duration, amount)
        return window

    # ── Repair ────────────────────────────────────────────────────────

    def reconcile(self) -> list:
        """Startup repair pass over the open-window invariant.

        - active without an open window → set inactive. No charge is invented.
        - inactive with an open window → set active. The window is authoritative.
        """
        repairs = []
        with self.db.transaction() as tx:
            orphaned = tx.fetchall(
                "SELECT i.id, i.user_id FROM instances i "
                "WHERE i.active = 1 AND NOT EXISTS ("
                "  SELECT 1 FROM billing_records b "
                "  WHERE b.instance_id = i.id AND b.ended_at IS NULL)"
            )
            for row in orphaned:
                tx.execute("UPDATE instances SET active = 0 WHERE id = ?", (row["id"],))
                repairs.append({
                    "instance_id": row["id"],
                    "user_id": row["user_id"],
                    "action": "deactivated",
                    "reason": "active without open billing window",
                })

            stranded = tx.fetchall(
                "SELECT i.id, i.user_id FROM instances i "
                "WHERE i.active = 0 AND EXISTS ("
                "  SELECT 1 FROM billing_records b "
                "  WHERE b.instance_id = i.id AND b.ended_at IS NULL)"
            )
            for row in stranded:
                tx.execute("UPDATE instances SET active = 1 WHERE id = ?", (row["id"],))
                repairs.append({
                    "instance_id": row["id"],
                    "user_id": row["user_id"],
                    "action": "activated",
                    "reason": "inactive with open billing window",
                })

            for user_id in sorted({r["user_id"] for r in repairs}):
                self._sync_property(tx, user_id)

        for r in repairs:
            log.warning("RECONCILE instance=%d user=%d %s (%s)",
                        r["instance_id"], r["user_id"], r["action"], r["reason"])
        if not repairs:
            log.info("RECONCILE ledger consistent, nothing to repair")
        return repairs

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _load(tx, instance_id):
        instance = tx.fetchone("SELECT * FROM instances WHERE id = ?", (instance_id,))
        if instance is None:
            raise NotFound(f"Instance {instance_id} not found", {"instance_id": instance_id})
        return instance

    @staticmethod
    def _sync_property(tx, user_id):
        """Mirror the user's aggregate instance status into user_property."""
        row = tx.fetchone(
            "SELECT COUNT(*) AS n FROM instances WHERE user_id = ? AND active = 1",
            (user_id,),
        )
        status = InstanceState.ACTIVE if row["n"] else InstanceState.INACTIVE
        tx.execute(
            "UPDATE user_property SET instance_status = ? WHERE user_id = ?",
            (status.value, user_id),
        )

    @staticmethod
    def _inconsistent(message, context):
        log.error("INCONSISTENT %s context=%s", message, context)
        return Inconsistent(message, context)
