# Meterline Billing Ledger
# Append-only billing windows per instance, plus the per-user billing account.
#
#   - A window contributes to totals only once it is closed
#   - Open windows get a display-only running estimate
#   - Account mutations (spend, deposit) are single UPDATE statements
#   - API-key activation charges the payment backend, then flips the flag
#     and records the spend in one transaction

import logging
import os
from typing import Optional

from db import get_coordinator
from errors import Conflict, NotFound, PaymentDeclined
from instances import wall_clock
from payments import PaymentDetails, PaymentOutcome, PaymentProvider, get_payment_provider
from pricing import SECONDS_PER_HOUR, estimate_open_charge_cents
from users import get_user_property

log = logging.getLogger("meterline")

# Dollars charged to unlock the secondary access credential (eakey)
API_KEY_PRICE = float(os.environ.get("METERLINE_API_KEY_PRICE", "10.00"))


class BillingLedger:
    """Read side of the ledger plus administrative account mutations.

    Windows themselves are opened and closed only by InstanceLifecycle.
    """

    def __init__(self, coordinator=None, clock=None):
        self.db = coordinator or get_coordinator()
        self.clock = clock or wall_clock

    # ── Windows ───────────────────────────────────────────────────────

    def list_records(self, user_id: Optional[int] = None,
                     instance_id: Optional[int] = None) -> list:
        """All windows, open and closed, oldest first."""
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if instance_id is not None:
            clauses.append("instance_id = ?")
            params.append(instance_id)
        if not clauses:
            raise ValueError("list_records needs a user_id or an instance_id")

        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM billing_records WHERE "
                + " AND ".join(clauses)
                + " ORDER BY started_at ASC, id ASC",
                params,
            ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def total_cents(records) -> int:
        """Sum of closed windows. Open windows count as zero however long they have run."""
        return sum(r["amount_cents"] for r in records if r["ended_at"] is not None)

    def open_estimate_cents(self, records, user_created_at: int) -> int:
        now = self.clock()
        return sum(
            estimate_open_charge_cents(r["started_at"], user_created_at, now)
            for r in records
            if r["ended_at"] is None
        )

    def summary(self, user_id: int) -> dict:
        """Billing view for one user: every window, the billed total, and
        what the open windows would cost if closed now."""
        with self.db.read() as conn:
            user = conn.execute(
                "SELECT created_at FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if user is None:
            raise NotFound(f"User {user_id} not found", {"user_id": user_id})

        records = self.list_records(user_id=user_id)
        return {
            "user_id": user_id,
            "records": records,
            "total_cents": self.total_cents(records),
            "open_estimate_cents": self.open_estimate_cents(records, user["created_at"]),
        }

    # ── Account ───────────────────────────────────────────────────────

    def account_summary(self, user_id: int) -> dict:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM billing WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"No billing account for user {user_id}", {"user_id": user_id})
        return dict(row)

    def record_spend(self, user_id: int, amount: float) -> dict:
        """Administrative spend: amount_spent is replaced, the lifetime total grows."""
        if amount < 0:
            raise ValueError(f"amount must be >= 0, got {amount}")
        with self.db.transaction() as tx:
            self._apply_spend(tx, user_id, amount)
        log.info("SPEND user=%d $%.2f", user_id, amount)
        return self.account_summary(user_id)

    @staticmethod
    def _apply_spend(tx, user_id: int, amount: float):
        updated = tx.execute(
            "UPDATE billing SET amount_spent = ?, "
            "total_amount_spent = total_amount_spent + ? WHERE user_id = ?",
            (amount, amount, user_id),
        )
        if not updated:
            raise NotFound(f"No billing account for user {user_id}", {"user_id": user_id})

    def deposit(self, user_id: int, amount: float) -> dict:
        if amount <= 0:
            raise ValueError(f"amount must be > 0, got {amount}")
        updated = self.db.write(
            "UPDATE billing SET amount_in_wallet = amount_in_wallet + ? WHERE user_id = ?",
            (amount, user_id),
        )
        if not updated:
            raise NotFound(f"No billing account for user {user_id}", {"user_id": user_id})
        log.info("DEPOSIT user=%d +$%.2f", user_id, amount)
        return self.account_summary(user_id)

    def refresh_hourly_average(self, user_id: int) -> float:
        """Recompute average_hourly_consumption (dollars/hour) from closed windows."""
        with self.db.transaction() as tx:
            row = tx.fetchone(
                "SELECT COALESCE(SUM(amount_cents), 0) AS cents, "
                "COALESCE(SUM(ended_at - started_at), 0) AS secs "
                "FROM billing_records WHERE user_id = ? AND ended_at IS NOT NULL",
                (user_id,),
            )
            hours = row["secs"] / SECONDS_PER_HOUR
            average = round(row["cents"] / 100 / hours, 4) if hours else 0.0
            updated = tx.execute(
                "UPDATE billing SET average_hourly_consumption = ? WHERE user_id = ?",
                (average, user_id),
            )
            if not updated:
                raise NotFound(
                    f"No billing account for user {user_id}", {"user_id": user_id}
                )
        return average

    # ── API key activation ────────────────────────────────────────────

    def activate_api_key(self, user_id: int,
                         provider: Optional[PaymentProvider] = None,
                         amount: Optional[float] = None,
                         payment_metadata: Optional[dict] = None) -> PaymentOutcome:
        """Charge for and unlock the user's API key.

        The gateway is called without holding the storage lock.

        Raises:
            NotFound: unknown user.
            Conflict: key already active.
            PaymentDeclined: the gateway refused the charge.
        """
        amount = API_KEY_PRICE if amount is None else amount
        if get_user_property(user_id, self.db)["api_key_active"]:
            raise Conflict("API key is already active", {"user_id": user_id})

        provider = provider or get_payment_provider()
        metadata = {"user_id": user_id, "purpose": "api_key_activation"}
        metadata.update(payment_metadata or {})
        outcome = provider.charge(PaymentDetails(
            amount=amount,
            description=f"API key activation for user {user_id}",
            metadata=metadata,
        ))
        if not outcome.success:
            log.warning("API KEY payment declined user=%d provider=%s: %s",
                        user_id, outcome.provider, outcome.message)
            raise PaymentDeclined(
                outcome.message or "Payment declined",
                {"user_id": user_id, "provider": outcome.provider},
            )

        with self.db.transaction() as tx:
            flipped = tx.execute(
                "UPDATE user_property SET api_key_active = ? "
                "WHERE user_id = ? AND api_key_active = ?",
                (True, user_id, False),
            )
            if flipped != 1:
                # Paid twice by a concurrent request; the transaction id is kept for a refund
                log.error("API KEY double activation user=%d txn=%s",
                          user_id, outcome.transaction_id)
                raise Conflict(
                    "API key is already active",
                    {"user_id": user_id, "transaction_id": outcome.transaction_id},
                )
            self._apply_spend(tx, user_id, amount)

        log.info("API KEY activated user=%d provider=%s txn=%s amount=$%.2f",
                 user_id, outcome.provider, outcome.transaction_id, amount)
        return outcome
