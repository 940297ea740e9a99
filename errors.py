# Meterline Error Taxonomy
# Every failure the core can hand back to a caller is one of these.
# The HTTP layer maps `code` and `status` straight into the JSON envelope.

from typing import Optional


class MeterlineError(Exception):
    """Base class for classified errors.

    Args:
        message: Human-readable summary, safe to show to callers.
        context: Key-value context for structured logging.
    """

    code = "error"
    status = 500

    def __init__(self, message: str, context: Optional[dict] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class NotFound(MeterlineError):
    """Unknown user, instance or billing account."""
    code = "not_found"
    status = 404


class Conflict(MeterlineError):
    """A state-transition precondition does not hold."""
    code = "conflict"
    status = 409


class Inconsistent(MeterlineError):
    """A ledger invariant is broken. Always a server-side bug signal."""
    code = "inconsistent"
    status = 500


class PrimaryError(MeterlineError):
    """The authoritative store rejected or failed a statement."""
    code = "storage_error"
    status = 500


class SecondaryError(MeterlineError):
    """The mirror store failed. Logged by the coordinator, never raised to callers."""
    code = "mirror_error"
    status = 500


class PaymentDeclined(MeterlineError):
    code = "payment_declined"
    status = 402
