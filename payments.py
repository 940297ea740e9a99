# Meterline Payment Backends
# One capability: charge(details) -> PaymentOutcome. The backend is picked
# once at process start and call sites never branch on which one it is.
#
# Payment is always decided server-side. Callers pass what the gateway needs
# (amount, description, metadata such as a payment method id); the backend
# alone says whether money moved.
#
#   DUMMY_PAYMENT_MODE=true          -> every charge succeeds (dev/test only)
#   METERLINE_STRIPE_SECRET_KEY=sk_  -> Stripe PaymentIntents

import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional

log = logging.getLogger("meterline.payments")

# ── Configuration ─────────────────────────────────────────────────────

DUMMY_PAYMENT_MODE = os.environ.get("DUMMY_PAYMENT_MODE", "").lower() in ("1", "true")
STRIPE_SECRET_KEY = os.environ.get("METERLINE_STRIPE_SECRET_KEY", "")
STRIPE_CURRENCY = os.environ.get("METERLINE_STRIPE_CURRENCY", "usd")


# ── Data Models ───────────────────────────────────────────────────────

@dataclass
class PaymentDetails:
    """Provider-agnostic description of a charge. `amount` is in dollars."""
    amount: float
    description: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class PaymentOutcome:
    success: bool
    provider: str
    message: str = ""
    transaction_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ── Providers ─────────────────────────────────────────────────────────

class PaymentProvider:
    """Base class for charge backends."""

    name = "base"

    def charge(self, details: PaymentDetails) -> PaymentOutcome:
        raise NotImplementedError


class DummyPaymentProvider(PaymentProvider):
    """Approves everything. Never enable in production."""

    name = "dummy"

    def charge(self, details: PaymentDetails) -> PaymentOutcome:
        return PaymentOutcome(
            success=True,
            provider=self.name,
            message=f"Dummy charge of ${details.amount:.2f} approved.",
            transaction_id=f"dummy_txn_{uuid.uuid4()}",
        )


class StripePaymentProvider(PaymentProvider):
    """Confirms a Stripe PaymentIntent synchronously.

    Expects `metadata["payment_method"]` to hold a Stripe payment method id.
    Redirect-based methods are refused; this runs inside an API call.
    """

    name = "stripe"

    def __init__(self, secret_key: str = STRIPE_SECRET_KEY,
                 currency: str = STRIPE_CURRENCY):
        import stripe

        stripe.api_key = secret_key
        self.stripe = stripe
        self.currency = currency
        log.info("Stripe payments ENABLED (key prefix: %s...)", secret_key[:7])

    def charge(self, details: PaymentDetails) -> PaymentOutcome:
        metadata = dict(details.metadata)
        payment_method = metadata.pop("payment_method", None)
        if not payment_method:
            return PaymentOutcome(False, self.name, "payment_method is required")

        try:
            intent = self.stripe.PaymentIntent.create(
                amount=int(round(details.amount * 100)),
                currency=self.currency,
                description=details.description,
                metadata={k: str(v) for k, v in metadata.items()},
                payment_method=payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )
        except self.stripe.StripeError as e:
            log.warning("STRIPE charge failed: %s", e)
            return PaymentOutcome(False, self.name, getattr(e, "user_message", None) or str(e))

        if intent.status != "succeeded":
            return PaymentOutcome(
                False, self.name, f"Payment {intent.status}", transaction_id=intent.id
            )
        return PaymentOutcome(True, self.name, "Payment succeeded", transaction_id=intent.id)


# ── Factory ───────────────────────────────────────────────────────────

_provider: Optional[PaymentProvider] = None


def get_payment_provider() -> PaymentProvider:
    """Resolve the configured backend once per process.

    Raises:
        RuntimeError: no backend is configured.
    """
    global _provider
    if _provider is not None:
        return _provider

    if DUMMY_PAYMENT_MODE:
        log.warning("DUMMY_PAYMENT_MODE enabled, all payments will auto-succeed.")
        _provider = DummyPaymentProvider()
    elif STRIPE_SECRET_KEY.startswith("sk_"):
        _provider = StripePaymentProvider()
    else:
        raise RuntimeError(
            "No payment provider configured. Set DUMMY_PAYMENT_MODE=true for "
            "development or METERLINE_STRIPE_SECRET_KEY for Stripe."
        )
    return _provider


def set_payment_provider(provider: Optional[PaymentProvider]):
    global _provider
    _provider = provider
