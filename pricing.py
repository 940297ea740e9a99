# Meterline Pricing
# Pro-rated hourly rate with a new-user promotion.
#
#   base  = round(duration_secs / 3600 * HOURLY_RATE_CENTS)
#   final = round(base * (100 - PROMO_DISCOUNT_PCT) / 100)   if promotional
#
# Rounding is half away from zero and happens at each stage: base first,
# then the discount. 1h at 48c/h under promotion is 48 -> 33.6 -> 34.

import os
from decimal import ROUND_HALF_UP, Decimal

HOURLY_RATE_CENTS = int(os.environ.get("METERLINE_HOURLY_RATE_CENTS", "48"))
PROMO_DISCOUNT_PCT = int(os.environ.get("METERLINE_PROMO_DISCOUNT_PCT", "30"))

# Two 30-day months
PROMO_DURATION_SECS = int(
    os.environ.get("METERLINE_PROMO_DURATION_SECS", str(2 * 30 * 24 * 60 * 60))
)

SECONDS_PER_HOUR = 3600


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_promotional(user_created_at: int, window_started_at: int) -> bool:
    """True when the window opened within the promotion period (boundary inclusive)."""
    return window_started_at - user_created_at <= PROMO_DURATION_SECS


def charge_cents(duration_secs: int, user_created_at: int, window_started_at: int) -> int:
    """Charge for one closed billing window, in cents.

    Promotion eligibility is decided by when the window *started*, not when
    it ended, so a window that straddles the promotion boundary is billed
    entirely at the discounted rate.

    Raises:
        ValueError: if duration_secs is negative.
    """
    if duration_secs < 0:
        raise ValueError(f"duration_secs must be >= 0, got {duration_secs}")
    if duration_secs == 0:
        return 0

    base = _round_half_up(
        Decimal(duration_secs) * HOURLY_RATE_CENTS / SECONDS_PER_HOUR
    )
    if not is_promotional(user_created_at, window_started_at):
        return base
    return _round_half_up(Decimal(base) * (100 - PROMO_DISCOUNT_PCT) / 100)


def estimate_open_charge_cents(started_at: int, user_created_at: int, now: int) -> int:
    """Running charge for a window that is still open.

    Display only. Clock skew that puts `now` before `started_at` reads as zero.
    """
    return charge_cents(max(0, now - started_at), user_created_at, started_at)


def cents_to_dollars(cents: int) -> float:
    return round(cents / 100, 2)
