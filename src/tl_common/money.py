"""Integer arithmetic utilities for cents-based trust ledgers.

All prices, amounts, and balances use int (cents). No float, no Decimal.
Rates are integer basis points (10000 = 100%).
"""

BPS_DENOMINATOR = 10_000


def cents_to_display(cents: int) -> str:
    """Convert cents to display string: 6500 -> '$65.00', -1200 -> '-$12.00'."""
    if cents < 0:
        abs_cents = -cents
        return f"-${abs_cents // 100:,}.{abs_cents % 100:02d}"
    return f"${cents // 100:,}.{cents % 100:02d}"


def apply_rate_bps(amount: int, rate_bps: int) -> int:
    """Apply a basis-point rate, rounding half up to the cent.

    amount = floor((amount * rate_bps + 5000) / 10000)
    Negative inputs are clamped to zero.
    """
    if amount <= 0 or rate_bps <= 0:
        return 0
    return (amount * rate_bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def bps_to_rate_display(rate_bps: int) -> str:
    """2000 -> '20.00%', 1550 -> '15.50%'."""
    return f"{rate_bps // 100}.{rate_bps % 100:02d}%"
