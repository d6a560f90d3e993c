import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

HOURS_PER_DAY = 24
HOURS_PER_WEEK = 24 * 7
HOURS_PER_MONTH = 24 * 30

# largest first; hour must stay last
_UNITS = (
    ("month", HOURS_PER_MONTH, "monthly_rate"),
    ("week", HOURS_PER_WEEK, "weekly_rate"),
    ("day", HOURS_PER_DAY, "daily_rate"),
    ("hour", 1, "hourly_rate"),
)


def _rate(rates, attr: str) -> Decimal:
    value = rates[attr] if isinstance(rates, dict) else getattr(rates, attr)
    return Decimal(str(value))


def _cheapest(hours: int, units, rates, memo: dict) -> tuple[Decimal, list[dict]]:
    key = (hours, len(units))
    if key in memo:
        return memo[key]
    unit, size, attr = units[0]
    rate = _rate(rates, attr)
    if len(units) == 1:
        lines = [{"unit": unit, "quantity": hours, "rate": rate, "subtotal": rate * hours}] if hours > 0 else []
        memo[key] = (rate * max(hours, 0), lines)
        return memo[key]

    best = None
    # most blocks first, so ties keep the larger unit
    for qty in range(-(-hours // size), -1, -1):
        rest_cost, rest_lines = _cheapest(max(0, hours - qty * size), units[1:], rates, memo)
        cost = rate * qty + rest_cost
        if best is None or cost < best[0]:
            lines = [{"unit": unit, "quantity": qty, "rate": rate, "subtotal": rate * qty}] if qty else []
            best = (cost, lines + rest_lines)
    memo[key] = best
    return best


def calculate_parking_price(start: datetime, end: datetime, rates) -> dict:
    """
    Cheapest mix of monthly (30 day), weekly, daily and hourly blocks covering
    start..end; partial hours are charged as a whole hour.

    `rates` is a ParkingRate row or a dict with the four *_rate keys. Returns
    {"total", "hours", "breakdown": [{"unit", "quantity", "rate", "subtotal"}]}.
    """
    if end <= start:
        raise ValueError("End time must be after start time")
    hours = math.ceil((end - start).total_seconds() / 3600)
    total, breakdown = _cheapest(hours, _UNITS, rates, {})
    cent = Decimal("0.01")
    for line in breakdown:
        line["rate"] = line["rate"].quantize(cent, rounding=ROUND_HALF_UP)
        line["subtotal"] = line["subtotal"].quantize(cent, rounding=ROUND_HALF_UP)
    return {
        "total": total.quantize(cent, rounding=ROUND_HALF_UP),
        "hours": hours,
        "breakdown": breakdown,
    }
