import calendar
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def _pct(amount: Decimal, pct) -> Decimal:
    return amount * to_decimal(pct) / _HUNDRED


def calculate_invoice_totals(line_items: list[dict], invoice_discount_pct=0) -> dict:
    """
    Line discount first, then the invoice-level discount spread over lines in
    proportion to their discounted subtotal, then VAT on what remains.

    Each line item needs quantity, unit_price, discount_percentage and vat_rate.
    Returns subtotal/discount/vat/total plus a per-line breakdown, all rounded
    half-up to pennies.
    """
    lines = []
    subtotal = Decimal("0")
    for item in line_items:
        line_subtotal = to_decimal(item.get("quantity")) * to_decimal(item.get("unit_price"))
        line_discount = _pct(line_subtotal, item.get("discount_percentage") or 0)
        line_after = line_subtotal - line_discount
        subtotal += line_after
        lines.append(
            {
                "subtotal_amount": line_subtotal,
                "discount_amount": line_discount,
                "after_discount": line_after,
                "vat_rate": to_decimal(item.get("vat_rate") or 0),
            }
        )

    invoice_discount = _pct(subtotal, invoice_discount_pct or 0)
    vat_total = Decimal("0")
    breakdown = []
    for line in lines:
        share = (line["after_discount"] / subtotal * invoice_discount) if subtotal else Decimal("0")
        taxable = line["after_discount"] - share
        vat = _pct(taxable, line["vat_rate"])
        vat_total += vat
        breakdown.append(
            {
                "subtotal_amount": money(line["subtotal_amount"]),
                "discount_amount": money(line["discount_amount"]),
                "vat_amount": money(vat),
                "total_amount": money(taxable + vat),
            }
        )

    return {
        "subtotal_amount": money(subtotal),
        "discount_amount": money(invoice_discount),
        "vat_amount": money(vat_total),
        "total_amount": money(subtotal - invoice_discount + vat_total),
        "lines": breakdown,
    }


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def format_invoice_number(series_code: str, sequence: int, offset: int) -> str:
    return f"{series_code}-{to_base36(sequence + offset).zfill(5)}"


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def next_recurring_date(current: date, frequency: str) -> date:
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency == "monthly":
        return add_months(current, 1)
    if frequency == "quarterly":
        return add_months(current, 3)
    if frequency == "yearly":
        return add_months(current, 12)
    raise ValueError(f"Unknown frequency: {frequency}")
