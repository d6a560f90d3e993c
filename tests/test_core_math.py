import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from venueos.core.invoice_math import (
    add_months,
    calculate_invoice_totals,
    format_invoice_number,
    next_recurring_date,
)
from venueos.core.loyalty import (
    DEFAULT_TIERS,
    check_in_points,
    decode_qr_payload,
    encode_qr_payload,
    generate_redemption_code,
    resolve_tier,
)
from venueos.core.parking_pricing import calculate_parking_price
from venueos.core.retry import retryable, with_retry
from venueos.errors import IntegrationError, TransientError
from venueos.jobs import backoff_seconds

RATES = {"hourly_rate": 5, "daily_rate": 20, "weekly_rate": 100, "monthly_rate": 300}


def test_invoice_totals_spread_invoice_discount_before_vat():
    totals = calculate_invoice_totals(
        [
            {"quantity": 2, "unit_price": 10, "discount_percentage": 10, "vat_rate": 20},
            {"quantity": 1, "unit_price": 50, "discount_percentage": 0, "vat_rate": 0},
        ],
        invoice_discount_pct=10,
    )
    assert totals["subtotal_amount"] == Decimal("68.00")
    assert totals["discount_amount"] == Decimal("6.80")
    assert totals["vat_amount"] == Decimal("3.24")
    assert totals["total_amount"] == Decimal("64.44")
    assert totals["lines"][0]["total_amount"] == Decimal("19.44")
    assert totals["lines"][1]["vat_amount"] == Decimal("0.00")


def test_invoice_totals_round_half_up_to_pennies():
    totals = calculate_invoice_totals([{"quantity": 1, "unit_price": "0.125", "vat_rate": 0}])
    assert totals["total_amount"] == Decimal("0.13")


def test_invoice_number_uses_offset_base36():
    assert format_invoice_number("INV", 1, 5000) == "INV-003UX"
    assert format_invoice_number("INV", 0, 0) == "INV-00000"


def test_month_arithmetic_clamps_to_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert next_recurring_date(date(2026, 11, 30), "quarterly") == date(2027, 2, 28)
    assert next_recurring_date(date(2026, 3, 1), "weekly") == date(2026, 3, 8)
    with pytest.raises(ValueError):
        next_recurring_date(date(2026, 3, 1), "fortnightly")


def test_parking_price_hourly_for_short_stays():
    start = datetime(2026, 5, 1, 9, 0)
    quote = calculate_parking_price(start, start + timedelta(minutes=90), RATES)
    assert quote["hours"] == 2
    assert quote["total"] == Decimal("10.00")
    assert quote["breakdown"] == [
        {"unit": "hour", "quantity": 2, "rate": Decimal("5.00"), "subtotal": Decimal("10.00")}
    ]


def test_parking_price_rounds_up_to_day_when_cheaper():
    start = datetime(2026, 5, 1, 9, 0)
    quote = calculate_parking_price(start, start + timedelta(hours=5), RATES)
    assert quote["total"] == Decimal("20.00")
    assert [line["unit"] for line in quote["breakdown"]] == ["day"]


def test_parking_price_mixes_days_and_hours():
    start = datetime(2026, 5, 1, 9, 0)
    quote = calculate_parking_price(start, start + timedelta(hours=26), RATES)
    assert quote["total"] == Decimal("30.00")
    assert [(line["unit"], line["quantity"]) for line in quote["breakdown"]] == [("day", 1), ("hour", 2)]


def test_parking_price_prefers_days_over_an_expensive_week():
    start = datetime(2026, 5, 1, 9, 0)
    pricey_week = {**RATES, "weekly_rate": 150}
    quote = calculate_parking_price(start, start + timedelta(days=7), pricey_week)
    assert quote["total"] == Decimal("140.00")
    assert [(line["unit"], line["quantity"]) for line in quote["breakdown"]] == [("day", 7)]

    # at the usual rates the week wins
    assert calculate_parking_price(start, start + timedelta(days=7), RATES)["total"] == Decimal("100.00")


def test_parking_price_rejects_inverted_window():
    start = datetime(2026, 5, 1, 9, 0)
    with pytest.raises(ValueError, match="End time must be after start time"):
        calculate_parking_price(start, start, RATES)


def test_check_in_points_scale_with_multiplier():
    assert check_in_points(50, Decimal("1")) == 50
    assert check_in_points(50, Decimal("1.5")) == 75
    assert check_in_points(5, "1.5") == 8


def test_resolve_tier_picks_highest_reached_threshold():
    tiers = [SimpleNamespace(**t) for t in DEFAULT_TIERS]
    assert resolve_tier(tiers, 0).name == "VIP Member"
    assert resolve_tier(tiers, 12).name == "Silver VIP"
    assert resolve_tier(tiers, 400).name == "Platinum VIP"


def test_redemption_code_shape():
    assert re.fullmatch(r"[A-F]{3}\d{4}", generate_redemption_code())


def test_qr_payload_decodes_and_rejects_garbage():
    expires = datetime(2026, 5, 1, 23, 0)
    payload = decode_qr_payload(encode_qr_payload(event_id=7, booking_id=None, token="abc", expires=expires))
    assert payload["type"] == "loyalty_checkin"
    assert payload["event_id"] == 7
    assert payload["expires"] == expires.isoformat()
    with pytest.raises(ValueError, match="Invalid QR code format"):
        decode_qr_payload("not-a-qr-code!!")


def test_retryable_retries_transient_failures_only():
    calls = []

    @retryable(attempts=3)
    def flaky(result):
        calls.append(result)
        if len(calls) < 3:
            raise TransientError("twilio", "Twilio returned 503", status_code=503)
        return result

    assert flaky("ok") == "ok"
    assert len(calls) == 3

    rejected = []

    @retryable(attempts=3)
    def bad_request():
        rejected.append(1)
        raise IntegrationError("paypal", "PayPal returned 422", status_code=422)

    with pytest.raises(IntegrationError, match="422"):
        bad_request()
    assert rejected == [1]


def test_with_retry_reraises_after_last_attempt():
    def always_down():
        raise TransientError("openai", "OpenAI returned 502", status_code=502)

    with pytest.raises(TransientError):
        with_retry(always_down, attempts=2)


def test_job_backoff_doubles_and_caps_at_an_hour():
    assert [backoff_seconds(n) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]
    assert backoff_seconds(0) == 30
    assert backoff_seconds(12) == 3600
