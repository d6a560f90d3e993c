import base64
import binascii
import json
import secrets
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal


DEFAULT_TIERS = (
    {"level": 1, "name": "VIP Member", "min_events": 0, "point_multiplier": Decimal("1"), "color": "#6B7280"},
    {"level": 2, "name": "Bronze VIP", "min_events": 5, "point_multiplier": Decimal("2"), "color": "#CD7F32"},
    {"level": 3, "name": "Silver VIP", "min_events": 10, "point_multiplier": Decimal("3"), "color": "#C0C0C0"},
    {"level": 4, "name": "Gold VIP", "min_events": 20, "point_multiplier": Decimal("4"), "color": "#FFD700"},
    {"level": 5, "name": "Platinum VIP", "min_events": 40, "point_multiplier": Decimal("6"), "color": "#E5E4E2"},
)

QR_TYPE = "loyalty_checkin"
_CODE_LETTERS = "ABCDEF"


def check_in_points(base_points: int, multiplier) -> int:
    """Base check-in points scaled by the tier multiplier, rounded half-up."""
    scaled = Decimal(int(base_points)) * Decimal(str(multiplier or 1))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_tier(tiers, lifetime_events: int):
    """Highest tier whose min_events threshold the member has reached."""
    best = None
    for tier in sorted(tiers, key=lambda t: t.level):
        if tier.min_events <= lifetime_events:
            best = tier
    return best


def generate_redemption_code() -> str:
    letters = "".join(secrets.choice(_CODE_LETTERS) for _ in range(3))
    digits = "".join(secrets.choice("0123456789") for _ in range(4))
    return letters + digits


def generate_qr_token() -> str:
    return secrets.token_hex(32)


def encode_qr_payload(*, event_id: int, booking_id: int | None, token: str, expires: datetime) -> str:
    payload = {
        "type": QR_TYPE,
        "event_id": event_id,
        "booking_id": booking_id,
        "token": token,
        "expires": expires.isoformat(),
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_qr_payload(qr_data: str) -> dict:
    try:
        raw = base64.b64decode((qr_data or "").strip(), validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Invalid QR code format") from exc
    if not isinstance(payload, dict):
        raise ValueError("Invalid QR code format")
    return payload
