import base64
import hashlib
import hmac

import structlog

from ..config import settings
from ..errors import IntegrationError
from .http import build_client, check_response
from .retry import with_retry

logger = structlog.get_logger("venueos.twilio")


def is_configured() -> bool:
    return bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_PHONE_NUMBER)


def _post_message(to: str, body: str) -> dict:
    path = f"/2010-04-01/Accounts/{settings.TWILIO_ACCOUNT_SID}/Messages.json"
    with build_client(
        settings.TWILIO_API_BASE,
        auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
    ) as client:
        response = client.post(
            path,
            data={"To": to, "From": settings.TWILIO_PHONE_NUMBER, "Body": body},
        )
        check_response("twilio", response)
        return response.json()


def send_message(to: str, body: str) -> dict:
    """Returns {"sid", "status"} for the queued Twilio message."""
    if not is_configured():
        raise IntegrationError("twilio", "Twilio is not configured")
    payload = with_retry(_post_message, to, body)
    sid = str(payload.get("sid") or "")
    status = str(payload.get("status") or "queued")
    logger.info("sms_dispatched", to=to[-4:], sid=sid, status=status)
    return {"sid": sid, "status": status}


def compute_signature(url: str, params: dict) -> str:
    """Twilio request signature: base64 HMAC-SHA1 over the URL plus sorted POST key/value pairs."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(settings.TWILIO_AUTH_TOKEN.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def is_valid_signature(url: str, params: dict, signature: str | None) -> bool:
    if not settings.TWILIO_AUTH_TOKEN or not signature:
        return False
    return hmac.compare_digest(compute_signature(url, params), signature.strip())
