from decimal import Decimal

import structlog

from ..config import settings
from ..errors import IntegrationError
from .http import build_client, check_response
from .retry import with_retry

logger = structlog.get_logger("venueos.paypal")


def _require_config() -> None:
    if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_CLIENT_SECRET:
        raise IntegrationError("paypal", "PayPal is not configured")


def _access_token(client) -> str:
    response = client.post(
        "/v1/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
    )
    check_response("paypal", response)
    token = response.json().get("access_token")
    if not token:
        raise IntegrationError("paypal", "PayPal did not return an access token")
    return token


def _create_order(body: dict) -> dict:
    with build_client(settings.PAYPAL_API_BASE) as client:
        token = _access_token(client)
        response = client.post(
            "/v2/checkout/orders",
            json=body,
            headers={"Authorization": f"Bearer {token}", "Prefer": "return=representation"},
        )
        check_response("paypal", response)
        return response.json()


def _capture_order(order_id: str) -> dict:
    with build_client(settings.PAYPAL_API_BASE) as client:
        token = _access_token(client)
        response = client.post(
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"Authorization": f"Bearer {token}", "Prefer": "return=representation"},
        )
        check_response("paypal", response)
        return response.json()


def _refund_capture(capture_id: str, body: dict) -> dict:
    with build_client(settings.PAYPAL_API_BASE) as client:
        token = _access_token(client)
        response = client.post(
            f"/v2/payments/captures/{capture_id}/refund",
            json=body,
            headers={
                "Authorization": f"Bearer {token}",
                "Prefer": "return=representation",
                # one refund per capture, so PayPal dedupes retried calls
                "PayPal-Request-Id": f"refund-{capture_id}",
            },
        )
        check_response("paypal", response)
        return response.json()


def create_simple_order(
    *,
    custom_id: str,
    reference: str,
    description: str,
    amount: Decimal,
    return_url: str,
    cancel_url: str,
    currency: str | None = None,
) -> tuple[str, str]:
    """Creates a CAPTURE order; returns (order_id, approve_url)."""
    _require_config()
    body = {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "reference_id": reference,
                "custom_id": custom_id,
                "description": description[:127],
                "amount": {
                    "currency_code": (currency or settings.PAYPAL_CURRENCY).upper(),
                    "value": f"{Decimal(amount):.2f}",
                },
            }
        ],
        "application_context": {
            "return_url": return_url,
            "cancel_url": cancel_url,
            "user_action": "PAY_NOW",
            "shipping_preference": "NO_SHIPPING",
        },
    }
    payload = with_retry(_create_order, body)
    order_id = str(payload.get("id") or "")
    approve_url = ""
    for link in payload.get("links") or []:
        if link.get("rel") in {"approve", "payer-action"}:
            approve_url = str(link.get("href") or "")
            break
    logger.info("paypal_order_created", order_id=order_id, reference=reference)
    return order_id, approve_url


def capture_order(order_id: str) -> dict:
    """Captures an approved order; returns {"status", "transaction_id", "amount"}."""
    _require_config()
    payload = with_retry(_capture_order, order_id)
    status = str(payload.get("status") or "")
    capture = {}
    for unit in payload.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            capture = captures[0]
            break
    result = {
        "status": status,
        "transaction_id": capture.get("id"),
        "amount": (capture.get("amount") or {}).get("value"),
    }
    logger.info("paypal_order_captured", order_id=order_id, status=status)
    return result


def refund_capture(capture_id: str, amount: Decimal, reason: str | None = None, currency: str | None = None) -> dict:
    """Refunds all or part of a capture; returns {"status", "refund_id"}."""
    _require_config()
    body = {
        "amount": {
            "currency_code": (currency or settings.PAYPAL_CURRENCY).upper(),
            "value": f"{Decimal(amount):.2f}",
        }
    }
    if reason:
        body["note_to_payer"] = reason[:255]
    payload = with_retry(_refund_capture, capture_id, body)
    status = str(payload.get("status") or "")
    logger.info("paypal_capture_refunded", capture_id=capture_id, status=status)
    return {"status": status, "refund_id": payload.get("id")}
