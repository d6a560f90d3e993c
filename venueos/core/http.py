import httpx

from ..errors import IntegrationError, TransientError

_transport: httpx.BaseTransport | None = None


def set_transport(transport: httpx.BaseTransport | None) -> None:
    """Routes every provider client through `transport` (tests use httpx.MockTransport)."""
    global _transport
    _transport = transport


def build_client(base_url: str, timeout: float = 30.0, **kwargs) -> httpx.Client:
    if _transport is not None:
        kwargs.setdefault("transport", _transport)
    return httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, **kwargs)


def check_response(provider: str, response: httpx.Response) -> httpx.Response:
    if response.status_code < 400:
        return response
    detail = response.text[:300]
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientError(provider, f"{provider} unavailable ({response.status_code})", response.status_code)
    raise IntegrationError(provider, f"{provider} rejected the request ({response.status_code}): {detail}", response.status_code)
