class NotFoundError(LookupError):
    """Raised when a tenant-scoped record does not exist."""


class IntegrationError(RuntimeError):
    """An external provider (Twilio, PayPal, OpenAI) failed or rejected the call."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientError(IntegrationError):
    """Provider failure worth retrying (5xx, throttling)."""
