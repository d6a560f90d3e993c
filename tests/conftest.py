import os
import tempfile
from pathlib import Path

# Settings are read at import time; keep stray writes out of the working tree.
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="venueos-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_RUNTIME_DIR / 'venueos.db'}")
os.environ.setdefault("CACHE_DIR", str(_RUNTIME_DIR / "cache"))

import pytest  # noqa: E402
from diskcache import Cache  # noqa: E402

from venueos.config import settings  # noqa: E402
from venueos.core.cache import set_cache  # noqa: E402
from venueos.core.http import set_transport  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch):
    cache = Cache(str(tmp_path / "cache"))
    set_cache(cache)
    set_transport(None)
    monkeypatch.setattr(settings, "CACHE_ENABLED", True)
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "RETRY_MAX_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "SMS_ENABLED", True)
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "")
    monkeypatch.setattr(settings, "TWILIO_PHONE_NUMBER", "")
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", "")
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_SECRET", "")
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    yield
    set_transport(None)
    set_cache(None)
    cache.close()


@pytest.fixture
def twilio_configured(monkeypatch):
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "twilio-secret")
    monkeypatch.setattr(settings, "TWILIO_PHONE_NUMBER", "+447700900000")
    monkeypatch.setattr(settings, "TWILIO_API_BASE", "https://twilio.test")
