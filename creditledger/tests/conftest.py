import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest

from creditledger.models import AiProcessRequest, CreditClass, ProviderResult
from creditledger.service import ChargeEngine
from creditledger.sql import SqlStorage
from creditledger.storage import InMemoryStorage

USER_ID = 5
TOKEN = "tok-user-5"
CUSTOMER_ID = "cus_5"
WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2025, 11, 20, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def sign(payload: str, timestamp: int, secret: str = WEBHOOK_SECRET) -> str:
    mac = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage(timeout=30)
    else:
        store = SqlStorage(f"sqlite:///{tmp_path / 'ledger.db'}", timeout=30)
        store.create_schema()
    store.add_user(USER_ID, TOKEN, stripe_customer_id=CUSTOMER_ID, basis=100, premium=0)
    yield store
    if isinstance(store, SqlStorage):
        store.engine.dispose()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def engine(storage, clock):
    engine = ChargeEngine(storage, clock=clock, provider_timeout=2)
    yield engine
    engine.close()


class FakeAction:
    """Paid action that charges one credit per character."""

    def __init__(self, name="fake", credit_class=CreditClass.BASIS, error=None, wait_for=None):
        self.name = name
        self.credit_class = credit_class
        self.error = error
        self.wait_for = wait_for
        self.calls = 0

    def cost(self, request):
        return len(request.text)

    def execute(self, request):
        self.calls += 1
        if self.wait_for is not None:
            self.wait_for.wait(5)
        if self.error is not None:
            raise self.error
        if isinstance(request, AiProcessRequest):
            return ProviderResult(provider=self.name, text=request.text.upper())
        return ProviderResult(provider=self.name, content_type="audio/mpeg", audio=b"ID3" + request.text.encode())
