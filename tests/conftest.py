"""Fixtures compartilhadas: banco SQLite temporário, gateway falso e relógio fixo."""

import threading
import time

import pytest

from shop_token_sync.database import SyncStatusStore, TokenStore
from shop_token_sync.events import EventEmitter
from shop_token_sync.gateway import AuthGateway
from shop_token_sync.models import AccessToken
from shop_token_sync.token_manager import TokenLifecycleManager

NOW_MS = 1_700_000_000_000
MINUTE_MS = 60 * 1000


class FixedClock:
    def __init__(self, value=NOW_MS):
        self.value = value

    def __call__(self):
        return self.value

    def advance_minutes(self, minutes):
        self.value += int(minutes * MINUTE_MS)


class FakeGateway(AuthGateway):
    """Gateway em memória. failures: shop_id -> exceção levantada no refresh."""

    def __init__(self, clock, expire_in=14400, delay=0.0):
        self.clock = clock
        self.expire_in = expire_in
        self.delay = delay
        self.failures = {}
        self.code_response = {}
        self.refresh_calls = []
        self.code_calls = []
        self.before_refresh = None
        self._counter = 0
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def exchange_code(self, code, shop_id=None):
        self.code_calls.append((code, shop_id))
        payload = {
            "access_token": f"access-{code}",
            "refresh_token": f"refresh-{code}",
            "expire_in": self.expire_in,
            "request_id": "req-1",
        }
        payload.update(self.code_response)
        return AccessToken.from_exchange(payload, shop_id=shop_id, issued_at_ms=self.clock())

    def exchange_refresh_token(self, refresh_token, shop_id=None, merchant_id=None):
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            self._counter += 1
            n = self._counter
            self.refresh_calls.append((refresh_token, shop_id, merchant_id))
        try:
            if self.before_refresh is not None:
                self.before_refresh(shop_id)
            if self.delay:
                time.sleep(self.delay)
            if shop_id in self.failures:
                raise self.failures[shop_id]
            return AccessToken.from_exchange({
                "access_token": f"access-{shop_id}-{n}",
                "refresh_token": f"rt-{shop_id}-{n}",
                "expire_in": self.expire_in,
            }, issued_at_ms=self.clock())
        finally:
            with self._lock:
                self._active -= 1


def make_token(shop_id, expires_in_minutes, clock=None, refresh_token="rt-initial", **kwargs):
    now = clock() if clock else NOW_MS
    expired_at = None if expires_in_minutes is None else now + int(expires_in_minutes * MINUTE_MS)
    return AccessToken(
        access_token=f"access-{shop_id}-initial",
        refresh_token=refresh_token,
        expire_in=14400,
        expired_at=expired_at,
        shop_id=shop_id,
        **kwargs
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tokens.db")


@pytest.fixture
def token_store(db_path):
    return TokenStore(db_path)


@pytest.fixture
def sync_store(db_path):
    return SyncStatusStore(db_path)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def events():
    return []


@pytest.fixture
def emitter(events):
    return EventEmitter(sinks=[events.append])


@pytest.fixture
def manager(token_store, gateway, emitter, clock):
    return TokenLifecycleManager(token_store, gateway, emitter=emitter, buffer_minutes=5, clock=clock)
