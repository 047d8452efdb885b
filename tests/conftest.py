import asyncio
import inspect
import json
import os
import sys
import uuid
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in unit tests; the metadata cache is replaced by FakeMetadataCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credstore.config import Settings  # noqa: E402
from credstore.service.codes import OneTimeCodeManager  # noqa: E402
from credstore.service.devices import DeviceRegistry  # noqa: E402
from credstore.service.runtime import reset_runtime_for_tests  # noqa: E402
from credstore.service.session_cache import SessionMetadataCache  # noqa: E402
from credstore.service.token_store import TokenStore  # noqa: E402
from credstore.storage.memory import MemoryStore  # noqa: E402
from credstore.storage.models import Account, AccountRecord, EmailRecord, normalize_email  # noqa: E402

DESKTOP_FIREFOX_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.10; rv:41.0) Gecko/20100101 Firefox/41.0"
)
MOBILE_FIREFOX_UA = "Mozilla/5.0 (Android 4.4; Mobile; rv:41.0) Gecko/41.0 Firefox/41.0"


class FakeMetadataCache:
    """Dict-backed stand-in for RedisCache that stores serialized arrays."""

    def __init__(self):
        self.values = {}
        self.writes = []
        self.fail_reads = False
        self.fail_writes = False

    async def get_session_tokens(self, uid):
        if self.fail_reads:
            raise ConnectionError("cache unavailable")
        raw = self.values.get(uid)
        return json.loads(raw) if raw is not None else None

    async def set_session_tokens(self, uid, entries):
        if self.fail_writes:
            raise ConnectionError("cache unavailable")
        self.writes.append(uid)
        self.values[uid] = json.dumps(entries)

    async def delete_session_tokens(self, uid):
        if self.fail_writes:
            raise ConnectionError("cache unavailable")
        self.writes.append(uid)
        self.values.pop(uid, None)

    def verify_connection(self):
        return None

    async def close(self):
        return None


class FakeGeo:
    def __init__(self, location=None, error=None):
        self.location = location if location is not None else {
            "city": "Mountain View",
            "country": "United States",
            "country_code": "US",
            "state": "California",
            "state_code": "CA",
        }
        self.error = error
        self.calls = []

    async def lookup(self, ip):
        self.calls.append(ip)
        if self.error:
            raise self.error
        return self.location


def make_account(store: MemoryStore, email: str = None, **fields) -> AccountRecord:
    """Insert an account directly into the store and return its record view."""
    email = email or f"{uuid.uuid4().hex[:8]}@example.com"
    account = Account(
        uid=uuid.uuid4().hex,
        email=email,
        normalized_email=normalize_email(email),
        email_code=uuid.uuid4().hex,
        verify_hash=uuid.uuid4().hex,
        auth_salt=uuid.uuid4().hex,
        **fields,
    )
    primary = EmailRecord(
        email=account.email,
        normalized_email=account.normalized_email,
        uid=account.uid,
        email_code=account.email_code,
        is_verified=account.email_verified,
        is_primary=True,
        created_at=account.created_at,
    )
    store.create_account(account, primary)
    return AccountRecord.build(account, [primary])


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(use_memory_store=True, test_mode=True, redis_url=None)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return FakeMetadataCache()


@pytest.fixture
def geo():
    return FakeGeo()


@pytest.fixture
def session_cache(store, cache, settings, geo):
    return SessionMetadataCache(store, cache, settings, geo=geo, rng=lambda: 0.0)


@pytest.fixture
def token_store(store, session_cache, settings):
    return TokenStore(store, session_cache, settings)


@pytest.fixture
def devices(store, session_cache, settings):
    return DeviceRegistry(store, session_cache, settings)


@pytest.fixture
def codes(store, settings):
    return OneTimeCodeManager(store, settings)


@pytest.fixture
def account(store):
    return make_account(store)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
