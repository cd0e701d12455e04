import fnmatch
from collections import Counter

import pytest
import redis

from convertviral.services.cache_service import LayeredCache


class FakeClock:
    """Callable clock that also quacks like the ``time`` module."""

    def __init__(self, start=1_700_000_000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def time(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the subset of redis-py the app uses.

    ``calls`` counts every command by name. Add command names (or ``'*'``) to
    ``failing`` to make them raise ``redis.exceptions.ConnectionError``.
    """

    def __init__(self, clock):
        self.clock = clock
        self.data = {}
        self.expires_at = {}
        self.calls = Counter()
        self.failing = set()

    def _enter(self, command):
        self.calls[command] += 1
        if command in self.failing or '*' in self.failing:
            raise redis.exceptions.ConnectionError(f'{command} unavailable')

    def _purge(self, key):
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    def _live(self, key):
        self._purge(key)
        return self.data.get(key)

    @staticmethod
    def _bounds(length, start, stop):
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        return start, stop + 1

    def ttl(self, key):
        self._purge(key)
        if key not in self.data:
            return -2
        deadline = self.expires_at.get(key)
        if deadline is None:
            return -1
        return int(deadline - self.clock())

    def keys(self, pattern='*'):
        for key in list(self.data):
            self._purge(key)
        return sorted(key for key in self.data if fnmatch.fnmatch(key, pattern))

    def get(self, key):
        self._enter('get')
        value = self._live(key)
        return value if isinstance(value, str) else None

    def set(self, key, value, ex=None):
        self._enter('set')
        self.data[key] = str(value)
        if ex is not None:
            self.expires_at[key] = self.clock() + int(ex)
        else:
            self.expires_at.pop(key, None)
        return True

    def delete(self, *keys):
        self._enter('delete')
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    def lpush(self, key, *values):
        self._enter('lpush')
        items = self._live(key) or []
        for value in values:
            items.insert(0, str(value))
        self.data[key] = items
        return len(items)

    def lrange(self, key, start, stop):
        self._enter('lrange')
        items = self._live(key) or []
        lo, hi = self._bounds(len(items), start, stop)
        return list(items[lo:hi])

    def ltrim(self, key, start, stop):
        self._enter('ltrim')
        items = self._live(key) or []
        lo, hi = self._bounds(len(items), start, stop)
        kept = items[lo:hi]
        if kept:
            self.data[key] = kept
        else:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return True

    def lrem(self, key, count, value):
        self._enter('lrem')
        items = self._live(key) or []
        kept = [item for item in items if item != value]
        removed = len(items) - len(kept)
        if kept:
            self.data[key] = kept
        else:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    def expire(self, key, seconds):
        self._enter('expire')
        if self._live(key) is None:
            return False
        self.expires_at[key] = self.clock() + int(seconds)
        return True

    def incr(self, key):
        self._enter('incr')
        value = int(self._live(key) or 0) + 1
        self.data[key] = str(value)
        return value


class FakeStorage:
    def __init__(self):
        self.uploads = []
        self.scheduled = []
        self.signed = []

    def upload_file(self, data, file_name, content_type, owner_id=None):
        key = f"uploads/{owner_id or 'anonymous'}/1700000000000-fake-{file_name}"
        self.uploads.append({'key': key, 'data': data, 'content_type': content_type, 'owner_id': owner_id})
        return {'key': key, 'url': f"https://cdn.example.test/{key}"}

    def schedule_file_deletion(self, key, delay_hours=24):
        self.scheduled.append((key, delay_hours))

    def get_signed_download_url(self, key, expires_in=None):
        self.signed.append((key, expires_in))
        return f"https://signed.example.test/{key}?expires={expires_in}"

    def cancel_scheduled_deletions(self):
        return 0


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture()
def runtime_module(monkeypatch, fake_redis, clock):
    from convertviral import runtime

    monkeypatch.setattr(runtime, "kv_client", fake_redis)
    monkeypatch.setattr(runtime, "cache", LayeredCache(fake_redis, clock=clock))
    monkeypatch.setattr(runtime, "storage", FakeStorage())
    monkeypatch.setattr(runtime, "time", clock)
    monkeypatch.setattr(runtime, "RATE_LIMIT_EVENTS", {})
    monkeypatch.setattr(runtime, "SENTRY_ENABLED", False)
    monkeypatch.setattr(runtime, "verify_firebase_token", lambda _request: None)
    return runtime


@pytest.fixture()
def client(runtime_module):
    from convertviral import create_app

    app = create_app(start_background=False)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
