"""Two-tier cache: a process-local memory tier over the shared redis tier.

The memory tier answers repeated reads without a network round trip. Redis is
the source of truth on a memory miss. The cache is an optimization only:
store outages and corrupt payloads turn into misses, never into exceptions.

Each persistent value is wrapped as ``{"value": ..., "expiresAt": <ms>}`` so a
memory-tier refill from redis keeps the entry's original expiry.
"""

import copy
import functools
import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from flask import jsonify, make_response, request

from convertviral.errors import SerializationError, StoreUnavailableError
from convertviral.logging_config import log_event
from convertviral.outcomes import WriteOutcome
from convertviral.repositories import kv_repo

SHORT_CACHE_TTL = 60
LONG_CACHE_TTL = 86400
DEFAULT_CACHE_TTL = 3600
DEFAULT_SWEEP_INTERVAL = 60

FORMATS_CACHE_KEY = 'formats'

_MISSING = object()


def _now_ms(clock):
    return int(clock() * 1000)


def _normalize_ttl(ttl):
    ttl = int(ttl)
    if ttl <= 0:
        raise ValueError('Cache TTL must be a positive number of seconds')
    return ttl


def encode_entry(value, expires_at):
    return json.dumps({'value': value, 'expiresAt': int(expires_at)}, ensure_ascii=False)


def decode_entry(raw) -> Tuple[Any, Optional[int]]:
    """Return ``(value, expires_at)``; ``expires_at`` is None for plain JSON values."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f'Corrupt cache payload: {exc}') from exc
    if isinstance(parsed, dict) and set(parsed.keys()) == {'value', 'expiresAt'}:
        expires_at = parsed['expiresAt']
        if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
            raise SerializationError('Cache envelope has a non-numeric expiresAt')
        return parsed['value'], int(expires_at)
    return parsed, None


class MemoryCache:
    """Lock-guarded dict of ``key -> (value, expires_at_ms)``.

    Values are deep-copied on the way in and out, so callers never share
    objects with the tier.
    """

    def __init__(self, clock=time.time):
        self._entries: Dict[str, Tuple[Any, int]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def set_until(self, key, value, expires_at):
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), int(expires_at))

    def set(self, key, value, ttl=DEFAULT_CACHE_TTL):
        self.set_until(key, value, _now_ms(self._clock) + _normalize_ttl(ttl) * 1000)

    def get(self, key, default=None):
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return default
            value, expires_at = item
            if expires_at <= _now_ms(self._clock):
                del self._entries[key]
                return default
            return copy.deepcopy(value)

    def delete(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def clean_expired(self):
        now = _now_ms(self._clock)
        with self._lock:
            expired = [key for key, (_value, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        return self.get(key, _MISSING) is not _MISSING


class LayeredCache:
    """Read-through / write-through cache over a memory tier and redis.

    ``start()`` launches the background sweep that evicts expired memory
    entries; ``stop()`` ends it. Nothing runs at import time.
    """

    def __init__(
        self,
        client,
        *,
        default_ttl: int = DEFAULT_CACHE_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock=time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.default_ttl = _normalize_ttl(default_ttl)
        self.sweep_interval = sweep_interval
        self.memory = MemoryCache(clock=clock)
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self._stats = {
            'memory_hits': 0,
            'persistent_hits': 0,
            'misses': 0,
            'store_errors': 0,
            'evictions': 0,
        }

    def _count(self, name, amount=1):
        with self._stats_lock:
            self._stats[name] += amount

    def get(self, key, default=None):
        value = self.memory.get(key, _MISSING)
        if value is not _MISSING:
            self._count('memory_hits')
            return value

        try:
            raw = kv_repo.get_value(self.client, key)
        except StoreUnavailableError as exc:
            self._count('store_errors')
            log_event(self._logger, logging.ERROR, 'cache_get_failed', key=key, error=str(exc))
            return default
        if raw is None:
            self._count('misses')
            return default

        try:
            value, expires_at = decode_entry(raw)
        except SerializationError as exc:
            self._count('misses')
            log_event(self._logger, logging.WARNING, 'cache_payload_corrupt', key=key, error=str(exc))
            return default

        now = _now_ms(self._clock)
        if expires_at is None:
            expires_at = now + self.default_ttl * 1000
        elif expires_at <= now:
            self._count('misses')
            return default

        self.memory.set_until(key, value, expires_at)
        self._count('persistent_hits')
        return value

    def set(self, key, value, ttl=None) -> WriteOutcome:
        ttl = self.default_ttl if ttl is None else _normalize_ttl(ttl)
        expires_at = _now_ms(self._clock) + ttl * 1000
        self.memory.set_until(key, value, expires_at)

        outcome = WriteOutcome()
        try:
            payload = encode_entry(value, expires_at)
        except (TypeError, ValueError) as exc:
            outcome.record_failure('serialize')
            log_event(self._logger, logging.ERROR, 'cache_set_unserializable', key=key, error=str(exc))
            return outcome
        try:
            kv_repo.set_value(self.client, key, payload, ttl)
        except StoreUnavailableError as exc:
            self._count('store_errors')
            outcome.record_failure('persistent_set')
            log_event(self._logger, logging.ERROR, 'cache_set_failed', key=key, error=str(exc))
        return outcome

    def delete(self, key) -> WriteOutcome:
        self.memory.delete(key)
        outcome = WriteOutcome()
        try:
            kv_repo.delete_key(self.client, key)
        except StoreUnavailableError as exc:
            self._count('store_errors')
            outcome.record_failure('persistent_delete')
            log_event(self._logger, logging.ERROR, 'cache_delete_failed', key=key, error=str(exc))
        return outcome

    def sweep(self):
        evicted = self.memory.clean_expired()
        if evicted:
            self._count('evictions', evicted)
            self._logger.debug(f"Cache sweep evicted {evicted} expired memory entries")
        return evicted

    def _run_sweep_loop(self):
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as exc:
                self._logger.warning(f"Cache sweep failed: {exc}")

    def start(self):
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return
        self._stop_event.clear()
        self._sweep_thread = threading.Thread(
            target=self._run_sweep_loop,
            name='convertviral-cache-sweep',
            daemon=True,
        )
        self._sweep_thread.start()

    def stop(self, timeout=5.0):
        self._stop_event.set()
        thread = self._sweep_thread
        self._sweep_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def running(self):
        return self._sweep_thread is not None and self._sweep_thread.is_alive()

    def stats(self):
        with self._stats_lock:
            snapshot = dict(self._stats)
        hits = snapshot['memory_hits'] + snapshot['persistent_hits']
        total = hits + snapshot['misses']
        snapshot['memory_entries'] = len(self.memory)
        snapshot['hit_rate_percent'] = round((hits / total * 100) if total else 0.0, 1)
        return snapshot


def cache_formats(cache, formats):
    return cache.set(FORMATS_CACHE_KEY, formats, LONG_CACHE_TTL)


def get_cached_formats(cache):
    return cache.get(FORMATS_CACHE_KEY)


def cached_json_response(cache_getter, ttl=DEFAULT_CACHE_TTL):
    """Memoize a Flask GET view's JSON body under ``api:<path?query>``.

    ``cache_getter`` is called per request so tests can swap the cache.
    Only 200 responses are stored.
    """
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            if request.method != 'GET':
                return view(*args, **kwargs)
            cache = cache_getter()
            key = f"api:{request.full_path.rstrip('?')}"
            cached = cache.get(key) if cache is not None else None
            if cached is not None:
                response = jsonify(cached)
                response.headers['X-Cache'] = 'HIT'
                return response

            response = make_response(view(*args, **kwargs))
            if cache is not None and response.status_code == 200 and response.is_json:
                cache.set(key, response.get_json(), ttl)
            response.headers['X-Cache'] = 'MISS'
            return response
        return wrapper
    return decorator
