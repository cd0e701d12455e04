"""Rate limiting helpers with a redis-first, in-memory fallback strategy."""

import hashlib
import re

from convertviral.errors import StoreUnavailableError
from convertviral.repositories import kv_repo


def window_counter_key(key, window_seconds, window_start):
    raw = f"{key}|{window_seconds}|{int(window_start)}".encode('utf-8')
    return f"ratelimit:{hashlib.sha256(raw).hexdigest()}"


def normalize_key_part(value, fallback='anon', max_len=120):
    raw = str(value or '').strip().lower()
    if not raw:
        return fallback
    safe = re.sub(r'[^a-z0-9_.:@-]+', '_', raw)
    return safe[:max_len] if safe else fallback


def check_rate_limit_redis(key, limit, window_seconds, now_ts, *, client):
    """Fixed-window counter. Returns None when redis is unavailable."""
    if client is None:
        return None
    window_start = int(now_ts // window_seconds) * int(window_seconds)
    retry_after = max(1, int((window_start + window_seconds) - now_ts))
    counter_key = window_counter_key(key, window_seconds, window_start)
    try:
        count = kv_repo.increment(client, counter_key)
        if count == 1:
            kv_repo.expire_key(client, counter_key, int(window_seconds) * 2)
    except StoreUnavailableError:
        return None
    if count > limit:
        return False, retry_after
    return True, 0


def check_rate_limit(
    key,
    limit,
    window_seconds,
    *,
    client,
    in_memory_events,
    in_memory_lock,
    time_module,
):
    now_ts = time_module.time()
    redis_result = check_rate_limit_redis(key, limit, window_seconds, now_ts, client=client)
    if redis_result is not None:
        return redis_result

    with in_memory_lock:
        timestamps = in_memory_events.get(key, [])
        cutoff = now_ts - window_seconds
        kept = [ts for ts in timestamps if ts >= cutoff]
        if len(kept) >= limit:
            oldest = kept[0]
            retry_after = max(1, int((oldest + window_seconds) - now_ts))
            in_memory_events[key] = kept
            return False, retry_after
        kept.append(now_ts)
        in_memory_events[key] = kept

    return True, 0
