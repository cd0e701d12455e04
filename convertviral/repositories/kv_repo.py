"""Redis accessors for the string and list commands the app relies on.

Every redis failure is re-raised as ``StoreUnavailableError`` so services only
deal with one error type.
"""

import functools

import redis

from convertviral.errors import StoreUnavailableError


def build_client(redis_url, socket_timeout=2):
    return redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def _translate_errors(fn):
    @functools.wraps(fn)
    def wrapper(client, *args, **kwargs):
        if client is None:
            raise StoreUnavailableError('Key/value store is not configured')
        try:
            return fn(client, *args, **kwargs)
        except redis.exceptions.RedisError as exc:
            raise StoreUnavailableError(f'{fn.__name__} failed: {exc}') from exc
    return wrapper


@_translate_errors
def get_value(client, key):
    return client.get(key)


@_translate_errors
def set_value(client, key, value, ttl_seconds):
    return client.set(key, value, ex=int(ttl_seconds))


@_translate_errors
def delete_key(client, key):
    return int(client.delete(key) or 0)


@_translate_errors
def push_front(client, list_key, value):
    return client.lpush(list_key, value)


@_translate_errors
def list_range(client, list_key, start=0, stop=-1):
    return list(client.lrange(list_key, start, stop) or [])


@_translate_errors
def trim_list(client, list_key, start, stop):
    return client.ltrim(list_key, start, stop)


@_translate_errors
def remove_from_list(client, list_key, value):
    return int(client.lrem(list_key, 0, value) or 0)


@_translate_errors
def expire_key(client, key, ttl_seconds):
    return client.expire(key, int(ttl_seconds))


@_translate_errors
def increment(client, key):
    return int(client.incr(key))
