"""Redis-backed sliding window rate limiter shared by every service replica."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError


class RedisSlidingWindowRateLimiter:
    """Sliding window limiter keeping one sorted set of hit timestamps per key."""

    _LUA_SCRIPT: Final[str] = """
    local hits = KEYS[1]
    local seq_key = hits .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', hits, 0, now_ms - window_ms)
    if redis.call('ZCARD', hits) >= limit then
        return 0
    end
    local seq = redis.call('INCR', seq_key)
    redis.call('ZADD', hits, now_ms, now_ms .. ':' .. seq)
    redis.call('PEXPIRE', hits, window_ms)
    redis.call('PEXPIRE', seq_key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "accounts:rate",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def allow(self, key: str) -> bool:
        """Return ``True`` when ``key`` is still within the shared limit."""
        now_ms = int(time.time() * 1000)
        redis_key = self._key(key)
        try:
            result = self._script(keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms])
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            # servers without scripting (some managed offerings, fakeredis without lua)
            return self._allow_without_script(redis_key, now_ms)
        return int(result) == 1

    def reset(self, key: str) -> None:
        redis_key = self._key(key)
        self._client.delete(redis_key, f"{redis_key}:seq")

    def _allow_without_script(self, redis_key: str, now_ms: int) -> bool:
        self._client.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            return False
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        return True
