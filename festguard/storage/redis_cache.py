from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import exceptions as redis_errors

from festguard.logging import get_logger
from festguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

# Works on both Lua 5.1 (Redis) and 5.4 (fakeredis/lupa)
_LUA_PRELUDE = """
local unpack = table.unpack or unpack
"""

# Shared by every script that may revoke a refresh-token family
_LUA_REVOKE_FAMILY = """
local function revoke_family(prefix, family)
  local members = redis.call('SMEMBERS', prefix .. 'family:' .. family)
  local revoked = 0
  for _, member in ipairs(members) do
    local key = prefix .. 'token:' .. member
    if redis.call('EXISTS', key) == 1 then
      if redis.call('HGET', key, 'revoked') ~= '1' then
        revoked = revoked + 1
      end
      redis.call('HSET', key, 'revoked', '1')
    end
  end
  return revoked
end
"""

# Next score strictly above the current maximum, so ordering is creation order
_LUA_NEXT_SCORE = """
local function next_score(key, now)
  local top = redis.call('ZRANGE', key, -1, -1, 'WITHSCORES')
  if top[2] then
    local last = math.floor(tonumber(top[2]))
    if last >= now then
      return last + 1
    end
  end
  return now
end
"""


def _pairs(data: Sequence[Any]) -> Dict[str, str]:
    """Turn a flat HGETALL reply into a dict."""
    items = list(data or [])
    return dict(zip(items[::2], items[1::2]))


def _flatten(mapping: Dict[str, str]) -> List[str]:
    flat: List[str] = []
    for key, value in mapping.items():
        flat.extend((key, value))
    return flat


class RedisCache:
    """Shared-store wrapper: every read-modify-write is one server-side script.

    Callers own their key layout (prefix + identity); this class owns
    atomicity and turns connection failures and timeouts into
    :class:`StoreUnavailableError` so that each caller can apply its own
    fail-open or fail-closed policy.
    """

    DEFAULT_OPERATION_TIMEOUT = 1.0

    # Sliding window log: one sorted-set member per admitted request
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, window)
  count = count + 1
  allowed = 1
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_ts = now
if oldest[2] then
  oldest_ts = math.floor(tonumber(oldest[2]))
end
return {allowed, count, oldest_ts}
"""

    # Fixed window: first increment sets the expiry to the window length
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  return {0, current, redis.call('PTTL', key)}
end
current = redis.call('INCR', key)
if current == 1 then
  redis.call('PEXPIRE', key, window)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window)
  ttl = window
end
return {1, current, ttl}
"""

    # Token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, math.floor(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, math.floor(tokens), 0}
"""

    _ACQUIRE_SLOT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local max_allowed = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
if current < max_allowed then
  redis.call('INCR', KEYS[1])
  redis.call('EXPIRE', KEYS[1], ttl)
  return {1, current + 1}
end
return {0, current}
"""

    _RELEASE_SLOT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 1 then
  return redis.call('DECR', KEYS[1])
end
redis.call('DEL', KEYS[1])
return 0
"""

    # KEYS: attempts, lockout, violations
    # ARGV: is_failure, max_attempts, window_ms, lockout_ms, progressive,
    #       multiplier, max_lockout_ms, violation_ttl_ms
    _BRUTE_FORCE_SCRIPT = """
local lock_ttl = redis.call('PTTL', KEYS[2])
if lock_ttl > 0 then
  return {0, lock_ttl, tonumber(redis.call('GET', KEYS[1]) or '0')}
end

local max_attempts = tonumber(ARGV[2])
local attempts = tonumber(redis.call('GET', KEYS[1]) or '0')
if ARGV[1] == '1' then
  attempts = redis.call('INCR', KEYS[1])
  if attempts == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[3])
  end
  if attempts <= max_attempts then
    return {1, 0, attempts}
  end
elseif attempts < max_attempts then
  return {1, 0, attempts}
end

local violations = redis.call('INCR', KEYS[3])
redis.call('PEXPIRE', KEYS[3], ARGV[8])
local duration = tonumber(ARGV[4])
if ARGV[5] == '1' and violations > 1 then
  duration = math.floor(duration * (tonumber(ARGV[6]) ^ (violations - 1)))
end
duration = math.floor(math.min(duration, tonumber(ARGV[7])))
redis.call('SET', KEYS[2], violations, 'PX', duration)
redis.call('DEL', KEYS[1])
return {0, duration, attempts}
"""

    # KEYS: session, user index
    # ARGV: session_id, now_ms, ttl_ms, max_sessions, session_prefix, fields...
    _SESSION_CREATE_SCRIPT = _LUA_PRELUDE + _LUA_NEXT_SCORE + """
local fields = {}
for i = 6, #ARGV do
  fields[#fields + 1] = ARGV[i]
end
redis.call('HSET', KEYS[1], unpack(fields))
redis.call('PEXPIRE', KEYS[1], ARGV[3])
redis.call('ZADD', KEYS[2], next_score(KEYS[2], tonumber(ARGV[2])), ARGV[1])

local ids = redis.call('ZRANGE', KEYS[2], 0, -1)
for _, sid in ipairs(ids) do
  if redis.call('EXISTS', ARGV[5] .. sid) == 0 then
    redis.call('ZREM', KEYS[2], sid)
  end
end

local evicted = {}
local max_sessions = tonumber(ARGV[4])
local count = redis.call('ZCARD', KEYS[2])
if max_sessions > 0 and count > max_sessions then
  local oldest = redis.call('ZRANGE', KEYS[2], 0, count - max_sessions - 1)
  for _, sid in ipairs(oldest) do
    redis.call('DEL', ARGV[5] .. sid)
    redis.call('ZREM', KEYS[2], sid)
    evicted[#evicted + 1] = sid
  end
end
redis.call('PEXPIRE', KEYS[2], ARGV[3])
return evicted
"""

    # KEYS: session; ARGV: fingerprint, user index prefix, session_id
    _SESSION_VALIDATE_SCRIPT = """
local stored = redis.call('HGET', KEYS[1], 'fingerprint')
if not stored then
  return {0}
end
if stored ~= ARGV[1] then
  local uid = redis.call('HGET', KEYS[1], 'user_id')
  redis.call('DEL', KEYS[1])
  if uid then
    redis.call('ZREM', ARGV[2] .. uid, ARGV[3])
  end
  return {-1}
end
return {1, redis.call('HGETALL', KEYS[1])}
"""

    # KEYS: old session, new session
    # ARGV: old_id, new_id, user index prefix, ttl_ms, created_ms, expires_ms
    _SESSION_ROTATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {0}
end
if redis.call('RENAMENX', KEYS[1], KEYS[2]) == 0 then
  return {-1}
end
redis.call('HSET', KEYS[2], 'created_at', ARGV[5], 'expires_at', ARGV[6])
redis.call('PEXPIRE', KEYS[2], ARGV[4])
local uid = redis.call('HGET', KEYS[2], 'user_id')
local index = ARGV[3] .. uid
local score = redis.call('ZSCORE', index, ARGV[1])
redis.call('ZREM', index, ARGV[1])
redis.call('ZADD', index, score or ARGV[5], ARGV[2])
return {1, redis.call('HGETALL', KEYS[2])}
"""

    # KEYS: session; ARGV: user index prefix, session_id
    _SESSION_DESTROY_SCRIPT = """
local uid = redis.call('HGET', KEYS[1], 'user_id')
if not uid then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('ZREM', ARGV[1] .. uid, ARGV[2])
return 1
"""

    # KEYS: user index; ARGV: session prefix
    _SESSION_DESTROY_ALL_SCRIPT = """
local ids = redis.call('ZRANGE', KEYS[1], 0, -1)
local destroyed = 0
for _, sid in ipairs(ids) do
  destroyed = destroyed + redis.call('DEL', ARGV[1] .. sid)
end
redis.call('DEL', KEYS[1])
return destroyed
"""

    # KEYS: token, family set, user family index
    # ARGV: token_hash, family, ttl_ms, now_ms, max_families, prefix, fields...
    _TOKEN_ISSUE_SCRIPT = _LUA_PRELUDE + _LUA_REVOKE_FAMILY + _LUA_NEXT_SCORE + """
local fields = {}
for i = 7, #ARGV do
  fields[#fields + 1] = ARGV[i]
end
redis.call('HSET', KEYS[1], unpack(fields))
redis.call('PEXPIRE', KEYS[1], ARGV[3])
redis.call('SADD', KEYS[2], ARGV[1])
redis.call('PEXPIRE', KEYS[2], ARGV[3])
if not redis.call('ZSCORE', KEYS[3], ARGV[2]) then
  redis.call('ZADD', KEYS[3], next_score(KEYS[3], tonumber(ARGV[4])), ARGV[2])
end
redis.call('PEXPIRE', KEYS[3], ARGV[3])

local dropped = {}
local max_families = tonumber(ARGV[5])
local count = redis.call('ZCARD', KEYS[3])
if max_families > 0 and count > max_families then
  local oldest = redis.call('ZRANGE', KEYS[3], 0, count - max_families - 1)
  for _, family in ipairs(oldest) do
    revoke_family(ARGV[6], family)
    redis.call('ZREM', KEYS[3], family)
    dropped[#dropped + 1] = family
  end
end
return dropped
"""

    # KEYS: token; ARGV: prefix, reuse_detection
    _TOKEN_CHECK_SCRIPT = _LUA_REVOKE_FAMILY + """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {0}
end
local family = redis.call('HGET', KEYS[1], 'family')
if redis.call('HGET', KEYS[1], 'revoked') == '1' then
  local revoked = 0
  if ARGV[2] == '1' then
    revoked = revoke_family(ARGV[1], family)
  end
  return {-1, family, revoked}
end
return {1, redis.call('HGETALL', KEYS[1])}
"""

    # KEYS: old token, new token
    # ARGV: prefix, new_hash, ttl_ms, reuse_detection, fields...
    _TOKEN_ROTATE_SCRIPT = _LUA_PRELUDE + _LUA_REVOKE_FAMILY + """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {0}
end
local family = redis.call('HGET', KEYS[1], 'family')
if redis.call('HGET', KEYS[1], 'revoked') == '1' then
  local revoked = 0
  if ARGV[4] == '1' then
    revoked = revoke_family(ARGV[1], family)
  end
  return {-1, family, revoked}
end

redis.call('HSET', KEYS[1], 'revoked', '1', 'replaced_by', ARGV[2])
local user_id = redis.call('HGET', KEYS[1], 'user_id')
local device_id = redis.call('HGET', KEYS[1], 'device_id') or ''
local fields = {'user_id', user_id, 'device_id', device_id, 'family', family, 'revoked', '0'}
for i = 5, #ARGV do
  fields[#fields + 1] = ARGV[i]
end
redis.call('HSET', KEYS[2], unpack(fields))
redis.call('PEXPIRE', KEYS[2], ARGV[3])

local family_key = ARGV[1] .. 'family:' .. family
redis.call('SADD', family_key, ARGV[2])
redis.call('PEXPIRE', family_key, ARGV[3])
redis.call('PEXPIRE', ARGV[1] .. 'user:' .. user_id, ARGV[3])
return {1, redis.call('HGETALL', KEYS[2])}
"""

    _TOKEN_REVOKE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked', '1')
return 1
"""

    # ARGV: prefix, family
    _FAMILY_REVOKE_SCRIPT = _LUA_REVOKE_FAMILY + """
return revoke_family(ARGV[1], ARGV[2])
"""

    # KEYS: user family index; ARGV: prefix
    _USER_TOKENS_REVOKE_SCRIPT = _LUA_REVOKE_FAMILY + """
local families = redis.call('ZRANGE', KEYS[1], 0, -1)
local revoked = 0
for _, family in ipairs(families) do
  revoked = revoked + revoke_family(ARGV[1], family)
end
redis.call('DEL', KEYS[1])
return revoked
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = 2.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        register = self.client.register_script
        self._sliding_window = register(self._SLIDING_WINDOW_SCRIPT)
        self._fixed_window = register(self._FIXED_WINDOW_SCRIPT)
        self._token_bucket = register(self._TOKEN_BUCKET_SCRIPT)
        self._acquire_slot = register(self._ACQUIRE_SLOT_SCRIPT)
        self._release_slot = register(self._RELEASE_SLOT_SCRIPT)
        self._brute_force = register(self._BRUTE_FORCE_SCRIPT)
        self._session_create = register(self._SESSION_CREATE_SCRIPT)
        self._session_validate = register(self._SESSION_VALIDATE_SCRIPT)
        self._session_rotate = register(self._SESSION_ROTATE_SCRIPT)
        self._session_destroy = register(self._SESSION_DESTROY_SCRIPT)
        self._session_destroy_all = register(self._SESSION_DESTROY_ALL_SCRIPT)
        self._token_issue = register(self._TOKEN_ISSUE_SCRIPT)
        self._token_check = register(self._TOKEN_CHECK_SCRIPT)
        self._token_rotate = register(self._TOKEN_ROTATE_SCRIPT)
        self._token_revoke = register(self._TOKEN_REVOKE_SCRIPT)
        self._family_revoke = register(self._FAMILY_REVOKE_SCRIPT)
        self._user_tokens_revoke = register(self._USER_TOKENS_REVOKE_SCRIPT)

    @staticmethod
    def hashed_key(prefix: str, *parts: str) -> str:
        """Collision-resistant key: identity parts are hashed so delimiters
        inside an identifier cannot alias another identity."""
        digest = hashlib.sha256("\x1f".join(parts).encode()).hexdigest()
        return f"{prefix}{digest}"

    async def _run(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (
            redis_errors.ConnectionError,
            redis_errors.TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ) as exc:
            logger.warning(
                "store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError(
                f"shared store unavailable during {operation}", operation=operation
            ) from exc

    async def ping(self) -> bool:
        return bool(await self._run(self.client.ping(), "ping"))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run(self.client.delete(*keys), "delete"))

    # =========================================================================
    # Rate limiting
    # =========================================================================

    async def sliding_window_hit(
        self, key: str, limit: int, window_seconds: int, *, member: str
    ) -> Tuple[bool, int, int]:
        """Admit one event into a rolling window if fewer than ``limit`` are recorded.

        Returns:
            (allowed, count_in_window, ms_until_oldest_entry_expires)
        """
        now_ms = int(time.time() * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, count, oldest = await self._run(
            self._sliding_window(keys=[key], args=[now_ms, window_ms, limit, member]),
            "sliding_window_hit",
        )
        reset_ms = max(0, int(oldest) + window_ms - now_ms)
        return bool(int(allowed)), int(count), reset_ms

    async def fixed_window_hit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Increment a counter that expires ``window_seconds`` after its first hit.

        Returns:
            (allowed, count, ms_until_window_resets)
        """
        allowed, count, ttl = await self._run(
            self._fixed_window(keys=[key], args=[limit, int(window_seconds * 1000)]),
            "fixed_window_hit",
        )
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def token_bucket_take(
        self, key: str, capacity: int, refill_per_second: float, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Returns (allowed, tokens_left, seconds_until_enough_tokens)."""
        allowed, tokens, reset_after = await self._run(
            self._token_bucket(
                keys=[key],
                args=[time.time(), refill_per_second, capacity, max(1, cost)],
            ),
            "token_bucket_take",
        )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    async def acquire_concurrency_slot(
        self, key: str, max_slots: int, ttl_seconds: int = 300
    ) -> Tuple[bool, int]:
        """Atomically take an in-flight slot. Returns (acquired, current_count)."""
        acquired, current = await self._run(
            self._acquire_slot(keys=[key], args=[max_slots, ttl_seconds]),
            "acquire_concurrency_slot",
        )
        return bool(int(acquired)), int(current)

    async def release_concurrency_slot(self, key: str) -> int:
        """Give a slot back; never drops below zero. Returns the remaining count."""
        result = await self._run(self._release_slot(keys=[key]), "release_concurrency_slot")
        return int(result)

    async def get_counter(self, key: str) -> int:
        value = await self._run(self.client.get(key), "get_counter")
        return int(value) if value else 0

    # =========================================================================
    # Brute-force tracking
    # =========================================================================

    async def brute_force_attempt(
        self,
        attempts_key: str,
        lockout_key: str,
        violations_key: str,
        *,
        is_failure: bool,
        max_attempts: int,
        window_ms: int,
        lockout_ms: int,
        progressive: bool,
        multiplier: float,
        max_lockout_ms: int,
        violation_ttl_ms: int,
    ) -> Tuple[bool, int, int]:
        """Check (and optionally count) an attempt, locking out when over budget.

        Returns:
            (allowed, lockout_ms, attempts)
        """
        allowed, lockout_ms_left, attempts = await self._run(
            self._brute_force(
                keys=[attempts_key, lockout_key, violations_key],
                args=[
                    "1" if is_failure else "0",
                    max_attempts,
                    window_ms,
                    lockout_ms,
                    "1" if progressive else "0",
                    repr(float(multiplier)),
                    max_lockout_ms,
                    violation_ttl_ms,
                ],
            ),
            "brute_force_attempt",
        )
        return bool(int(allowed)), int(lockout_ms_left), int(attempts)

    async def brute_force_status(
        self, attempts_key: str, lockout_key: str
    ) -> Tuple[int, int]:
        """Returns (lockout_ms_remaining, attempts); 0 ms means not locked."""
        pipe = self.client.pipeline(transaction=False)
        pipe.pttl(lockout_key)
        pipe.get(attempts_key)
        ttl, attempts = await self._run(pipe.execute(), "brute_force_status")
        return max(0, int(ttl)), int(attempts) if attempts else 0

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        session_key: str,
        user_index_key: str,
        session_id: str,
        fields: Dict[str, str],
        *,
        ttl_ms: int,
        max_sessions: int,
        session_prefix: str,
    ) -> List[str]:
        """Store a session and evict the user's oldest beyond ``max_sessions``.

        Returns the evicted session ids.
        """
        now_ms = int(time.time() * 1000)
        evicted = await self._run(
            self._session_create(
                keys=[session_key, user_index_key],
                args=[session_id, now_ms, ttl_ms, max_sessions, session_prefix, *_flatten(fields)],
            ),
            "create_session",
        )
        return list(evicted or [])

    async def validate_session(
        self,
        session_key: str,
        session_id: str,
        fingerprint: str,
        *,
        user_index_prefix: str,
    ) -> Tuple[int, Dict[str, str]]:
        """Compare-and-destroy on fingerprint.

        Returns (1, fields) on match, (0, {}) when missing and (-1, {}) when the
        fingerprint differed and the session was destroyed.
        """
        result = await self._run(
            self._session_validate(
                keys=[session_key], args=[fingerprint, user_index_prefix, session_id]
            ),
            "validate_session",
        )
        status = int(result[0])
        return status, _pairs(result[1]) if status == 1 else {}

    async def get_session(self, session_key: str) -> Dict[str, str]:
        return await self._run(self.client.hgetall(session_key), "get_session")

    async def rotate_session(
        self,
        old_key: str,
        new_key: str,
        old_id: str,
        new_id: str,
        *,
        user_index_prefix: str,
        ttl_ms: int,
        created_ms: int,
        expires_ms: int,
    ) -> Tuple[int, Dict[str, str]]:
        result = await self._run(
            self._session_rotate(
                keys=[old_key, new_key],
                args=[old_id, new_id, user_index_prefix, ttl_ms, created_ms, expires_ms],
            ),
            "rotate_session",
        )
        status = int(result[0])
        return status, _pairs(result[1]) if status == 1 else {}

    async def destroy_session(
        self, session_key: str, session_id: str, *, user_index_prefix: str
    ) -> bool:
        result = await self._run(
            self._session_destroy(keys=[session_key], args=[user_index_prefix, session_id]),
            "destroy_session",
        )
        return bool(int(result))

    async def destroy_user_sessions(self, user_index_key: str, *, session_prefix: str) -> int:
        result = await self._run(
            self._session_destroy_all(keys=[user_index_key], args=[session_prefix]),
            "destroy_user_sessions",
        )
        return int(result)

    async def list_user_sessions(
        self, user_index_key: str, session_prefix: str
    ) -> List[Tuple[str, Dict[str, str]]]:
        session_ids = await self._run(
            self.client.zrange(user_index_key, 0, -1), "list_user_sessions"
        )
        if not session_ids:
            return []
        pipe = self.client.pipeline(transaction=False)
        for session_id in session_ids:
            pipe.hgetall(f"{session_prefix}{session_id}")
        records = await self._run(pipe.execute(), "list_user_sessions")
        return [(sid, data) for sid, data in zip(session_ids, records) if data]

    # =========================================================================
    # Refresh tokens
    # =========================================================================

    async def issue_refresh_token(
        self,
        prefix: str,
        token_hash: str,
        family: str,
        user_id: str,
        fields: Dict[str, str],
        *,
        ttl_ms: int,
        max_families: int,
    ) -> List[str]:
        """Store a token in its family. Returns families revoked to honour
        ``max_families``."""
        now_ms = int(time.time() * 1000)
        dropped = await self._run(
            self._token_issue(
                keys=[
                    f"{prefix}token:{token_hash}",
                    f"{prefix}family:{family}",
                    f"{prefix}user:{user_id}",
                ],
                args=[token_hash, family, ttl_ms, now_ms, max_families, prefix, *_flatten(fields)],
            ),
            "issue_refresh_token",
        )
        return list(dropped or [])

    async def check_refresh_token(
        self, prefix: str, token_hash: str, *, reuse_detection: bool
    ) -> Tuple[int, Dict[str, str], Optional[str]]:
        """Returns (status, fields, family): 1 valid, 0 unknown, -1 reused."""
        result = await self._run(
            self._token_check(
                keys=[f"{prefix}token:{token_hash}"],
                args=[prefix, "1" if reuse_detection else "0"],
            ),
            "check_refresh_token",
        )
        status = int(result[0])
        if status == 1:
            return status, _pairs(result[1]), None
        if status == -1:
            return status, {}, result[1]
        return status, {}, None

    async def rotate_refresh_token(
        self,
        prefix: str,
        old_hash: str,
        new_hash: str,
        fields: Dict[str, str],
        *,
        ttl_ms: int,
        reuse_detection: bool,
    ) -> Tuple[int, Dict[str, str], Optional[str]]:
        """Revoke ``old_hash`` and issue ``new_hash`` in the same family atomically.

        Returns (status, new_fields, family): 1 rotated, 0 unknown, -1 reused.
        """
        result = await self._run(
            self._token_rotate(
                keys=[f"{prefix}token:{old_hash}", f"{prefix}token:{new_hash}"],
                args=[prefix, new_hash, ttl_ms, "1" if reuse_detection else "0", *_flatten(fields)],
            ),
            "rotate_refresh_token",
        )
        status = int(result[0])
        if status == 1:
            return status, _pairs(result[1]), None
        if status == -1:
            return status, {}, result[1]
        return status, {}, None

    async def revoke_refresh_token(self, prefix: str, token_hash: str) -> bool:
        result = await self._run(
            self._token_revoke(keys=[f"{prefix}token:{token_hash}"]),
            "revoke_refresh_token",
        )
        return bool(int(result))

    async def revoke_token_family(self, prefix: str, family: str) -> int:
        result = await self._run(
            self._family_revoke(keys=[], args=[prefix, family]),
            "revoke_token_family",
        )
        return int(result)

    async def revoke_user_tokens(self, prefix: str, user_id: str) -> int:
        result = await self._run(
            self._user_tokens_revoke(keys=[f"{prefix}user:{user_id}"], args=[prefix]),
            "revoke_user_tokens",
        )
        return int(result)


__all__ = ["RedisCache"]
