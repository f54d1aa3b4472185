"""Coordination store built on Redis.

Keys live in one hash per entry (value, modify index, session binding), are
indexed in a sorted set for prefix scans, and every mutation bumps a global
index and is appended to a change stream. Reads, writes and purges run as
Lua scripts so each one is atomic.

Sessions are Pottery Redlocks: the lock's auto-release time is the session
TTL and ``extend()`` is the heartbeat. An entry bound to a session whose
Redlock key has expired is purged by the next script that touches it, which
is how the store deletes keys of dead sessions.

The Redis client's ``socket_timeout`` must exceed the longest ``wait`` passed
to ``get`` or blocking reads will time out at the socket.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import uuid
from typing import TYPE_CHECKING, Any

from pottery import ExtendUnlockedLock, Redlock, ReleaseUnlockedLock

from .exceptions import InvalidArgumentError, InvalidSessionError, SessionCreationError
from .store import DELETE_BEHAVIOR, KVEntry, KVResult

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)

# KEYS: index counter, key index (sorted set), change stream
# ARGV[1]: entry hash prefix, ARGV[2]: change stream max length
_PRELUDE = r"""
local index_key, keys_key, changes_key = KEYS[1], KEYS[2], KEYS[3]
local entry_prefix, max_changes = ARGV[1], ARGV[2]

local function bump(key, op)
    local idx = redis.call('INCR', index_key)
    redis.call('XADD', changes_key, 'MAXLEN', '~', max_changes,
               idx .. '-1', 'key', key, 'op', op)
    return idx
end

local function alive(entry)
    local session_key = redis.call('HGET', entry, 'session_key')
    return (not session_key) or redis.call('EXISTS', session_key) == 1
end

local function purge(key, entry)
    redis.call('DEL', entry)
    redis.call('ZREM', keys_key, key)
    bump(key, 'expire')
end

local function create(key, entry, idx)
    if redis.call('EXISTS', entry) == 0 then
        redis.call('HSET', entry, 'create_index', idx)
        redis.call('ZADD', keys_key, 0, key)
    end
end
"""

# ARGV[3]: key, ARGV[4]: '1' to read every key under ARGV[3]
_GET = _PRELUDE + r"""
local key, recurse = ARGV[3], ARGV[4] == '1'
local candidates
if recurse then
    candidates = redis.call('ZRANGEBYLEX', keys_key, '[' .. key, '[' .. key .. '\255')
else
    candidates = {key}
end
local entries = {}
for _, k in ipairs(candidates) do
    local entry = entry_prefix .. k
    if redis.call('EXISTS', entry) == 1 then
        if alive(entry) then
            local fields = redis.call(
                'HMGET', entry, 'value', 'modify_index', 'session')
            table.insert(
                entries, {k, fields[1] or '', fields[2] or '0', fields[3] or ''})
        else
            purge(k, entry)
        end
    end
end
return {tonumber(redis.call('GET', index_key) or '0'), entries}
"""

# ARGV[3]: key, ARGV[4]: value, ARGV[5]: expected modify index or ''
_PUT = _PRELUDE + r"""
local key, value, cas = ARGV[3], ARGV[4], ARGV[5]
local entry = entry_prefix .. key
if redis.call('EXISTS', entry) == 1 and not alive(entry) then
    purge(key, entry)
end
if cas ~= '' then
    local current = tonumber(redis.call('HGET', entry, 'modify_index') or '0')
    if current ~= tonumber(cas) then
        return 0
    end
end
local idx = bump(key, 'set')
create(key, entry, idx)
redis.call('HSET', entry, 'value', value, 'modify_index', idx)
return 1
"""

# ARGV[3]: key, ARGV[4]: value, ARGV[5]: session id, ARGV[6]: session Redlock key
_ACQUIRE = _PRELUDE + r"""
local key, value, session, session_key = ARGV[3], ARGV[4], ARGV[5], ARGV[6]
if redis.call('EXISTS', session_key) == 0 then
    return -1
end
local entry = entry_prefix .. key
if redis.call('EXISTS', entry) == 1 then
    if not alive(entry) then
        purge(key, entry)
    else
        local holder = redis.call('HGET', entry, 'session')
        if holder and holder ~= '' and holder ~= session then
            return 0
        end
    end
end
local idx = bump(key, 'acquire')
create(key, entry, idx)
redis.call('HSET', entry, 'value', value, 'modify_index', idx,
           'session', session, 'session_key', session_key)
return 1
"""

# ARGV[3]: key
_DELETE = _PRELUDE + r"""
local key = ARGV[3]
local entry = entry_prefix .. key
if redis.call('EXISTS', entry) == 0 then
    return 0
end
redis.call('DEL', entry)
redis.call('ZREM', keys_key, key)
bump(key, 'delete')
return 1
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class RedisStore:
    """Coordination store on a single Redis server.

    Single server only: the scripts touch entry and session keys they are not
    passed in ``KEYS``, so Redis Cluster is not supported.

    Usage:
        >>> from redis import Redis
        >>> store = RedisStore(redis=Redis(socket_timeout=60))
        >>> session_id = store.create_session('worker', ttl=15)
        >>> store.acquire('service/app/lock/' + session_id, session_id, 'none')
        True

    Args:
        redis: Redis client all keys are stored through
        namespace: Prefix for every Redis key this store owns
        max_changes: Approximate length the change stream is trimmed to
    """

    _KEY_PREFIX = "kv"
    _MAX_CHANGES = 1000

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        namespace: str = _KEY_PREFIX,
        max_changes: int = _MAX_CHANGES,
    ) -> None:
        if redis is None:
            from redis import Redis as RedisClient

            redis = RedisClient()

        self._redis = redis
        self._namespace = namespace
        self._max_changes = max_changes
        self._keys = [
            f"{namespace}:index",
            f"{namespace}:keys",
            f"{namespace}:changes",
        ]
        self._entry_prefix = f"{namespace}:entry:"

        self._get = redis.register_script(_GET)
        self._put = redis.register_script(_PUT)
        self._acquire = redis.register_script(_ACQUIRE)
        self._delete = redis.register_script(_DELETE)

        # Redlocks of the sessions created through this store
        self._sessions: dict[str, Redlock] = {}
        self._sessions_lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisStore:
        """Build a store from a Redis URL; extra kwargs go to the store."""
        from redis import Redis as RedisClient

        return cls(redis=RedisClient.from_url(url), **kwargs)

    @property
    def redis(self) -> Redis:
        return self._redis

    def _run(self, script, *args: Any) -> Any:
        return script(
            keys=self._keys,
            args=[self._entry_prefix, self._max_changes, *args],
        )

    # Sessions

    def create_session(
        self, name: str, *, ttl: float, behavior: str = DELETE_BEHAVIOR
    ) -> str:
        if behavior != DELETE_BEHAVIOR:
            raise InvalidArgumentError(f"Unsupported session behavior: {behavior!r}")

        session_id = str(uuid.uuid4())
        redlock = Redlock(
            key=f"{self._namespace}:session:{session_id}",
            masters={self._redis},
            raise_on_redis_errors=True,
            auto_release_time=ttl,
            num_extensions=sys.maxsize,
        )
        if not redlock.acquire(blocking=False):
            raise SessionCreationError(name, "session lock was not acquired")

        with self._sessions_lock:
            self._sessions[session_id] = redlock
        logger.debug("Created session %s (%s) with ttl %ss", session_id, name, ttl)
        return session_id

    def renew_session(self, session_id: str) -> bool:
        with self._sessions_lock:
            redlock = self._sessions.get(session_id)
        if redlock is None:
            return False
        try:
            redlock.extend()
        except ExtendUnlockedLock:
            return False
        return True

    def destroy_session(self, session_id: str) -> None:
        with self._sessions_lock:
            redlock = self._sessions.pop(session_id, None)
        if redlock is None:
            return
        try:
            redlock.release()
        except ReleaseUnlockedLock:
            logger.debug("Session %s had already expired", session_id)

    # Keys

    def acquire(self, key: str, session_id: str, value: str) -> bool:
        if not value:
            raise InvalidArgumentError("Value cannot be empty or None")

        with self._sessions_lock:
            redlock = self._sessions.get(session_id)
        if redlock is None:
            raise InvalidSessionError(session_id)

        result = self._run(self._acquire, key, value, session_id, redlock.key)
        if result == -1:
            raise InvalidSessionError(session_id)
        return result == 1

    def get(
        self,
        key: str,
        *,
        recurse: bool = False,
        index: int = 0,
        wait: float | None = None,
    ) -> KVResult:
        if wait is not None and index > 0:
            self._wait_for_change(key, recurse=recurse, index=index, wait=wait)

        current, rows = self._run(self._get, key, "1" if recurse else "0")
        entries = tuple(
            KVEntry(
                key=_text(row[0]),
                value=_text(row[1]),
                modify_index=int(_text(row[2])),
                session=_text(row[3]) or None,
            )
            for row in rows
        )
        return KVResult(index=int(current), entries=entries)

    def _wait_for_change(
        self, key: str, *, recurse: bool, index: int, wait: float
    ) -> None:
        """Block on the change stream until ``key`` changes after ``index``.

        Returns on the first matching change or once ``wait`` has elapsed.
        Expired sessions produce no stream entry until a read purges them, so
        the read that follows a timeout is what reports their keys as gone.
        """
        changes_key = self._keys[2]
        deadline = time.monotonic() + wait
        last_id: Any = f"{index}-1"
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            response = self._redis.xread(
                {changes_key: last_id}, count=100, block=max(1, int(remaining * 1000))
            )
            if not response:
                return
            # response format: [[stream, [(id, {field: value})]]]
            for entry_id, entry_data in response[0][1]:
                last_id = entry_id
                changed = entry_data.get(b"key") or entry_data.get("key")
                changed = _text(changed)
                if changed == key or (recurse and changed.startswith(key)):
                    return

    def put(self, key: str, value: str, *, cas: int | None = None) -> bool:
        expected = "" if cas is None else str(cas)
        return self._run(self._put, key, value, expected) == 1

    def delete(self, key: str) -> bool:
        return self._run(self._delete, key) == 1

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} namespace={self._namespace!r}>"
