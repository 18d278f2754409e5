from __future__ import annotations

from contextlib import contextmanager

import redis

DEFAULT_LOCK_TTL_MS = 5_000


@contextmanager
def session_lock(*, r: redis.Redis, session_id: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS):
    """Best-effort per-session lock so only one command mutates a session at a time.

    Single holder only: release is an unconditional delete, and there is no retry.
    """

    key = f"lock:session:{session_id}"
    acquired = r.set(key, "1", nx=True, px=ttl_ms)
    if not acquired:
        raise ValueError("Session is busy")
    try:
        yield
    finally:
        r.delete(key)
