from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

import redis

from quantum_salvation.api.models import SessionSnapshot
from quantum_salvation.assets.registry import Catalog
from quantum_salvation.session import GameSession

SESSIONS_SET_KEY = "qs:sessions"
SESSION_KEY_PREFIX = "qs:session:"  # + {uuid}


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _session_key(session_id: UUID) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def save_session(*, r: redis.Redis, snapshot: SessionSnapshot) -> None:
    snapshot.last_updated_at = _now()
    r.set(_session_key(snapshot.session_id), snapshot.model_dump_json())


def get_session(*, r: redis.Redis, session_id: UUID) -> SessionSnapshot | None:
    raw = r.get(_session_key(session_id))
    if not raw:
        return None
    return SessionSnapshot.model_validate_json(raw)


class SessionNotFound(ValueError):
    pass


def require_session(*, r: redis.Redis, session_id: UUID) -> SessionSnapshot:
    snapshot = get_session(r=r, session_id=session_id)
    if snapshot is None:
        raise SessionNotFound("Session not found")
    return snapshot


def create_session(*, r: redis.Redis, catalog: Catalog, play_opening: bool = False) -> GameSession:
    """Create and persist a fresh session. Events from setup stay in `pending_events`."""

    session = GameSession.new(session_id=uuid4(), catalog=catalog, play_opening=play_opening)
    snapshot = session.snapshot()
    save_session(r=r, snapshot=snapshot)
    session.last_updated_at = snapshot.last_updated_at
    r.sadd(SESSIONS_SET_KEY, str(session.session_id))
    return session


def list_sessions(*, r: redis.Redis) -> list[SessionSnapshot]:
    ids = sorted(r.smembers(SESSIONS_SET_KEY))
    out: list[SessionSnapshot] = []
    for sid in ids:
        try:
            session_id = UUID(sid)
        except ValueError:
            continue
        snapshot = get_session(r=r, session_id=session_id)
        if snapshot is not None:
            out.append(snapshot)
    out.sort(key=lambda s: s.created_at, reverse=True)
    return out
