from __future__ import annotations

from typing import Any
from uuid import UUID

import redis
from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError

from quantum_salvation.actions import ActionRejected, dispatch_action
from quantum_salvation.api.deps import get_catalog, get_redis, get_settings
from quantum_salvation.api.models import (
    SESSION_ACTION_ADAPTER,
    ActionResponse,
    EndingResponse,
    OutboxMessage,
    OutboxResponse,
    SessionCreateRequest,
    SessionListResponse,
    SessionSnapshot,
    SessionView,
)
from quantum_salvation.assets.registry import Catalog
from quantum_salvation.config import Settings
from quantum_salvation.core.errors import ErrorKind
from quantum_salvation.session import GameSession
from quantum_salvation.session_store import SessionNotFound, create_session, list_sessions, require_session
from quantum_salvation.streams import Outbox, publish_events, read_outbox

router = APIRouter()

_REJECTION_STATUS = {
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.invalid_state: status.HTTP_409_CONFLICT,
}


def _load(*, r: redis.Redis, catalog: Catalog, session_id: UUID) -> GameSession:
    try:
        snapshot = require_session(r=r, session_id=session_id)
        return GameSession.from_snapshot(snapshot, catalog=catalog)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e


def _view(snapshot: SessionSnapshot, catalog: Catalog) -> SessionView:
    session = GameSession.from_snapshot(snapshot, catalog=catalog)
    try:
        return session.view()
    finally:
        session.dispose()


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/sessions", response_model=SessionView, status_code=status.HTTP_201_CREATED)
def create_session_route(
    payload: SessionCreateRequest | None = None,
    r: redis.Redis = Depends(get_redis),
    catalog: Catalog = Depends(get_catalog),
) -> SessionView:
    payload = payload or SessionCreateRequest()
    session = create_session(r=r, catalog=catalog, play_opening=payload.play_opening)
    try:
        publish_events(r=r, outbox=Outbox(session_id=str(session.session_id)), events=session.drain_events())
        return session.view()
    finally:
        session.dispose()


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions_route(
    r: redis.Redis = Depends(get_redis),
    catalog: Catalog = Depends(get_catalog),
) -> SessionListResponse:
    return SessionListResponse(sessions=[_view(s, catalog) for s in list_sessions(r=r)])


@router.get("/sessions/{session_id}", response_model=SessionView)
def get_session_route(
    session_id: UUID,
    r: redis.Redis = Depends(get_redis),
    catalog: Catalog = Depends(get_catalog),
) -> SessionView:
    session = _load(r=r, catalog=catalog, session_id=session_id)
    try:
        return session.view()
    finally:
        session.dispose()


@router.post("/sessions/{session_id}/actions", response_model=ActionResponse)
def session_action_route(
    session_id: UUID,
    body: dict[str, Any] = Body(...),
    r: redis.Redis = Depends(get_redis),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
) -> ActionResponse:
    try:
        action = SESSION_ACTION_ADAPTER.validate_python(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from e

    try:
        result = dispatch_action(
            r=r,
            catalog=catalog,
            session_id=session_id,
            action=action,
            lock_ttl_ms=settings.lock_ttl_ms,
        )
    except ActionRejected as e:
        raise HTTPException(status_code=_REJECTION_STATUS.get(e.kind, status.HTTP_422_UNPROCESSABLE_ENTITY), detail=str(e)) from e
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    return ActionResponse(session=result.session, outbox_entry_ids=result.outbox_entry_ids, result=result.result)


@router.get("/sessions/{session_id}/ending", response_model=EndingResponse)
def get_ending_route(
    session_id: UUID,
    r: redis.Redis = Depends(get_redis),
    catalog: Catalog = Depends(get_catalog),
) -> EndingResponse:
    session = _load(r=r, catalog=catalog, session_id=session_id)
    try:
        return EndingResponse(
            session_id=session_id,
            ending=session.engine.determine_ending(),
            ending_path=session.engine.state.ending_path,
            possible_endings=session.engine.possible_endings(),
        )
    finally:
        session.dispose()


@router.get("/sessions/{session_id}/outbox", response_model=OutboxResponse)
def get_outbox_route(
    session_id: UUID,
    count: int = 100,
    after: str = "-",
    r: redis.Redis = Depends(get_redis),
) -> OutboxResponse:
    """Read a session's outbox Redis Stream. Pass the last seen entry id as `after` to page."""

    if count < 1 or count > 500:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="count must be between 1 and 500")

    outbox = Outbox(session_id=str(session_id))
    try:
        entries = read_outbox(r=r, outbox=outbox, after=after, count=count)
    except redis.ResponseError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    return OutboxResponse(
        session_id=session_id,
        stream=outbox.key,
        messages=[OutboxMessage(**m) for m in entries],
    )
