from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import redis

from quantum_salvation.api.models import (
    AddMissionNoteAction,
    AdvanceChapterAction,
    AdvanceResearchAction,
    CollectEvidenceAction,
    CollectItemAction,
    CompleteMissionAction,
    CompleteObjectiveAction,
    CompleteQuestObjectiveAction,
    DialogueChoiceAction,
    DiscoverClueAction,
    DiscoverLoreAction,
    DiscoverResearchAction,
    EnterLocationAction,
    FailMissionAction,
    FailQuestAction,
    ModifyRelationshipAction,
    PlayCinematicAction,
    PlayEndingCinematicAction,
    SceneEndedAction,
    SessionView,
    SetFlagAction,
    SkipCinematicAction,
    StartMissionAction,
    StartQuestAction,
    SubmitDecisionAction,
    TickAction,
    TogglePauseAction,
    TriggerEventAction,
)
from quantum_salvation.assets.registry import Catalog
from quantum_salvation.core.errors import ErrorKind, Rejections
from quantum_salvation.lock import DEFAULT_LOCK_TTL_MS, session_lock
from quantum_salvation.session import GameSession
from quantum_salvation.session_store import SessionNotFound, get_session, save_session
from quantum_salvation.streams import Outbox, publish_events

logger = logging.getLogger(__name__)


class ActionRejected(ValueError):
    """A command the narrative core refused. `kind` drives the HTTP status."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True, slots=True)
class ActionResult:
    session: SessionView
    outbox_entry_ids: list[str]
    result: dict[str, Any] = field(default_factory=dict)


def _require(ok: Any, rejections: Rejections) -> None:
    if ok:
        return
    last = rejections.last
    if last is None:
        raise ActionRejected(ErrorKind.invalid_state, "Action rejected")
    raise ActionRejected(last.kind, last.message)


def _advance_chapter(session: GameSession, chapter: str | None) -> dict[str, Any]:
    engine = session.engine
    if chapter is None:
        current = session.catalog.chapter(engine.state.current_chapter)
        if current is None or current.next_chapter is None:
            raise ActionRejected(ErrorKind.invalid_state, f"chapter {engine.state.current_chapter} has no next chapter")
        chapter = current.next_chapter
    elif session.catalog.chapter(chapter) is None:
        raise ActionRejected(ErrorKind.not_found, f"unknown chapter: {chapter}")
    _require(engine.progress_to_chapter(chapter), engine.rejections)
    return {"chapter": chapter}


def apply_action(session: GameSession, action: Any) -> dict[str, Any]:
    """Apply one typed command to a live session. Raises ActionRejected on domain failure."""

    engine = session.engine
    missions = session.missions
    cinematics = session.cinematics
    catalog = session.catalog

    if isinstance(action, TickAction):
        session.tick(action.seconds)
    elif isinstance(action, EnterLocationAction):
        engine.enter_location(action.location)
    elif isinstance(action, CollectItemAction):
        engine.collect_item(action.item)
    elif isinstance(action, DiscoverResearchAction):
        engine.discover_research(action.research)
    elif isinstance(action, SetFlagAction):
        engine.set_flag(action.flag, action.value)
    elif isinstance(action, ModifyRelationshipAction):
        return {"relationship": engine.modify_relationship(action.character, action.delta)}
    elif isinstance(action, DiscoverLoreAction):
        entry = catalog.audio_logs.get(action.lore_id)
        data = entry.model_dump() if entry is not None else {}
        return {"discovered": engine.discover_lore(action.lore_id, data)}
    elif isinstance(action, CollectEvidenceAction):
        entry = catalog.data_entries.get(action.evidence_id)
        data = entry.model_dump() if entry is not None else {}
        return {"collected": engine.collect_evidence(action.evidence_id, data)}
    elif isinstance(action, AdvanceResearchAction):
        return {"research_progress": engine.advance_research(action.amount)}
    elif isinstance(action, TriggerEventAction):
        if not engine.trigger_event(action.key, action.data):
            raise ActionRejected(ErrorKind.invalid_state, f"story event {action.key} already triggered")
    elif isinstance(action, AdvanceChapterAction):
        return _advance_chapter(session, action.chapter)
    elif isinstance(action, DialogueChoiceAction):
        next_node = session.dialogue.select_response(action.character, action.node, action.response)
        _require(next_node is not None, session.dialogue.rejections)
        return {"next_node": next_node or None}

    elif isinstance(action, StartQuestAction):
        _require(session.quests.start(action.quest_id), session.quests.rejections)
    elif isinstance(action, CompleteQuestObjectiveAction):
        _require(engine.complete_quest_objective(action.quest_id, action.objective_id), engine.rejections)
    elif isinstance(action, FailQuestAction):
        _require(engine.fail_quest(action.quest_id), engine.rejections)

    elif isinstance(action, StartMissionAction):
        _require(missions.start_mission(action.mission_id), missions.rejections)
    elif isinstance(action, CompleteObjectiveAction):
        _require(missions.complete_objective(action.mission_id, action.objective_id), missions.rejections)
    elif isinstance(action, CompleteMissionAction):
        _require(missions.complete_mission(action.success), missions.rejections)
    elif isinstance(action, FailMissionAction):
        _require(missions.fail_mission(), missions.rejections)
    elif isinstance(action, DiscoverClueAction):
        _require(missions.discover_clue(action.clue_id), missions.rejections)
    elif isinstance(action, AddMissionNoteAction):
        _require(missions.add_mission_note(action.text), missions.rejections)

    elif isinstance(action, PlayCinematicAction):
        _require(cinematics.play_cinematic(action.cinematic_id) is not None, cinematics.rejections)
    elif isinstance(action, PlayEndingCinematicAction):
        _require(cinematics.play_ending_cinematic() is not None, cinematics.rejections)
        return {"ending": engine.determine_ending()}
    elif isinstance(action, SkipCinematicAction):
        _require(cinematics.skip_cinematic(), cinematics.rejections)
    elif isinstance(action, TogglePauseAction):
        _require(cinematics.toggle_pause(), cinematics.rejections)
    elif isinstance(action, SceneEndedAction):
        _require(cinematics.scene_ended(), cinematics.rejections)
    elif isinstance(action, SubmitDecisionAction):
        _require(cinematics.submit_decision(action.choice_id), cinematics.rejections)

    else:
        raise ValueError(f"Unknown action: {action!r}")
    return {}


def dispatch_action(
    *,
    r: redis.Redis,
    catalog: Catalog,
    session_id: UUID,
    action: Any,
    lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
) -> ActionResult:
    """Entry point for the HTTP layer.

    Applies an action by:
    - acquiring the per-session lock
    - rebuilding the session runtime from its Redis snapshot
    - applying the command
    - persisting the new snapshot
    - publishing every event the command produced to the session outbox (Redis Streams)

    A rejected command leaves the stored snapshot and the outbox untouched.
    """

    with session_lock(r=r, session_id=str(session_id), ttl_ms=lock_ttl_ms):
        snapshot = get_session(r=r, session_id=session_id)
        if snapshot is None:
            raise SessionNotFound("Session not found")

        session = GameSession.from_snapshot(snapshot, catalog=catalog)
        try:
            result = apply_action(session, action)

            snapshot = session.snapshot()
            save_session(r=r, snapshot=snapshot)
            session.last_updated_at = snapshot.last_updated_at

            ids = publish_events(r=r, outbox=Outbox(session_id=str(session_id)), events=session.drain_events())
            logger.debug("session %s: %s -> %d events", session_id, type(action).__name__, len(ids))
            return ActionResult(session=session.view(), outbox_entry_ids=ids, result=result)
        finally:
            session.dispose()
