from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from quantum_salvation.api.models import (
    STORY_SCHEMA_VERSION,
    QuestObjective,
    QuestStatus,
    StorySnapshot,
    StoryState,
)
from quantum_salvation.core.errors import Rejections
from quantum_salvation.core.events import EventChannel
from quantum_salvation.endings import compute_ending_path, determine_ending, possible_endings
from quantum_salvation.store import Change, StoryStateStore

logger = logging.getLogger(__name__)

TOTAL_DURATION = 7200.0
BASE_PANDEMIC_RATE = 0.05

TIME_WARNING_HOURS: tuple[float, ...] = (24, 12, 6, 3, 1, 0.5)
SEVERITY_THRESHOLDS: tuple[int, ...] = (25, 50, 75, 90, 95)
RESEARCH_MILESTONES: tuple[int, ...] = (10, 25, 50, 75, 90, 100)

RESEARCH_PAYOFF_MILESTONE = 50
RESEARCH_PAYOFF_SEVERITY_DROP = 5.0
CURE_TIME_BONUS = 1800.0

Condition = Callable[[StoryState, frozenset[str]], bool]
ConditionCallback = Callable[[StoryState], None]


@dataclass(slots=True)
class ConditionListener:
    id: str
    condition: Condition
    callback: ConditionCallback
    once: bool = True


def _hours_label(hours: float) -> str:
    return f"{hours:g}h"


def format_hms(seconds: float) -> str:
    total = max(0, int(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


class StoryEngine:
    """Narrative clock and trigger evaluator.

    The engine is the only writer of `StoryState`. Every mutation goes through the
    store, and events are emitted from the store's change log after the write is
    committed, so listeners always observe the clamped value.
    """

    def __init__(
        self,
        *,
        state: StoryState | None = None,
        total_duration: float = TOTAL_DURATION,
        base_rate: float = BASE_PANDEMIC_RATE,
    ):
        self.total_duration = total_duration
        self.base_rate = base_rate
        self.events = EventChannel(name="story")
        self.rejections = Rejections(logger)
        self._store = StoryStateStore(state)
        self._triggered: set[str] = set()
        self._listeners: dict[str, ConditionListener] = {}

    # -- read access ------------------------------------------------------------

    @property
    def state(self) -> StoryState:
        return self._store.state

    @property
    def triggered_events(self) -> frozenset[str]:
        return frozenset(self._triggered)

    def has_triggered(self, key: str) -> bool:
        return key in self._triggered

    def get_flag(self, flag: str, default: Any = None) -> Any:
        return self._store.get_flag(flag, default)

    def get_relationship(self, character: str) -> float:
        return self._store.get_relationship(character)

    def has_lore(self, lore_id: str) -> bool:
        return lore_id in self.state.discovered_lore

    def has_evidence(self, evidence_id: str) -> bool:
        return evidence_id in self.state.collected_evidence

    def is_facility_unlocked(self, facility: str) -> bool:
        return facility in self.state.world_state.unlocked_facilities

    def formatted_time_remaining(self) -> str:
        return format_hms(self.state.world_state.time_remaining)

    # -- clock --------------------------------------------------------------------

    def update(self, delta: float) -> None:
        """Advance the narrative clock by `delta` seconds."""

        if delta < 0:
            self.rejections.invalid_state(f"update delta must be >= 0, got {delta}")
            return

        world = self.state.world_state
        if world.time_remaining > 0:
            self._store.consume_time(delta)
            self._flush()
            self._check_time_warnings()

        if world.time_remaining <= 0 and "timeExpired" not in self._triggered:
            self.trigger_event("timeExpired", {})

        self._progress_pandemic(delta)
        self._evaluate_listeners()

    def _check_time_warnings(self) -> None:
        hours_left = self.state.world_state.time_remaining / 3600
        for hours in TIME_WARNING_HOURS:
            key = f"time_remaining_{_hours_label(hours)}"
            if hours_left <= hours and key not in self._triggered:
                self.trigger_event(key, {"hours_remaining": hours})

    def _progress_pandemic(self, delta: float) -> None:
        world = self.state.world_state
        research_factor = 1 - (world.research_progress / 100) * 0.9
        time_ratio = 1 - (world.time_remaining / self.total_duration)
        increase = self.base_rate * research_factor * (1 + time_ratio) * delta
        if increase:
            self._store.adjust_severity(increase)
            self._flush()

        for threshold in SEVERITY_THRESHOLDS:
            key = f"pandemic_severity_{threshold}"
            if world.pandemic_severity >= threshold and key not in self._triggered:
                self.trigger_event(key, {"severity": world.pandemic_severity})

    def _evaluate_listeners(self) -> None:
        for listener in list(self._listeners.values()):
            if listener.id not in self._listeners:
                continue
            if not listener.condition(self.state, self.triggered_events):
                continue
            if listener.once:
                self._listeners.pop(listener.id, None)
            listener.callback(self.state)

    def when(
        self,
        condition: Condition,
        callback: ConditionCallback,
        *,
        once: bool = True,
        listener_id: str | None = None,
    ) -> str:
        """Register a condition polled once per `update()`. Returns the listener id."""

        lid = listener_id or uuid.uuid4().hex
        self._listeners[lid] = ConditionListener(id=lid, condition=condition, callback=callback, once=once)
        return lid

    def remove_listener(self, listener_id: str) -> bool:
        if self._listeners.pop(listener_id, None) is None:
            return self.rejections.not_found(f"unknown condition listener: {listener_id}")
        return True

    # -- flags / relationships ----------------------------------------------

    def set_flag(self, flag: str, value: Any) -> None:
        self._store.set_flag(flag, value)
        self._flush()

    def modify_relationship(self, character: str, delta: float) -> float:
        change = self._store.modify_relationship(character, delta)
        self._flush()
        return change.value

    # -- decisions ------------------------------------------------------------

    def record_decision(self, decision_key: str, choice: Any, context: Mapping[str, Any] | None = None) -> None:
        self._store.record_decision(decision_key, choice, dict(context or {}))
        self._store.set_flag(f"decision_{decision_key}", choice)
        self._update_ending_path()
        self._flush()

    def _update_ending_path(self) -> None:
        state = self.state
        path = compute_ending_path(
            state.decisions,
            flags=state.flags,
            research_progress=state.world_state.research_progress,
        )
        if self._store.set_ending_path(path) is not None:
            logger.info("ending path is now %s", path)

    # -- research / world ---------------------------------------------------------

    def advance_research(self, amount: float) -> float:
        change = self._store.advance_research(amount)
        self._flush()

        previous, current = change.previous, change.value
        for milestone in RESEARCH_MILESTONES:
            key = f"research_milestone_{milestone}"
            if previous < milestone <= current and key not in self._triggered:
                self.trigger_event(key, {"milestone": milestone})
                if milestone == RESEARCH_PAYOFF_MILESTONE:
                    self._store.adjust_severity(-RESEARCH_PAYOFF_SEVERITY_DROP)
                    self._flush()
                if milestone == 100:
                    self.trigger_event("cure_formula_discovered", {})
        return self.state.world_state.research_progress

    def unlock_facility(self, facility: str) -> bool:
        if self._store.unlock_facility(facility) is None:
            return self.rejections.invalid_state(f"facility already unlocked: {facility}")
        self._flush()
        return True

    def add_time(self, seconds: float) -> float:
        self._store.add_time(seconds)
        self._flush()
        return self.state.world_state.time_remaining

    def set_main_progress(self, value: float) -> None:
        self._store.set_main_progress(value)
        self._flush()

    def progress_to_chapter(self, chapter: str) -> bool:
        if chapter == self.state.current_chapter:
            return self.rejections.invalid_state(f"already in chapter {chapter}")
        self._store.set_chapter(chapter)
        self._flush()
        return True

    # -- discoveries ----------------------------------------------------------------

    def discover_lore(self, lore_id: str, data: Mapping[str, Any] | None = None) -> bool:
        data = dict(data or {})
        if self._store.discover_lore(lore_id, data) is None:
            return False
        self._flush()
        self._apply_research_value(data)
        return True

    def collect_evidence(self, evidence_id: str, data: Mapping[str, Any] | None = None) -> bool:
        data = dict(data or {})
        if self._store.collect_evidence(evidence_id, data) is None:
            return False
        self._flush()
        self._apply_research_value(data)
        return True

    def _apply_research_value(self, data: Mapping[str, Any]) -> None:
        value = data.get("research_value") or 0
        if value:
            self.advance_research(float(value))

    # -- player inputs --------------------------------------------------------------

    def enter_location(self, location: str) -> None:
        self._store.enter_location(location)
        self._flush()

    def collect_item(self, item: str) -> None:
        self._store.collect_item(item)
        self._flush()

    def discover_research(self, research_id: str) -> None:
        self._store.discover_research(research_id)
        self._flush()

    # -- quests -----------------------------------------------------------------------

    def start_quest(self, quest_id: str, *, title: str = "", objectives: list[Mapping[str, Any]] | None = None) -> bool:
        existing = self._store.get_quest(quest_id)
        if existing is not None and existing.status == QuestStatus.active:
            return self.rejections.invalid_state(f"quest already active: {quest_id}")
        objs = [
            QuestObjective(id=str(o["id"]), description=str(o.get("description", "")))
            for o in (objectives or [])
        ]
        self._store.start_quest(quest_id, title=title, objectives=objs)
        self._flush()
        return True

    def update_quest_progress(self, quest_id: str, progress: float) -> bool:
        if not self._require_active_quest(quest_id):
            return False
        self._store.set_quest_progress(quest_id, progress)
        self._flush()
        return True

    def complete_quest_objective(self, quest_id: str, objective_id: str) -> bool:
        if not self._require_active_quest(quest_id):
            return False
        if self._store.complete_quest_objective(quest_id, objective_id) is None:
            quest = self._store.get_quest(quest_id)
            known = quest is not None and any(o.id == objective_id for o in quest.objectives)
            if not known:
                return self.rejections.not_found(f"unknown objective {objective_id} in quest {quest_id}")
            return self.rejections.invalid_state(f"objective already completed: {quest_id}/{objective_id}")
        self._flush()

        quest = self._store.get_quest(quest_id)
        if quest is not None and all(o.completed for o in quest.objectives):
            self.complete_quest(quest_id)
        return True

    def complete_quest(self, quest_id: str) -> bool:
        if not self._require_active_quest(quest_id):
            return False
        self._store.set_quest_status(quest_id, QuestStatus.completed)
        self._flush()
        return True

    def fail_quest(self, quest_id: str) -> bool:
        if not self._require_active_quest(quest_id):
            return False
        self._store.set_quest_status(quest_id, QuestStatus.failed)
        self._flush()
        return True

    def _require_active_quest(self, quest_id: str) -> bool:
        quest = self._store.get_quest(quest_id)
        if quest is None:
            return self.rejections.not_found(f"unknown quest: {quest_id}")
        if quest.status != QuestStatus.active:
            return self.rejections.invalid_state(f"quest {quest_id} is {quest.status.value}")
        return True

    # -- triggered events -----------------------------------------------------------

    def trigger_event(self, key: str, data: Mapping[str, Any] | None = None) -> bool:
        """Fire a one-shot story event. Returns False if `key` has already fired."""

        if key in self._triggered:
            logger.debug("story event %s already triggered", key)
            return False

        self._triggered.add(key)
        payload = {"key": key, "data": dict(data or {})}
        self._flush()
        self.events.emit("story_event", payload)
        self.events.emit(f"story_event:{key}", payload)

        handler = _SPECIAL_EVENTS.get(key)
        if handler is not None:
            handler(self)
        return True

    def _on_quantum_breach(self) -> None:
        self._store.adjust_severity(10)
        self._store.adjust_stabilization(-15)
        self._store.set_flag("caused_quantum_breach", True)
        self._flush()

    def _on_cure_formula_discovered(self) -> None:
        self.add_time(CURE_TIME_BONUS)

    def _on_researcher_rescued(self) -> None:
        self.advance_research(5)

    # -- endings ------------------------------------------------------------------------

    def determine_ending(self) -> str:
        return determine_ending(self.state)

    def possible_endings(self) -> dict[str, bool]:
        return possible_endings(self.state)

    # -- persistence ----------------------------------------------------------------

    def save(self) -> StorySnapshot:
        return StorySnapshot(
            schema_version=STORY_SCHEMA_VERSION,
            state=self.state.model_copy(deep=True),
            triggered_events=sorted(self._triggered),
            saved_at=datetime.now(tz=UTC),
        )

    def load(self, saved: StorySnapshot | Mapping[str, Any]) -> bool:
        """Replace the current state with `saved`. Fails closed: nothing changes on error."""

        if isinstance(saved, StorySnapshot):
            snapshot = saved
        else:
            if not isinstance(saved, Mapping) or "state" not in saved:
                logger.error("cannot load story snapshot: missing 'state'")
                return False
            try:
                snapshot = StorySnapshot.model_validate(_migrate_snapshot(dict(saved)))
            except ValidationError as e:
                logger.error("cannot load story snapshot: %s", e)
                return False

        self._store.replace(snapshot.state.model_copy(deep=True))
        self._triggered = set(snapshot.triggered_events)
        logger.info("story state loaded (schema v%d, %d triggered events)", snapshot.schema_version, len(self._triggered))
        return True

    # -- event emission ---------------------------------------------------------------

    def _flush(self) -> None:
        while (change := self._store.pop_change()) is not None:
            self._emit_change(change)

    def _emit_change(self, change: Change) -> None:
        emit = self.events.emit
        kind = change.kind

        if kind == "flag":
            emit("flag_changed", {"flag": change.key, "value": change.value, "previous_value": change.previous})
        elif kind == "relationship":
            emit(
                "relationship_changed",
                {
                    "character": change.key,
                    "delta": change.detail["delta"],
                    "new_value": change.value,
                    "previous_value": change.previous,
                },
            )
        elif kind == "research":
            emit(
                "research_progressed",
                {"amount": change.detail["amount"], "previous": change.previous, "current": change.value},
            )
        elif kind == "time_added":
            emit("time_added", {"seconds": change.detail["seconds"], "time_remaining": change.value})
        elif kind == "facility":
            emit("facility_unlocked", {"facility": change.key})
        elif kind == "decision":
            record = change.value
            emit(
                "decision_made",
                {"decision_key": record.id, "choice": record.choice, "context": record.context, "chapter": record.chapter},
            )
        elif kind == "ending_path":
            emit("ending_path_changed", {"previous": change.previous, "ending_path": change.value})
        elif kind == "lore":
            emit("lore_discovered", {"lore_id": change.key, "data": change.value})
        elif kind == "evidence":
            emit("evidence_collected", {"evidence_id": change.key, "data": change.value})
        elif kind == "chapter":
            emit("chapter_completed", {"chapter": change.previous})
            emit("chapter_started", {"chapter": change.value})
        elif kind == "main_progress":
            emit("main_progress_changed", {"previous": change.previous, "main_progress": change.value})
        elif kind == "location":
            emit("location_changed", {"location": change.value, "previous_location": change.previous})
        elif kind == "item":
            emit("item_collected", {"item": change.key, "first_time": not change.previous})
        elif kind == "research_discovered":
            emit("research_discovered", {"research_id": change.key, "first_time": not change.previous})
        elif kind == "quest_started":
            emit("quest_started", {"quest_id": change.key})
        elif kind == "quest_progress":
            emit("quest_updated", {"quest_id": change.key, "progress": change.value})
        elif kind == "quest_objective":
            emit(
                "quest_objective_completed",
                {"quest_id": change.key, "objective_id": change.detail["objective_id"], "progress": change.value},
            )
        elif kind == "quest_status":
            status = change.value
            if status == QuestStatus.completed:
                emit("quest_completed", {"quest_id": change.key})
            elif status == QuestStatus.failed:
                emit("quest_failed", {"quest_id": change.key})
        # severity, stabilization and clock consumption are observable through
        # threshold events only.


_SPECIAL_EVENTS: dict[str, Callable[[StoryEngine], None]] = {
    "quantum_breach": StoryEngine._on_quantum_breach,
    "cure_formula_discovered": StoryEngine._on_cure_formula_discovered,
    "researcher_rescued": StoryEngine._on_researcher_rescued,
}


def _migrate_snapshot(raw: dict[str, Any]) -> dict[str, Any]:
    """Bring an older snapshot layout up to the current schema."""

    version = raw.get("schema_version", 0)
    if version == 0:
        triggered = raw.get("triggered_events") or {}
        if isinstance(triggered, Mapping):
            triggered = [k for k, fired in triggered.items() if fired]
        raw = {
            "schema_version": STORY_SCHEMA_VERSION,
            "state": raw["state"],
            "triggered_events": list(triggered),
            "saved_at": raw.get("saved_at") or raw.get("timestamp") or datetime.now(tz=UTC),
        }
    return raw
