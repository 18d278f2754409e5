from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from quantum_salvation.api.models import (
    DecisionRecord,
    Quest,
    QuestObjective,
    QuestStatus,
    StoryState,
)

RELATIONSHIP_MIN = -100.0
RELATIONSHIP_MAX = 100.0
PERCENT_MIN = 0.0
PERCENT_MAX = 100.0


def _now() -> datetime:
    return datetime.now(tz=UTC)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True, slots=True)
class Change:
    """One committed mutation of the story state.

    `previous` and `value` are the values before and after the write; `detail`
    carries whatever else the engine needs to describe the change.
    """

    kind: str
    key: str | None
    previous: Any
    value: Any
    detail: dict[str, Any] = field(default_factory=dict)


class StoryStateStore:
    """Canonical narrative state plus atomic mutation primitives.

    Every mutator clamps its input, commits, appends a `Change` to the change log and
    returns it. The store never emits events; the Story Engine drains the log and
    decides what listeners get to see.
    """

    def __init__(self, state: StoryState | None = None):
        self._state = state if state is not None else StoryState()
        self._log: deque[Change] = deque()

    @property
    def state(self) -> StoryState:
        return self._state

    def replace(self, state: StoryState) -> None:
        self._state = state
        self._log.clear()

    # -- change log ---------------------------------------------------------

    def pop_change(self) -> Change | None:
        return self._log.popleft() if self._log else None

    def pending_changes(self) -> list[Change]:
        return list(self._log)

    def _commit(self, change: Change) -> Change:
        self._log.append(change)
        return change

    # -- flags / relationships ----------------------------------------------

    def get_flag(self, flag: str, default: Any = None) -> Any:
        return self._state.flags.get(flag, default)

    def set_flag(self, flag: str, value: Any) -> Change:
        previous = self._state.flags.get(flag)
        self._state.flags[flag] = value
        return self._commit(Change(kind="flag", key=flag, previous=previous, value=value))

    def get_relationship(self, character: str) -> float:
        return self._state.relationships.get(character, 0.0)

    def modify_relationship(self, character: str, delta: float) -> Change:
        previous = self.get_relationship(character)
        value = clamp(previous + delta, RELATIONSHIP_MIN, RELATIONSHIP_MAX)
        self._state.relationships[character] = value
        return self._commit(
            Change(kind="relationship", key=character, previous=previous, value=value, detail={"delta": delta})
        )

    # -- world state --------------------------------------------------------

    def advance_research(self, amount: float) -> Change:
        world = self._state.world_state
        previous = world.research_progress
        world.research_progress = clamp(previous + amount, PERCENT_MIN, PERCENT_MAX)
        return self._commit(
            Change(kind="research", key=None, previous=previous, value=world.research_progress, detail={"amount": amount})
        )

    def adjust_severity(self, delta: float) -> Change:
        world = self._state.world_state
        previous = world.pandemic_severity
        world.pandemic_severity = clamp(previous + delta, PERCENT_MIN, PERCENT_MAX)
        return self._commit(Change(kind="severity", key=None, previous=previous, value=world.pandemic_severity))

    def adjust_stabilization(self, delta: float) -> Change:
        world = self._state.world_state
        previous = world.quantum_stabilization
        world.quantum_stabilization = clamp(previous + delta, PERCENT_MIN, PERCENT_MAX)
        return self._commit(
            Change(kind="stabilization", key=None, previous=previous, value=world.quantum_stabilization)
        )

    def consume_time(self, seconds: float) -> Change:
        world = self._state.world_state
        previous = world.time_remaining
        world.time_remaining = max(0.0, previous - max(0.0, seconds))
        return self._commit(Change(kind="time", key=None, previous=previous, value=world.time_remaining))

    def add_time(self, seconds: float) -> Change:
        world = self._state.world_state
        previous = world.time_remaining
        world.time_remaining = max(0.0, previous + seconds)
        return self._commit(
            Change(kind="time_added", key=None, previous=previous, value=world.time_remaining, detail={"seconds": seconds})
        )

    def unlock_facility(self, facility: str) -> Change | None:
        facilities = self._state.world_state.unlocked_facilities
        if facility in facilities:
            return None
        facilities.append(facility)
        return self._commit(Change(kind="facility", key=facility, previous=False, value=True))

    # -- progression ----------------------------------------------------------

    def set_chapter(self, chapter: str) -> Change:
        previous = self._state.current_chapter
        if previous and previous not in self._state.completed_chapters:
            self._state.completed_chapters.append(previous)
        self._state.current_chapter = chapter
        return self._commit(Change(kind="chapter", key=chapter, previous=previous, value=chapter))

    def set_main_progress(self, value: float) -> Change:
        previous = self._state.main_progress
        self._state.main_progress = clamp(value, PERCENT_MIN, PERCENT_MAX)
        return self._commit(Change(kind="main_progress", key=None, previous=previous, value=self._state.main_progress))

    def set_ending_path(self, ending_path: str) -> Change | None:
        previous = self._state.ending_path
        if previous == ending_path:
            return None
        self._state.ending_path = ending_path
        return self._commit(Change(kind="ending_path", key=None, previous=previous, value=ending_path))

    def record_decision(self, decision_key: str, choice: Any, context: dict[str, Any]) -> Change:
        record = DecisionRecord(
            id=decision_key,
            choice=choice,
            context=dict(context),
            timestamp=_now(),
            chapter=self._state.current_chapter,
        )
        self._state.decisions.append(record)
        return self._commit(Change(kind="decision", key=decision_key, previous=None, value=record))

    # -- discoveries (write-once per key) -----------------------------------

    def discover_lore(self, lore_id: str, data: dict[str, Any]) -> Change | None:
        if lore_id in self._state.discovered_lore:
            return None
        entry = {**data, "discovered_at": _now().isoformat()}
        self._state.discovered_lore[lore_id] = entry
        return self._commit(Change(kind="lore", key=lore_id, previous=None, value=entry))

    def collect_evidence(self, evidence_id: str, data: dict[str, Any]) -> Change | None:
        if evidence_id in self._state.collected_evidence:
            return None
        entry = {**data, "collected_at": _now().isoformat()}
        self._state.collected_evidence[evidence_id] = entry
        return self._commit(Change(kind="evidence", key=evidence_id, previous=None, value=entry))

    # -- player inputs --------------------------------------------------------

    def enter_location(self, location: str) -> Change:
        previous = self._state.current_location
        self._state.current_location = location
        if location not in self._state.visited_locations:
            self._state.visited_locations.append(location)
        return self._commit(Change(kind="location", key=location, previous=previous, value=location))

    def collect_item(self, item: str) -> Change:
        already = item in self._state.collected_items
        if not already:
            self._state.collected_items.append(item)
        return self._commit(Change(kind="item", key=item, previous=already, value=True))

    def discover_research(self, research_id: str) -> Change:
        already = research_id in self._state.discovered_research
        if not already:
            self._state.discovered_research.append(research_id)
        return self._commit(Change(kind="research_discovered", key=research_id, previous=already, value=True))

    # -- quests -------------------------------------------------------------

    def get_quest(self, quest_id: str) -> Quest | None:
        return self._state.active_quests.get(quest_id)

    def start_quest(self, quest_id: str, *, title: str, objectives: list[QuestObjective]) -> Change:
        quest = Quest(id=quest_id, title=title, objectives=objectives, started_at=_now())
        self._state.active_quests[quest_id] = quest
        return self._commit(Change(kind="quest_started", key=quest_id, previous=None, value=quest))

    def set_quest_progress(self, quest_id: str, progress: float) -> Change:
        quest = self._state.active_quests[quest_id]
        previous = quest.progress
        quest.progress = clamp(progress, PERCENT_MIN, PERCENT_MAX)
        return self._commit(Change(kind="quest_progress", key=quest_id, previous=previous, value=quest.progress))

    def complete_quest_objective(self, quest_id: str, objective_id: str) -> Change | None:
        quest = self._state.active_quests[quest_id]
        objective = next((o for o in quest.objectives if o.id == objective_id), None)
        if objective is None or objective.completed:
            return None
        objective.completed = True
        objective.completed_at = _now()

        done = sum(1 for o in quest.objectives if o.completed)
        previous = quest.progress
        quest.progress = math.floor(100 * done / len(quest.objectives))
        return self._commit(
            Change(
                kind="quest_objective",
                key=quest_id,
                previous=previous,
                value=quest.progress,
                detail={"objective_id": objective_id},
            )
        )

    def set_quest_status(self, quest_id: str, status: QuestStatus) -> Change:
        quest = self._state.active_quests[quest_id]
        previous = quest.status
        quest.status = status
        if status == QuestStatus.completed:
            quest.progress = PERCENT_MAX
            quest.completed_at = _now()
        elif status == QuestStatus.failed:
            quest.failed_at = _now()
        return self._commit(Change(kind="quest_status", key=quest_id, previous=previous, value=status))
