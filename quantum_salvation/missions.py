from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from statemachine.exceptions import TransitionNotAllowed

from quantum_salvation.api.models import ActiveMissionView, MissionRuntimeSnapshot, MissionTimerSnapshot
from quantum_salvation.assets.registry import (
    Catalog,
    ClueTrigger,
    FlagTrigger,
    ItemTrigger,
    LocationTrigger,
    Mission,
    ResearchTrigger,
)
from quantum_salvation.core.clock import Scheduler, TimerHandle
from quantum_salvation.core.errors import Rejections
from quantum_salvation.core.events import EventChannel, StoryEvent
from quantum_salvation.fsm import MissionLifecycle, MissionStatus
from quantum_salvation.story_engine import StoryEngine

logger = logging.getLogger(__name__)

TIMER_INTERVAL = 1.0


def format_mmss(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(slots=True)
class MissionTimer:
    ends_at: float
    handle: TimerHandle


class MissionTracker:
    """Mission and objective lifecycle layered on top of Story Engine events.

    - at most one mission is active; starting another while one is active is rejected
    - trigger flags that match while the slot is busy are queued and retried once it frees up
    - every state change to the story goes through the engine
    """

    def __init__(self, *, engine: StoryEngine, catalog: Catalog, scheduler: Scheduler):
        self._engine = engine
        self._catalog = catalog
        self._scheduler = scheduler

        self.events = EventChannel(name="missions")
        self.rejections = Rejections(logger)

        self._active_id: str | None = None
        self._completed: list[str] = []
        self._lifecycles: dict[str, MissionLifecycle] = {}
        self._progress: dict[str, int] = {}
        self._objective_status: dict[str, dict[str, bool]] = {}
        self._notes: dict[str, list[str]] = {}
        self._clues: dict[str, list[str]] = {}
        self._timers: dict[str, MissionTimer] = {}
        self._pending_starts: list[str] = []
        self._pending_handle: TimerHandle | None = None

        self._unsubscribers: list[Callable[[], None]] = [
            engine.events.subscribe("flag_changed", self._on_flag_changed),
            engine.events.subscribe("location_changed", self._on_location_changed),
            engine.events.subscribe("item_collected", self._on_item_collected),
            engine.events.subscribe("research_discovered", self._on_research_discovered),
        ]

    # -- queries ----------------------------------------------------------------

    def get_mission(self, mission_id: str) -> Mission | None:
        return self._catalog.mission(mission_id)

    def get_all_missions(self) -> list[Mission]:
        return list(self._catalog.missions.values())

    def get_completed_missions(self) -> list[Mission]:
        return [self._catalog.missions[m] for m in self._completed if m in self._catalog.missions]

    @property
    def active_mission_id(self) -> str | None:
        return self._active_id

    def get_active_mission(self) -> ActiveMissionView | None:
        if self._active_id is None:
            return None
        mission = self._catalog.missions[self._active_id]
        timer = self._timers.get(mission.id)
        return ActiveMissionView(
            id=mission.id,
            title=mission.title,
            progress=self._progress.get(mission.id, 0),
            objective_status=dict(self._objective_status.get(mission.id, {})),
            notes=list(self._notes.get(mission.id, [])),
            discovered_clues=list(self._clues.get(mission.id, [])),
            time_left=self._time_left(timer) if timer is not None else None,
        )

    def get_progress(self, mission_id: str) -> int:
        return self._progress.get(mission_id, 0)

    def is_active_mission(self, mission_id: str) -> bool:
        return self._active_id == mission_id

    def is_mission_completed(self, mission_id: str) -> bool:
        return self.status(mission_id) == MissionStatus.completed

    def is_objective_completed(self, mission_id: str, objective_id: str) -> bool:
        return self._objective_status.get(mission_id, {}).get(objective_id, False)

    def status(self, mission_id: str) -> MissionStatus:
        lifecycle = self._lifecycles.get(mission_id)
        return lifecycle.status if lifecycle is not None else MissionStatus.inactive

    def _lifecycle(self, mission_id: str) -> MissionLifecycle:
        lifecycle = self._lifecycles.get(mission_id)
        if lifecycle is None:
            lifecycle = self._lifecycles[mission_id] = MissionLifecycle(mission_id)
        return lifecycle

    # -- lifecycle --------------------------------------------------------------

    def start_mission(self, mission_id: str) -> bool:
        mission = self._catalog.mission(mission_id)
        if mission is None:
            return self.rejections.not_found(f"unknown mission: {mission_id}")
        if self._active_id is not None and self._active_id != mission_id:
            return self.rejections.invalid_state(
                f"cannot start mission {mission_id}: mission {self._active_id} is still active"
            )

        lifecycle = self._lifecycle(mission_id)
        try:
            lifecycle.begin()
        except TransitionNotAllowed:
            return self.rejections.invalid_state(f"mission {mission_id} is already {lifecycle.status.value}")

        if mission_id in self._pending_starts:
            self._pending_starts.remove(mission_id)

        self._active_id = mission_id
        self._progress[mission_id] = 0
        self._objective_status[mission_id] = {o.id: False for o in mission.objectives}
        self._notes[mission_id] = []
        self._clues[mission_id] = []

        if mission.time_limit:
            self._start_timer(mission_id, mission.time_limit * 60)

        logger.info("mission started: %s (%s)", mission_id, mission.title)
        self.events.emit("mission_started", {"mission_id": mission_id, "title": mission.title})
        self._engine.trigger_event(f"mission_started_{mission_id}", {"mission_id": mission_id})
        return True

    def complete_objective(self, mission_id: str, objective_id: str) -> bool:
        mission = self._catalog.mission(mission_id)
        if mission is None:
            return self.rejections.not_found(f"unknown mission: {mission_id}")
        objective = mission.objective(objective_id)
        if objective is None:
            return self.rejections.not_found(f"unknown objective {objective_id} in mission {mission_id}")
        if self._active_id != mission_id:
            return self.rejections.invalid_state(f"mission {mission_id} is not active")

        status = self._objective_status[mission_id]
        if status.get(objective_id):
            return self.rejections.invalid_state(f"objective {mission_id}/{objective_id} is already completed")

        status[objective_id] = True
        done = sum(1 for v in status.values() if v)
        total = len(mission.objectives)
        self._progress[mission_id] = _round_half_up(100 * done / total)

        self.events.emit(
            "objective_completed",
            {"mission_id": mission_id, "objective_id": objective_id, "title": objective.title},
        )
        self.events.emit("mission_progress_updated", {"mission_id": mission_id, "progress": self._progress[mission_id]})
        self._engine.trigger_event(
            f"objective_completed_{mission_id}_{objective_id}",
            {"mission_id": mission_id, "objective_id": objective_id},
        )

        if done == total and self._active_id == mission_id:
            if mission.auto_complete_on_all_objectives:
                self.complete_mission(True)
            else:
                self.events.emit("all_objectives_completed", {"mission_id": mission_id})
                self._engine.trigger_event(f"all_objectives_completed_{mission_id}", {"mission_id": mission_id})
        return True

    def complete_mission(self, success: bool = True) -> bool:
        mission_id = self._active_id
        if mission_id is None:
            return self.rejections.invalid_state("no active mission")
        mission = self._catalog.missions[mission_id]
        lifecycle = self._lifecycle(mission_id)

        self._stop_timer(mission_id)

        if success:
            lifecycle.succeed()
            self._completed.append(mission_id)
            self._progress[mission_id] = 100
            self._objective_status[mission_id] = {o.id: True for o in mission.objectives}

            logger.info("mission completed: %s", mission_id)
            self.events.emit("mission_completed", {"mission_id": mission_id, "rewards": dict(mission.rewards)})
            self._engine.trigger_event(f"mission_completed_{mission_id}", {"mission_id": mission_id})
            self._apply_rewards(mission)
        else:
            lifecycle.fail()

            logger.info("mission failed: %s", mission_id)
            self.events.emit("mission_failed", {"mission_id": mission_id})
            self._engine.trigger_event(f"mission_failed_{mission_id}", {"mission_id": mission_id})

        if self._active_id == mission_id:
            self._active_id = None
        self._schedule_pending_starts()
        return True

    def fail_mission(self) -> bool:
        return self.complete_mission(False)

    def _apply_rewards(self, mission: Mission) -> None:
        for flag, value in mission.rewards.items():
            self._engine.set_flag(flag, value)

    def add_mission_note(self, text: str) -> bool:
        mission_id = self._active_id
        if mission_id is None:
            return self.rejections.invalid_state("no active mission to add a note to")
        self._notes[mission_id].append(text)
        self.events.emit("mission_note_added", {"mission_id": mission_id, "note": text})
        return True

    def discover_clue(self, clue_id: str) -> bool:
        mission_id = self._active_id
        if mission_id is None:
            return self.rejections.invalid_state("no active mission")
        mission = self._catalog.missions[mission_id]
        clue = mission.clue(clue_id)
        if clue is None:
            return self.rejections.not_found(f"unknown clue {clue_id} in mission {mission_id}")
        if clue_id in self._clues[mission_id]:
            return self.rejections.invalid_state(f"clue {clue_id} already discovered")

        self._clues[mission_id].append(clue_id)
        self.events.emit(
            "clue_discovered",
            {"mission_id": mission_id, "clue_id": clue_id, "title": clue.title, "content": clue.content},
        )
        self._engine.trigger_event(f"clue_discovered_{mission_id}_{clue_id}", {"mission_id": mission_id, "clue_id": clue_id})

        self._complete_matching_objectives(mission, lambda t: isinstance(t, ClueTrigger) and t.clue == clue_id)
        return True

    def dispose(self) -> None:
        for mission_id in list(self._timers):
            self._stop_timer(mission_id)
        if self._pending_handle is not None:
            self._pending_handle.cancel()
            self._pending_handle = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # -- timers -----------------------------------------------------------------

    def _start_timer(self, mission_id: str, duration: float) -> None:
        self._stop_timer(mission_id)
        handle = self._scheduler.call_every(TIMER_INTERVAL, lambda: self._on_timer_tick(mission_id))
        self._timers[mission_id] = MissionTimer(ends_at=self._scheduler.now() + duration, handle=handle)
        self.events.emit(
            "mission_timer_started",
            {"mission_id": mission_id, "time_left": duration, "formatted": format_mmss(duration)},
        )

    def _resume_timer(self, mission_id: str, *, time_left: float, next_tick_in: float) -> None:
        """Re-arm a restored countdown on its original one-second phase."""

        def _first_tick() -> None:
            timer = self._timers.get(mission_id)
            if timer is None:
                return
            timer.handle = self._scheduler.call_every(TIMER_INTERVAL, lambda: self._on_timer_tick(mission_id))
            self._on_timer_tick(mission_id)

        handle = self._scheduler.call_later(next_tick_in, _first_tick)
        self._timers[mission_id] = MissionTimer(ends_at=self._scheduler.now() + time_left, handle=handle)

    def _stop_timer(self, mission_id: str) -> None:
        timer = self._timers.pop(mission_id, None)
        if timer is None:
            return
        timer.handle.cancel()
        self.events.emit("mission_timer_stopped", {"mission_id": mission_id})

    def _time_left(self, timer: MissionTimer) -> float:
        return max(0.0, timer.ends_at - self._scheduler.now())

    def _on_timer_tick(self, mission_id: str) -> None:
        timer = self._timers.get(mission_id)
        if timer is None:
            return
        time_left = self._time_left(timer)
        if time_left <= 0:
            self._stop_timer(mission_id)
            if self._active_id == mission_id:
                logger.info("mission %s ran out of time", mission_id)
                self.fail_mission()
            return
        self.events.emit(
            "mission_timer_updated",
            {"mission_id": mission_id, "time_left": time_left, "formatted": format_mmss(time_left)},
        )

    # -- auto-triggering ------------------------------------------------------

    def _on_flag_changed(self, event: StoryEvent) -> None:
        flag = event.payload["flag"]
        value = event.payload["value"]

        for mission in self._catalog.missions.values():
            if self._should_auto_start(mission, flag, value):
                if self._active_id is None:
                    self.start_mission(mission.id)
                elif mission.id not in self._pending_starts:
                    logger.info("mission %s queued: mission %s is active", mission.id, self._active_id)
                    self._pending_starts.append(mission.id)

            if self._active_id == mission.id:
                self._complete_matching_objectives(
                    mission, lambda t: isinstance(t, FlagTrigger) and t.flag == flag and t.value == value
                )

    def _on_location_changed(self, event: StoryEvent) -> None:
        location = event.payload["location"]
        self._complete_active_objectives(lambda t: isinstance(t, LocationTrigger) and t.location == location)

    def _on_item_collected(self, event: StoryEvent) -> None:
        item = event.payload["item"]
        self._complete_active_objectives(lambda t: isinstance(t, ItemTrigger) and t.item == item)

    def _on_research_discovered(self, event: StoryEvent) -> None:
        research = event.payload["research_id"]
        self._complete_active_objectives(lambda t: isinstance(t, ResearchTrigger) and t.research == research)

    def _should_auto_start(self, mission: Mission, flag: str, value: Any) -> bool:
        triggers = mission.trigger_flags
        if flag not in triggers or triggers[flag] != value:
            return False
        if mission.id == self._active_id or self.is_mission_completed(mission.id):
            return False
        return all(self._engine.get_flag(f) == v for f, v in triggers.items())

    def _complete_active_objectives(self, predicate: Callable[[Any], bool]) -> None:
        if self._active_id is None:
            return
        self._complete_matching_objectives(self._catalog.missions[self._active_id], predicate)

    def _complete_matching_objectives(self, mission: Mission, predicate: Callable[[Any], bool]) -> None:
        for objective in mission.objectives:
            # Completing an objective can finish the mission.
            if self._active_id != mission.id:
                return
            if self.is_objective_completed(mission.id, objective.id):
                continue
            if any(predicate(t) for t in objective.triggers):
                self.complete_objective(mission.id, objective.id)

    def _schedule_pending_starts(self) -> None:
        if not self._pending_starts or self._pending_handle is not None:
            return
        self._pending_handle = self._scheduler.call_later(0, self._drain_pending_starts)

    def _drain_pending_starts(self) -> None:
        self._pending_handle = None
        for mission_id in list(self._pending_starts):
            if self._active_id is not None:
                return
            self._pending_starts.remove(mission_id)
            mission = self._catalog.missions[mission_id]
            if self.is_mission_completed(mission_id):
                continue
            if all(self._engine.get_flag(f) == v for f, v in mission.trigger_flags.items()):
                self.start_mission(mission_id)

    # -- persistence ----------------------------------------------------------

    def snapshot(self) -> MissionRuntimeSnapshot:
        timer = None
        if self._active_id is not None and self._active_id in self._timers:
            running = self._timers[self._active_id]
            timer = MissionTimerSnapshot(
                mission_id=self._active_id,
                time_left=self._time_left(running),
                next_tick_in=max(0.0, running.handle.due - self._scheduler.now()),
            )
        return MissionRuntimeSnapshot(
            active_mission_id=self._active_id,
            completed_mission_ids=list(self._completed),
            failed_mission_ids=[m for m, lc in self._lifecycles.items() if lc.status == MissionStatus.failed],
            progress=dict(self._progress),
            objective_status={k: dict(v) for k, v in self._objective_status.items()},
            notes={k: list(v) for k, v in self._notes.items()},
            discovered_clues={k: list(v) for k, v in self._clues.items()},
            pending_starts=list(self._pending_starts),
            timer=timer,
        )

    def restore(self, snapshot: MissionRuntimeSnapshot) -> None:
        for mission_id in list(self._timers):
            self._timers.pop(mission_id).handle.cancel()

        self._active_id = snapshot.active_mission_id
        self._completed = list(snapshot.completed_mission_ids)
        self._lifecycles = {m: MissionLifecycle(m, MissionStatus.failed) for m in snapshot.failed_mission_ids}
        self._lifecycles.update({m: MissionLifecycle(m, MissionStatus.completed) for m in self._completed})
        if self._active_id is not None:
            self._lifecycles[self._active_id] = MissionLifecycle(self._active_id, MissionStatus.active)
        self._progress = dict(snapshot.progress)
        self._objective_status = {k: dict(v) for k, v in snapshot.objective_status.items()}
        self._notes = {k: list(v) for k, v in snapshot.notes.items()}
        self._clues = {k: list(v) for k, v in snapshot.discovered_clues.items()}
        self._pending_starts = list(snapshot.pending_starts)

        timer = snapshot.timer
        if timer is not None and timer.mission_id == self._active_id:
            next_tick_in = timer.next_tick_in
            if next_tick_in is None:
                next_tick_in = min(TIMER_INTERVAL, timer.time_left)
            self._resume_timer(timer.mission_id, time_left=timer.time_left, next_tick_in=next_tick_in)
        if self._active_id is None:
            self._schedule_pending_starts()
