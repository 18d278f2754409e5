from __future__ import annotations

from enum import StrEnum

from statemachine import State, StateMachine


class MissionStatus(StrEnum):
    inactive = "inactive"
    active = "active"
    completed = "completed"
    failed = "failed"


class CinematicStatus(StrEnum):
    idle = "idle"
    playing = "playing"
    paused = "paused"
    completed = "completed"
    skipped = "skipped"


class MissionLifecycle(StateMachine):
    """Lifecycle of one mission: inactive -> active -> completed | failed.

    A failed mission may be started again; a completed one may not. The tracker
    keeps one machine per mission and reads the mission status from it.
    """

    inactive = State(MissionStatus.inactive.value, value=MissionStatus.inactive.value, initial=True)
    active = State(MissionStatus.active.value, value=MissionStatus.active.value)
    completed = State(MissionStatus.completed.value, value=MissionStatus.completed.value, final=True)
    failed = State(MissionStatus.failed.value, value=MissionStatus.failed.value)

    begin = inactive.to(active) | failed.to(active)
    succeed = active.to(completed)
    fail = active.to(failed)

    def __init__(self, mission_id: str, status: MissionStatus = MissionStatus.inactive):
        self.mission_id = mission_id
        super().__init__(start_value=status.value)

    @property
    def status(self) -> MissionStatus:
        return MissionStatus(str(self.current_state.value))


class CinematicLifecycle(StateMachine):
    """Idle -> Playing -> (Paused <-> Playing) -> Completed | Skipped -> Idle."""

    idle = State(CinematicStatus.idle.value, value=CinematicStatus.idle.value, initial=True)
    playing = State(CinematicStatus.playing.value, value=CinematicStatus.playing.value)
    paused = State(CinematicStatus.paused.value, value=CinematicStatus.paused.value)
    completed = State(CinematicStatus.completed.value, value=CinematicStatus.completed.value)
    skipped = State(CinematicStatus.skipped.value, value=CinematicStatus.skipped.value)

    play = idle.to(playing)
    pause = playing.to(paused)
    resume = paused.to(playing)
    finish = playing.to(completed)
    skip = playing.to(skipped) | paused.to(skipped)
    reset = completed.to(idle) | skipped.to(idle)
    stop = playing.to(idle) | paused.to(idle)

    def __init__(self, status: CinematicStatus = CinematicStatus.idle):
        super().__init__(start_value=status.value)

    @property
    def status(self) -> CinematicStatus:
        return CinematicStatus(str(self.current_state.value))

    @property
    def is_running(self) -> bool:
        return self.status in (CinematicStatus.playing, CinematicStatus.paused)
