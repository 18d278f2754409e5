from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass

from quantum_salvation.api.models import CinematicPlaybackSnapshot, CinematicView
from quantum_salvation.assets.registry import Catalog, Cinematic, Decision
from quantum_salvation.core.clock import Scheduler, TimerHandle
from quantum_salvation.core.errors import Rejections
from quantum_salvation.core.events import EventChannel
from quantum_salvation.fsm import CinematicLifecycle, CinematicStatus
from quantum_salvation.story_engine import StoryEngine

logger = logging.getLogger(__name__)

DECISION_DISPLAY_DELAY = 3.0


@dataclass(frozen=True, slots=True)
class CinematicResult:
    cinematic_id: str
    completed: bool = False
    skipped: bool = False


class CinematicSequencer:
    """Plays one cinematic at a time, scene by scene, on the shared scheduler.

    Timed scenes advance after `duration`; a scene with a decision point waits for
    `submit_decision`, then advances after the display delay.
    """

    def __init__(
        self,
        *,
        engine: StoryEngine,
        catalog: Catalog,
        scheduler: Scheduler,
        decision_display_delay: float = DECISION_DISPLAY_DELAY,
    ):
        self._engine = engine
        self._catalog = catalog
        self._scheduler = scheduler
        self.decision_display_delay = decision_display_delay

        self.events = EventChannel(name="cinematics")
        self.rejections = Rejections(logger)

        self._fsm = CinematicLifecycle()
        self._cinematic: Cinematic | None = None
        self._scene_index = 0
        self._awaiting_decision = False
        self._timer: TimerHandle | None = None
        self._paused_remaining: float | None = None
        self._future: Future[CinematicResult] | None = None

    # -- queries ------------------------------------------------------------------

    @property
    def status(self) -> CinematicStatus:
        return self._fsm.status

    @property
    def is_playing(self) -> bool:
        return self._fsm.is_running

    @property
    def current_cinematic_id(self) -> str | None:
        return self._cinematic.id if self._cinematic is not None else None

    @property
    def current_scene_index(self) -> int:
        return self._scene_index

    @property
    def awaiting_decision(self) -> bool:
        return self._awaiting_decision

    def view(self) -> CinematicView:
        return CinematicView(
            state=self.status.value,
            cinematic_id=self.current_cinematic_id,
            scene_index=self._scene_index,
            awaiting_decision=self._awaiting_decision,
        )

    # -- playback -------------------------------------------------------------------

    def play_cinematic(self, cinematic_id: str) -> Future[CinematicResult] | None:
        """Start `cinematic_id`. Returns a future resolved on completion or skip, None if rejected."""

        if self._fsm.is_running:
            self.rejections.invalid_state(
                f"cannot play {cinematic_id}: cinematic {self.current_cinematic_id} is already playing"
            )
            return None
        cinematic = self._catalog.cinematic(cinematic_id)
        if cinematic is None:
            self.rejections.not_found(f"unknown cinematic: {cinematic_id}")
            return None

        self._fsm.play()
        self._cinematic = cinematic
        self._scene_index = 0
        self._awaiting_decision = False
        self._paused_remaining = None
        self._future = Future()

        logger.info("cinematic started: %s", cinematic_id)
        self.events.emit(
            "cinematic_started",
            {"cinematic_id": cinematic_id, "title": cinematic.title, "scene_count": len(cinematic.scenes)},
        )
        self._play_scene()
        return self._future

    def play_ending_cinematic(self) -> Future[CinematicResult] | None:
        ending = self._engine.determine_ending()
        cinematic_id = self._catalog.ending_cinematics.get(ending)
        if cinematic_id is None:
            self.rejections.not_found(f"no cinematic for ending: {ending}")
            return None
        return self.play_cinematic(cinematic_id)

    def _play_scene(self) -> None:
        assert self._cinematic is not None
        scene = self._cinematic.scenes[self._scene_index]

        self.events.emit(
            "scene_started",
            {
                "cinematic_id": self._cinematic.id,
                "index": self._scene_index,
                **scene.render_payload(),
            },
        )

        if scene.decision_point:
            decision = self._catalog.decision(scene.decision_point)
            if decision is not None:
                self._present_decision(decision)
                return
            logger.warning(
                "cinematic %s scene %d references unknown decision %s",
                self._cinematic.id,
                self._scene_index,
                scene.decision_point,
            )

        self._schedule_advance(scene.duration)

    def _present_decision(self, decision: Decision) -> None:
        self._awaiting_decision = True
        self.events.emit(
            "decision_presented",
            {
                "decision_id": decision.id,
                "title": decision.title,
                "description": decision.description,
                "choices": [{"id": c.id, "text": c.text} for c in decision.choices],
            },
        )

    def _schedule_advance(self, delay: float) -> None:
        self._cancel_timer()
        if self._fsm.status == CinematicStatus.paused:
            self._paused_remaining = delay
            return
        self._timer = self._scheduler.call_later(delay, self._advance)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _advance(self) -> None:
        self._timer = None
        if self._cinematic is None or not self._fsm.is_running:
            return
        self._scene_index += 1
        if self._scene_index >= len(self._cinematic.scenes):
            self._complete()
        else:
            self._play_scene()

    def scene_ended(self) -> bool:
        """Render-layer signal that the current scene's media finished early."""

        if self._fsm.status != CinematicStatus.playing:
            return self.rejections.invalid_state("no cinematic is playing")
        if self._awaiting_decision:
            return self.rejections.invalid_state("current scene is waiting for a decision")
        self._cancel_timer()
        self._advance()
        return True

    def submit_decision(self, choice_id: str) -> bool:
        if self._cinematic is None or not self._awaiting_decision:
            return self.rejections.invalid_state("no decision is pending")

        scene = self._cinematic.scenes[self._scene_index]
        decision = self._catalog.decision(scene.decision_point or "")
        assert decision is not None
        choice = decision.choice(choice_id)
        if choice is None:
            return self.rejections.not_found(f"unknown choice {choice_id} for decision {decision.id}")

        self._engine.record_decision(
            decision.id,
            choice.id,
            {"type": choice.type or "neutral", "text": choice.text, "outcome": choice.outcome},
        )
        for flag, value in choice.flags.items():
            self._engine.set_flag(flag, value)

        self._awaiting_decision = False
        self.events.emit(
            "decision_resolved",
            {"decision_id": decision.id, "choice_id": choice.id, "outcome": choice.outcome},
        )
        self._schedule_advance(self.decision_display_delay)
        return True

    def skip_cinematic(self) -> bool:
        if self._cinematic is None or not self._fsm.is_running:
            return self.rejections.invalid_state("no cinematic is playing")
        if not self._cinematic.skippable:
            return self.rejections.invalid_state(f"cinematic {self._cinematic.id} cannot be skipped")

        self._cancel_timer()
        self._fsm.skip()
        self._finish(CinematicResult(cinematic_id=self._cinematic.id, skipped=True), "cinematic_skipped")
        return True

    def toggle_pause(self) -> bool:
        status = self._fsm.status
        if status == CinematicStatus.playing:
            remaining = None
            if self._timer is not None:
                remaining = max(0.0, self._timer.due - self._scheduler.now())
            self._cancel_timer()
            self._paused_remaining = remaining
            self._fsm.pause()
            self.events.emit("cinematic_paused", {"cinematic_id": self.current_cinematic_id, "index": self._scene_index})
            return True
        if status == CinematicStatus.paused:
            self._fsm.resume()
            remaining, self._paused_remaining = self._paused_remaining, None
            if remaining is not None:
                self._schedule_advance(remaining)
            self.events.emit("cinematic_resumed", {"cinematic_id": self.current_cinematic_id, "index": self._scene_index})
            return True
        return self.rejections.invalid_state("no cinematic is playing")

    def _complete(self) -> None:
        assert self._cinematic is not None
        self._fsm.finish()
        self._finish(CinematicResult(cinematic_id=self._cinematic.id, completed=True), "cinematic_completed")

    def _finish(self, result: CinematicResult, event_type: str) -> None:
        self._fsm.reset()
        self._awaiting_decision = False
        self._paused_remaining = None
        self._cinematic = None
        self._scene_index = 0
        future, self._future = self._future, None

        logger.info("%s: %s", event_type.replace("_", " "), result.cinematic_id)
        self.events.emit(event_type, {"cinematic_id": result.cinematic_id})
        if future is not None and not future.done():
            future.set_result(result)
        self._engine.trigger_event(f"cinematic_complete_{result.cinematic_id}", {"cinematic_id": result.cinematic_id})

    def dispose(self) -> None:
        self._cancel_timer()
        if self._fsm.is_running:
            self._fsm.stop()
        self._cinematic = None
        self._awaiting_decision = False
        self._paused_remaining = None
        if self._future is not None:
            self._future.cancel()
            self._future = None

    # -- persistence ------------------------------------------------------------

    def snapshot(self) -> CinematicPlaybackSnapshot | None:
        if self._cinematic is None or not self._fsm.is_running:
            return None
        if self._fsm.status == CinematicStatus.paused:
            remaining = self._paused_remaining
        elif self._timer is not None:
            remaining = max(0.0, self._timer.due - self._scheduler.now())
        else:
            remaining = None
        return CinematicPlaybackSnapshot(
            cinematic_id=self._cinematic.id,
            scene_index=self._scene_index,
            paused=self._fsm.status == CinematicStatus.paused,
            awaiting_decision=self._awaiting_decision,
            timer_remaining=remaining,
        )

    def restore(self, snapshot: CinematicPlaybackSnapshot | None) -> bool:
        """Resume playback mid-scene. The future of a restored run is not carried over."""

        self.dispose()
        if snapshot is None:
            return True
        cinematic = self._catalog.cinematic(snapshot.cinematic_id)
        if cinematic is None or snapshot.scene_index >= len(cinematic.scenes):
            return self.rejections.not_found(f"cannot restore cinematic {snapshot.cinematic_id}")

        self._fsm = CinematicLifecycle(CinematicStatus.paused if snapshot.paused else CinematicStatus.playing)
        self._cinematic = cinematic
        self._scene_index = snapshot.scene_index
        self._awaiting_decision = snapshot.awaiting_decision
        self._future = Future()

        if snapshot.paused:
            self._paused_remaining = snapshot.timer_remaining
        elif snapshot.timer_remaining is not None:
            self._timer = self._scheduler.call_later(snapshot.timer_remaining, self._advance)
        return True
