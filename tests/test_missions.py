from __future__ import annotations

from uuid import uuid4

import pytest

from quantum_salvation.actions import apply_action
from quantum_salvation.api.models import TickAction
from quantum_salvation.assets.registry import Catalog, Mission
from quantum_salvation.core.clock import Scheduler
from quantum_salvation.core.errors import ErrorKind
from quantum_salvation.core.events import StoryEvent
from quantum_salvation.fsm import MissionStatus
from quantum_salvation.missions import MissionTracker, format_mmss
from quantum_salvation.session import GameSession
from quantum_salvation.story_engine import StoryEngine


def _tracker(missions: dict[str, Mission]) -> tuple[MissionTracker, StoryEngine, Scheduler]:
    engine = StoryEngine()
    scheduler = Scheduler()
    tracker = MissionTracker(engine=engine, catalog=Catalog(missions=missions), scheduler=scheduler)
    return tracker, engine, scheduler


def _timed_mission(minutes: float) -> Mission:
    return Mission.model_validate(
        {
            "id": "t1",
            "title": "Race",
            "time_limit": minutes,
            "objectives": [
                {"id": "o1", "title": "One", "triggers": [{"kind": "location", "location": "lab"}]},
                {"id": "o2", "title": "Two", "triggers": []},
            ],
        }
    )


def test_full_m001_lifecycle(catalog: Catalog) -> None:
    tracker, engine, _ = _tracker({"m001": catalog.missions["m001"]})

    assert tracker.start_mission("m001") is True
    for obj in ("obj1", "obj2", "obj3", "obj4", "obj5"):
        assert tracker.complete_objective("m001", obj) is True

    active = tracker.get_active_mission()
    assert active is not None
    assert active.progress == 100
    assert tracker.is_mission_completed("m001") is False

    assert tracker.complete_mission(True) is True
    assert tracker.is_mission_completed("m001") is True
    assert tracker.get_active_mission() is None
    assert engine.get_flag("sector_b_cleared") is True
    assert engine.has_triggered("mission_completed_m001")


def test_objective_completion_is_idempotent(tracker: MissionTracker) -> None:
    tracker.start_mission("m001")
    assert tracker.complete_objective("m001", "obj1") is True
    assert tracker.get_progress("m001") == 20

    assert tracker.complete_objective("m001", "obj1") is False
    assert tracker.get_progress("m001") == 20
    assert tracker.rejections.last is not None
    assert tracker.rejections.last.kind == ErrorKind.invalid_state


def test_progress_rounds_half_up() -> None:
    mission = Mission.model_validate(
        {
            "id": "x",
            "title": "X",
            "objectives": [{"id": f"o{i}", "title": "O"} for i in range(3)],
        }
    )
    tracker, _, _ = _tracker({"x": mission})
    tracker.start_mission("x")

    tracker.complete_objective("x", "o0")
    assert tracker.get_progress("x") == 33
    tracker.complete_objective("x", "o1")
    assert tracker.get_progress("x") == 67


def test_start_rejections(tracker: MissionTracker) -> None:
    assert tracker.start_mission("nope") is False
    assert tracker.rejections.last.kind == ErrorKind.not_found

    assert tracker.start_mission("m001") is True
    assert tracker.start_mission("m001") is False
    assert tracker.rejections.last.kind == ErrorKind.invalid_state

    assert tracker.start_mission("m002") is False
    assert tracker.is_active_mission("m001")
    assert tracker.status("m002") == MissionStatus.inactive


def test_unknown_ids_and_inactive_mission(tracker: MissionTracker) -> None:
    assert tracker.complete_objective("m001", "obj1") is False
    assert tracker.rejections.last.kind == ErrorKind.invalid_state

    tracker.start_mission("m001")
    assert tracker.complete_objective("m001", "obj99") is False
    assert tracker.rejections.last.kind == ErrorKind.not_found
    assert tracker.complete_objective("m999", "obj1") is False
    assert tracker.rejections.last.kind == ErrorKind.not_found


def test_mission_timer_expiry_fails_mission() -> None:
    tracker, engine, scheduler = _tracker({"t1": _timed_mission(1)})
    failed: list[StoryEvent] = []
    tracker.events.subscribe("mission_failed", failed.append)

    tracker.start_mission("t1")
    scheduler.advance(30)
    active = tracker.get_active_mission()
    assert active is not None
    assert active.time_left == 30.0

    scheduler.advance(30)

    assert tracker.is_mission_completed("t1") is False
    assert tracker.get_active_mission() is None
    assert tracker.status("t1") == MissionStatus.failed
    assert len(failed) == 1
    assert engine.has_triggered("mission_failed_t1")
    assert scheduler.pending() == 0


def test_timer_updates_emit_mmss(tracker: MissionTracker, scheduler: Scheduler) -> None:
    updates: list[StoryEvent] = []
    tracker.events.subscribe("mission_timer_updated", updates.append)

    tracker.start_mission("m002")
    scheduler.advance(2)

    assert [u.payload["formatted"] for u in updates] == ["59:59", "59:58"]
    assert format_mmss(61) == "01:01"


def test_completing_mission_stops_its_timer() -> None:
    tracker, _, scheduler = _tracker({"t1": _timed_mission(1)})
    stopped: list[StoryEvent] = []
    tracker.events.subscribe("mission_timer_stopped", stopped.append)

    tracker.start_mission("t1")
    tracker.complete_mission(True)
    scheduler.advance(120)

    assert tracker.is_mission_completed("t1")
    assert len(stopped) == 1
    assert scheduler.pending() == 0


def test_failed_mission_can_be_restarted_but_completed_cannot() -> None:
    tracker, _, _ = _tracker({"t1": _timed_mission(1)})
    tracker.start_mission("t1")
    tracker.fail_mission()
    assert tracker.status("t1") == MissionStatus.failed

    assert tracker.start_mission("t1") is True
    tracker.complete_mission(True)
    assert tracker.start_mission("t1") is False


def test_flag_trigger_starts_mission_and_location_completes_objective(tracker: MissionTracker, engine: StoryEngine) -> None:
    engine.set_flag("intro_complete", True)
    assert tracker.is_active_mission("m001")

    engine.enter_location("research_sector_b_entrance")
    assert tracker.is_objective_completed("m001", "obj1")

    engine.set_flag("samples_collected", 2)
    assert not tracker.is_objective_completed("m001", "obj3")
    engine.set_flag("samples_collected", 3)
    assert tracker.is_objective_completed("m001", "obj3")

    engine.collect_item("sakata_logs")
    assert tracker.is_objective_completed("m001", "obj5")


def test_auto_complete_mission_on_last_objective(tracker: MissionTracker, engine: StoryEngine) -> None:
    tracker.start_mission("m002")
    for flag in (
        "sensor_financial_placed",
        "sensor_research_placed",
        "sensor_residential_placed",
        "sensor_industrial_placed",
        "sensor_network_activated",
    ):
        engine.set_flag(flag, True)

    assert tracker.is_mission_completed("m002")
    assert engine.get_flag("quantum_web_mapped") is True


def test_manual_mission_announces_all_objectives_completed(tracker: MissionTracker, engine: StoryEngine) -> None:
    announced: list[StoryEvent] = []
    tracker.events.subscribe("all_objectives_completed", announced.append)
    tracker.start_mission("m001")
    for obj in ("obj1", "obj2", "obj3", "obj4", "obj5"):
        tracker.complete_objective("m001", obj)

    assert [e.payload["mission_id"] for e in announced] == ["m001"]
    assert engine.has_triggered("all_objectives_completed_m001")
    assert tracker.is_active_mission("m001")


def test_reward_flags_queue_the_next_mission(tracker: MissionTracker, scheduler: Scheduler) -> None:
    tracker.start_mission("m001")
    tracker.complete_mission(True)

    assert tracker.get_active_mission() is None

    scheduler.advance(0)
    assert tracker.is_active_mission("m002")


def test_multi_flag_trigger_needs_every_flag(tracker: MissionTracker, engine: StoryEngine) -> None:
    engine.set_flag("corporate_connection_discovered", True)
    assert tracker.active_mission_id is None

    engine.set_flag("salvation_phase_initiated", True)
    assert tracker.is_active_mission("m005")


def test_clues_cascade_into_objectives(tracker: MissionTracker, engine: StoryEngine) -> None:
    discovered: list[StoryEvent] = []
    tracker.events.subscribe("clue_discovered", discovered.append)
    tracker.start_mission("m005")

    assert tracker.discover_clue("clue3") is True
    assert tracker.is_objective_completed("m005", "obj4")
    assert engine.has_triggered("clue_discovered_m005_clue3")
    assert discovered[0].payload["title"] == "True Purpose"

    assert tracker.discover_clue("clue3") is False
    assert tracker.discover_clue("clue42") is False
    assert tracker.rejections.last.kind == ErrorKind.not_found


def test_notes_require_an_active_mission(tracker: MissionTracker) -> None:
    assert tracker.add_mission_note("hello") is False
    tracker.start_mission("m001")
    assert tracker.add_mission_note("check the terminal") is True
    active = tracker.get_active_mission()
    assert active is not None
    assert active.notes == ["check the terminal"]


def test_snapshot_restore_keeps_remaining_time() -> None:
    tracker, engine, scheduler = _tracker({"t1": _timed_mission(1)})
    tracker.start_mission("t1")
    tracker.complete_objective("t1", "o1")
    scheduler.advance(20)
    snap = tracker.snapshot()
    tracker.dispose()

    engine2 = StoryEngine()
    scheduler2 = Scheduler(start=500)
    restored = MissionTracker(engine=engine2, catalog=Catalog(missions={"t1": _timed_mission(1)}), scheduler=scheduler2)
    restored.restore(snap)

    active = restored.get_active_mission()
    assert active is not None
    assert active.progress == 50
    assert active.time_left == pytest.approx(40.0)

    scheduler2.advance(40)
    assert restored.status("t1") == MissionStatus.failed


def test_dispose_stops_timers_and_listeners(tracker: MissionTracker, engine: StoryEngine, scheduler: Scheduler) -> None:
    tracker.start_mission("m002")
    tracker.dispose()

    assert scheduler.pending() == 0
    engine.set_flag("sensor_financial_placed", True)
    assert not tracker.is_objective_completed("m002", "obj1")


def test_timer_keeps_its_phase_when_session_is_rebuilt_every_half_second() -> None:
    catalog = Catalog(missions={"t1": _timed_mission(1)})
    session = GameSession.new(session_id=uuid4(), catalog=catalog)
    assert session.missions.start_mission("t1") is True

    updates: list[StoryEvent] = []
    failed_at: list[float] = []
    for _ in range(130):
        snapshot = session.snapshot()
        session.dispose()
        session = GameSession.from_snapshot(snapshot, catalog=catalog)
        apply_action(session, TickAction(action="tick", seconds=0.5))
        for event in session.drain_events():
            if event.type == "mission_timer_updated":
                updates.append(event)
            elif event.type == "mission_failed":
                failed_at.append(session.scheduler.now())

    assert failed_at == [60.0]
    assert session.missions.get_active_mission() is None
    assert session.missions.status("t1") == MissionStatus.failed
    assert len(updates) == 59
    assert updates[0].payload["formatted"] == "00:59"
    session.dispose()


def test_snapshot_records_time_to_next_timer_tick() -> None:
    tracker, _, scheduler = _tracker({"t1": _timed_mission(1)})
    tracker.start_mission("t1")
    scheduler.advance(2.25)

    timer = tracker.snapshot().timer
    assert timer is not None
    assert timer.time_left == pytest.approx(57.75)
    assert timer.next_tick_in == pytest.approx(0.75)


def test_mission_status_comes_from_its_lifecycle_across_restores() -> None:
    missions = {"t1": _timed_mission(1)}
    tracker, _, _ = _tracker(missions)
    tracker.start_mission("t1")
    tracker.fail_mission()

    snap = tracker.snapshot()
    assert snap.failed_mission_ids == ["t1"]

    restored, _, _ = _tracker(missions)
    restored.restore(snap)
    assert restored.status("t1") == MissionStatus.failed
    assert restored.start_mission("t1") is True
    assert restored.snapshot().failed_mission_ids == []
    assert restored.complete_mission(True) is True

    again, _, _ = _tracker(missions)
    again.restore(restored.snapshot())
    assert again.status("t1") == MissionStatus.completed
    assert again.start_mission("t1") is False
    assert again.rejections.last.kind == ErrorKind.invalid_state
    assert "already completed" in again.rejections.last.message
    assert again.get_active_mission() is None
