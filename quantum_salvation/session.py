from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from quantum_salvation.api.models import SESSION_SCHEMA_VERSION, SessionSnapshot, SessionView
from quantum_salvation.assets.registry import Catalog
from quantum_salvation.cinematics import CinematicSequencer
from quantum_salvation.core.clock import Scheduler
from quantum_salvation.core.events import StoryEvent
from quantum_salvation.dialogue import DialogueRunner
from quantum_salvation.missions import MissionTracker
from quantum_salvation.quests import QuestBook
from quantum_salvation.story_engine import StoryEngine

OPENING_CINEMATIC = "opening_news"


def _now() -> datetime:
    return datetime.now(tz=UTC)


class GameSession:
    """One player's narrative runtime: a scheduler plus the components that share it.

    Components are wired explicitly here instead of through module-level singletons.
    Every event any of them emits is buffered in `pending_events` until the caller
    drains it (the command layer publishes them to the outbox).
    """

    def __init__(
        self,
        *,
        session_id: UUID,
        catalog: Catalog,
        clock: float = 0.0,
        created_at: datetime | None = None,
        last_updated_at: datetime | None = None,
    ):
        self.session_id = session_id
        self.catalog = catalog
        self.created_at = created_at or _now()
        self.last_updated_at = last_updated_at or self.created_at

        self.scheduler = Scheduler(start=clock)
        self.engine = StoryEngine()
        self.missions = MissionTracker(engine=self.engine, catalog=catalog, scheduler=self.scheduler)
        self.cinematics = CinematicSequencer(engine=self.engine, catalog=catalog, scheduler=self.scheduler)
        self.dialogue = DialogueRunner(engine=self.engine, catalog=catalog)
        self.quests = QuestBook(engine=self.engine, catalog=catalog)

        self.pending_events: list[StoryEvent] = []
        self._unsubscribers: list[Callable[[], None]] = [
            self.engine.events.subscribe_all(self.pending_events.append),
            self.missions.events.subscribe_all(self.pending_events.append),
            self.cinematics.events.subscribe_all(self.pending_events.append),
        ]

    @classmethod
    def new(cls, *, session_id: UUID, catalog: Catalog, play_opening: bool = False) -> "GameSession":
        session = cls(session_id=session_id, catalog=catalog)
        if play_opening:
            session.cinematics.play_cinematic(OPENING_CINEMATIC)
        return session

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot, *, catalog: Catalog) -> "GameSession":
        session = cls(
            session_id=snapshot.session_id,
            catalog=catalog,
            clock=snapshot.clock,
            created_at=snapshot.created_at,
            last_updated_at=snapshot.last_updated_at,
        )
        if not session.engine.load(snapshot.story):
            raise ValueError("Session snapshot is corrupt")
        session.missions.restore(snapshot.missions)
        session.cinematics.restore(snapshot.cinematic)
        return session

    def tick(self, delta: float) -> None:
        """Advance the story clock, then run every mission and scene timer that came due."""

        self.engine.update(delta)
        self.scheduler.advance(max(0.0, delta))

    def drain_events(self) -> list[StoryEvent]:
        events = list(self.pending_events)
        self.pending_events.clear()
        return events

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            schema_version=SESSION_SCHEMA_VERSION,
            session_id=self.session_id,
            created_at=self.created_at,
            last_updated_at=self.last_updated_at,
            clock=self.scheduler.now(),
            story=self.engine.save(),
            missions=self.missions.snapshot(),
            cinematic=self.cinematics.snapshot(),
        )

    def view(self) -> SessionView:
        return SessionView(
            session_id=self.session_id,
            created_at=self.created_at,
            last_updated_at=self.last_updated_at,
            clock=self.scheduler.now(),
            story=self.engine.state.model_copy(deep=True),
            formatted_time_remaining=self.engine.formatted_time_remaining(),
            projected_ending=self.engine.determine_ending(),
            active_mission=self.missions.get_active_mission(),
            completed_missions=[m.id for m in self.missions.get_completed_missions()],
            cinematic=self.cinematics.view(),
        )

    def dispose(self) -> None:
        self.cinematics.dispose()
        self.missions.dispose()
        self.quests.dispose()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
