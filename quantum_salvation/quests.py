from __future__ import annotations

import logging
from collections.abc import Callable

from quantum_salvation.assets.registry import Catalog
from quantum_salvation.core.errors import Rejections
from quantum_salvation.core.events import StoryEvent
from quantum_salvation.story_engine import StoryEngine

logger = logging.getLogger(__name__)


class QuestBook:
    """Starts catalog quests on the engine and pays out their rewards on completion."""

    def __init__(self, *, engine: StoryEngine, catalog: Catalog):
        self._engine = engine
        self._catalog = catalog
        self.rejections = Rejections(logger)
        self._unsubscribe: Callable[[], None] | None = engine.events.subscribe("quest_completed", self._on_completed)

    def start(self, quest_id: str) -> bool:
        template = self._catalog.quests.get(quest_id)
        if template is None:
            return self.rejections.not_found(f"unknown quest: {quest_id}")
        if not self._engine.start_quest(
            quest_id,
            title=template.title,
            objectives=[{"id": o.id, "description": o.description} for o in template.objectives],
        ):
            self.rejections.last = self._engine.rejections.last
            return False
        return True

    def _on_completed(self, event: StoryEvent) -> None:
        template = self._catalog.quests.get(event.payload["quest_id"])
        if template is None:
            return
        rewards = template.rewards
        if rewards.get("research_progress"):
            self._engine.advance_research(float(rewards["research_progress"]))
        if rewards.get("time_added"):
            self._engine.add_time(float(rewards["time_added"]))
        logger.info("quest %s rewards applied: %s", template.id, rewards)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
