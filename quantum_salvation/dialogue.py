from __future__ import annotations

import logging

from quantum_salvation.assets.registry import Catalog
from quantum_salvation.core.errors import Rejections
from quantum_salvation.story_engine import StoryEngine

logger = logging.getLogger(__name__)


class DialogueRunner:
    """Applies a player's dialogue response to the story.

    The response index is recorded as decision `dialogue_<character>_<node>` so it feeds
    the ending-path heuristic like any other decision.
    """

    def __init__(self, *, engine: StoryEngine, catalog: Catalog):
        self._engine = engine
        self._catalog = catalog
        self.rejections = Rejections(logger)

    def select_response(self, character: str, node_id: str, index: int) -> str | None:
        """Record response `index` of `character`/`node_id`. Returns the next node id."""

        node = self._catalog.dialogue_node(character, node_id)
        if node is None:
            self.rejections.not_found(f"unknown dialogue node {character}/{node_id}")
            return None
        if not 0 <= index < len(node.responses):
            self.rejections.not_found(f"dialogue node {character}/{node_id} has no response {index}")
            return None

        response = node.responses[index]
        self._engine.record_decision(
            f"dialogue_{character}_{node_id}",
            index,
            {"type": response.type or "neutral", "text": response.text, "next_node": response.next_node},
        )
        return response.next_node or ""
