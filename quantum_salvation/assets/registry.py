from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
MISSIONS_FILE = "missions.json"
STORY_FILE = "story.json"


class CatalogLoadError(RuntimeError):
    pass


# -- Objective triggers ---------------------------------------------------------


class LocationTrigger(BaseModel):
    kind: Literal["location"]
    location: str


class FlagTrigger(BaseModel):
    kind: Literal["flag"]
    flag: str
    value: Any


class ItemTrigger(BaseModel):
    kind: Literal["item"]
    item: str


class ResearchTrigger(BaseModel):
    kind: Literal["research"]
    research: str


class ClueTrigger(BaseModel):
    kind: Literal["clue"]
    clue: str


ObjectiveTrigger = Annotated[
    Union[LocationTrigger, FlagTrigger, ItemTrigger, ResearchTrigger, ClueTrigger],
    Field(discriminator="kind"),
]


class Objective(BaseModel):
    id: str
    title: str
    description: str = ""
    triggers: list[ObjectiveTrigger] = Field(default_factory=list)


class Clue(BaseModel):
    id: str
    title: str
    description: str = ""
    content: str = ""
    image: str | None = None


class Mission(BaseModel):
    id: str
    title: str
    subtitle: str = ""
    description: str = ""
    background: str = ""
    location: str = ""
    timeframe: str = ""
    risk: str = ""
    # Minutes.
    time_limit: float | None = Field(default=None, gt=0)
    auto_complete_on_all_objectives: bool = False
    trigger_flags: dict[str, Any] = Field(default_factory=dict)
    rewards: dict[str, Any] = Field(default_factory=dict)
    image_url: str | None = None
    objectives: list[Objective] = Field(..., min_length=1)
    clues: list[Clue] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "Mission":
        objective_ids = [o.id for o in self.objectives]
        if len(set(objective_ids)) != len(objective_ids):
            raise ValueError(f"mission {self.id} has duplicate objective ids")

        clue_ids = {c.id for c in self.clues}
        for objective in self.objectives:
            for trigger in objective.triggers:
                if isinstance(trigger, ClueTrigger) and trigger.clue not in clue_ids:
                    raise ValueError(f"mission {self.id} objective {objective.id} references unknown clue {trigger.clue}")
        return self

    def objective(self, objective_id: str) -> Objective | None:
        return next((o for o in self.objectives if o.id == objective_id), None)

    def clue(self, clue_id: str) -> Clue | None:
        return next((c for c in self.clues if c.id == clue_id), None)


# -- Cinematic scenes -------------------------------------------------------------


class _SceneBase(BaseModel):
    duration: float = Field(..., gt=0)
    text: str = ""
    background: str | None = None
    audio_track: str | None = None
    decision_point: str | None = None

    def render_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"decision_point"})


class NewsBroadcastScene(_SceneBase):
    type: Literal["news_broadcast"]


class FootageScene(_SceneBase):
    type: Literal["footage"]
    video: str | None = None


class InterviewScene(_SceneBase):
    type: Literal["interview"]
    speaker: str | None = None


class LabScene(_SceneBase):
    type: Literal["lab_scene"]


class CloseupScene(_SceneBase):
    type: Literal["closeup"]


class DialogueScene(_SceneBase):
    type: Literal["scene"]


class MontageScene(_SceneBase):
    type: Literal["montage"]


class BriefingRoomScene(_SceneBase):
    type: Literal["briefing_room"]


class HologramPresentationScene(_SceneBase):
    type: Literal["hologram_presentation"]


class CharacterFocusScene(_SceneBase):
    type: Literal["character_focus"]


class EpilogueScene(_SceneBase):
    type: Literal["epilogue"]


class AbstractScene(_SceneBase):
    type: Literal["abstract"]


Scene = Annotated[
    Union[
        NewsBroadcastScene,
        FootageScene,
        InterviewScene,
        LabScene,
        CloseupScene,
        DialogueScene,
        MontageScene,
        BriefingRoomScene,
        HologramPresentationScene,
        CharacterFocusScene,
        EpilogueScene,
        AbstractScene,
    ],
    Field(discriminator="type"),
]


class Cinematic(BaseModel):
    id: str
    title: str
    kind: Literal["cutscene", "interactive"] = "cutscene"
    skippable: bool = False
    scenes: list[Scene] = Field(..., min_length=1)

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.scenes)


class DecisionChoice(BaseModel):
    id: str
    text: str
    outcome: str = ""
    flags: dict[str, Any] = Field(default_factory=dict)
    type: str | None = None


class Decision(BaseModel):
    id: str
    title: str
    description: str = ""
    choices: list[DecisionChoice] = Field(..., min_length=1)

    def choice(self, choice_id: str) -> DecisionChoice | None:
        return next((c for c in self.choices if c.id == choice_id), None)


# -- Story content ------------------------------------------------------------------


class Chapter(BaseModel):
    id: str
    title: str
    description: str = ""
    objectives: list[str] = Field(default_factory=list)
    next_chapter: str | None = None
    locations: list[str] = Field(default_factory=list)
    required_evidence: list[str] = Field(default_factory=list)
    final_chapter: bool = False


class DialogueResponse(BaseModel):
    text: str
    next_node: str | None = None
    type: str | None = None


class DialogueNode(BaseModel):
    text: str
    responses: list[DialogueResponse] = Field(default_factory=list)


class AudioLog(BaseModel):
    id: str
    title: str
    character: str = ""
    location: str = ""
    duration: float = 0
    transcript: str = ""
    research_value: float = 0
    critical_evidence: bool = False


class DataEntry(BaseModel):
    id: str
    title: str
    type: str = ""
    content: str = ""
    location: str = ""
    author: str = ""
    research_value: float = 0
    required_evidence: bool = False


class QuestObjectiveTemplate(BaseModel):
    id: str
    description: str = ""
    location: str | None = None
    required_evidence: list[str] = Field(default_factory=list)


class QuestTemplate(BaseModel):
    id: str
    title: str
    description: str = ""
    objectives: list[QuestObjectiveTemplate] = Field(default_factory=list)
    rewards: dict[str, Any] = Field(default_factory=dict)
    optional: bool = False


class Catalog(BaseModel):
    """Read-only content tables. Constructed once and passed to whoever needs it."""

    missions: dict[str, Mission] = Field(default_factory=dict)
    chapters: dict[str, Chapter] = Field(default_factory=dict)
    cinematics: dict[str, Cinematic] = Field(default_factory=dict)
    decisions: dict[str, Decision] = Field(default_factory=dict)
    dialogue: dict[str, dict[str, DialogueNode]] = Field(default_factory=dict)
    audio_logs: dict[str, AudioLog] = Field(default_factory=dict)
    data_entries: dict[str, DataEntry] = Field(default_factory=dict)
    quests: dict[str, QuestTemplate] = Field(default_factory=dict)
    # Ending id -> cinematic id.
    ending_cinematics: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> "Catalog":
        for table in (self.missions, self.chapters, self.cinematics, self.decisions):
            for key, entry in table.items():
                if key != entry.id:
                    raise ValueError(f"catalog key {key!r} does not match id {entry.id!r}")

        for chapter in self.chapters.values():
            if chapter.next_chapter is not None and chapter.next_chapter not in self.chapters:
                raise ValueError(f"chapter {chapter.id} points at unknown chapter {chapter.next_chapter}")

        for ending, cinematic_id in self.ending_cinematics.items():
            if cinematic_id not in self.cinematics:
                raise ValueError(f"ending {ending} points at unknown cinematic {cinematic_id}")
        return self

    def mission(self, mission_id: str) -> Mission | None:
        return self.missions.get(mission_id)

    def cinematic(self, cinematic_id: str) -> Cinematic | None:
        return self.cinematics.get(cinematic_id)

    def decision(self, decision_id: str) -> Decision | None:
        return self.decisions.get(decision_id)

    def chapter(self, chapter_id: str) -> Chapter | None:
        return self.chapters.get(chapter_id)

    def dialogue_node(self, character: str, node_id: str) -> DialogueNode | None:
        return self.dialogue.get(character, {}).get(node_id)


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise CatalogLoadError(f"Missing catalog file: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise CatalogLoadError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise CatalogLoadError(f"Expected a JSON object in {path}")
    return data


def load_catalog(*, root: Path | None = None) -> Catalog:
    """Load and validate the mission + story content tables from `root` (defaults to the bundled data)."""

    data_dir = root or DATA_DIR
    missions = _read_json(data_dir / MISSIONS_FILE)
    story = _read_json(data_dir / STORY_FILE)

    try:
        catalog = Catalog.model_validate({**story, "missions": missions.get("missions", {})})
    except ValidationError as e:
        raise CatalogLoadError(f"Invalid catalog in {data_dir}: {e}") from e

    logger.info(
        "catalog loaded: %d missions, %d cinematics, %d decisions, %d chapters",
        len(catalog.missions),
        len(catalog.cinematics),
        len(catalog.decisions),
        len(catalog.chapters),
    )
    return catalog
