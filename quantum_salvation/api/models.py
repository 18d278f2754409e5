from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

STORY_SCHEMA_VERSION = 1
SESSION_SCHEMA_VERSION = 1


class WorldState(BaseModel):
    pandemic_severity: float = 15.0
    time_remaining: float = 7200.0
    research_progress: float = 0.0
    unlocked_facilities: list[str] = Field(default_factory=lambda: ["alpha_wing"])
    quantum_stabilization: float = 0.0


class DecisionRecord(BaseModel):
    id: str
    choice: Any
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    chapter: str


class QuestStatus(StrEnum):
    active = "active"
    completed = "completed"
    failed = "failed"


class QuestObjective(BaseModel):
    id: str
    description: str = ""
    completed: bool = False
    completed_at: datetime | None = None


class Quest(BaseModel):
    id: str
    title: str = ""
    status: QuestStatus = QuestStatus.active
    progress: float = 0.0
    objectives: list[QuestObjective] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None


class StoryState(BaseModel):
    main_progress: float = 0.0
    current_chapter: str = "intro"
    completed_chapters: list[str] = Field(default_factory=list)
    flags: dict[str, Any] = Field(default_factory=dict)
    relationships: dict[str, float] = Field(default_factory=dict)
    discovered_lore: dict[str, dict[str, Any]] = Field(default_factory=dict)
    collected_evidence: dict[str, dict[str, Any]] = Field(default_factory=dict)
    world_state: WorldState = Field(default_factory=WorldState)
    decisions: list[DecisionRecord] = Field(default_factory=list)
    active_quests: dict[str, Quest] = Field(default_factory=dict)
    ending_path: str = "neutral"

    # Player command inputs that drive mission triggers.
    current_location: str | None = None
    visited_locations: list[str] = Field(default_factory=list)
    collected_items: list[str] = Field(default_factory=list)
    discovered_research: list[str] = Field(default_factory=list)


class StorySnapshot(BaseModel):
    schema_version: int = STORY_SCHEMA_VERSION
    state: StoryState
    triggered_events: list[str] = Field(default_factory=list)
    saved_at: datetime


class MissionTimerSnapshot(BaseModel):
    mission_id: str
    time_left: float
    next_tick_in: float | None = None


class MissionRuntimeSnapshot(BaseModel):
    active_mission_id: str | None = None
    completed_mission_ids: list[str] = Field(default_factory=list)
    failed_mission_ids: list[str] = Field(default_factory=list)
    progress: dict[str, int] = Field(default_factory=dict)
    objective_status: dict[str, dict[str, bool]] = Field(default_factory=dict)
    notes: dict[str, list[str]] = Field(default_factory=dict)
    discovered_clues: dict[str, list[str]] = Field(default_factory=dict)
    pending_starts: list[str] = Field(default_factory=list)
    timer: MissionTimerSnapshot | None = None


class CinematicPlaybackSnapshot(BaseModel):
    cinematic_id: str
    scene_index: int = 0
    paused: bool = False
    awaiting_decision: bool = False
    timer_remaining: float | None = None


class SessionSnapshot(BaseModel):
    schema_version: int = SESSION_SCHEMA_VERSION
    session_id: UUID
    created_at: datetime
    last_updated_at: datetime
    clock: float = 0.0
    story: StorySnapshot
    missions: MissionRuntimeSnapshot = Field(default_factory=MissionRuntimeSnapshot)
    cinematic: CinematicPlaybackSnapshot | None = None


class ActiveMissionView(BaseModel):
    id: str
    title: str
    progress: int
    objective_status: dict[str, bool]
    notes: list[str]
    discovered_clues: list[str]
    time_left: float | None = None


class CinematicView(BaseModel):
    state: str
    cinematic_id: str | None = None
    scene_index: int = 0
    awaiting_decision: bool = False


class SessionView(BaseModel):
    session_id: UUID
    created_at: datetime
    last_updated_at: datetime
    clock: float
    story: StoryState
    formatted_time_remaining: str
    projected_ending: str
    active_mission: ActiveMissionView | None = None
    completed_missions: list[str] = Field(default_factory=list)
    cinematic: CinematicView


class SessionListResponse(BaseModel):
    sessions: list[SessionView]


class EndingResponse(BaseModel):
    session_id: UUID
    ending: str
    ending_path: str
    possible_endings: dict[str, bool]


class SessionCreateRequest(BaseModel):
    play_opening: bool = False


class ActionResponse(BaseModel):
    session: SessionView
    outbox_entry_ids: list[str]
    result: dict[str, Any] = Field(default_factory=dict)


class OutboxMessage(BaseModel):
    id: str
    type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    ts: str | None = None


class OutboxResponse(BaseModel):
    session_id: UUID
    stream: str
    messages: list[OutboxMessage]


# -- Commands ---------------------------------------------------------------


class TickAction(BaseModel):
    action: Literal["tick"]
    seconds: float = Field(..., ge=0, le=3600)


class EnterLocationAction(BaseModel):
    action: Literal["enter_location"]
    location: str = Field(..., min_length=1)


class CollectItemAction(BaseModel):
    action: Literal["collect_item"]
    item: str = Field(..., min_length=1)


class DiscoverResearchAction(BaseModel):
    action: Literal["discover_research"]
    research: str = Field(..., min_length=1)


class SetFlagAction(BaseModel):
    action: Literal["set_flag"]
    flag: str = Field(..., min_length=1)
    value: Any = True


class ModifyRelationshipAction(BaseModel):
    action: Literal["modify_relationship"]
    character: str = Field(..., min_length=1)
    delta: float


class DiscoverLoreAction(BaseModel):
    action: Literal["discover_lore"]
    lore_id: str = Field(..., min_length=1)


class CollectEvidenceAction(BaseModel):
    action: Literal["collect_evidence"]
    evidence_id: str = Field(..., min_length=1)


class AdvanceResearchAction(BaseModel):
    action: Literal["advance_research"]
    amount: float


class TriggerEventAction(BaseModel):
    action: Literal["trigger_event"]
    key: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class AdvanceChapterAction(BaseModel):
    action: Literal["advance_chapter"]
    chapter: str | None = None


class DialogueChoiceAction(BaseModel):
    action: Literal["dialogue_choice"]
    character: str
    node: str
    response: int = Field(..., ge=0)


class StartQuestAction(BaseModel):
    action: Literal["start_quest"]
    quest_id: str


class CompleteQuestObjectiveAction(BaseModel):
    action: Literal["complete_quest_objective"]
    quest_id: str
    objective_id: str


class FailQuestAction(BaseModel):
    action: Literal["fail_quest"]
    quest_id: str


class StartMissionAction(BaseModel):
    action: Literal["start_mission"]
    mission_id: str


class CompleteObjectiveAction(BaseModel):
    action: Literal["complete_objective"]
    mission_id: str
    objective_id: str


class CompleteMissionAction(BaseModel):
    action: Literal["complete_mission"]
    success: bool = True


class FailMissionAction(BaseModel):
    action: Literal["fail_mission"]


class DiscoverClueAction(BaseModel):
    action: Literal["discover_clue"]
    clue_id: str


class AddMissionNoteAction(BaseModel):
    action: Literal["add_mission_note"]
    text: str = Field(..., min_length=1, max_length=4000)


class PlayCinematicAction(BaseModel):
    action: Literal["play_cinematic"]
    cinematic_id: str


class PlayEndingCinematicAction(BaseModel):
    action: Literal["play_ending_cinematic"]


class SkipCinematicAction(BaseModel):
    action: Literal["skip_cinematic"]


class TogglePauseAction(BaseModel):
    action: Literal["toggle_pause"]


class SceneEndedAction(BaseModel):
    action: Literal["scene_ended"]


class SubmitDecisionAction(BaseModel):
    action: Literal["submit_decision"]
    choice_id: str


SessionAction = Annotated[
    Union[
        TickAction,
        EnterLocationAction,
        CollectItemAction,
        DiscoverResearchAction,
        SetFlagAction,
        ModifyRelationshipAction,
        DiscoverLoreAction,
        CollectEvidenceAction,
        AdvanceResearchAction,
        TriggerEventAction,
        AdvanceChapterAction,
        DialogueChoiceAction,
        StartQuestAction,
        CompleteQuestObjectiveAction,
        FailQuestAction,
        StartMissionAction,
        CompleteObjectiveAction,
        CompleteMissionAction,
        FailMissionAction,
        DiscoverClueAction,
        AddMissionNoteAction,
        PlayCinematicAction,
        PlayEndingCinematicAction,
        SkipCinematicAction,
        TogglePauseAction,
        SceneEndedAction,
        SubmitDecisionAction,
    ],
    Field(discriminator="action"),
]

SESSION_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(SessionAction)
