from __future__ import annotations

from quantum_salvation.assets.registry import Catalog, DialogueNode
from quantum_salvation.core.errors import ErrorKind
from quantum_salvation.dialogue import DialogueRunner
from quantum_salvation.quests import QuestBook
from quantum_salvation.story_engine import StoryEngine


def test_dialogue_choice_is_recorded_as_decision(engine: StoryEngine, catalog: Catalog) -> None:
    runner = DialogueRunner(engine=engine, catalog=catalog)

    assert runner.select_response("director_hammond", "explain_mission", 0) == "mission_start"

    record = engine.state.decisions[-1]
    assert record.id == "dialogue_director_hammond_explain_mission"
    assert record.choice == 0
    assert record.context["type"] == "mission_accept"
    assert record.context["next_node"] == "mission_start"
    assert engine.get_flag("decision_dialogue_director_hammond_explain_mission") == 0


def test_dialogue_defaults_to_neutral_type(engine: StoryEngine, catalog: Catalog) -> None:
    runner = DialogueRunner(engine=engine, catalog=catalog)
    runner.select_response("director_hammond", "intro", 1)
    assert engine.state.decisions[-1].context == {
        "type": "neutral",
        "text": "Tell me more about the quantum breach.",
        "next_node": "explain_breach",
    }


def test_responses_sharing_a_next_node_stay_distinguishable(engine: StoryEngine) -> None:
    node = DialogueNode.model_validate(
        {
            "text": "The door is sealed.",
            "responses": [
                {"text": "Force it.", "next_node": "inside", "type": "risky"},
                {"text": "Use the keycard.", "next_node": "inside", "type": "careful"},
                {"text": "Leave."},
            ],
        }
    )
    runner = DialogueRunner(engine=engine, catalog=Catalog(dialogue={"guard": {"door": node}}))

    assert runner.select_response("guard", "door", 1) == "inside"
    assert engine.get_flag("decision_dialogue_guard_door") == 1

    assert runner.select_response("guard", "door", 2) == ""
    record = engine.state.decisions[-1]
    assert record.choice == 2
    assert record.context["next_node"] is None
    assert [d.choice for d in engine.state.decisions] == [1, 2]


def test_dialogue_unknown_node_or_response(engine: StoryEngine, catalog: Catalog) -> None:
    runner = DialogueRunner(engine=engine, catalog=catalog)

    assert runner.select_response("director_hammond", "nowhere", 0) is None
    assert runner.rejections.last.kind == ErrorKind.not_found
    assert runner.select_response("director_hammond", "intro", 9) is None
    assert engine.state.decisions == []


def test_quest_book_starts_catalog_quest_and_pays_rewards(engine: StoryEngine, catalog: Catalog) -> None:
    book = QuestBook(engine=engine, catalog=catalog)

    assert book.start("recover_formula") is True
    quest = engine.state.active_quests["recover_formula"]
    assert [o.id for o in quest.objectives] == ["find_base_structure", "find_resonance", "find_protocol"]

    for objective in ("find_base_structure", "find_resonance", "find_protocol"):
        assert engine.complete_quest_objective("recover_formula", objective) is True

    assert engine.state.active_quests["recover_formula"].status == "completed"
    assert engine.state.world_state.research_progress == 30.0
    assert engine.state.world_state.time_remaining == 7200.0 + 600.0
    book.dispose()


def test_quest_book_rejections(engine: StoryEngine, catalog: Catalog) -> None:
    book = QuestBook(engine=engine, catalog=catalog)

    assert book.start("find_atlantis") is False
    assert book.rejections.last.kind == ErrorKind.not_found

    book.start("collect_samples")
    assert book.start("collect_samples") is False
    assert book.rejections.last.kind == ErrorKind.invalid_state
    book.dispose()
