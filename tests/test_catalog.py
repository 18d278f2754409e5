from __future__ import annotations

import json
from pathlib import Path

import pytest

from quantum_salvation.assets.registry import (
    Catalog,
    CatalogLoadError,
    ClueTrigger,
    FlagTrigger,
    Mission,
    load_catalog,
)


def test_bundled_catalog_loads_with_expected_content(catalog: Catalog) -> None:
    assert list(catalog.missions) == ["m001", "m002", "m003", "m004", "m005"]
    assert catalog.missions["m001"].auto_complete_on_all_objectives is False
    assert catalog.missions["m002"].time_limit == 60

    briefing = catalog.cinematics["emergency_briefing"]
    assert briefing.skippable is False
    assert [s.decision_point for s in briefing.scenes] == [None, None, None, "accept_mission"]
    assert catalog.cinematics["opening_news"].duration == 60

    assert set(catalog.ending_cinematics) == {
        "true_cure",
        "partial_cure",
        "emergency_solution",
        "failure",
        "quantum_collapse",
    }
    assert catalog.decision("accept_mission").choice("accept").flags == {"mission_accepted": True}
    assert catalog.dialogue_node("director_hammond", "intro") is not None


def test_objective_triggers_are_typed(catalog: Catalog) -> None:
    obj3 = catalog.missions["m001"].objective("obj3")
    assert obj3 is not None
    trigger = obj3.triggers[0]
    assert isinstance(trigger, FlagTrigger)
    assert trigger.value == 3

    obj4 = catalog.missions["m005"].objective("obj4")
    assert obj4 is not None
    assert any(isinstance(t, ClueTrigger) and t.clue == "clue3" for t in obj4.triggers)


def test_flag_trigger_requires_a_value() -> None:
    with pytest.raises(ValueError):
        Mission.model_validate(
            {
                "id": "x",
                "title": "X",
                "objectives": [{"id": "o", "title": "O", "triggers": [{"kind": "flag", "flag": "f"}]}],
            }
        )


def test_mission_rejects_unknown_clue_reference() -> None:
    with pytest.raises(ValueError):
        Mission.model_validate(
            {
                "id": "x",
                "title": "X",
                "objectives": [{"id": "o", "title": "O", "triggers": [{"kind": "clue", "clue": "nope"}]}],
            }
        )


def test_load_catalog_reports_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(CatalogLoadError):
        load_catalog(root=tmp_path)

    (tmp_path / "missions.json").write_text(json.dumps({"missions": {}}), encoding="utf-8")
    (tmp_path / "story.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(CatalogLoadError):
        load_catalog(root=tmp_path)

    (tmp_path / "story.json").write_text(json.dumps({"ending_cinematics": {"true_cure": "missing"}}), encoding="utf-8")
    with pytest.raises(CatalogLoadError):
        load_catalog(root=tmp_path)
