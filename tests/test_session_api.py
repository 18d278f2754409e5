from __future__ import annotations

import json

import fakeredis
from fastapi.testclient import TestClient


def _create(client: TestClient, **body: object) -> dict:
    resp = client.post("/sessions", json=body or None)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _act(client: TestClient, session_id: str, body: dict) -> object:
    return client.post(f"/sessions/{session_id}/actions", json=body)


def test_healthcheck_and_info(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    assert client.get("/healthcheck").json() == {"status": "ok"}
    assert client.get("/info").json()["name"] == "quantum-salvation"


def test_create_list_and_get_session(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, r = client_and_redis

    created = _create(client)
    sid = created["session_id"]
    assert created["story"]["current_chapter"] == "intro"
    assert created["formatted_time_remaining"] == "02:00:00"
    assert created["cinematic"]["state"] == "idle"
    assert r.sismember("qs:sessions", sid)
    assert r.exists(f"qs:session:{sid}")

    listed = client.get("/sessions").json()["sessions"]
    assert [s["session_id"] for s in listed] == [sid]

    assert client.get(f"/sessions/{sid}").json()["session_id"] == sid


def test_unknown_session_is_404(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    missing = "00000000-0000-0000-0000-000000000000"

    assert client.get(f"/sessions/{missing}").status_code == 404
    assert _act(client, missing, {"action": "tick", "seconds": 1}).status_code == 404


def test_malformed_action_is_422(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    sid = _create(client)["session_id"]

    assert _act(client, sid, {"action": "teleport"}).status_code == 422
    assert _act(client, sid, {"action": "tick", "seconds": -5}).status_code == 422
    assert _act(client, sid, {"action": "start_mission"}).status_code == 422


def test_mission_flow_over_http_persists_between_requests(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, r = client_and_redis
    sid = _create(client)["session_id"]

    resp = _act(client, sid, {"action": "set_flag", "flag": "intro_complete", "value": True})
    assert resp.status_code == 200, resp.text
    assert resp.json()["session"]["active_mission"]["id"] == "m001"

    resp = _act(client, sid, {"action": "enter_location", "location": "research_sector_b_entrance"})
    active = resp.json()["session"]["active_mission"]
    assert active["objective_status"]["obj1"] is True
    assert active["progress"] == 20

    resp = _act(client, sid, {"action": "complete_objective", "mission_id": "m001", "objective_id": "obj1"})
    assert resp.status_code == 409

    resp = _act(client, sid, {"action": "start_mission", "mission_id": "m404"})
    assert resp.status_code == 404

    entries = r.xrange(f"outbox:{sid}")
    types = [fields["type"] for _, fields in entries]
    assert "mission_started" in types
    assert "objective_completed" in types
    started = next(fields for _, fields in entries if fields["type"] == "mission_started")
    assert json.loads(started["payload"])["mission_id"] == "m001"


def test_rejected_action_leaves_outbox_untouched(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, r = client_and_redis
    sid = _create(client)["session_id"]
    before = r.xlen(f"outbox:{sid}")

    assert _act(client, sid, {"action": "complete_mission"}).status_code == 409
    assert r.xlen(f"outbox:{sid}") == before


def test_cinematic_decision_flow_over_http(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    sid = _create(client)["session_id"]

    assert _act(client, sid, {"action": "play_cinematic", "cinematic_id": "emergency_briefing"}).status_code == 200
    assert _act(client, sid, {"action": "skip_cinematic"}).status_code == 409

    view = _act(client, sid, {"action": "tick", "seconds": 35}).json()["session"]
    assert view["cinematic"]["scene_index"] == 3
    assert view["cinematic"]["awaiting_decision"] is True

    view = _act(client, sid, {"action": "submit_decision", "choice_id": "negotiate"}).json()["session"]
    assert view["story"]["flags"]["mission_accepted"] is True
    assert view["story"]["flags"]["negotiated_research_access"] is True

    view = _act(client, sid, {"action": "tick", "seconds": 3}).json()["session"]
    assert view["cinematic"]["state"] == "idle"


def test_play_opening_on_create(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, r = client_and_redis
    created = _create(client, play_opening=True)

    assert created["cinematic"]["cinematic_id"] == "opening_news"
    outbox = client.get(f"/sessions/{created['session_id']}/outbox").json()
    assert outbox["messages"][0]["type"] == "cinematic_started"
    assert outbox["stream"] == f"outbox:{created['session_id']}"


def test_ending_route(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    sid = _create(client)["session_id"]

    _act(client, sid, {"action": "trigger_event", "key": "quantum_breach"})
    ending = client.get(f"/sessions/{sid}/ending").json()

    assert ending["ending"] == "quantum_collapse"
    assert ending["possible_endings"]["quantum_collapse"] is True
    assert _act(client, sid, {"action": "trigger_event", "key": "quantum_breach"}).status_code == 409


def test_discover_lore_uses_catalog_research_value(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    sid = _create(client)["session_id"]

    resp = _act(client, sid, {"action": "discover_lore", "lore_id": "nobody_knows"})
    assert resp.json()["result"] == {"discovered": True}
    resp = _act(client, sid, {"action": "discover_lore", "lore_id": "nobody_knows"})
    assert resp.json()["result"] == {"discovered": False}


def test_busy_session_is_rejected(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, r = client_and_redis
    sid = _create(client)["session_id"]
    r.set(f"lock:session:{sid}", "1")

    resp = _act(client, sid, {"action": "tick", "seconds": 1})
    assert resp.status_code == 422
    assert "busy" in resp.json()["detail"]


def test_advance_chapter_and_dialogue(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    sid = _create(client)["session_id"]

    resp = _act(client, sid, {"action": "advance_chapter"})
    assert resp.json()["result"] == {"chapter": "alpha_wing"}
    assert _act(client, sid, {"action": "advance_chapter", "chapter": "atlantis"}).status_code == 404

    resp = _act(client, sid, {"action": "dialogue_choice", "character": "director_hammond", "node": "intro", "response": 0})
    assert resp.json()["result"] == {"next_node": "explain_pandemic"}
