"""
tests/test_routes.py
HTTP API tests using FastAPI's TestClient against an in-memory coordinator.
"""

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.coordinator import Coordinator
from core.store import StoreRegistry
from conftest import make_reply

# Three bullish agents outweigh the neutral defaults (weight 15 each)
BULLISH_MAJORITY = {
    key: make_reply(key, "bullish", 0.9) for key in ("polymarket", "defi", "whale")
}


@pytest.fixture
def api(settings, fake_caller, breakers, http_client):
    """TestClient without lifespan; the coordinator is injected directly."""
    coord = Coordinator(
        settings, StoreRegistry(), client=http_client, caller=fake_caller, breakers=breakers,
    )
    coord.load()
    app.state.coordinator = coord
    yield TestClient(app), coord
    del app.state.coordinator


class TestHealth:
    def test_health(self, api):
        client, _ = api
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["agents"] == 6


class TestHunt:
    def test_post_hunt(self, api, fake_caller):
        client, coord = api
        fake_caller.behaviours.update(BULLISH_MAJORITY)

        resp = client.post("/hunt", json={"topic": "bitcoin"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["topic"] == "bitcoin"
        assert body["round"]["consensus"]["direction"] == "bullish"
        assert body["competitions"][0]["slot"] == "sentiment"
        assert coord.acp.get_round(body["hunt_id"]) is not None

    def test_empty_topic_rejected(self, api):
        client, _ = api
        assert client.post("/hunt", json={"topic": ""}).status_code == 422

    def test_stream_emits_events(self, api):
        client, _ = api
        resp = client.get("/hunt/stream", params={"topic": "eth"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        text = resp.text
        assert text.startswith("event: start")
        for kind in ("agent_result", "collect", "consensus", "settle", "round", "done"):
            assert f"event: {kind}\n" in text


class TestACP:
    def test_status_and_round_lookup(self, api):
        client, _ = api
        hunt_id = client.post("/hunt", json={"topic": "sol"}).json()["hunt_id"]

        status = client.get("/acp/status").json()
        assert status["total_rounds"] == 1
        assert status["recent_rounds"][0]["round_id"] == hunt_id

        assert client.get(f"/acp/round/{hunt_id}").status_code == 200
        assert client.get("/acp/round/missing").status_code == 404

    def test_slash_log_paging(self, api, fake_caller):
        client, _ = api
        fake_caller.behaviours.update(BULLISH_MAJORITY)
        fake_caller.behaviours["news"] = make_reply("news", "bearish", 0.4)
        client.post("/hunt", json={"topic": "sol"})

        body = client.get("/acp/slashes", params={"limit": 1}).json()
        assert body["limit"] == 1
        assert len(body["slashes"]) == 1
        agents = {s["agent"] for s in client.get("/acp/slashes").json()["slashes"]}
        assert "news" in agents
        assert client.get("/acp/slashes", params={"limit": 0}).status_code == 422
        assert client.get("/acp/rewards", params={"offset": -1}).status_code == 422

    @pytest.mark.parametrize("path", ["/acp/slashes", "/acp/rewards"])
    def test_log_limit_bounded_by_retained_events(self, api, path):
        client, _ = api
        assert client.get(path, params={"limit": 500}).status_code == 200
        assert client.get(path, params={"limit": 501}).status_code == 422

    def test_agent_stats(self, api):
        client, _ = api
        client.post("/hunt", json={"topic": "sol"})
        assert client.get("/acp/agent/defi").json()["rounds"] == 1
        assert client.get("/acp/agent/nobody").status_code == 404

    def test_spec(self, api):
        client, _ = api
        assert client.get("/acp/spec").json()["version"] == 1


class TestReputation:
    def test_list_and_reset(self, api):
        client, coord = api
        client.post("/hunt", json={"topic": "sol"})
        assert coord.ledger.get_reputation("defi").hunts == 1

        agents = client.post("/reputation/reset").json()["agents"]
        assert {a["key"] for a in agents} >= {"defi", "news"}
        assert all(a["score"] == 0.5 and a["hunts"] == 0 for a in agents)
        assert len(client.get("/reputation").json()["agents"]) == 6


class TestRegistry:
    def test_register_and_unregister(self, api):
        client, coord = api
        resp = client.post("/registry/register", json={
            "key": "oracle", "display_name": "Oracle", "url": "http://oracle.test",
        })
        assert resp.status_code == 200
        assert resp.json()["healthy"] is True
        assert coord.registry.get("oracle").online is True

        listing = client.get("/registry").json()
        assert listing["external"] == 1
        assert any(v["agent"]["key"] == "oracle" for v in listing["agents"])

        assert client.delete("/registry/oracle").status_code == 200
        assert client.delete("/registry/oracle").status_code == 404

    def test_builtin_is_protected(self, api):
        client, _ = api
        resp = client.post("/registry/register", json={
            "key": "defi", "display_name": "Impostor", "url": "http://evil.test",
        })
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Cannot overwrite built-in agent: defi"
        assert client.delete("/registry/news").status_code == 400

    def test_circuits(self, api, breakers):
        client, _ = api
        for _ in range(3):
            breakers.record_failure("whale")
        assert client.get("/circuits").json()["whale"]["state"] == "open"
