"""Tests for the HTTP layer: envelopes, status codes and agent sessions."""

import json
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

import hybridmind.api.app as app_module
from conftest import (
    ZERO_DELAY,
    Hang,
    ScriptedAdapter,
    make_limits,
)
from hybridmind.config import settings
from hybridmind.core.admission import UsageLedger
from hybridmind.core.dispatcher import Dispatcher
from hybridmind.core.engine import ExecutionEngine
from hybridmind.providers import ProviderHTTPError

PRO = {"X-HybridMind-Tier": "pro"}

PLAN = json.dumps(
    {
        "strategy": "two passes",
        "steps": [
            {"id": "read", "name": "read", "action": "analyze"},
            {"id": "fix", "name": "fix", "action": "fix", "dependsOn": ["read"]},
        ],
    }
)
THOUGHT = json.dumps({"tool": "thought", "content": "done"})
DONE = json.dumps({"verdict": "done", "summary": "All set"})


@pytest.fixture
def client(
    engine: ExecutionEngine, monkeypatch: pytest.MonkeyPatch
) -> Iterator[TestClient]:
    monkeypatch.setattr(app_module, "engine", engine)
    monkeypatch.setattr(app_module, "sessions", type(app_module.sessions)())
    yield TestClient(app_module.app)


def test_health(client: TestClient) -> None:
    """The liveness check answers without touching the engine."""

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_run_single_envelope(client: TestClient, adapter: ScriptedAdapter) -> None:
    """Successful runs are wrapped in the success envelope with usage metadata."""

    adapter.script("llama-3.3-70b", "42")

    response = client.post("/run/single", json={"prompt": "answer?", "model": "llama-3.3-70b"})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["output"] == "42"
    assert body["meta"]["tier"] == "free"
    assert body["meta"]["mode"] == "single"
    assert body["meta"]["usage"]["totalTokens"] == 15


def test_run_chain_over_http(client: TestClient, adapter: ScriptedAdapter) -> None:
    """Chain results expose the per-step trace."""

    adapter.script("gpt-4o", "draft")
    adapter.script("o1", "final")

    response = client.post(
        "/run/chain", json={"prompt": "write it", "models": ["gpt-4o", "o1"]}, headers=PRO
    )

    data = response.json()["data"]
    assert data["output"] == "final"
    assert [t["model"] for t in data["trace"]] == ["gpt-4o", "o1"]
    assert data["failedStep"] is None


def test_tier_restricted(client: TestClient, adapter: ScriptedAdapter) -> None:
    """Free callers asking for a pro model get 403."""

    response = client.post("/run/single", json={"prompt": "hi", "model": "claude-opus-4"})

    assert response.status_code == 403
    assert response.json()["success"] is False
    assert response.json()["code"] == "TierRestricted"
    assert adapter.calls == []


def test_unknown_model(client: TestClient) -> None:
    """Unknown models map to 404."""

    response = client.post("/run/single", json={"prompt": "hi", "model": "gpt-99"}, headers=PRO)

    assert response.status_code == 404
    assert response.json()["code"] == "ModelNotFound"


def test_invalid_tier_header(client: TestClient) -> None:
    """An unknown tier is an invalid request."""

    response = client.post(
        "/run/single", json={"prompt": "hi"}, headers={"X-HybridMind-Tier": "platinum"}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "InvalidRequest"


def test_body_validation_error(client: TestClient) -> None:
    """Malformed bodies use the error envelope too."""

    response = client.post("/run/single", json={"temperature": 9})

    body = response.json()
    assert response.status_code == 422
    assert body["success"] is False
    assert body["code"] == "InvalidRequest"
    assert "prompt" in body["error"]


def test_parallel_all_failed(client: TestClient, adapter: ScriptedAdapter) -> None:
    """When every model fails the first error decides the status, details stay attached."""

    adapter.script("llama-3.3-70b", ProviderHTTPError(401, "bad key"))
    adapter.script("deepseek-v3", ProviderHTTPError(400, "bad request"))

    response = client.post(
        "/run/parallel", json={"prompt": "hi", "models": ["llama-3.3-70b", "deepseek-v3"]}
    )

    body = response.json()
    assert response.status_code == 502
    assert body["code"] == "AuthError"
    assert [r["error"]["code"] for r in body["data"]["results"]] == ["AuthError", "ProviderError"]


def test_rate_limit_sets_retry_after(
    adapter: ScriptedAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Admission denials are 429 with a Retry-After header."""

    ledger = UsageLedger(limits=make_limits(requests_per_minute=1))
    engine = ExecutionEngine(
        Dispatcher(adapters={"openrouter": adapter}), ledger, retry_policy=ZERO_DELAY
    )
    monkeypatch.setattr(app_module, "engine", engine)
    client = TestClient(app_module.app)

    first = client.post("/run/single", json={"prompt": "hi"})
    second = client.post("/run/single", json={"prompt": "hi"})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["code"] == "RateLimited"
    assert int(second.headers["Retry-After"]) >= 1


def test_agent_step_wise_session(client: TestClient, adapter: ScriptedAdapter) -> None:
    """Plan, then drive the session step by step until it finishes."""

    adapter.script("gpt-4o", PLAN)

    created = client.post("/agent/plan", json={"goal": "fix the bug", "models": ["gpt-4o"]},
                          headers=PRO)
    assert created.status_code == 200
    session_id = created.json()["data"]["sessionId"]
    assert [s["id"] for s in created.json()["data"]["plan"]["steps"]] == ["read", "fix"]

    adapter.script("gpt-4o", THOUGHT, THOUGHT, DONE)
    first = client.post("/agent/next", json={"sessionId": session_id}, headers=PRO).json()
    assert first["data"]["step"]["stepId"] == "read"
    assert first["data"]["finished"] is False

    second = client.post("/agent/next", json={"sessionId": session_id}, headers=PRO).json()
    assert second["data"]["step"]["stepId"] == "fix"

    last = client.post("/agent/next", json={"sessionId": session_id}, headers=PRO).json()
    assert last["data"]["step"] is None
    assert last["data"]["finished"] is True
    assert last["data"]["session"]["state"] == "done"

    status = client.get(f"/agent/status/{session_id}", headers=PRO).json()
    assert status["data"]["review"]["summary"] == "All set"


def test_agent_plan_honours_request_deadline(
    client: TestClient, adapter: ScriptedAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Planning that outlives the request timeout is cancelled (499)."""

    monkeypatch.setattr(settings, "REQUEST_TIMEOUT_SECONDS", 0.05)
    adapter.script("gpt-4o", Hang())

    response = client.post(
        "/agent/plan", json={"goal": "fix the bug", "models": ["gpt-4o"]}, headers=PRO
    )

    assert response.status_code == 499
    assert response.json()["code"] == "Cancelled"


def test_agent_next_gets_a_fresh_deadline_per_call(
    client: TestClient, adapter: ScriptedAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Each step-wise call is bounded by its own request timeout."""

    adapter.script("gpt-4o", PLAN)
    created = client.post(
        "/agent/plan", json={"goal": "fix the bug", "models": ["gpt-4o"]}, headers=PRO
    )
    session_id = created.json()["data"]["sessionId"]

    monkeypatch.setattr(settings, "REQUEST_TIMEOUT_SECONDS", 0.05)
    adapter.script("gpt-4o", Hang())
    body = client.post("/agent/next", json={"sessionId": session_id}, headers=PRO).json()

    assert body["data"]["step"]["success"] is False
    assert body["data"]["session"]["state"] == "failed"
    assert body["data"]["session"]["error"]["code"] == "Cancelled"


def test_agent_execute(client: TestClient, adapter: ScriptedAdapter) -> None:
    """A full agent run returns the trace and the session summary."""

    adapter.script("llama-3.3-70b", PLAN, DONE)
    adapter.script("qwen3-coder", THOUGHT)

    response = client.post(
        "/agent/execute",
        json={"prompt": "fix the bug", "models": ["llama-3.3-70b", "qwen3-coder"]},
    )

    body = response.json()
    assert response.status_code == 200, body
    assert body["meta"]["mode"] == "agentic"
    assert body["data"]["output"] == "All set"
    assert body["data"]["data"]["models"]["reviewer"] == "llama-3.3-70b"
    assert [t["role"] for t in body["data"]["trace"]] == [
        "planner",
        "executor",
        "executor",
        "reviewer",
    ]


def test_agent_planning_error(client: TestClient, adapter: ScriptedAdapter) -> None:
    """An unusable plan is a 422."""

    adapter.script("gpt-4o", "I cannot plan this.")

    response = client.post("/agent/plan", json={"goal": "x", "models": ["gpt-4o"]}, headers=PRO)

    assert response.status_code == 422
    assert response.json()["code"] == "PlanningError"


def test_unknown_session(client: TestClient) -> None:
    """Unknown sessions are 404 in the error envelope."""

    response = client.post("/agent/next", json={"sessionId": "nope"})

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "Unknown session 'nope'",
        "code": "HTTPError",
    }


def test_models_listing(client: TestClient) -> None:
    """The catalogue can be filtered to what free callers may use."""

    everything = client.get("/models").json()["data"]
    free = client.get("/models", params={"tier": "free"}).json()["data"]

    assert len(free) < len(everything)
    assert {m["tier"] for m in free} == {"free"}
    assert {"id", "provider", "wireId", "tags"} <= set(free[0])


def test_models_recommend_and_workflows(client: TestClient) -> None:
    """Recommendations and the workflow table are exposed read-only."""

    picks = client.post(
        "/models/recommend", json={"task": "coding", "costTier": "low", "count": 2}
    ).json()["data"]
    workflows = client.get("/models/workflows").json()["data"]

    assert [m["id"] for m in picks] == ["llama-3.3-70b", "deepseek-v3"]
    assert workflows["cost-optimized"]["executor"] == "qwen3-coder"
