"""HTTP-level tests for the FastAPI application.

Services are built up front over an in-memory store and a scripted chat
model, then handed to create_app so no settings or network are needed.
"""

import json

import pytest
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from src.aicoder.config import AICoderSettings
from src.aicoder.events.metrics import PipelineMetrics
from src.aicoder.main import build_services, create_app
from src.aicoder.policy.defaults import default_config
from src.aicoder.sandbox.provider import CommandResult
from src.aicoder.state.models import ChangeRequestStatus
from src.aicoder.store import UNIQUE_FIELDS, InMemoryDocumentStore
from src.aicoder.webhook.signature import compute_signature


SECRET = "whsec-app"


class EchoModel:
    def bind_tools(self, tools):
        return self

    async def ainvoke(self, messages):
        return AIMessage(content=f"You said: {messages[-1].content}")


class IdleSandbox:
    sandbox_id = "sbx-idle"

    def __init__(self):
        self.killed = False

    @property
    def is_alive(self) -> bool:
        return not self.killed

    async def exec(self, command, cwd=None, timeout_ms=None):
        return CommandResult(0, "", "")

    async def write_file(self, path, content):
        pass

    async def kill(self):
        self.killed = True


def _make_services(tmp_path, **settings_overrides):
    settings = AICoderSettings(
        github_token="ghp_test",
        github_webhook_secret=SECRET,
        sandbox_base_path=str(tmp_path),
        **settings_overrides,
    )
    return build_services(
        settings,
        default_config(),
        InMemoryDocumentStore(unique_fields=UNIQUE_FIELDS),
        metrics=PipelineMetrics(),
        llm=EchoModel(),
    )


@pytest.fixture
def services(tmp_path):
    return _make_services(tmp_path)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


class TestHealthChecks:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_ready(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ready",
            "dependencies": {"database": "healthy"},
            "activeSandboxes": 0,
        }

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "aicoder_active_sandboxes" in response.text
        assert response.headers["content-type"].startswith("text/plain")

    def test_not_initialized(self):
        bare = create_app()
        # Without entering the lifespan no services are attached.
        response = TestClient(bare).get("/ready")
        assert response.status_code == 503


class TestStartup:
    def test_required_secret_missing_refuses_to_start(self, tmp_path):
        services = _make_services(tmp_path, require_webhook_secret=True)
        services.settings.github_webhook_secret = ""

        with pytest.raises(RuntimeError, match="WEBHOOK_SECRET"):
            with TestClient(create_app(services)):
                pass


class TestKill:
    def test_kill_switch(self, client, services):
        sandbox = IdleSandbox()
        client.portal.call(services.registry.register, "chat-1", sandbox)
        assert client.get("/ready").json()["activeSandboxes"] == 1

        response = client.post("/kill")

        assert response.json() == {"killed": 1, "wasActive": 1}
        assert sandbox.killed
        assert services.registry.was_cancelled("chat-1")
        assert services.metrics.registry.get_sample_value("aicoder_active_sandboxes") == 0

    def test_kill_with_nothing_running(self, client):
        assert client.post("/kill").json() == {"killed": 0, "wasActive": 0}


class TestWebhookEndpoint:
    def _post(self, client, event, payload, secret=SECRET):
        body = json.dumps(payload).encode("utf-8")
        headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
        if secret:
            headers["X-Hub-Signature-256"] = compute_signature(secret, body)
        return client.post("/webhook", content=body, headers=headers)

    def test_invalid_signature(self, client):
        response = self._post(client, "pull_request", {"action": "closed"}, secret="wrong")
        assert response.status_code == 401
        assert response.json()["status"] == "rejected_signature"

    def test_missing_signature(self, client):
        response = self._post(client, "pull_request", {"action": "closed"}, secret=None)
        assert response.status_code == 401

    def test_malformed_payload(self, client):
        response = self._post(client, "pull_request", {"action": "closed"})
        assert response.status_code == 400

    def test_unknown_event(self, client):
        response = self._post(client, "ping", {"zen": "Design for failure."})
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_merge_completes_request(self, client, services):
        async def seed():
            record = await services.state_machine.create("s1", "Make it blue", "ui-enhancement")
            for status in (
                ChangeRequestStatus.PROVISIONING,
                ChangeRequestStatus.RUNNING_AGENT,
                ChangeRequestStatus.COMMITTING,
            ):
                await services.state_machine.transition(record.id, status)
            await services.state_machine.open_pull_request(record.id, 8, "https://github.com/x/y/pull/8")
            return record.id

        request_id = client.portal.call(seed)

        response = self._post(
            client,
            "pull_request",
            {"action": "closed", "pull_request": {"number": 8, "merged": True, "merge_commit_sha": "m8"}},
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "accepted",
            "detail": "Change request complete",
            "request_id": request_id,
        }
        record = client.get(f"/change-requests/{request_id}").json()
        assert record["status"] == "complete"
        assert record["merge_commit_sha"] == "m8"


class TestChatEndpoint:
    def test_reply(self, client):
        response = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "Make the header blue"}]},
            headers={"X-Operator-Name": "dana"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["reply"] == "You said: Make the header blue"
        assert body["skill_id"] == "ui-enhancement"
        assert body["exhausted"] is False

    def test_policy_rejection(self, client):
        response = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "Rewrite firebase.json"}], "skill_id": "bug-fix"},
        )
        assert response.status_code == 400
        assert "firebase.json" in response.json()["detail"]

    def test_unknown_skill(self, client):
        response = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "hi"}], "skill_id": "nope"},
        )
        assert response.status_code == 400

    def test_requires_messages(self, client):
        assert client.post("/chat", json={"messages": []}).status_code == 422


class TestRecords:
    def test_missing_records(self, client):
        assert client.get("/change-requests/cr-missing").status_code == 404
        assert client.get("/plans/missing").status_code == 404
        assert client.get("/plans/missing/events").status_code == 404

    def test_plan_and_event_stream(self, client, services):
        async def seed():
            await services.plan_tracker.create_plan(
                "plan-1", "Blue", "", [{"id": "s1", "label": "Header"}]
            )
            await services.plan_tracker.finalize("plan-1", succeeded=True)

        client.portal.call(seed)

        plan = client.get("/plans/plan-1").json()
        assert plan["locked"] is True

        response = client.get("/plans/plan-1/events")
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [line for line in response.text.splitlines() if line.startswith("data: ")]
        assert len(events) == 1
        assert json.loads(events[0][len("data: "):])["items"][0]["status"] == "done"


class TestConfigEndpoints:
    def test_get_config(self, client):
        body = client.get("/config").json()
        assert body["project"]["repo"] == "yourorg/project-dashboard"

    def test_save_overrides(self, client):
        response = client.put(
            "/config/overrides",
            json={"rules": {"blocked": ["secret/**"]}},
            headers={"X-Operator-Name": "dana"},
        )
        assert response.status_code == 200
        assert response.json()["updated_by"] == "dana"

        merged = client.get("/config").json()
        assert merged["rules"]["blocked"] == ["secret/**"]

    def test_invalid_overrides(self, client):
        response = client.put("/config/overrides", json={"rules": {"max_files_per_change": 0}})
        assert response.status_code == 422
