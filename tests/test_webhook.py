"""Tests du serveur webhook."""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from devfleet.db import Organization, PullRequest, RepoAgent, Repository
from devfleet.models import ApprovalStatus, ReviewData
from devfleet.webhook import create_app


def _sign(body: bytes, secret: str = "s3cret") -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _post(client, event: str, payload: dict, signature: str | None = None, delivery: str = "d-1"):
    body = json.dumps(payload).encode()
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": signature or _sign(body),
        "Content-Type": "application/json",
    }
    return client.post("/webhook/github", content=body, headers=headers)


@pytest.fixture
def github_client():
    gh = MagicMock()
    gh.fetch_pull_request_reviews.return_value = ReviewData(
        approval_status=ApprovalStatus.PENDING, review_count=1
    )
    return gh


@pytest.fixture
def client(settings, session_factory, github_client):
    app = create_app(
        settings=settings,
        session_factory=session_factory,
        github_client_factory=lambda installation_id: github_client,
    )
    return TestClient(app)


class TestWebhookSecurity:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "service": "devfleet"}

    def test_missing_headers(self, client):
        response = client.post("/webhook/github", content=b"{}")
        assert response.status_code == 400
        assert response.json()["isKnownError"] is True

    def test_bad_signature(self, client):
        response = _post(client, "ping", {"zen": "hi"}, signature="sha256=" + "0" * 64)
        assert response.status_code == 401

    def test_unhandled_event_ok(self, client):
        response = _post(client, "issues", {"action": "opened"})
        assert response.status_code == 200

    def test_non_object_payload(self, client):
        response = _post(client, "pull_request", [])

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON payload", "isKnownError": True}


class TestPullRequestEvents:

    def test_opened_triggers_workflow(self, client, session, seeded, pull_request_payload, github_client):
        with patch("devfleet.webhook._run_workflow_bg", new_callable=AsyncMock) as run_bg:
            response = _post(client, "pull_request", pull_request_payload)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Workflow déclenché."
        run_bg.assert_called_once()
        _, event, pr_id = run_bg.call_args.args
        assert event.pr_number == 42
        assert pr_id == data["pull_request_id"]

        pr = session.get(PullRequest, pr_id)
        assert pr.title == "Add login endpoint"
        assert pr.approval_status == "pending"
        assert pr.review_count == 1
        github_client.fetch_pull_request_reviews.assert_called_once_with("acme", "api", 42)

    def test_no_active_agents(self, client, session, seeded, pull_request_payload):
        session.get(RepoAgent, "ra1").enabled = False
        session.commit()

        with patch("devfleet.webhook._run_workflow_bg", new_callable=AsyncMock) as run_bg:
            response = _post(client, "pull_request", pull_request_payload)

        assert response.json()["message"] == "Aucun agent actif."
        run_bg.assert_not_called()

    def test_closed_only_persists(self, client, session, seeded, pull_request_payload, github_client):
        pull_request_payload["action"] = "closed"
        pull_request_payload["pull_request"].update({"state": "closed", "merged": True})

        with patch("devfleet.webhook._run_workflow_bg", new_callable=AsyncMock) as run_bg:
            response = _post(client, "pull_request", pull_request_payload)

        pr_id = response.json()["pull_request_id"]
        assert session.get(PullRequest, pr_id).state == "merged"
        run_bg.assert_not_called()
        github_client.fetch_pull_request_reviews.assert_not_called()

    def test_unknown_repository(self, client, seeded, pull_request_payload):
        pull_request_payload["repository"]["id"] = 999

        with patch("devfleet.webhook._run_workflow_bg", new_callable=AsyncMock) as run_bg:
            response = _post(client, "pull_request", pull_request_payload)

        assert response.status_code == 200
        assert "pull_request_id" not in response.json()
        run_bg.assert_not_called()

    def test_missing_installation(self, client, seeded, pull_request_payload):
        del pull_request_payload["installation"]

        response = _post(client, "pull_request", pull_request_payload)

        assert response.status_code == 400


class TestInstallationEvents:

    def _payload(self, action, installation_id=777, account_id=9001, repositories=None):
        payload = {
            "action": action,
            "installation": {"id": installation_id, "account": {"id": account_id, "login": "acme"}},
        }
        if repositories is not None:
            payload["repositories"] = repositories
        return payload

    def test_suspend_then_unsuspend(self, client, session, seeded):
        response = _post(client, "installation", self._payload("suspend"))
        assert response.json()["handled"] is True

        session.expire_all()
        org = session.get(Organization, "org1")
        assert org.connection_status == "disconnected"
        assert org.disconnected_reason == "suspended"
        assert session.get(RepoAgent, "ra1").enabled is False

        _post(client, "installation", self._payload("unsuspend"))

        session.expire_all()
        assert session.get(Organization, "org1").connection_status == "connected"
        assert session.get(RepoAgent, "ra1").enabled is True

    def test_created_reconnects_by_account(self, client, session, seeded):
        _post(client, "installation", self._payload("deleted"))
        response = _post(client, "installation", self._payload("created", installation_id=888))

        assert response.json()["handled"] is True
        session.expire_all()
        assert session.get(Organization, "org1").installation_id == "888"

    def test_created_stores_granted_repositories(self, client, session, seeded):
        _post(client, "installation", self._payload("deleted"))
        repositories = [{"id": 601, "name": "new", "full_name": "acme/new", "private": True}]

        response = _post(
            client, "installation",
            self._payload("created", installation_id=888, repositories=repositories),
        )

        assert response.json()["handled"] is True
        assert response.json()["stored"] == 1
        session.expire_all()
        repo = session.query(Repository).filter_by(github_id="601").one()
        assert repo.owner_org_id == "org1"
        assert repo.full_name == "acme/new"

    def test_unknown_account_stores_nothing(self, client, session, seeded):
        repositories = [{"id": 602, "name": "x", "full_name": "other/x"}]

        response = _post(
            client, "installation",
            self._payload("created", installation_id=999, account_id=1234, repositories=repositories),
        )

        assert response.json() == {"message": "installation.created", "handled": False, "stored": 0}
        assert session.query(Repository).filter_by(github_id="602").count() == 0

    def test_other_action_ignored(self, client, seeded):
        response = _post(client, "installation", self._payload("new_permissions_accepted"))
        assert response.json()["handled"] is False

    def test_repositories_added(self, client, session, seeded):
        payload = {
            "action": "added",
            "installation": {"id": 777},
            "repositories_added": [{"id": 600, "name": "web", "full_name": "acme/web", "private": False}],
            "repositories_removed": [],
        }

        response = _post(client, "installation_repositories", payload)

        assert response.json()["stored"] == 1
        session.expire_all()
        assert session.query(Repository).filter_by(github_id="600").one().full_name == "acme/web"
