"""Tests for the webhook reconciler and HTTP endpoints."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from ticketflow.lifecycle import TicketLifecycle
from ticketflow.models import Stage
from ticketflow.queue import DispatchQueue
from ticketflow.webhook import (
    WebhookReconciler,
    create_app,
    extract_ticket_id_from_title,
    is_merge_event,
    verify_signature,
)

SECRET = "hook-secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def merged_payload(title: str = "[Task 7] Add login page", merged: bool = True) -> dict:
    return {
        "action": "closed",
        "number": 5,
        "pull_request": {"number": 5, "title": title, "merged": merged},
    }


async def _noop(filename, path):
    return None


@pytest.fixture
def lifecycle(config_factory):
    lifecycle = TicketLifecycle(config_factory())
    lifecycle.ensure_stage_dirs()
    return lifecycle


@pytest.fixture
def make_client(config_factory):
    def build(**overrides):
        config = config_factory(**overrides)
        lifecycle = TicketLifecycle(config)
        lifecycle.ensure_stage_dirs()
        queue = DispatchQueue(config.concurrency, _noop)
        app = create_app(config, WebhookReconciler(config, lifecycle), queue)
        return TestClient(app), lifecycle, queue

    return build


@pytest.mark.unit
class TestHelpers:
    """Tests for signature and title helpers."""

    def test_signature_match(self):
        body = b'{"a": 1}'

        assert verify_signature(SECRET, body, sign(body)) is True

    def test_signature_with_prefix(self):
        body = b'{"a": 1}'

        assert verify_signature(SECRET, body, "sha256=" + sign(body)) is True

    def test_signature_mismatch(self):
        body = b'{"a": 1}'

        assert verify_signature(SECRET, body, sign(body, "other")) is False
        assert verify_signature(SECRET, body + b" ", sign(body)) is False
        assert verify_signature(SECRET, body, "not-hex") is False

    @pytest.mark.parametrize(
        "title,expected",
        [
            ("[Task 7] Add login page", "7"),
            ("[task 42] lower case", "42"),
            ("Fix: [TASK 3]", "3"),
            ("Task 7 without brackets", None),
            ("", None),
        ],
    )
    def test_extract_ticket_id_from_title(self, title, expected):
        assert extract_ticket_id_from_title(title) == expected

    def test_is_merge_event(self):
        assert is_merge_event(merged_payload()) is True
        assert is_merge_event({"action": "merged", "pull_request": {}}) is True
        assert is_merge_event(merged_payload(merged=False)) is False


@pytest.mark.unit
class TestWebhookReconciler:
    """Tests for WebhookReconciler.handle_event."""

    @pytest.mark.asyncio
    async def test_merge_completes_review_ticket(self, config_factory, lifecycle):
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")
        reconciler = WebhookReconciler(config_factory(auto_merge_pr=True), lifecycle)

        assert await reconciler.handle_event("pull_request", merged_payload()) is True
        assert lifecycle.locate("task-7.md") is Stage.COMPLETED

    @pytest.mark.asyncio
    async def test_ignored_when_auto_merge_disabled(self, config_factory, lifecycle):
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")
        reconciler = WebhookReconciler(config_factory(auto_merge_pr=False), lifecycle)

        assert await reconciler.handle_event("pull_request", merged_payload()) is False
        assert lifecycle.locate("task-7.md") is Stage.REVIEW

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, config_factory, lifecycle):
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")
        reconciler = WebhookReconciler(config_factory(auto_merge_pr=True), lifecycle)

        assert await reconciler.handle_event("push", merged_payload()) is False
        assert await reconciler.handle_event("pull_request", merged_payload(merged=False)) is False
        assert lifecycle.locate("task-7.md") is Stage.REVIEW

    @pytest.mark.asyncio
    async def test_no_matching_review_ticket_is_noop(self, config_factory, lifecycle):
        (lifecycle.stage_dir(Stage.REVIEW) / "task-70.md").write_text("x")
        reconciler = WebhookReconciler(config_factory(auto_merge_pr=True), lifecycle)

        assert await reconciler.handle_event("pull_request", merged_payload()) is False
        assert lifecycle.locate("task-70.md") is Stage.REVIEW

    @pytest.mark.asyncio
    async def test_title_without_id_is_noop(self, config_factory, lifecycle):
        reconciler = WebhookReconciler(config_factory(auto_merge_pr=True), lifecycle)

        assert await reconciler.handle_event("pull_request", merged_payload("Update docs")) is False


@pytest.mark.unit
class TestWebhookEndpoint:
    """Tests for the FastAPI routes."""

    def test_valid_signature_completes_ticket(self, make_client):
        client, lifecycle, _ = make_client(webhook_secret=SECRET, auto_merge_pr=True)
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")
        body = json.dumps(merged_payload()).encode()

        response = client.post(
            "/webhook/gitea",
            content=body,
            headers={"X-Gitea-Signature": sign(body), "X-Gitea-Event": "pull_request"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert lifecycle.locate("task-7.md") is Stage.COMPLETED

    def test_invalid_signature_rejected_without_action(self, make_client):
        client, lifecycle, _ = make_client(webhook_secret=SECRET, auto_merge_pr=True)
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")
        body = json.dumps(merged_payload()).encode()

        response = client.post(
            "/webhook/gitea",
            content=body,
            headers={"X-Gitea-Signature": sign(body, "wrong"), "X-Gitea-Event": "pull_request"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert lifecycle.locate("task-7.md") is Stage.REVIEW

    def test_missing_signature_header_is_accepted(self, make_client):
        client, lifecycle, _ = make_client(webhook_secret=SECRET, auto_merge_pr=True)
        (lifecycle.stage_dir(Stage.REVIEW) / "task-7.md").write_text("x")

        response = client.post(
            "/webhook/gitea",
            json=merged_payload(),
            headers={"X-Gitea-Event": "pull_request"},
        )

        assert response.status_code == 200
        assert lifecycle.locate("task-7.md") is Stage.COMPLETED

    def test_no_secret_configured_skips_verification(self, make_client):
        client, _, _ = make_client(auto_merge_pr=True)

        response = client.post(
            "/webhook/gitea",
            json=merged_payload(),
            headers={"X-Gitea-Signature": "garbage", "X-Gitea-Event": "pull_request"},
        )

        assert response.status_code == 200

    def test_malformed_body_returns_500(self, make_client):
        client, _, _ = make_client()

        response = client.post(
            "/webhook/gitea",
            content=b"{not json",
            headers={"X-Gitea-Event": "pull_request"},
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_custom_webhook_path(self, make_client):
        client, _, _ = make_client(webhook_path="/hooks/custom")

        assert client.post("/hooks/custom", json={}).status_code == 200
        assert client.post("/webhook/gitea", json={}).status_code in (404, 405)

    def test_health(self, make_client):
        client, _, _ = make_client()

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "queueSize": 0,
            "queuePending": 0,
            "processing": [],
        }
