"""Unit tests for the remote service client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from ticketflow.remote import RemoteServiceClient, RemoteServiceError


def make_response(status_code: int, payload=None, text: str = "") -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    response.reason = "reason"
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def session():
    session = requests.Session()
    with patch.object(session, "request") as mock_request:
        session.mock_request = mock_request
        yield session


@pytest.fixture
def client(session):
    return RemoteServiceClient("http://gitea:3000/", "tok", "ticket-processor", session=session)


@pytest.mark.unit
class TestRemoteServiceClient:
    """Tests for RemoteServiceClient."""

    def test_sets_token_header(self, client, session):
        assert session.headers["Authorization"] == "token tok"
        assert client.base_url == "http://gitea:3000"

    def test_repo_exists_true(self, client, session):
        session.mock_request.return_value = make_response(200, {"name": "task-7"})

        assert client.repo_exists("task-7") is True
        method, url = session.mock_request.call_args.args
        assert method == "GET"
        assert url == "http://gitea:3000/api/v1/repos/ticket-processor/task-7"
        assert session.mock_request.call_args.kwargs["timeout"] > 0

    def test_repo_exists_false_on_404(self, client, session):
        session.mock_request.return_value = make_response(404, text="not found")

        assert client.repo_exists("task-7") is False

    def test_repo_exists_propagates_other_errors(self, client, session):
        session.mock_request.return_value = make_response(500, text="boom")

        with pytest.raises(RemoteServiceError) as exc_info:
            client.repo_exists("task-7")

        assert exc_info.value.status_code == 500

    def test_connection_error_is_wrapped(self, client, session):
        session.mock_request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(RemoteServiceError, match="refused") as exc_info:
            client.repo_exists("task-7")

        assert exc_info.value.status_code is None

    def test_ensure_repo_creates_when_missing(self, client, session):
        session.mock_request.side_effect = [
            make_response(404),
            make_response(201, {"name": "task-7"}),
        ]

        assert client.ensure_repo("task-7", "Add login page") is True

        method, url = session.mock_request.call_args.args
        assert method == "POST"
        assert url == "http://gitea:3000/api/v1/orgs/ticket-processor/repos"
        assert session.mock_request.call_args.kwargs["json"] == {
            "name": "task-7",
            "description": "Add login page",
            "private": False,
            "auto_init": False,
        }

    def test_ensure_repo_skips_existing(self, client, session):
        session.mock_request.return_value = make_response(200)

        assert client.ensure_repo("task-7") is False
        assert session.mock_request.call_count == 1

    def test_create_pull_request(self, client, session):
        session.mock_request.return_value = make_response(201, {"number": 12})

        number = client.create_pull_request(
            "task-7", head="task-7", base="main", title="[Task 7] X", body="B"
        )

        assert number == 12
        method, url = session.mock_request.call_args.args
        assert (method, url) == ("POST", "http://gitea:3000/api/v1/repos/ticket-processor/task-7/pulls")
        assert session.mock_request.call_args.kwargs["json"] == {
            "title": "[Task 7] X",
            "body": "B",
            "head": "task-7",
            "base": "main",
        }

    def test_merge_pull_request(self, client, session):
        session.mock_request.return_value = make_response(200)

        client.merge_pull_request("task-7", 12, "Auto-merge task-7")

        method, url = session.mock_request.call_args.args
        assert url.endswith("/repos/ticket-processor/task-7/pulls/12/merge")
        assert session.mock_request.call_args.kwargs["json"]["Do"] == "merge"

    def test_merge_failure_raises(self, client, session):
        session.mock_request.return_value = make_response(405, text="not mergeable")

        with pytest.raises(RemoteServiceError, match="405"):
            client.merge_pull_request("task-7", 12, "m")

    def test_clone_url(self, client):
        assert client.clone_url("task-7") == "http://gitea:3000/ticket-processor/task-7.git"
