"""End-to-end tests for the per-ticket pipeline."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ticketflow.lifecycle import TicketLifecycle, read_error_record
from ticketflow.logger import SYSTEM_CONTEXT, get_ticket_context
from ticketflow.models import Stage
from ticketflow.pipeline import TicketProcessor
from ticketflow.publisher import GitCommandError, Publisher, PublishError
from ticketflow.webhook import WebhookReconciler

WRITE_FILE = (
    "import pathlib\n"
    "pathlib.Path('login.html').write_text('<form></form>')\n"
    "print('wrote login.html')\n"
)


def git(*args, cwd) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture
def setup(config_factory, python_executor, sample_ticket_text, git_identity):
    """Build a processor with one ticket waiting in intake."""

    def build(code: str = WRITE_FILE, publisher=None, **overrides):
        config = config_factory(executor_command=python_executor(code), **overrides)
        lifecycle = TicketLifecycle(config)
        lifecycle.ensure_stage_dirs()
        path = lifecycle.stage_dir(Stage.INTAKE) / "task-7.md"
        path.write_text(sample_ticket_text)
        processor = TicketProcessor(config, lifecycle, publisher or Publisher(config))
        return config, lifecycle, processor, path

    return build


@pytest.mark.integration
class TestTicketProcessor:
    """Tests for TicketProcessor.process."""

    @pytest.mark.asyncio
    async def test_success_moves_to_review_and_commits(self, setup, caplog):
        config, lifecycle, processor, path = setup()

        await processor.process("task-7.md", path)

        assert lifecycle.locate("task-7.md") is Stage.REVIEW
        repo = Path(config.repos_dir) / "task-7"
        assert git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo) == "task-7"
        assert git("log", "-1", "--format=%s", cwd=repo) == "[Task 7] Add login page"
        work_log = (repo / "WORK_LOG.md").read_text()
        assert "# Task 7: Add login page" in work_log
        assert "wrote login.html" in work_log
        assert (repo / "login.html").exists()
        assert "GITEA_TOKEN not set" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_moves_to_failed_with_error_record(self, setup):
        _, lifecycle, processor, path = setup("import sys\nsys.stderr.write('nope')\nsys.exit(2)\n")

        await processor.process("task-7.md", path)

        assert lifecycle.locate("task-7.md") is Stage.FAILED
        failed_path = lifecycle.stage_dir(Stage.FAILED) / "task-7.md"
        record = read_error_record(failed_path)
        assert record is not None
        assert record["error"] == "Executor exited with code 2"
        assert record["exit_code"] == 2
        assert record["exit_kind"] == "exited"
        assert record["stderr"] == "nope"

    @pytest.mark.asyncio
    async def test_timeout_moves_to_failed(self, setup):
        _, lifecycle, processor, path = setup(
            "import time\ntime.sleep(30)\n", execution_timeout=0.3, kill_grace=0.5
        )

        await processor.process("task-7.md", path)

        record = read_error_record(lifecycle.stage_dir(Stage.FAILED) / "task-7.md")
        assert record["exit_kind"] == "timeout"
        assert record["exit_code"] is None

    @pytest.mark.asyncio
    async def test_merged_review_request_completes_ticket(self, setup):
        config, lifecycle, processor, path = setup(auto_merge_pr=True)
        await processor.process("task-7.md", path)
        assert lifecycle.locate("task-7.md") is Stage.REVIEW

        reconciler = WebhookReconciler(config, lifecycle)
        payload = {
            "action": "closed",
            "pull_request": {"number": 1, "title": "[Task 7] Add login page", "merged": True},
        }

        assert await reconciler.handle_event("pull_request", payload) is True
        assert lifecycle.locate("task-7.md") is Stage.COMPLETED

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, setup, caplog):
        _, lifecycle, processor, path = setup()
        path.unlink()

        await processor.process("task-7.md", path)

        assert lifecycle.locate("task-7.md") is None
        assert "Could not claim task-7.md" in caplog.text

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_review(self, setup, tmp_path, caplog):
        publisher = MagicMock(spec=Publisher)
        publisher.prepare_repo.return_value = tmp_path
        publisher.publish.side_effect = PublishError("push rejected")
        _, lifecycle, processor, path = setup(publisher=publisher)

        await processor.process("task-7.md", path)

        assert lifecycle.locate("task-7.md") is Stage.REVIEW
        assert "Failed to publish task-7: push rejected" in caplog.text

    @pytest.mark.asyncio
    async def test_repo_setup_error_fails_ticket(self, setup):
        publisher = MagicMock(spec=Publisher)
        publisher.prepare_repo.side_effect = GitCommandError("git init failed in repos/task-7")
        _, lifecycle, processor, path = setup(publisher=publisher)

        await processor.process("task-7.md", path)

        assert lifecycle.locate("task-7.md") is Stage.FAILED
        record = read_error_record(lifecycle.stage_dir(Stage.FAILED) / "task-7.md")
        assert record["error"] == "git init failed in repos/task-7"
        assert "exit_code" not in record
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_ticket_context_is_cleared(self, setup):
        _, _, processor, path = setup()

        await processor.process("task-7.md", path)

        assert get_ticket_context() == SYSTEM_CONTEXT
