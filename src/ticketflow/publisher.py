"""
Remote publisher for ticketflow.

After a ticket executes successfully, its output is committed to a per-ticket
local git repository under ``repos_dir``, pushed to the remote git-hosting
service, and optionally turned into a review request (pull request) that may
be merged automatically.

Every method here is synchronous and blocking (git subprocesses and REST
calls); the pipeline runs ``Publisher.publish`` in a worker thread.
"""

import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ticketflow.config import Config
from ticketflow.logger import get_logger
from ticketflow.models import ExecutionResult, Ticket
from ticketflow.remote import RemoteServiceClient, RemoteServiceError
from ticketflow.retry import retry_with_backoff

logger = get_logger(__name__)

WORK_LOG_FILE = "WORK_LOG.md"
ROOT_COMMIT_MESSAGE = "Initial commit"
REMOTE_NAME = "origin"


class PublishError(Exception):
    """Base exception for publishing failures."""

    pass


class GitCommandError(PublishError):
    """Raised when a git command exits non-zero."""

    pass


@dataclass
class PublishOutcome:
    """What a publish run actually did."""

    repo_path: Path
    branch: str
    committed: bool = False
    pushed: bool = False
    pr_number: int | None = None
    merged: bool = False


def render_template(template: str, **values: str) -> str:
    """Substitute ``{name}`` placeholders, leaving any other braces untouched."""
    for key, value in values.items():
        template = template.replace(f"{{{key}}}", value)
    return template


def authenticated_remote_url(clone_url: str, token: str) -> str:
    """Inject an access token into an HTTP(S) clone URL.

    Examples:
        http://host:3000/org/task-7.git -> http://TOKEN@host:3000/org/task-7.git
    """
    return clone_url.replace("://", f"://{token}@", 1)


def format_work_log(ticket: Ticket, result: ExecutionResult, timestamp: datetime) -> str:
    """Render the WORK_LOG.md document committed alongside the executor's output."""
    if ticket.acceptance_criteria:
        criteria = "\n".join(
            f"{index}. {criterion}"
            for index, criterion in enumerate(ticket.acceptance_criteria, start=1)
        )
    else:
        criteria = "N/A"

    return (
        f"# Task {ticket.ticket_id}: {ticket.title}\n\n"
        "## Processing Details\n"
        f"- **Model**: {result.model}\n"
        f"- **Processed**: {timestamp.isoformat()}\n"
        f"- **Status**: {'Success' if result.success else 'Failed'}\n\n"
        f"## Description\n{ticket.description or 'N/A'}\n\n"
        f"## Acceptance Criteria\n{criteria}\n\n"
        f"## Output\n```\n{result.stdout or 'No output'}\n```\n"
    )


def format_checklist(items: list[str]) -> str:
    if not items:
        return "N/A"
    return "\n".join(f"- [ ] {item}" for item in items)


class Publisher:
    """Commits ticket output locally and publishes it to the remote service."""

    def __init__(
        self,
        config: Config,
        client: RemoteServiceClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            config: Application configuration
            client: Remote service client. Built from config when a token is
                configured and none is given.
            sleep: Sleep function used for push backoff and the merge settle
                delay; injectable for tests
        """
        self.config = config
        self.repos_dir = Path(config.repos_dir)
        self.sleep = sleep
        if client is None and config.gitea_token:
            client = RemoteServiceClient(config.gitea_url, config.gitea_token, config.gitea_org)
        self.client = client

    def repo_name(self, ticket_id: str) -> str:
        return render_template(self.config.repo_name_format, id=ticket_id)

    def branch_name(self, ticket_id: str) -> str:
        return render_template(self.config.branch_name_format, id=ticket_id)

    def repo_path(self, ticket_id: str) -> Path:
        """Local repository (and executor working directory) for a ticket."""
        return self.repos_dir / self.repo_name(ticket_id)

    def _run_git_command(
        self, args: list[str], cwd: Path, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        """
        Run a git command with proper error handling.

        Args:
            args: Git command arguments (without 'git' prefix)
            cwd: Working directory for the command
            check: Whether to raise exception on non-zero exit code

        Returns:
            CompletedProcess instance

        Raises:
            GitCommandError: If command fails and check=True
        """
        cmd = ["git"] + args
        logger.debug(f"Running git command: {' '.join(self._redact(cmd))} in {cwd}")

        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=check)
        except subprocess.CalledProcessError as e:
            stderr = self._redact_text(e.stderr.strip() if e.stderr else "")
            raise GitCommandError(f"git {args[0]} failed in {cwd}: {stderr}") from e
        except FileNotFoundError as e:
            raise GitCommandError("git executable not found") from e

        if result.stdout:
            logger.debug(f"Git stdout: {self._redact_text(result.stdout.strip())}")
        if result.stderr:
            logger.debug(f"Git stderr: {self._redact_text(result.stderr.strip())}")
        return result

    def _redact_text(self, text: str) -> str:
        token = self.config.gitea_token
        return text.replace(token, "***") if token else text

    def _redact(self, cmd: list[str]) -> list[str]:
        return [self._redact_text(part) for part in cmd]

    def prepare_repo(self, ticket_id: str) -> Path:
        """Ensure the ticket's local repository exists with an initial commit.

        Safe to call repeatedly. The pipeline calls this before execution so
        the executor works inside the repository.
        """
        repo_path = self.repo_path(ticket_id)
        repo_path.mkdir(parents=True, exist_ok=True)

        if not (repo_path / ".git").exists():
            self._run_git_command(["init", "-b", self.config.default_branch], cwd=repo_path)
            logger.info(f"Initialized git repository at {repo_path}")

        self._run_git_command(["config", "user.name", self.config.git_user_name], cwd=repo_path)
        self._run_git_command(["config", "user.email", self.config.git_user_email], cwd=repo_path)

        has_commits = self._run_git_command(
            ["rev-parse", "--verify", "--quiet", "HEAD"], cwd=repo_path, check=False
        )
        if has_commits.returncode != 0:
            # Root commit so the default branch exists for review requests
            self._run_git_command(
                ["commit", "--allow-empty", "-m", ROOT_COMMIT_MESSAGE], cwd=repo_path
            )
        return repo_path

    def commit_work(self, ticket: Ticket, result: ExecutionResult) -> tuple[Path, str, bool]:
        """Write the work log and commit everything on the ticket branch.

        Returns:
            Tuple of (repo path, branch name, whether a commit was created)
        """
        repo_path = self.prepare_repo(ticket.ticket_id)
        branch = self.branch_name(ticket.ticket_id)

        self._run_git_command(["checkout", "-B", branch], cwd=repo_path)

        work_log = format_work_log(ticket, result, datetime.now(UTC))
        (repo_path / WORK_LOG_FILE).write_text(work_log, encoding="utf-8")

        self._run_git_command(["add", "-A"], cwd=repo_path)
        status = self._run_git_command(["status", "--porcelain"], cwd=repo_path)
        if not status.stdout.strip():
            logger.info(f"Nothing to commit for task-{ticket.ticket_id}")
            return repo_path, branch, False

        message = render_template(
            self.config.commit_message_format,
            id=ticket.ticket_id,
            title=ticket.title or "Untitled Task",
        )
        self._run_git_command(["commit", "-m", message], cwd=repo_path)
        logger.info(f"Created commit: {message}")
        return repo_path, branch, True

    def ensure_remote(self, repo_path: Path, repo_name: str) -> None:
        """Add the origin remote, with the token in its URL, if it is missing."""
        assert self.client is not None, "remote client required"
        assert self.config.gitea_token is not None, "token required"

        existing = self._run_git_command(
            ["remote", "get-url", REMOTE_NAME], cwd=repo_path, check=False
        )
        if existing.returncode == 0:
            return

        clone_url = self.client.clone_url(repo_name)
        self._run_git_command(
            [
                "remote",
                "add",
                REMOTE_NAME,
                authenticated_remote_url(clone_url, self.config.gitea_token),
            ],
            cwd=repo_path,
        )
        logger.info(f"Added remote: {clone_url}")

    def push(self, repo_path: Path, branch: str) -> None:
        """Push the default branch and the ticket branch, retrying with backoff.

        Raises:
            RetryError: If every attempt failed
        """
        branches = [self.config.default_branch]
        if branch != self.config.default_branch:
            branches.append(branch)

        retry_with_backoff(
            lambda: self._run_git_command(
                ["push", "--set-upstream", REMOTE_NAME, *branches], cwd=repo_path
            ),
            max_attempts=self.config.push_retries,
            base_delay=self.config.push_retry_delay,
            sleep=self.sleep,
            description=f"Push of {repo_path.name}",
        )
        logger.info(f"Pushed {', '.join(branches)} to {REMOTE_NAME}")

    def open_review_request(
        self, ticket: Ticket, result: ExecutionResult, repo_name: str, branch: str
    ) -> int | None:
        """Open a pull request for the ticket branch. API errors are logged."""
        assert self.client is not None, "remote client required"

        title = render_template(
            self.config.pr_title_format,
            id=ticket.ticket_id,
            title=ticket.title or "Untitled Task",
        )
        body = render_template(
            self.config.pr_body_format,
            id=ticket.ticket_id,
            title=ticket.title,
            description=ticket.description or "N/A",
            acceptanceCriteria=format_checklist(ticket.acceptance_criteria),
            model=result.model,
        )
        try:
            return self.client.create_pull_request(
                repo_name, head=branch, base=self.config.default_branch, title=title, body=body
            )
        except RemoteServiceError as e:
            logger.error(f"Failed to create pull request for task-{ticket.ticket_id}: {e}")
            return None

    def merge_review_request(self, ticket: Ticket, repo_name: str, number: int) -> bool:
        """Merge a pull request after the settle delay. Failure is logged, not retried."""
        assert self.client is not None, "remote client required"

        self.sleep(self.config.merge_settle_delay)
        try:
            self.client.merge_pull_request(
                repo_name, number, f"Auto-merge task-{ticket.ticket_id}"
            )
        except RemoteServiceError as e:
            logger.error(f"Failed to merge pull request #{number} for task-{ticket.ticket_id}: {e}")
            return False
        return True

    def publish(self, ticket: Ticket, result: ExecutionResult) -> PublishOutcome:
        """Commit the ticket's output and publish it to the remote service.

        Args:
            ticket: The ticket that was executed
            result: Its (successful) execution result

        Returns:
            PublishOutcome describing what was done

        Raises:
            GitCommandError: If a local git step fails
            RemoteServiceError: If the remote repository cannot be ensured
            RetryError: If pushing fails on every attempt
        """
        logger.info(f"Setting up git repository for task-{ticket.ticket_id}")
        repo_path, branch, committed = self.commit_work(ticket, result)
        outcome = PublishOutcome(repo_path=repo_path, branch=branch, committed=committed)

        if not self.config.gitea_token or self.client is None:
            logger.warning("GITEA_TOKEN not set, skipping push to remote")
            return outcome

        repo_name = self.repo_name(ticket.ticket_id)
        self.client.ensure_repo(repo_name, ticket.title)
        self.ensure_remote(repo_path, repo_name)
        self.push(repo_path, branch)
        outcome.pushed = True

        if not self.config.create_pr:
            return outcome

        outcome.pr_number = self.open_review_request(ticket, result, repo_name, branch)
        if outcome.pr_number is not None and self.config.auto_merge_pr and result.success:
            outcome.merged = self.merge_review_request(ticket, repo_name, outcome.pr_number)

        return outcome
