"""
Ticket lifecycle engine for ticketflow.

Tickets move through five stage folders. The folder that currently holds a
ticket's file *is* its stage, so every transition is a single atomic rename
of that file from one folder to another. A rename that fails (the source was
already moved by a concurrent writer, or the destination is occupied) abandons
the transition; it is logged and never retried.
"""

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ticketflow.config import Config
from ticketflow.frontmatter import parse_ticket_document
from ticketflow.logger import get_logger
from ticketflow.models import ExecutionResult, Stage, Ticket, extract_ticket_id

logger = get_logger(__name__)

TICKET_SUFFIX = ".md"
ERROR_RECORD_SUFFIX = ".error.log"

# Tail of captured stdout kept in error records
STDOUT_TAIL_CHARS = 4000

ALLOWED_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.INTAKE: frozenset({Stage.IN_PROGRESS}),
    Stage.IN_PROGRESS: frozenset({Stage.REVIEW, Stage.FAILED}),
    Stage.REVIEW: frozenset({Stage.COMPLETED}),
    Stage.FAILED: frozenset(),
    Stage.COMPLETED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a transition not allowed by the state machine is requested."""

    pass


def error_record_path(ticket_path: Path) -> Path:
    """Return the sibling error record path for a ticket file.

    Examples:
        failed/task-7.md -> failed/task-7.error.log
    """
    return ticket_path.with_name(f"{ticket_path.stem}{ERROR_RECORD_SUFFIX}")


def is_ticket_file(path: Path) -> bool:
    """Ticket documents are non-hidden markdown files."""
    return path.suffix == TICKET_SUFFIX and not path.name.startswith(".")


class TicketLifecycle:
    """
    Owns the five-stage state machine.

    The methods here are synchronous filesystem operations. The pipeline and
    the webhook reconciler call them through ``asyncio.to_thread`` so they
    never block the event loop.
    """

    def __init__(self, config: Config):
        self.config = config
        self._stage_dirs: dict[Stage, Path] = {
            Stage.INTAKE: Path(config.intake_dir),
            Stage.IN_PROGRESS: Path(config.in_progress_dir),
            Stage.REVIEW: Path(config.review_dir),
            Stage.FAILED: Path(config.failed_dir),
            Stage.COMPLETED: Path(config.completed_dir),
        }

    def stage_dir(self, stage: Stage) -> Path:
        return self._stage_dirs[stage]

    def ensure_stage_dirs(self) -> None:
        """Create every stage folder if missing."""
        for stage, path in self._stage_dirs.items():
            path.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Stage folder for {stage.value}: {path.resolve()}")

    def list_stage(self, stage: Stage) -> list[Path]:
        """List ticket documents currently in a stage, sorted by name."""
        directory = self._stage_dirs[stage]
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.is_file() and is_ticket_file(p))

    def locate(self, filename: str) -> Stage | None:
        """Return the stage whose folder currently holds the file, if any."""
        for stage, directory in self._stage_dirs.items():
            if (directory / filename).is_file():
                return stage
        return None

    def find_by_ticket_id(self, stage: Stage, ticket_id: str) -> Path | None:
        """Find the ticket file in a stage whose filename carries the given ID."""
        for path in self.list_stage(stage):
            if extract_ticket_id(path.name, self.config.task_id_pattern) == ticket_id:
                return path
        return None

    def read_ticket(self, path: Path) -> Ticket:
        """Read and parse a ticket document.

        Raises:
            ValueError: If the filename carries no ticket ID
            OSError: If the file cannot be read
        """
        ticket_id = extract_ticket_id(path.name, self.config.task_id_pattern)
        if ticket_id is None:
            raise ValueError(
                f"Ticket filename '{path.name}' does not match {self.config.task_id_pattern!r}"
            )
        header, body = parse_ticket_document(path.read_text(encoding="utf-8"))
        return Ticket.from_document(ticket_id, path.name, header, body)

    def transition(self, filename: str, source: Stage, target: Stage) -> Path | None:
        """Move a ticket file from one stage folder to another.

        Args:
            filename: Ticket filename
            source: Stage the ticket is expected to be in
            target: Stage to move it to

        Returns:
            The new path of the ticket, or None if the rename failed

        Raises:
            InvalidTransitionError: If source -> target is not a legal transition
        """
        if target not in ALLOWED_TRANSITIONS[source]:
            raise InvalidTransitionError(
                f"Transition {source.value} -> {target.value} is not allowed"
            )

        src = self._stage_dirs[source] / filename
        dst = self._stage_dirs[target] / filename

        # os.rename silently replaces an existing file on POSIX
        if dst.exists():
            logger.error(
                f"Cannot move {filename} to {target.value}: destination already exists"
            )
            return None

        try:
            os.rename(src, dst)
        except OSError as e:
            logger.error(
                f"Failed to move {filename} from {source.value} to {target.value}: {e}"
            )
            return None

        logger.info(f"Moved {filename} from {source.value} to {target.value}")
        return dst

    def begin(self, filename: str) -> Path | None:
        """Intake -> InProgress, on dispatch admission."""
        return self.transition(filename, Stage.INTAKE, Stage.IN_PROGRESS)

    def mark_review(self, filename: str) -> Path | None:
        """InProgress -> Review, on execution success."""
        return self.transition(filename, Stage.IN_PROGRESS, Stage.REVIEW)

    def mark_failed(
        self,
        filename: str,
        error: str,
        result: ExecutionResult | None = None,
    ) -> Path | None:
        """InProgress -> Failed, then write the sibling error record.

        The record is written only after the move succeeded. Failing to write
        it is logged and does not undo the move.

        Args:
            filename: Ticket filename
            error: Human-readable error message
            result: Execution result carrying diagnostics, if execution ran

        Returns:
            The new path of the ticket, or None if the rename failed
        """
        failed_path = self.transition(filename, Stage.IN_PROGRESS, Stage.FAILED)
        if failed_path is None:
            return None

        record: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "filename": filename,
            "error": error,
        }
        if result is not None:
            record.update(
                {
                    "exit_kind": result.exit_kind.value,
                    "exit_code": result.exit_code,
                    "model": result.model,
                    "stderr": result.stderr,
                    "stdout_tail": result.stdout[-STDOUT_TAIL_CHARS:],
                }
            )

        record_path = error_record_path(failed_path)
        try:
            record_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
            logger.debug(f"Wrote error record {record_path}")
        except OSError as e:
            logger.error(f"Failed to write error record for {filename}: {e}")

        return failed_path

    def complete(self, ticket_id: str) -> Path | None:
        """Review -> Completed for the ticket with the given ID.

        Returns:
            The new path, or None if no Review file matches or the rename failed
        """
        path = self.find_by_ticket_id(Stage.REVIEW, ticket_id)
        if path is None:
            logger.info(f"No ticket with ID {ticket_id} in review, nothing to complete (no-op)")
            return None
        return self.transition(path.name, Stage.REVIEW, Stage.COMPLETED)


def read_error_record(ticket_path: Path) -> dict[str, Any] | None:
    """Load the error record next to a failed ticket, if one exists and parses."""
    record_path = error_record_path(ticket_path)
    try:
        data = json.loads(record_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None
