"""Ticket, stage and execution result types.

A ticket is a single markdown document whose filename embeds a numeric ID
(e.g. ``task-7.md``). Its YAML header carries the metadata used to build the
execution prompt and the review request.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ticketflow.logger import get_logger

logger = get_logger(__name__)


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Stage(Enum):
    """Pipeline stages; each one is a folder on disk."""

    INTAKE = "intake"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    FAILED = "failed"
    COMPLETED = "completed"


class ExitKind(Enum):
    """How an execution attempt ended."""

    EXITED = "exited"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"


def extract_ticket_id(filename: str, pattern: str) -> str | None:
    """Extract the numeric ticket ID from a filename.

    Args:
        filename: Ticket filename, e.g. "task-7.md"
        pattern: Regex whose first group captures the ID

    Returns:
        The ID as a string (e.g. "7"), or None if the filename doesn't match
    """
    match = re.search(pattern, filename)
    return match.group(1) if match else None


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    text = str(value).strip()
    return [text] if text else []


def _first(header: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if header.get(key) is not None:
            return header[key]
    return None


@dataclass
class Ticket:
    """A unit of work read from a ticket document.

    Attributes:
        ticket_id: Numeric ID from the filename, as a string
        filename: Document filename (stable across stages)
        title: Short title
        description: Free-text description
        priority: low/medium/high, or None when the header names none
        labels: Ordered label strings
        model: Per-ticket model override, or None to use the configured default
        acceptance_criteria: Ordered acceptance criteria
        estimated_hours: Optional effort estimate
        dependencies: IDs of tickets this one depends on
        body: Document body below the header
    """

    ticket_id: str
    filename: str
    title: str = ""
    description: str = ""
    priority: Priority | None = None
    labels: list[str] = field(default_factory=list)
    model: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_hours: float | None = None
    dependencies: list[str] = field(default_factory=list)
    body: str = ""

    @classmethod
    def from_document(
        cls, ticket_id: str, filename: str, header: dict[str, Any], body: str
    ) -> "Ticket":
        """Build a Ticket from a parsed header and body.

        Accepts both camelCase and snake_case spellings for multi-word keys.
        A missing or blank priority stays None. Unknown priorities fall back
        to medium with a warning.
        """
        raw_priority = str(header.get("priority") or "").strip().lower()
        priority: Priority | None = None
        if raw_priority:
            try:
                priority = Priority(raw_priority)
            except ValueError:
                logger.warning(f"Unknown priority '{raw_priority}' in {filename}, using medium")
                priority = Priority.MEDIUM

        estimate = _first(header, "estimatedHours", "estimated_hours", "estimate")
        estimated_hours: float | None = None
        if estimate is not None and str(estimate).strip():
            try:
                estimated_hours = float(estimate)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric estimate '{estimate}' in {filename}")

        model = header.get("model")

        return cls(
            ticket_id=ticket_id,
            filename=filename,
            title=str(header.get("title") or ""),
            description=str(header.get("description") or ""),
            priority=priority,
            labels=_as_str_list(header.get("labels")),
            model=str(model) if model else None,
            acceptance_criteria=_as_str_list(
                _first(header, "acceptanceCriteria", "acceptance_criteria")
            ),
            estimated_hours=estimated_hours,
            dependencies=_as_str_list(header.get("dependencies")),
            body=body,
        )


@dataclass
class ExecutionResult:
    """Outcome of one run of the external task-execution process.

    Consumed immediately by the lifecycle engine and, on success, by the
    publisher; never persisted on its own.
    """

    success: bool
    exit_kind: ExitKind
    ticket_id: str
    model: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    duration: float = 0.0
