"""Configuration module for ticketflow.

This module provides configuration management for the application,
loading settings from .ticketflow/config file (KEY=value format) with
fallback to environment variables.
"""

import logging
import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Default paths relative to the working directory
TICKETFLOW_DIR = ".ticketflow"
CONFIG_FILE = "config"

DEFAULT_MODEL = "ollama/qwen2.5-coder:7b"

DEFAULT_PR_BODY_FORMAT = (
    "## Description\n{description}\n\n"
    "## Acceptance Criteria\n{acceptanceCriteria}\n\n"
    "---\nProcessed with model: `{model}`"
)


@dataclass(frozen=True)
class Config:
    """Application configuration.

    Built once at startup and handed to each component; never mutated.

    Attributes:
        intake_dir: Stage folder watched for new tickets
        in_progress_dir: Stage folder holding tickets under execution
        review_dir: Stage folder for tickets that executed successfully
        failed_dir: Stage folder for failed tickets and their error records
        completed_dir: Stage folder for tickets whose review request was merged
        repos_dir: Directory holding one local git repository per ticket
        task_id_pattern: Regex with one group capturing the numeric ticket ID
        concurrency: Maximum number of tickets executing at once
        move_delay: Seconds to wait before claiming a newly observed ticket
        poll_interval: Seconds the intake observer blocks waiting for file events
        watch_stability: Seconds a file must stay unchanged before it is submitted
        executor_command: Command (argv) for the external task-execution process
        default_model: Model used when a ticket does not name one
        available_models: Known model names; others are allowed with a warning
        model_backend_url: Endpoint exported to the executor as OLLAMA_API_BASE
        execution_timeout: Seconds before an execution is terminated
        kill_grace: Seconds between SIGTERM and SIGKILL after a timeout
    """

    intake_dir: str = "tickets/todo"
    in_progress_dir: str = "tickets/doing"
    review_dir: str = "tickets/review"
    failed_dir: str = "tickets/failed"
    completed_dir: str = "tickets/completed"
    repos_dir: str = "repos"
    task_id_pattern: str = r"task-(\d+)"

    concurrency: int = 2
    move_delay: float = 1.0
    poll_interval: float = 2.0
    watch_stability: float = 1.0

    executor_command: tuple[str, ...] = ("npx", "kodu")
    default_model: str = DEFAULT_MODEL
    available_models: tuple[str, ...] = (DEFAULT_MODEL,)
    model_backend_url: str = "http://host.containers.internal:11434"
    execution_timeout: float = 1800.0
    kill_grace: float = 5.0

    gitea_url: str = "http://localhost:3000"
    gitea_token: str | None = None
    gitea_org: str = "ticket-processor"
    git_user_name: str = "Ticket Processor"
    git_user_email: str = "processor@localhost"
    default_branch: str = "main"
    repo_name_format: str = "task-{id}"
    branch_name_format: str = "task-{id}"
    commit_message_format: str = "[Task {id}] {title}"
    pr_title_format: str = "[Task {id}] {title}"
    pr_body_format: str = DEFAULT_PR_BODY_FORMAT
    create_pr: bool = True
    push_retries: int = 3
    push_retry_delay: float = 2.0
    auto_merge_pr: bool = False
    merge_settle_delay: float = 2.0

    webhook_enabled: bool = True
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 3001
    webhook_path: str = "/webhook/gitea"
    webhook_secret: str | None = None

    shutdown_timeout: float = 30.0

    log_file: str = ".ticketflow/logs/ticketflow.log"
    log_size: int = 10 * 1024 * 1024  # 10MB default
    log_backups: int = 5
    otel_endpoint: str = ""
    otel_service_name: str = "ticketflow"


def parse_config_file(config_path: Path) -> dict[str, str]:
    """Parse a KEY=value config file.

    Args:
        config_path: Path to the config file

    Returns:
        Dictionary of key-value pairs
    """
    config = {}
    with open(config_path) as f:
        for line in f:
            line = line.strip()
            # Skip empty lines and comments
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                # Remove surrounding quotes if present
                if (value.startswith('"') and value.endswith('"')) or (
                    value.startswith("'") and value.endswith("'")
                ):
                    value = value[1:-1]
                config[key] = value
    return config


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _unescape(value: str) -> str:
    """Turn literal \\n sequences from single-line config values into newlines."""
    return value.replace("\\n", "\n")


def build_config(data: Mapping[str, str], source: str = "configuration") -> Config:
    """Build a Config from a mapping of KEY=value strings.

    Args:
        data: Raw settings (config file contents or os.environ)
        source: Description of where the settings came from, for error messages

    Returns:
        Config: A validated Config instance

    Raises:
        ValueError: If any value is malformed, listing every offending key
    """
    invalid: list[str] = []
    defaults = Config()

    def get_str(key: str, default: str) -> str:
        value = data.get(key)
        return value if value else default

    def get_optional(key: str) -> str | None:
        value = data.get(key)
        return value if value else None

    def get_int(key: str, default: int, minimum: int = 0) -> int:
        raw = data.get(key)
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            invalid.append(f"{key}={raw!r}")
            return default
        if value < minimum:
            invalid.append(f"{key}={raw!r} (must be >= {minimum})")
            return default
        return value

    def get_float(key: str, default: float) -> float:
        raw = data.get(key)
        if not raw:
            return default
        try:
            value = float(raw)
        except ValueError:
            invalid.append(f"{key}={raw!r}")
            return default
        if value < 0:
            invalid.append(f"{key}={raw!r} (must be >= 0)")
            return default
        return value

    def get_bool(key: str, default: bool) -> bool:
        raw = data.get(key)
        if not raw:
            return default
        return _parse_bool(raw)

    task_id_pattern = get_str("TASK_ID_PATTERN", defaults.task_id_pattern)
    try:
        if re.compile(task_id_pattern).groups < 1:
            invalid.append(f"TASK_ID_PATTERN={task_id_pattern!r} (needs a capture group)")
    except re.error as e:
        invalid.append(f"TASK_ID_PATTERN={task_id_pattern!r} ({e})")

    executor_raw = data.get("EXECUTOR_COMMAND")
    executor_command = tuple(shlex.split(executor_raw)) if executor_raw else defaults.executor_command
    if not executor_command:
        invalid.append("EXECUTOR_COMMAND (empty)")

    default_model = get_str("DEFAULT_MODEL", defaults.default_model)
    available_raw = data.get("AVAILABLE_MODELS")
    available_models = _parse_list(available_raw) if available_raw else (default_model,)

    # OLLAMA_HOST is honoured for compatibility with existing executor setups
    model_backend_url = get_str(
        "MODEL_BACKEND_URL", get_str("OLLAMA_HOST", defaults.model_backend_url)
    )

    webhook_path = get_str("WEBHOOK_PATH", defaults.webhook_path)
    if not webhook_path.startswith("/"):
        webhook_path = f"/{webhook_path}"

    config = Config(
        intake_dir=get_str("INTAKE_DIR", defaults.intake_dir),
        in_progress_dir=get_str("IN_PROGRESS_DIR", defaults.in_progress_dir),
        review_dir=get_str("REVIEW_DIR", defaults.review_dir),
        failed_dir=get_str("FAILED_DIR", defaults.failed_dir),
        completed_dir=get_str("COMPLETED_DIR", defaults.completed_dir),
        repos_dir=get_str("REPOS_DIR", defaults.repos_dir),
        task_id_pattern=task_id_pattern,
        concurrency=get_int("CONCURRENCY", defaults.concurrency, minimum=1),
        move_delay=get_float("MOVE_DELAY", defaults.move_delay),
        poll_interval=get_float("POLL_INTERVAL", defaults.poll_interval),
        watch_stability=get_float("WATCH_STABILITY", defaults.watch_stability),
        executor_command=executor_command,
        default_model=default_model,
        available_models=available_models,
        model_backend_url=model_backend_url,
        execution_timeout=get_float("EXECUTION_TIMEOUT", defaults.execution_timeout),
        kill_grace=get_float("KILL_GRACE", defaults.kill_grace),
        gitea_url=get_str("GITEA_URL", defaults.gitea_url).rstrip("/"),
        gitea_token=get_optional("GITEA_TOKEN"),
        gitea_org=get_str("GITEA_ORG", defaults.gitea_org),
        git_user_name=get_str("GIT_USER_NAME", defaults.git_user_name),
        git_user_email=get_str("GIT_USER_EMAIL", defaults.git_user_email),
        default_branch=get_str("DEFAULT_BRANCH", defaults.default_branch),
        repo_name_format=get_str("REPO_NAME_FORMAT", defaults.repo_name_format),
        branch_name_format=get_str("BRANCH_NAME_FORMAT", defaults.branch_name_format),
        commit_message_format=get_str("COMMIT_MESSAGE_FORMAT", defaults.commit_message_format),
        pr_title_format=get_str("PR_TITLE_FORMAT", defaults.pr_title_format),
        pr_body_format=_unescape(get_str("PR_BODY_FORMAT", defaults.pr_body_format)),
        create_pr=get_bool("CREATE_PR", defaults.create_pr),
        push_retries=get_int("PUSH_RETRIES", defaults.push_retries, minimum=1),
        push_retry_delay=get_float("PUSH_RETRY_DELAY", defaults.push_retry_delay),
        auto_merge_pr=get_bool("AUTO_MERGE_PR", defaults.auto_merge_pr),
        merge_settle_delay=get_float("MERGE_SETTLE_DELAY", defaults.merge_settle_delay),
        webhook_enabled=get_bool("WEBHOOK_ENABLED", defaults.webhook_enabled),
        webhook_host=get_str("WEBHOOK_HOST", defaults.webhook_host),
        webhook_port=get_int("WEBHOOK_PORT", defaults.webhook_port, minimum=1),
        webhook_path=webhook_path,
        webhook_secret=get_optional("GITEA_WEBHOOK_SECRET"),
        shutdown_timeout=get_float("SHUTDOWN_TIMEOUT", defaults.shutdown_timeout),
        log_file=get_str("LOG_FILE", defaults.log_file),
        log_size=get_int("LOG_SIZE", defaults.log_size),
        log_backups=get_int("LOG_BACKUPS", defaults.log_backups),
        otel_endpoint=get_str("OTEL_EXPORTER_OTLP_ENDPOINT", ""),
        otel_service_name=get_str("OTEL_SERVICE_NAME", defaults.otel_service_name),
    )

    if invalid:
        raise ValueError(f"Invalid values in {source}: {', '.join(invalid)}")

    if config.default_model not in config.available_models:
        logger.warning(
            f"DEFAULT_MODEL '{config.default_model}' is not listed in AVAILABLE_MODELS"
        )

    return config


def load_config_from_file(config_path: Path) -> Config:
    """Load configuration from a KEY=value config file.

    Args:
        config_path: Path to the config file

    Returns:
        Config: A Config instance populated from the config file

    Raises:
        ValueError: If any field is invalid
        FileNotFoundError: If the config file doesn't exist
    """
    data = parse_config_file(config_path)

    log_level = data.get("LOG_LEVEL")
    if log_level:
        os.environ["LOG_LEVEL"] = log_level  # Set for logger module

    return build_config(data, source=str(config_path))


def load_config_from_env() -> Config:
    """Load configuration from environment variables.

    Returns:
        Config: A Config instance populated from environment variables

    Raises:
        ValueError: If any environment variable holds an invalid value
    """
    return build_config(os.environ, source="environment variables")


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from config file or environment variables.

    Priority:
    1. Explicit config_path, if given
    2. Config file at .ticketflow/config
    3. Environment variables

    Returns:
        Config: A Config instance

    Raises:
        ValueError: If configuration is invalid
        FileNotFoundError: If an explicit config_path does not exist
    """
    if config_path is not None:
        return load_config_from_file(config_path)

    default_path = Path.cwd() / TICKETFLOW_DIR / CONFIG_FILE
    if default_path.exists():
        return load_config_from_file(default_path)
    return load_config_from_env()
