"""
Execution adapter for running a ticket through the external task-execution CLI.

This module builds the prompt for a ticket, spawns the executor process,
streams its output through to our own stdout/stderr while buffering it, and
classifies how the run ended. ``run_ticket`` never raises for execution
problems: every outcome, including spawn failures and timeouts, comes back as
an ``ExecutionResult``.
"""

import asyncio
import codecs
import contextlib
import os
import sys
import time
from typing import TextIO

from ticketflow.config import Config
from ticketflow.logger import get_logger, log_message
from ticketflow.models import ExecutionResult, ExitKind, Ticket

logger = get_logger(__name__)

READ_CHUNK_SIZE = 4096

INSTRUCTIONS = (
    "## Instructions\n"
    "Please implement this task according to the description and acceptance criteria above. "
    "Make sure all acceptance criteria are met. "
    "Write clean, well-documented, and tested code. "
    "Follow best practices and coding standards.\n"
)


def build_prompt(ticket: Ticket) -> str:
    """Build the executor prompt for a ticket.

    Sections appear in a fixed order and only when the corresponding field
    is non-empty: Description, Acceptance Criteria, Dependencies, Labels,
    Priority, Estimated Time, Additional Details. The Instructions section
    always closes the prompt.

    Args:
        ticket: Ticket to describe

    Returns:
        The prompt text
    """
    prompt = f"# {ticket.title or 'Task'}\n\n"

    if ticket.description:
        prompt += f"## Description\n{ticket.description}\n\n"

    if ticket.acceptance_criteria:
        prompt += "## Acceptance Criteria\n"
        for index, criterion in enumerate(ticket.acceptance_criteria, start=1):
            prompt += f"{index}. {criterion}\n"
        prompt += "\n"

    if ticket.dependencies:
        prompt += "## Dependencies\n"
        prompt += f"This task depends on: {', '.join(ticket.dependencies)}\n\n"

    if ticket.labels:
        prompt += f"## Labels\n{', '.join(ticket.labels)}\n\n"

    if ticket.priority is not None:
        prompt += f"## Priority\n{ticket.priority.value}\n\n"

    if ticket.estimated_hours:
        prompt += f"## Estimated Time\n{ticket.estimated_hours:g} hours\n\n"

    if ticket.body and ticket.body.strip():
        prompt += f"## Additional Details\n{ticket.body}\n\n"

    prompt += INSTRUCTIONS
    return prompt


def resolve_model(ticket: Ticket, config: Config) -> str:
    """Pick the ticket's model override, falling back to the configured default."""
    model = ticket.model or config.default_model
    if model not in config.available_models:
        logger.warning(
            f"Model '{model}' is not in AVAILABLE_MODELS {list(config.available_models)}, using it anyway"
        )
    return model


async def _pump(stream: asyncio.StreamReader, sink: TextIO, buffer: list[str]) -> None:
    """Copy a child stream to a sink in real time while buffering it."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        chunk = decoder.decode(data)
        if chunk:
            buffer.append(chunk)
            sink.write(chunk)
            sink.flush()
    tail = decoder.decode(b"", final=True)
    if tail:
        buffer.append(tail)
        sink.write(tail)
        sink.flush()


async def _stop_process(process: asyncio.subprocess.Process, grace: float) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives the grace period."""
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except TimeoutError:
        logger.warning(f"Executor (pid {process.pid}) ignored SIGTERM, killing")
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def run_ticket(
    ticket: Ticket,
    config: Config,
    cwd: str | None = None,
    stdout_sink: TextIO | None = None,
    stderr_sink: TextIO | None = None,
) -> ExecutionResult:
    """
    Run the external executor for one ticket and return an ExecutionResult.

    The child's exit and the configured timeout race each other. Whichever
    comes first decides the result; ``asyncio.wait_for`` cancels the timer
    once the child exits, so a timeout can never fire after a result exists.

    Args:
        ticket: Ticket to execute
        config: Application configuration (executor command, timeout, model defaults)
        cwd: Working directory for the executor. Defaults to the current directory.
        stdout_sink: Where child stdout is echoed (default: sys.stdout)
        stderr_sink: Where child stderr is echoed (default: sys.stderr)

    Returns:
        ExecutionResult. success is True only for a normal exit with code 0.
    """
    stdout_sink = stdout_sink or sys.stdout
    stderr_sink = stderr_sink or sys.stderr

    model = resolve_model(ticket, config)
    prompt = build_prompt(ticket)

    logger.info(f"Running executor for task-{ticket.ticket_id} with model: {model}")
    logger.debug(f"Prompt length: {len(prompt)} characters")
    log_message(logger, "Executor prompt", prompt)

    cmd = [*config.executor_command, "--message", prompt, "--auto-approve", "--model", model]
    env = {**os.environ, "OLLAMA_API_BASE": config.model_backend_url}

    start_time = time.monotonic()

    def elapsed() -> float:
        return time.monotonic() - start_time

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        # Executable missing, not executable, bad cwd, ...
        logger.error(f"Failed to spawn executor '{config.executor_command[0]}': {e}")
        return ExecutionResult(
            success=False,
            exit_kind=ExitKind.SPAWN_ERROR,
            ticket_id=ticket.ticket_id,
            model=model,
            stderr=str(e),
            error=f"Failed to spawn executor: {e}",
            duration=elapsed(),
        )

    logger.debug(f"Executor started (pid {process.pid})")

    stdout_parts: list[str] = []
    stderr_parts: list[str] = []
    assert process.stdout is not None, "stdout should be piped"
    assert process.stderr is not None, "stderr should be piped"
    readers = [
        asyncio.create_task(_pump(process.stdout, stdout_sink, stdout_parts)),
        asyncio.create_task(_pump(process.stderr, stderr_sink, stderr_parts)),
    ]

    timed_out = False
    exit_code: int | None = None
    try:
        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=config.execution_timeout)
        except TimeoutError:
            timed_out = True
            logger.error(
                f"Task-{ticket.ticket_id} timed out after {config.execution_timeout}s, terminating executor"
            )
            await _stop_process(process, config.kill_grace)

        # Pipes may stay open if the executor left children behind
        _, still_reading = await asyncio.wait(readers, timeout=config.kill_grace)
        for reader in still_reading:
            reader.cancel()
    finally:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        for reader in readers:
            if not reader.done():
                reader.cancel()

    stdout = "".join(stdout_parts)
    stderr = "".join(stderr_parts)

    if timed_out:
        return ExecutionResult(
            success=False,
            exit_kind=ExitKind.TIMEOUT,
            ticket_id=ticket.ticket_id,
            model=model,
            exit_code=None,
            stdout=stdout,
            stderr=stderr or "Process killed due to timeout",
            error=f"Process timed out after {config.execution_timeout}s",
            duration=elapsed(),
        )

    if exit_code == 0:
        logger.info(f"Task-{ticket.ticket_id} executed successfully in {elapsed():.1f}s")
        return ExecutionResult(
            success=True,
            exit_kind=ExitKind.EXITED,
            ticket_id=ticket.ticket_id,
            model=model,
            exit_code=0,
            stdout=stdout,
            stderr=stderr,
            duration=elapsed(),
        )

    logger.error(f"Task-{ticket.ticket_id} failed with exit code {exit_code}")
    return ExecutionResult(
        success=False,
        exit_kind=ExitKind.EXITED,
        ticket_id=ticket.ticket_id,
        model=model,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        error=f"Executor exited with code {exit_code}",
        duration=elapsed(),
    )
