"""
Per-ticket processing pipeline.

``TicketProcessor.process`` is the dispatch queue's work handler. For one
ticket it claims the file (Intake -> InProgress), runs the executor inside the
ticket's repository, and then either moves the ticket to Review and publishes
the result, or moves it to Failed with an error record.
"""

import asyncio
from pathlib import Path

from opentelemetry.trace import Status, StatusCode

from ticketflow.config import Config
from ticketflow.lifecycle import TicketLifecycle
from ticketflow.logger import clear_ticket_context, get_logger, set_ticket_context
from ticketflow.models import ExecutionResult, Stage, Ticket
from ticketflow.publisher import Publisher, PublishError
from ticketflow.remote import RemoteServiceError
from ticketflow.retry import RetryError
from ticketflow.runner import run_ticket
from ticketflow.telemetry import execution_attributes, get_tracer, record_execution

logger = get_logger(__name__)


class TicketProcessor:
    """Drives a single ticket from Intake to Review or Failed."""

    def __init__(
        self,
        config: Config,
        lifecycle: TicketLifecycle,
        publisher: Publisher,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.publisher = publisher

    async def process(self, filename: str, path: Path) -> None:
        """Process one admitted ticket.

        Never raises for per-ticket problems; every failure ends in a log line
        and, where the ticket was claimed, the Failed stage.

        Args:
            filename: Ticket filename
            path: Path at which the ticket was observed in Intake
        """
        set_ticket_context(filename)
        try:
            await self._process(filename, path)
        finally:
            clear_ticket_context()

    async def _process(self, filename: str, path: Path) -> None:
        logger.info(f"Processing {filename}")

        # Give writers a moment to finish before claiming the file
        if self.config.move_delay > 0:
            await asyncio.sleep(self.config.move_delay)

        claimed = await asyncio.to_thread(self.lifecycle.begin, filename)
        if claimed is None:
            logger.warning(f"Could not claim {filename} from intake, skipping")
            return

        tracer = get_tracer()
        with tracer.start_as_current_span(
            "ticket.process", attributes={"ticket.filename": filename}
        ) as span:
            try:
                ticket = await asyncio.to_thread(self.lifecycle.read_ticket, claimed)
                span.set_attribute("ticket.id", ticket.ticket_id)
                logger.info(f"Task-{ticket.ticket_id}: {ticket.title or '(untitled)'}")

                repo_path = await asyncio.to_thread(self.publisher.prepare_repo, ticket.ticket_id)
                result = await run_ticket(ticket, self.config, cwd=str(repo_path))
            except Exception as e:
                logger.error(f"Error processing {filename}: {e}", exc_info=True)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                await self._fail_if_in_progress(filename, str(e))
                return

            record_execution(result)
            span.set_attributes(execution_attributes(result))

            if not result.success:
                span.set_status(Status(StatusCode.ERROR, result.error or "execution failed"))
                await asyncio.to_thread(
                    self.lifecycle.mark_failed,
                    filename,
                    result.error or "Execution failed",
                    result,
                )
                return

            review_path = await asyncio.to_thread(self.lifecycle.mark_review, filename)
            if review_path is None:
                return

            await self._publish(ticket, result)

    async def _publish(self, ticket: Ticket, result: ExecutionResult) -> None:
        """Publish a successful result. Failures are logged; the stage stays Review."""
        try:
            outcome = await asyncio.to_thread(self.publisher.publish, ticket, result)
        except (PublishError, RemoteServiceError, RetryError) as e:
            logger.error(f"Failed to publish task-{ticket.ticket_id}: {e}")
            return
        except Exception as e:
            logger.error(f"Unexpected error publishing task-{ticket.ticket_id}: {e}", exc_info=True)
            return

        if outcome.pr_number is not None:
            logger.info(f"Task-{ticket.ticket_id} is in review as pull request #{outcome.pr_number}")
        else:
            logger.info(f"Task-{ticket.ticket_id} is in review")

    async def _fail_if_in_progress(self, filename: str, error: str) -> None:
        stage = await asyncio.to_thread(self.lifecycle.locate, filename)
        if stage is Stage.IN_PROGRESS:
            await asyncio.to_thread(self.lifecycle.mark_failed, filename, error)
