"""
Webhook reconciler and health endpoint.

Receives pull request events from the git-hosting service. When a review
request for a ticket is merged, the ticket moves Review -> Completed. The
same app exposes ``GET /health`` with the dispatch queue's state.
"""

import asyncio
import hashlib
import hmac
import json
import re
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ticketflow.config import Config
from ticketflow.lifecycle import TicketLifecycle
from ticketflow.logger import get_logger
from ticketflow.queue import DispatchQueue

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Gitea-Signature"
EVENT_HEADER = "X-Gitea-Event"
PULL_REQUEST_EVENT = "pull_request"

TASK_TITLE_RE = re.compile(r"\[Task (\d+)\]", re.IGNORECASE)


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a hex HMAC-SHA256 signature of the raw body.

    An optional ``sha256=`` prefix on the signature is tolerated.
    """
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def extract_ticket_id_from_title(title: str) -> str | None:
    """Extract the ticket ID from a "[Task <n>] ..." review request title."""
    match = TASK_TITLE_RE.search(title or "")
    return match.group(1) if match else None


def is_merge_event(payload: dict[str, Any]) -> bool:
    pull_request = payload.get("pull_request") or {}
    return bool(pull_request.get("merged")) or payload.get("action") == "merged"


class WebhookReconciler:
    """Completes tickets whose review request was merged."""

    def __init__(self, config: Config, lifecycle: TicketLifecycle):
        self.config = config
        self.lifecycle = lifecycle

    async def handle_event(self, event: str, payload: dict[str, Any]) -> bool:
        """Apply a webhook event.

        Args:
            event: Value of the event header
            payload: Decoded JSON payload

        Returns:
            True if a ticket was moved to Completed
        """
        logger.info(f"Received webhook event: {event or '(none)'}")
        if event != PULL_REQUEST_EVENT:
            return False

        pull_request = payload.get("pull_request") or {}
        title = str(pull_request.get("title") or "")
        logger.info(
            f"PR #{pull_request.get('number')}: {payload.get('action')} "
            f"(title={title!r}, merged={bool(pull_request.get('merged'))})"
        )

        if not is_merge_event(payload):
            return False
        if not self.config.auto_merge_pr:
            logger.debug("AUTO_MERGE_PR is disabled, not completing tickets from merges")
            return False

        ticket_id = extract_ticket_id_from_title(title)
        if ticket_id is None:
            logger.info(f"No task ID in PR title {title!r}, ignoring")
            return False

        completed = await asyncio.to_thread(self.lifecycle.complete, ticket_id)
        if completed is None:
            return False
        logger.info(f"Moved task-{ticket_id} to completed (PR merged)")
        return True


def create_app(
    config: Config,
    reconciler: WebhookReconciler,
    queue: DispatchQueue,
) -> FastAPI:
    """Build the FastAPI app serving the webhook and health endpoints."""
    app = FastAPI(title="ticketflow", docs_url=None, redoc_url=None, openapi_url=None)

    @app.post(config.webhook_path)
    async def receive_webhook(request: Request) -> JSONResponse:
        try:
            body = await request.body()
            signature = request.headers.get(SIGNATURE_HEADER)
            if config.webhook_secret and signature:
                if not verify_signature(config.webhook_secret, body, signature):
                    logger.warning("Invalid webhook signature")
                    return JSONResponse(status_code=401, content={"error": "Invalid signature"})

            payload = json.loads(body) if body else {}
            if not isinstance(payload, dict):
                raise ValueError("webhook payload is not a JSON object")

            event = request.headers.get(EVENT_HEADER, "")
            await reconciler.handle_event(event, payload)
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            logger.error(f"Webhook handler error: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "queueSize": queue.size,
            "queuePending": queue.pending,
            "processing": queue.processing,
        }

    return app
