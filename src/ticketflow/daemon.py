"""
Daemon for ticketflow.

Runs the intake watcher, the dispatch queue and the webhook/health HTTP
server on a single asyncio event loop, and drains in-flight work on
SIGINT/SIGTERM before exiting.
"""

import asyncio
import contextlib
import signal
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import uvicorn

from ticketflow import __version__
from ticketflow.config import Config, load_config
from ticketflow.lifecycle import TicketLifecycle
from ticketflow.logger import get_logger, setup_logging
from ticketflow.pipeline import TicketProcessor
from ticketflow.publisher import Publisher
from ticketflow.queue import DispatchQueue
from ticketflow.telemetry import init_telemetry
from ticketflow.watcher import IntakeWatcher
from ticketflow.webhook import WebhookReconciler, create_app

logger = get_logger(__name__)

# Exit statuses
EXIT_OK = 0
EXIT_FAILURE = 1

# Seconds to let the watcher and HTTP server wind down before cancelling them
SERVER_STOP_TIMEOUT = 5.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the daemon's event loop."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class Daemon:
    """Main orchestrator daemon that watches intake and processes tickets."""

    def __init__(
        self,
        config: Config,
        publisher: Publisher | None = None,
        version: str | None = None,
    ) -> None:
        """Initialize the daemon with configuration.

        Args:
            config: Application configuration
            publisher: Publisher to use (built from config if omitted)
            version: Version string logged at startup
        """
        logger.debug(
            f"Config: concurrency={config.concurrency}, "
            f"poll_interval={config.poll_interval}s, "
            f"webhook_enabled={config.webhook_enabled}"
        )
        self.config = config
        self.version = version or __version__

        self.lifecycle = TicketLifecycle(config)
        self.publisher = publisher or Publisher(config)
        self.processor = TicketProcessor(config, self.lifecycle, self.publisher)
        self.queue = DispatchQueue(config.concurrency, self.processor.process)
        self.watcher = IntakeWatcher(config, self.lifecycle, self.queue)
        self.reconciler = WebhookReconciler(config, self.lifecycle)

        self.server: uvicorn.Server | None = None
        self._stop_requested: asyncio.Event | None = None
        self._fatal = False

    def request_shutdown(self, signum: int | None = None) -> None:
        """Ask the daemon to stop admitting work and drain."""
        if signum is not None:
            logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
        else:
            logger.info("Shutdown requested")
        if self._stop_requested is not None:
            self._stop_requested.set()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        """Treat exceptions nobody handled as fatal."""
        error = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        logger.critical(f"{message}: {error!r}", exc_info=error)
        self._fatal = True
        if self._stop_requested is not None:
            self._stop_requested.set()

    def _watch_task(self, task: asyncio.Task[Any]) -> None:
        """Done-callback for long-running tasks that must not end on their own."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._handle_loop_exception(
                asyncio.get_running_loop(),
                {"message": f"Task {task.get_name()} crashed", "exception": error, "task": task},
            )

    def _build_server(self) -> uvicorn.Server:
        app = create_app(self.config, self.reconciler, self.queue)
        server_config = uvicorn.Config(
            app,
            host=self.config.webhook_host,
            port=self.config.webhook_port,
            log_config=None,
            lifespan="off",
            access_log=False,
        )
        return _EmbeddedServer(server_config)

    async def run(self) -> int:
        """Run until a shutdown signal or a fatal error.

        Returns:
            Process exit status: 0 after a clean drain, 1 if the drain
            deadline passed or an unhandled exception stopped the daemon
        """
        loop = asyncio.get_running_loop()
        self._stop_requested = asyncio.Event()
        loop.set_exception_handler(self._handle_loop_exception)
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_shutdown, signum)

        await asyncio.to_thread(self.lifecycle.ensure_stage_dirs)
        Path(self.config.repos_dir).mkdir(parents=True, exist_ok=True)

        logger.info(f"ticketflow version: {self.version}")
        logger.info(f"Processing concurrency: {self.config.concurrency}")
        logger.info(f"Default model: {self.config.default_model}")

        watcher_task = asyncio.create_task(self.watcher.run(), name="intake-watcher")
        watcher_task.add_done_callback(self._watch_task)

        server_task: asyncio.Task[None] | None = None
        if self.config.webhook_enabled:
            self.server = self._build_server()
            server_task = asyncio.create_task(self.server.serve(), name="webhook-server")
            server_task.add_done_callback(self._watch_task)
            base = f"http://{self.config.webhook_host}:{self.config.webhook_port}"
            logger.info(f"Webhook endpoint: {base}{self.config.webhook_path}")
            logger.info(f"Health check: {base}/health")

        try:
            await self._stop_requested.wait()
            if self._fatal:
                logger.error("Stopping without draining after a fatal error")
                await self.queue.cancel_all()
                return EXIT_FAILURE
            return await self.shutdown()
        finally:
            self.watcher.stop()
            if self.server is not None:
                self.server.should_exit = True
            background = [t for t in (watcher_task, server_task) if t is not None]
            _, still_running = await asyncio.wait(background, timeout=SERVER_STOP_TIMEOUT)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)

    async def shutdown(self) -> int:
        """Stop intake and the HTTP listener, then drain within the deadline."""
        self.watcher.stop()
        self.queue.close()
        if self.server is not None:
            self.server.should_exit = True

        in_flight = self.queue.processing
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} ticket(s) to finish: {', '.join(in_flight)}")
        try:
            await asyncio.wait_for(self.queue.drain(), timeout=self.config.shutdown_timeout)
        except TimeoutError:
            logger.error(
                f"Shutdown timed out after {self.config.shutdown_timeout}s with "
                f"{len(self.queue.processing)} ticket(s) still in flight"
            )
            await self.queue.cancel_all()
            return EXIT_FAILURE

        logger.info("All pending tasks completed")
        return EXIT_OK


def main() -> None:
    """Main entry point for the daemon.

    Sets up logging, loads configuration, and runs the daemon.
    """
    try:
        # Load configuration first (needed for log settings)
        config = load_config()

        setup_logging(
            log_file=config.log_file,
            log_size=config.log_size,
            log_backups=config.log_backups,
        )
        logger.info("=== ticketflow Daemon Starting ===")
        logger.info(f"Logging to file: {config.log_file}")

        if config.otel_endpoint:
            init_telemetry(config.otel_endpoint, config.otel_service_name, service_version=__version__)

        daemon = Daemon(config, version=__version__)
        exit_code = asyncio.run(daemon.run())

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, exiting...")
        sys.exit(EXIT_OK)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_FAILURE)

    logger.info("=== ticketflow Daemon Stopped ===")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
