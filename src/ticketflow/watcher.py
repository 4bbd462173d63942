"""
Intake folder watcher.

A watchdog ``Observer`` reports created, modified, moved and deleted files in
the intake folder. Events are handed to the event loop with
``call_soon_threadsafe``; a ticket document is submitted to the dispatch queue
once its size and mtime have held for ``watch_stability`` seconds, so
partially written files are never claimed. Files already present at startup
are picked up by an initial scan.
"""

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ticketflow.config import Config
from ticketflow.lifecycle import TicketLifecycle, is_ticket_file
from ticketflow.logger import get_logger
from ticketflow.models import Stage, extract_ticket_id
from ticketflow.queue import DispatchQueue

logger = get_logger(__name__)


@dataclass
class _Observation:
    size: int
    mtime: float


class IntakeEventHandler(FileSystemEventHandler):
    """Forwards intake file events from the observer thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[Path], None]):
        super().__init__()
        self._loop = loop
        self._callback = callback

    def _forward(self, raw_path: str | bytes) -> None:
        self._loop.call_soon_threadsafe(self._callback, Path(os.fsdecode(raw_path)))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)
            self._forward(event.dest_path)


class IntakeWatcher:
    """Watches the intake folder and feeds stable ticket files to the queue."""

    def __init__(
        self,
        config: Config,
        lifecycle: TicketLifecycle,
        queue: DispatchQueue,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.queue = queue
        self._intake = lifecycle.stage_dir(Stage.INTAKE).resolve()
        self._observed: dict[str, _Observation] = {}
        # Pending stability checks, one per filename
        self._timers: dict[str, asyncio.TimerHandle] = {}
        # Filenames already handed to the queue while still sitting in intake
        self._submitted: set[str] = set()
        # Filenames already warned about (no ticket ID)
        self._ignored: set[str] = set()
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        """Observe the intake folder until stop() is called."""
        handler = IntakeEventHandler(asyncio.get_running_loop(), self.notice)
        observer = Observer(timeout=self.config.poll_interval)
        observer.schedule(handler, str(self._intake), recursive=False)
        observer.start()
        logger.info(f"Watching {self._intake} for new tickets")
        try:
            await self.scan()
            await self._stop_event.wait()
        finally:
            observer.stop()
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            await asyncio.to_thread(observer.join)
        logger.info("Intake watcher stopped")

    async def scan(self) -> list[str]:
        """Consider every file currently in the intake folder.

        Returns:
            Filenames submitted immediately (those not waiting on stability)
        """
        paths = await asyncio.to_thread(self.lifecycle.list_stage, Stage.INTAKE)
        return [path.name for path in paths if self.notice(path)]

    def notice(self, path: Path) -> bool:
        """Handle one observed change to a path.

        Must be called on the event loop thread.

        Returns:
            True if the ticket was submitted to the queue right away
        """
        if path.parent.resolve() != self._intake or not is_ticket_file(path):
            return False
        filename = path.name

        try:
            stat = path.stat()
        except FileNotFoundError:
            self._forget(filename)
            return False

        if filename in self._submitted or self.queue.is_in_flight(filename):
            return False

        if extract_ticket_id(filename, self.config.task_id_pattern) is None:
            if filename not in self._ignored:
                logger.warning(
                    f"Ignoring {filename}: name does not match {self.config.task_id_pattern!r}"
                )
                self._ignored.add(filename)
            return False

        if filename not in self._observed:
            logger.debug(f"Detected new ticket: {filename}")
        self._observed[filename] = _Observation(stat.st_size, stat.st_mtime)

        timer = self._timers.pop(filename, None)
        if timer is not None:
            timer.cancel()

        if self.config.watch_stability <= 0:
            return self._submit(filename, path)

        self._timers[filename] = asyncio.get_running_loop().call_later(
            self.config.watch_stability, self._settle, path
        )
        return False

    def _settle(self, path: Path) -> None:
        filename = path.name
        self._timers.pop(filename, None)
        try:
            stat = path.stat()
        except FileNotFoundError:
            self._forget(filename)
            return

        previous = self._observed.get(filename)
        if previous is None:
            return
        if previous.size != stat.st_size or previous.mtime != stat.st_mtime:
            # Still being written
            self.notice(path)
            return
        self._submit(filename, path)

    def _submit(self, filename: str, path: Path) -> bool:
        self._observed.pop(filename, None)
        if self.queue.submit(filename, path):
            self._submitted.add(filename)
            return True
        return False

    def _forget(self, filename: str) -> None:
        """Drop all state for a file that left intake so a later arrival is seen again."""
        timer = self._timers.pop(filename, None)
        if timer is not None:
            timer.cancel()
        self._observed.pop(filename, None)
        self._submitted.discard(filename)
        self._ignored.discard(filename)
