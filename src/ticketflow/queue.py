"""
Bounded-concurrency FIFO dispatch queue.

Admits ticket filenames for processing, runs at most ``concurrency`` of them
at once, and keeps an in-flight set so a filename is never admitted twice
while it is queued or running. All state is touched only from the event loop
thread, so no locks are needed.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path

from ticketflow.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[str, Path], Awaitable[None]]


class DispatchQueue:
    """FIFO scheduler with a concurrency limit and duplicate suppression."""

    def __init__(self, concurrency: int, handler: Handler):
        """
        Args:
            concurrency: Maximum number of work items running at once (>= 1)
            handler: Coroutine function called as handler(filename, path)
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self._handler = handler
        self._waiting: deque[tuple[str, Path]] = deque()
        # Filenames queued or running
        self._in_flight: set[str] = set()
        self._running = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def size(self) -> int:
        """Number of items waiting for a free slot."""
        return len(self._waiting)

    @property
    def pending(self) -> int:
        """Number of items currently running."""
        return self._running

    @property
    def processing(self) -> list[str]:
        """Sorted filenames currently queued or running."""
        return sorted(self._in_flight)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_in_flight(self, filename: str) -> bool:
        return filename in self._in_flight

    def submit(self, filename: str, path: Path) -> bool:
        """Admit a ticket for processing.

        Args:
            filename: Ticket filename (the in-flight key)
            path: Path at which the ticket was observed

        Returns:
            True if admitted, False if it was already in flight or the queue is closed
        """
        if self._closed:
            logger.warning(f"Queue is closed, not accepting {filename}")
            return False
        if filename in self._in_flight:
            logger.warning(f"{filename} is already being processed, skipping")
            return False

        self._in_flight.add(filename)
        self._waiting.append((filename, path))
        self._idle.clear()
        logger.info(f"Queued {filename} (running={self._running}, waiting={len(self._waiting)})")
        self._pump()
        return True

    def _pump(self) -> None:
        while self._waiting and self._running < self.concurrency:
            filename, path = self._waiting.popleft()
            self._running += 1
            task = asyncio.create_task(self._run(filename, path), name=f"ticket:{filename}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if not self._waiting and self._running == 0:
            self._idle.set()

    async def _run(self, filename: str, path: Path) -> None:
        try:
            await self._handler(filename, path)
        except asyncio.CancelledError:
            logger.warning(f"Processing of {filename} was cancelled")
            raise
        except Exception as e:
            logger.error(f"Unhandled error while processing {filename}: {e}", exc_info=True)
        finally:
            self._in_flight.discard(filename)
            self._running -= 1
            self._pump()

    def close(self) -> None:
        """Stop admitting new work. Already admitted work still runs."""
        if not self._closed:
            logger.info("Dispatch queue closed to new work")
        self._closed = True

    async def drain(self) -> None:
        """Wait until every admitted and queued item has completed."""
        await self._idle.wait()

    async def cancel_all(self) -> None:
        """Cancel running work and drop anything still waiting."""
        for filename, _ in self._waiting:
            self._in_flight.discard(filename)
        self._waiting.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()
