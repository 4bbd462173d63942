"""Tests for the dispatch queue."""

import asyncio
from pathlib import Path

import pytest

from ticketflow.queue import DispatchQueue


class RecordingHandler:
    """Handler whose work items block until released."""

    def __init__(self):
        self.started: list[str] = []
        self.finished: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.running = 0
        self.max_running = 0

    def gate(self, filename: str) -> asyncio.Event:
        return self.gates.setdefault(filename, asyncio.Event())

    async def __call__(self, filename: str, path: Path) -> None:
        self.started.append(filename)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.gate(filename).wait()
            if filename.startswith("boom"):
                raise RuntimeError(f"{filename} exploded")
        finally:
            self.running -= 1
            self.finished.append(filename)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.unit
class TestDispatchQueue:
    """Tests for DispatchQueue."""

    @pytest.mark.asyncio
    async def test_respects_concurrency_and_fifo(self):
        handler = RecordingHandler()
        queue = DispatchQueue(2, handler)

        for name in ["a.md", "b.md", "c.md", "d.md"]:
            assert queue.submit(name, Path(name)) is True
        await settle()

        assert handler.started == ["a.md", "b.md"]
        assert queue.pending == 2
        assert queue.size == 2
        assert queue.processing == ["a.md", "b.md", "c.md", "d.md"]

        handler.gate("b.md").set()
        await settle()
        assert handler.started == ["a.md", "b.md", "c.md"]

        for name in ["a.md", "c.md", "d.md"]:
            handler.gate(name).set()
        await queue.drain()

        assert handler.started == ["a.md", "b.md", "c.md", "d.md"]
        assert handler.max_running == 2
        assert queue.processing == []
        assert queue.pending == 0
        assert queue.size == 0

    @pytest.mark.asyncio
    async def test_duplicate_submission_is_rejected(self, caplog):
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)

        assert queue.submit("task-7.md", Path("task-7.md")) is True
        assert queue.submit("task-7.md", Path("task-7.md")) is False
        assert "already being processed" in caplog.text

        handler.gate("task-7.md").set()
        await queue.drain()
        assert handler.started == ["task-7.md"]

    @pytest.mark.asyncio
    async def test_queued_duplicate_is_rejected(self):
        """Test that a filename waiting for a slot also counts as in flight."""
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)
        queue.submit("a.md", Path("a.md"))
        queue.submit("b.md", Path("b.md"))

        assert queue.submit("b.md", Path("b.md")) is False

        handler.gate("a.md").set()
        handler.gate("b.md").set()
        await queue.drain()

    @pytest.mark.asyncio
    async def test_can_resubmit_after_completion(self):
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)
        handler.gate("task-7.md").set()

        queue.submit("task-7.md", Path("task-7.md"))
        await queue.drain()

        assert queue.submit("task-7.md", Path("task-7.md")) is True
        await queue.drain()
        assert handler.started == ["task-7.md", "task-7.md"]

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_escape(self, caplog):
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)
        handler.gate("boom.md").set()
        handler.gate("next.md").set()

        queue.submit("boom.md", Path("boom.md"))
        queue.submit("next.md", Path("next.md"))
        await queue.drain()

        assert handler.finished == ["boom.md", "next.md"]
        assert "boom.md exploded" in caplog.text
        assert queue.processing == []

    @pytest.mark.asyncio
    async def test_closed_queue_rejects_work(self, caplog):
        queue = DispatchQueue(1, RecordingHandler())

        queue.close()

        assert queue.closed is True
        assert queue.submit("a.md", Path("a.md")) is False
        assert "Queue is closed" in caplog.text

    @pytest.mark.asyncio
    async def test_drain_on_idle_queue_returns(self):
        queue = DispatchQueue(1, RecordingHandler())

        await asyncio.wait_for(queue.drain(), timeout=1)

    @pytest.mark.asyncio
    async def test_close_lets_admitted_work_finish(self):
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)
        queue.submit("a.md", Path("a.md"))
        queue.submit("b.md", Path("b.md"))
        queue.close()

        handler.gate("a.md").set()
        handler.gate("b.md").set()
        await asyncio.wait_for(queue.drain(), timeout=1)

        assert handler.finished == ["a.md", "b.md"]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        handler = RecordingHandler()
        queue = DispatchQueue(1, handler)
        queue.submit("a.md", Path("a.md"))
        queue.submit("b.md", Path("b.md"))
        await settle()

        await queue.cancel_all()

        assert handler.started == ["a.md"]
        assert queue.processing == []
        await asyncio.wait_for(queue.drain(), timeout=1)

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            DispatchQueue(0, RecordingHandler())
