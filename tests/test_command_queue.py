"""Unit tests for command_queue module.

Tests that commands run one at a time, in order, and that failures never
stop the worker.
"""

import asyncio

import pytest

from command_queue import CommandQueue


class RecordingRouter:
    """Router that records start/end of every command and can be slowed down."""

    def __init__(self, delay=0.0, fail_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.events = []
        self.active = 0
        self.max_active = 0

    async def handle(self, topic, payload):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", topic))
        try:
            await asyncio.sleep(self.delay)
            if topic in self.fail_on:
                raise RuntimeError(f"{topic} exploded")
        finally:
            self.events.append(("end", topic))
            self.active -= 1


@pytest.fixture
async def queue():
    router = RecordingRouter(delay=0.01)
    queue = CommandQueue(router)
    await queue.start()
    yield queue
    await queue.stop()


class TestCommandQueue:
    """Tests for single-writer command handling"""

    async def test_commands_never_interleave(self, queue):
        for n in range(5):
            assert queue.submit_nowait(f"cmd/{n}", b"")

        await queue.join()

        router = queue.router
        assert router.max_active == 1
        assert router.events == [
            event for n in range(5) for event in (("start", f"cmd/{n}"), ("end", f"cmd/{n}"))
        ]
        assert queue.get_stats()["processed"] == 5

    async def test_failure_does_not_stop_worker(self):
        router = RecordingRouter(fail_on={"bad"})
        queue = CommandQueue(router)
        await queue.start()

        queue.submit_nowait("bad", b"")
        queue.submit_nowait("good", b"")
        await queue.join()

        stats = queue.get_stats()
        assert stats["errors"] == 1
        assert stats["processed"] == 1
        assert ("end", "good") in router.events
        await queue.stop()

    async def test_submit_before_start_is_rejected(self):
        queue = CommandQueue(RecordingRouter())

        assert queue.submit_nowait("cmd", b"") is False
        assert queue.get_stats()["queued"] == 0

    async def test_stop_drains_pending_commands(self):
        router = RecordingRouter(delay=0.01)
        queue = CommandQueue(router)
        await queue.start()

        for n in range(3):
            queue.submit_nowait(f"cmd/{n}", b"")
        await queue.stop()

        assert [topic for kind, topic in router.events if kind == "end"] == ["cmd/0", "cmd/1", "cmd/2"]
        assert queue.get_stats()["running"] is False
        assert queue.submit_nowait("late", b"") is False

    async def test_stop_waits_for_command_in_progress(self):
        router = RecordingRouter(delay=0.05)
        queue = CommandQueue(router)
        await queue.start()

        queue.submit_nowait("zigbee2mqtt/bridge/config/remove", b"bulb")
        await asyncio.sleep(0.01)
        assert queue.get_stats()["queued"] == 0
        await queue.stop()

        assert router.events == [
            ("start", "zigbee2mqtt/bridge/config/remove"),
            ("end", "zigbee2mqtt/bridge/config/remove"),
        ]
        assert queue.get_stats()["processed"] == 1

    async def test_double_start_is_ignored(self, queue):
        worker = queue._worker_task

        await queue.start()

        assert queue._worker_task is worker

    async def test_latency_is_tracked(self, queue):
        queue.submit_nowait("a", b"")
        queue.submit_nowait("b", b"")
        await queue.join()

        assert queue.get_stats()["max_latency_ms"] > 0
