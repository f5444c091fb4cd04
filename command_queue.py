"""
Bridge Command Queue - Single Writer
====================================
Serialises every inbound bridge command through one worker task.

This module provides:
- Non-blocking submission from the MQTT message loop and the HTTP API
- One worker awaiting each command to completion before taking the next
- Drain on stop, so accepted commands are never silently lost
"""
import asyncio
import logging
import time
from typing import Optional, Tuple, Union

logger = logging.getLogger("command_queue")

Command = Tuple[str, Union[bytes, str], float]


class CommandQueue:
    """
    Unbounded FIFO of (topic, payload) commands handled strictly in order.

    Args:
        router: Object exposing ``async handle(topic, payload)``.
    """

    def __init__(self, router):
        self.router = router
        self._queue: "asyncio.Queue[Command]" = asyncio.Queue()

        # Worker task management
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False

        # Statistics
        self._stats = {
            'processed': 0,
            'errors': 0,
            'max_latency_ms': 0.0,
        }

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background command worker."""
        if self._running:
            logger.warning("Command queue already running")
            return

        self._running = True
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("Command queue worker started")

    async def stop(self):
        """Handle every queued command, then stop the worker."""
        if not self._running:
            return

        logger.info("Stopping command queue...")

        # Refuse new work, then wait for queued and in-flight commands
        self._running = False
        remaining = self._queue.qsize()
        if remaining > 0:
            logger.info(f"Draining {remaining} queued commands...")
        await self._queue.join()

        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        logger.info(f"Command queue stopped. Stats: {self.get_stats()}")

    def submit_nowait(self, topic: str, payload: Union[bytes, str]) -> bool:
        """
        Queue a command (non-blocking).

        Returns:
            True if queued, False when the queue is not accepting commands
        """
        if not self._running:
            logger.warning(f"Command queue not running, dropping {topic}")
            return False

        self._queue.put_nowait((topic, payload, time.monotonic()))
        return True

    async def join(self):
        """Wait until every queued command has been handled."""
        await self._queue.join()

    async def _worker(self):
        while True:
            topic, payload, queued_at = await self._queue.get()
            try:
                latency_ms = (time.monotonic() - queued_at) * 1000
                if latency_ms > self._stats['max_latency_ms']:
                    self._stats['max_latency_ms'] = latency_ms

                await self.router.handle(topic, payload)
                self._stats['processed'] += 1

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Command {topic} failed: {e}", exc_info=True)
                self._stats['errors'] += 1
            finally:
                self._queue.task_done()

    def get_stats(self) -> dict:
        return {
            'processed': self._stats['processed'],
            'errors': self._stats['errors'],
            'queued': self._queue.qsize(),
            'max_latency_ms': round(self._stats['max_latency_ms'], 2),
            'running': self._running,
        }
