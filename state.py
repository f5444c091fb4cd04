"""
Runtime Device State Cache
Holds runtime facts about every device (network address, last join time),
keyed by IEEE address. Fed by the controller from zigpy join events.
Persisted to a JSON file by a background flush so restarts keep state.
"""
import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

from json_helpers import prepare_for_json

logger = logging.getLogger("state")


class DeviceStateCache:
    """
    In-memory device state with optional JSON persistence.

    Writes only mark the cache dirty; the periodic flush (or stop()) writes
    it to disk off the event loop.
    """

    def __init__(self, storage_path: Optional[str] = None, save_interval: float = 30):
        self.storage_path = storage_path
        self.save_interval = save_interval
        self.state: Dict[str, Dict[str, Any]] = {}
        self._dirty = False
        self._save_task: Optional[asyncio.Task] = None
        self._load()

    def _load(self):
        if not self.storage_path or not os.path.exists(self.storage_path):
            return
        try:
            with open(self.storage_path, 'r') as f:
                self.state = json.load(f)
            logger.info(f"Loaded state for {len(self.state)} devices")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load {self.storage_path}: {e}")
            self.state = {}

    def save(self):
        """Write the cache to disk if it changed since the last save."""
        if not self.storage_path or not self._dirty:
            return
        try:
            with open(self.storage_path, 'w') as f:
                json.dump(prepare_for_json(self.state), f, indent=2)
            self._dirty = False
            logger.debug(f"State cache saved to {self.storage_path}")
        except OSError as e:
            logger.error(f"Failed to save {self.storage_path}: {e}")

    def set(self, ieee: str, update: Dict[str, Any]) -> Dict[str, Any]:
        """Merge an update into the stored state and return the new state."""
        merged = {**self.state.get(ieee, {}), **update}
        self.state[ieee] = merged
        self._dirty = True
        return dict(merged)

    def remove(self, ieee: str) -> bool:
        if ieee not in self.state:
            return False
        del self.state[ieee]
        self._dirty = True
        logger.debug(f"[{ieee}] Removed runtime state")
        return True

    async def _periodic_save(self):
        """Periodically save cache to disk to prevent I/O blocking."""
        while True:
            try:
                await asyncio.sleep(self.save_interval)
                if self._dirty:
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, self.save)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic save: {e}")

    def start(self):
        if self.storage_path and self._save_task is None:
            self._save_task = asyncio.create_task(self._periodic_save())

    async def stop(self):
        if self._save_task:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None
        # Force one last save
        self.save()
