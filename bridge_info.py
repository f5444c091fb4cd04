"""
Bridge Summary
Builds and publishes the retained ``<base>/bridge/config`` summary:
software version, coordinator details, log level and pairing state.
"""
import logging
import os
import subprocess
from importlib import metadata
from typing import Any, Dict, Tuple

logger = logging.getLogger("bridge_info")

DISTRIBUTION = "zigbee-bridge-config"


def get_bridge_version() -> Tuple[str, str]:
    """Return (version, commit). Either is ``"unknown"`` when it can't be determined."""
    try:
        version = metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        version = "unknown"

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=os.path.dirname(os.path.abspath(__file__)),
            capture_output=True, text=True, timeout=5
        )
        commit = result.stdout.strip() if result.returncode == 0 else ""
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not read git commit: {e}")
        commit = ""

    return version, commit or "unknown"


class BridgeInfo:
    """Projects the current bridge configuration onto the bus."""

    def __init__(self, settings, network, publisher, log_sinks=None):
        self.settings = settings
        self.network = network
        self.publisher = publisher
        self.log_sinks = log_sinks
        self.version, self.commit = get_bridge_version()
        self._startup_published = False

    @property
    def topic(self) -> str:
        return self.publisher.bridge_topic("config")

    def payload(self) -> Dict[str, Any]:
        if self.log_sinks is not None:
            log_level = self.log_sinks.level_name
        else:
            log_level = self.settings.get().log_level

        return {
            "version": self.version,
            "commit": self.commit,
            "coordinator": self.network.coordinator_info(),
            "log_level": log_level,
            "permit_join": self.network.get_permit_join(),
        }

    async def publish(self) -> bool:
        return await self.publisher.publish(self.topic, self.payload(), retain=True, qos=0)

    async def publish_startup(self) -> bool:
        """Publish the summary once per process. Later calls are no-ops."""
        if self._startup_published:
            return False
        self._startup_published = True
        logger.info(f"Bridge {self.version} ({self.commit}) starting, publishing {self.topic}")
        return await self.publish()
