"""
Shared fixtures for bridge tests.

Provides an isolated settings file per test, a fake network facade, a
publisher over a mocked MQTT service and a fully wired command router.
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridge_config import BridgeConfigRouter
from bridge_info import BridgeInfo
from error_handler import OperationResult
from log_config import LogSinks
from network import COORDINATOR, ROUTER, DeviceSummary
from publisher import BusPublisher
from settings import SettingsStore
from state import DeviceStateCache
from yaml_loader import save_yaml_config

COORDINATOR_IEEE = "00:12:4b:00:12:01:44:ae"
BULB_IEEE = "00:0b:57:ff:fe:c6:a5:b2"
BULB_COLOR_IEEE = "00:0b:57:ff:fe:c6:a5:b3"


def default_configuration():
    return {
        "permit_join": False,
        "mqtt": {"base_topic": "zigbee2mqtt", "server": "localhost"},
        "serial": {"port": "/dev/ttyUSB0"},
        "advanced": {"log_level": "info", "elapsed": False, "last_seen": "disable"},
        "whitelist": [],
        "devices": {
            BULB_IEEE: {"friendly_name": "bulb", "retain": True},
            BULB_COLOR_IEEE: {"friendly_name": "bulb_color", "retain": False},
        },
        "groups": {
            "1": {"friendly_name": "group_1", "retain": False},
            "2": {"friendly_name": "group_2", "retain": False},
        },
    }


def published(mqtt, topic):
    """Decoded JSON payloads published to ``topic``, in order."""
    return [
        json.loads(call.args[1])
        for call in mqtt.publish.await_args_list
        if call.args[0] == topic
    ]


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "configuration.yaml"
    save_yaml_config(path, default_configuration())
    return path


@pytest.fixture
def settings(config_path):
    return SettingsStore(config_path)


@pytest.fixture
def mock_mqtt():
    """MQTTService stand-in accepting every publish."""
    mqtt = MagicMock()
    mqtt.publish = AsyncMock(return_value=True)
    mqtt.connected = True
    mqtt.base_topic = "zigbee2mqtt"
    return mqtt


@pytest.fixture
def publisher(mock_mqtt):
    return BusPublisher(mock_mqtt, "zigbee2mqtt")


@pytest.fixture
def device_summaries():
    return [
        DeviceSummary(ieee=COORDINATOR_IEEE, type=COORDINATOR, network_address=0),
        DeviceSummary(
            ieee=BULB_IEEE,
            type=ROUTER,
            network_address=40369,
            model="LED1545G12",
            model_id="TRADFRI bulb E27 WS opal 980lm",
            manufacturer_id=4476,
            power_source="Mains (single phase)",
            last_seen=1000,
        ),
        DeviceSummary(ieee=BULB_COLOR_IEEE, type=ROUTER, network_address=40399),
    ]


@pytest.fixture
def fake_network(device_summaries):
    """
    NetworkControl stand-in.

    Every operation succeeds unless a test swaps in a failed OperationResult.
    """
    network = MagicMock()
    network.permit_join = AsyncMock(return_value=OperationResult.ok())
    network.soft_reset = AsyncMock(return_value=OperationResult.ok())
    network.create_group = AsyncMock(return_value=OperationResult.ok())
    network.remove_from_network = AsyncMock(return_value=OperationResult.ok())
    network.list_devices = MagicMock(return_value=list(device_summaries))
    network.get_permit_join = MagicMock(return_value=False)
    network.coordinator_info = MagicMock(return_value={"type": "ezsp", "meta": {"version": 1}})
    return network


@pytest.fixture
def state():
    return DeviceStateCache()


@pytest.fixture
def log_sinks():
    sinks = LogSinks(None, "info")
    yield sinks
    sinks.stop()


@pytest.fixture
def bridge_info(settings, fake_network, publisher, log_sinks):
    return BridgeInfo(settings, fake_network, publisher, log_sinks)


@pytest.fixture
def router(settings, fake_network, publisher, state, log_sinks, bridge_info):
    return BridgeConfigRouter(
        settings, fake_network, publisher, state, log_sinks, bridge_info, "zigbee2mqtt"
    )


@pytest.fixture
def root_logger_guard():
    """Restore the root logger after a test routes it through LogSinks."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
