"""Unit tests for controller module.

The radio is replaced by a fake application factory and the MQTT client is
never a real broker session.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import zigpy.types

from conftest import BULB_IEEE, COORDINATOR_IEEE
from controller import Controller, get_config_path
from error_handler import OperationResult
from settings import SettingsStore

NEW_IEEE = "00:15:8d:00:01:02:03:04"
STRANGER_IEEE = "00:15:8d:00:0a:0b:0c:0d"


def zigpy_device(ieee, nwk):
    return SimpleNamespace(ieee=zigpy.types.EUI64.convert(ieee), nwk=nwk)


@pytest.fixture
def fake_app():
    app = MagicMock()
    app.permit = AsyncMock()
    app.shutdown = AsyncMock()
    app.add_listener = MagicMock()
    devices = [zigpy_device(COORDINATOR_IEEE, 0x0000), zigpy_device(BULB_IEEE, 0x1234), zigpy_device(NEW_IEEE, 0x5678)]
    app.devices = {d.ieee: d for d in devices}
    return app


@pytest.fixture
def controller(config_path, tmp_path, fake_app):
    settings = SettingsStore(config_path)
    with settings._transaction() as data:
        data["advanced"]["log_directory"] = str(tmp_path / "logs")
        data["advanced"]["state_cache"] = None
    return Controller(settings, app_factory=AsyncMock(return_value=fake_app), startup_attempts=2)


class TestController:
    """Tests for wiring and lifecycle"""

    def test_config_path_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BRIDGE_CONFIG", str(tmp_path / "bridge.yaml"))
        assert get_config_path() == tmp_path / "bridge.yaml"

        monkeypatch.delenv("BRIDGE_CONFIG")
        assert str(get_config_path()) == "config/configuration.yaml"

    def test_zigpy_config(self, controller):
        with controller.settings._transaction() as data:
            data["advanced"]["network_key"] = [1] * 16
        controller.config = controller.settings.snapshot()

        assert controller.zigpy_config() == {
            "device": {"path": "/dev/ttyUSB0", "baudrate": 115200},
            "database_path": "zigbee.db",
            "network": {"channel": 11, "key": [1] * 16},
        }

    def test_mqtt_is_built_from_config(self, controller):
        assert controller.mqtt.broker == "localhost"
        assert controller.mqtt.base_topic == "zigbee2mqtt"
        assert controller.mqtt.message_callback == controller.on_message

    async def test_start_and_stop(self, controller, fake_app, root_logger_guard):
        with patch.object(controller.mqtt, "start", AsyncMock()), \
                patch.object(controller.mqtt, "stop", AsyncMock()), \
                patch.object(controller.publisher, "publish", AsyncMock(return_value=True)) as publish:
            await controller.start()

            fake_app.add_listener.assert_called_once_with(controller)
            fake_app.permit.assert_awaited_once_with(0)
            assert controller.settings.get_device(NEW_IEEE)["friendly_name"] == NEW_IEEE
            assert controller.settings.get_device(COORDINATOR_IEEE) is None
            assert publish.await_args.args[0] == "zigbee2mqtt/bridge/config"
            assert controller.queue.running

            await controller.stop()

        fake_app.shutdown.assert_awaited_once()
        assert not controller.queue.running

    async def test_messages_flow_through_queue(self, controller, root_logger_guard):
        with patch.object(controller.mqtt, "start", AsyncMock()), \
                patch.object(controller.mqtt, "stop", AsyncMock()), \
                patch.object(controller.publisher, "publish", AsyncMock(return_value=True)):
            await controller.start()

            controller.on_message("zigbee2mqtt/bridge/config/elapsed", b"true")
            await controller.queue.join()
            assert controller.settings.get().elapsed is True

            await controller.stop()

    def test_messages_before_start_are_dropped(self, controller):
        controller.on_message("zigbee2mqtt/bridge/config/elapsed", b"true")

        assert controller.settings.get().elapsed is False

    def test_device_initialized_registers_device(self, controller):
        controller.device_initialized(zigpy_device("00:15:8d:00:0a:0b:0c:0d", 0x4321))

        assert controller.settings.get_device("00:15:8d:00:0a:0b:0c:0d") is not None

    async def test_radio_start_gives_up(self, controller, monkeypatch):
        controller.app_factory = AsyncMock(side_effect=OSError("no such device"))
        monkeypatch.setattr(asyncio, "sleep", AsyncMock())

        with pytest.raises(RuntimeError):
            await controller._start_zigbee()

        assert controller.app_factory.await_count == 2

    async def test_drained_commands_publish_before_offline(self, controller, root_logger_guard):
        client = MagicMock()
        client.publish = AsyncMock()
        client.__aexit__ = AsyncMock(return_value=None)

        with patch.object(controller.mqtt, "start", AsyncMock()):
            controller.mqtt.client = client
            controller.mqtt._connected = True
            await controller.start()

            controller.on_message("zigbee2mqtt/bridge/config/whitelist", b"bulb")
            await controller.stop()

        assert BULB_IEEE in controller.settings.get().whitelist
        topics = [c.args[0] for c in client.publish.await_args_list]
        assert topics[-2:] == ["zigbee2mqtt/bridge/log", "zigbee2mqtt/bridge/state"]
        assert json.loads(client.publish.await_args_list[-2].args[1]) == {
            "type": "device_whitelisted", "message": {"friendly_name": "bulb"}
        }
        assert client.publish.await_args_list[-1].args[1] == "offline"
        client.__aexit__.assert_awaited_once()


class TestWhitelistGating:
    """Tests for admitting devices by whitelist membership"""

    @pytest.fixture
    def network(self, controller):
        controller.network = SimpleNamespace(
            remove_from_network=AsyncMock(return_value=OperationResult.ok())
        )
        return controller.network

    async def test_unlisted_device_is_removed(self, controller, network):
        controller.settings.add_device_to_whitelist(BULB_IEEE)

        controller.device_joined(zigpy_device(STRANGER_IEEE, 0x4321))
        controller.device_initialized(zigpy_device(STRANGER_IEEE, 0x4321))
        await asyncio.gather(*controller._pending.values())

        network.remove_from_network.assert_awaited_once_with(STRANGER_IEEE)
        assert controller.settings.get_device(STRANGER_IEEE) is None
        assert controller._pending == {}

    async def test_listed_device_is_registered(self, controller, network):
        controller.settings.add_device_to_whitelist(STRANGER_IEEE)

        controller.device_joined(zigpy_device(STRANGER_IEEE, 0x4321))
        controller.device_initialized(zigpy_device(STRANGER_IEEE, 0x4321))

        network.remove_from_network.assert_not_awaited()
        assert controller.settings.get_device(STRANGER_IEEE)["friendly_name"] == STRANGER_IEEE

    def test_empty_whitelist_admits_everything(self, controller):
        assert controller.is_allowed(STRANGER_IEEE)

        controller.settings.add_device_to_whitelist(BULB_IEEE.upper())

        assert controller.is_allowed(BULB_IEEE)
        assert not controller.is_allowed(STRANGER_IEEE)

    async def test_known_devices_outside_whitelist_are_removed(self, controller, network, fake_app):
        controller.app = fake_app
        controller.settings.add_device_to_whitelist(BULB_IEEE)

        controller.register_known_devices()
        await asyncio.gather(*controller._pending.values())

        network.remove_from_network.assert_awaited_once_with(NEW_IEEE)
        assert controller.settings.get_device(NEW_IEEE) is None

    def test_join_records_runtime_state(self, controller):
        controller.device_joined(zigpy_device(STRANGER_IEEE, 0x4321))

        assert controller.state.state[STRANGER_IEEE]["nwk"] == 0x4321
