"""Unit tests for state module."""

import json

from state import DeviceStateCache

IEEE = "00:0b:57:ff:fe:c6:a5:b3"


class TestDeviceStateCache:
    """Tests for runtime device state"""

    def test_set_merges(self):
        cache = DeviceStateCache()

        cache.set(IEEE, {"nwk": 0x1234})
        merged = cache.set(IEEE, {"last_joined": 1000})

        assert merged == {"nwk": 0x1234, "last_joined": 1000}
        assert cache.state[IEEE] == merged

    def test_set_returns_copy(self):
        cache = DeviceStateCache()

        cache.set(IEEE, {"nwk": 0x1234})["nwk"] = 0

        assert cache.state[IEEE] == {"nwk": 0x1234}

    def test_remove(self):
        cache = DeviceStateCache()
        cache.set(IEEE, {"nwk": 0x1234})

        assert cache.remove(IEEE) is True
        assert cache.remove(IEEE) is False
        assert IEEE not in cache.state

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "state.json"
        cache = DeviceStateCache(str(path))
        cache.set(IEEE, {"nwk": 0x1234})

        cache.save()

        assert json.loads(path.read_text()) == {IEEE: {"nwk": 0x1234}}
        assert DeviceStateCache(str(path)).state == {IEEE: {"nwk": 0x1234}}

    def test_save_skips_when_clean(self, tmp_path):
        path = tmp_path / "state.json"

        DeviceStateCache(str(path)).save()

        assert not path.exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert DeviceStateCache(str(path)).state == {}

    async def test_stop_flushes(self, tmp_path):
        path = tmp_path / "state.json"
        cache = DeviceStateCache(str(path), save_interval=3600)
        cache.start()
        cache.set(IEEE, {"nwk": 0x5678})

        await cache.stop()

        assert json.loads(path.read_text()) == {IEEE: {"nwk": 0x5678}}
        assert cache._save_task is None
