"""Tests for DeviceRegistry."""

import asyncio

import pytest

from conftest import FakeAdapter, FakeKV
from homehub.devices.registry import CommandPhase, DeviceRegistry
from homehub.models.device import (
    Device,
    DeviceProtocol,
    DeviceStatus,
    DeviceType,
    HttpBinding,
)
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.models.room import Room
from homehub.state.store import LocalStateStore
from homehub.utils.errors import ErrorCategory, ValidationError


class TestLoading:
    """Tests for loading state from KV and cache."""

    @pytest.mark.asyncio
    async def test_loads_known_protocols_only(self, registry):
        """Devices with an unknown protocol are skipped, not defaulted."""
        ids = {d.id for d in registry.get_devices()}
        assert ids == {"shelly-1", "mqtt-1", "hue-39"}
        assert registry.get_device("zig-1") is None

    @pytest.mark.asyncio
    async def test_rooms_match_device_rooms(self, registry):
        """Room membership is rebuilt from each device's room."""
        living = registry.get_room("living")
        assert set(living.device_ids) == {"hue-39", "mqtt-1"}
        assert living.device_count == 2
        assert registry.get_room("kitchen").device_ids == ["shelly-1"]

    @pytest.mark.asyncio
    async def test_falls_back_to_cache(self, sample_data, tmp_path):
        """When KV is down, state comes from the local cache."""
        cache = LocalStateStore(tmp_path / "cache.db")
        await cache.initialize()
        await cache.set("devices", sample_data["devices"][:1])

        kv = FakeKV()
        kv.fail = True
        registry = DeviceRegistry(http=FakeAdapter(DeviceProtocol.HTTP), kv=kv, cache=cache)
        await registry.load()

        assert [d.id for d in registry.get_devices()] == ["shelly-1"]
        await cache.close()

    @pytest.mark.asyncio
    async def test_kv_load_mirrors_into_cache(self, fake_kv, tmp_path):
        cache = LocalStateStore(tmp_path / "cache.db")
        await cache.initialize()
        registry = DeviceRegistry(kv=fake_kv, cache=cache)

        await registry.load_from_kv()

        cached = await cache.get("devices")
        assert [d["id"] for d in cached] == [d["id"] for d in fake_kv.data["devices"]]
        await cache.close()


class TestDispatch:
    """Tests for routing commands to the matching adapter."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "device_id,protocol",
        [("shelly-1", "http"), ("mqtt-1", "mqtt"), ("hue-39", "hue")],
    )
    async def test_invokes_matching_adapter_only(
        self, registry, http_adapter, mqtt_adapter, hue_adapter, device_id, protocol
    ):
        adapters = {"http": http_adapter, "mqtt": mqtt_adapter, "hue": hue_adapter}

        await registry.turn_on(device_id)

        for name, adapter in adapters.items():
            expected = [("turn_on", device_id, None)] if name == protocol else []
            assert adapter.calls == expected

    @pytest.mark.asyncio
    async def test_unknown_device_rejected(self, registry):
        with pytest.raises(ValidationError):
            await registry.turn_on("nope")

    @pytest.mark.asyncio
    async def test_unknown_binding_rejected(self, registry, http_adapter, mqtt_adapter, hue_adapter):
        """A device whose binding no adapter owns never reaches any adapter."""

        class ZigbeeBinding:
            pass

        device = Device(
            id="odd", name="Odd", type=DeviceType.SENSOR, binding=HttpBinding("http://x")
        )
        await registry.add_device(device)
        device.binding = ZigbeeBinding()

        with pytest.raises(ValidationError):
            await registry.turn_on("odd")
        assert device.enabled is False
        assert http_adapter.calls == mqtt_adapter.calls == hue_adapter.calls == []

    @pytest.mark.asyncio
    async def test_missing_adapter_rejected(self, fake_kv):
        registry = DeviceRegistry(http=FakeAdapter(DeviceProtocol.HTTP), kv=fake_kv)
        await registry.load()

        with pytest.raises(ValidationError):
            await registry.turn_on("hue-39")
        assert registry.get_device("hue-39").enabled is False

    @pytest.mark.asyncio
    async def test_out_of_range_rejected_before_mutation(self, registry, hue_adapter):
        device = registry.get_device("hue-39")

        with pytest.raises(ValidationError):
            await registry.set_brightness("hue-39", 150)
        with pytest.raises(ValidationError):
            await registry.set_color_temperature("hue-39", 1000)

        assert device.value == 20
        assert hue_adapter.calls == []

    @pytest.mark.asyncio
    async def test_toggle_flips_state(self, registry, http_adapter):
        result = await registry.toggle("shelly-1")

        assert result.success
        assert registry.get_device("shelly-1").enabled is True
        assert http_adapter.calls == [("toggle", "shelly-1", None)]


class TestReconciliation:
    """Tests for optimistic updates, rollback and supersede."""

    @pytest.mark.asyncio
    async def test_optimistic_state_while_pending(self, registry, hue_adapter):
        gate = asyncio.Event()
        hue_adapter.gates = [gate]

        task = asyncio.create_task(registry.turn_on("hue-39"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert registry.get_device("hue-39").enabled is True
        assert registry.command_phase("hue-39") is CommandPhase.PENDING

        gate.set()
        await task
        assert registry.command_phase("hue-39") is CommandPhase.CONFIRMED

    @pytest.mark.asyncio
    async def test_success_applies_new_state(self, registry, hue_adapter):
        hue_adapter.results = [AdapterResult.ok({"enabled": True, "value": 64})]

        await registry.turn_on("hue-39")

        device = registry.get_device("hue-39")
        assert device.enabled is True
        assert device.value == 64

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, registry, hue_adapter):
        """A failed command leaves the device exactly as before dispatch."""
        device = registry.get_device("hue-39")
        before = device.snapshot()
        hue_adapter.results = [AdapterResult.failure(ErrorCategory.PROTOCOL, "bad")]

        result = await registry.set_brightness("hue-39", 80)

        assert result.success is False
        assert result.error == "protocol"
        assert device.snapshot() == before
        assert registry.command_phase("hue-39") is CommandPhase.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_cancelled_command_rolls_back(self, registry, hue_adapter):
        """A caller giving up mid-command leaves the device as before dispatch."""
        device = registry.get_device("hue-39")
        before = device.snapshot()
        hue_adapter.gates = [asyncio.Event()]

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(registry.turn_on("hue-39"), 0.05)

        assert device.snapshot() == before
        assert registry.command_phase("hue-39") is CommandPhase.ROLLED_BACK

        hue_adapter.results = [AdapterResult.ok({"enabled": True})]
        await registry.refresh_device("hue-39")
        assert device.enabled is True

    @pytest.mark.asyncio
    async def test_newer_command_supersedes_late_result(self, registry, hue_adapter):
        """C1 dispatched first but resolving last does not override C2."""
        slow = asyncio.Event()
        hue_adapter.gates = [slow, None]
        hue_adapter.results = [
            AdapterResult.ok({"value": 30}),
            AdapterResult.ok({"value": 70}),
        ]

        first = asyncio.create_task(registry.set_brightness("hue-39", 30))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        second = await registry.set_brightness("hue-39", 70)
        slow.set()
        late = await first

        assert second.success and late.success
        assert registry.get_device("hue-39").value == 70
        assert registry.command_phase("hue-39") is CommandPhase.CONFIRMED

    @pytest.mark.asyncio
    async def test_late_failure_does_not_roll_back_newer_command(self, registry, hue_adapter):
        slow = asyncio.Event()
        hue_adapter.gates = [slow, None]
        hue_adapter.results = [
            AdapterResult.failure(ErrorCategory.TIMEOUT, "slow"),
            AdapterResult.ok(),
        ]

        first = asyncio.create_task(registry.turn_off("hue-39"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await registry.turn_on("hue-39")
        slow.set()
        await first

        device = registry.get_device("hue-39")
        assert device.enabled is True
        assert device.status is DeviceStatus.ONLINE

    @pytest.mark.asyncio
    async def test_superseded_then_failed_rolls_back_to_confirmed(self, registry, hue_adapter):
        """When the newer command fails, state returns to the last confirmed value."""
        slow = asyncio.Event()
        hue_adapter.gates = [slow, None]
        hue_adapter.results = [
            AdapterResult.failure(ErrorCategory.TIMEOUT, "slow"),
            AdapterResult.failure(ErrorCategory.PROTOCOL, "rejected"),
        ]

        first = asyncio.create_task(registry.set_brightness("hue-39", 40))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await registry.set_brightness("hue-39", 90)
        slow.set()
        await first

        assert registry.get_device("hue-39").value == 20

    @pytest.mark.asyncio
    async def test_turn_on_is_idempotent(self, registry, http_adapter):
        first = await registry.turn_on("shelly-1")
        second = await registry.turn_on("shelly-1")

        assert first.success and second.success
        assert registry.get_device("shelly-1").enabled is True

    @pytest.mark.asyncio
    async def test_mqtt_fire_and_forget_keeps_optimistic_state(self, registry, mqtt_adapter):
        result = await registry.turn_on("mqtt-1")

        assert result.success
        assert result.new_state is None
        assert registry.get_device("mqtt-1").enabled is True


class TestHealth:
    """Tests for reachability tracking."""

    @pytest.mark.asyncio
    async def test_consecutive_timeouts_mark_offline(self, registry, http_adapter):
        http_adapter.results = [
            AdapterResult.failure(ErrorCategory.TIMEOUT, "t1"),
            AdapterResult.failure(ErrorCategory.TIMEOUT, "t2"),
        ]
        device = registry.get_device("shelly-1")

        await registry.turn_on("shelly-1")
        assert device.status is DeviceStatus.WARNING
        assert device.enabled is False

        await registry.turn_on("shelly-1")
        assert device.status is DeviceStatus.OFFLINE
        assert registry.get_health_summary()["shelly-1"]["consecutive_failures"] == 2

    @pytest.mark.asyncio
    async def test_success_restores_online(self, registry, http_adapter):
        http_adapter.results = [
            AdapterResult.failure(ErrorCategory.NETWORK, "down"),
            AdapterResult.ok({"enabled": True}),
        ]

        await registry.turn_on("shelly-1")
        await registry.turn_on("shelly-1")

        assert registry.get_device("shelly-1").status is DeviceStatus.ONLINE

    @pytest.mark.asyncio
    async def test_unsupported_does_not_affect_health(self, registry, http_adapter):
        http_adapter.results = [AdapterResult.failure(ErrorCategory.UNSUPPORTED, "no")]

        await registry.set_brightness("shelly-1", 50)

        assert registry.get_device("shelly-1").status is DeviceStatus.ONLINE


class TestPersistence:
    """Tests for debounced KV writes."""

    @pytest.mark.asyncio
    async def test_confirmed_change_reaches_kv_after_debounce(self, registry, fake_kv):
        await registry.set_brightness("hue-39", 55)
        assert "devices" not in fake_kv.sets

        await asyncio.sleep(0.15)

        stored = {d["id"]: d for d in fake_kv.data["devices"]}
        assert stored["hue-39"]["value"] == 55

    @pytest.mark.asyncio
    async def test_burst_is_coalesced(self, registry, fake_kv):
        await registry.turn_on("shelly-1")
        await registry.turn_on("hue-39")
        await registry.turn_off("shelly-1")

        await asyncio.sleep(0.15)

        assert fake_kv.sets.count("devices") == 1
        stored = {d["id"]: d for d in fake_kv.data["devices"]}
        assert stored["shelly-1"]["enabled"] is False
        assert stored["hue-39"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_rollback_is_not_persisted(self, registry, hue_adapter, fake_kv):
        hue_adapter.results = [AdapterResult.failure(ErrorCategory.TIMEOUT, "t")]

        await registry.turn_on("hue-39")
        await asyncio.sleep(0.15)

        assert "devices" not in fake_kv.sets

    @pytest.mark.asyncio
    async def test_pending_command_persists_confirmed_value(self, registry, hue_adapter, fake_kv):
        gate = asyncio.Event()
        hue_adapter.gates = [gate]
        task = asyncio.create_task(registry.turn_on("hue-39"))
        await asyncio.sleep(0)

        await registry.turn_on("shelly-1")
        await registry.flush()

        stored = {d["id"]: d for d in fake_kv.data["devices"]}
        assert stored["shelly-1"]["enabled"] is True
        assert stored["hue-39"]["enabled"] is False
        gate.set()
        await task

    @pytest.mark.asyncio
    async def test_stop_flushes_pending_writes(self, http_adapter, fake_kv):
        registry = DeviceRegistry(http=http_adapter, kv=fake_kv, persist_debounce=10)
        await registry.load()

        await registry.turn_on("shelly-1")
        await registry.stop()

        stored = {d["id"]: d for d in fake_kv.data["devices"]}
        assert stored["shelly-1"]["enabled"] is True


class TestStateUpdates:
    """Tests for pushed MQTT state and polling."""

    @pytest.mark.asyncio
    async def test_start_subscribes_mqtt_devices(self, registry, mqtt_adapter):
        await registry.start()

        assert set(mqtt_adapter.state_callbacks) == {"mqtt-1"}

        await registry.stop()
        assert mqtt_adapter.state_callbacks == {}

    @pytest.mark.asyncio
    async def test_state_updates_apply_last_write_wins(self, registry, mqtt_adapter):
        await registry.start()
        callback = mqtt_adapter.state_callbacks["mqtt-1"]

        callback("mqtt-1", {"enabled": True, "value": 10})
        callback("mqtt-1", {"enabled": False, "value": 40})

        device = registry.get_device("mqtt-1")
        assert device.enabled is False
        assert device.value == 40

    @pytest.mark.asyncio
    async def test_state_update_for_unknown_device_ignored(self, registry):
        registry.handle_state_update("ghost", {"enabled": True})
        assert registry.get_device("ghost") is None

    @pytest.mark.asyncio
    async def test_refresh_applies_reported_state(self, registry, hue_adapter):
        hue_adapter.results = [AdapterResult.ok({"enabled": True, "value": 99})]

        await registry.refresh_device("hue-39")

        assert registry.get_device("hue-39").value == 99

    @pytest.mark.asyncio
    async def test_refresh_ignored_while_pending(self, registry, hue_adapter):
        gate = asyncio.Event()
        hue_adapter.gates = [gate, None]
        hue_adapter.results = [AdapterResult.ok(), AdapterResult.ok({"enabled": False})]

        task = asyncio.create_task(registry.turn_on("hue-39"))
        await asyncio.sleep(0)
        await registry.refresh_device("hue-39")

        assert registry.get_device("hue-39").enabled is True
        gate.set()
        await task

    @pytest.mark.asyncio
    async def test_refresh_all_skips_mqtt(self, registry, http_adapter, mqtt_adapter, hue_adapter):
        results = await registry.refresh_all()

        assert set(results) == {"shelly-1", "hue-39"}
        assert mqtt_adapter.calls == []


class TestRoomsAndScenes:
    """Tests for room membership, scenes and discovery."""

    @pytest.mark.asyncio
    async def test_move_device_updates_both_rooms(self, registry):
        registry.move_device("mqtt-1", "kitchen")

        assert registry.get_device("mqtt-1").room == "Kitchen"
        assert "mqtt-1" not in registry.get_room("living").device_ids
        assert "mqtt-1" in registry.get_room("kitchen").device_ids

    @pytest.mark.asyncio
    async def test_add_room_collects_existing_devices(self, registry):
        registry.add_room(Room(id="garage", name="Garage"))
        assert registry.get_room("garage").device_count == 0

        with pytest.raises(ValidationError):
            registry.add_room(Room(id="garage", name="Garage"))

    @pytest.mark.asyncio
    async def test_activate_scene_skips_unknown_devices(
        self, registry, http_adapter, hue_adapter, fake_kv
    ):
        results = await registry.activate_scene("movie")

        assert set(results) == {"hue-39", "shelly-1"}
        assert hue_adapter.calls == [
            ("turn_on", "hue-39", None),
            ("set_brightness", "hue-39", 30),
        ]
        assert http_adapter.calls == [("turn_off", "shelly-1", None)]
        assert registry.get_scene("movie").last_activated is not None

        await registry.flush()
        assert fake_kv.data["active-scene"] == "movie"

    @pytest.mark.asyncio
    async def test_unknown_scene_rejected(self, registry):
        with pytest.raises(ValidationError):
            await registry.activate_scene("party")

    @pytest.mark.asyncio
    async def test_discovery_adds_new_devices_only(self, registry, mqtt_adapter, hue_adapter):
        mqtt_adapter.discovered = [
            DiscoveredDevice(id="mqtt-1", name="Dup", type=DeviceType.LIGHT, protocol="mqtt"),
            DiscoveredDevice(id="mqtt-2", name="Fan", type=DeviceType.SWITCH, protocol="mqtt"),
        ]
        hue_adapter.discovered = [
            DiscoveredDevice(
                id="hue-7", name="Desk", type=DeviceType.LIGHT, protocol="hue",
                config={"lightId": 7},
            ),
        ]

        added = await registry.discover_devices()

        assert {d.id for d in added} == {"mqtt-2", "hue-7"}
        assert registry.get_device("mqtt-2").room == "Unassigned"
        assert "mqtt-2" in mqtt_adapter.state_callbacks
