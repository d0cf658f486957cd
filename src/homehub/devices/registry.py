"""Device registry: the single owner of device, room and scene state.

Commands are applied optimistically. Each device has one in-flight slot that
moves ``pending -> confirmed | rolled_back``; a newer command on the same
device supersedes the older one, whose late result is then discarded.
Confirmed changes are written to the KV store through a debounced writer.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable

from homehub.devices.base import DeviceAdapter, check_brightness, check_kelvin
from homehub.devices.hue import HueBridgeAdapter
from homehub.devices.mqtt import MqttDeviceAdapter
from homehub.models.device import (
    Device,
    DeviceProtocol,
    DeviceStatus,
    HttpBinding,
    HueBinding,
    MqttBinding,
)
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.models.room import Room
from homehub.models.scene import Scene
from homehub.state import keys
from homehub.state.kv_client import KVClient
from homehub.state.store import LocalStateStore
from homehub.state.writer import DebouncedWriter
from homehub.utils.errors import ErrorCategory, HomeHubError, ValidationError, classify_exception
from homehub.utils.health import DeviceHealth

logger = logging.getLogger(__name__)

# Failures that say something about reachability
REACHABILITY_ERRORS = {ErrorCategory.TIMEOUT.value, ErrorCategory.NETWORK.value}

AdapterCall = Callable[[DeviceAdapter, Device], Awaitable[AdapterResult]]


class CommandPhase(Enum):
    """Lifecycle of the command occupying a device's slot."""

    IDLE = "idle"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"


@dataclass
class PendingCommand:
    """The in-flight command slot for one device."""

    device_id: str
    operation: str
    token: int
    confirmed: dict[str, Any]
    optimistic: dict[str, Any]
    phase: CommandPhase = CommandPhase.PENDING
    started: datetime = field(default_factory=datetime.now)


class DeviceRegistry:
    """Holds all devices and routes commands to the adapter for their protocol."""

    def __init__(
        self,
        http: DeviceAdapter | None = None,
        mqtt: MqttDeviceAdapter | None = None,
        hue: HueBridgeAdapter | None = None,
        kv: KVClient | None = None,
        cache: LocalStateStore | None = None,
        persist_debounce: float = 0.5,
    ):
        self.http = http
        self.mqtt = mqtt
        self.hue = hue
        self.kv = kv
        self.cache = cache
        self._devices: dict[str, Device] = {}
        self._rooms: dict[str, Room] = {}
        self._scenes: dict[str, Scene] = {}
        self._slots: dict[str, PendingCommand] = {}
        self._health: dict[str, DeviceHealth] = {}
        self._mqtt_unsubscribers: dict[str, Callable[[], Awaitable[None]]] = {}
        self._tokens = count(1)
        self._writer = DebouncedWriter(self._write_key, delay=persist_debounce)
        self.active_scene: str | None = None

    # Queries

    def get_device(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def get_devices(self) -> list[Device]:
        return list(self._devices.values())

    def get_devices_by_protocol(self, protocol: DeviceProtocol) -> list[Device]:
        return [d for d in self._devices.values() if d.protocol is protocol]

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def get_rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def get_scene(self, scene_id: str) -> Scene | None:
        return self._scenes.get(scene_id)

    def get_scenes(self) -> list[Scene]:
        return list(self._scenes.values())

    def command_phase(self, device_id: str) -> CommandPhase:
        slot = self._slots.get(device_id)
        return slot.phase if slot else CommandPhase.IDLE

    def get_health_summary(self) -> dict[str, dict[str, Any]]:
        return {device_id: health.to_dict() for device_id, health in self._health.items()}

    def _require_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise ValidationError(f"Unknown device: {device_id}")
        return device

    def adapter_for(self, device: Device) -> DeviceAdapter:
        """Return the adapter owning ``device``.

        Raises:
            ValidationError: If the binding is unknown or its adapter is not configured
        """
        match device.binding:
            case HttpBinding():
                adapter = self.http
            case MqttBinding():
                adapter = self.mqtt
            case HueBinding():
                adapter = self.hue
            case other:
                raise ValidationError(
                    f"Device {device.id} has unsupported protocol binding {type(other).__name__}"
                )
        if adapter is None:
            raise ValidationError(
                f"No {device.protocol.value} adapter configured for device {device.id}"
            )
        return adapter

    # Loading and persistence

    async def load(self) -> None:
        """Load state from KV, falling back to the local cache when KV is unreachable."""
        try:
            await self.load_from_kv()
        except HomeHubError as e:
            logger.warning(f"KV unavailable ({e}), loading from local cache")
            await self.load_from_cache()

    async def load_from_kv(self) -> None:
        if self.kv is None:
            raise ValidationError("No KV client configured")
        data = {}
        for key in keys.ALL_KEYS:
            data[key] = await self.kv.get(key)
            if self.cache is not None and data[key] is not None:
                await self.cache.set(key, data[key])
        self._load(data)
        logger.info(f"Loaded {len(self._devices)} devices from KV")

    async def load_from_cache(self) -> None:
        data = {}
        if self.cache is not None:
            for key in keys.ALL_KEYS:
                data[key] = await self.cache.get(key)
        self._load(data)
        logger.info(f"Loaded {len(self._devices)} devices from local cache")

    def _load(self, data: dict[str, Any]) -> None:
        self._devices.clear()
        for entry in data.get(keys.DEVICES) or []:
            try:
                device = Device.from_dict(entry)
            except (ValidationError, KeyError, TypeError) as e:
                logger.warning(f"Skipping stored device {entry.get('id')!r}: {e}")
                continue
            self._devices[device.id] = device

        self._rooms = {}
        for entry in data.get(keys.ROOMS) or []:
            try:
                room = Room.from_dict(entry)
            except KeyError as e:
                logger.warning(f"Skipping stored room without {e}")
                continue
            self._rooms[room.id] = room

        self._scenes = {}
        for entry in data.get(keys.SCENES) or []:
            try:
                scene = Scene.from_dict(entry)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping stored scene: {e!r}")
                continue
            self._scenes[scene.id] = scene

        self.active_scene = data.get(keys.ACTIVE_SCENE)
        self._slots.clear()
        self._sync_rooms()

    def _sync_rooms(self) -> None:
        """Make every room's device list match the devices naming that room."""
        for room in self._rooms.values():
            members = [d.id for d in self._devices.values() if d.room == room.name]
            room.device_ids = [i for i in room.device_ids if i in members]
            for device_id in members:
                room.add_device(device_id)

    def _confirmed_view(self, device: Device) -> dict[str, Any]:
        slot = self._slots.get(device.id)
        if slot is None or slot.phase is not CommandPhase.PENDING:
            return device.to_dict()
        confirmed = copy.copy(device)
        confirmed.metadata = dict(device.metadata)
        confirmed.apply_state(slot.confirmed)
        return confirmed.to_dict()

    def _persist(self, key: str) -> None:
        match key:
            case keys.DEVICES:
                value: Any = [self._confirmed_view(d) for d in self._devices.values()]
            case keys.ROOMS:
                value = [r.to_dict() for r in self._rooms.values()]
            case keys.SCENES:
                value = [s.to_dict() for s in self._scenes.values()]
            case keys.ACTIVE_SCENE:
                value = self.active_scene
            case _:
                raise ValidationError(f"Registry does not own KV key {key}")
        self._writer.schedule(key, value)

    async def _write_key(self, key: str, value: Any) -> None:
        if self.cache is not None:
            await self.cache.set(key, value)
        if self.kv is not None:
            await self.kv.set(key, value)

    async def flush(self) -> bool:
        """Write pending changes now instead of waiting for the debounce window."""
        return await self._writer.flush()

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to state updates for every MQTT device."""
        for device in self.get_devices_by_protocol(DeviceProtocol.MQTT):
            await self._subscribe_mqtt(device)

    async def stop(self) -> None:
        """Drop subscriptions and flush pending KV writes."""
        for device_id, unsubscribe in list(self._mqtt_unsubscribers.items()):
            try:
                await unsubscribe()
            except HomeHubError as e:
                logger.warning(f"Failed to unsubscribe {device_id}: {e}")
        self._mqtt_unsubscribers.clear()
        await self._writer.close()

    async def _subscribe_mqtt(self, device: Device) -> None:
        if self.mqtt is None or device.id in self._mqtt_unsubscribers:
            return
        self._mqtt_unsubscribers[device.id] = await self.mqtt.subscribe_state(
            device, self.handle_state_update
        )

    # Device set changes

    async def add_device(self, device: Device, room_id: str | None = None) -> None:
        """Add or replace a device and persist the device list."""
        if room_id is not None:
            room = self._rooms.get(room_id)
            if room is None:
                raise ValidationError(f"Unknown room: {room_id}")
            device.room = room.name
        self._devices[device.id] = device
        self._health.pop(device.id, None)
        self._sync_rooms()
        if device.protocol is DeviceProtocol.MQTT:
            await self._subscribe_mqtt(device)
        self._persist(keys.DEVICES)
        self._persist(keys.ROOMS)
        logger.info(f"Added device {device.id} ({device.protocol.value})")

    async def remove_device(self, device_id: str) -> Device:
        device = self._require_device(device_id)
        del self._devices[device_id]
        self._slots.pop(device_id, None)
        self._health.pop(device_id, None)
        unsubscribe = self._mqtt_unsubscribers.pop(device_id, None)
        if unsubscribe is not None:
            await unsubscribe()
        for room in self._rooms.values():
            room.remove_device(device_id)
        self._persist(keys.DEVICES)
        self._persist(keys.ROOMS)
        return device

    def add_room(self, room: Room) -> None:
        if room.id in self._rooms:
            raise ValidationError(f"Room {room.id} already exists")
        self._rooms[room.id] = room
        self._sync_rooms()
        self._persist(keys.ROOMS)

    def move_device(self, device_id: str, room_id: str) -> None:
        """Assign a device to a room, keeping both sides consistent."""
        device = self._require_device(device_id)
        room = self._rooms.get(room_id)
        if room is None:
            raise ValidationError(f"Unknown room: {room_id}")
        for other in self._rooms.values():
            other.remove_device(device_id)
        device.room = room.name
        room.add_device(device_id)
        self._persist(keys.DEVICES)
        self._persist(keys.ROOMS)

    def add_scene(self, scene: Scene) -> None:
        self._scenes[scene.id] = scene
        self._persist(keys.SCENES)

    # Commands

    async def turn_on(self, device_id: str) -> AdapterResult:
        return await self._execute(
            device_id, "turn_on", {"enabled": True}, lambda a, d: a.turn_on(d)
        )

    async def turn_off(self, device_id: str) -> AdapterResult:
        return await self._execute(
            device_id, "turn_off", {"enabled": False}, lambda a, d: a.turn_off(d)
        )

    async def toggle(self, device_id: str) -> AdapterResult:
        device = self._require_device(device_id)
        return await self._execute(
            device_id, "toggle", {"enabled": not device.enabled}, lambda a, d: a.toggle(d)
        )

    async def set_brightness(self, device_id: str, percent: float) -> AdapterResult:
        if error := check_brightness(percent):
            raise ValidationError(error)
        return await self._execute(
            device_id, "set_brightness", {"value": percent},
            lambda a, d: a.set_brightness(d, percent),
        )

    async def set_color_temperature(self, device_id: str, kelvin: float) -> AdapterResult:
        if error := check_kelvin(kelvin):
            raise ValidationError(error)
        return await self._execute(
            device_id, "set_color_temperature", {},
            lambda a, d: a.set_color_temperature(d, kelvin),
        )

    async def set_color(self, device_id: str, color: str) -> AdapterResult:
        return await self._execute(
            device_id, "set_color", {}, lambda a, d: a.set_color(d, color)
        )

    async def _execute(
        self,
        device_id: str,
        operation: str,
        optimistic: dict[str, Any],
        call: AdapterCall,
    ) -> AdapterResult:
        """Apply ``optimistic``, run the adapter call, then confirm or roll back."""
        device = self._require_device(device_id)
        adapter = self.adapter_for(device)

        previous = self._slots.get(device_id)
        if previous is not None and previous.phase is CommandPhase.PENDING:
            previous.phase = CommandPhase.SUPERSEDED
            confirmed = previous.confirmed
            logger.debug(f"{operation} on {device_id} supersedes {previous.operation}")
        else:
            confirmed = device.snapshot()

        slot = PendingCommand(
            device_id=device_id,
            operation=operation,
            token=next(self._tokens),
            confirmed=dict(confirmed),
            optimistic=dict(optimistic),
        )
        self._slots[device_id] = slot
        target = copy.copy(device)
        device.apply_state(optimistic)

        try:
            result = await call(adapter, target)
        except asyncio.CancelledError:
            if self._slots.get(device_id) is slot and self._devices.get(device_id) is device:
                device.apply_state(slot.confirmed)
                slot.phase = CommandPhase.ROLLED_BACK
                logger.warning(f"{operation} on {device_id} cancelled, rolled back")
            else:
                slot.phase = CommandPhase.SUPERSEDED
            raise

        if self._slots.get(device_id) is not slot or self._devices.get(device_id) is not device:
            self._absorb_late_result(slot, result)
            return result

        if result.success:
            if result.new_state:
                device.apply_state(result.new_state)
            self._record_health(device, result)
            slot.phase = CommandPhase.CONFIRMED
            slot.confirmed = device.snapshot()
            self._persist(keys.DEVICES)
            logger.debug(f"{operation} on {device_id} confirmed")
        else:
            device.apply_state(slot.confirmed)
            self._record_health(device, result)
            slot.phase = CommandPhase.ROLLED_BACK
            logger.warning(
                f"{operation} on {device_id} failed ({result.error}), rolled back: {result.message}"
            )
        return result

    def _absorb_late_result(self, slot: PendingCommand, result: AdapterResult) -> None:
        """Handle a result whose command was superseded.

        The result is never applied to the live device. If it succeeded, it
        becomes the state a still-pending newer command rolls back to.
        """
        slot.phase = CommandPhase.SUPERSEDED
        current = self._slots.get(slot.device_id)
        if result.success and current is not None and current.phase is CommandPhase.PENDING:
            current.confirmed.update(slot.optimistic)
            if result.new_state:
                current.confirmed.update(
                    {k: v for k, v in result.new_state.items() if k in current.confirmed}
                )
        logger.debug(
            f"Discarded late {slot.operation} result for {slot.device_id} "
            f"(success={result.success})"
        )

    def _record_health(self, device: Device, result: AdapterResult) -> None:
        # MQTT publishes say nothing about the device itself
        if device.protocol is DeviceProtocol.MQTT:
            return
        health = self._health.setdefault(device.id, DeviceHealth(device_id=device.id))
        if result.success:
            status = health.record_success()
            if not (result.new_state and "status" in result.new_state):
                device.status = status
        elif result.error in REACHABILITY_ERRORS:
            device.status = health.record_failure()
            if device.status is DeviceStatus.OFFLINE:
                logger.warning(
                    f"Device {device.id} offline after {health.consecutive_failures} failures"
                )

    # State reconciliation

    async def refresh_device(self, device_id: str) -> AdapterResult:
        """Re-read a device and apply what it reports.

        Results are ignored while a command for the device is pending.
        """
        device = self._require_device(device_id)
        adapter = self.adapter_for(device)
        result = await adapter.get_state(copy.copy(device))

        if self._devices.get(device_id) is not device:
            return result
        if self.command_phase(device_id) is CommandPhase.PENDING:
            logger.debug(f"Ignoring refresh of {device_id}: command pending")
            return result

        before = device.to_dict()
        if result.success and result.new_state:
            device.apply_state(result.new_state)
        self._record_health(device, result)
        if device.to_dict() != before:
            self._persist(keys.DEVICES)
        return result

    async def refresh_all(
        self, protocols: tuple[DeviceProtocol, ...] = (DeviceProtocol.HTTP, DeviceProtocol.HUE)
    ) -> dict[str, AdapterResult]:
        """Refresh every device of the given protocols concurrently."""
        device_ids = [d.id for d in self._devices.values() if d.protocol in protocols]
        results = await asyncio.gather(
            *(self.refresh_device(i) for i in device_ids), return_exceptions=True
        )
        outcome: dict[str, AdapterResult] = {}
        for device_id, result in zip(device_ids, results):
            if isinstance(result, BaseException):
                error = classify_exception(result, device_id)
                logger.warning(f"Refresh of {device_id} failed: {error.message}")
                result = AdapterResult.failure(error.category, error.message)
            outcome[device_id] = result
        return outcome

    def handle_state_update(self, device_id: str, state: dict[str, Any]) -> None:
        """Apply a pushed state report. Reports apply in arrival order."""
        device = self._devices.get(device_id)
        if device is None:
            logger.debug(f"State update for unknown device {device_id}")
            return
        device.apply_state(state)
        slot = self._slots.get(device_id)
        if slot is not None and slot.phase is CommandPhase.PENDING:
            slot.confirmed.update({k: v for k, v in state.items() if k in slot.confirmed})
        self._persist(keys.DEVICES)

    # Scenes and discovery

    async def activate_scene(self, scene_id: str) -> dict[str, AdapterResult]:
        """Drive every device in the scene to its target state.

        Unknown device ids are skipped. Returns the final result per device.
        """
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise ValidationError(f"Unknown scene: {scene_id}")

        async def apply(device_id: str, enabled: bool, value: float | None) -> AdapterResult:
            try:
                if not enabled:
                    return await self.turn_off(device_id)
                result = await self.turn_on(device_id)
                if result.success and value is not None:
                    result = await self.set_brightness(device_id, value)
                return result
            except ValidationError as e:
                logger.warning(f"Scene {scene_id} could not drive {device_id}: {e}")
                return AdapterResult.failure(ErrorCategory.VALIDATION, str(e))

        targets = []
        for target in scene.device_states:
            if target.device_id not in self._devices:
                logger.warning(f"Scene {scene_id} skips unknown device {target.device_id}")
                continue
            if target.value is not None and check_brightness(target.value):
                logger.warning(f"Scene {scene_id} skips {target.device_id}: bad value {target.value}")
                continue
            targets.append(target)

        results = await asyncio.gather(
            *(apply(t.device_id, t.enabled, t.value) for t in targets)
        )
        scene.last_activated = datetime.now()
        self.active_scene = scene_id
        self._persist(keys.SCENES)
        self._persist(keys.ACTIVE_SCENE)

        failed = [t.device_id for t, r in zip(targets, results) if not r.success]
        logger.info(
            f"Activated scene {scene.name}: {len(targets) - len(failed)}/{len(targets)} devices"
        )
        return {t.device_id: r for t, r in zip(targets, results)}

    async def discover_devices(self) -> list[Device]:
        """Find MQTT and Hue devices and add the ones not yet known."""
        found: list[DiscoveredDevice] = []
        if self.mqtt is not None:
            try:
                found.extend(await self.mqtt.discover())
            except HomeHubError as e:
                logger.warning(f"MQTT discovery failed: {e}")
        if self.hue is not None:
            try:
                found.extend(await self.hue.list_lights())
            except Exception as e:
                error = classify_exception(e)
                logger.warning(f"Hue discovery failed: [{error.code}] {error.message}")

        added = []
        for discovered in found:
            if discovered.id in self._devices:
                continue
            try:
                device = Device.from_dict(discovered.to_device_dict())
            except ValidationError as e:
                logger.warning(f"Ignoring discovered device {discovered.id}: {e}")
                continue
            await self.add_device(device)
            added.append(device)
        logger.info(f"Discovery added {len(added)} of {len(found)} devices")
        return added
