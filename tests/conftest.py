"""Pytest configuration and fixtures for HomeHub tests."""

import asyncio
import copy
import inspect
import json
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from homehub.devices.base import DeviceAdapter
from homehub.devices.registry import DeviceRegistry
from homehub.models.device import DeviceProtocol
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.mqtt.topics import match_topic
from homehub.utils.errors import NetworkError, NotConnectedError


class FakeAdapter(DeviceAdapter):
    """Scriptable adapter for registry tests.

    ``results`` and ``gates`` are consumed in call order. A gate holds the
    call until the test sets it.
    """

    def __init__(self, protocol: DeviceProtocol):
        super().__init__(timeout=1.0)
        self.protocol = protocol
        self.calls: list[tuple[str, str, Any]] = []
        self.results: list[AdapterResult] = []
        self.gates: list[asyncio.Event | None] = []
        self.state_callbacks: dict[str, Any] = {}
        self.discovered: list[DiscoveredDevice] = []

    async def _handle(self, operation: str, device, arg: Any = None) -> AdapterResult:
        self.calls.append((operation, device.id, arg))
        gate = self.gates.pop(0) if self.gates else None
        result = self.results.pop(0) if self.results else AdapterResult.ok()
        if gate is not None:
            await gate.wait()
        return result

    async def turn_on(self, device):
        return await self._handle("turn_on", device)

    async def turn_off(self, device):
        return await self._handle("turn_off", device)

    async def toggle(self, device):
        return await self._handle("toggle", device)

    async def set_brightness(self, device, percent):
        return await self._handle("set_brightness", device, percent)

    async def set_color_temperature(self, device, kelvin):
        return await self._handle("set_color_temperature", device, kelvin)

    async def get_state(self, device):
        return await self._handle("get_state", device)

    async def subscribe_state(self, device, callback):
        self.state_callbacks[device.id] = callback

        async def unsubscribe() -> None:
            self.state_callbacks.pop(device.id, None)

        return unsubscribe

    async def discover(self):
        return list(self.discovered)

    async def list_lights(self):
        return list(self.discovered)


class FakeKV:
    """In-memory stand-in for KVClient."""

    def __init__(self, data: dict[str, Any] | None = None):
        self.data = copy.deepcopy(data or {})
        self.sets: list[str] = []
        self.fail = False

    async def get(self, key: str) -> Any:
        if self.fail:
            raise NetworkError("KV unreachable")
        return copy.deepcopy(self.data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if self.fail:
            raise NetworkError("KV unreachable")
        self.data[key] = copy.deepcopy(value)
        self.sets.append(key)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FakeConnection:
    """Stand-in for ConnectionManager used by MQTT adapter tests."""

    def __init__(self, connected: bool = True):
        self.is_connected = connected
        self.published: list[tuple[str, Any, int]] = []
        self.handlers: dict[str, list[Any]] = {}
        self.on_publish = None

    async def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> None:
        if not self.is_connected:
            raise NotConnectedError()
        self.published.append((topic, payload, qos))
        if self.on_publish is not None:
            await self.on_publish(topic, payload)

    async def subscribe(self, topic: str, handler: Any):
        self.handlers.setdefault(topic, []).append(handler)

        async def unsubscribe() -> None:
            self.handlers[topic].remove(handler)

        return unsubscribe

    async def deliver(self, topic: str, payload: dict[str, Any] | bytes) -> None:
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        for pattern, handlers in list(self.handlers.items()):
            if match_topic(topic, pattern):
                for handler in list(handlers):
                    result = handler(topic, data)
                    if inspect.isawaitable(result):
                        await result


SAMPLE_DEVICES = [
    {
        "id": "shelly-1",
        "name": "Kitchen Plug",
        "type": "plug",
        "room": "Kitchen",
        "status": "online",
        "enabled": False,
        "protocol": "http",
        "config": {"httpEndpoint": "http://192.168.1.50"},
    },
    {
        "id": "mqtt-1",
        "name": "Sofa Lamp",
        "type": "light",
        "room": "Living Room",
        "status": "online",
        "enabled": False,
        "value": 0,
        "unit": "%",
        "protocol": "mqtt",
        "capabilities": ["dimming"],
        "config": {"mqttTopic": "homehub/devices/mqtt-1"},
    },
    {
        "id": "hue-39",
        "name": "Ceiling",
        "type": "light",
        "room": "Living Room",
        "status": "online",
        "enabled": False,
        "value": 20,
        "unit": "%",
        "protocol": "hue",
        "capabilities": ["dimming", "color", "color-temp"],
        "config": {"lightId": 39},
    },
    {
        "id": "zig-1",
        "name": "Zigbee Thing",
        "type": "sensor",
        "protocol": "zigbee",
        "config": {},
    },
]

SAMPLE_ROOMS = [
    {"id": "living", "name": "Living Room", "icon": "couch", "deviceIds": ["hue-39"]},
    {"id": "kitchen", "name": "Kitchen", "deviceIds": []},
]

SAMPLE_SCENES = [
    {
        "id": "movie",
        "name": "Movie Night",
        "deviceStates": [
            {"deviceId": "hue-39", "enabled": True, "value": 30},
            {"deviceId": "shelly-1", "enabled": False},
            {"deviceId": "ghost", "enabled": True},
        ],
    }
]


@pytest.fixture
def sample_data() -> dict[str, Any]:
    return {
        "devices": copy.deepcopy(SAMPLE_DEVICES),
        "rooms": copy.deepcopy(SAMPLE_ROOMS),
        "scenes": copy.deepcopy(SAMPLE_SCENES),
    }


@pytest.fixture
def fake_kv(sample_data) -> FakeKV:
    return FakeKV(sample_data)


@pytest.fixture
def http_adapter() -> FakeAdapter:
    return FakeAdapter(DeviceProtocol.HTTP)


@pytest.fixture
def mqtt_adapter() -> FakeAdapter:
    return FakeAdapter(DeviceProtocol.MQTT)


@pytest.fixture
def hue_adapter() -> FakeAdapter:
    return FakeAdapter(DeviceProtocol.HUE)


@pytest.fixture
async def registry(http_adapter, mqtt_adapter, hue_adapter, fake_kv):
    """Registry loaded from the sample KV data, with a short debounce."""
    registry = DeviceRegistry(
        http=http_adapter,
        mqtt=mqtt_adapter,
        hue=hue_adapter,
        kv=fake_kv,
        persist_debounce=0.05,
    )
    await registry.load()
    yield registry
    await registry.stop()
