"""MQTT device adapter.

Commands are fire-and-forget: a successful QoS 1 publish to
``{prefix}/set`` is reported as success, and the authoritative state arrives
later on ``{prefix}/state``.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from homehub.devices.base import DeviceAdapter, check_brightness
from homehub.models.device import (
    Capability,
    Device,
    DeviceProtocol,
    DeviceStatus,
    DeviceType,
    MqttBinding,
)
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.mqtt import topics
from homehub.mqtt.connection import ConnectionManager
from homehub.utils.errors import DEFAULT_DEVICE_TIMEOUT, ErrorCategory, ValidationError

logger = logging.getLogger(__name__)

StateCallback = Callable[[str, dict[str, Any]], Awaitable[None] | None]


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now()


def parse_state_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """Map a device's state message onto partial ``Device`` state fields.

    Accepts either ``enabled`` or a Zigbee2MQTT-style ``state: "ON"``, and
    ``value`` or ``brightness``.
    """
    state: dict[str, Any] = {}
    if "enabled" in raw:
        state["enabled"] = bool(raw["enabled"])
    elif "state" in raw:
        state["enabled"] = str(raw["state"]).upper() == "ON"

    value = raw.get("value", raw.get("brightness"))
    if value is not None:
        state["value"] = value
    if "unit" in raw:
        state["unit"] = raw["unit"]

    try:
        state["status"] = DeviceStatus(raw.get("status") or DeviceStatus.ONLINE.value)
    except ValueError:
        state["status"] = DeviceStatus.ONLINE
    state["last_seen"] = _parse_time(raw.get("lastSeen"))

    if "signalStrength" in raw:
        state["signal_strength"] = raw["signalStrength"]
    if "batteryLevel" in raw:
        state["battery_level"] = raw["batteryLevel"]
    if raw.get("metadata"):
        state["metadata"] = dict(raw["metadata"])
    return state


def parse_announcement(raw: dict[str, Any]) -> DiscoveredDevice:
    """Build a DiscoveredDevice from an announce message.

    Raises:
        ValidationError: If the id is missing or the type unknown
    """
    device_id = raw.get("id")
    if not device_id:
        raise ValidationError("Announcement has no device id")
    try:
        device_type = DeviceType(raw.get("type", DeviceType.SENSOR.value))
    except ValueError:
        raise ValidationError(f"Announcement for {device_id} has unknown type") from None

    capabilities = set()
    for name in raw.get("capabilities") or []:
        try:
            capabilities.add(Capability(name))
        except ValueError:
            continue

    config = {"mqttTopic": raw["topic"]} if raw.get("topic") else {}
    return DiscoveredDevice(
        id=device_id,
        name=raw.get("name") or device_id,
        type=device_type,
        protocol=DeviceProtocol.MQTT.value,
        config=config,
        capabilities=capabilities,
        state=dict(raw.get("metadata") or {}),
    )


def _decode(payload: bytes) -> dict[str, Any]:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class MqttDeviceAdapter(DeviceAdapter):
    """Publishes commands and consumes state over the shared MQTT connection."""

    protocol = DeviceProtocol.MQTT

    def __init__(
        self,
        connection: ConnectionManager,
        timeout: float = DEFAULT_DEVICE_TIMEOUT,
        confirm_timeout: float = DEFAULT_DEVICE_TIMEOUT,
        discovery_wait: float = 2.0,
    ):
        super().__init__(timeout)
        self.connection = connection
        self.confirm_timeout = confirm_timeout
        self.discovery_wait = discovery_wait

    def _prefix(self, device: Device) -> str:
        match device.binding:
            case MqttBinding(topic=topic):
                return topic
            case other:
                raise ValidationError(
                    f"Device {device.id} is bound to {type(other).__name__}, not MQTT"
                )

    async def _send(self, device: Device, command: str, value: Any = None) -> AdapterResult:
        if not self.connection.is_connected:
            return AdapterResult.failure(ErrorCategory.NOT_CONNECTED, "MQTT broker not connected")

        async def _publish() -> AdapterResult:
            payload: dict[str, Any] = {
                "command": command,
                "timestamp": datetime.now().isoformat(),
            }
            if value is not None:
                payload["value"] = value
            await self.connection.publish(topics.set_topic(self._prefix(device)), payload, qos=1)
            logger.debug(f"Sent {command} to {device.id}")
            return AdapterResult.ok()

        return await self.guarded(device, command, _publish)

    async def turn_on(self, device: Device) -> AdapterResult:
        return await self._send(device, "on")

    async def turn_off(self, device: Device) -> AdapterResult:
        return await self._send(device, "off")

    async def toggle(self, device: Device) -> AdapterResult:
        return await self._send(device, "toggle")

    async def set_brightness(self, device: Device, percent: float) -> AdapterResult:
        if error := check_brightness(percent):
            return self.invalid(error)
        return await self._send(device, "setBrightness", round(percent))

    async def get_state(self, device: Device) -> AdapterResult:
        """Ask the device to republish its state and wait for it.

        The wait is bounded by ``confirm_timeout``, independent of the publish.
        """
        if not self.connection.is_connected:
            return AdapterResult.failure(ErrorCategory.NOT_CONNECTED, "MQTT broker not connected")

        async def _request() -> AdapterResult:
            prefix = self._prefix(device)
            received: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

            def on_state(topic: str, payload: bytes) -> None:
                if received.done():
                    return
                try:
                    received.set_result(parse_state_payload(_decode(payload)))
                except ValueError as e:
                    logger.warning(f"Ignoring malformed state from {device.id}: {e}")

            unsubscribe = await self.connection.subscribe(topics.state_topic(prefix), on_state)
            try:
                await self.connection.publish(
                    topics.get_topic(prefix),
                    {"command": "get_state", "timestamp": datetime.now().isoformat()},
                    qos=1,
                )
                return AdapterResult.ok(await received)
            finally:
                await unsubscribe()

        return await self.guarded(device, "get_state", _request, timeout=self.confirm_timeout)

    async def subscribe_state(
        self, device: Device, callback: StateCallback
    ) -> Callable[[], Awaitable[None]]:
        """Deliver every state message for ``device`` to ``callback(device_id, state)``.

        Messages are delivered in arrival order. Returns an async unsubscribe.
        """
        device_id = device.id

        async def on_state(topic: str, payload: bytes) -> None:
            try:
                state = parse_state_payload(_decode(payload))
            except ValueError as e:
                logger.warning(f"Ignoring malformed state from {device_id}: {e}")
                return
            result = callback(device_id, state)
            if asyncio.iscoroutine(result):
                await result

        return await self.connection.subscribe(
            topics.state_topic(self._prefix(device)), on_state
        )

    async def discover(self) -> list[DiscoveredDevice]:
        """Prompt devices to re-announce and collect them for ``discovery_wait`` seconds."""
        if not self.connection.is_connected:
            logger.warning("MQTT discovery skipped: broker not connected")
            return []

        found: dict[str, DiscoveredDevice] = {}

        def on_announce(topic: str, payload: bytes) -> None:
            try:
                device = parse_announcement(_decode(payload))
            except (ValueError, ValidationError) as e:
                logger.warning(f"Ignoring malformed announcement: {e}")
                return
            found[device.id] = device

        unsubscribe = await self.connection.subscribe(topics.DISCOVERY_ANNOUNCE, on_announce)
        try:
            await self.connection.publish(
                topics.SYSTEM_STATUS,
                {"action": "discover", "timestamp": datetime.now().isoformat()},
                qos=1,
            )
            await asyncio.sleep(self.discovery_wait)
        finally:
            await unsubscribe()

        logger.info(f"MQTT discovery found {len(found)} devices")
        return list(found.values())
