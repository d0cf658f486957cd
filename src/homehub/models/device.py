"""Device model shared by every protocol adapter.

A device's transport is carried by its binding: an ``HttpBinding``,
``MqttBinding`` or ``HueBinding``. The binding type decides which adapter
owns the device and how its config is interpreted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from homehub.mqtt.topics import device_topic
from homehub.utils.errors import ValidationError

UNASSIGNED_ROOM = "Unassigned"


class DeviceType(Enum):
    """Types of supported devices."""

    LIGHT = "light"
    THERMOSTAT = "thermostat"
    SENSOR = "sensor"
    PLUG = "plug"
    SWITCH = "switch"
    CAMERA = "camera"
    SECURITY = "security"


class DeviceStatus(Enum):
    """Device connection status."""

    ONLINE = "online"
    OFFLINE = "offline"
    WARNING = "warning"
    ERROR = "error"


class DeviceProtocol(Enum):
    """Transports a device can be reached over."""

    HTTP = "http"
    MQTT = "mqtt"
    HUE = "hue"

    @classmethod
    def parse(cls, value: Any) -> "DeviceProtocol":
        """Parse a protocol name, rejecting anything unknown."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown device protocol: {value!r}") from None


class Capability(Enum):
    """Optional operations beyond on/off."""

    DIMMING = "dimming"
    COLOR = "color"
    COLOR_TEMP = "color-temp"


@dataclass(frozen=True)
class HttpBinding:
    """Device reachable at ``endpoint`` (``http://ip:port``).

    ``preset`` names the device's API: ``shelly`` (the default), ``tplink``
    or ``generic``.
    """

    endpoint: str
    switch_id: int = 0
    preset: str | None = None


@dataclass(frozen=True)
class MqttBinding:
    """MQTT device; ``topic`` is the prefix for its set/state/get topics."""

    topic: str


@dataclass(frozen=True)
class HueBinding:
    """Light behind a Hue bridge, addressed by its numeric bridge id."""

    light_id: int


Binding = HttpBinding | MqttBinding | HueBinding


def protocol_of(binding: Binding) -> DeviceProtocol:
    match binding:
        case HttpBinding():
            return DeviceProtocol.HTTP
        case MqttBinding():
            return DeviceProtocol.MQTT
        case HueBinding():
            return DeviceProtocol.HUE
        case _:
            raise ValidationError(f"Unknown device binding: {type(binding).__name__}")


def parse_binding(protocol: DeviceProtocol, device_id: str, config: dict[str, Any]) -> Binding:
    """Build the binding for ``protocol`` from a stored ``config`` dict."""
    match protocol:
        case DeviceProtocol.HTTP:
            endpoint = config.get("httpEndpoint")
            if not endpoint:
                raise ValidationError(f"HTTP device {device_id} has no httpEndpoint")
            return HttpBinding(
                endpoint=str(endpoint).rstrip("/"),
                switch_id=int(config.get("switchId", 0)),
                preset=config.get("httpPreset"),
            )
        case DeviceProtocol.MQTT:
            return MqttBinding(topic=config.get("mqttTopic") or device_topic(device_id))
        case DeviceProtocol.HUE:
            light_id = config.get("lightId")
            if light_id is None and device_id.startswith("hue-"):
                light_id = device_id[len("hue-"):]
            try:
                return HueBinding(light_id=int(light_id))
            except (TypeError, ValueError):
                raise ValidationError(f"Hue device {device_id} has no numeric light id") from None
        case _:
            raise ValidationError(f"Unknown device protocol: {protocol!r}")


def binding_config(binding: Binding) -> dict[str, Any]:
    """Inverse of ``parse_binding``: the camelCase config stored in KV."""
    match binding:
        case HttpBinding(endpoint=endpoint, switch_id=switch_id, preset=preset):
            config: dict[str, Any] = {"httpEndpoint": endpoint}
            if switch_id:
                config["switchId"] = switch_id
            if preset:
                config["httpPreset"] = preset
            return config
        case MqttBinding(topic=topic):
            return {"mqttTopic": topic}
        case HueBinding(light_id=light_id):
            return {"lightId": light_id}
        case _:
            raise ValidationError(f"Unknown device binding: {type(binding).__name__}")


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# KV field name -> attribute name for the plain scalar fields
_JSON_FIELDS = {
    "id": "id",
    "name": "name",
    "room": "room",
    "enabled": "enabled",
    "value": "value",
    "unit": "unit",
    "batteryLevel": "battery_level",
    "signalStrength": "signal_strength",
}

# Fields an adapter may report in AdapterResult.new_state
STATE_FIELDS = ("enabled", "value", "unit", "status", "last_seen", "signal_strength", "battery_level")


@dataclass
class Device:
    """A controllable device, independent of its transport."""

    id: str
    name: str
    type: DeviceType
    binding: Binding
    room: str = UNASSIGNED_ROOM
    status: DeviceStatus = DeviceStatus.ONLINE
    enabled: bool = False
    value: float | None = None
    unit: str | None = None
    capabilities: set[Capability] = field(default_factory=set)
    last_seen: datetime | None = None
    signal_strength: int | None = None
    battery_level: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Stored fields this model does not interpret, written back untouched
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def protocol(self) -> DeviceProtocol:
        return protocol_of(self.binding)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def snapshot(self) -> dict[str, Any]:
        """Copy of the runtime state fields, for rollback."""
        return {name: getattr(self, name) for name in STATE_FIELDS}

    def apply_state(self, state: dict[str, Any]) -> None:
        """Apply a partial state (``STATE_FIELDS`` plus ``metadata``)."""
        for key, value in state.items():
            if key == "metadata":
                self.metadata.update(value or {})
            elif key in STATE_FIELDS:
                setattr(self, key, value)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase shape stored in KV."""
        data: dict[str, Any] = dict(self.extra)
        for json_name, attr in _JSON_FIELDS.items():
            value = getattr(self, attr)
            if value is not None or json_name in ("id", "name", "room", "enabled"):
                data[json_name] = value
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["protocol"] = self.protocol.value
        data["capabilities"] = sorted(c.value for c in self.capabilities)
        data["config"] = binding_config(self.binding)
        data["lastSeen"] = self.last_seen.isoformat() if self.last_seen else None
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Device":
        """Parse a stored device.

        Raises:
            ValidationError: If the id, type or protocol is missing or unknown
        """
        device_id = data.get("id")
        if not device_id:
            raise ValidationError("Device entry has no id")

        protocol = DeviceProtocol.parse(data.get("protocol"))
        try:
            device_type = DeviceType(data.get("type"))
        except ValueError:
            raise ValidationError(
                f"Device {device_id} has unknown type {data.get('type')!r}"
            ) from None

        try:
            status = DeviceStatus(data.get("status", DeviceStatus.ONLINE.value))
        except ValueError:
            status = DeviceStatus.ERROR

        capabilities = set()
        for name in data.get("capabilities") or []:
            try:
                capabilities.add(Capability(name))
            except ValueError:
                continue

        known = set(_JSON_FIELDS) | {
            "type", "status", "protocol", "capabilities", "config", "lastSeen", "metadata",
        }
        return cls(
            id=device_id,
            name=data.get("name") or device_id,
            type=device_type,
            binding=parse_binding(protocol, device_id, data.get("config") or {}),
            room=data.get("room") or UNASSIGNED_ROOM,
            status=status,
            enabled=bool(data.get("enabled", False)),
            value=data.get("value"),
            unit=data.get("unit"),
            capabilities=capabilities,
            last_seen=_parse_time(data.get("lastSeen")),
            signal_strength=data.get("signalStrength"),
            battery_level=data.get("batteryLevel"),
            metadata=dict(data.get("metadata") or {}),
            extra={k: v for k, v in data.items() if k not in known},
        )
