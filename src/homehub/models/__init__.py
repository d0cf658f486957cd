"""Data models for HomeHub."""

from homehub.models.device import (
    Binding,
    Capability,
    Device,
    DeviceProtocol,
    DeviceStatus,
    DeviceType,
    HttpBinding,
    HueBinding,
    MqttBinding,
)
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.models.room import Room
from homehub.models.scene import Scene, SceneDeviceState

__all__ = [
    "AdapterResult",
    "Binding",
    "Capability",
    "Device",
    "DeviceProtocol",
    "DeviceStatus",
    "DeviceType",
    "DiscoveredDevice",
    "HttpBinding",
    "HueBinding",
    "MqttBinding",
    "Room",
    "Scene",
    "SceneDeviceState",
]
