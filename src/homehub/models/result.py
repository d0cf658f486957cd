"""Transient results returned by device adapters."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from homehub.models.device import Capability, DeviceType
from homehub.utils.errors import ErrorCategory


@dataclass
class AdapterResult:
    """Outcome of one adapter call.

    ``new_state`` is a partial device state keyed by ``Device`` attribute
    names. ``error`` is one of the ``ErrorCategory`` codes, e.g. ``"timeout"``.
    Never persisted.
    """

    success: bool
    new_state: dict[str, Any] | None = None
    error: str | None = None
    message: str | None = None
    duration: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def ok(cls, new_state: dict[str, Any] | None = None) -> "AdapterResult":
        return cls(success=True, new_state=new_state)

    @classmethod
    def failure(cls, category: ErrorCategory, message: str | None = None) -> "AdapterResult":
        return cls(success=False, error=category.value, message=message)

    @property
    def category(self) -> ErrorCategory | None:
        return ErrorCategory(self.error) if self.error else None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.new_state is not None:
            result["new_state"] = self.new_state
        if self.error:
            result["error"] = self.error
        if self.message:
            result["message"] = self.message
        return result


@dataclass
class DiscoveredDevice:
    """A device found by MQTT announcement or Hue bridge listing."""

    id: str
    name: str
    type: DeviceType
    protocol: str
    config: dict[str, Any] = field(default_factory=dict)
    capabilities: set[Capability] = field(default_factory=set)
    state: dict[str, Any] = field(default_factory=dict)

    def to_device_dict(self) -> dict[str, Any]:
        """Shape accepted by ``Device.from_dict``."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "protocol": self.protocol,
            "config": dict(self.config),
            "capabilities": sorted(c.value for c in self.capabilities),
        }
        for key in ("enabled", "value", "unit", "status"):
            if key in self.state:
                data[key] = self.state[key]
        return data
