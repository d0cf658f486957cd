"""Scene model: a named batch of target device states."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class SceneDeviceState:
    """Target state for one device in a scene."""

    device_id: str
    enabled: bool
    value: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"deviceId": self.device_id, "enabled": self.enabled}
        if self.value is not None:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SceneDeviceState":
        return cls(
            device_id=data["deviceId"],
            enabled=bool(data.get("enabled", False)),
            value=data.get("value"),
        )


@dataclass
class Scene:
    id: str
    name: str
    device_states: list[SceneDeviceState] = field(default_factory=list)
    icon: str | None = None
    description: str | None = None
    last_activated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "deviceStates": [s.to_dict() for s in self.device_states],
        }
        if self.icon:
            data["icon"] = self.icon
        if self.description:
            data["description"] = self.description
        if self.last_activated:
            data["lastActivated"] = self.last_activated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Scene":
        last_activated = data.get("lastActivated")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            device_states=[
                SceneDeviceState.from_dict(s) for s in data.get("deviceStates") or []
            ],
            icon=data.get("icon"),
            description=data.get("description"),
            last_activated=(
                datetime.fromisoformat(last_activated) if last_activated else None
            ),
        )
