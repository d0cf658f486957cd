"""Room model."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Room:
    """A named group of devices.

    ``device_ids`` must reference devices whose ``room`` equals ``name``;
    the registry keeps both sides in step.
    """

    id: str
    name: str
    icon: str | None = None
    device_ids: list[str] = field(default_factory=list)
    color: str | None = None
    temperature: float | None = None
    humidity: float | None = None

    @property
    def device_count(self) -> int:
        return len(self.device_ids)

    def add_device(self, device_id: str) -> None:
        if device_id not in self.device_ids:
            self.device_ids.append(device_id)

    def remove_device(self, device_id: str) -> None:
        if device_id in self.device_ids:
            self.device_ids.remove(device_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "deviceIds": list(self.device_ids),
            "deviceCount": self.device_count,
        }
        for key, value in (
            ("icon", self.icon),
            ("color", self.color),
            ("temperature", self.temperature),
            ("humidity", self.humidity),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Room":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            icon=data.get("icon"),
            device_ids=list(dict.fromkeys(data.get("deviceIds") or [])),
            color=data.get("color"),
            temperature=data.get("temperature"),
            humidity=data.get("humidity"),
        )
