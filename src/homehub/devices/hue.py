"""Philips Hue bridge adapter.

Talks to the bridge's local REST API at ``http://{ip}/api/{username}``.
Bridge writes answer with a list of ``{"success": ...}`` or
``{"error": {...}}`` items. After every command the light is read back so
the reported state is what the bridge says, not what was asked for. If the
read-back fails once the bridge has accepted the write, the commanded state
is reported instead.
"""

import logging
import math
import re
from datetime import datetime
from typing import Any

import httpx

from homehub.devices.base import DeviceAdapter, check_brightness, check_kelvin
from homehub.models.device import (
    Capability,
    Device,
    DeviceProtocol,
    DeviceStatus,
    DeviceType,
    HueBinding,
)
from homehub.models.result import AdapterResult, DiscoveredDevice
from homehub.utils.errors import (
    DEFAULT_DEVICE_TIMEOUT,
    CommandRejectedError,
    ProtocolError,
    ValidationError,
    classify_exception,
)

logger = logging.getLogger(__name__)

HUE_BRI_MIN = 1
HUE_BRI_MAX = 254
MIREDS_MIN = 153
MIREDS_MAX = 500
DEFAULT_WHITE_XY = (0.3227, 0.329)

LIGHT_TYPE_CAPABILITIES: dict[str, set[Capability]] = {
    "Extended color light": {Capability.DIMMING, Capability.COLOR, Capability.COLOR_TEMP},
    "Color light": {Capability.DIMMING, Capability.COLOR},
    "Color temperature light": {Capability.DIMMING, Capability.COLOR_TEMP},
    "Dimmable light": {Capability.DIMMING},
    "On/Off plug-in unit": set(),
}

_RGB_RE = re.compile(r"rgb\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*\)")


def _round(value: float) -> int:
    # Half-up, so 0.5 steps round the same way in both directions
    return math.floor(value + 0.5)


def percent_to_native(percent: float) -> int:
    """0-100% to Hue ``bri`` (0-254)."""
    return _round(percent / 100 * HUE_BRI_MAX)


def native_to_percent(bri: float) -> int:
    """Hue ``bri`` (0-254) to 0-100%."""
    return _round(bri / HUE_BRI_MAX * 100)


def kelvin_to_mireds(kelvin: float) -> int:
    """Kelvin to Hue ``ct`` mireds, clamped to the bridge's 153-500 range."""
    return max(MIREDS_MIN, min(MIREDS_MAX, _round(1_000_000 / kelvin)))


def parse_color(color: str) -> tuple[int, int, int]:
    """Parse ``#RRGGBB``, ``RRGGBB`` or ``rgb(r, g, b)``.

    Raises:
        ValidationError: If the string is in neither form
    """
    text = color.strip()
    hex_part = text[1:] if text.startswith("#") else text
    if re.fullmatch(r"[0-9a-fA-F]{6}", hex_part):
        return (int(hex_part[0:2], 16), int(hex_part[2:4], 16), int(hex_part[4:6], 16))

    match = _RGB_RE.fullmatch(text)
    if match:
        r, g, b = (int(part) for part in match.groups())
        if max(r, g, b) <= 255:
            return (r, g, b)
    raise ValidationError(f"Unrecognized color: {color!r}")


def rgb_to_xy(r: int, g: int, b: int) -> tuple[float, float]:
    """Convert sRGB to CIE xy using gamma correction and the Wide RGB D65 matrix."""

    def gamma(channel: int) -> float:
        value = channel / 255
        if value > 0.04045:
            return ((value + 0.055) / 1.055) ** 2.4
        return value / 12.92

    red, green, blue = gamma(r), gamma(g), gamma(b)
    x_ = red * 0.664511 + green * 0.154324 + blue * 0.162028
    y_ = red * 0.283881 + green * 0.668433 + blue * 0.047685
    z_ = red * 0.000088 + green * 0.072310 + blue * 0.986039

    total = x_ + y_ + z_
    if total == 0:
        return DEFAULT_WHITE_XY

    x = max(0.0, min(1.0, x_ / total))
    y = max(0.0, min(1.0, y_ / total))
    return (round(x, 4), round(y, 4))


def light_state(light: dict[str, Any]) -> dict[str, Any]:
    """Map a bridge light object onto partial ``Device`` state fields."""
    state = light.get("state")
    if not isinstance(state, dict) or "on" not in state:
        raise ProtocolError("Hue light has no state")

    result: dict[str, Any] = {
        "enabled": bool(state["on"]),
        "unit": "%",
        "status": DeviceStatus.ONLINE if state.get("reachable", True) else DeviceStatus.OFFLINE,
        "last_seen": datetime.now(),
        "metadata": {
            key: value
            for key, value in (
                ("colormode", state.get("colormode")),
                ("hue", state.get("hue")),
                ("sat", state.get("sat")),
                ("ct", state.get("ct")),
                ("xy", state.get("xy")),
                ("type", light.get("type")),
                ("modelid", light.get("modelid")),
            )
            if value is not None
        },
    }
    if state.get("bri") is not None:
        result["value"] = native_to_percent(state["bri"])
    return result


def commanded_state(body: dict[str, Any]) -> dict[str, Any]:
    """State implied by an accepted ``PUT .../state`` body."""
    result: dict[str, Any] = {"unit": "%", "last_seen": datetime.now()}
    if "on" in body:
        result["enabled"] = bool(body["on"])
    if "bri" in body:
        result["value"] = native_to_percent(body["bri"])
    metadata = {key: body[key] for key in ("ct", "xy") if key in body}
    if metadata:
        result["metadata"] = metadata
    return result


def _raise_for_errors(data: Any, what: str) -> None:
    if isinstance(data, list):
        errors = [
            item["error"].get("description", "unknown error")
            for item in data
            if isinstance(item, dict) and isinstance(item.get("error"), dict)
        ]
        if errors:
            raise CommandRejectedError(f"Hue bridge rejected {what}: {'; '.join(errors)}")


class HueBridgeAdapter(DeviceAdapter):
    """Controls lights through one local Hue bridge."""

    protocol = DeviceProtocol.HUE

    def __init__(
        self,
        bridge_ip: str,
        username: str,
        timeout: float = DEFAULT_DEVICE_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout)
        self.bridge_ip = bridge_ip
        self.base_url = f"http://{bridge_ip}/api/{username}"
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _light_id(self, device: Device) -> int:
        match device.binding:
            case HueBinding(light_id=light_id):
                return light_id
            case other:
                raise ValidationError(
                    f"Device {device.id} is bound to {type(other).__name__}, not Hue"
                )

    async def _put_state(self, light_id: int, body: dict[str, Any]) -> None:
        client = await self._ensure_client()
        response = await client.put(f"{self.base_url}/lights/{light_id}/state", json=body)
        response.raise_for_status()
        data = response.json()
        _raise_for_errors(data, f"{body} for light {light_id}")
        if not isinstance(data, list):
            raise ProtocolError(f"Unexpected Hue response for light {light_id}: {data!r}")
        logger.debug(f"Hue light {light_id} <- {body}")

    async def _get_light(self, light_id: int) -> dict[str, Any]:
        client = await self._ensure_client()
        response = await client.get(f"{self.base_url}/lights/{light_id}")
        response.raise_for_status()
        data = response.json()
        _raise_for_errors(data, f"read of light {light_id}")
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected Hue response for light {light_id}: {data!r}")
        return data

    async def _command(self, device: Device, operation: str, body: dict[str, Any]) -> AdapterResult:
        async def _run() -> AdapterResult:
            light_id = self._light_id(device)
            await self._put_state(light_id, body)
            try:
                light = await self._get_light(light_id)
            except Exception as e:
                # The bridge accepted the write; report what was asked for
                error = classify_exception(e, device.id)
                logger.warning(
                    f"Hue read-back of light {light_id} after {operation} failed: "
                    f"[{error.code}] {error.message}"
                )
                return AdapterResult.ok(commanded_state(body))
            return AdapterResult.ok(light_state(light))

        return await self.guarded(device, operation, _run)

    async def turn_on(self, device: Device) -> AdapterResult:
        return await self._command(device, "turn_on", {"on": True})

    async def turn_off(self, device: Device) -> AdapterResult:
        return await self._command(device, "turn_off", {"on": False})

    async def set_brightness(self, device: Device, percent: float) -> AdapterResult:
        if error := check_brightness(percent):
            return self.invalid(error)
        bri = max(HUE_BRI_MIN, percent_to_native(percent))
        return await self._command(device, "set_brightness", {"bri": bri})

    async def set_color_temperature(self, device: Device, kelvin: float) -> AdapterResult:
        if error := check_kelvin(kelvin):
            return self.invalid(error)
        return await self._command(
            device, "set_color_temperature", {"on": True, "ct": kelvin_to_mireds(kelvin)}
        )

    async def set_color(self, device: Device, color: str) -> AdapterResult:
        try:
            xy = rgb_to_xy(*parse_color(color))
        except ValidationError as e:
            return self.invalid(str(e))
        return await self._command(device, "set_color", {"on": True, "xy": list(xy)})

    async def get_state(self, device: Device) -> AdapterResult:
        async def _get() -> AdapterResult:
            return AdapterResult.ok(light_state(await self._get_light(self._light_id(device))))

        return await self.guarded(device, "get_state", _get)

    async def list_lights(self) -> list[DiscoveredDevice]:
        """All lights known to the bridge."""
        client = await self._ensure_client()
        response = await client.get(f"{self.base_url}/lights")
        response.raise_for_status()
        data = response.json()
        _raise_for_errors(data, "light listing")
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected Hue light listing: {data!r}")

        lights = []
        for light_id, light in data.items():
            light_type = light.get("type", "")
            state = light.get("state") or {}
            snapshot: dict[str, Any] = {
                "enabled": bool(state.get("on", False)),
                "status": (
                    DeviceStatus.ONLINE if state.get("reachable", True) else DeviceStatus.OFFLINE
                ).value,
            }
            if state.get("bri") is not None:
                snapshot["value"] = native_to_percent(state["bri"])
                snapshot["unit"] = "%"
            lights.append(
                DiscoveredDevice(
                    id=f"hue-{light_id}",
                    name=light.get("name") or f"Hue light {light_id}",
                    type=DeviceType.LIGHT,
                    protocol=DeviceProtocol.HUE.value,
                    config={"lightId": int(light_id)},
                    capabilities=set(LIGHT_TYPE_CAPABILITIES.get(light_type, {Capability.DIMMING})),
                    state=snapshot,
                )
            )
        logger.info(f"Hue bridge {self.bridge_ip} lists {len(lights)} lights")
        return lights
