"""HTTP/REST device adapter.

The binding's preset picks the device API:

- ``shelly`` (default): Gen2 RPC endpoints ``Switch.Set``, ``Switch.Toggle``
  and ``Switch.GetStatus``, plus ``Light.Set`` for dimmers.
- ``tplink``: ``/api/system/set_relay_state`` and ``/api/system/get_sysinfo``.
- ``generic``: ``/api/devices/{id}/command`` and ``/api/devices/{id}/status``.
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from homehub.devices.base import DeviceAdapter, check_brightness
from homehub.models.device import Capability, Device, DeviceProtocol, DeviceStatus, HttpBinding
from homehub.models.result import AdapterResult
from homehub.utils.errors import (
    DEFAULT_DEVICE_TIMEOUT,
    ProtocolError,
    UnsupportedCapabilityError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SHELLY = "shelly"
PRESETS = (SHELLY, "tplink", "generic")

# Switch.GetStatus fields passed through as metadata
METADATA_FIELDS = ("apower", "voltage", "current", "temperature")

# get_sysinfo fields passed through as metadata
TPLINK_METADATA_FIELDS = ("alias", "model", "deviceId", "rssi", "on_time")


def _flag(value: bool) -> str:
    return "true" if value else "false"


class HttpDeviceAdapter(DeviceAdapter):
    """Controls devices that expose a local API over HTTP."""

    protocol = DeviceProtocol.HTTP

    def __init__(
        self,
        timeout: float = DEFAULT_DEVICE_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout)
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _binding(self, device: Device) -> HttpBinding:
        match device.binding:
            case HttpBinding() as binding:
                return binding
            case other:
                raise ValidationError(
                    f"Device {device.id} is bound to {type(other).__name__}, not HTTP"
                )

    def _preset(self, device: Device) -> str:
        preset = self._binding(device).preset or SHELLY
        if preset not in PRESETS:
            raise ValidationError(f"Device {device.id} has unknown HTTP preset {preset!r}")
        return preset

    async def _request(
        self, device: Device, method: str, path: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Send a request to the device and return its JSON object body."""
        binding = self._binding(device)
        client = await self._ensure_client()
        response = await client.request(method, f"{binding.endpoint}{path}", **kwargs)
        response.raise_for_status()
        # Light.Set answers with an empty body or null
        data = response.json() if response.content else None
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ProtocolError(f"{path} on {device.id} returned {type(data).__name__}")
        logger.debug(f"{method} {path} on {device.id}: {data}")
        return data

    async def _rpc(
        self, device: Device, method: str, name: str, **params: Any
    ) -> dict[str, Any]:
        params = {"id": self._binding(device).switch_id, **params}
        return await self._request(device, method, f"/rpc/{name}", params=params)

    async def _command(self, device: Device, command: str, value: Any) -> dict[str, Any]:
        return await self._request(
            device,
            "POST",
            f"/api/devices/{device.id}/command",
            json={"command": command, "value": value},
        )

    def _confirmed(self, **state: Any) -> AdapterResult:
        state.setdefault("status", DeviceStatus.ONLINE)
        state["last_seen"] = datetime.now()
        return AdapterResult.ok(state)

    async def _set_switch(self, device: Device, on: bool) -> AdapterResult:
        match self._preset(device):
            case "tplink":
                await self._request(
                    device, "POST", "/api/system/set_relay_state", json={"state": int(on)}
                )
                return self._confirmed(enabled=on)
            case "generic":
                data = await self._command(device, "toggle", on)
                enabled = data.get("enabled")
                return self._confirmed(enabled=enabled if isinstance(enabled, bool) else on)
            case _:
                data = await self._rpc(device, "POST", "Switch.Set", on=_flag(on))
                if "was_on" not in data:
                    raise ProtocolError(f"Switch.Set on {device.id} returned no was_on")
                return self._confirmed(enabled=on)

    async def turn_on(self, device: Device) -> AdapterResult:
        return await self.guarded(device, "turn_on", lambda: self._set_switch(device, True))

    async def turn_off(self, device: Device) -> AdapterResult:
        return await self.guarded(device, "turn_off", lambda: self._set_switch(device, False))

    async def toggle(self, device: Device) -> AdapterResult:
        """Only Shelly has a native toggle; other presets switch to the inverse."""

        async def _toggle() -> AdapterResult:
            if self._preset(device) != SHELLY:
                return await self._set_switch(device, not device.enabled)
            data = await self._rpc(device, "POST", "Switch.Toggle")
            if "was_on" not in data:
                raise ProtocolError(f"Switch.Toggle on {device.id} returned no was_on")
            return self._confirmed(enabled=not data["was_on"])

        return await self.guarded(device, "toggle", _toggle)

    async def set_brightness(self, device: Device, percent: float) -> AdapterResult:
        if not device.supports(Capability.DIMMING):
            return self.unsupported(device, "set_brightness")
        if error := check_brightness(percent):
            return self.invalid(error)

        async def _set() -> AdapterResult:
            level = round(percent)
            match self._preset(device):
                case "tplink":
                    raise UnsupportedCapabilityError(device.id, "set_brightness")
                case "generic":
                    await self._command(device, "set_value", level)
                case _:
                    await self._rpc(
                        device, "POST", "Light.Set", on=_flag(level > 0), brightness=level
                    )
            return self._confirmed(enabled=level > 0, value=level, unit="%")

        return await self.guarded(device, "set_brightness", _set)

    async def _read_shelly(self, device: Device) -> AdapterResult:
        data = await self._rpc(device, "GET", "Switch.GetStatus")
        output = data.get("output")
        if not isinstance(output, bool):
            raise ProtocolError(f"Switch.GetStatus on {device.id} returned no output")
        metadata = {key: data[key] for key in METADATA_FIELDS if key in data}
        if isinstance(metadata.get("temperature"), dict):
            metadata["temperature"] = metadata["temperature"].get("tC")
        return self._confirmed(enabled=output, metadata=metadata)

    async def _read_tplink(self, device: Device) -> AdapterResult:
        info = await self._request(device, "GET", "/api/system/get_sysinfo")
        relay = info.get("relay_state", info.get("on_off"))
        if relay not in (0, 1):
            raise ProtocolError(f"get_sysinfo on {device.id} returned no relay_state")
        metadata = {key: info[key] for key in TPLINK_METADATA_FIELDS if key in info}
        return self._confirmed(enabled=relay == 1, metadata=metadata)

    async def _read_generic(self, device: Device) -> AdapterResult:
        data = await self._request(device, "GET", f"/api/devices/{device.id}/status")
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise ProtocolError(f"Status of {device.id} has no enabled flag")
        state: dict[str, Any] = {"enabled": enabled}
        if isinstance(data.get("value"), (int, float)):
            state["value"] = data["value"]
        try:
            state["status"] = DeviceStatus(data.get("status", "online"))
        except ValueError:
            logger.debug(f"Ignoring unknown status {data['status']!r} from {device.id}")
        return self._confirmed(**state)

    async def get_state(self, device: Device) -> AdapterResult:
        async def _get() -> AdapterResult:
            match self._preset(device):
                case "tplink":
                    return await self._read_tplink(device)
                case "generic":
                    return await self._read_generic(device)
                case _:
                    return await self._read_shelly(device)

        return await self.guarded(device, "get_state", _get)
