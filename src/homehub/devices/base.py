"""Device adapter contract.

Every protocol adapter implements the same operations over a ``Device`` and
answers with an ``AdapterResult``. Adapters never raise: time bounds and I/O
failures are caught here and reported as ``AdapterResult.error`` codes.
Adapters hold no device-list state.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from homehub.models.device import Device, DeviceProtocol
from homehub.models.result import AdapterResult
from homehub.utils.errors import (
    DEFAULT_DEVICE_TIMEOUT,
    ErrorCategory,
    UnsupportedCapabilityError,
    classify_exception,
    execute_with_timeout,
)

logger = logging.getLogger(__name__)

BRIGHTNESS_RANGE = (0, 100)
KELVIN_RANGE = (2000, 6500)


def check_brightness(percent: float) -> str | None:
    """Return an error message if ``percent`` is outside 0-100."""
    low, high = BRIGHTNESS_RANGE
    if not low <= percent <= high:
        return f"Brightness must be {low}-{high}, got {percent}"
    return None


def check_kelvin(kelvin: float) -> str | None:
    low, high = KELVIN_RANGE
    if not low <= kelvin <= high:
        return f"Color temperature must be {low}-{high}K, got {kelvin}"
    return None


class DeviceAdapter(ABC):
    """Base class for protocol adapters."""

    protocol: DeviceProtocol

    def __init__(self, timeout: float = DEFAULT_DEVICE_TIMEOUT):
        self.timeout = timeout

    @abstractmethod
    async def turn_on(self, device: Device) -> AdapterResult:
        """Switch the device on."""

    @abstractmethod
    async def turn_off(self, device: Device) -> AdapterResult:
        """Switch the device off."""

    @abstractmethod
    async def set_brightness(self, device: Device, percent: float) -> AdapterResult:
        """Set brightness, 0-100%."""

    @abstractmethod
    async def get_state(self, device: Device) -> AdapterResult:
        """Read the device; ``new_state`` carries the reported state fields."""

    async def toggle(self, device: Device) -> AdapterResult:
        """Invert power state. Protocols with a native toggle override this."""
        if device.enabled:
            return await self.turn_off(device)
        return await self.turn_on(device)

    async def set_color_temperature(self, device: Device, kelvin: float) -> AdapterResult:
        """Set white color temperature, 2000-6500K."""
        return self.unsupported(device, "set_color_temperature")

    async def set_color(self, device: Device, color: str) -> AdapterResult:
        """Set color from ``#RRGGBB`` or ``rgb(r, g, b)``."""
        return self.unsupported(device, "set_color")

    async def close(self) -> None:
        """Release network resources."""

    def unsupported(self, device: Device, operation: str) -> AdapterResult:
        error = UnsupportedCapabilityError(device.id, operation)
        logger.debug(f"{operation} unsupported on {device.id} ({self.protocol.value})")
        return AdapterResult.failure(error.category, str(error))

    def invalid(self, message: str) -> AdapterResult:
        return AdapterResult.failure(ErrorCategory.VALIDATION, message)

    async def guarded(
        self,
        device: Device,
        operation: str,
        func: Callable[[], Awaitable[AdapterResult]],
        timeout: float | None = None,
    ) -> AdapterResult:
        """Run ``func`` within the time bound, converting any failure to a result."""
        start = time.monotonic()
        try:
            result = await execute_with_timeout(
                func(),
                timeout=timeout or self.timeout,
                device_id=device.id,
                operation=operation,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_exception(e, device.id)
            logger.warning(
                f"{self.protocol.value} {operation} failed for {device.id}: "
                f"[{error.code}] {error.message}"
            )
            result = AdapterResult.failure(error.category, error.message)
        result.duration = time.monotonic() - start
        return result
