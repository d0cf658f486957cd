"""Error handling utilities for HomeHub.

Defines the error taxonomy shared by adapters, the registry and the KV
client, plus helpers to classify arbitrary exceptions into the short error
codes carried by ``AdapterResult.error``.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiomqtt
import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of errors. Values are the codes reported to callers."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    PROTOCOL = "protocol"
    UNSUPPORTED = "unsupported"
    NOT_CONNECTED = "not connected"
    VALIDATION = "validation"
    INTERNAL = "internal"


class HomeHubError(Exception):
    """Base class for all HomeHub errors."""

    category = ErrorCategory.INTERNAL


class NetworkError(HomeHubError):
    """Raised when a host is unreachable or refuses the connection."""

    category = ErrorCategory.NETWORK


class DeviceTimeoutError(HomeHubError):
    """Raised when a device operation exceeds its time bound."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, device_id: str, operation: str, timeout: float):
        self.device_id = device_id
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Device {device_id} timed out during {operation} after {timeout}s"
        )


class ProtocolError(HomeHubError):
    """Raised when a device or service answers with an unexpected shape."""

    category = ErrorCategory.PROTOCOL


class CommandRejectedError(ProtocolError):
    """Raised when a device or bridge explicitly rejects a command."""


class UnsupportedCapabilityError(HomeHubError):
    """Raised when a command does not apply to a device."""

    category = ErrorCategory.UNSUPPORTED

    def __init__(self, device_id: str, operation: str):
        self.device_id = device_id
        self.operation = operation
        super().__init__(f"Device {device_id} does not support {operation}")


class NotConnectedError(HomeHubError):
    """Raised when the MQTT connection is not in the connected state."""

    category = ErrorCategory.NOT_CONNECTED

    def __init__(self, message: str = "MQTT broker not connected"):
        super().__init__(message)


class ValidationError(HomeHubError):
    """Raised for bad caller input: unknown ids, bad keys, out-of-range values."""

    category = ErrorCategory.VALIDATION


class KVError(HomeHubError):
    """Raised when the KV service answers with an unexpected status."""

    category = ErrorCategory.PROTOCOL

    def __init__(self, key: str | None, status_code: int, message: str | None = None):
        self.key = key
        self.status_code = status_code
        super().__init__(message or f"KV request for {key!r} failed with HTTP {status_code}")


@dataclass
class ClassifiedError:
    """An exception reduced to a category and a readable message."""

    category: ErrorCategory
    message: str
    device_id: str | None = None

    @property
    def code(self) -> str:
        return self.category.value

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.device_id:
            result["device_id"] = self.device_id
        return result


def classify_exception(e: BaseException, device_id: str | None = None) -> ClassifiedError:
    """Classify an exception into a structured error.

    Args:
        e: The exception to classify
        device_id: Optional device ID for context

    Returns:
        ClassifiedError with the matching category
    """
    if isinstance(e, HomeHubError):
        category = e.category
        message = str(e)
    elif isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)):
        category = ErrorCategory.TIMEOUT
        message = "Operation timed out"
        if device_id:
            message = f"Device {device_id} operation timed out"
    elif isinstance(e, aiomqtt.MqttError):
        category = ErrorCategory.NOT_CONNECTED
        message = f"MQTT error: {e}"
    elif isinstance(e, httpx.HTTPStatusError):
        category = ErrorCategory.PROTOCOL
        message = f"Unexpected HTTP {e.response.status_code} from {e.request.url}"
    elif isinstance(e, (httpx.TransportError, ConnectionError, OSError)):
        category = ErrorCategory.NETWORK
        message = f"Connection error: {e}"
    elif isinstance(e, (KeyError, TypeError, ValueError)):
        # Malformed payloads surface as lookup or decode errors
        category = ErrorCategory.PROTOCOL
        message = f"Malformed response: {e!r}"
    else:
        category = ErrorCategory.INTERNAL
        message = f"Unexpected error: {e}"

    return ClassifiedError(category=category, message=message, device_id=device_id)


DEFAULT_DEVICE_TIMEOUT = 5.0


async def execute_with_timeout(
    coro: Any,
    timeout: float = DEFAULT_DEVICE_TIMEOUT,
    device_id: str | None = None,
    operation: str = "operation",
) -> Any:
    """Execute a coroutine with a timeout.

    Args:
        coro: Coroutine to execute
        timeout: Timeout in seconds
        device_id: Optional device ID for error context
        operation: Operation name for error messages

    Returns:
        Result of the coroutine

    Raises:
        DeviceTimeoutError: If the operation times out
    """
    try:
        async with asyncio.timeout(timeout):
            return await coro
    except asyncio.TimeoutError:
        if device_id:
            raise DeviceTimeoutError(device_id, operation, timeout)
        raise
