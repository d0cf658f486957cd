"""Device health tracking and periodic state polling."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from homehub.models.device import DeviceStatus

logger = logging.getLogger(__name__)

# One failure raises a warning, a second in a row marks the device offline
WARNING_THRESHOLD = 1
OFFLINE_THRESHOLD = 2


@dataclass
class DeviceHealth:
    """Reachability record for a device."""

    device_id: str
    last_successful_contact: datetime | None = None
    last_failed_contact: datetime | None = None
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0

    def record_success(self) -> DeviceStatus:
        """Record a successful contact and return the resulting status."""
        self.last_successful_contact = datetime.now()
        self.consecutive_failures = 0
        self.total_successes += 1
        return self.status

    def record_failure(self) -> DeviceStatus:
        """Record a failed contact and return the resulting status."""
        self.last_failed_contact = datetime.now()
        self.consecutive_failures += 1
        self.total_failures += 1
        return self.status

    @property
    def status(self) -> DeviceStatus:
        if self.consecutive_failures >= OFFLINE_THRESHOLD:
            return DeviceStatus.OFFLINE
        if self.consecutive_failures >= WARNING_THRESHOLD:
            return DeviceStatus.WARNING
        return DeviceStatus.ONLINE

    @property
    def failure_rate(self) -> float:
        """Get the overall failure rate."""
        total = self.total_failures + self.total_successes
        if total == 0:
            return 0.0
        return self.total_failures / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_rate": round(self.failure_rate, 3),
            "last_successful_contact": (
                self.last_successful_contact.isoformat()
                if self.last_successful_contact
                else None
            ),
        }


class HealthMonitor:
    """Runs a polling coroutine on a fixed interval until stopped."""

    def __init__(
        self,
        poll_func: Callable[[], Awaitable[Any]],
        check_interval: float = 30.0,
    ):
        """Initialize health monitor.

        Args:
            poll_func: Async function refreshing device state (errors are logged)
            check_interval: Seconds between polls
        """
        self.poll_func = poll_func
        self.check_interval = check_interval
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Health monitor started (interval: {self.check_interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.check_interval)
            try:
                await self.poll_func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health poll failed: {e}")
