"""Debounced, coalescing writes to the KV store."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

WriteFunc = Callable[[str, Any], Awaitable[None]]


class DebouncedWriter:
    """Queue of pending KV writes keyed by KV key.

    Scheduling a key that is already pending replaces its value, so a burst of
    changes produces one write per key. Pending writes are flushed after
    ``delay`` seconds, on ``flush()``, or on ``close()``. Use as an async
    context manager to guarantee the final flush.
    """

    def __init__(self, write_func: WriteFunc, delay: float = 0.5):
        self.write_func = write_func
        self.delay = delay
        self._pending: dict[str, Any] = {}
        self._timer: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def schedule(self, key: str, value: Any) -> None:
        """Queue ``value`` for ``key``; the latest value wins."""
        if self._closed:
            raise RuntimeError(f"Writer closed, cannot schedule {key}")
        self._pending[key] = value
        if self._timer is None:
            self._timer = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        await self.flush()

    async def flush(self) -> bool:
        """Write every pending key now. Returns False if any write failed.

        Failed keys stay pending unless a newer value was scheduled meanwhile,
        and are retried after another ``delay``.
        """
        async with self._lock:
            batch, self._pending = self._pending, {}
            ok = True
            for key, value in batch.items():
                try:
                    await self.write_func(key, value)
                    logger.debug(f"Flushed KV key {key}")
                except Exception as e:
                    ok = False
                    self._pending.setdefault(key, value)
                    logger.warning(f"KV write for {key} failed, keeping it pending: {e}")
            if self._pending and self._timer is None and not self._closed:
                self._timer = asyncio.create_task(self._flush_later())
            return ok

    async def close(self) -> None:
        """Cancel the timer and flush whatever is pending."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if not await self.flush():
            logger.error(f"Unflushed KV keys at shutdown: {', '.join(self._pending)}")

    async def __aenter__(self) -> "DebouncedWriter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
