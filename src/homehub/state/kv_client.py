"""Async client for the KV REST service.

Endpoints: ``GET/POST/DELETE /kv/{key}``, ``GET /kv`` and ``GET /health``.
Values are arbitrary JSON.
"""

import logging
import re
from typing import Any

import httpx

from homehub.config import KVConfig
from homehub.utils.errors import KVError, NetworkError, ValidationError

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_key(key: str) -> str:
    """Raise ValidationError unless ``key`` is a legal KV key."""
    if not isinstance(key, str) or not KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid KV key: {key!r}")
    return key


class KVClient:
    """Thin CRUD wrapper over the KV service."""

    def __init__(
        self,
        config: KVConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers=headers,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, path: str, key: str | None = None, **kwargs: Any
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"KV {method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"KV {method} {path} failed: {e}") from e

        if response.status_code == 400:
            raise ValidationError(f"KV rejected key {key!r}: {response.text}")
        return response

    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None if the key is absent."""
        validate_key(key)
        response = await self._request("GET", f"/kv/{key}", key)
        if response.status_code == 404:
            return None
        if response.is_error:
            raise KVError(key, response.status_code)
        return response.json().get("value")

    async def set(self, key: str, value: Any) -> None:
        validate_key(key)
        response = await self._request("POST", f"/kv/{key}", key, json={"value": value})
        if response.is_error:
            raise KVError(key, response.status_code)
        logger.debug(f"KV set {key}")

    async def delete(self, key: str) -> None:
        validate_key(key)
        response = await self._request("DELETE", f"/kv/{key}", key)
        if response.is_error and response.status_code != 404:
            raise KVError(key, response.status_code)

    async def list_keys(self) -> list[str]:
        response = await self._request("GET", "/kv")
        if response.is_error:
            raise KVError(None, response.status_code)
        return list(response.json().get("keys") or [])

    async def health(self) -> bool:
        """Whether the service answers its health check."""
        try:
            response = await self._request("GET", "/health")
        except NetworkError as e:
            logger.warning(f"KV health check failed: {e}")
            return False
        return response.is_success
