"""MQTT connection manager.

One ``ConnectionManager`` is constructed at startup and handed to every MQTT
consumer. It alone opens and closes the broker connection; adapters only
publish and subscribe through it.
"""

import asyncio
import inspect
import json
import logging
import secrets
from enum import Enum
from typing import Any, Awaitable, Callable

import aiomqtt

from homehub.config import MqttConfig
from homehub.mqtt.topics import is_valid_topic, match_topic
from homehub.utils.errors import NotConnectedError, ValidationError
from homehub.utils.retry import backoff_delays

logger = logging.getLogger(__name__)

# CONNACK codes that retrying cannot fix (bad credentials, not authorized)
UNRECOVERABLE_RETURN_CODES = {4, 5, 134, 135}

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
Listener = Callable[..., Any]


class ConnectionState(Enum):
    """Broker connection state."""

    OFFLINE = "offline"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ConnectionEvent(Enum):
    """Events observers can listen for."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    ERROR = "error"


def generate_client_id() -> str:
    return f"homehub-{secrets.token_hex(3)}"


def _return_code(error: Exception) -> int | None:
    rc = getattr(error, "rc", None)
    if rc is None:
        return None
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return None


class ConnectionManager:
    """Owns the single broker connection and fans incoming messages out."""

    def __init__(
        self,
        config: MqttConfig,
        client_factory: Callable[[], Any] | None = None,
    ):
        """Initialize the manager.

        Args:
            config: Broker address, credentials and reconnect policy
            client_factory: Returns an async context manager behaving like
                ``aiomqtt.Client``; defaults to building one from ``config``
        """
        self.config = config
        self.client_id = config.client_id or generate_client_id()
        self._client_factory = client_factory or self._create_client
        self._client: Any = None
        self._state = ConnectionState.OFFLINE
        self._listeners: dict[ConnectionEvent, list[Listener]] = {
            event: [] for event in ConnectionEvent
        }
        self._subscriptions: dict[str, list[MessageHandler]] = {}
        self._task: asyncio.Task | None = None
        self._attempt_done = asyncio.Event()
        self._has_connected = False
        self._stopping = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    # Events

    def on(self, event: ConnectionEvent, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: ConnectionEvent, listener: Listener) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def _emit(self, event: ConnectionEvent, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception:
                logger.exception(f"MQTT {event.value} listener failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug(f"MQTT state {self._state.value} -> {state.value}")
            self._state = state

    # Lifecycle

    async def init(self) -> bool:
        """Start the connection loop and wait for the first attempt.

        Returns True if connected. When the first attempt fails the loop keeps
        retrying in the background.
        """
        if self._task is None:
            self._stopping = False
            self._has_connected = False
            self._attempt_done.clear()
            self._task = asyncio.create_task(self._run())

        try:
            async with asyncio.timeout(self.config.connect_timeout):
                await self._attempt_done.wait()
        except asyncio.TimeoutError:
            logger.warning(
                f"MQTT broker {self.config.host}:{self.config.port} did not answer "
                f"within {self.config.connect_timeout}s"
            )
        return self.is_connected

    async def shutdown(self) -> None:
        """Close the connection and stop reconnecting."""
        self._stopping = True
        was_connected = self.is_connected
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._client = None
        self._set_state(ConnectionState.OFFLINE)
        if was_connected:
            self._emit(ConnectionEvent.DISCONNECT)
        logger.info("MQTT connection closed")

    def _create_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.password,
            identifier=self.client_id,
            keepalive=self.config.keepalive,
            timeout=self.config.connect_timeout,
        )

    async def _backoff_sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    async def _run(self) -> None:
        """Connect, pump messages, and reconnect with backoff until stopped."""
        delays = backoff_delays(self.config.reconnect_min_delay, self.config.reconnect_max_delay)
        failed_attempts = 0

        while not self._stopping:
            self._set_state(
                ConnectionState.RECONNECTING if self._has_connected or failed_attempts
                else ConnectionState.CONNECTING
            )
            try:
                async with self._client_factory() as client:
                    await self._on_connected(client)
                    failed_attempts = 0
                    delays = backoff_delays(
                        self.config.reconnect_min_delay, self.config.reconnect_max_delay
                    )
                    async for message in client.messages:
                        await self._dispatch(str(message.topic), message.payload)
                logger.warning("MQTT message stream ended")
            except aiomqtt.MqttError as e:
                if _return_code(e) in UNRECOVERABLE_RETURN_CODES:
                    self._on_disconnected()
                    self._set_state(ConnectionState.ERROR)
                    logger.error(f"MQTT connection refused, not retrying: {e}")
                    self._emit(ConnectionEvent.ERROR, e)
                    self._attempt_done.set()
                    return
                logger.warning(f"MQTT connection error: {e}")

            self._on_disconnected()
            self._attempt_done.set()
            failed_attempts += 1

            max_attempts = self.config.max_reconnect_attempts
            if max_attempts is not None and failed_attempts > max_attempts:
                self._set_state(ConnectionState.OFFLINE)
                logger.error(f"MQTT giving up after {max_attempts} reconnect attempts")
                return

            self._set_state(ConnectionState.RECONNECTING)
            delay = next(delays)
            logger.info(f"MQTT reconnecting in {delay:.1f}s")
            await self._backoff_sleep(delay)

    async def _on_connected(self, client: Any) -> None:
        reconnect = self._has_connected
        self._client = client
        self._has_connected = True
        for topic in self._subscriptions:
            await client.subscribe(topic, qos=1)
        self._set_state(ConnectionState.CONNECTED)
        self._attempt_done.set()
        logger.info(
            f"MQTT {'reconnected' if reconnect else 'connected'} to "
            f"{self.config.host}:{self.config.port} as {self.client_id}"
        )
        self._emit(ConnectionEvent.RECONNECT if reconnect else ConnectionEvent.CONNECT)

    def _on_disconnected(self) -> None:
        was_connected = self.is_connected
        self._client = None
        if was_connected:
            self._emit(ConnectionEvent.DISCONNECT)

    # Messaging

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any] | str | bytes,
        qos: int = 1,
        retain: bool = False,
    ) -> None:
        """Publish a message, failing fast when not connected.

        Raises:
            ValidationError: If ``topic`` contains wildcards or is empty
            NotConnectedError: If the broker connection is down
        """
        if not is_valid_topic(topic):
            raise ValidationError(f"Invalid publish topic: {topic!r}")
        client = self._client
        if client is None or self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError()
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        try:
            await client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as e:
            raise NotConnectedError(f"Publish to {topic} failed: {e}") from e
        logger.debug(f"Published to {topic}")

    async def subscribe(
        self, topic: str, handler: MessageHandler
    ) -> Callable[[], Awaitable[None]]:
        """Route messages matching ``topic`` to ``handler``.

        Subscriptions survive reconnects. Returns an async callable that
        removes this handler.
        """
        handlers = self._subscriptions.setdefault(topic, [])
        first = not handlers
        handlers.append(handler)
        if first and self.is_connected:
            try:
                await self._client.subscribe(topic, qos=1)
            except aiomqtt.MqttError as e:
                logger.warning(f"Subscribe to {topic} failed, will retry on reconnect: {e}")

        async def unsubscribe() -> None:
            await self.unsubscribe(topic, handler)

        return unsubscribe

    async def unsubscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._subscriptions.get(topic)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if handlers:
            return
        del self._subscriptions[topic]
        if self.is_connected:
            try:
                await self._client.unsubscribe(topic)
            except aiomqtt.MqttError as e:
                logger.warning(f"Unsubscribe from {topic} failed: {e}")

    async def _dispatch(self, topic: str, payload: Any) -> None:
        """Deliver one message to every matching handler, in arrival order."""
        if not isinstance(payload, (bytes, bytearray)):
            payload = str(payload if payload is not None else "").encode()
        for pattern, handlers in list(self._subscriptions.items()):
            if not match_topic(topic, pattern):
                continue
            for handler in list(handlers):
                try:
                    result = handler(topic, bytes(payload))
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"MQTT handler for {pattern} failed on {topic}")
