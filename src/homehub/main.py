"""Main entry point for the HomeHub device service."""

import asyncio
import logging
import signal
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass

from homehub.config import HomeHubConfig, apply_secrets, load_config, load_secrets
from homehub.devices.http import HttpDeviceAdapter
from homehub.devices.hue import HueBridgeAdapter
from homehub.devices.mqtt import MqttDeviceAdapter
from homehub.devices.registry import DeviceRegistry
from homehub.mqtt.connection import ConnectionEvent, ConnectionManager
from homehub.state.kv_client import KVClient
from homehub.state.store import LocalStateStore
from homehub.utils.errors import HomeHubError, NetworkError
from homehub.utils.health import HealthMonitor
from homehub.utils.retry import RetryExhausted, retry_async

logger = logging.getLogger(__name__)


@dataclass
class HomeHub:
    """Everything built at startup, torn down in reverse on shutdown."""

    config: HomeHubConfig
    registry: DeviceRegistry
    kv: KVClient
    cache: LocalStateStore
    connection: ConnectionManager | None
    monitor: HealthMonitor


def build(config: HomeHubConfig) -> HomeHub:
    """Wire adapters, connection, persistence and registry from config."""
    timeouts = config.adapters
    kv = KVClient(config.kv)
    cache = LocalStateStore(config.registry.cache_path)

    connection = None
    mqtt_adapter = None
    if config.mqtt is not None:
        connection = ConnectionManager(config.mqtt)
        mqtt_adapter = MqttDeviceAdapter(
            connection,
            timeout=timeouts.command_timeout,
            confirm_timeout=timeouts.confirm_timeout,
            discovery_wait=timeouts.discovery_wait,
        )

    hue_adapter = None
    if config.hue is not None and config.hue.username:
        hue_adapter = HueBridgeAdapter(
            config.hue.ip, config.hue.username, timeout=config.hue.timeout
        )
    elif config.hue is not None:
        logger.warning("Hue bridge configured without a username; Hue devices disabled")

    registry = DeviceRegistry(
        http=HttpDeviceAdapter(timeout=timeouts.command_timeout),
        mqtt=mqtt_adapter,
        hue=hue_adapter,
        kv=kv,
        cache=cache,
        persist_debounce=config.registry.persist_debounce,
    )
    monitor = HealthMonitor(registry.refresh_all, check_interval=config.registry.poll_interval)
    return HomeHub(config, registry, kv, cache, connection, monitor)


async def start(hub: HomeHub) -> None:
    """Open connections and load state."""
    await hub.cache.initialize()

    if hub.connection is not None:
        hub.connection.on(ConnectionEvent.CONNECT, lambda: logger.info("MQTT online"))
        hub.connection.on(ConnectionEvent.DISCONNECT, lambda: logger.warning("MQTT offline"))
        hub.connection.on(
            ConnectionEvent.ERROR, lambda e: logger.error(f"MQTT connection failed: {e}")
        )
        if not await hub.connection.init():
            logger.warning("MQTT not connected yet; commands fail until it is")

    try:
        await retry_async(
            hub.registry.load_from_kv,
            max_attempts=3,
            initial_delay=1.0,
            retryable_exceptions=(NetworkError,),
        )
    except (RetryExhausted, HomeHubError) as e:
        logger.warning(f"Falling back to local cache: {e}")
        await hub.registry.load_from_cache()

    await hub.registry.start()
    await hub.monitor.start()
    logger.info(f"{hub.config.name}: {len(hub.registry.get_devices())} devices ready")


async def shutdown(hub: HomeHub) -> None:
    """Stop polling, flush KV writes, then close every connection."""
    async with AsyncExitStack() as stack:
        stack.push_async_callback(hub.cache.close)
        stack.push_async_callback(hub.kv.close)
        for adapter in (hub.registry.http, hub.registry.mqtt, hub.registry.hue):
            if adapter is not None:
                stack.push_async_callback(adapter.close)
        if hub.connection is not None:
            stack.push_async_callback(hub.connection.shutdown)
        stack.push_async_callback(hub.registry.stop)
        stack.push_async_callback(hub.monitor.stop)
    logger.info("HomeHub stopped")


async def main() -> None:
    """Main entry point."""
    logger.info("Starting HomeHub...")

    try:
        config = apply_secrets(load_config(), load_secrets())
        logger.info(f"Loaded config for: {config.name}")
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    hub = build(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await start(hub)
        await stop.wait()
    finally:
        await shutdown(hub)


def run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
