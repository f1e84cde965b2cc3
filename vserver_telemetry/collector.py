"""Collector daemon: poll configured servers and publish their stats."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from typing import Any, Dict, List, Optional, Sequence

import paho.mqtt.client as mqtt

from .config import ServerConfig, Settings, load_settings
from .errors import ConfigError
from .pool import ConnectionPool
from .service import StatsGatherer
from .transport import create_transport

_LOGGER = logging.getLogger(__name__)

STATE_TOPIC = "vserver_telemetry/{name}/state"


def error_payload() -> Dict[str, Any]:
    """Zeroed state published for a server that could not be sampled, so its
    consumers keep receiving updates."""
    return {
        "cpu": {"usage_percent": 0.0, "cores": 0},
        "ram": {"used_gb": 0.0, "total_gb": 0.0, "percent": 0.0},
        "network": {"rx_rate": "0 B/s", "tx_rate": "0 B/s", "rx_bytes_per_sec": 0, "tx_bytes_per_sec": 0},
        "error": True,
    }


def _setup_logging() -> None:
    """Configure module wide logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def _setup_mqtt(settings: Settings) -> Optional[mqtt.Client]:
    """Create and configure the MQTT client."""
    if not settings.mqtt_host:
        _LOGGER.info("MQTT disabled; stats will be printed to log")
        return None

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    if settings.mqtt_user:
        client.username_pw_set(settings.mqtt_user, settings.mqtt_pass)
    try:
        rc = client.connect(settings.mqtt_host, settings.mqtt_port, 60)
    except OSError as exc:
        _LOGGER.error("MQTT connection failed: %s", exc)
        return None

    if rc == mqtt.MQTT_ERR_SUCCESS:
        _LOGGER.info("Connected to MQTT broker at %s:%s", settings.mqtt_host, settings.mqtt_port)
        client.loop_start()
        return client

    _LOGGER.error("Failed to connect to MQTT broker: %s", mqtt.error_string(rc))
    return None


class Collector:
    """Sample every server once per interval through one shared pool."""

    def __init__(
        self,
        servers: Sequence[ServerConfig],
        gatherer: StatsGatherer,
        client: Optional[mqtt.Client] = None,
        interval: float = 30,
    ) -> None:
        self._servers = list(servers)
        self._gatherer = gatherer
        self._client = client
        self._interval = interval

    def _publish(self, name: str, payload: Dict[str, Any]) -> None:
        if self._client and not self._client.is_connected():
            _LOGGER.warning("MQTT client disconnected; switching to log output")
            self._client.loop_stop()
            self._client = None

        if not self._client:
            _LOGGER.info("Stats for %s: %s", name, payload)
            return
        info = self._client.publish(STATE_TOPIC.format(name=name), json.dumps(payload), retain=False)
        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            _LOGGER.info("Published stats for %s: %s", name, payload)
        else:
            _LOGGER.error("Failed to publish stats for %s: %s", name, mqtt.error_string(info.rc))

    async def run_once(self) -> List[Dict[str, Any]]:
        """Sample all servers concurrently and publish one state per server."""
        results = await asyncio.gather(
            *(self._gatherer.gather_stats(server.credentials) for server in self._servers),
            return_exceptions=True,
        )
        published: List[Dict[str, Any]] = []
        for server, result in zip(self._servers, results):
            if isinstance(result, Exception):
                _LOGGER.warning("Failed to collect stats for %s: %s", server.name, result)
                payload = error_payload()
            elif isinstance(result, BaseException):
                raise result
            else:
                payload = result.as_dict()
            self._publish(server.name, payload)
            published.append({"name": server.name, **payload})
        _LOGGER.debug("Pool: %s", self._gatherer.pool_stats())
        return published

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            start = loop.time()
            await self.run_once()
            sleep_for = self._interval - (loop.time() - start)
            if sleep_for > 0:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), sleep_for)

    def close(self) -> None:
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None


async def _run(settings: Settings) -> None:
    pool = ConnectionPool(
        create_transport(settings.ssh_backend, settings.connect_timeout),
        idle_ttl=settings.idle_ttl,
        sweep_interval=settings.sweep_interval,
        connect_timeout=settings.connect_timeout,
    )
    gatherer = StatsGatherer(pool, timeout=settings.stats_timeout)
    collector = Collector(settings.servers, gatherer, _setup_mqtt(settings), settings.interval)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await gatherer.start()
    try:
        await collector.run(stop)
    finally:
        await gatherer.shutdown()
        collector.close()


def main() -> None:
    _setup_logging()
    try:
        settings = load_settings()
    except ConfigError as err:
        _LOGGER.error("%s", err)
        raise SystemExit(1) from err
    if not settings.servers:
        _LOGGER.warning("No servers configured; exiting")
        return
    _LOGGER.info("Configured servers: %s", [s.name for s in settings.servers])
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
