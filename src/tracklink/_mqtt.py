"""Internal MQTT runtime: subscribe to device topics, publish commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from tracklink.config import BrokerEndpoint
from tracklink.exceptions import TrackerTransportError

_RECONNECT_MIN_DELAY = 2
_RECONNECT_MAX_DELAY = 30


@dataclass(frozen=True)
class MqttMessage:
    """Raw inbound message handed from the network thread to the event loop."""

    topic: str
    payload: bytes


class TrackerMqttRuntime:
    """Threaded paho-mqtt runtime that hands messages onto an asyncio loop.

    paho owns reconnection: the network thread keeps retrying with a bounded
    back-off. Every successful (re)connect re-subscribes and fires
    ``on_connected`` on the loop, which the service uses as its
    reconciliation barrier.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[MqttMessage], None],
        on_connected: Callable[[], None] | None = None,
        keepalive: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_message = on_message
        self._on_connected = on_connected
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._subscriptions: tuple[str, ...] = ()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        """Whether the broker session is currently up."""
        return self._running and self._connected

    def start(self, endpoint: BrokerEndpoint, *, client_id: str, subscriptions: Sequence[str]) -> None:
        """Connect (asynchronously) and subscribe once the broker accepts us."""
        self.stop()
        self._logger.info(
            "MQTT runtime start requested host=%s port=%s tls=%s client_id=%s topics=%s",
            endpoint.host,
            endpoint.port,
            endpoint.tls,
            client_id,
            list(subscriptions),
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(self._logger)
        if endpoint.username:
            client.username_pw_set(endpoint.username, endpoint.password)
        if endpoint.tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=_RECONNECT_MIN_DELAY, max_delay=_RECONNECT_MAX_DELAY)

        self._subscriptions = tuple(subscriptions)
        client.on_connect = self._handle_connect
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        # connect_async lets the network thread own the first attempt too, so
        # an unreachable broker at startup is retried instead of raised.
        client.connect_async(endpoint.host, endpoint.port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False
        self._subscriptions = ()

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def publish(self, topic: str, payload: str) -> None:
        """Fire-and-forget QoS 0 publish.

        Raises
        ------
        TrackerTransportError
            The runtime is not connected or paho refused the message.
        """
        client = self._client
        if client is None or not self.is_connected:
            raise TrackerTransportError("MQTT not connected", topic=topic)
        info = client.publish(topic, payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TrackerTransportError(
                f"MQTT publish failed: {mqtt.error_string(info.rc)}",
                topic=topic,
            )

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _handle_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._connected = True
        self._logger.info("MQTT connected reason=%s", reason_code)
        for topic in self._subscriptions:
            result, _mid = client.subscribe(topic, qos=0)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._logger.error("MQTT subscribe failed topic=%s: %s", topic, mqtt.error_string(result))
            else:
                self._logger.info("MQTT subscribed topic=%s", topic)
        if self._on_connected is not None:
            self._loop.call_soon_threadsafe(self._on_connected)

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            message = MqttMessage(topic=msg.topic, payload=bytes(msg.payload))
            self._loop.call_soon_threadsafe(self._on_message, message)
        except Exception:
            self._logger.debug("MQTT message hand-off failure", exc_info=True)

    def _handle_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        self._connected = False
        if self._running:
            self._logger.warning("MQTT disconnected: %s (reconnecting)", reason_code)
