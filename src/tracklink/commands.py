"""Best-effort session lifecycle commands to devices."""

from __future__ import annotations

import logging
from typing import Protocol

from tracklink.exceptions import TrackerError
from tracklink.models.commands import CommandDispatch, CommandType, DeviceCommand

_logger = logging.getLogger(__name__)


class CommandPublisher(Protocol):
    """Anything that can publish a text payload on a topic (the MQTT runtime)."""

    def publish(self, topic: str, payload: str) -> None: ...


class CommandDispatcher:
    """Publishes ``START``/``STOP`` on ``<prefix>/<deviceId>/cmd``.

    No acknowledgement is awaited and nothing is retried. A failed publish is
    logged and reported in the returned :class:`CommandDispatch`, never
    raised: the durable session change has already committed and is the
    operation's success criterion.
    """

    def __init__(self, topic_prefix: str, publisher: CommandPublisher | None = None) -> None:
        self._topic_prefix = topic_prefix.rstrip("/")
        self._publisher = publisher

    def attach(self, publisher: CommandPublisher | None) -> None:
        """Swap the publisher (e.g. after the transport is (re)created)."""
        self._publisher = publisher

    def topic_for(self, device_id: str) -> str:
        return f"{self._topic_prefix}/{device_id}/cmd"

    def send_start(self, device_id: str, session_id: int) -> CommandDispatch:
        return self._send(device_id, DeviceCommand(cmd=CommandType.START, session_id=session_id))

    def send_stop(self, device_id: str, session_id: int) -> CommandDispatch:
        return self._send(device_id, DeviceCommand(cmd=CommandType.STOP, session_id=session_id))

    def _send(self, device_id: str, command: DeviceCommand) -> CommandDispatch:
        topic = self.topic_for(device_id)
        delivered = False
        publisher = self._publisher
        if publisher is None:
            _logger.warning("Command dropped (no transport) topic=%s cmd=%s", topic, command.cmd)
        else:
            try:
                publisher.publish(topic, command.to_json())
                delivered = True
                _logger.info(
                    "Command published topic=%s cmd=%s session_id=%s",
                    topic,
                    command.cmd,
                    command.session_id,
                )
            except TrackerError as exc:
                _logger.warning("Command dropped topic=%s cmd=%s: %s", topic, command.cmd, exc)
            except Exception:
                _logger.exception("Command publish raised topic=%s cmd=%s", topic, command.cmd)
        return CommandDispatch(device_id=device_id, topic=topic, command=command, delivered=delivered)
