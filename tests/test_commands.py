from __future__ import annotations

import json
import logging

import pytest

from tracklink.commands import CommandDispatcher
from tracklink.exceptions import TrackerTransportError
from tracklink.models.commands import CommandType


class _RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    def publish(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))


class _DisconnectedPublisher:
    def publish(self, topic: str, payload: str) -> None:
        raise TrackerTransportError("MQTT not connected", topic=topic)


class _BrokenPublisher:
    def publish(self, topic: str, payload: str) -> None:
        raise OSError("socket closed")


def test_start_command_wire_format() -> None:
    publisher = _RecordingPublisher()
    dispatcher = CommandDispatcher("shiftmatic/test/", publisher)

    dispatch = dispatcher.send_start("esp32-001", 42)

    assert dispatch.delivered is True
    assert dispatch.topic == "shiftmatic/test/esp32-001/cmd"
    assert dispatch.command.cmd == CommandType.START
    topic, payload = publisher.published[0]
    assert topic == "shiftmatic/test/esp32-001/cmd"
    assert json.loads(payload) == {"cmd": "START", "sessionId": 42}


def test_stop_command_wire_format() -> None:
    publisher = _RecordingPublisher()
    dispatcher = CommandDispatcher("shiftmatic/test", publisher)

    dispatcher.send_stop("esp32-001", 42)

    assert json.loads(publisher.published[0][1]) == {"cmd": "STOP", "sessionId": 42}


def test_transport_failure_is_reported_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = CommandDispatcher("shiftmatic/test", _DisconnectedPublisher())

    with caplog.at_level(logging.WARNING, logger="tracklink.commands"):
        dispatch = dispatcher.send_start("esp32-001", 1)

    assert dispatch.delivered is False
    assert "Command dropped" in caplog.text


def test_unexpected_publish_error_is_swallowed() -> None:
    dispatcher = CommandDispatcher("shiftmatic/test", _BrokenPublisher())

    dispatch = dispatcher.send_stop("esp32-001", 1)

    assert dispatch.delivered is False


def test_no_publisher_attached() -> None:
    dispatcher = CommandDispatcher("shiftmatic/test")

    assert dispatcher.send_start("esp32-001", 1).delivered is False

    publisher = _RecordingPublisher()
    dispatcher.attach(publisher)
    assert dispatcher.send_start("esp32-001", 1).delivered is True
    assert len(publisher.published) == 1
