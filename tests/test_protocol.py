"""Tests for the tv channel wire format."""

import json

import pytest

from billing_api import protocol
from billing_api.errors import ProtocolError


def test_parse_ping_and_pong():
    assert isinstance(protocol.parse_inbound('{"type": "ping", "tv_id": "TV1"}'), protocol.PingMessage)
    assert isinstance(protocol.parse_inbound(b'{"type": "pong"}'), protocol.PongMessage)


def test_response_command_is_coerced_to_int():
    msg = protocol.parse_inbound('{"type": "response", "command": "224", "status": "success"}')
    assert isinstance(msg, protocol.ResponseMessage)
    assert msg.command == 224
    assert msg.ok


def test_error_status_normalised_to_failed():
    msg = protocol.parse_inbound(json.dumps({"type": "response", "command": 224, "status": "error", "error": "busy"}))
    assert msg.status == "failed"
    assert not msg.ok
    assert msg.reason == "busy"


def test_confirm_is_accepted_as_response():
    msg = protocol.parse_inbound('{"type": "confirm", "command": 224, "status": "success", "message": "on"}')
    assert isinstance(msg, protocol.ResponseMessage)
    assert msg.reason == "on"


def test_device_timestamp_parsed():
    msg = protocol.parse_inbound(
        '{"type": "response", "command": 1, "status": "success", "timestamp": "2025-01-02T10:00:00Z"}'
    )
    assert msg.device_time().year == 2025
    bad = protocol.parse_inbound('{"type": "response", "command": 1, "status": "success", "timestamp": "soon"}')
    assert bad.device_time() is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"type": "hello"}',
        '{"no_type": true}',
        '{"type": "response", "command": "abc", "status": "success"}',
        '{"type": "response", "status": "success"}',
        '{"type": "response", "command": 224, "status": "maybe"}',
    ],
)
def test_unusable_frames_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        protocol.parse_inbound(raw)


def test_command_message_shape():
    msg = protocol.command_message("TV1", 224, "power_on").model_dump()
    assert msg["type"] == "command"
    assert msg["device_id"] == "TV1"
    assert msg["command"] == 224
    assert msg["target"] == "power_on"
    assert msg["timestamp"]


def test_server_messages():
    connected = protocol.connected_message("TV1")
    assert connected["type"] == "connected"
    assert connected["device_id"] == "TV1"
    assert "TV1" in connected["message"]

    pong = protocol.pong_message("TV1")
    assert pong["type"] == "pong" and pong["device_id"] == "TV1" and pong["timestamp"]

    assert protocol.heartbeat_message()["type"] == "ping"
