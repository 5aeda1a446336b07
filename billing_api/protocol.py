"""
Wire messages exchanged with TV agents over the `/ws` channel.

Every frame is one JSON object with a `type` field:

  connected  server -> tv   sent once after registration
  ping       both ways      server heartbeat, or a tv-initiated liveness check
  pong       both ways      heartbeat ack from the tv, or the answer to a tv ping
  command    server -> tv   integer command code (224 = power on)
  response   tv -> server   outcome of a command; `confirm` is accepted as an alias
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from dateutil import parser as dtparser
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .errors import ProtocolError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PingMessage(BaseModel):
    type: Literal["ping"]


class PongMessage(BaseModel):
    type: Literal["pong"]


class ResponseMessage(BaseModel):
    type: Literal["response", "confirm"]
    command: int
    status: Literal["success", "failed"]
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        # agents report either "failed" or "error" for the same thing
        if v == "error":
            return "failed"
        return v

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def reason(self) -> str:
        if self.ok:
            return self.message or "Command executed"
        return self.error or self.message or "Command failed"

    def device_time(self) -> datetime | None:
        if not self.timestamp:
            return None
        try:
            return dtparser.isoparse(self.timestamp)
        except (ValueError, OverflowError):
            return None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CommandMessage(BaseModel):
    type: Literal["command"] = "command"
    device_id: str
    command: int
    target: str
    timestamp: str = Field(default_factory=_now_iso)


InboundMessage = Annotated[
    Union[PingMessage, PongMessage, ResponseMessage],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundMessage)


def parse_inbound(raw: str | bytes) -> PingMessage | PongMessage | ResponseMessage:
    """Decode one frame from a tv. Raises ProtocolError for anything unusable."""
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"invalid json: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("frame is not a json object")
    if data.get("type") not in ("ping", "pong", "response", "confirm"):
        raise ProtocolError(f"unsupported message type {data.get('type')!r}")
    try:
        return _inbound.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"invalid {data['type']} message: {e.error_count()} error(s)") from e


def connected_message(device_id: str) -> dict:
    return {
        "type": "connected",
        "device_id": device_id,
        "message": f"Registered as {device_id}",
        "server_time": _now_iso(),
    }


def heartbeat_message() -> dict:
    return {"type": "ping", "timestamp": _now_iso()}


def pong_message(device_id: str) -> dict:
    return {"type": "pong", "device_id": device_id, "timestamp": _now_iso()}


def command_message(device_id: str, command: int, target: str) -> CommandMessage:
    return CommandMessage(device_id=device_id, command=command, target=target)
