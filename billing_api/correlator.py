import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from . import protocol
from .errors import DeviceNotConnected, SendFailed
from .protocol import CommandMessage, ResponseMessage
from .ws_manager import ConnectionRegistry

log = logging.getLogger("tv.command")


class CommandStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class CommandOutcome:
    device_id: str
    command: int
    status: CommandStatus
    elapsed_ms: int
    payload: Dict[str, Any] = field(default_factory=dict)
    device_time: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.status is CommandStatus.SUCCESS

    @property
    def reason(self) -> str:
        if self.status is CommandStatus.TIMED_OUT:
            return "no acknowledgment"
        return self.payload.get("error") or self.payload.get("message") or self.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "command": self.command,
            "status": self.status.value,
            "message": self.reason,
            "elapsed_ms": self.elapsed_ms,
            "response": self.payload or None,
            "device_time": self.device_time.isoformat() if self.device_time else None,
        }


@dataclass
class PendingCommand:
    device_id: str
    command_code: int
    issued_at: float
    future: asyncio.Future
    timeout_ms: Optional[int] = None


class CommandCorrelator:
    """
    Matches commands sent to a tv with the `response` frames coming back.

    The wire protocol carries no request id, so a pending command is keyed by
    (device_id, command_code) only. Issuing a command for a pair drops whatever
    slot was left for it; a waiter whose slot was dropped can only time out.
    """

    def __init__(self, registry: ConnectionRegistry, clock=time.monotonic) -> None:
        self.registry = registry
        self._clock = clock
        self._pending: Dict[Tuple[str, int], PendingCommand] = {}

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, device_id: str, command_code: int) -> bool:
        return (device_id, int(command_code)) in self._pending

    def clear(self, device_id: str, command_code: int) -> bool:
        return self._pending.pop((device_id, int(command_code)), None) is not None

    def _new_pending(self, device_id: str, command_code: int) -> PendingCommand:
        pending = PendingCommand(
            device_id=device_id,
            command_code=command_code,
            issued_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[(device_id, command_code)] = pending
        return pending

    def _drop(self, pending: PendingCommand) -> None:
        key = (pending.device_id, pending.command_code)
        if self._pending.get(key) is pending:
            del self._pending[key]

    async def send_command(self, device_id: str, command_code: int, target: str) -> CommandMessage:
        channel = self.registry.lookup(device_id)
        if channel is None or not channel.is_open:
            log.warning("event=command_rejected device_id=%s command=%s reason=not_connected",
                        device_id, command_code)
            raise DeviceNotConnected(device_id)

        command_code = int(command_code)
        message = protocol.command_message(device_id, command_code, target)
        # the slot exists before the frame leaves so a fast reply is not lost
        pending = self._new_pending(device_id, command_code)
        try:
            await channel.send_json(message.model_dump())
        except Exception as e:
            self._drop(pending)
            log.error("event=command_send_failed device_id=%s command=%s error=%s", device_id, command_code, e)
            raise SendFailed(device_id, e) from e

        log.info("event=command_sent device_id=%s command=%s target=%s", device_id, command_code, target)
        return message

    async def await_response(self, device_id: str, command_code: int, timeout_ms: int) -> CommandOutcome:
        command_code = int(command_code)
        pending = self._pending.get((device_id, command_code)) or self._new_pending(device_id, command_code)
        pending.timeout_ms = timeout_ms

        try:
            response: ResponseMessage = await asyncio.wait_for(pending.future, timeout_ms / 1000)
        except asyncio.TimeoutError:
            elapsed = int((self._clock() - pending.issued_at) * 1000)
            log.warning("event=command_timeout device_id=%s command=%s timeout_ms=%d",
                        device_id, command_code, timeout_ms)
            return CommandOutcome(device_id, command_code, CommandStatus.TIMED_OUT, elapsed)
        finally:
            self._drop(pending)

        elapsed = int((self._clock() - pending.issued_at) * 1000)
        status = CommandStatus.SUCCESS if response.ok else CommandStatus.FAILED
        log.info("event=command_resolved device_id=%s command=%s status=%s elapsed_ms=%d",
                 device_id, command_code, status.value, elapsed)
        return CommandOutcome(device_id, command_code, status, elapsed, response.payload(), response.device_time())

    async def execute(self, device_id: str, command_code: int, target: str, timeout_ms: int) -> CommandOutcome:
        self.clear(device_id, command_code)
        await self.send_command(device_id, command_code, target)
        return await self.await_response(device_id, command_code, timeout_ms)

    def resolve(self, device_id: str, response: ResponseMessage) -> bool:
        """Hand an inbound response to its waiter. Unmatched or late responses are dropped."""
        pending = self._pending.get((device_id, response.command))
        if pending is None or pending.future.done():
            log.info("event=response_discarded device_id=%s command=%s status=%s",
                     device_id, response.command, response.status)
            return False
        if not response.ok:
            log.error("event=command_failed device_id=%s command=%s error=%s",
                      device_id, response.command, response.reason)
        pending.future.set_result(response)
        return True
