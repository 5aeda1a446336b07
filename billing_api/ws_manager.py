import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

log = logging.getLogger("tv.registry")

# application close codes sent to tv agents
CLOSE_REPLACED = 4000
CLOSE_STALE = 4001
CLOSE_SHUTDOWN = 1001


class DeviceChannel:
    """One live connection from a tv agent."""

    def __init__(self, device_id: str, websocket: WebSocket, remote_address: Optional[str] = None,
                 model: Optional[str] = None, clock=time.monotonic) -> None:
        self.device_id = device_id
        self.websocket = websocket
        self.remote_address = remote_address
        self.model = model or "unknown"
        self.connected_at = datetime.now(timezone.utc)
        self._clock = clock
        self.last_liveness_at = clock()
        self.is_alive = True
        self.closed = False
        self.heartbeat_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        for attr in ("application_state", "client_state"):
            state = getattr(self.websocket, attr, None)
            if state is not None and state == WebSocketState.DISCONNECTED:
                return False
        return True

    def idle_for(self) -> float:
        return self._clock() - self.last_liveness_at

    def touch(self) -> None:
        self.last_liveness_at = self._clock()

    async def send_json(self, data: dict) -> None:
        await self.websocket.send_text(json.dumps(data))

    def cancel_heartbeat(self) -> None:
        task, self.heartbeat_task = self.heartbeat_task, None
        if task is None or task.done():
            return
        # the heartbeat loop closes its own channel and returns by itself
        if task is asyncio.current_task():
            return
        task.cancel()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.cancel_heartbeat()
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # transport already gone
            log.debug("close device_id=%s ignored: %s", self.device_id, e)

    def __repr__(self) -> str:
        return f"<DeviceChannel {self.device_id} {self.remote_address} open={self.is_open}>"


class ConnectionRegistry:
    def __init__(self) -> None:
        self._channels: Dict[str, DeviceChannel] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._channels)

    async def register(self, channel: DeviceChannel) -> None:
        async with self._lock:
            previous = self._channels.get(channel.device_id)
            self._channels[channel.device_id] = channel

        if previous is not None and previous is not channel:
            log.warning(
                "event=evict device_id=%s reason=replaced old_remote=%s new_remote=%s",
                channel.device_id, previous.remote_address, channel.remote_address,
            )
            await previous.close(CLOSE_REPLACED, "Replaced by a newer connection")

        log.info("event=register device_id=%s remote=%s total=%d",
                 channel.device_id, channel.remote_address, len(self._channels))

    def lookup(self, device_id: str) -> Optional[DeviceChannel]:
        return self._channels.get(device_id)

    async def evict(self, device_id: str, channel: Optional[DeviceChannel] = None,
                    reason: str = "evicted", code: int = CLOSE_STALE) -> bool:
        """
        Remove the entry for `device_id`. With `channel`, only that exact object is
        removed, so a closing old connection can never drop its replacement.
        Evicting an absent id is a no-op. The evicted channel is always closed.
        """
        async with self._lock:
            current = self._channels.get(device_id)
            removed = None
            if current is not None and (channel is None or current is channel):
                removed = self._channels.pop(device_id)

        if removed is not None:
            log.warning("event=evict device_id=%s reason=%s remote=%s total=%d",
                        device_id, reason, removed.remote_address, len(self._channels))
        target = removed or channel
        if target is not None:
            await target.close(code, reason)
        return removed is not None

    def all(self) -> List[DeviceChannel]:
        return list(self._channels.values())

    async def close_all(self, code: int = CLOSE_SHUTDOWN, reason: str = "Server shutting down") -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        if channels:
            log.info("event=shutdown closing=%d", len(channels))
            await asyncio.gather(*(ch.close(code, reason) for ch in channels), return_exceptions=True)
