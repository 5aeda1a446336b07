import asyncio
import logging
from typing import Optional

from . import protocol
from .ws_manager import CLOSE_STALE, ConnectionRegistry, DeviceChannel

log = logging.getLogger("tv.liveness")


class LivenessMonitor:
    """
    Heartbeat per channel plus a periodic stale sweep.

    Heartbeat: every `heartbeat_interval` the channel must have acked the previous
    ping (a `pong` frame), otherwise it is closed and evicted. A channel that never
    answers is therefore dropped on the second tick, never before the first.

    Sweep: every `sweep_interval` any channel whose last inbound frame is older
    than `stale_after` is evicted, as a backstop for a dead heartbeat loop.
    """

    def __init__(self, registry: ConnectionRegistry, heartbeat_interval: float = 30.0,
                 sweep_interval: float = 30.0, stale_after: float = 60.0) -> None:
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self._sweep_task: Optional[asyncio.Task] = None

    def attach(self, channel: DeviceChannel) -> None:
        channel.cancel_heartbeat()
        channel.heartbeat_task = asyncio.create_task(
            self._heartbeat(channel), name=f"heartbeat-{channel.device_id}"
        )

    def touch(self, channel: DeviceChannel) -> None:
        channel.touch()

    def ack(self, channel: DeviceChannel) -> None:
        channel.is_alive = True
        channel.touch()

    async def _heartbeat(self, channel: DeviceChannel) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not channel.is_open:
                return
            if not channel.is_alive:
                log.warning("event=heartbeat_timeout device_id=%s idle=%.1fs",
                            channel.device_id, channel.idle_for())
                await self.registry.evict(channel.device_id, channel, reason="heartbeat timeout", code=CLOSE_STALE)
                return
            channel.is_alive = False
            try:
                await channel.send_json(protocol.heartbeat_message())
            except Exception as e:
                log.warning("event=heartbeat_send_failed device_id=%s error=%s", channel.device_id, e)
                await self.registry.evict(channel.device_id, channel, reason="heartbeat send failed", code=CLOSE_STALE)
                return

    async def sweep_once(self) -> list[str]:
        evicted = []
        for channel in self.registry.all():
            idle = channel.idle_for()
            if idle > self.stale_after or not channel.is_open:
                log.warning("event=stale device_id=%s idle=%.1fs open=%s",
                            channel.device_id, idle, channel.is_open)
                if await self.registry.evict(channel.device_id, channel, reason="stale", code=CLOSE_STALE):
                    evicted.append(channel.device_id)
        return evicted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception:
                log.exception("stale sweep failed")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="tv-stale-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for channel in self.registry.all():
            channel.cancel_heartbeat()
