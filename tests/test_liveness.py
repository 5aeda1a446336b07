"""
Timing tests for LivenessMonitor.

Intervals are shrunk to a tenth of a second; assertions are placed half an
interval away from each tick.
"""

import asyncio

from billing_api.liveness import LivenessMonitor
from billing_api.ws_manager import CLOSE_STALE, ConnectionRegistry, DeviceChannel

INTERVAL = 0.1


def _monitor(registry, **kwargs):
    opts = {"heartbeat_interval": INTERVAL, "sweep_interval": INTERVAL, "stale_after": 10.0}
    opts.update(kwargs)
    return LivenessMonitor(registry, **opts)


def test_silent_tv_is_evicted_after_two_intervals(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry)
        ws = fake_ws()
        channel = DeviceChannel("TV1", ws)
        await registry.register(channel)
        monitor.attach(channel)

        checks = {}
        await asyncio.sleep(INTERVAL * 0.5)
        checks["before_first_tick"] = (registry.lookup("TV1") is channel, len(ws.sent_of_type("ping")))
        await asyncio.sleep(INTERVAL)
        checks["after_first_tick"] = (registry.lookup("TV1") is channel, channel.is_alive)
        await asyncio.sleep(INTERVAL)
        checks["after_second_tick"] = registry.lookup("TV1")
        return checks, ws

    checks, ws = asyncio.run(scenario())
    assert checks["before_first_tick"] == (True, 0)
    assert checks["after_first_tick"] == (True, False)
    assert checks["after_second_tick"] is None
    assert len(ws.sent_of_type("ping")) == 1
    assert ws.closed_with[0] == CLOSE_STALE


def test_acked_heartbeat_keeps_channel(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry)
        ws = fake_ws()
        channel = DeviceChannel("TV1", ws)
        await registry.register(channel)
        monitor.attach(channel)

        await asyncio.sleep(INTERVAL * 1.5)
        monitor.ack(channel)
        await asyncio.sleep(INTERVAL)
        alive_after_ack = registry.lookup("TV1") is channel
        pings = len(ws.sent_of_type("ping"))
        # stop answering
        await asyncio.sleep(INTERVAL * 1.5)
        return alive_after_ack, pings, registry.lookup("TV1")

    alive_after_ack, pings, final = asyncio.run(scenario())
    assert alive_after_ack
    assert pings == 2
    assert final is None


def test_heartbeat_send_failure_evicts(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry)
        channel = DeviceChannel("TV1", fake_ws(fail_send=True))
        await registry.register(channel)
        monitor.attach(channel)
        await asyncio.sleep(INTERVAL * 1.5)
        return registry.lookup("TV1"), channel

    found, channel = asyncio.run(scenario())
    assert found is None
    assert not channel.is_open


def test_sweep_evicts_only_idle_channels(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry, stale_after=60.0)
        idle = DeviceChannel("TV1", fake_ws())
        fresh = DeviceChannel("TV2", fake_ws())
        await registry.register(idle)
        await registry.register(fresh)
        idle.last_liveness_at -= 61.0
        evicted = await monitor.sweep_once()
        return registry, evicted

    registry, evicted = asyncio.run(scenario())
    assert evicted == ["TV1"]
    assert registry.lookup("TV1") is None
    assert registry.lookup("TV2") is not None


def test_sweep_loop_runs_until_stopped(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry, stale_after=0.05)
        channel = DeviceChannel("TV1", fake_ws())
        await registry.register(channel)
        monitor.start()
        await asyncio.sleep(INTERVAL * 1.5)
        found = registry.lookup("TV1")
        await monitor.stop()
        return found

    assert asyncio.run(scenario()) is None


def test_eviction_cancels_heartbeat(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry)
        channel = DeviceChannel("TV1", fake_ws())
        await registry.register(channel)
        monitor.attach(channel)
        task = channel.heartbeat_task
        await registry.evict("TV1")
        await registry.evict("TV1")
        await asyncio.gather(task, return_exceptions=True)
        return task, channel

    task, channel = asyncio.run(scenario())
    assert task.cancelled()
    assert channel.heartbeat_task is None


def test_inbound_frames_refresh_liveness(fake_ws):
    async def scenario():
        registry = ConnectionRegistry()
        monitor = _monitor(registry, stale_after=60.0)
        channel = DeviceChannel("TV1", fake_ws())
        await registry.register(channel)
        channel.last_liveness_at -= 61.0
        monitor.touch(channel)
        return await monitor.sweep_once()

    assert asyncio.run(scenario()) == []
