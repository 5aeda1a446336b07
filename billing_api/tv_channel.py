import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from . import protocol
from .errors import ProtocolError
from .services import TvServices
from .ws_manager import DeviceChannel

log = logging.getLogger("tv.channel")


async def handle_frame(services: TvServices, channel: DeviceChannel, raw: str | bytes) -> None:
    services.monitor.touch(channel)
    try:
        msg = protocol.parse_inbound(raw)
    except ProtocolError as e:
        log.warning("event=bad_frame device_id=%s error=%s raw=%.200r", channel.device_id, e, raw)
        return

    if isinstance(msg, protocol.PongMessage):
        services.monitor.ack(channel)
    elif isinstance(msg, protocol.PingMessage):
        services.monitor.ack(channel)
        await channel.send_json(protocol.pong_message(channel.device_id))
    elif isinstance(msg, protocol.ResponseMessage):
        services.correlator.resolve(channel.device_id, msg)


async def serve_tv_channel(websocket: WebSocket, services: TvServices, tv_id: Optional[str],
                           model: Optional[str] = None) -> None:
    remote = websocket.client.host if websocket.client else None
    if not tv_id:
        log.warning("event=reject reason=missing_tv_id remote=%s", remote)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    channel = DeviceChannel(tv_id, websocket, remote_address=remote, model=model)
    await services.registry.register(channel)
    services.monitor.attach(channel)

    try:
        await channel.send_json(protocol.connected_message(tv_id))
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                log.info("event=disconnect device_id=%s code=%s", tv_id, message.get("code"))
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await handle_frame(services, channel, raw)
    except WebSocketDisconnect as e:
        log.info("event=disconnect device_id=%s code=%s", tv_id, e.code)
    except Exception as e:
        if channel.closed:
            log.debug("event=receive_after_close device_id=%s error=%s", tv_id, e)
        else:
            log.exception("event=channel_error device_id=%s", tv_id)
    finally:
        await services.registry.evict(tv_id, channel, reason="disconnected", code=status.WS_1000_NORMAL_CLOSURE)
