from dataclasses import dataclass
from typing import Callable

from fastapi import Request, WebSocket
from sqlmodel import Session

from .correlator import CommandCorrelator
from .liveness import LivenessMonitor
from .session_gate import SessionGate
from .settings import Settings
from .ws_manager import ConnectionRegistry


@dataclass
class TvServices:
    """Everything that shares tv connection state, handed to routes via app.state."""

    registry: ConnectionRegistry
    correlator: CommandCorrelator
    monitor: LivenessMonitor
    gate: SessionGate


def build_services(settings: Settings, session_factory: Callable[[], Session]) -> TvServices:
    registry = ConnectionRegistry()
    correlator = CommandCorrelator(registry)
    monitor = LivenessMonitor(
        registry,
        heartbeat_interval=settings.tv_heartbeat_interval,
        sweep_interval=settings.tv_sweep_interval,
        stale_after=settings.tv_stale_after,
    )
    gate = SessionGate(
        correlator,
        session_factory,
        timeout_ms=settings.tv_command_timeout_ms,
        power_on_code=settings.tv_power_on_code,
    )
    return TvServices(registry=registry, correlator=correlator, monitor=monitor, gate=gate)


def get_services(request: Request) -> TvServices:
    return request.app.state.tv


def get_ws_services(websocket: WebSocket) -> TvServices:
    return websocket.app.state.tv
