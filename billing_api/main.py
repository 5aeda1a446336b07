import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from .auth import Actor, get_actor, require_admin
from .correlator import CommandStatus
from .db import init_db, get_session
from .errors import (DeviceFailed, DeviceNotConnected, DeviceTimeout, DeviceUnavailable, RentalError, SendFailed,
                     ValidationFailed)
from .models import Transaksi, TransaksiDetail
from .schemas import (CommandRequest, CommandResult, DetailOut, RentalStartRequest, RentalStartResponse,
                      TransaksiOut, TransaksiStatusResponse, TransaksiStatusUpdate, TvStatusOut)
from .services import TvServices, build_services, get_services, get_ws_services
from .settings import Settings, settings as default_settings
from .tv_channel import serve_tv_channel
from .utils import add_cors

log = logging.getLogger("api")

router = APIRouter()


def transaksi_out(header: Transaksi, details: list[TransaksiDetail]) -> TransaksiOut:
    return TransaksiOut(
        code=header.code, memberid=header.memberid, customer=header.customer, telepon=header.telepon,
        grandtotal=header.grandtotal, status=header.status, created_by=header.created_by,
        created_at=header.created_at,
        details=[DetailOut(id=d.id, name=d.name, unitid=d.unitid, promoid=d.promoid, produk=d.produk,
                           qty=d.qty, hours=d.hours, harga=d.harga, status=d.status) for d in details],
    )


def _details(session: Session, code: str) -> list[TransaksiDetail]:
    return list(session.exec(
        select(TransaksiDetail).where(TransaksiDetail.code == code).order_by(TransaksiDetail.id)
    ).all())


@router.get("/")
async def index(tv: TvServices = Depends(get_services)):
    return {
        "message": "Billing PS API Server + WebSocket is running!",
        "websocket": "/ws?tv_id=<id>",
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stats": {"connected_tvs": len(tv.registry), "pending_commands": tv.correlator.pending_count()},
    }


@router.get("/status")
async def tv_status(tv: TvServices = Depends(get_services)):
    tvs: dict[str, TvStatusOut] = {}
    for ch in tv.registry.all():
        idle = ch.idle_for()
        tvs[ch.device_id] = TvStatusOut(
            online=ch.is_open and idle < tv.monitor.stale_after,
            ws_connected=ch.is_open,
            seconds_since_last_seen=int(idle),
            ip_address=ch.remote_address,
            model=ch.model,
            connected_at=ch.connected_at,
        )
    online = sum(1 for s in tvs.values() if s.online)
    return {
        "success": True,
        "summary": {"total": len(tvs), "online": online, "offline": len(tvs) - online,
                    "check_time": datetime.now(timezone.utc).isoformat()},
        "tvs": tvs,
    }


@router.get("/ping")
async def http_ping(request: Request, tv_id: str = Query("unknown", alias="id"),
                    tv: TvServices = Depends(get_services)):
    # HTTP keepalive; counts as an inbound frame for a connected tv
    channel = tv.registry.lookup(tv_id)
    connected = channel is not None and channel.is_open
    if connected:
        tv.monitor.touch(channel)
    log.info("event=http_ping device_id=%s remote=%s ws_connected=%s",
             tv_id, request.client.host if request.client else None, connected)
    return {
        "status": "ok",
        "tv": tv_id,
        "time": datetime.now(timezone.utc).isoformat(),
        "message": "Ping received successfully",
        "ws_connected": connected,
    }


@router.post("/api/transaksi", status_code=201, response_model=RentalStartResponse)
async def start_rental(body: RentalStartRequest, actor: Actor = Depends(require_admin),
                       tv: TvServices = Depends(get_services)):
    try:
        result = await tv.gate.start_rental(body, actor)
    except RentalError:
        raise
    except Exception as e:
        log.exception("rental start failed unit=%s", body.unitid)
        raise RentalError("Internal server error") from e

    return RentalStartResponse(
        message="Transaction created successfully",
        data=transaksi_out(result.transaksi, result.details),
        device=result.outcome.to_dict(),
    )


@router.get("/api/transaksi/{code}", response_model=TransaksiOut)
def get_transaksi(code: str, request: Request, actor: Actor = Depends(get_actor)):
    with request.app.state.session_factory() as session:
        header = session.get(Transaksi, code)
        if not header:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return transaksi_out(header, _details(session, code))


@router.put("/api/transaksi/{code}/status", response_model=TransaksiStatusResponse)
def update_transaksi_status(code: str, body: TransaksiStatusUpdate, request: Request,
                            actor: Actor = Depends(require_admin)):
    """Finish ("0") or reopen ("1") a rental; a finished rental frees its unit."""
    if body.status not in ("0", "1"):
        raise ValidationFailed("Valid status is required (0: selesai, 1: main)")
    with request.app.state.session_factory() as session:
        header = session.get(Transaksi, code)
        if not header:
            raise HTTPException(status_code=404, detail="Transaction not found")
        header.status = body.status
        header.updated_by = actor.user_id
        session.add(header)
        session.commit()
        log.info("event=transaksi_status code=%s status=%s updated_by=%s", code, body.status, actor.user_id)
        return TransaksiStatusResponse(message="Transaction status updated successfully",
                                       data=transaksi_out(header, _details(session, code)))


@router.post("/api/tv/{tv_id}/command", response_model=CommandResult)
async def send_tv_command(tv_id: str, body: CommandRequest, actor: Actor = Depends(require_admin),
                          tv: TvServices = Depends(get_services)):
    timeout_ms = body.timeout_ms or tv.gate.timeout_ms
    device = {"device_id": tv_id, "command": body.command}
    try:
        outcome = await tv.correlator.execute(tv_id, body.command, body.target, timeout_ms)
    except DeviceNotConnected as e:
        raise DeviceUnavailable(str(e), device={**device, "connected": False}) from e
    except SendFailed as e:
        raise DeviceUnavailable(str(e), device={**device, "connected": True, "error": str(e.cause)}) from e

    if outcome.ok:
        return CommandResult(success=True, device=outcome.to_dict())
    if outcome.status is CommandStatus.TIMED_OUT:
        raise DeviceTimeout(f"TV {tv_id} sent no acknowledgment within {timeout_ms} ms", device=outcome.to_dict())
    raise DeviceFailed(f"TV {tv_id} reported failure: {outcome.reason}", device=outcome.to_dict())


@router.websocket("/ws")
async def tv_ws(websocket: WebSocket, tv_id: Optional[str] = Query(None), model: Optional[str] = Query(None)):
    await serve_tv_channel(websocket, get_ws_services(websocket), tv_id, model)


async def rental_error_handler(request: Request, exc: RentalError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings = default_settings, engine=None,
               session_factory: Optional[Callable[[], Session]] = None) -> FastAPI:
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    app = FastAPI(title="Billing PS API", version="0.1.0")
    add_cors(app, settings.cors_origins)
    app.add_exception_handler(RentalError, rental_error_handler)
    app.include_router(router)

    app.state.session_factory = session_factory or (lambda: get_session(engine))
    app.state.jwt_secret = settings.jwt_secret
    app.state.tv = build_services(settings, app.state.session_factory)

    @app.on_event("startup")
    async def on_startup():
        init_db(engine)
        app.state.tv.monitor.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        tv: TvServices = app.state.tv
        await tv.monitor.stop()
        await tv.registry.close_all()

    return app


app = create_app()
