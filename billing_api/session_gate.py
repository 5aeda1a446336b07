import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, time as dtime, timezone
from typing import Callable, Optional

from sqlmodel import Session, func, select
from starlette.concurrency import run_in_threadpool

from .auth import Actor
from .correlator import CommandCorrelator, CommandOutcome, CommandStatus
from .errors import DeviceFailed, DeviceNotConnected, DeviceTimeout, DeviceUnavailable, RentalError, SendFailed, ValidationFailed
from .models import BrandTV, CodeTV, Member, Produk, Promo, Transaksi, TransaksiDetail, Unit
from .schemas import ProductLine, RentalStartRequest

log = logging.getLogger("rental")

POWER_ON_TARGET = "power_on"
CODE_ATTEMPTS = 10


@dataclass
class _Checked:
    unit: Unit
    member: Optional[Member] = None
    promo: Optional[Promo] = None
    products: list[tuple[ProductLine, Produk]] = field(default_factory=list)


@dataclass
class _Prepared:
    checked: _Checked
    header: Transaksi
    details: list[TransaksiDetail]
    device_id: str
    command: int


@dataclass
class RentalResult:
    transaksi: Transaksi
    details: list[TransaksiDetail]
    outcome: CommandOutcome
    device_id: str


class SessionGate:
    """
    Starts a paid rental. The transaction rows are written inside an open database
    transaction and only committed once the unit's TV acknowledged power-on.
    Every other exit rolls the whole write back.

    Database work runs in the threadpool; only the wait for the TV stays on the
    event loop, so a rental blocked on a row or file lock never stalls other
    channels. Codes handed to rentals still in flight are reserved in-process
    because their rows are not visible to other sessions until commit.
    """

    def __init__(self, correlator: CommandCorrelator, session_factory: Callable[[], Session],
                 timeout_ms: int = 10000, power_on_code: int = 224) -> None:
        self.correlator = correlator
        self.session_factory = session_factory
        self.timeout_ms = timeout_ms
        self.power_on_code = power_on_code
        self._codes_lock = threading.Lock()
        self._reserved_codes: set[str] = set()

    async def start_rental(self, req: RentalStartRequest, actor: Optional[Actor] = None) -> RentalResult:
        user_id = actor.user_id if actor else None
        session = self.session_factory()
        prepared: Optional[_Prepared] = None
        try:
            prepared = await run_in_threadpool(self._prepare, session, req, user_id)
            header, device_id = prepared.header, prepared.device_id
            outcome = await self._power_on(device_id, prepared.command, header.code)

            if outcome.status is CommandStatus.SUCCESS:
                await run_in_threadpool(session.commit)
                log.info("event=rental_started code=%s unit=%s device_id=%s elapsed_ms=%d",
                         header.code, prepared.checked.unit.id, device_id, outcome.elapsed_ms)
                return RentalResult(header, prepared.details, outcome, device_id)

            log.warning("event=rental_aborted code=%s device_id=%s status=%s reason=%s",
                        header.code, device_id, outcome.status.value, outcome.reason)
            if outcome.status is CommandStatus.TIMED_OUT:
                raise DeviceTimeout(
                    f"TV {device_id} sent no acknowledgment within {self.timeout_ms} ms",
                    device=outcome.to_dict(),
                )
            raise DeviceFailed(f"TV {device_id} failed to power on: {outcome.reason}", device=outcome.to_dict())
        except Exception:
            await run_in_threadpool(session.rollback)
            raise
        finally:
            # close() also rolls back a write left open by cancellation
            session.close()
            if prepared is not None:
                self._release_code(prepared.header.code)

    def _prepare(self, session: Session, req: RentalStartRequest, user_id: Optional[int]) -> _Prepared:
        checked = self._validate(session, req)
        code = self._next_code(session)
        try:
            header, details = self._write(session, code, req, checked, user_id)
            device_id, command = self._resolve_device(session, checked.unit)
        except BaseException:
            self._release_code(code)
            raise
        return _Prepared(checked, header, details, device_id, command)

    def _validate(self, session: Session, req: RentalStartRequest) -> _Checked:
        if not req.customer and req.memberid is None:
            raise ValidationFailed("Either customer name or member ID is required")

        unit = session.exec(select(Unit).where(Unit.id == req.unitid).with_for_update()).first()
        if unit is None or unit.status != 1:
            raise ValidationFailed(f"Invalid unit ID {req.unitid} or unit is not active")

        active = session.exec(
            select(TransaksiDetail.code)
            .join(Transaksi, Transaksi.code == TransaksiDetail.code)
            .where(TransaksiDetail.unitid == unit.id, TransaksiDetail.status == 1, Transaksi.status == "1")
        ).first()
        if active:
            raise ValidationFailed(f"Unit {unit.name} is already in use by transaction {active}")

        checked = _Checked(unit=unit)

        if req.memberid is not None:
            member = session.get(Member, req.memberid)
            if member is None or member.status != 1:
                raise ValidationFailed("Invalid member ID or member is inactive")
            checked.member = member

        if req.promoid is not None:
            promo = session.get(Promo, req.promoid)
            if promo is None or promo.status != 1:
                raise ValidationFailed(f"Invalid promo ID {req.promoid}")
            if promo.unitid is not None and promo.unitid != unit.id:
                raise ValidationFailed(f"Promo {promo.name or promo.id} does not apply to unit {unit.name}")
            checked.promo = promo

        remaining: dict[int, int] = {}
        for i, line in enumerate(req.products):
            produk = session.exec(select(Produk).where(Produk.id == line.produk).with_for_update()).first()
            if produk is None or produk.status != 1:
                raise ValidationFailed(f"Invalid produk ID {line.produk} at index {i}")
            left = remaining.get(produk.id, produk.stok)
            if left < line.qty:
                raise ValidationFailed(f"Insufficient stock for {produk.name}: {left} left, {line.qty} requested")
            remaining[produk.id] = left - line.qty
            checked.products.append((line, produk))

        return checked

    def _next_code(self, session: Session) -> str:
        """Next `TRX<yymmdd><seq>` code for the current UTC day, reserved until released."""
        now = datetime.now(timezone.utc)
        start = datetime.combine(now.date(), dtime.min, tzinfo=timezone.utc)
        end = datetime.combine(now.date(), dtime.max, tzinfo=timezone.utc)
        count = session.exec(
            select(func.count()).select_from(Transaksi).where(Transaksi.created_at >= start, Transaksi.created_at <= end)
        ).one()
        prefix = f"TRX{now:%y%m%d}"
        with self._codes_lock:
            for seq in range(count + 1, count + 1 + CODE_ATTEMPTS + len(self._reserved_codes)):
                code = f"{prefix}{seq:03d}"
                if code in self._reserved_codes or session.get(Transaksi, code) is not None:
                    continue
                self._reserved_codes.add(code)
                return code
        raise RentalError("Failed to generate unique transaction code")

    def _release_code(self, code: str) -> None:
        with self._codes_lock:
            self._reserved_codes.discard(code)

    def _write(self, session: Session, code: str, req: RentalStartRequest, checked: _Checked,
               user_id: Optional[int]) -> tuple[Transaksi, list[TransaksiDetail]]:
        unit, member, promo = checked.unit, checked.member, checked.promo

        header = Transaksi(
            code=code,
            memberid=member.id if member else None,
            customer=req.customer or (member.name if member else None),
            telepon=req.telepon or (member.telepon if member else None),
            status="1",
            created_by=user_id,
            updated_by=user_id,
        )
        session.add(header)
        session.flush()

        rent = req.harga if req.harga is not None else unit.price * req.hours
        details = [TransaksiDetail(code=code, name=unit.name, unitid=unit.id, hours=req.hours,
                                   harga=rent, created_by=user_id)]

        if promo is not None:
            discount = promo.discount_nominal or rent * (promo.discount_percent or 0) // 100
            details.append(TransaksiDetail(code=code, name=promo.name or f"Promo {promo.id}", promoid=promo.id,
                                           hours=promo.hours, harga=-min(discount, rent), created_by=user_id))

        for line, produk in checked.products:
            price = line.harga if line.harga is not None else produk.harga_jual
            details.append(TransaksiDetail(code=code, name=produk.name, produk=produk.id, qty=line.qty,
                                           harga=price * line.qty, created_by=user_id))
            produk.stok -= line.qty
            session.add(produk)

        session.add_all(details)
        header.grandtotal = req.grandtotal if req.grandtotal is not None else sum(d.harga for d in details)
        session.add(header)
        session.flush()
        return header, details

    def _resolve_device(self, session: Session, unit: Unit) -> tuple[str, int]:
        tv = session.get(BrandTV, unit.brandtvid) if unit.brandtvid is not None else None
        if tv is None:
            raise DeviceUnavailable(f"Unit {unit.name} has no TV assigned", device={"unitid": unit.id})
        row = session.exec(select(CodeTV).where(CodeTV.brandtvid == tv.id, CodeTV.desc == POWER_ON_TARGET)).first()
        return tv.tv_id, row.code if row else self.power_on_code

    async def _power_on(self, device_id: str, code: int, transaksi_code: str) -> CommandOutcome:
        channel = self.correlator.registry.lookup(device_id)
        if channel is None or not channel.is_open:
            log.warning("event=rental_no_device code=%s device_id=%s", transaksi_code, device_id)
            raise DeviceUnavailable(f"TV {device_id} is not connected",
                                    device={"device_id": device_id, "command": code, "connected": False})
        try:
            return await self.correlator.execute(device_id, code, POWER_ON_TARGET, self.timeout_ms)
        except DeviceNotConnected as e:
            raise DeviceUnavailable(str(e), device={"device_id": device_id, "command": code, "connected": False}) from e
        except SendFailed as e:
            raise DeviceUnavailable(str(e), device={"device_id": device_id, "command": code,
                                                   "connected": True, "error": str(e.cause)}) from e
