import asyncio
import json

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from billing_api import protocol
from billing_api.db import get_session, init_db, make_engine
from billing_api.models import BrandTV, CodeTV, Member, Produk, Promo, Unit


class FakeWebSocket:
    """Records frames sent to a tv instead of writing them to a socket."""

    def __init__(self, fail_send: bool = False):
        self.sent: list[dict] = []
        self.closes: list[tuple[int, str]] = []
        self.fail_send = fail_send

    @property
    def closed_with(self):
        return self.closes[0] if self.closes else None

    def sent_of_type(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == kind]

    async def send_text(self, text: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closes.append((code, reason))


class AnsweringWebSocket(FakeWebSocket):
    """A tv that answers every command with `reply` after `delay` seconds."""

    def __init__(self, correlator, device_id: str, reply: dict | None, delay: float = 0.0):
        super().__init__()
        self.correlator = correlator
        self.device_id = device_id
        self.reply = reply
        self.delay = delay

    async def send_text(self, text: str) -> None:
        await super().send_text(text)
        msg = json.loads(text)
        if msg.get("type") == "command" and self.reply is not None:
            asyncio.get_running_loop().call_later(self.delay, self._answer, msg["command"])

    def _answer(self, command: int) -> None:
        frame = json.dumps({"type": "response", "command": command, **self.reply})
        self.correlator.resolve(self.device_id, protocol.parse_inbound(frame))


@pytest.fixture
def fake_ws():
    return FakeWebSocket


@pytest.fixture
def answering_ws():
    return AnsweringWebSocket


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine, expire_on_commit=False)


def seed(session_factory):
    """Two TVs, units in every state, members, promos and products."""
    with session_factory() as s:
        s.add(BrandTV(id=1, name="Samsung", cabangid=1, tv_id="TV1"))
        s.add(BrandTV(id=2, name="LG", cabangid=1, tv_id="TV2"))
        s.add(CodeTV(brandtvid=2, code=26, desc="power_on"))
        s.add(Unit(id=1, name="PS-001", brandtvid=1, cabangid=1, price=15000, status=1))
        s.add(Unit(id=2, name="PS-002", brandtvid=None, cabangid=1, price=15000, status=1))
        s.add(Unit(id=3, name="PS-003", brandtvid=1, cabangid=1, price=15000, status=2))
        s.add(Unit(id=4, name="PS-004", brandtvid=2, cabangid=1, price=20000, status=1))
        s.add(Member(id=1, name="Budi", telepon="081200000001", status=1))
        s.add(Member(id=2, name="Sari", telepon="081200000002", status=0))
        s.add(Promo(id=1, name="Happy Hour", discount_percent=20, status=1))
        s.add(Promo(id=2, name="PS-002 only", unitid=2, discount_nominal=5000, status=1))
        s.add(Promo(id=3, name="Expired", discount_nominal=5000, status=0))
        s.add(Produk(id=1, name="Teh Botol", type=2, stok=5, harga_jual=5000, status=1))
        s.add(Produk(id=2, name="Indomie", type=1, stok=0, harga_jual=8000, status=1))
        s.commit()


@pytest.fixture
def seeded(session_factory):
    seed(session_factory)
    return session_factory


@pytest.fixture
def file_session_factory(tmp_path):
    """Seeded sqlite file database; each session gets its own connection."""
    engine = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    init_db(engine)
    factory = lambda: get_session(engine)
    seed(factory)
    yield factory
    engine.dispose()
