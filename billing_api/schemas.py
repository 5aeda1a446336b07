from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional

class ProductLine(BaseModel):
    produk: int
    qty: int = Field(default=1, ge=1)
    harga: Optional[int] = None  # unit price; defaults to produk.harga_jual

class RentalStartRequest(BaseModel):
    customer: Optional[str] = None
    telepon: Optional[str] = None
    memberid: Optional[int] = None
    unitid: int
    hours: int = Field(ge=1)
    harga: Optional[int] = None  # rental price; defaults to units.price * hours
    promoid: Optional[int] = None
    products: list[ProductLine] = []
    grandtotal: Optional[int] = None

class DetailOut(BaseModel):
    id: int
    name: str
    unitid: Optional[int] = None
    promoid: Optional[int] = None
    produk: Optional[int] = None
    qty: Optional[int] = None
    hours: Optional[int] = None
    harga: int
    status: int

class TransaksiOut(BaseModel):
    code: str
    memberid: Optional[int] = None
    customer: Optional[str] = None
    telepon: Optional[str] = None
    grandtotal: int
    status: str
    created_by: Optional[int] = None
    created_at: datetime
    details: list[DetailOut] = []

class RentalStartResponse(BaseModel):
    success: bool = True
    message: str
    data: TransaksiOut
    device: dict[str, Any]

class CommandRequest(BaseModel):
    command: int
    target: str = "manual"
    timeout_ms: Optional[int] = Field(default=None, gt=0)

class CommandResult(BaseModel):
    success: bool
    device: dict[str, Any]

class TvStatusOut(BaseModel):
    online: bool
    ws_connected: bool
    seconds_since_last_seen: int
    ip_address: Optional[str] = None
    model: str
    connected_at: datetime

class TransaksiStatusUpdate(BaseModel):
    status: Optional[str] = None  # "0" selesai | "1" main

    @field_validator("status", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

class TransaksiStatusResponse(BaseModel):
    success: bool = True
    message: str
    data: TransaksiOut
