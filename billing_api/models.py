from typing import Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# status columns keep the codes used by the front-end client

class Unit(SQLModel, table=True):
    __tablename__ = "units"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    brandtvid: Optional[int] = Field(default=None, foreign_key="brandtv.id", index=True)
    cabangid: Optional[int] = Field(default=None, index=True)
    price: int = 0
    status: int = Field(default=1)  # 0 non-active | 1 active | 2 maintenance


class BrandTV(SQLModel, table=True):
    __tablename__ = "brandtv"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: Optional[str] = None
    cabangid: Optional[int] = None
    tv_id: str = Field(index=True)
    ip_address: Optional[str] = None


class CodeTV(SQLModel, table=True):
    __tablename__ = "codetv"

    id: Optional[int] = Field(default=None, primary_key=True)
    brandtvid: Optional[int] = Field(default=None, index=True)
    code: int
    desc: str


class Member(SQLModel, table=True):
    __tablename__ = "member"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: Optional[str] = None
    telepon: Optional[str] = None
    cabang: Optional[int] = None
    status: int = Field(default=1)  # 0 non-active | 1 active


class Promo(SQLModel, table=True):
    __tablename__ = "promo"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: Optional[str] = None
    unitid: Optional[int] = None
    discount_percent: Optional[int] = None
    discount_nominal: Optional[int] = None
    hours: Optional[int] = None
    status: int = Field(default=1)  # 0 non-active | 1 active


class Produk(SQLModel, table=True):
    __tablename__ = "produk"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    type: int = 1  # 1 makanan | 2 minuman
    stok: int = 0
    warning_level: int = 5
    harga_jual: int = 0
    cabang: Optional[int] = None
    status: int = Field(default=1)  # 1 active | 2 non-active


class Transaksi(SQLModel, table=True):
    __tablename__ = "transaksi"

    code: str = Field(primary_key=True, max_length=100)
    memberid: Optional[int] = None
    customer: Optional[str] = None
    telepon: Optional[str] = None
    grandtotal: int = 0
    status: str = Field(default="1", index=True)  # "1" main | "0" selesai
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class TransaksiDetail(SQLModel, table=True):
    __tablename__ = "transaksi_detail"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, foreign_key="transaksi.code")
    name: str
    unitid: Optional[int] = Field(default=None, index=True)
    promoid: Optional[int] = None
    produk: Optional[int] = None
    qty: Optional[int] = None
    hours: Optional[int] = None
    harga: int = 0
    status: int = Field(default=1)  # 0 non-active | 1 active
    created_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
