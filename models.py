from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint, CheckConstraint, Column, ForeignKey, Integer, String, Text
import datetime as dt
from datetime import timezone

def utc_now() -> dt.datetime:
    """Current tz-aware UTC time."""
    return dt.datetime.now(timezone.utc)

def as_utc(d: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """SQLite hands datetimes back naive; every stored value is UTC."""
    if d is None:
        return None
    if d.tzinfo is None:
        return d.replace(tzinfo=timezone.utc)
    return d.astimezone(timezone.utc)

def to_iso_utc(d: Optional[dt.datetime]) -> Optional[str]:
    d = as_utc(d)
    return d.isoformat().replace("+00:00", "Z") if d else None

class Customer(SQLModel, table=True):
    # Customer key is the external handle tokens point at; never updated
    id: Optional[int] = Field(default=None, primary_key=True)
    customer_key: str = Field(index=True, unique=True, nullable=False, max_length=191)
    customer_name: str = Field(nullable=False, max_length=255)
    customer_note: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: dt.datetime = Field(default_factory=utc_now, index=True)

class Device(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_code: str = Field(index=True, unique=True, nullable=False, max_length=191)
    device_model: Optional[str] = Field(default=None, max_length=255)
    created_at: dt.datetime = Field(default_factory=utc_now, index=True)

class CustomerDevice(SQLModel, table=True):
    customer_id: int = Field(
        sa_column=Column(Integer, ForeignKey("customer.id", ondelete="CASCADE"), primary_key=True)
    )
    device_id: int = Field(
        sa_column=Column(Integer, ForeignKey("device.id", ondelete="CASCADE"), primary_key=True, index=True)
    )
    created_at: dt.datetime = Field(default_factory=utc_now)

class Token(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    token_value: str = Field(index=True, unique=True, nullable=False, max_length=64)
    customer_key: str = Field(
        sa_column=Column(
            String(191),
            ForeignKey("customer.customer_key", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    token_init_date: dt.datetime = Field(default_factory=utc_now)
    token_expiry: Optional[dt.datetime] = None    # None = never expires

    __table_args__ = (
        CheckConstraint(
            "token_expiry IS NULL OR token_expiry >= token_init_date",
            name="ck_token_expiry_after_init",
        ),
    )

class APKInfo(SQLModel, table=True):
    # Materialized grant: one row per (device, token, package name, version)
    id: Optional[int] = Field(default=None, primary_key=True)
    apk_name: str = Field(nullable=False, max_length=128)
    apk_path: str = Field(sa_column=Column(Text, nullable=False))
    apk_ver_number: str = Field(nullable=False, max_length=64)
    device_code: str = Field(
        sa_column=Column(
            String(191),
            ForeignKey("device.device_code", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    token_value: str = Field(
        sa_column=Column(
            String(64),
            ForeignKey("token.token_value", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    created_at: dt.datetime = Field(default_factory=utc_now)

    # (191 + 64 + 128 + 64) chars stays under the 3072-byte InnoDB key limit in utf8mb4
    __table_args__ = (
        UniqueConstraint("device_code", "token_value", "apk_name", "apk_ver_number", name="uq_apkinfo_grant"),
    )
