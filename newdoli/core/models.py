from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .clock import utcnow
from .database import Base


class TimestampMixin:
    """Local bookkeeping timestamps; never compared with server time."""

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"

    # remote id, not generated locally
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    # identity
    login: Mapped[str] = mapped_column(String, index=True)
    firstname: Mapped[str] = mapped_column(String, default="")
    lastname: Mapped[str] = mapped_column(String, default="")
    email: Mapped[str] = mapped_column(String, default="", index=True)

    # access
    admin: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    groups: Mapped[list[int]] = mapped_column(JSON, default=list)
    permissions: Mapped[list[str]] = mapped_column(JSON, default=list)

    last_login: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Group(TimestampMixin, Base):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[str] = mapped_column(String, default="")
    permissions: Mapped[list[str]] = mapped_column(JSON, default=list)


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    module: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ThirdParty(TimestampMixin, Base):
    __tablename__ = "third_parties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, index=True)
    name_alias: Mapped[str] = mapped_column(String, default="")

    # contact
    address: Mapped[str] = mapped_column(String, default="")
    zip: Mapped[str] = mapped_column(String, default="")
    town: Mapped[str] = mapped_column(String, default="")
    state: Mapped[str] = mapped_column(String, default="")
    country: Mapped[str] = mapped_column(String, default="")
    phone: Mapped[str] = mapped_column(String, default="")
    email: Mapped[str] = mapped_column(String, default="", index=True)
    website: Mapped[str] = mapped_column(String, default="")

    # classification
    client: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    supplier: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    prospect: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    status: Mapped[str] = mapped_column(String, default="active", index=True)  # active|inactive|suspended

    note_public: Mapped[str] = mapped_column(Text, default="")
    note_private: Mapped[str] = mapped_column(Text, default="")
    last_contact: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    ref: Mapped[str] = mapped_column(String, index=True)
    label: Mapped[str] = mapped_column(String, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String, default="product", index=True)  # product|service

    price: Mapped[float] = mapped_column(Float, default=0.0)
    price_ttc: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[int] = mapped_column(Integer, default=1)
    status_label: Mapped[str] = mapped_column(String, default="Active", index=True)
    category: Mapped[str] = mapped_column(String, default="Uncategorized", index=True)
    stock: Mapped[float] = mapped_column(Float, default=0.0)
    stock_alert: Mapped[float] = mapped_column(Float, default=0.0)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Configuration(TimestampMixin, Base):
    __tablename__ = "configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String, unique=True, index=True)
    value: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String, default="string")  # string|number|boolean|json
    description: Mapped[str | None] = mapped_column(String, nullable=True)


class SyncLedgerEntry(Base):
    __tablename__ = "sync_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    entity_id: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String)  # create|update|delete
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    error: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class FieldVisibility(TimestampMixin, Base):
    __tablename__ = "field_visibility"
    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "field_name", name="uq_field_visibility_user_field"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)  # NULL = global
    entity_type: Mapped[str] = mapped_column(String, index=True)
    field_name: Mapped[str] = mapped_column(String)
    visible: Mapped[bool] = mapped_column(Boolean, default=True)


# collection name -> model, as used by LocalStore
COLLECTIONS: dict[str, type[Base]] = {
    "users": User,
    "groups": Group,
    "permissions": Permission,
    "third_parties": ThirdParty,
    "products": Product,
    "field_visibility": FieldVisibility,
}

DEFAULT_PERMISSIONS: list[dict[str, str]] = [
    {"name": "user_read", "description": "Read users", "module": "user"},
    {"name": "user_write", "description": "Write users", "module": "user"},
    {"name": "user_delete", "description": "Delete users", "module": "user"},
    {"name": "thirdparty_read", "description": "Read third parties", "module": "thirdparty"},
    {"name": "thirdparty_write", "description": "Write third parties", "module": "thirdparty"},
    {"name": "thirdparty_delete", "description": "Delete third parties", "module": "thirdparty"},
    {"name": "group_read", "description": "Read groups", "module": "group"},
    {"name": "group_write", "description": "Write groups", "module": "group"},
    {"name": "group_delete", "description": "Delete groups", "module": "group"},
]
