"""Install record: one row per agency or sub-account tenant."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin

PROVIDER = "leadconnector"


class Install(TimestampMixin, Base):
    __tablename__ = "installs"

    tenant_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    provider: Mapped[str] = mapped_column(String(50), default=PROVIDER)
    scope_kind: Mapped[str | None] = mapped_column(String(20), default=None, index=True)
    agency_id: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    sub_account_id: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    sub_account_name: Mapped[str | None] = mapped_column(String(255), default=None)
    scopes: Mapped[list[str] | None] = mapped_column(JSON, default=None)
    tokens: Mapped[dict[str, Any] | None] = mapped_column(JSON, default=None)
