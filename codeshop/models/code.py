# codeshop/models/code.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from codeshop.core.db import Base

CODE_KINDS = ("trial", "premium", "enterprise")
CODE_STATUSES = ("active", "used", "expired")


class Code(Base):
    __tablename__ = "codes"
    __table_args__ = (
        CheckConstraint("kind IN ('trial','premium','enterprise')", name="codes_kind_check"),
        CheckConstraint("status IN ('active','used','expired')", name="codes_status_check"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )

    # Globally unique across kinds (upstream tokens and local draws share this namespace)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", server_default="active")

    user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Trial only; premium codes never expire
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
