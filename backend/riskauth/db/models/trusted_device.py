# backend/riskauth/db/models/trusted_device.py
"""
Model for devices a user has explicitly marked as trusted.
"""

import uuid
from datetime import UTC, datetime

from fastapi_users_db_sqlalchemy.generics import GUID
from sqlalchemy import Boolean, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from riskauth.db.base_class import Base, UTCDateTime, utcnow


class TrustedDevice(Base):
    """
    A recognized device fingerprint for a user.

    A matching active, unexpired row removes the new-device penalty from the
    risk score. Expiry is evaluated lazily whenever the row is read.
    """

    __tablename__ = "trusted_devices"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    device_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)

    # Display name, e.g. "Chrome on Windows"
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    last_ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    last_user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_location: Mapped[str | None] = mapped_column(String(150), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trust_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user = relationship("User")

    # At most one active row per (user, fingerprint)
    __table_args__ = (
        Index(
            "uq_trusted_devices_active_fingerprint",
            "user_id",
            "device_fingerprint",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if this trusted device has expired."""
        return (now or datetime.now(UTC)) >= self.trust_expires_at

    def __repr__(self) -> str:
        return (
            f"<TrustedDevice(id={self.id}, user_id={self.user_id}, "
            f"device={self.device_name}, active={self.is_active})>"
        )
