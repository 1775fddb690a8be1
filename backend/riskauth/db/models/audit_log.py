# backend/riskauth/db/models/audit_log.py
"""
Audit log model for authentication and account security events.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from riskauth.db.base_class import Base, UTCDateTime, utcnow


class AuditLog(Base):
    """
    Append-only record of a security event.

    `details` holds a sanitized, allowlisted dict; it never carries secrets
    and is never returned to end users.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False, index=True
    )

    # Classification
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(
        String(20), nullable=False, default="info"
    )  # info|warning|critical
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Subject
    username: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Network information
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_audit_logs_username_event_created", "username", "event_type", "created_at"),)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, event_type={self.event_type}, username={self.username})>"
