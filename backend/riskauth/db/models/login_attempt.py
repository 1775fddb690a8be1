# backend/riskauth/db/models/login_attempt.py
"""
Model for the append-only login attempt ledger.
"""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from riskauth.db.base_class import Base, UTCDateTime, utcnow


class LoginAttempt(Base):
    """
    One row per completed login attempt (primary and, when required, secondary step).

    Rows are written once and never updated. They feed the aggregate queries
    of the risk engine:
    - failure counts inside the risk window
    - distinct IPs and countries per user
    - location of the last successful login
    """

    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    username: Mapped[str] = mapped_column(String(150), nullable=False, index=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)  # IPv6 max length
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Joined factor summary, for audit only
    risk_factors: Mapped[str | None] = mapped_column(Text, nullable=True)

    country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_proxy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_vpn: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    additional_verification_required: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    verification_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    attempted_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        Index("ix_login_attempts_username_attempted", "username", "attempted_at"),
        Index("ix_login_attempts_ip_attempted", "ip_address", "attempted_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LoginAttempt(username={self.username}, ip={self.ip_address}, "
            f"success={self.success}, score={self.risk_score})>"
        )
