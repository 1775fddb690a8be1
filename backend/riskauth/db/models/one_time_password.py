# backend/riskauth/db/models/one_time_password.py
"""
Model for emailed numeric one-time passwords.
"""

import enum
import uuid
from datetime import UTC, datetime

from fastapi_users_db_sqlalchemy.generics import GUID
from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from riskauth.db.base_class import Base, UTCDateTime, utcnow


class OtpPurpose(str, enum.Enum):
    LOGIN = "LOGIN"
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"


class OneTimePassword(Base):
    """
    A single-use code bound to a user and a purpose.

    Validity is derived (`not used and now < expires_at`), never stored.
    Issuing a new code marks every earlier unused code of the same
    (user, purpose) as used.
    """

    __tablename__ = "one_time_passwords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    purpose: Mapped[OtpPurpose] = mapped_column(
        Enum(OtpPurpose, name="otp_purpose", native_enum=False, length=30), nullable=False
    )
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_one_time_passwords_user_purpose", "user_id", "purpose"),)

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.used and (now or datetime.now(UTC)) < self.expires_at

    def __repr__(self) -> str:
        return f"<OneTimePassword(id={self.id}, user_id={self.user_id}, purpose={self.purpose}, used={self.used})>"
