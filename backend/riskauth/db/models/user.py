# backend/riskauth/db/models/user.py

from datetime import datetime
from typing import TYPE_CHECKING

from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTableUUID
from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from riskauth.db.base_class import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from riskauth.db.models.oauth2_link import OAuth2UserLink


class User(SQLAlchemyBaseUserTableUUID, Base):
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(150), unique=True, index=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # --- MFA ---
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Fernet-encrypted base32 TOTP secret
    mfa_secret: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Lockout state ---
    failed_login_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    account_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failed_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    password_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    oauth2_links: Mapped[list["OAuth2UserLink"]] = relationship(
        "riskauth.db.models.oauth2_link.OAuth2UserLink",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, username={self.username!r}, mfa_enabled={self.mfa_enabled!r})>"
