# backend/riskauth/db/models/oauth2_link.py

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from fastapi_users_db_sqlalchemy.generics import GUID
from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from riskauth.db.base_class import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from riskauth.db.models.user import User


class OAuth2UserLink(Base):
    """
    Links a local account to an identity at an external OAuth2 provider.

    The provider access token is stored Fernet-encrypted.
    """

    __tablename__ = "oauth2_user_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    provider_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_picture_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    linked_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="oauth2_links")

    __table_args__ = (UniqueConstraint("provider", "provider_user_id"),)

    def __repr__(self) -> str:
        return f"<OAuth2UserLink(id={self.id}, provider={self.provider}, user_id={self.user_id})>"
