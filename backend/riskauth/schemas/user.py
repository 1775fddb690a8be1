# backend/riskauth/schemas/user.py
from datetime import datetime

from fastapi_users import schemas
from pydantic import BaseModel, ConfigDict, Field


class UserCreate(schemas.BaseUserCreate):
    username: str = Field(min_length=3, max_length=150)
    full_name: str | None = None


class MfaSetupResponse(BaseModel):
    """Returned once at MFA setup. The secret must be confirmed before MFA turns on."""

    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...


class TrustedDeviceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_name: str | None = None
    last_ip_address: str | None = None
    last_location: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None
    trust_expires_at: datetime
    is_active: bool
    expired: bool = False


class OAuth2UserInfo(BaseModel):
    """Provider-neutral identity extracted from raw OAuth2 user attributes."""

    model_config = ConfigDict(frozen=True)

    provider: str
    id: str
    name: str | None = None
    email: str | None = None
    image_url: str | None = None
