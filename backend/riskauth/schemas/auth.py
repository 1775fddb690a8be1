# backend/riskauth/schemas/auth.py
"""
Value types exchanged between the risk engine, the login orchestrator and callers.

Everything here is immutable. Risk factors live only on RiskAssessmentResult
and are never copied into LoginOutcome, which is what callers hand back to
end users.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from riskauth.db.models.one_time_password import OtpPurpose

__all__ = [
    "ChallengeState",
    "GeoInfo",
    "LoginContext",
    "LoginOutcome",
    "LoginState",
    "OtpPurpose",
    "RiskAssessmentResult",
    "RiskDetails",
    "RiskLevel",
    "VerificationMethod",
]


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class VerificationMethod(str, Enum):
    TOTP = "TOTP"
    EMAIL_OTP = "EMAIL_OTP"
    BACKUP_CODE = "BACKUP_CODE"
    # Placeholder recommended for high scores; no verifier is wired to it.
    SECURITY_QUESTIONS = "SECURITY_QUESTIONS"
    BLOCK = "BLOCK"


class LoginState(str, Enum):
    ANONYMOUS = "ANONYMOUS"
    PRIMARY_PENDING = "PRIMARY_PENDING"
    RISK_EVALUATED = "RISK_EVALUATED"
    BLOCKED = "BLOCKED"
    CHALLENGED = "CHALLENGED"
    AUTHENTICATED = "AUTHENTICATED"


class GeoInfo(BaseModel):
    """Result of an IP geolocation / reputation lookup. All fields optional."""

    model_config = ConfigDict(frozen=True)

    country_code: str | None = None
    city: str | None = None
    is_proxy: bool = False
    is_vpn: bool = False


class LoginContext(BaseModel):
    """Signals captured for a single login attempt."""

    model_config = ConfigDict(frozen=True)

    ip_address: str
    user_agent: str | None = None
    device_fingerprint: str | None = None
    country_code: str | None = Field(default=None, max_length=2)
    city: str | None = None
    is_proxy: bool = False
    is_vpn: bool = False
    hour_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6)

    @classmethod
    def create(
        cls,
        ip_address: str,
        *,
        user_agent: str | None = None,
        device_fingerprint: str | None = None,
        geo: GeoInfo | None = None,
        now: datetime | None = None,
    ) -> "LoginContext":
        """Build a context, deriving hour and weekday (Monday=0) from `now` in UTC."""
        now = (now or datetime.now(UTC)).astimezone(UTC)
        geo = geo or GeoInfo()
        return cls(
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint or None,
            country_code=geo.country_code.upper() if geo.country_code else None,
            city=geo.city,
            is_proxy=geo.is_proxy,
            is_vpn=geo.is_vpn,
            hour_of_day=now.hour,
            day_of_week=now.weekday(),
        )


class RiskDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    new_device: bool = False
    new_location: bool = False
    suspicious_ip: bool = False
    unusual_time: bool = False
    multiple_failed_attempts: bool = False
    rapid_location_change: bool = False
    failed_attempts_count: int = 0
    distinct_ip_count: int = 0
    distinct_country_count: int = 0


class RiskAssessmentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    requires_additional_verification: bool
    recommended_methods: tuple[VerificationMethod, ...] = ()
    risk_factors: tuple[str, ...] = ()
    risk_details: RiskDetails = Field(default_factory=RiskDetails)

    @property
    def factor_summary(self) -> str:
        """Factors joined for storage on the attempt ledger."""
        return "; ".join(self.risk_factors)


class ChallengeState(BaseModel):
    """
    Pending secondary verification, carried by the caller between requests.

    Serialize it into whatever session or signed token the web layer uses.
    Every transition returns a new instance.
    """

    model_config = ConfigDict(frozen=True)

    username: str
    risk_result: RiskAssessmentResult
    context: LoginContext
    attempts: int = 0
    issued_at: datetime
    primary_method: str = "password"


class LoginOutcome(BaseModel):
    """What the caller may act on and show. Never carries risk factors."""

    model_config = ConfigDict(frozen=True)

    state: LoginState
    user_id: uuid.UUID | None = None
    username: str | None = None
    challenge: ChallengeState | None = None
    public_message: str | None = None
    retry_after_seconds: int | None = None

    @property
    def authenticated(self) -> bool:
        return self.state == LoginState.AUTHENTICATED
