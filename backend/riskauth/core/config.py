# backend/riskauth/core/config.py

import json
import logging
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )

    # --- Environment & Debug ---
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="APP_ENV"
    )
    DEBUG: bool = Field(default=False, validation_alias=AliasChoices("DEBUG_MODE", "DEBUG"))
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )

    # --- Core Application Settings ---
    APP_NAME: str = Field(default="RiskAuth", validation_alias="APP_NAME")
    APP_VERSION: str = Field(default="0.1.0", validation_alias="APP_VERSION")
    FRONTEND_URL: str = Field(
        default="https://localhost:8443",
        description="Frontend URL used in email links",
        validation_alias="FRONTEND_URL",
    )

    # --- Secrets ---
    SECRET_KEY: str = Field(
        default="change-me-in-production",
        validation_alias=AliasChoices("JWT_SECRET_KEY", "SECRET_KEY"),
    )
    PASSWORD_PEPPER: str = Field(default="", validation_alias="PASSWORD_PEPPER")
    DATA_ENCRYPTION_KEYS_ENV_STR: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATA_ENCRYPTION_KEYS", "DATA_ENCRYPTION_KEY"),
    )

    # --- Risk Assessment ---
    RISK_FAILED_ATTEMPTS_THRESHOLD: int = Field(
        default=5,
        description="Failed attempts inside the risk window that add the failure penalty",
        validation_alias="RISK_FAILED_ATTEMPTS_THRESHOLD",
    )
    RISK_TIME_WINDOW_HOURS: int = Field(default=24, validation_alias="RISK_TIME_WINDOW_HOURS")
    RISK_LOCATION_HISTORY_DAYS: int = Field(
        default=30, validation_alias="RISK_LOCATION_HISTORY_DAYS"
    )
    RISK_IMPOSSIBLE_TRAVEL_HOURS: int = Field(
        default=3, validation_alias="RISK_IMPOSSIBLE_TRAVEL_HOURS"
    )
    RISK_DISTINCT_IP_LIMIT: int = Field(default=3, validation_alias="RISK_DISTINCT_IP_LIMIT")
    RISK_UNUSUAL_HOUR_START: int = Field(default=0, validation_alias="RISK_UNUSUAL_HOUR_START")
    RISK_UNUSUAL_HOUR_END: int = Field(default=6, validation_alias="RISK_UNUSUAL_HOUR_END")
    RISK_LOW_THRESHOLD: int = Field(default=30, validation_alias="RISK_LOW_THRESHOLD")
    RISK_MEDIUM_THRESHOLD: int = Field(default=60, validation_alias="RISK_MEDIUM_THRESHOLD")
    RISK_HIGH_THRESHOLD: int = Field(default=80, validation_alias="RISK_HIGH_THRESHOLD")
    TRUST_DEVICE_DAYS: int = Field(default=30, validation_alias="TRUST_DEVICE_DAYS")

    # --- One-time passwords & MFA ---
    OTP_LENGTH: int = Field(default=6, validation_alias="OTP_LENGTH")
    OTP_EXPIRY_MINUTES: int = Field(default=5, validation_alias="OTP_EXPIRY_MINUTES")
    BACKUP_CODE_COUNT: int = Field(default=10, validation_alias="BACKUP_CODE_COUNT")
    BACKUP_CODE_LENGTH: int = Field(default=8, validation_alias="BACKUP_CODE_LENGTH")
    CHALLENGE_MAX_ATTEMPTS: int = Field(
        default=5,
        description="Failed secondary verifications before the challenge is dropped",
        validation_alias="CHALLENGE_MAX_ATTEMPTS",
    )

    # --- Rate Limiting ---
    RATE_LIMIT_MAX_ATTEMPTS: int = Field(default=5, validation_alias="RATE_LIMIT_MAX_ATTEMPTS")
    RATE_LIMIT_WINDOW_SECONDS: int = Field(
        default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS"
    )
    RATE_LIMIT_BLOCK_MINUTES: int = Field(default=5, validation_alias="RATE_LIMIT_BLOCK_MINUTES")
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: int = Field(
        default=3600, validation_alias="RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )

    # --- Account Lockout Settings ---
    ACCOUNT_LOCK_THRESHOLD: int = Field(
        default=5,
        description="Consecutive failed logins before the account is locked",
        validation_alias=AliasChoices("ACCOUNT_LOCK_THRESHOLD", "LOGIN_MAX_ATTEMPTS"),
    )
    SUSPICIOUS_ACTIVITY_THRESHOLD: int = Field(
        default=10, validation_alias="SUSPICIOUS_ACTIVITY_THRESHOLD"
    )
    SUSPICIOUS_ACTIVITY_WINDOW_MINUTES: int = Field(
        default=60, validation_alias="SUSPICIOUS_ACTIVITY_WINDOW_MINUTES"
    )

    # --- Password Policy ---
    PASSWORD_MIN_LENGTH: int = Field(default=8, validation_alias="PASSWORD_MIN_LENGTH")
    PASSWORD_MAX_LENGTH: int = Field(default=128, validation_alias="PASSWORD_MAX_LENGTH")
    PASSWORD_REQUIRE_CHARACTER_CLASSES: bool = Field(
        default=True,
        description="Require upper and lower case letters, a digit and a special character",
        validation_alias="PASSWORD_REQUIRE_CHARACTER_CLASSES",
    )
    PASSWORD_SPECIAL_CHARS: str = Field(default="@$!%*#?&", validation_alias="PASSWORD_SPECIAL_CHARS")
    PASSWORD_MAX_CONSECUTIVE_CHARS: int = Field(
        default=3,
        description="Runs of this many identical characters are rejected",
        validation_alias="PASSWORD_MAX_CONSECUTIVE_CHARS",
    )
    PASSWORD_HISTORY_COUNT: int = Field(
        default=5,
        description="Number of recent passwords, the current one included, that cannot be reused",
        validation_alias="PASSWORD_HISTORY_COUNT",
    )

    # --- Mailgun Email Settings ---
    MAILGUN_API_KEY: str | None = Field(default=None, validation_alias="MAILGUN_API_KEY")
    MAILGUN_DOMAIN: str | None = Field(default=None, validation_alias="MAILGUN_DOMAIN")
    MAILGUN_FROM_EMAIL: str | None = Field(default=None, validation_alias="MAILGUN_FROM_EMAIL")
    MAILGUN_FROM_NAME: str = Field(default="RiskAuth", validation_alias="MAILGUN_FROM_NAME")

    # --- IP Geolocation (optional) ---
    GEOIP_API_URL: str | None = Field(
        default=None,
        description="Lookup endpoint template, e.g. http://ip-api.com/json/{ip}?fields=...",
        validation_alias="GEOIP_API_URL",
    )
    GEOIP_TIMEOUT_SECONDS: float = Field(default=2.0, validation_alias="GEOIP_TIMEOUT_SECONDS")

    # --- Database Settings ---
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./riskauth.db", validation_alias="DATABASE_URL"
    )
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # --- Celery & Redis Settings ---
    CELERY_BROKER_URL: str = Field(
        default="redis://localhost:6379/0", validation_alias="CELERY_BROKER_URL"
    )
    CELERY_RESULT_BACKEND: str = Field(
        default="redis://localhost:6379/1", validation_alias="CELERY_RESULT_BACKEND"
    )
    TIMEZONE: str = Field(default="UTC", validation_alias="CELERY_TIMEZONE")
    MAINTENANCE_INTERVAL_MINUTES: int = Field(
        default=60, validation_alias="MAINTENANCE_INTERVAL_MINUTES"
    )

    # --- Logging ---
    SECURITY_LOG_PATH: str = Field(
        default="logs/security.log", validation_alias="SECURITY_LOG_PATH"
    )

    # --- Private storage for parsed values ---
    _parsed_data_encryption_keys: list[str] = []

    @property
    def DATA_ENCRYPTION_KEYS(self) -> list[str]:
        """Keyring for stored secrets. Falls back to SECRET_KEY when nothing is configured."""
        return self._parsed_data_encryption_keys or [self.SECRET_KEY]

    @staticmethod
    def _parse_string_list(input_str: str | None, field_name_for_log: str) -> list[str]:
        if not input_str or not input_str.strip():
            return []
        try:
            loaded = json.loads(input_str)
        except json.JSONDecodeError:
            logger.debug(f"{field_name_for_log} is not JSON. Falling back to comma separation.")
            loaded = input_str
        if isinstance(loaded, list):
            return [str(item).strip() for item in loaded if str(item).strip()]
        return [item.strip() for item in str(loaded).split(",") if item.strip()]

    @model_validator(mode="after")
    def _validate_risk_settings(self) -> "Settings":
        if not (
            0 <= self.RISK_LOW_THRESHOLD < self.RISK_MEDIUM_THRESHOLD < self.RISK_HIGH_THRESHOLD
        ):
            raise ValueError(
                "Risk thresholds must satisfy 0 <= LOW < MEDIUM < HIGH "
                f"(got {self.RISK_LOW_THRESHOLD}/{self.RISK_MEDIUM_THRESHOLD}/{self.RISK_HIGH_THRESHOLD})"
            )
        for name in ("RISK_UNUSUAL_HOUR_START", "RISK_UNUSUAL_HOUR_END"):
            hour = getattr(self, name)
            if not 0 <= hour <= 23:
                raise ValueError(f"{name} must be within 0-23, got {hour}")
        if self.OTP_LENGTH < 4:
            raise ValueError("OTP_LENGTH must be at least 4 digits")

        self._parsed_data_encryption_keys = self._parse_string_list(
            self.DATA_ENCRYPTION_KEYS_ENV_STR, "DATA_ENCRYPTION_KEYS"
        )

        if self.DEBUG and self.LOG_LEVEL != "DEBUG":
            logger.info("DEBUG mode is ON. Overriding LOG_LEVEL to DEBUG.")
            self.LOG_LEVEL = "DEBUG"
        if self.ENVIRONMENT == "production" and self.SECRET_KEY == "change-me-in-production":
            logger.warning("SECRET_KEY is using the development default in production.")
        return self


settings = Settings()
