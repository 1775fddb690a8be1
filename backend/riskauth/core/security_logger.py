# backend/riskauth/core/security_logger.py
"""
Dedicated security logger for fail2ban integration.

Writes authentication events to a rotating file in a format that fail2ban
can parse. Every user-controlled field goes through sanitize() first.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from riskauth.core.config import settings


def sanitize(value: str | None, max_length: int = 255) -> str:
    """
    Sanitize user input to prevent log injection attacks.

    Removes characters that could break log parsing or inject fake entries.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output

    Returns:
        Sanitized string safe for logging
    """
    if not value:
        return "unknown"

    value = str(value).strip()

    # Newlines, brackets and control characters could forge entries
    value = re.sub(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]", "", value)

    return value[:max_length]


def mask_identity(identity: str | None) -> str:
    """
    Mask a username or email address for privacy while keeping it recognizable.

    Emails keep the first 3 chars of the local part and the domain; plain
    usernames keep their first 3 chars.
    """
    if not identity:
        return sanitize(identity)

    if "@" not in identity:
        return sanitize(identity[:3] + "***" if len(identity) > 3 else identity[:1] + "***")

    local, domain = identity.rsplit("@", 1)
    if len(local) > 3:
        masked_local = local[:3] + "***"
    else:
        masked_local = local[0] + "***" if local else "***"

    return f"{sanitize(masked_local)}@{sanitize(domain)}"


class SecurityLogger:
    """
    Thread-safe security event logger for fail2ban integration.

    Log format compatible with fail2ban datepattern:
        2026-01-05 10:15:30 SECURITY [EVENT_TYPE] ip=x.x.x.x field=value ...
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if SecurityLogger._initialized:
            return

        self.logger = logging.getLogger("security")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        log_path = Path(settings.SECURITY_LOG_PATH)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = RotatingFileHandler(
                str(log_path),
                maxBytes=50 * 1024 * 1024,
                backupCount=10,
            )
        except OSError as e:
            logging.getLogger(__name__).warning(
                f"Security log file {log_path} unavailable ({e}); writing to stderr instead."
            )
            handler = logging.StreamHandler()

        # The message itself carries "EVENT_TYPE] ip=... fields..."
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s SECURITY [%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        self.logger.addHandler(handler)
        SecurityLogger._initialized = True

    def failed_login(self, ip: str, username: str, reason: str) -> None:
        """
        Log a failed login attempt.

        Args:
            ip: Client IP address
            username: Username that was attempted
            reason: Failure reason (BAD_CREDENTIALS, ACCOUNT_LOCKED, ...)
        """
        self.logger.info(
            f"FAILED_LOGIN] ip={sanitize(ip)} user={mask_identity(username)} reason={sanitize(reason)}"
        )

    def successful_login(self, ip: str, username: str, method: str = "password") -> None:
        """Log a successful login (for audit trail, not for banning)."""
        self.logger.info(
            f"LOGIN_SUCCESS] ip={sanitize(ip)} user={mask_identity(username)} method={sanitize(method)}"
        )

    def login_blocked(self, ip: str, username: str, risk_score: int) -> None:
        """Log an attempt rejected by the risk engine before credentials were checked."""
        self.logger.info(
            f"LOGIN_BLOCKED] ip={sanitize(ip)} user={mask_identity(username)} score={int(risk_score)}"
        )

    def account_locked(self, ip: str, username: str, failures: int) -> None:
        self.logger.info(
            f"ACCOUNT_LOCKED] ip={sanitize(ip)} user={mask_identity(username)} failures={int(failures)}"
        )

    def mfa_failed(self, ip: str, username: str) -> None:
        """
        Log a failed secondary verification.

        The method is deliberately omitted so the log matches the generic
        outcome returned to the client.
        """
        self.logger.info(f"MFA_FAILED] ip={sanitize(ip)} user={mask_identity(username)}")

    def otp_sent(self, ip: str, username: str, purpose: str) -> None:
        self.logger.info(
            f"OTP_SENT] ip={sanitize(ip)} user={mask_identity(username)} purpose={sanitize(purpose)}"
        )

    def rate_limited(self, key: str, action: str) -> None:
        """
        Log a rate limit violation.

        Args:
            key: Rate limit key (IP address or account identifier)
            action: The action that was throttled
        """
        self.logger.info(
            f"RATE_LIMIT] key={sanitize(key, max_length=100)} action={sanitize(action, max_length=100)}"
        )


# Singleton instance for easy import
security_log = SecurityLogger()
