# backend/riskauth/services/risk_assessment.py
"""
Risk scoring for login attempts.

Each signal adds a fixed weight; the total is capped at 100 and mapped to a
level through the configured thresholds. Factors are appended in a fixed
evaluation order so the output is stable:

    new device, recent failures, suspicious IP, new location, unusual hour,
    IP fan-out, multi-country, impossible travel

Scoring only reads from the attempt ledger and the device registry.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from riskauth import crud
from riskauth.core.config import settings
from riskauth.db.models.user import User
from riskauth.schemas.auth import (
    LoginContext,
    RiskAssessmentResult,
    RiskDetails,
    RiskLevel,
    VerificationMethod,
)
from riskauth.services import attempt_history, trusted_devices

logger = logging.getLogger(__name__)

# Signal weights
WEIGHT_NEW_DEVICE = 20
WEIGHT_FAILED_ATTEMPTS = 30
WEIGHT_SUSPICIOUS_IP = 25
WEIGHT_NEW_LOCATION = 20
WEIGHT_UNUSUAL_HOUR = 15
WEIGHT_IP_FAN_OUT = 20
WEIGHT_MULTI_COUNTRY = 30
WEIGHT_IMPOSSIBLE_TRAVEL = 40
MAX_SCORE = 100

FACTOR_ACCOUNT_NOT_FOUND = "account not found"
FACTOR_NEW_DEVICE = "login from a new device"
FACTOR_FAILED_ATTEMPTS = "multiple recent failed login attempts"
FACTOR_SUSPICIOUS_IP = "suspicious IP address (proxy or VPN)"
FACTOR_NEW_LOCATION = "login from a new location"
FACTOR_UNUSUAL_HOUR = "login at an unusual hour"
FACTOR_IP_FAN_OUT = "logins from many IP addresses"
FACTOR_MULTI_COUNTRY = "logins from multiple countries"
FACTOR_IMPOSSIBLE_TRAVEL = "impossible travel between locations"


def determine_risk_level(score: int) -> RiskLevel:
    """Step function from score to level using the configured thresholds (inclusive upper bounds)."""
    if score <= settings.RISK_LOW_THRESHOLD:
        return RiskLevel.LOW
    if score <= settings.RISK_MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    if score <= settings.RISK_HIGH_THRESHOLD:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def requires_additional_verification(score: int) -> bool:
    return score > settings.RISK_LOW_THRESHOLD


def recommend_verification_methods(score: int, mfa_enabled: bool) -> tuple[VerificationMethod, ...]:
    methods: list[VerificationMethod] = []
    if score > settings.RISK_LOW_THRESHOLD:
        if mfa_enabled:
            methods.append(VerificationMethod.TOTP)
        # Email OTP is always available
        methods.append(VerificationMethod.EMAIL_OTP)
    if score > settings.RISK_MEDIUM_THRESHOLD:
        methods.append(VerificationMethod.SECURITY_QUESTIONS)
    return tuple(methods)


def is_unusual_hour(hour_of_day: int) -> bool:
    """Inclusive on both ends: with the default 0-6 window, 6:59 is unusual and 7:00 is not."""
    return settings.RISK_UNUSUAL_HOUR_START <= hour_of_day <= settings.RISK_UNUSUAL_HOUR_END


def account_not_found_result() -> RiskAssessmentResult:
    return RiskAssessmentResult(
        risk_score=MAX_SCORE,
        risk_level=RiskLevel.CRITICAL,
        requires_additional_verification=True,
        recommended_methods=(VerificationMethod.BLOCK,),
        risk_factors=(FACTOR_ACCOUNT_NOT_FOUND,),
    )


async def _is_new_location(
    db: AsyncSession, username: str, context: LoginContext, now: datetime
) -> bool:
    """
    True when the user has history in the location window and none of it
    came from the current country. No history means nothing to compare with.
    """
    since = now - timedelta(days=settings.RISK_LOCATION_HISTORY_DAYS)
    if not await attempt_history.has_attempts_since(db, username, since):
        return False
    seen = await attempt_history.distinct_country_codes(db, username, since)
    return context.country_code not in seen


async def _is_impossible_travel(
    db: AsyncSession, username: str, context: LoginContext, now: datetime
) -> bool:
    last_success = await attempt_history.get_last_successful_attempt(db, username)
    if last_success is None or not last_success.country_code:
        return False
    if last_success.country_code == context.country_code:
        return False
    return now - last_success.attempted_at < timedelta(hours=settings.RISK_IMPOSSIBLE_TRAVEL_HOURS)


async def score_user_risk(
    db: AsyncSession,
    user: User,
    context: LoginContext,
    now: datetime | None = None,
) -> RiskAssessmentResult:
    """Score an attempt for an existing account."""
    now = now or datetime.now(UTC)
    username = user.username
    window_start = now - timedelta(hours=settings.RISK_TIME_WINDOW_HOURS)

    score = 0
    factors: list[str] = []
    details: dict = {}

    # 1. Device
    if not await trusted_devices.is_trusted_device(db, user.id, context.device_fingerprint, now):
        score += WEIGHT_NEW_DEVICE
        factors.append(FACTOR_NEW_DEVICE)
        details["new_device"] = True

    # 2. Recent failures
    failed = await attempt_history.count_failed_attempts(db, username, window_start)
    details["failed_attempts_count"] = failed
    if failed >= settings.RISK_FAILED_ATTEMPTS_THRESHOLD:
        score += WEIGHT_FAILED_ATTEMPTS
        factors.append(FACTOR_FAILED_ATTEMPTS)
        details["multiple_failed_attempts"] = True

    # 3. IP reputation
    if context.is_proxy or context.is_vpn:
        score += WEIGHT_SUSPICIOUS_IP
        factors.append(FACTOR_SUSPICIOUS_IP)
        details["suspicious_ip"] = True

    # 4. Location (skipped without geo data)
    if context.country_code and await _is_new_location(db, username, context, now):
        score += WEIGHT_NEW_LOCATION
        factors.append(FACTOR_NEW_LOCATION)
        details["new_location"] = True

    # 5. Time of day
    if is_unusual_hour(context.hour_of_day):
        score += WEIGHT_UNUSUAL_HOUR
        factors.append(FACTOR_UNUSUAL_HOUR)
        details["unusual_time"] = True

    # 6. IP fan-out (history only)
    distinct_ips = await attempt_history.count_distinct_ips(db, username, window_start)
    details["distinct_ip_count"] = distinct_ips
    if distinct_ips > settings.RISK_DISTINCT_IP_LIMIT:
        score += WEIGHT_IP_FAN_OUT
        factors.append(FACTOR_IP_FAN_OUT)

    # 7. Country fan-out, counting the current attempt's country too
    countries = await attempt_history.distinct_country_codes(db, username, window_start)
    if context.country_code:
        countries.add(context.country_code)
    details["distinct_country_count"] = len(countries)
    if len(countries) > 1:
        score += WEIGHT_MULTI_COUNTRY
        factors.append(FACTOR_MULTI_COUNTRY)

        # 8. Impossible travel, only evaluated inside a multi-country window
        if context.country_code and await _is_impossible_travel(db, username, context, now):
            score += WEIGHT_IMPOSSIBLE_TRAVEL
            factors.append(FACTOR_IMPOSSIBLE_TRAVEL)
            details["rapid_location_change"] = True

    score = max(0, min(score, MAX_SCORE))
    result = RiskAssessmentResult(
        risk_score=score,
        risk_level=determine_risk_level(score),
        requires_additional_verification=requires_additional_verification(score),
        recommended_methods=recommend_verification_methods(score, user.mfa_enabled),
        risk_factors=tuple(factors),
        risk_details=RiskDetails(**details),
    )
    logger.info(
        f"Risk assessed for {username}: score={result.risk_score} level={result.risk_level.value} "
        f"factors=[{result.factor_summary}]"
    )
    return result


async def assess_login_risk(
    db: AsyncSession,
    username: str,
    context: LoginContext,
    now: datetime | None = None,
) -> RiskAssessmentResult:
    """
    Score a login attempt for `username`.

    An unknown username short-circuits to score 100 / CRITICAL so it is
    blocked before any credential check.
    """
    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        logger.info(f"Risk assessed for unknown account '{username}': CRITICAL")
        return account_not_found_result()
    return await score_user_risk(db, user, context, now)
