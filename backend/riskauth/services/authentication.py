# backend/riskauth/services/authentication.py
"""
Login decision orchestration.

A login moves through

    ANONYMOUS -> PRIMARY_PENDING -> RISK_EVALUATED -> BLOCKED | CHALLENGED | AUTHENTICATED

and a CHALLENGED login either reaches AUTHENTICATED through a secondary
verification or falls back to ANONYMOUS when cancelled or when it runs out
of attempts.

Rules:
- CRITICAL risk blocks before the password is looked at, so a block never
  tells the caller whether the credentials were right.
- Every finished attempt (blocked, failed, authenticated, abandoned
  challenge) is appended to the attempt ledger with its score and factors.
- Failed secondary verifications are audited but not re-scored.
- Outcomes carry a generic public message only; risk factors stay in the
  ledger, the audit log and the server logs.
- Device trust is never automatic; callers opt in with `trust_device=True`.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from riskauth import crud
from riskauth.core.config import settings
from riskauth.core.rate_limit import login_rate_limiter, otp_rate_limiter
from riskauth.core.security import verify_password
from riskauth.core.security_logger import security_log
from riskauth.db.models.one_time_password import OtpPurpose
from riskauth.db.models.user import User
from riskauth.exceptions import (
    AuthError,
    CriticalRiskError,
    NotificationDeliveryError,
    RateLimitedError,
    ValidationFailure,
)
from riskauth.schemas.auth import (
    ChallengeState,
    LoginContext,
    LoginOutcome,
    LoginState,
    RiskAssessmentResult,
    RiskLevel,
    VerificationMethod,
)
from riskauth.services import (
    account_lockout,
    attempt_history,
    mfa_service,
    oauth2_service,
    otp_service,
    risk_assessment,
    trusted_devices,
)
from riskauth.services.audit_service import AuditEvent, log_event

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = AuthError.public_message
VERIFICATION_FAILED_MESSAGE = ValidationFailure.public_message
CHALLENGE_MESSAGE = "Additional verification is required."

# Risk levels at which a verified device may be registered as trusted.
# MEDIUM is included: a challenged login always scores above the LOW band,
# so a LOW-only rule would never allow trust after secondary verification.
DEVICE_TRUST_LEVELS = frozenset({RiskLevel.LOW, RiskLevel.MEDIUM})


def _transition(username: str, from_state: LoginState, to_state: LoginState) -> None:
    logger.debug(f"Login {username}: {from_state.value} -> {to_state.value}")


def _anonymous(message: str = GENERIC_FAILURE_MESSAGE) -> LoginOutcome:
    return LoginOutcome(state=LoginState.ANONYMOUS, public_message=message)


def _check_rate_limits(username: str, context: LoginContext) -> None:
    login_rate_limiter.check_and_record(f"ip:{context.ip_address}", "login")
    login_rate_limiter.check_and_record(f"user:{username}", "login")


async def _audit_rate_limited(
    db: AsyncSession, username: str, context: LoginContext, action: str, error: RateLimitedError
) -> None:
    await log_event(
        db,
        AuditEvent.RATE_LIMITED,
        username,
        False,
        {"action": action, "retry_after": error.retry_after_seconds},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )


async def _record_failure(
    db: AsyncSession,
    username: str,
    context: LoginContext,
    risk: RiskAssessmentResult,
    *,
    reason: str,
    additional_verification_required: bool = False,
    verification_method: VerificationMethod | None = None,
) -> None:
    await attempt_history.record_login_attempt(
        db,
        username,
        context,
        False,
        risk.risk_score,
        risk.factor_summary,
        additional_verification_required=additional_verification_required,
        verification_method=verification_method,
    )
    security_log.failed_login(context.ip_address, username, reason)
    await log_event(
        db,
        AuditEvent.LOGIN_FAILURE,
        username,
        False,
        {"reason": reason, "risk_score": risk.risk_score},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )


async def _block(
    db: AsyncSession, username: str, context: LoginContext, risk: RiskAssessmentResult
) -> LoginOutcome:
    _transition(username, LoginState.RISK_EVALUATED, LoginState.BLOCKED)
    await attempt_history.record_login_attempt(
        db, username, context, False, risk.risk_score, risk.factor_summary
    )
    security_log.login_blocked(context.ip_address, username, risk.risk_score)
    await log_event(
        db,
        AuditEvent.LOGIN_BLOCKED,
        username,
        False,
        {
            "risk_score": risk.risk_score,
            "risk_level": risk.risk_level.value,
            "risk_factors": list(risk.risk_factors),
        },
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    logger.warning(
        f"Login blocked for {username}: score={risk.risk_score} factors=[{risk.factor_summary}]"
    )
    return LoginOutcome(state=LoginState.BLOCKED, public_message=CriticalRiskError.public_message)


def _challenge(
    user: User,
    context: LoginContext,
    risk: RiskAssessmentResult,
    primary_method: str,
) -> LoginOutcome:
    _transition(user.username, LoginState.RISK_EVALUATED, LoginState.CHALLENGED)
    logger.info(
        f"Secondary verification required for {user.username}: score={risk.risk_score} "
        f"factors=[{risk.factor_summary}]"
    )
    challenge = ChallengeState(
        username=user.username,
        risk_result=risk,
        context=context,
        attempts=0,
        issued_at=datetime.now(UTC),
        primary_method=primary_method,
    )
    return LoginOutcome(
        state=LoginState.CHALLENGED,
        username=user.username,
        challenge=challenge,
        public_message=CHALLENGE_MESSAGE,
    )


async def offer_device_trust(
    db: AsyncSession,
    user: User,
    context: LoginContext,
    device_name: str | None = None,
) -> bool:
    """
    Register the attempt's device as trusted. Advisory: failures are logged
    and never affect the login. Returns True when a device was registered.
    """
    if not context.device_fingerprint:
        return False
    try:
        device = await trusted_devices.trust_device(
            db, user.username, context.device_fingerprint, device_name, context=context
        )
    except AuthError as e:
        logger.warning(f"Device trust registration skipped for {user.username}: {e}")
        return False
    await log_event(
        db,
        AuditEvent.DEVICE_TRUSTED,
        user.username,
        True,
        {"device_id": device.id, "device_name": device.device_name},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    return True


async def complete_login(
    db: AsyncSession,
    user: User,
    context: LoginContext,
    risk: RiskAssessmentResult,
    *,
    method: str = "password",
    verification_method: VerificationMethod | None = None,
    trust_device: bool = False,
    device_name: str | None = None,
) -> LoginOutcome:
    """Finish a login: reset lockout state, append to the ledger, audit and optionally trust the device."""
    await account_lockout.record_successful_login(db, user)
    await attempt_history.record_login_attempt(
        db,
        user.username,
        context,
        True,
        risk.risk_score,
        risk.factor_summary,
        additional_verification_required=verification_method is not None,
        verification_method=verification_method,
    )
    security_log.successful_login(
        context.ip_address,
        user.username,
        verification_method.value if verification_method else method,
    )
    await log_event(
        db,
        AuditEvent.LOGIN_SUCCESS,
        user.username,
        True,
        {
            "method": method,
            "mfa_method": verification_method.value if verification_method else None,
            "risk_score": risk.risk_score,
        },
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )

    if trust_device:
        if risk.risk_level in DEVICE_TRUST_LEVELS:
            await offer_device_trust(db, user, context, device_name)
        else:
            logger.info(
                f"Device trust not granted for {user.username}: risk level {risk.risk_level.value}"
            )

    return LoginOutcome(
        state=LoginState.AUTHENTICATED,
        user_id=user.id,
        username=user.username,
    )


async def _decide(
    db: AsyncSession,
    user: User,
    context: LoginContext,
    risk: RiskAssessmentResult,
    *,
    method: str,
    trust_device: bool,
    device_name: str | None,
) -> LoginOutcome:
    """Primary credentials are good: authenticate or challenge."""
    if risk.requires_additional_verification:
        return _challenge(user, context, risk, method)

    _transition(user.username, LoginState.RISK_EVALUATED, LoginState.AUTHENTICATED)
    return await complete_login(
        db,
        user,
        context,
        risk,
        method=method,
        trust_device=trust_device,
        device_name=device_name,
    )


async def authenticate_password(
    db: AsyncSession,
    username: str,
    password: str,
    context: LoginContext,
    *,
    trust_device: bool = False,
    device_name: str | None = None,
) -> LoginOutcome:
    """
    Run a username/password login through risk scoring and the decision rules.

    Raises:
        RateLimitedError: the client IP or the account is throttled
    """
    _transition(username, LoginState.ANONYMOUS, LoginState.PRIMARY_PENDING)
    try:
        _check_rate_limits(username, context)
    except RateLimitedError as e:
        await _audit_rate_limited(db, username, context, "login", e)
        raise

    risk = await risk_assessment.assess_login_risk(db, username, context)
    _transition(username, LoginState.PRIMARY_PENDING, LoginState.RISK_EVALUATED)

    if risk.risk_level == RiskLevel.CRITICAL:
        return await _block(db, username, context, risk)

    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        # Deleted between scoring and lookup
        await _record_failure(db, username, context, risk, reason="UNKNOWN_ACCOUNT")
        return _anonymous()

    if account_lockout.is_account_locked(user):
        await _record_failure(db, username, context, risk, reason="ACCOUNT_LOCKED")
        return _anonymous()

    if not user.is_active or not verify_password(password, user.hashed_password):
        status = await account_lockout.record_failed_login(db, user, context.ip_address)
        await _record_failure(
            db,
            username,
            context,
            risk,
            reason="ACCOUNT_LOCKED" if status.newly_locked else "BAD_CREDENTIALS",
        )
        _transition(username, LoginState.RISK_EVALUATED, LoginState.ANONYMOUS)
        return _anonymous()

    return await _decide(
        db,
        user,
        context,
        risk,
        method="password",
        trust_device=trust_device,
        device_name=device_name,
    )


async def authenticate_oauth2(
    db: AsyncSession,
    provider: str,
    attributes: dict[str, Any],
    access_token: str | None,
    context: LoginContext,
    *,
    trust_device: bool = False,
    device_name: str | None = None,
) -> LoginOutcome:
    """
    Run a provider-verified identity through the same decision rules as a password login.

    Raises:
        RateLimitedError: the client IP is throttled
    """
    try:
        login_rate_limiter.check_and_record(f"ip:{context.ip_address}", "oauth2_login")
    except RateLimitedError as e:
        await _audit_rate_limited(db, provider, context, "oauth2_login", e)
        raise

    try:
        user = await oauth2_service.resolve_oauth2_user(db, provider, attributes, access_token)
    except ValidationFailure as e:
        logger.warning(f"OAuth2 login via {provider} rejected: {e}")
        await log_event(
            db,
            AuditEvent.OAUTH2_LOGIN,
            None,
            False,
            {"provider": provider, "reason": str(e)},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        return _anonymous()

    username = user.username
    _transition(username, LoginState.ANONYMOUS, LoginState.PRIMARY_PENDING)
    risk = await risk_assessment.score_user_risk(db, user, context)
    _transition(username, LoginState.PRIMARY_PENDING, LoginState.RISK_EVALUATED)

    if risk.risk_level == RiskLevel.CRITICAL:
        return await _block(db, username, context, risk)

    if account_lockout.is_account_locked(user) or not user.is_active:
        await _record_failure(db, username, context, risk, reason="ACCOUNT_LOCKED")
        return _anonymous()

    await log_event(
        db,
        AuditEvent.OAUTH2_LOGIN,
        username,
        True,
        {"provider": provider},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    return await _decide(
        db,
        user,
        context,
        risk,
        method=f"oauth2:{provider.lower()}",
        trust_device=trust_device,
        device_name=device_name,
    )


async def send_challenge_otp(db: AsyncSession, challenge: ChallengeState) -> ChallengeState:
    """
    Email a login code for a pending challenge. Re-sending replaces the
    previous code.

    Raises:
        RateLimitedError: too many codes requested for this account
        ValidationFailure: the account has no email address
        NotificationDeliveryError: the email could not be sent
    """
    username = challenge.username
    context = challenge.context
    try:
        otp_rate_limiter.check_and_record(f"otp:{username}", "otp_send")
    except RateLimitedError as e:
        await _audit_rate_limited(db, username, context, "otp_send", e)
        raise

    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        raise ValidationFailure(f"Challenge for unknown account '{username}'")

    try:
        await otp_service.generate_and_send_otp(
            db, user, OtpPurpose.LOGIN, ip_address=context.ip_address
        )
    except (NotificationDeliveryError, ValidationFailure):
        await log_event(
            db,
            AuditEvent.OTP_REQUEST_FAILED,
            username,
            False,
            {"purpose": OtpPurpose.LOGIN.value},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        raise

    await log_event(
        db,
        AuditEvent.OTP_SENT,
        username,
        True,
        {"purpose": OtpPurpose.LOGIN.value},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    return challenge


async def _verify_secondary(
    db: AsyncSession, user: User, method: VerificationMethod, code: str
) -> bool:
    if method == VerificationMethod.TOTP:
        return mfa_service.verify_user_totp(user, code)
    if method == VerificationMethod.EMAIL_OTP:
        return await otp_service.verify_otp(db, user, code, OtpPurpose.LOGIN)
    if method == VerificationMethod.BACKUP_CODE:
        return await mfa_service.verify_backup_code(db, user, code)
    # SECURITY_QUESTIONS has no verifier; BLOCK is not a verification method
    return False


async def complete_challenge(
    db: AsyncSession,
    challenge: ChallengeState,
    method: VerificationMethod,
    code: str,
    *,
    trust_device: bool = False,
    device_name: str | None = None,
) -> LoginOutcome:
    """
    Check a secondary verification code for a pending challenge.

    Failure keeps the login CHALLENGED with an incremented attempt count and
    a generic message that does not say which check failed. After
    CHALLENGE_MAX_ATTEMPTS failures the challenge is dropped (ANONYMOUS).

    Raises:
        RateLimitedError: too many verification guesses for this account
    """
    username = challenge.username
    context = challenge.context
    risk = challenge.risk_result

    try:
        otp_rate_limiter.check_and_record(f"verify:{username}", "challenge_verify")
    except RateLimitedError as e:
        await _audit_rate_limited(db, username, context, "challenge_verify", e)
        raise

    user = await crud.user.get_by_username(db, username=username)
    verified = (
        user is not None
        and user.is_active
        and not account_lockout.is_account_locked(user)
        and await _verify_secondary(db, user, method, code)
    )

    if verified:
        _transition(username, LoginState.CHALLENGED, LoginState.AUTHENTICATED)
        await log_event(
            db,
            AuditEvent.OTP_VERIFIED if method == VerificationMethod.EMAIL_OTP else AuditEvent.MFA_SUCCESS,
            username,
            True,
            {"method": method.value},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        return await complete_login(
            db,
            user,
            context,
            risk,
            method=challenge.primary_method,
            verification_method=method,
            trust_device=trust_device,
            device_name=device_name,
        )

    attempts = challenge.attempts + 1
    security_log.mfa_failed(context.ip_address, username)
    await log_event(
        db,
        AuditEvent.OTP_FAILED if method == VerificationMethod.EMAIL_OTP else AuditEvent.MFA_FAILURE,
        username,
        False,
        {"method": method.value, "attempts": attempts},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )

    if attempts >= settings.CHALLENGE_MAX_ATTEMPTS:
        _transition(username, LoginState.CHALLENGED, LoginState.ANONYMOUS)
        logger.warning(f"Challenge for {username} dropped after {attempts} failed verifications.")
        await _record_failure(
            db,
            username,
            context,
            risk,
            reason="CHALLENGE_EXHAUSTED",
            additional_verification_required=True,
            verification_method=method,
        )
        return _anonymous(VERIFICATION_FAILED_MESSAGE)

    return LoginOutcome(
        state=LoginState.CHALLENGED,
        username=username,
        challenge=challenge.model_copy(update={"attempts": attempts}),
        public_message=VERIFICATION_FAILED_MESSAGE,
    )


def cancel_challenge(challenge: ChallengeState) -> LoginOutcome:
    """Abandon a pending challenge. The caller must start the login over."""
    _transition(challenge.username, LoginState.CHALLENGED, LoginState.ANONYMOUS)
    return _anonymous("Login cancelled.")
