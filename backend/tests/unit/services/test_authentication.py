# backend/tests/unit/services/test_authentication.py
"""
End-to-end login decisions against an in-memory database.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pyotp
import pytest
from sqlalchemy import select

from riskauth.core import security
from riskauth.core.rate_limit import AttemptRateLimiter
from riskauth.db.models.audit_log import AuditLog
from riskauth.db.models.login_attempt import LoginAttempt
from riskauth.db.models.one_time_password import OtpPurpose
from riskauth.exceptions import NotificationDeliveryError, RateLimitedError, ValidationFailure
from riskauth.schemas.auth import LoginState, RiskLevel, VerificationMethod
from riskauth.services import (
    attempt_history,
    authentication,
    mfa_service,
    otp_service,
    trusted_devices,
)
from tests.factories.context_factory import make_context
from tests.factories.user_factory import DEFAULT_PASSWORD


@pytest.fixture
def mock_send_otp_email():
    with patch(
        "riskauth.services.email_service.send_otp_email", new_callable=AsyncMock, return_value=True
    ) as mock:
        yield mock


async def _ledger(db):
    result = await db.execute(select(LoginAttempt).order_by(LoginAttempt.id))
    return list(result.scalars().all())


async def _audit_events(db):
    result = await db.execute(select(AuditLog.event_type).order_by(AuditLog.id))
    return list(result.scalars().all())


async def _challenged(db, user, **context_kwargs):
    """Password login that lands in CHALLENGED: unknown device behind a VPN scores 45."""
    context = make_context(device_fingerprint="fp-new", is_vpn=True, **context_kwargs)
    outcome = await authentication.authenticate_password(db, user.username, DEFAULT_PASSWORD, context)
    assert outcome.state == LoginState.CHALLENGED
    return outcome.challenge


# --- Primary step ---


@pytest.mark.asyncio
async def test_unknown_account_is_blocked_before_credentials_are_checked(db_session, context):
    with patch(
        "riskauth.services.authentication.verify_password", wraps=security.verify_password
    ) as mock_verify:
        outcome = await authentication.authenticate_password(db_session, "ghost", "whatever", context)

    mock_verify.assert_not_called()
    assert outcome.state == LoginState.BLOCKED
    assert outcome.user_id is None
    assert outcome.challenge is None
    assert outcome.public_message == "Verification failed."
    ledger = await _ledger(db_session)
    assert len(ledger) == 1
    assert ledger[0].success is False
    assert ledger[0].risk_score == 100
    assert ledger[0].risk_factors == "account not found"
    assert await _audit_events(db_session) == ["LOGIN_BLOCKED"]


@pytest.mark.asyncio
async def test_trusted_device_logs_in_directly(db_session, make_user, context):
    user = await make_user(failed_login_count=2)
    await trusted_devices.trust_device(db_session, user.username, context.device_fingerprint)

    outcome = await authentication.authenticate_password(db_session, user.username, DEFAULT_PASSWORD, context)

    assert outcome.state == LoginState.AUTHENTICATED
    assert outcome.authenticated is True
    assert outcome.user_id == user.id
    assert user.failed_login_count == 0
    assert user.last_login_at is not None
    ledger = await _ledger(db_session)
    assert [(a.success, a.risk_score) for a in ledger] == [(True, 0)]
    assert "LOGIN_SUCCESS" in await _audit_events(db_session)


@pytest.mark.asyncio
async def test_wrong_password_returns_generic_failure(db_session, make_user, context):
    user = await make_user()

    outcome = await authentication.authenticate_password(db_session, user.username, "wrong", context)

    assert outcome.state == LoginState.ANONYMOUS
    assert outcome.public_message == "Authentication failed. Please try again."
    assert user.failed_login_count == 1
    ledger = await _ledger(db_session)
    assert [a.success for a in ledger] == [False]
    assert await _audit_events(db_session) == ["LOGIN_FAILURE"]


@pytest.mark.asyncio
async def test_repeated_wrong_passwords_lock_the_account(db_session, make_user, context):
    user = await make_user()

    for _ in range(5):
        await authentication.authenticate_password(db_session, user.username, "wrong", context)

    assert user.account_locked is True
    assert "ACCOUNT_LOCKED" in await _audit_events(db_session)

    with patch(
        "riskauth.services.authentication.verify_password", wraps=security.verify_password
    ) as mock_verify:
        outcome = await authentication.authenticate_password(
            db_session, user.username, DEFAULT_PASSWORD, context
        )

    mock_verify.assert_not_called()
    assert outcome.state == LoginState.ANONYMOUS


@pytest.mark.asyncio
async def test_inactive_user_cannot_log_in(db_session, make_user, context):
    user = await make_user(is_active=False)

    outcome = await authentication.authenticate_password(db_session, user.username, DEFAULT_PASSWORD, context)

    assert outcome.state == LoginState.ANONYMOUS


@pytest.mark.asyncio
async def test_low_risk_new_device_is_trusted_only_on_opt_in(db_session, make_user):
    user = await make_user()
    user_id = user.id

    plain = await authentication.authenticate_password(
        db_session, user.username, DEFAULT_PASSWORD, make_context(device_fingerprint="fp-a")
    )
    opted_in = await authentication.authenticate_password(
        db_session,
        user.username,
        DEFAULT_PASSWORD,
        make_context(device_fingerprint="fp-b"),
        trust_device=True,
        device_name="Work laptop",
    )

    assert plain.state == LoginState.AUTHENTICATED
    assert opted_in.state == LoginState.AUTHENTICATED
    assert not await trusted_devices.is_trusted_device(db_session, user_id, "fp-a")
    assert await trusted_devices.is_trusted_device(db_session, user_id, "fp-b")
    assert "DEVICE_TRUSTED" in await _audit_events(db_session)


@pytest.mark.asyncio
async def test_critical_risk_for_known_user_is_blocked(db_session, make_user):
    user = await make_user()
    await attempt_history.record_login_attempt(
        db_session, user.username, make_context(country_code="JP"), True, 0, None
    )

    outcome = await authentication.authenticate_password(
        db_session,
        user.username,
        DEFAULT_PASSWORD,
        make_context(device_fingerprint="fp-new", country_code="US"),
    )

    assert outcome.state == LoginState.BLOCKED
    assert user.failed_login_count == 0


@pytest.mark.asyncio
async def test_rate_limited_login_raises_and_is_audited(db_session, make_user, context, monkeypatch):
    monkeypatch.setattr(
        authentication,
        "login_rate_limiter",
        AttemptRateLimiter("login-tight", max_attempts=2, window_seconds=60, block_seconds=300),
    )
    user = await make_user()

    for _ in range(2):
        await authentication.authenticate_password(db_session, user.username, "wrong", context)
    with pytest.raises(RateLimitedError) as exc_info:
        await authentication.authenticate_password(db_session, user.username, DEFAULT_PASSWORD, context)

    assert exc_info.value.retry_after_seconds == 300
    assert (await _audit_events(db_session))[-1] == "RATE_LIMITED"
    assert len(await _ledger(db_session)) == 2


# --- Secondary step ---


@pytest.mark.asyncio
async def test_elevated_risk_is_challenged_without_leaking_factors(db_session, make_user):
    user = await make_user()

    challenge = await _challenged(db_session, user)

    assert challenge.username == user.username
    assert challenge.attempts == 0
    assert challenge.risk_result.risk_score == 45
    assert challenge.risk_result.risk_level == RiskLevel.MEDIUM
    assert await _ledger(db_session) == []


@pytest.mark.asyncio
async def test_email_otp_challenge_completes_login(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    user_id = user.id
    challenge = await _challenged(db_session, user)

    await authentication.send_challenge_otp(db_session, challenge)
    code = mock_send_otp_email.call_args[0][2]
    outcome = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.EMAIL_OTP, code, trust_device=True
    )

    assert outcome.state == LoginState.AUTHENTICATED
    assert outcome.user_id == user_id
    ledger = await _ledger(db_session)
    assert len(ledger) == 1
    assert ledger[0].success is True
    assert ledger[0].additional_verification_required is True
    assert ledger[0].verification_method == "EMAIL_OTP"
    assert ledger[0].risk_score == 45
    # MEDIUM risk, verified, opted in
    assert await trusted_devices.is_trusted_device(db_session, user_id, "fp-new")
    events = await _audit_events(db_session)
    assert events.index("OTP_SENT") < events.index("OTP_VERIFIED") < events.index("LOGIN_SUCCESS")


@pytest.mark.asyncio
async def test_resent_otp_replaces_previous_code(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    challenge = await _challenged(db_session, user)

    await authentication.send_challenge_otp(db_session, challenge)
    first_code = mock_send_otp_email.call_args[0][2]
    await authentication.send_challenge_otp(db_session, challenge)
    second_code = mock_send_otp_email.call_args[0][2]

    if first_code != second_code:
        failed = await authentication.complete_challenge(
            db_session, challenge, VerificationMethod.EMAIL_OTP, first_code
        )
        assert failed.state == LoginState.CHALLENGED
        challenge = failed.challenge
    outcome = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.EMAIL_OTP, second_code
    )

    assert outcome.state == LoginState.AUTHENTICATED


@pytest.mark.asyncio
async def test_otp_delivery_failure_is_raised_and_audited(db_session, make_user):
    user = await make_user()
    challenge = await _challenged(db_session, user)

    with patch(
        "riskauth.services.email_service.send_otp_email", new_callable=AsyncMock, return_value=False
    ):
        with pytest.raises(NotificationDeliveryError):
            await authentication.send_challenge_otp(db_session, challenge)

    assert "OTP_REQUEST_FAILED" in await _audit_events(db_session)
    latest = await otp_service.get_latest_otp(db_session, user, OtpPurpose.LOGIN)
    assert latest is not None


@pytest.mark.asyncio
async def test_non_ascii_digits_are_a_wrong_code(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    challenge = await _challenged(db_session, user)
    await authentication.send_challenge_otp(db_session, challenge)
    code = mock_send_otp_email.call_args[0][2]
    # Same digits in Arabic-Indic script
    lookalike = "".join(chr(0x0660 + int(d)) for d in code)

    failed = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.EMAIL_OTP, lookalike
    )

    assert failed.state == LoginState.CHALLENGED
    assert failed.challenge.attempts == 1
    outcome = await authentication.complete_challenge(
        db_session, failed.challenge, VerificationMethod.EMAIL_OTP, code
    )
    assert outcome.state == LoginState.AUTHENTICATED


@pytest.mark.asyncio
async def test_otp_request_without_email_is_audited(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    challenge = await _challenged(db_session, user)
    user.email = ""
    await db_session.commit()

    with pytest.raises(ValidationFailure):
        await authentication.send_challenge_otp(db_session, challenge)

    mock_send_otp_email.assert_not_awaited()
    assert "OTP_REQUEST_FAILED" in await _audit_events(db_session)


@pytest.mark.asyncio
async def test_otp_requests_are_rate_limited(db_session, make_user, mock_send_otp_email, monkeypatch):
    user = await make_user()
    challenge = await _challenged(db_session, user)
    monkeypatch.setattr(
        authentication,
        "otp_rate_limiter",
        AttemptRateLimiter("otp-tight", max_attempts=1, window_seconds=60, block_seconds=60),
    )

    await authentication.send_challenge_otp(db_session, challenge)
    with pytest.raises(RateLimitedError):
        await authentication.send_challenge_otp(db_session, challenge)

    assert mock_send_otp_email.await_count == 1


@pytest.mark.asyncio
async def test_totp_challenge(db_session, make_user):
    user = await make_user()
    secret = mfa_service.generate_totp_secret()
    await mfa_service.enable_mfa(db_session, user, secret, pyotp.TOTP(secret).now())
    challenge = await _challenged(db_session, user)

    assert VerificationMethod.TOTP in challenge.risk_result.recommended_methods

    outcome = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.TOTP, pyotp.TOTP(secret).now()
    )

    assert outcome.state == LoginState.AUTHENTICATED
    assert "MFA_SUCCESS" in await _audit_events(db_session)


@pytest.mark.asyncio
async def test_backup_code_challenge_consumes_code(db_session, make_user):
    user = await make_user()
    secret = mfa_service.generate_totp_secret()
    codes = await mfa_service.enable_mfa(db_session, user, secret, pyotp.TOTP(secret).now())

    first = await authentication.complete_challenge(
        db_session, await _challenged(db_session, user), VerificationMethod.BACKUP_CODE, codes[0]
    )
    second = await authentication.complete_challenge(
        db_session, await _challenged(db_session, user), VerificationMethod.BACKUP_CODE, codes[0]
    )

    assert first.state == LoginState.AUTHENTICATED
    assert second.state == LoginState.CHALLENGED


@pytest.mark.asyncio
async def test_failed_verification_keeps_challenge_with_generic_message(db_session, make_user):
    user = await make_user()
    challenge = await _challenged(db_session, user)

    outcome = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.EMAIL_OTP, "123456"
    )

    assert outcome.state == LoginState.CHALLENGED
    assert outcome.challenge.attempts == 1
    assert challenge.attempts == 0
    assert outcome.public_message == "Verification failed."
    assert await _ledger(db_session) == []
    assert (await _audit_events(db_session))[-1] == "OTP_FAILED"


@pytest.mark.asyncio
async def test_challenge_is_dropped_after_max_attempts(db_session, make_user):
    user = await make_user()
    challenge = await _challenged(db_session, user)

    outcome = None
    for _ in range(5):
        outcome = await authentication.complete_challenge(
            db_session, challenge, VerificationMethod.TOTP, "123456"
        )
        if outcome.state != LoginState.CHALLENGED:
            break
        challenge = outcome.challenge

    assert outcome.state == LoginState.ANONYMOUS
    assert outcome.challenge is None
    ledger = await _ledger(db_session)
    assert len(ledger) == 1
    assert ledger[0].success is False
    assert ledger[0].additional_verification_required is True
    assert ledger[0].verification_method == "TOTP"


@pytest.mark.asyncio
async def test_high_risk_verified_login_does_not_trust_device(db_session, make_user, mock_send_otp_email, now):
    user = await make_user()
    user_id = user.id
    await attempt_history.record_login_attempt(
        db_session,
        user.username,
        make_context(country_code="JP"),
        True,
        0,
        None,
        attempted_at=now - timedelta(hours=48),
    )
    # new device 20 + VPN 25 + new location 20
    challenge = await _challenged(db_session, user, country_code="US")
    assert challenge.risk_result.risk_level == RiskLevel.HIGH

    await authentication.send_challenge_otp(db_session, challenge)
    code = mock_send_otp_email.call_args[0][2]
    outcome = await authentication.complete_challenge(
        db_session, challenge, VerificationMethod.EMAIL_OTP, code, trust_device=True
    )

    assert outcome.state == LoginState.AUTHENTICATED
    assert not await trusted_devices.is_trusted_device(db_session, user_id, "fp-new")


def test_cancel_challenge_returns_to_anonymous():
    challenge = type("C", (), {"username": "alice"})()

    outcome = authentication.cancel_challenge(challenge)

    assert outcome.state == LoginState.ANONYMOUS
    assert outcome.public_message == "Login cancelled."


# --- OAuth2 ---


@pytest.mark.asyncio
async def test_oauth2_login_runs_through_risk_decision(db_session):
    outcome = await authentication.authenticate_oauth2(
        db_session,
        "google",
        {"sub": "g-1", "name": "Jane", "email": "jane@example.com"},
        "token",
        make_context(device_fingerprint="fp-x"),
    )

    assert outcome.state == LoginState.AUTHENTICATED
    assert outcome.username == "google_g-1"
    events = await _audit_events(db_session)
    assert "OAUTH2_LOGIN" in events
    assert "LOGIN_SUCCESS" in events
    ledger = await _ledger(db_session)
    assert ledger[0].risk_score == 20


@pytest.mark.asyncio
async def test_oauth2_identity_without_email_is_rejected(db_session, context):
    outcome = await authentication.authenticate_oauth2(
        db_session, "github", {"id": 99, "name": "Nobody"}, None, context
    )

    assert outcome.state == LoginState.ANONYMOUS
    entry = (await db_session.execute(select(AuditLog))).scalars().one()
    assert entry.event_type == "OAUTH2_LOGIN"
    assert entry.success is False


@pytest.mark.asyncio
async def test_oauth2_malformed_email_is_rejected(db_session, context):
    outcome = await authentication.authenticate_oauth2(
        db_session, "github", {"id": 100, "email": "broken@"}, None, context
    )

    assert outcome.state == LoginState.ANONYMOUS
    entry = (await db_session.execute(select(AuditLog))).scalars().one()
    assert entry.event_type == "OAUTH2_LOGIN"
    assert entry.success is False


@pytest.mark.asyncio
async def test_oauth2_elevated_risk_is_challenged(db_session):
    outcome = await authentication.authenticate_oauth2(
        db_session,
        "github",
        {"id": 5, "name": "Dev", "email": "dev@example.com"},
        None,
        make_context(device_fingerprint="fp-x", is_vpn=True),
    )

    assert outcome.state == LoginState.CHALLENGED
    assert outcome.challenge.primary_method == "oauth2:github"
