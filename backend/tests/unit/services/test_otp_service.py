# backend/tests/unit/services/test_otp_service.py
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from riskauth.db.models.one_time_password import OneTimePassword, OtpPurpose
from riskauth.exceptions import NotificationDeliveryError, ValidationFailure
from riskauth.services import otp_service


@pytest.fixture
def mock_send_otp_email():
    with patch(
        "riskauth.services.email_service.send_otp_email", new_callable=AsyncMock, return_value=True
    ) as mock:
        yield mock


def test_generate_numeric_code_is_zero_padded_digits():
    for _ in range(50):
        code = otp_service.generate_numeric_code()
        assert len(code) == 6
        assert code.isdigit()
    assert len(otp_service.generate_numeric_code(8)) == 8


@pytest.mark.asyncio
async def test_issue_sends_email_with_code(db_session, make_user, mock_send_otp_email):
    user = await make_user()

    otp = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN, ip_address="1.2.3.4")

    mock_send_otp_email.assert_awaited_once_with(user.email, user.username, otp.code, 5)
    assert otp.used is False
    assert otp.is_valid()
    assert otp.expires_at - otp.created_at == timedelta(minutes=5)


@pytest.mark.asyncio
async def test_code_is_single_use(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    otp = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    assert await otp_service.verify_otp(db_session, user, otp.code, OtpPurpose.LOGIN) is True
    assert await otp_service.verify_otp(db_session, user, otp.code, OtpPurpose.LOGIN) is False


@pytest.mark.asyncio
async def test_second_issue_invalidates_first_code(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    first = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)
    first_code = first.code
    second = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    if first_code != second.code:
        assert await otp_service.verify_otp(db_session, user, first_code, OtpPurpose.LOGIN) is False
    assert await otp_service.verify_otp(db_session, user, second.code, OtpPurpose.LOGIN) is True

    rows = (await db_session.execute(select(OneTimePassword.used))).scalars().all()
    assert rows == [True, True]


@pytest.mark.asyncio
async def test_purposes_are_independent(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    with patch(
        "riskauth.services.email_service.send_password_reset_email",
        new_callable=AsyncMock,
        return_value=True,
    ) as mock_reset:
        reset = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.PASSWORD_RESET)
    login = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    mock_reset.assert_awaited_once()
    assert await otp_service.verify_otp(db_session, user, reset.code, OtpPurpose.PASSWORD_RESET) is True
    assert await otp_service.verify_otp(db_session, user, login.code, OtpPurpose.LOGIN) is True


@pytest.mark.asyncio
async def test_expired_code_fails(db_session, make_user, mock_send_otp_email, now):
    user = await make_user()
    otp = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN, now=now)

    later = now + timedelta(minutes=5, seconds=1)
    assert not otp.is_valid(later)

    assert await otp_service.verify_otp(db_session, user, otp.code, OtpPurpose.LOGIN, now=later) is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_code",
    [
        "",
        "abc123",
        "   ",
        # Arabic-Indic and fullwidth digits pass str.isdigit()
        "\u0661\u0662\u0663\u0664\u0665\u0666",
        "\uff11\uff12\uff13\uff14\uff15\uff16",
    ],
)
async def test_malformed_code_fails(db_session, make_user, mock_send_otp_email, bad_code):
    user = await make_user()
    await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    assert await otp_service.verify_otp(db_session, user, bad_code, OtpPurpose.LOGIN) is False


@pytest.mark.asyncio
async def test_email_failure_raises_and_keeps_code_valid(db_session, make_user):
    user = await make_user()

    with patch(
        "riskauth.services.email_service.send_otp_email", new_callable=AsyncMock, return_value=False
    ):
        with pytest.raises(NotificationDeliveryError):
            await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    latest = await otp_service.get_latest_otp(db_session, user, OtpPurpose.LOGIN)
    assert latest is not None
    assert latest.used is False
    assert await otp_service.verify_otp(db_session, user, latest.code, OtpPurpose.LOGIN) is True


@pytest.mark.asyncio
async def test_user_without_email_cannot_receive_code(db_session, make_user, mock_send_otp_email):
    user = await make_user()
    delivered = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)
    mock_send_otp_email.reset_mock()
    user.email = ""

    with pytest.raises(ValidationFailure):
        await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN)

    mock_send_otp_email.assert_not_awaited()
    rows = (await db_session.execute(select(OneTimePassword))).scalars().all()
    assert [r.id for r in rows] == [delivered.id]
    # The code already delivered keeps working
    assert await otp_service.verify_otp(db_session, user, delivered.code, OtpPurpose.LOGIN) is True


@pytest.mark.asyncio
async def test_email_verification_sends_nothing(db_session, make_user, mock_send_otp_email):
    user = await make_user()

    otp = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.EMAIL_VERIFICATION)

    mock_send_otp_email.assert_not_awaited()
    assert otp.purpose == OtpPurpose.EMAIL_VERIFICATION


@pytest.mark.asyncio
async def test_cleanup_removes_used_and_expired(db_session, make_user, mock_send_otp_email, now):
    user = await make_user()
    used = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.LOGIN, now=now)
    await otp_service.verify_otp(db_session, user, used.code, OtpPurpose.LOGIN, now=now)
    live = await otp_service.generate_and_send_otp(db_session, user, OtpPurpose.EMAIL_VERIFICATION, now=now)
    db_session.add(
        OneTimePassword(
            user_id=user.id,
            code="000000",
            purpose=OtpPurpose.PASSWORD_RESET,
            used=False,
            created_at=now - timedelta(hours=1),
            expires_at=now - timedelta(minutes=55),
        )
    )
    await db_session.commit()

    removed = await otp_service.cleanup_expired_otps(db_session, now=now)

    assert removed == 2
    remaining = (await db_session.execute(select(OneTimePassword.id))).scalars().all()
    assert remaining == [live.id]
