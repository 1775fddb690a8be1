# backend/riskauth/services/email_service.py
"""
Email service for sending transactional emails.
Supports Mailgun API.
"""

import html
import logging

import httpx

from riskauth.core.config import settings

logger = logging.getLogger(__name__)

MAILGUN_API_BASE = "https://api.mailgun.net/v3"
REQUEST_TIMEOUT_SECONDS = 10.0


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str | None = None,
) -> bool:
    """
    Send an email using Mailgun API.

    Returns True if email was sent successfully, False otherwise.
    """
    if not settings.MAILGUN_API_KEY or not settings.MAILGUN_DOMAIN:
        logger.warning(f"Mailgun not configured. Would have sent email to {to_email}: {subject}")
        return False

    from_email = settings.MAILGUN_FROM_EMAIL or f"no-reply@{settings.MAILGUN_DOMAIN}"
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{MAILGUN_API_BASE}/{settings.MAILGUN_DOMAIN}/messages",
                auth=("api", settings.MAILGUN_API_KEY),
                data={
                    "from": f"{settings.MAILGUN_FROM_NAME} <{from_email}>",
                    "to": to_email,
                    "subject": subject,
                    "text": text_content or "",
                    "html": html_content,
                },
            )

            if response.status_code == 200:
                logger.info(f"Email sent successfully to {to_email}: {subject}")
                return True
            logger.error(f"Mailgun API error: {response.status_code} - {response.text}")
            return False

    except httpx.HTTPError as e:
        logger.error(f"Failed to send email to {to_email}: {e}", exc_info=True)
        return False


def _code_email_html(title: str, username: str, intro: str, code: str, valid_minutes: int) -> str:
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="background: #1f2937; padding: 20px; text-align: center;">
            <h1 style="color: white; margin: 0;">{html.escape(settings.APP_NAME)}</h1>
        </div>
        <div style="padding: 30px; background: #f9fafb;">
            <h2 style="color: #1f2937;">{title}</h2>
            <p style="color: #4b5563; line-height: 1.6;">Hello {html.escape(username)},</p>
            <p style="color: #4b5563; line-height: 1.6;">{intro}</p>
            <p style="text-align: center; font-size: 32px; letter-spacing: 8px; font-weight: bold;">
                {html.escape(code)}
            </p>
            <p style="color: #6b7280; font-size: 14px;">
                This code expires in {valid_minutes} minute(s) and can be used once.
            </p>
            <p style="color: #6b7280; font-size: 14px;">
                If you didn't request this, you can safely ignore this email.
            </p>
        </div>
    </body>
    </html>
    """


async def send_otp_email(to_email: str, username: str, code: str, valid_minutes: int) -> bool:
    """Send a login verification code."""
    subject = f"Your {settings.APP_NAME} verification code"
    intro = "Use the following code to finish signing in:"
    html_content = _code_email_html("Verification code", username, intro, code, valid_minutes)
    text_content = f"""
Hello {username},

{intro}

{code}

This code expires in {valid_minutes} minute(s) and can be used once.
If you didn't request this, you can safely ignore this email.
    """
    return await send_email(to_email, subject, html_content, text_content)


async def send_password_reset_email(
    to_email: str, username: str, reset_code: str, valid_minutes: int
) -> bool:
    """Send a password reset code."""
    subject = "Reset Your Password"
    intro = "You requested to reset your password. Enter this code to continue:"
    html_content = _code_email_html("Reset Your Password", username, intro, reset_code, valid_minutes)
    text_content = f"""
Reset Your Password

Hello {username},

{intro}

{reset_code}

This code expires in {valid_minutes} minute(s).
If you didn't request this, you can safely ignore this email.
    """
    return await send_email(to_email, subject, html_content, text_content)
