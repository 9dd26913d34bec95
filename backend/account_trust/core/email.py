"""Email dispatch via the Resend API.

Fire-and-forget: every sender logs failures and returns None. The account
trust flows only supply a recipient and a token; the message body is a
plain-text link to the frontend verification page.
"""

import logging
from urllib.parse import quote, urlencode

import httpx

from account_trust.core.config import settings

logger = logging.getLogger(__name__)

_RESEND_API_URL = "https://api.resend.com/emails"
_RESEND_TIMEOUT = 10.0


def build_verification_url(token: str, flow: str | None = None) -> str:
    """Build the frontend link that hands a token back to the verify endpoint.

    Args:
        token: Plain (unhashed) single-use token.
        flow: Token kind for non-default flows (``"email-change"``,
            ``"password-reset"``, ``"account-deletion"``). None for plain
            email verification.

    Returns:
        Absolute URL on the frontend.
    """
    params: dict[str, str] = {"token": token}
    if flow:
        params["type"] = flow
    return f"{settings.frontend_url}/verification?{urlencode(params, quote_via=quote)}"


async def _send(*, to_email: str, subject: str, text: str) -> None:
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                _RESEND_API_URL,
                headers={
                    "Authorization": f"Bearer {settings.resend_api_key.get_secret_value()}",
                },
                json={
                    "from": settings.email_from,
                    "to": to_email,
                    "subject": subject,
                    "text": text,
                },
                timeout=_RESEND_TIMEOUT,
            )
            resp.raise_for_status()
    except Exception:
        # Never include the body: it carries the token link
        logger.warning(
            "Failed to send email", extra={"subject": subject}, exc_info=True
        )


async def send_verification_email(*, to_email: str, token: str) -> None:
    """Send the email-address verification link."""
    await _send(
        to_email=to_email,
        subject="Verify your email address",
        text=(
            f"Confirm your email address:\n\n{build_verification_url(token)}\n\n"
            f"This link expires in {settings.verification_token_ttl_minutes} minutes."
        ),
    )


async def send_email_change_email(*, to_email: str, token: str) -> None:
    """Send the confirmation link for a pending email change to the new address."""
    await _send(
        to_email=to_email,
        subject="Confirm your new email address",
        text=(
            "Confirm this address for your account:\n\n"
            f"{build_verification_url(token, 'email-change')}\n\n"
            "If you didn't request this, you can safely ignore this email."
        ),
    )


async def send_password_reset_email(*, to_email: str, token: str) -> None:
    """Send the password reset link."""
    await _send(
        to_email=to_email,
        subject="Reset your password",
        text=(
            "Reset your password:\n\n"
            f"{build_verification_url(token, 'password-reset')}\n\n"
            f"This link expires in {settings.password_reset_token_ttl_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email."
        ),
    )


async def send_account_deletion_email(*, to_email: str, token: str) -> None:
    """Send the account deletion confirmation link."""
    await _send(
        to_email=to_email,
        subject="Confirm account deletion",
        text=(
            "Confirm that you want to delete your account:\n\n"
            f"{build_verification_url(token, 'account-deletion')}\n\n"
            "If you didn't request this, change your password immediately."
        ),
    )


async def send_welcome_email(*, to_email: str, name: str | None) -> None:
    """Send the post-verification welcome message."""
    greeting = f"Hi {name}," if name else "Hi,"
    await _send(
        to_email=to_email,
        subject="Welcome",
        text=f"{greeting}\n\nYour email address has been verified.",
    )


async def send_security_notification(*, to_email: str, event: str) -> None:
    """Notify the account owner that a security-relevant change happened.

    Args:
        to_email: Recipient address.
        event: One of ``"email_changed"``, ``"password_changed"``,
            ``"deletion_scheduled"``.
    """
    messages = {
        "email_changed": "The email address on your account has been updated.",
        "password_changed": "Your password has been changed.",
        "deletion_scheduled": "Your account has been scheduled for deletion.",
    }
    await _send(
        to_email=to_email,
        subject="Security notice",
        text=(
            f"{messages.get(event, 'Your account settings changed.')}\n\n"
            "All other sessions have been signed out."
        ),
    )
