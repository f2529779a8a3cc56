import logging
import smtplib
from email.mime.text import MIMEText

from . import config

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a plain-text message over SMTP. Returns False when SMTP is not configured."""
    if not config.SMTP_HOST:
        logger.debug("SMTP not configured, skipping email", extra={"subject": subject})
        return False

    msg = MIMEText(body)
    msg["Subject"] = subject
    msg["From"] = config.MAIL_FROM
    msg["To"] = to_email

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as server:
        server.starttls()
        if config.SMTP_USERNAME:
            server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
        server.send_message(msg)
    return True


def best_effort(send, *args, label: str = "email") -> bool:
    """Run a send_* helper, logging instead of raising on failure."""
    try:
        return bool(send(*args))
    except Exception as exc:
        logger.warning("%s failed (non-blocking): %s", label, exc)
        return False


def send_welcome_email(email: str, name: str = None) -> bool:
    greeting = f"Hi {name}," if name else "Hi there,"
    return send_email(
        email,
        f"Welcome to {config.APP_NAME}!",
        f"{greeting}\n\nThanks for signing up! Your account is ready to go.\n\n"
        f"Dashboard: {config.APP_URL}/dashboard\n\n"
        "If you didn't create this account, you can safely ignore this email.\n",
    )


def send_password_reset_email(email: str, token: str) -> bool:
    reset_url = f"{config.APP_URL}/reset-password?token={token}"
    return send_email(
        email,
        f"Reset your {config.APP_NAME} password",
        "You requested a password reset. Open the link below to set a new password:\n\n"
        f"{reset_url}\n\n"
        "This link expires in 1 hour. If you didn't request this, ignore this email.\n",
    )


def send_payment_failed_email(email: str, name: str = None) -> bool:
    greeting = f"Hi {name}," if name else "Hi,"
    return send_email(
        email,
        f"Action needed: Payment failed for {config.APP_NAME}",
        f"{greeting}\n\nWe weren't able to process your latest payment. "
        "This is usually due to an expired card or insufficient funds.\n\n"
        "Please update your payment method within 7 days to keep your access:\n"
        f"{config.APP_URL}/dashboard/billing\n",
    )


def send_subscription_created_email(email: str, plan_name: str) -> bool:
    return send_email(
        email,
        f"Welcome to {config.APP_NAME} {plan_name}!",
        f"You're now on the {plan_name} plan. All premium features are unlocked.\n\n"
        f"{config.APP_URL}/dashboard\n",
    )
