import logging
import smtplib
from email.message import EmailMessage

from config import Settings
from errors import InternalError

logger = logging.getLogger(__name__)


class Mailer:
    """Sends password reset links over SMTP; logs them when no SMTP host is configured."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def reset_link(self, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/reset-password?token={token}"

    def send_password_reset(self, email: str, token: str) -> None:
        link = self.reset_link(token)
        if not self.settings.smtp_host:
            logger.warning(f"SMTP_HOST not set; password reset link for {email}: {link}")
            return

        msg = EmailMessage()
        msg["Subject"] = "Password Reset Request"
        msg["From"] = self.settings.mail_from or self.settings.smtp_user or "no-reply@localhost"
        msg["To"] = email
        msg.set_content(f"You requested a password reset. Open this link to reset your password: {link}")
        msg.add_alternative(
            "<p>You requested a password reset</p>"
            "<p>Click this link to reset your password:</p>"
            f'<a href="{link}">Reset Password</a>',
            subtype="html",
        )
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
                smtp.starttls()
                if self.settings.smtp_user and self.settings.smtp_password:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send password reset email to {email}: {e}")
            raise InternalError("Failed to process reset request")
        logger.info(f"Password reset email sent to {email}")
