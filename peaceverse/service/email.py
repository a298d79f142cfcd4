from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from peaceverse.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

PURPOSE_VERIFY = "verify"
PURPOSE_RESET = "reset"

OTP_SUBJECT = "Your OTP Code"
SMTP_TIMEOUT_SECONDS = 30

_HEADINGS = {
    PURPOSE_VERIFY: "Verify your Peace-Verse account",
    PURPOSE_RESET: "Reset your Peace-Verse password",
}

_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, Helvetica, sans-serif; color: #1f2933;">
  <table role="presentation" width="100%" style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <tr><td><h2 style="color: #1d6f42;">{heading}</h2></td></tr>
    <tr><td>Use this one-time code to continue:</td></tr>
    <tr><td style="font-size: 30px; font-weight: 700; letter-spacing: 6px; padding: 16px 0;">{code}</td></tr>
    <tr><td>The code expires in {ttl} minutes. Ignore this message if you did not ask for it.</td></tr>
    <tr><td style="padding-top: 32px; font-size: 12px; color: #5b6470;">Peace-Verse</td></tr>
  </table>
</body>
</html>
"""

_TEXT_TEMPLATE = """\
{heading}

Use this one-time code to continue: {code}

The code expires in {ttl} minutes. Ignore this message if you did not ask for it.

Peace-Verse
"""


class EmailService:
    """Sends one-time codes over SMTP.

    Without an SMTP host the send is logged (recipient masked, code omitted)
    and reported as delivered, so local development needs no relay. Delivery
    errors are logged and reported as ``False``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Peace-Verse",
        otp_ttl_minutes: int = 5,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    @staticmethod
    def _mask_recipient(address: str) -> str:
        local, sep, domain = address.partition("@")
        if not sep:
            return "redacted"
        return f"{local[:2]}***@{domain}"

    def _build_message(self, recipient: str, code: str, purpose: str) -> EmailMessage:
        heading = _HEADINGS.get(purpose, _HEADINGS[PURPOSE_VERIFY])
        fields = {"heading": heading, "code": code, "ttl": self.otp_ttl_minutes}
        message = EmailMessage()
        message["Subject"] = OTP_SUBJECT
        message["From"] = f"{self.from_name} <{self.sender}>"
        message["To"] = recipient
        message.set_content(_TEXT_TEMPLATE.format(**fields))
        message.add_alternative(_HTML_TEMPLATE.format(**fields), subtype="html")
        return message

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(
                self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS
            )
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host,
                self.smtp_port,
                context=context,
                timeout=SMTP_TIMEOUT_SECONDS,
            )
        return server

    def _deliver(self, message: EmailMessage) -> None:
        with self._open_connection() as server:
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.sender, message["To"], message.as_string())

    def send_otp(self, to_email: str, code: str, purpose: str = PURPOSE_VERIFY) -> bool:
        """Send a one-time code for account verification or password reset."""
        recipient = self._mask_recipient(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, purpose=purpose)
            return True
        try:
            self._deliver(self._build_message(to_email, code, purpose))
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error=sanitize_error_message(str(exc)),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return False
        except OSError as exc:
            # refused connection, DNS failure, TLS handshake or timeout
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False
        logger.info("email_sent", recipient=recipient, purpose=purpose)
        return True
