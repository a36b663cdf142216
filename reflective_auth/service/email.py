from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from reflective_auth.logging import get_logger, redact_email

logger = get_logger(__name__)


class DeliveryError(Exception):
    """An email could not be handed to the mail server."""


class CodeSender(Protocol):
    def send_verification_code(self, to_email: str, code: str) -> None: ...

    def send_welcome(self, to_email: str, name: str) -> bool: ...


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification code and welcome emails
    - Logging instead of sending when SMTP is not configured and
      ``dev_mode`` is on
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        timeout: float = 5.0,
        from_email: Optional[str] = None,
        from_name: str = "Reflective Pomodoro",
        base_url: Optional[str] = None,
        code_ttl_minutes: int = 10,
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.timeout = timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "https://reflectivepomodoro.com"
        self.code_ttl_minutes = code_ttl_minutes
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        """Send an email via SMTP, raising DeliveryError on any failure."""
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("email_not_configured", to=redact_email(to_email))
                raise DeliveryError("email service not configured")
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            raise DeliveryError("smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            raise DeliveryError("recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("smtp error") from e
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("smtp transport error") from e

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    def send_verification_code(self, to_email: str, code: str) -> None:
        """Send a one-time verification code; raises DeliveryError on failure."""
        if not to_email or not code:
            raise DeliveryError("email and verification code are required")

        subject = "Your Verification Code - Reflective Pomodoro"

        html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #4F46E5;">Email Verification</h2>
  <p>Hello,</p>
  <p>Your verification code for Reflective Pomodoro is:</p>
  <div style="background: #f8fafc; border: 2px dashed #e2e8f0; padding: 20px; text-align: center; margin: 20px 0;">
    <h1 style="color: #4F46E5; font-size: 32px; letter-spacing: 8px; margin: 0;">{code}</h1>
  </div>
  <p>This code will expire in {self.code_ttl_minutes} minutes.</p>
  <p>If you didn't request this code, please ignore this email.</p>
  <p style="color: #64748b; font-size: 12px;">Reflective Pomodoro Team</p>
</div>
"""

        text_body = (
            f"Your verification code is: {code}. "
            f"This code will expire in {self.code_ttl_minutes} minutes."
        )

        self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        """Send the welcome email. Best effort: returns False instead of raising."""
        subject = "Welcome to Reflective Pomodoro!"

        html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #4F46E5;">Welcome to Reflective Pomodoro!</h2>
  <p>Hello {name},</p>
  <p>Two-factor authentication has been enabled for your account to keep your data safe.</p>
  <ul>
    <li>You'll receive verification codes via email when logging in</li>
    <li>Each code expires in {self.code_ttl_minutes} minutes</li>
    <li>Check your spam folder if you don't see the emails</li>
  </ul>
  <p><a href="{self.base_url}">Get started</a></p>
  <p style="color: #64748b; font-size: 12px;">Reflective Pomodoro Team</p>
</div>
"""

        text_body = f"""Welcome to Reflective Pomodoro!

Hello {name},

Two-factor authentication has been enabled for your account. You'll receive
verification codes via email when logging in; each code expires in
{self.code_ttl_minutes} minutes.

{self.base_url}

---
Reflective Pomodoro Team
"""

        try:
            self._send_email(to_email, subject, html_body, text_body)
        except DeliveryError as exc:
            logger.warning("welcome_email_failed", to=redact_email(to_email), error=str(exc))
            return False
        return True
