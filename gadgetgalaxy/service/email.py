from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from gadgetgalaxy.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
  <div style="max-width: 600px; margin: 0 auto; padding: 20px; font-family: Arial, sans-serif;">
    <h1 style="color: #333; text-align: center;">{title}</h1>
    {content}
    <div style="margin-top: 20px; padding-top: 20px; border-top: 1px solid #eee; text-align: center;">
      <p style="color: #999; font-size: 12px;">&copy; {year} {brand}. All rights reserved.</p>
    </div>
  </div>
</body>
</html>
"""

_BUTTON = """<div style="text-align: center; margin: 30px 0;">
      <a href="{url}" style="background-color: #4CAF50; color: white; padding: 12px 25px;
         text-decoration: none; border-radius: 4px; display: inline-block;">{label}</a>
    </div>
    <p style="color: #666;">Or copy and paste this link in your browser:<br>{url}</p>"""


def _paragraph(text: str) -> str:
    return f'<p style="color: #666; font-size: 16px; line-height: 1.5;">{text}</p>'


class EmailService:
    """Transactional mail for account verification and password recovery.

    Sends over SMTP (STARTTLS or implicit TLS). Without an SMTP host the
    message is logged instead, which is what local development relies on.
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
        from_name: str = "Gadget Galaxy",
        frontend_url: str = "http://localhost:5173",
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, content: str) -> str:
        return _LAYOUT.format(
            title=title,
            content=content,
            year=datetime.now(timezone.utc).year,
            brand=escape(self.from_name),
        )

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; False means delivery failed and was logged."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        redacted = self._redact_email(to_email)
        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=redacted, host=self.smtp_host, error_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=redacted, error=str(exc))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redacted,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=redacted, subject=subject)
        return True

    def verification_url(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?token={token}"

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def send_email_verification(self, to_email: str, name: str, token: str) -> bool:
        url = self.verification_url(token)
        subject = f"Welcome to {self.from_name} - Verify Your Email"
        content = "\n    ".join(
            [
                _paragraph(f"Hi {escape(name)},"),
                _paragraph(
                    f"Thanks for joining {escape(self.from_name)}! Please verify your email "
                    "address by clicking the button below:"
                ),
                _BUTTON.format(url=url, label="Verify My Email"),
                _paragraph(f"This link will expire in {self.verification_ttl_hours} hours."),
            ]
        )
        text_body = (
            f"Hi {name},\n\nThanks for joining {self.from_name}! Verify your email address here:\n\n"
            f"{url}\n\nThis link will expire in {self.verification_ttl_hours} hours.\n"
        )
        html_body = self._render(f"Welcome to {escape(self.from_name)}!", content)
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, name: str, token: str) -> bool:
        url = self.reset_url(token)
        subject = f"Reset your {self.from_name} password"
        content = "\n    ".join(
            [
                _paragraph(f"Hi {escape(name)},"),
                _paragraph(
                    "We received a request to reset your password. "
                    "Click the button below to choose a new one:"
                ),
                _BUTTON.format(url=url, label="Reset Password"),
                _paragraph(f"This link will expire in {self.reset_ttl_minutes} minutes."),
                _paragraph("If you didn't request this, you can safely ignore this email."),
            ]
        )
        text_body = (
            f"Hi {name},\n\nReset your {self.from_name} password here:\n\n{url}\n\n"
            f"This link will expire in {self.reset_ttl_minutes} minutes.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        html_body = self._render("Reset your password", content)
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str, name: str) -> bool:
        subject = f"Your {self.from_name} password was changed"
        content = "\n    ".join(
            [
                _paragraph(f"Hi {escape(name)},"),
                _paragraph("The password on your account was just changed."),
                _paragraph("If you didn't make this change, reset your password immediately."),
            ]
        )
        text_body = (
            f"Hi {name},\n\nThe password on your account was just changed.\n"
            "If you didn't make this change, reset your password immediately.\n"
        )
        return self._send_email(to_email, subject, self._render("Password changed", content), text_body)

    async def send_email_verification_async(self, to_email: str, name: str, token: str) -> bool:
        return await asyncio.to_thread(self.send_email_verification, to_email, name, token)

    async def send_password_reset_async(self, to_email: str, name: str, token: str) -> bool:
        return await asyncio.to_thread(self.send_password_reset, to_email, name, token)

    async def send_password_changed_async(self, to_email: str, name: str) -> bool:
        return await asyncio.to_thread(self.send_password_changed, to_email, name)
