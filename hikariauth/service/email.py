from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional
from urllib.parse import quote

from hikariauth.config import Settings
from hikariauth.logging import get_logger, redact_email

logger = get_logger(__name__)


@dataclass
class EmailService:
    """Transactional email for verification and password reset links.

    Sends over SMTP (STARTTLS or implicit TLS) when a host is configured;
    otherwise logs the message and link so local development works
    without a mail server. Sending never raises: failures are logged and
    reported as ``False``.
    """

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = field(default=None, repr=False)
    smtp_use_tls: bool = True
    from_email: Optional[str] = None
    from_name: str = "Hikari Chat"
    base_url: str = "http://localhost:5173"

    def __post_init__(self) -> None:
        self.from_email = self.from_email or self.smtp_user
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_link(self, token: str) -> str:
        return f"{self.base_url}/auth/verify?token={quote(token, safe='')}"

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/auth/reset?token={quote(token, safe='')}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        link: str,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                link=link,
            )
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            if isinstance(exc, smtplib.SMTPAuthenticationError):
                reason = "auth_failed"
            elif isinstance(exc, smtplib.SMTPRecipientsRefused):
                reason = "recipient_refused"
            else:
                reason = "transport"
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, intro: str, action: str, link: str, outro: str) -> tuple[str, str]:
        safe_link = html.escape(link, quote=True)
        html_body = f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <h1>{html.escape(heading)}</h1>
  <p>{html.escape(intro)}</p>
  <p><a href="{safe_link}">{html.escape(action)}</a></p>
  <p>{html.escape(outro)}</p>
</body>
</html>
"""
        text_body = f"{heading}\n\n{intro}\n\n{link}\n\n{outro}\n"
        return html_body, text_body

    def send_email_verification_sync(self, to_email: str, token: str) -> bool:
        link = self.verification_link(token)
        html_body, text_body = self._render(
            "Welcome to Hikari Chat!",
            "Please confirm your email address to finish creating your account.",
            "Verify Email",
            link,
            "This link expires in one hour. If you did not sign up, ignore this email.",
        )
        return self._send_email(
            to_email, "Verify your Hikari Chat account", html_body, text_body, link=link
        )

    def send_password_reset_sync(self, to_email: str, token: str) -> bool:
        link = self.reset_link(token)
        html_body, text_body = self._render(
            "Reset your password",
            "Someone asked to reset the password for your Hikari Chat account.",
            "Choose a new password",
            link,
            "This link expires in one hour. If this was not you, ignore this email.",
        )
        return self._send_email(
            to_email, "Reset your Hikari Chat password", html_body, text_body, link=link
        )

    async def send_email_verification(self, to_email: str, token: str) -> bool:
        return await asyncio.to_thread(self.send_email_verification_sync, to_email, token)

    async def send_password_reset(self, to_email: str, token: str) -> bool:
        return await asyncio.to_thread(self.send_password_reset_sync, to_email, token)
