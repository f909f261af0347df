from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from html import escape
from typing import Optional

from coursegate.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 32px 16px;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p><a href="{link}">{action}</a></p>
    <p>{footnote}</p>
    <p style="font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail over SMTP; logs the message instead when SMTP is unset."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Coursegate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _compose(
        self, to_email: str, subject: str, heading: str, intro: str, link: str, action: str, footnote: str
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(f"{heading}\n\n{intro}\n\n{link}\n\n{footnote}\n\n-- \n{self.from_name}\n")
        msg.add_alternative(
            _HTML_LAYOUT.format(
                heading=escape(heading),
                intro=escape(intro),
                link=escape(link, quote=True),
                action=escape(action),
                footnote=escape(footnote),
                sender=escape(self.from_name),
            ),
            subtype="html",
        )
        return msg

    def _deliver(self, msg: EmailMessage) -> bool:
        to_email = str(msg["To"])
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=str(msg["Subject"]),
            )
            return True
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=str(msg["Subject"]))
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._deliver(
            self._compose(
                to_email,
                f"Reset your {self.from_name} password",
                "Reset your password",
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"{self.base_url}/reset-password?token={token}",
                "Reset password",
                "The link expires in 15 minutes. Every signed-in device will be signed out.",
            )
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._deliver(
            self._compose(
                to_email,
                f"Verify your {self.from_name} email",
                "Verify your email",
                "Confirm this address to finish setting up your account.",
                f"{self.base_url}/verify-email?token={token}",
                "Verify email",
                "The link expires in 24 hours.",
            )
        )

    def send_institution_linked(self, to_email: str, organization_name: str) -> bool:
        return self._deliver(
            self._compose(
                to_email,
                f"You now have access through {organization_name}",
                "Institution access enabled",
                f"{organization_name} added you to its roster. Courses assigned by your institution are now in your library.",
                f"{self.base_url}/dashboard",
                "Open your courses",
                "If you do not recognise this institution, contact support.",
            )
        )
