from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from gatekeep.config import Settings
from gatekeep.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    body: str
    html_body: Optional[str] = None


class Notifier(Protocol):
    def send(self, message: OutboundEmail) -> bool: ...


def build_password_reset_email(
    to_email: str, reset_url: str, *, ttl_minutes: int, product_name: str = "Gatekeep"
) -> OutboundEmail:
    """Compose the reset message. The URL carries the only copy of the token."""
    subject = f"Your {product_name} password reset token (valid for {ttl_minutes} minutes)"

    text_body = f"""Forgot your password?

Submit a PATCH request with your new password and password confirmation to:

{reset_url}

This link will expire in {ttl_minutes} minutes.

If you did not forget your password, please ignore this email.

---
{product_name}
"""

    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Forgot your password?</h1>
        <p>Submit a PATCH request with your new password and password confirmation to:</p>
        <p><code>{reset_url}</code></p>
        <p>This link will expire in {ttl_minutes} minutes.</p>
        <p>If you did not forget your password, please ignore this email.</p>
        <div class="footer">
            <p>{product_name}</p>
        </div>
    </div>
</body>
</html>
"""
    return OutboundEmail(to=to_email, subject=subject, body=text_body, html_body=html_body)


class EmailService:
    """SMTP notifier for transactional email.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Fallback to logging when not configured (dev mode)

    ``send`` reports failure as False and never retries; the caller decides
    what to roll back.
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
        from_name: str = "Gatekeep",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_mime(self, message: OutboundEmail) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to
        msg.attach(MIMEText(message.body, "plain"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: OutboundEmail) -> bool:
        recipient = self._redact_email(message.to)
        if not self.is_configured:
            # Dev mode: the body holds secrets, so only the subject is logged
            logger.info("email_dev_mode", recipient=recipient, subject=message.subject)
            return True

        msg = self._build_mime(message)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            recipient=recipient,
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", recipient=recipient, refused=len(e.recipients)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Connection refused, DNS failure, TLS handshake and timeouts
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=message.subject)
        return True


__all__ = ["EmailService", "Notifier", "OutboundEmail", "build_password_reset_email"]
