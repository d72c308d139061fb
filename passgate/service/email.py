from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from passgate.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Plain-text transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Verification, password reset and password-changed notices
    - Fallback to logging when not configured (dev mode)

    ``send`` never raises: every failure is logged and reported as ``False``.
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
        from_name: str = "Passgate",
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
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
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        recipient = redact_email(to_email)
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=body[:200],
            )
            return True

        try:
            msg = MIMEText(body, "plain", "utf-8")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                recipient=recipient,
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", recipient=recipient, subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", recipient=recipient, error=str(e))
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except Exception as e:
            logger.error(
                "email_send_failed",
                recipient=recipient,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def send_email_verification(self, to_email: str, token: str, full_name: str) -> bool:
        """Send the email verification link."""
        verify_url = self._link("/verify-email", token)
        body = f"""Hi {full_name},

Thanks for signing up! Please verify your email address by visiting the link below:

{verify_url}

This link will expire in {self.verification_ttl_hours} hours.

---
{self.from_name}
"""
        return self.send(to_email, "Verify your email address", body)

    def send_password_reset(self, to_email: str, token: str, full_name: str) -> bool:
        """Send the password reset link."""
        reset_url = self._link("/reset-password", token)
        body = f"""Hi {full_name},

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self.send(to_email, "Reset your password", body)

    def send_password_changed(self, to_email: str, full_name: str) -> bool:
        body = f"""Hi {full_name},

The password for your account was just changed and every signed-in device was logged out.

If you did not make this change, reset your password immediately and contact support.

---
{self.from_name}
"""
        return self.send(to_email, "Your password was changed", body)
