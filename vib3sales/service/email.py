from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from vib3sales.logging import get_logger, redact_email

logger = get_logger(__name__)

_BRAND = "Vib3 Idea Sales"

_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: 'Inter', -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; line-height: 1.6; color: #1f2937; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: linear-gradient(135deg, #000000 0%, #1f2937 100%); color: white; padding: 30px; text-align: center; border-radius: 8px 8px 0 0; }}
        .content {{ background: #ffffff; padding: 30px; border: 1px solid #e5e7eb; border-top: none; }}
        .button {{ display: inline-block; background: #000000; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; font-weight: 600; margin: 20px 0; }}
        .footer {{ text-align: center; padding: 20px; color: #6b7280; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{heading}</h1></div>
        <div class="content">{content}</div>
        <div class="footer"><p>&copy; {brand}. All rights reserved.</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for account verification, password reset and welcome.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests self-contained.
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
        from_name: str = _BRAND,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=redact_email(to_email), host=self.smtp_host, error=str(e))
            return False
        except OSError as e:
            # socket timeouts and refused connections
            logger.error(
                "email_network_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        content = f"""
            <p>Hi there,</p>
            <p>Thank you for signing up! Please verify your email address to get started with {_BRAND} and unlock all features:</p>
            <p style="text-align: center;"><a href="{verify_url}" class="button">Verify Email Address</a></p>
            <p>Or copy and paste this URL into your browser:</p>
            <p style="word-break: break-all; color: #6b7280; font-size: 14px;">{verify_url}</p>
            <p>This link will expire in {ttl_hours} hours.</p>
        """
        text_body = f"""Welcome to {_BRAND}!

Thank you for signing up! Please verify your email address by clicking the link below:
{verify_url}

This link will expire in {ttl_hours} hours.
"""
        html_body = _PAGE.format(heading=f"Welcome to {_BRAND}!", content=content, brand=_BRAND)
        return self.send(to_email, f"Verify Your {_BRAND} Email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        expiry = "1 hour" if ttl_minutes == 60 else f"{ttl_minutes} minutes"
        content = f"""
            <p>Hi there,</p>
            <p>We received a request to reset your password for your {_BRAND} account. Click the button below to create a new password:</p>
            <p style="text-align: center;"><a href="{reset_url}" class="button">Reset Password</a></p>
            <p><strong>Security Notice:</strong> This link will expire in {expiry}. If you didn't request a password reset, you can safely ignore this email.</p>
            <p>Or copy and paste this URL into your browser:</p>
            <p style="word-break: break-all; color: #6b7280; font-size: 14px;">{reset_url}</p>
        """
        text_body = f"""Reset Your Password

We received a request to reset your password for your {_BRAND} account.

Click the link below to create a new password (expires in {expiry}):
{reset_url}

If you didn't request a password reset, you can safely ignore this email.
"""
        html_body = _PAGE.format(heading="Reset Your Password", content=content, brand=_BRAND)
        return self.send(to_email, f"Reset Your {_BRAND} Password", html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        dashboard_url = f"{self.base_url}/dashboard"
        content = f"""
            <p>Hi {html.escape(name)},</p>
            <p>Your email has been verified! Welcome to {_BRAND}.</p>
            <p style="text-align: center;"><a href="{dashboard_url}" class="button">Launch Dashboard</a></p>
        """
        text_body = f"""You're All Set!

Hi {name},

Your email has been verified! Welcome to {_BRAND}.

Get started: {dashboard_url}
"""
        html_body = _PAGE.format(heading="You're All Set!", content=content, brand=_BRAND)
        return self.send(to_email, f"Welcome to {_BRAND}!", html_body, text_body)
