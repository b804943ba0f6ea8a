from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from string import Template
from typing import Any, Dict, Mapping, Optional, Tuple

from intakegate.logging import get_logger

logger = get_logger(__name__)

_RECOVERY_HTML = Template(
    """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2f6f8f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Continue your intake</h1>
        <p>Use the button below to pick up your intake where you left off:</p>
        <p style="margin: 30px 0;">
            <a href="$magic_link" class="button">Resume intake</a>
        </p>
        <p>This link works once and expires in $expires_minutes minutes.</p>
        <p>If you didn't ask for this, you can safely ignore this email.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: $magic_link</p>
        </div>
    </div>
</body>
</html>
"""
)

_RECOVERY_TEXT = Template(
    """Continue your intake

Visit the link below to pick up your intake where you left off:

$magic_link

This link works once and expires in $expires_minutes minutes.

If you didn't ask for this, you can safely ignore this email.
"""
)

# template name -> (subject, html, text)
TEMPLATES: Dict[str, Tuple[str, Template, Template]] = {
    "session_recovery": ("Continue your intake", _RECOVERY_HTML, _RECOVERY_TEXT),
}


class EmailService:
    """Email service for transactional messages.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Named templates rendered from a variables map
    - Fallback to logging when not configured (dev mode); the log line names
      the template and the variable keys only, never links or addresses
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
        from_name: str = "Intake",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, variables: Mapping[str, Any]) -> Tuple[str, str, str]:
        try:
            subject, html, text = TEMPLATES[template]
        except KeyError:
            raise ValueError(f"unknown email template: {template}") from None
        values = {key: str(value) for key, value in variables.items()}
        return subject, html.substitute(values), text.substitute(values)

    def send(self, to: str, template: str, variables: Mapping[str, Any]) -> bool:
        """Render ``template`` and deliver it. Returns True when handed off."""
        subject, html_body, text_body = self.render(template, variables)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to),
                template=template,
                variables=sorted(variables),
            )
            return True
        return self._send_email(to, subject, html_body, text_body)

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message over SMTP; False on any delivery failure."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        redacted = self._redact_email(to_email)
        try:
            with self._connect(ssl.create_default_context()) as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redacted)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redacted,
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
                error_type=type(exc).__name__,
            )
            return False
        except OSError as exc:
            # ssl.SSLError and socket timeouts land here
            logger.error(
                "email_transport_error",
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False

        logger.info("email_sent", to=redacted, subject=subject)
        return True
