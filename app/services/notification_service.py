"""Notification service for sending account emails."""

import asyncio
from collections.abc import Awaitable, Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import aiosmtplib
import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"


class NotificationError(Exception):
    """An email could not be delivered."""


class NotificationSender:
    """
    Render and deliver account emails.

    Modes:
        - console: Log emails (development and tests)
        - smtp: Send through an SMTP relay
    """

    def __init__(
        self,
        mode: str,
        from_address: str,
        from_name: str,
        frontend_url: str,
        app_name: str,
        timeout: float,
        smtp_host: str | None = None,
        smtp_port: int = 465,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        template_dir: Path = DEFAULT_TEMPLATE_DIR,
    ):
        """Initialize the sender and its template environment."""
        self.mode = mode
        self.from_address = from_address
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.app_name = app_name
        self.timeout = timeout
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password

        if self.mode == "smtp" and not self.smtp_host:
            logger.warning("smtp_host_not_configured", fallback="console")
            self.mode = "console"

        self._jinja = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def _link(self, path: str, token: str) -> str:
        return f"{self.frontend_url}/{path}?{urlencode({'token': token})}"

    def render(self, template: str, context: dict[str, Any]) -> tuple[str, str]:
        """
        Render the HTML and plain-text bodies of a template.

        Returns:
            Tuple of (html, text)
        """
        context = {"app_name": self.app_name, **context}
        html = self._jinja.get_template(f"{template}.html").render(**context)
        text = self._jinja.get_template(f"{template}.txt").render(**context)
        return html, text

    async def send_email(
        self, to: str, subject: str, template: str, context: dict[str, Any]
    ) -> None:
        """
        Render and deliver one email.

        Raises:
            NotificationError: If delivery fails
        """
        html, text = self.render(template, context)

        if self.mode == "console":
            logger.info("email_logged", to=to, subject=subject, template=template, body=text)
            return

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_address}>"
        message["To"] = to
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html, "html"))

        # Implicit TLS on 465, STARTTLS elsewhere
        use_tls = self.smtp_port == 465

        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user,
                password=self.smtp_password,
                use_tls=use_tls,
                start_tls=not use_tls,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error("email_send_failed", to=to, template=template, error=str(e))
            raise NotificationError(f"Failed to send {template} email") from e

        logger.info("email_sent", to=to, template=template)

    async def send_verification_email(
        self, to: str, token: str, display_name: str | None = None
    ) -> None:
        """Send the email-verification link."""
        await self.send_email(
            to,
            "Confirm your email address",
            "verify_email",
            {
                "display_name": display_name or "there",
                "confirm_url": self._link("confirm-email", token),
            },
        )

    async def send_welcome_email(self, to: str, display_name: str | None = None) -> None:
        """Send the welcome email for a new account."""
        await self.send_email(
            to,
            f"Welcome to {self.app_name}",
            "welcome",
            {"display_name": display_name or "there"},
        )

    async def send_password_reset_email(
        self, to: str, token: str, display_name: str | None = None
    ) -> None:
        """Send the password reset link."""
        await self.send_email(
            to,
            "Reset your password",
            "reset_password",
            {
                "display_name": display_name or "there",
                "reset_url": self._link("reset-password", token),
            },
        )

    async def send_password_changed_email(self, to: str, display_name: str | None = None) -> None:
        """Tell the account owner their password changed."""
        await self.send_email(
            to,
            "Your password was changed",
            "password_changed",
            {"display_name": display_name or "there"},
        )

    async def notify(
        self, kind: str, send: Callable[..., Awaitable[None]], *args: Any, **kwargs: Any
    ) -> bool:
        """
        Deliver a notification without letting failures escape.

        Returns:
            True if the email was delivered
        """
        try:
            await send(*args, **kwargs)
            return True
        except Exception as e:
            logger.error("notification_failed", kind=kind, error=str(e))
            return False
