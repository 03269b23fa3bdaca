from __future__ import annotations

import html
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str | None = None
    from_address: str | None = None


class EmailProvider(ABC):
    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """Return True when the message was handed off."""


class DevEmailProvider(EmailProvider):
    """Logs messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> bool:
        self.sent.append(message)
        logger.info("mail.dev to=%s subject=%s", message.to, message.subject)
        if message.text_body:
            logger.debug("mail.dev body=%s", message.text_body)
        return True


class SMTPEmailProvider(EmailProvider):
    def __init__(self, host: str, port: int, user: str | None, password: str | None, from_address: str, use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address
        self.use_tls = use_tls

    def send(self, message: EmailMessage) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = message.from_address or self.from_address
        msg["To"] = message.to
        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=20) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("mail.smtp.failed to=%s", message.to)
            return False
        logger.info("mail.smtp.sent to=%s subject=%s", message.to, message.subject)
        return True


_email_provider: EmailProvider | None = None


def get_email_provider() -> EmailProvider:
    global _email_provider
    if _email_provider is None:
        if settings.smtp_configured:
            logger.info("mail.provider smtp host=%s port=%s", settings.smtp_host, settings.smtp_port)
            _email_provider = SMTPEmailProvider(
                host=settings.smtp_host or "",
                port=settings.smtp_port,
                user=settings.smtp_user,
                password=settings.smtp_password,
                from_address=settings.smtp_from_address,
            )
        else:
            logger.info("mail.provider dev (SMTP_HOST not set)")
            _email_provider = DevEmailProvider()
    return _email_provider


def set_email_provider(provider: EmailProvider | None) -> None:
    global _email_provider
    _email_provider = provider


def build_invite_link(token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/team/invite/accept?token={token}"


def send_invitation_email(
    *,
    email: str,
    team_name: str,
    inviter_name: str,
    role: str,
    token: str,
    reminder: bool = False,
) -> bool:
    link = build_invite_link(token)
    subject = f"You're invited to join {team_name}"
    if reminder:
        subject = f"Reminder: {subject}"

    safe_team = html.escape(team_name)
    safe_inviter = html.escape(inviter_name)
    html_body = (
        f"<p>{safe_inviter} invited you to join <strong>{safe_team}</strong> as {html.escape(role)}.</p>"
        f'<p><a href="{html.escape(link, quote=True)}">Accept the invitation</a></p>'
        f"<p>This link expires in {settings.invite_expiry_hours} hours.</p>"
    )
    text_body = (
        f"{inviter_name} invited you to join {team_name} as {role}.\n\n"
        f"Accept the invitation: {link}\n\n"
        f"This link expires in {settings.invite_expiry_hours} hours.\n"
    )
    message = EmailMessage(to=email, subject=subject, html_body=html_body, text_body=text_body)
    return get_email_provider().send(message)
