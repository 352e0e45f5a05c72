"""
Notifier: completion and expiry-warning messages.

Failures are reported as CallOutcomes; the caller decides what they mean
(completion notices are one-shot, warnings are retried on the next sweep).
"""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from .config import NotifierConfig
from .models import Commitment, Recipient
from .safety import CallOutcome, ErrorKind, bounded_call

logger = logging.getLogger("notifier")


class Notifier(ABC):
    @abstractmethod
    def send_completion(self, recipient: Recipient, commitment: Commitment, device_name: str) -> CallOutcome[None]: ...

    @abstractmethod
    def send_warning(
        self, recipient: Recipient, commitment: Commitment, device_name: str, hours_remaining: int
    ) -> CallOutcome[None]: ...


# ── Message content ───────────────────────────────────────────────────

def completion_message(recipient: Recipient, commitment: Commitment, device_name: str, frontend_url: str) -> tuple[str, str, str]:
    """(subject, text, html) for a finished commitment."""
    subject = f"Timer Commitment Complete - {device_name}"
    greeting = f"Congratulations, {recipient.first_name}!" if recipient.first_name else "Congratulations!"
    lines = [
        greeting,
        "",
        f"You've completed your {commitment.commitment_days}-day timer commitment for {device_name}.",
        "",
        f"Duration:  {commitment.commitment_days} days",
        f"Started:   {commitment.commitment_start:%Y-%m-%d}",
        f"Completed: {commitment.commitment_end:%Y-%m-%d}",
        f"Device:    {device_name}",
        "",
        "Your device restrictions have been removed. You can create a new commitment any time.",
        f"Dashboard: {frontend_url}/dashboard",
    ]
    text = "\n".join(lines)
    return subject, text, _as_html(lines)


def warning_message(
    recipient: Recipient, commitment: Commitment, device_name: str, hours_remaining: int, frontend_url: str
) -> tuple[str, str, str]:
    """(subject, text, html) for a commitment about to end."""
    subject = f"Timer Expiring Soon - {hours_remaining} hours left"
    greeting = f"Almost there, {recipient.first_name}!" if recipient.first_name else "Almost there!"
    lines = [
        greeting,
        "",
        f"Your {commitment.commitment_days}-day timer commitment for {device_name} is almost complete.",
        f"{hours_remaining} hours remaining.",
        f"Expires: {commitment.commitment_end:%Y-%m-%d at %H:%M} UTC",
        "",
        "When the timer expires your device restrictions will be removed automatically.",
        f"Timer status: {frontend_url}/dashboard",
    ]
    text = "\n".join(lines)
    return subject, text, _as_html(lines)


def _as_html(lines: list[str]) -> str:
    body = "".join(f"<p>{line}</p>" if line else "<br>" for line in lines)
    return f'<div style="font-family: Arial, sans-serif; max-width: 600px;">{body}</div>'


# ── SMTP implementation ───────────────────────────────────────────────

class SmtpNotifier(Notifier):
    def __init__(self, config: NotifierConfig):
        self.config = config

    def send_completion(self, recipient: Recipient, commitment: Commitment, device_name: str) -> CallOutcome[None]:
        subject, text, html = completion_message(recipient, commitment, device_name, self.config.frontend_url)
        return self._send(recipient.email, subject, text, html)

    def send_warning(
        self, recipient: Recipient, commitment: Commitment, device_name: str, hours_remaining: int
    ) -> CallOutcome[None]:
        subject, text, html = warning_message(
            recipient, commitment, device_name, hours_remaining, self.config.frontend_url
        )
        return self._send(recipient.email, subject, text, html)

    def _send(self, to: str, subject: str, text: str, html: str) -> CallOutcome[None]:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.config.from_name, self.config.from_email))
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout_seconds) as smtp:
                if self.config.use_tls:
                    smtp.starttls()
                if self.config.smtp_user:
                    smtp.login(self.config.smtp_user, self.config.smtp_password)
                smtp.send_message(msg)
        except TimeoutError as e:
            return CallOutcome.failure(ErrorKind.TIMEOUT, str(e))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"NOTIFY | send failed to={to} subject={subject!r} error={e}")
            return CallOutcome.failure(ErrorKind.TRANSIENT, str(e))

        logger.info(f"NOTIFY | sent to={to} subject={subject!r}")
        return CallOutcome.success(None)


# ── Delivery helpers ──────────────────────────────────────────────────

def _context(devices, users, commitment: Commitment) -> tuple[Recipient, str]:
    recipient = users.get_recipient(commitment.user_id)
    if recipient is None:
        raise LookupError(f"no recipient for user {commitment.user_id}")
    device = devices.get_device(commitment.device_id, commitment.user_id)
    return recipient, device.device_name if device else commitment.device_id


def deliver_completion(notifier: Notifier, devices, users, commitment: Commitment, *, timeout: float) -> CallOutcome[None]:
    """Look up who to tell and send the completion notice under a deadline."""

    def send():
        recipient, device_name = _context(devices, users, commitment)
        return notifier.send_completion(recipient, commitment, device_name)

    return bounded_call(send, timeout=timeout, label=f"notify_completion:{commitment.id}")


def deliver_warning(
    notifier: Notifier, devices, users, commitment: Commitment, hours_remaining: int, *, timeout: float
) -> CallOutcome[None]:
    def send():
        recipient, device_name = _context(devices, users, commitment)
        return notifier.send_warning(recipient, commitment, device_name, hours_remaining)

    return bounded_call(send, timeout=timeout, label=f"notify_warning:{commitment.id}")
