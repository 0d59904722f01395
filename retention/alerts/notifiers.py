"""
retention.alerts.notifiers - Outbound alert channels.

Design: every channel implements the ``Notifier`` ABC with a single async
``send(alert)`` method that returns True/False and never raises, so one
failing channel cannot block another.

Current implementations:
    SlackNotifier - Slack incoming-webhook attachment
    EmailNotifier - HTML email via SMTP
    CompositeNotifier - Fan-out to multiple channels
    NullNotifier - Drops everything (nothing configured)

``SmtpMailer`` is the raw SMTP sender; unlike the notifiers it raises, so
callers that need delivery (survey invitations) can retry.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import List, Optional, Sequence

import httpx

from retention.config import Settings

logger = logging.getLogger(__name__)

PLACEHOLDER_SLACK_WEBHOOK = "https://hooks.slack.com/services/YOUR/WEBHOOK/URL"

DEFAULT_ACTIONS = (
    "Schedule immediate 1-on-1 meeting",
    "Review compensation and benefits",
    "Discuss career development opportunities",
    "Address any workplace concerns",
)


@dataclass(frozen=True)
class ChurnAlert:
    employee_name: str
    message: str
    risk_score: float = 0.0
    notification_type: str = "high_churn_risk"
    actions: Sequence[str] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class Notifier(ABC):
    """Abstract notification channel."""

    @abstractmethod
    async def send(self, alert: ChurnAlert) -> bool:
        """Send ``alert``.  Returns True on success, False on failure."""


# ---------------------------------------------------------------------------
# Slack webhook
# ---------------------------------------------------------------------------

class SlackNotifier(Notifier):
    """Posts an attachment to a Slack channel via incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = webhook_url
        self._timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._url) and self._url != PLACEHOLDER_SLACK_WEBHOOK

    def build_payload(self, alert: ChurnAlert) -> dict:
        colour = "danger" if alert.risk_score > 0.8 else "warning"
        return {
            "attachments": [
                {
                    "color": colour,
                    "title": "High Churn Risk Alert",
                    "text": alert.message,
                    "fields": [
                        {"title": "Employee", "value": alert.employee_name, "short": True},
                        {"title": "Risk Score", "value": f"{alert.risk_score * 100:.0f}%", "short": True},
                    ],
                    "footer": "Retention Analytics",
                    "ts": int(time.time()),
                }
            ]
        }

    async def send(self, alert: ChurnAlert) -> bool:
        if not self.configured:
            logger.debug("SlackNotifier: webhook not configured, skipping")
            return False
        payload = self.build_payload(alert)
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=payload)
            resp.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error("SlackNotifier: %s", exc)
            return False


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int = 587
    user: str = ""
    password: str = ""
    timeout: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)


class SmtpMailer:
    """Blocking SMTP sender run off the event loop.  Raises on failure."""

    def __init__(self, config: SmtpConfig) -> None:
        self.config = config

    def build_message(self, to_addr: str, subject: str, body: str, html_body: bool = False) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.config.user
        msg["To"] = to_addr
        msg["Subject"] = subject
        if html_body:
            msg.set_content("This message requires an HTML-capable mail client.")
            msg.add_alternative(body, subtype="html")
        else:
            msg.set_content(body)
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        cfg = self.config
        with smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            smtp.login(cfg.user, cfg.password)
            smtp.send_message(msg)

    async def send(self, to_addr: str, subject: str, body: str, html_body: bool = False) -> None:
        msg = self.build_message(to_addr, subject, body, html_body=html_body)
        await asyncio.to_thread(self._send_sync, msg)


def render_alert_html(alert: ChurnAlert) -> str:
    actions = list(alert.actions) or list(DEFAULT_ACTIONS)
    items = "\n".join(f"                <li>{html.escape(a)}</li>" for a in actions)
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #ff6b6b; color: white; padding: 20px; border-radius: 5px;">
            <h2>High Churn Risk Alert</h2>
        </div>
        <div style="background: #f9f9f9; padding: 20px; margin-top: 20px; border-radius: 5px;">
            <p><strong>Employee:</strong> {html.escape(alert.employee_name)}</p>
            <p><strong>Risk Score:</strong> {alert.risk_score * 100:.0f}%</p>
            <p><strong>Alert:</strong> {html.escape(alert.message)}</p>
            <hr>
            <p><strong>Recommended Actions:</strong></p>
            <ul>
{items}
            </ul>
        </div>
        <p style="margin-top: 20px; font-size: 12px; color: #666;">
            This is an automated alert from Retention Analytics
        </p>
    </div>
</body>
</html>
"""


class EmailNotifier(Notifier):
    """Emails the alert to a fixed recipient (the configured alert inbox)."""

    def __init__(self, mailer: SmtpMailer, to_addr: str) -> None:
        self._mailer = mailer
        self._to = to_addr

    async def send(self, alert: ChurnAlert) -> bool:
        if not self._mailer.config.configured or not self._to:
            logger.debug("EmailNotifier: SMTP or recipient not configured, skipping")
            return False
        try:
            await self._mailer.send(
                self._to,
                f"Churn Risk Alert: {alert.employee_name}",
                render_alert_html(alert),
                html_body=True,
            )
            return True
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("EmailNotifier: %s", exc)
            return False


# ---------------------------------------------------------------------------
# Composite fan-out
# ---------------------------------------------------------------------------

class CompositeNotifier(Notifier):
    """Dispatch an alert to all registered channels concurrently."""

    def __init__(self, notifiers: List[Notifier]) -> None:
        self._notifiers = notifiers

    async def send(self, alert: ChurnAlert) -> bool:
        results = await asyncio.gather(
            *[n.send(alert) for n in self._notifiers],
            return_exceptions=True,
        )
        for notifier, result in zip(self._notifiers, results):
            if isinstance(result, BaseException):
                logger.error("%s raised: %s", type(notifier).__name__, result)
        return any(r is True for r in results)


class NullNotifier(Notifier):
    """Swallows alerts silently.  Used when no channel is configured."""

    async def send(self, alert: ChurnAlert) -> bool:
        logger.debug("NullNotifier: dropped %s alert for %s", alert.notification_type, alert.employee_name)
        return False


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_alert_notifier(settings: Settings) -> Notifier:
    """Slack + email fan-out from process settings; NullNotifier if neither is set."""
    channels: List[Notifier] = []
    slack = SlackNotifier(settings.slack_webhook_url, timeout=settings.notify_timeout_seconds)
    if slack.configured:
        channels.append(slack)

    smtp = SmtpConfig(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        timeout=settings.notify_timeout_seconds,
    )
    if smtp.configured and settings.alert_email:
        channels.append(EmailNotifier(SmtpMailer(smtp), settings.alert_email))

    if not channels:
        return NullNotifier()
    return CompositeNotifier(channels)
