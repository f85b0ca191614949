"""Alert delivery channels: email, generic webhook, Slack, Discord and Pushover."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any

import aiohttp

from labwatch.config import (
    AlertingConfig,
    ChatWebhookConfig,
    EmailConfig,
    PushoverConfig,
    WebhookConfig,
)
from labwatch.errors import ChannelDeliveryError
from labwatch.models import Alert

logger = logging.getLogger("labwatch.channels")

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"
SOURCE = "labwatch"

# Detail entries appended to a Discord embed
_DISCORD_MAX_FIELDS = 10


def _hex_color(severity_color: str) -> int:
    return int(severity_color.lstrip("#"), 16)


class AlertChannel(ABC):
    """One destination for alerts. ``send`` raises ChannelDeliveryError on failure."""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        ...

    async def close(self) -> None:
        return None


class HttpChannel(AlertChannel):
    """Base for channels that POST to an HTTP endpoint through a shared session."""

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, url: str, **kwargs: Any) -> None:
        session = await self._get_session()
        try:
            async with session.post(url, **kwargs) as resp:
                if resp.status >= 400:
                    raise ChannelDeliveryError(self.name, f"HTTP {resp.status}")
        except aiohttp.ClientError as exc:
            raise ChannelDeliveryError(self.name, str(exc) or type(exc).__name__) from exc


class WebhookChannel(HttpChannel):
    """POSTs the alert as JSON to an arbitrary URL."""

    name = "webhook"

    def __init__(self, config: WebhookConfig, session: aiohttp.ClientSession | None = None) -> None:
        super().__init__(session)
        self.config = config

    async def send(self, alert: Alert) -> None:
        await self._post(self.config.url, json=alert_payload(alert), headers=dict(self.config.headers))


class SlackChannel(HttpChannel):
    name = "slack"

    def __init__(self, config: ChatWebhookConfig, session: aiohttp.ClientSession | None = None) -> None:
        super().__init__(session)
        self.config = config

    async def send(self, alert: Alert) -> None:
        await self._post(self.config.webhook_url, json=slack_message(alert))


class DiscordChannel(HttpChannel):
    name = "discord"

    def __init__(self, config: ChatWebhookConfig, session: aiohttp.ClientSession | None = None) -> None:
        super().__init__(session)
        self.config = config

    async def send(self, alert: Alert) -> None:
        await self._post(self.config.webhook_url, json={"embeds": [discord_embed(alert)]})


class PushoverChannel(HttpChannel):
    """Pushover push notifications; priority follows alert severity."""

    name = "pushover"

    def __init__(
        self,
        config: PushoverConfig,
        session: aiohttp.ClientSession | None = None,
        url: str = PUSHOVER_URL,
    ) -> None:
        super().__init__(session)
        self.config = config
        self.url = url

    async def send(self, alert: Alert) -> None:
        priority = alert.severity.pushover_priority
        form = {
            "token": self.config.app_token,
            "user": self.config.user_key,
            "title": alert.title or alert.type,
            "message": alert.message,
            "priority": str(priority),
            "sound": self.config.sound,
        }
        if priority == 2:
            # Emergency priority requires a retry schedule
            form.update(retry="60", expire="3600")
        await self._post(self.url, data=form)


class EmailChannel(AlertChannel):
    """SMTP delivery. smtplib is blocking, so it runs in a worker thread."""

    name = "email"

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    async def send(self, alert: Alert) -> None:
        if not self.config.recipients:
            raise ChannelDeliveryError(self.name, "No recipients configured")
        message = email_message(alert, self.config)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(self.name, str(exc) or type(exc).__name__) from exc

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=10) as smtp:
            if self.config.use_tls:
                smtp.starttls()
            if self.config.username:
                smtp.login(self.config.username, self.config.password or "")
            smtp.send_message(message)


# --- Formatting ---


def alert_payload(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "type": alert.type,
        "severity": alert.severity.value,
        "service_id": alert.service_id,
        "title": alert.title,
        "message": alert.message,
        "details": alert.details,
        "timestamp": alert.timestamp.isoformat(),
        "source": SOURCE,
    }


def slack_message(alert: Alert) -> dict[str, Any]:
    return {
        "text": f"{alert.severity.emoji} *{alert.title or alert.type}*",
        "attachments": [{
            "color": alert.severity.color,
            "fields": [
                {"title": "Service", "value": alert.service_id, "short": True},
                {"title": "Severity", "value": alert.severity.value, "short": True},
                {"title": "Message", "value": alert.message, "short": False},
            ],
            "ts": int(alert.timestamp.timestamp()),
        }],
    }


def discord_embed(alert: Alert) -> dict[str, Any]:
    embed: dict[str, Any] = {
        "title": f"{alert.severity.emoji} {alert.title or alert.type}",
        "description": alert.message,
        "color": _hex_color(alert.severity.color),
        "timestamp": alert.timestamp.isoformat(),
        "footer": {"text": "labwatch"},
        "fields": [
            {"name": "Service", "value": alert.service_id, "inline": True},
            {"name": "Severity", "value": alert.severity.value, "inline": True},
        ],
    }
    for key, value in list(alert.details.items())[:_DISCORD_MAX_FIELDS]:
        embed["fields"].append({"name": str(key), "value": str(value), "inline": True})
    return embed


def email_message(alert: Alert, config: EmailConfig) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = f"[{alert.severity.value}] {alert.title or alert.type}"
    message["From"] = config.sender
    message["To"] = ", ".join(config.recipients)

    lines = [
        f"{alert.severity.emoji} {alert.title or alert.type}",
        "",
        f"Service: {alert.service_id}",
        f"Message: {alert.message}",
        f"Time: {alert.timestamp.isoformat()}",
    ]
    if alert.details:
        lines.append("")
        lines.extend(f"{k}: {v}" for k, v in alert.details.items())
    lines += ["", "Sent by labwatch"]
    message.set_content("\n".join(lines))
    return message


def build_channels(
    config: AlertingConfig, session: aiohttp.ClientSession | None = None
) -> list[AlertChannel]:
    """Instantiate every enabled and sufficiently configured channel."""
    channels: list[AlertChannel] = []
    if config.email.enabled and config.email.recipients:
        channels.append(EmailChannel(config.email))
    if config.webhook.enabled and config.webhook.url:
        channels.append(WebhookChannel(config.webhook, session))
    if config.slack.enabled and config.slack.webhook_url:
        channels.append(SlackChannel(config.slack, session))
    if config.discord.enabled and config.discord.webhook_url:
        channels.append(DiscordChannel(config.discord, session))
    if config.pushover.enabled and config.pushover.app_token and config.pushover.user_key:
        channels.append(PushoverChannel(config.pushover, session))
    logger.debug("Configured alert channels: %s", [c.name for c in channels])
    return channels
