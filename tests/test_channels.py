"""Tests for alert channels against a local HTTP receiver."""

from dataclasses import replace
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from labwatch.config import (
    AlertingConfig,
    ChatWebhookConfig,
    EmailConfig,
    PushoverConfig,
    WebhookConfig,
)
from labwatch.core.channels import (
    DiscordChannel,
    EmailChannel,
    PushoverChannel,
    SlackChannel,
    WebhookChannel,
    build_channels,
    discord_embed,
    email_message,
)
from labwatch.errors import ChannelDeliveryError
from labwatch.models import Alert, Severity


@pytest.fixture
def alert():
    return Alert(
        id="a1",
        type="status_change",
        severity=Severity.ERROR,
        service_id="web",
        title="Service Down: Web",
        message='Service "Web" is not responding.',
        details={"url": "http://web.lan"},
        timestamp=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest_asyncio.fixture
async def receiver():
    received = []

    async def capture(request):
        if request.content_type == "application/json":
            body = await request.json()
        else:
            body = dict(await request.post())
        received.append({"headers": dict(request.headers), "body": body})
        return web.Response(status=204)

    async def reject(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_post("/hook", capture)
    app.router.add_post("/reject", reject)

    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    server.received = received
    yield server
    await server.close()


class TestWebhookChannel:
    @pytest.mark.asyncio
    async def test_posts_json_with_headers(self, receiver, alert):
        config = WebhookConfig(enabled=True, url=str(receiver.make_url("/hook")), headers={"X-Token": "s3cret"})
        channel = WebhookChannel(config)
        try:
            await channel.send(alert)
        finally:
            await channel.close()

        (request,) = receiver.received
        assert request["headers"]["X-Token"] == "s3cret"
        assert request["body"]["service_id"] == "web"
        assert request["body"]["severity"] == "ERROR"
        assert request["body"]["source"] == "labwatch"

    @pytest.mark.asyncio
    async def test_http_error_raises(self, receiver, alert):
        channel = WebhookChannel(WebhookConfig(enabled=True, url=str(receiver.make_url("/reject"))))
        try:
            with pytest.raises(ChannelDeliveryError, match="HTTP 500"):
                await channel.send(alert)
        finally:
            await channel.close()


class TestChatChannels:
    @pytest.mark.asyncio
    async def test_slack_attachment(self, receiver, alert):
        channel = SlackChannel(ChatWebhookConfig(enabled=True, webhook_url=str(receiver.make_url("/hook"))))
        try:
            await channel.send(alert)
        finally:
            await channel.close()

        body = receiver.received[0]["body"]
        assert body["attachments"][0]["color"] == Severity.ERROR.color
        assert "Service Down: Web" in body["text"]

    @pytest.mark.asyncio
    async def test_discord_embed(self, receiver, alert):
        channel = DiscordChannel(ChatWebhookConfig(enabled=True, webhook_url=str(receiver.make_url("/hook"))))
        try:
            await channel.send(alert)
        finally:
            await channel.close()

        embed = receiver.received[0]["body"]["embeds"][0]
        assert embed["color"] == 0xEF4444
        assert {"name": "url", "value": "http://web.lan", "inline": True} in embed["fields"]


class TestPushoverChannel:
    @pytest.mark.asyncio
    async def test_priority_follows_severity(self, receiver, alert):
        config = PushoverConfig(enabled=True, app_token="tok", user_key="usr")
        channel = PushoverChannel(config, url=str(receiver.make_url("/hook")))
        try:
            await channel.send(alert)
        finally:
            await channel.close()

        form = receiver.received[0]["body"]
        assert form["priority"] == "1"
        assert form["token"] == "tok"
        assert "retry" not in form

    @pytest.mark.asyncio
    async def test_emergency_priority_has_retry(self, receiver, alert):
        config = PushoverConfig(enabled=True, app_token="tok", user_key="usr")
        channel = PushoverChannel(config, url=str(receiver.make_url("/hook")))
        try:
            await channel.send(replace(alert, severity=Severity.CRITICAL))
        finally:
            await channel.close()

        form = receiver.received[0]["body"]
        assert form["priority"] == "2"
        assert form["retry"] == "60"
        assert form["expire"] == "3600"


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_no_recipients(self, alert):
        with pytest.raises(ChannelDeliveryError, match="No recipients"):
            await EmailChannel(EmailConfig(enabled=True)).send(alert)

    def test_message(self, alert):
        config = EmailConfig(sender="lab@home", recipients=("me@home", "you@home"))
        message = email_message(alert, config)
        assert message["Subject"] == "[ERROR] Service Down: Web"
        assert message["To"] == "me@home, you@home"
        assert "url: http://web.lan" in message.get_content()


class TestFormatting:
    def test_discord_field_cap(self, alert):
        many = replace(alert, details={f"k{i}": i for i in range(20)})
        assert len(discord_embed(many)["fields"]) == 12


class TestBuildChannels:
    def test_only_enabled_and_complete(self):
        config = AlertingConfig(
            email=EmailConfig(enabled=True),
            webhook=WebhookConfig(enabled=True, url="http://hooks.test"),
            slack=ChatWebhookConfig(enabled=False, webhook_url="http://hooks.test/s"),
            pushover=PushoverConfig(enabled=True, app_token="tok"),
        )
        assert [c.name for c in build_channels(config)] == ["webhook"]

    def test_none_by_default(self):
        assert build_channels(AlertingConfig()) == []
