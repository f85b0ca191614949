"""Shared fixtures: a controllable clock and an in-memory alert channel."""

from datetime import datetime, timedelta, timezone

import pytest

from labwatch.core.channels import AlertChannel
from labwatch.errors import ChannelDeliveryError


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannel(AlertChannel):
    def __init__(self, name="recorder", fail_with=None):
        self.name = name
        self.fail_with = fail_with
        self.sent = []
        self.closed = False

    async def send(self, alert):
        if self.fail_with is not None:
            raise ChannelDeliveryError(self.name, self.fail_with)
        self.sent.append(alert)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingChannel()
