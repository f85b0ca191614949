"""Alert routing: maintenance suppression, cooldown dedup, concurrent channel fan-out."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from labwatch.config import AlertingConfig
from labwatch.core.channels import AlertChannel, build_channels
from labwatch.errors import ChannelDeliveryError
from labwatch.models import (
    ActiveAlertEntry,
    Alert,
    AlertKey,
    Anomaly,
    AnomalySeverity,
    ChannelResult,
    MaintenanceWindow,
    MetricType,
    Prediction,
    ProbeStatus,
    ServiceTarget,
    Severity,
)

logger = logging.getLogger("labwatch.alerts")

RECENT_ALERTS_LIMIT = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertDispatcher:
    """Decides whether an alert is sent, then delivers it to every channel.

    An alert for a service inside a maintenance window is dropped. An alert
    whose key ``(service_id, type, fingerprint)`` was sent within the cooldown
    is dropped. Everything else is recorded and fanned out concurrently; a
    failing or slow channel never blocks the others.
    """

    def __init__(
        self,
        config: AlertingConfig | None = None,
        channels: Iterable[AlertChannel] | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._config = config or AlertingConfig()
        self._clock = clock
        self._channels: dict[str, AlertChannel] = {}
        for channel in build_channels(self._config) if channels is None else channels:
            self.add_channel(channel)
        self._history: deque[Alert] = deque(maxlen=self._config.history_limit)
        self._active: dict[AlertKey, ActiveAlertEntry] = {}
        self._maintenance: list[MaintenanceWindow] = []
        self._suppressed = 0

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self._config.cooldown_minutes)

    # --- Sending ---

    async def send_alert(self, alert: Alert) -> Alert | None:
        """Send ``alert`` unless suppressed. Returns the recorded alert or None."""
        now = self._clock()

        if self.is_in_maintenance(alert.service_id, now):
            logger.info("Alert suppressed (maintenance): %s %s", alert.service_id, alert.type)
            self._suppressed += 1
            return None

        key = alert.key
        existing = self._active.get(key)
        if existing is not None and now - existing.last_sent_at < self.cooldown:
            logger.debug("Alert deduplicated: %s", key)
            self._suppressed += 1
            return None

        alert = replace(alert, id=alert.id or uuid.uuid4().hex, timestamp=now)
        # Claim the cooldown slot before awaiting delivery
        self._active[key] = ActiveAlertEntry(
            alert=alert,
            last_sent_at=now,
            attempts=(existing.attempts if existing else 0) + 1,
        )

        results = await asyncio.gather(*(self._deliver(c, alert) for c in self._channels.values()))
        alert = replace(alert, channel_results=tuple(results))
        self._history.append(alert)
        self._active[key] = replace(self._active[key], alert=alert)

        logger.info(
            "Alert: type=%s severity=%s service=%s channels=%d",
            alert.type, alert.severity.value, alert.service_id, len(results),
        )
        return alert

    async def _deliver(self, channel: AlertChannel, alert: Alert) -> ChannelResult:
        timeout = self._config.channel_timeout_seconds
        try:
            await asyncio.wait_for(channel.send(alert), timeout)
        except asyncio.TimeoutError:
            error = f"Timeout after {timeout:g}s"
        except ChannelDeliveryError as exc:
            error = exc.reason
        except Exception as exc:
            logger.exception("Unexpected failure in %s channel", channel.name)
            error = str(exc) or type(exc).__name__
        else:
            return ChannelResult(channel.name, True)

        logger.warning("Alert %s failed on %s: %s", alert.id, channel.name, error)
        return ChannelResult(channel.name, False, error)

    # --- Maintenance ---

    def add_maintenance_window(
        self, service_id: str, start: datetime, end: datetime, reason: str = ""
    ) -> MaintenanceWindow:
        if end <= start:
            raise ValueError("Maintenance window must end after it starts")
        window = MaintenanceWindow(service_id, start, end, reason)
        self._maintenance.append(window)
        logger.info("Maintenance window for %s: %s - %s", service_id, start.isoformat(), end.isoformat())
        return window

    def silence_alerts(
        self, service_id: str, duration_minutes: float = 60, reason: str = "Silenced"
    ) -> MaintenanceWindow:
        """Open a maintenance window starting now."""
        now = self._clock()
        return self.add_maintenance_window(
            service_id, now, now + timedelta(minutes=duration_minutes), reason
        )

    def is_in_maintenance(self, service_id: str, when: datetime | None = None) -> bool:
        when = when or self._clock()
        return any(w.covers(service_id, when) for w in self._maintenance)

    def maintenance_windows(self) -> list[MaintenanceWindow]:
        return list(self._maintenance)

    # --- Queries ---

    def get_recent_alerts(self, hours: float = 24, limit: int = RECENT_ALERTS_LIMIT) -> list[Alert]:
        """Alerts from the last ``hours``, newest first."""
        cutoff = self._clock() - timedelta(hours=hours)
        recent = [a for a in reversed(self._history) if a.timestamp >= cutoff]
        return recent[:limit]

    def get_active_alerts(self) -> list[ActiveAlertEntry]:
        return sorted(self._active.values(), key=lambda e: e.last_sent_at, reverse=True)

    def get_alert_stats(self, hours: float = 24) -> dict[str, Any]:
        cutoff = self._clock() - timedelta(hours=hours)
        alerts = [a for a in self._history if a.timestamp >= cutoff]
        return {
            "total": len(alerts),
            "by_type": dict(Counter(a.type for a in alerts)),
            "by_severity": dict(Counter(a.severity.value for a in alerts)),
            "by_service": dict(Counter(a.service_id for a in alerts)),
            "suppressed": self._suppressed,
        }

    def get_active_channels(self) -> list[str]:
        return list(self._channels)

    # --- Channel management ---

    def add_channel(self, channel: AlertChannel) -> None:
        self._channels[channel.name] = channel

    async def remove_channel(self, name: str) -> bool:
        channel = self._channels.pop(name, None)
        if channel is None:
            return False
        await channel.close()
        return True

    async def configure_channels(self, config: AlertingConfig) -> list[str]:
        """Replace every channel with those enabled in ``config``."""
        for name in list(self._channels):
            await self.remove_channel(name)
        for channel in build_channels(config):
            self.add_channel(channel)
        self._config = replace(
            self._config,
            email=config.email,
            webhook=config.webhook,
            slack=config.slack,
            discord=config.discord,
            pushover=config.pushover,
        )
        return self.get_active_channels()

    # --- Housekeeping ---

    def cleanup(self) -> dict[str, int]:
        """Drop old history, expired maintenance windows and stale active entries."""
        now = self._clock()
        history_cutoff = now - timedelta(days=self._config.history_days)
        active_cutoff = now - timedelta(minutes=self._config.active_expiry_minutes)

        before = len(self._history)
        kept = [a for a in self._history if a.timestamp >= history_cutoff]
        self._history.clear()
        self._history.extend(kept)

        windows_before = len(self._maintenance)
        self._maintenance = [w for w in self._maintenance if w.end >= now]

        stale = [k for k, e in self._active.items() if e.last_sent_at < active_cutoff]
        for key in stale:
            del self._active[key]

        removed = {
            "history": before - len(kept),
            "maintenance_windows": windows_before - len(self._maintenance),
            "active": len(stale),
        }
        if any(removed.values()):
            logger.debug("Alert cleanup: %s", removed)
        return removed

    async def close(self) -> None:
        for channel in self._channels.values():
            await channel.close()


# --- Alert factories ---


def _target_details(target: ServiceTarget) -> dict[str, Any]:
    return {"url": target.url, "protocol": getattr(target.protocol, "value", target.protocol)}


def service_down_alert(target: ServiceTarget, error: str | None = None) -> Alert:
    return Alert(
        type="service_down",
        severity=Severity.CRITICAL if target.critical else Severity.ERROR,
        service_id=target.id,
        title=f"Service Down: {target.name}",
        message=f'Service "{target.name}" is not responding. {error or ""}'.rstrip(),
        details={**_target_details(target), "error": error},
    )


def service_recovery_alert(target: ServiceTarget) -> Alert:
    return Alert(
        type="service_recovery",
        severity=Severity.INFO,
        service_id=target.id,
        title=f"Service Recovered: {target.name}",
        message=f'Service "{target.name}" is back online.',
        details=_target_details(target),
    )


def status_change_alert(
    target: ServiceTarget,
    previous: ProbeStatus,
    current: ProbeStatus,
    error: str | None = None,
) -> Alert:
    """One alert per transition, keyed on the ``previous->current`` pair."""
    if current in (ProbeStatus.OFFLINE, ProbeStatus.ERROR):
        base = service_down_alert(target, error)
    elif current is ProbeStatus.ONLINE and previous in (ProbeStatus.OFFLINE, ProbeStatus.ERROR):
        base = service_recovery_alert(target)
    else:
        base = Alert(
            type="status_change",
            severity=Severity.INFO,
            service_id=target.id,
            title=f"Status Change: {target.name}",
            message=f'Service "{target.name}" is {current.value}.',
        )
    return replace(
        base,
        type="status_change",
        fingerprint=f"{previous.value}->{current.value}",
        details={**base.details, "previous": previous.value, "current": current.value},
    )


def high_response_time_alert(
    target: ServiceTarget, response_time_ms: float, threshold_ms: float
) -> Alert:
    return Alert(
        type="high_response_time",
        severity=Severity.WARNING,
        service_id=target.id,
        title=f"High Response Time: {target.name}",
        message=(
            f'Service "{target.name}" response time ({response_time_ms:g}ms) '
            f"exceeds threshold ({threshold_ms:g}ms)."
        ),
        details={"response_time_ms": response_time_ms, "threshold_ms": threshold_ms},
    )


def anomaly_alert(anomaly: Anomaly) -> Alert:
    critical = anomaly.severity is AnomalySeverity.CRITICAL
    return Alert(
        type="anomaly",
        severity=Severity.CRITICAL if critical else Severity.WARNING,
        service_id=anomaly.service_id,
        fingerprint=anomaly.type,
        title=f"Anomaly: {anomaly.type}",
        message=anomaly.description,
        details={
            "value": anomaly.value,
            "expected": anomaly.expected,
            "threshold": anomaly.threshold,
            "deviation": anomaly.deviation,
        },
    )


def forecast_alert(service_id: str, metric: MetricType, prediction: Prediction) -> Alert:
    return Alert(
        type="forecast",
        severity=Severity.WARNING,
        service_id=service_id,
        fingerprint=metric.value,
        title=f"Upcoming {metric.value} threshold violation",
        message=(
            f"{metric.value} is predicted to reach {round(prediction.predicted)}% "
            f"in the next {prediction.horizon} ({prediction.confidence}% confidence)."
        ),
        details={
            "predicted": round(prediction.predicted, 2),
            "confidence": prediction.confidence,
            "trend": prediction.trend.value,
        },
    )
