"""Frozen dataclass models for probing, metrics, analytics and alerting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, NamedTuple
from urllib.parse import urlsplit

from labwatch.models.enums import (
    AnomalySeverity,
    ForecastTrend,
    HealthLevel,
    MetricType,
    ProbeStatus,
    Protocol,
    Severity,
)

DEFAULT_PORTS: dict[str, int] = {
    "http": 80,
    "https": 443,
    "ssh": 22,
    "mysql": 3306,
    "redis": 6379,
    "docker": 2375,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ServiceTarget:
    """A service under observation. Replaced wholesale on config reload."""

    id: str
    name: str
    url: str
    protocol: Protocol = Protocol.HTTP
    timeout_ms: int = 5000
    critical: bool = False
    expected_status_codes: tuple[int, ...] = (200, 301, 302)
    expected_text: str | None = None
    host: str | None = None
    port: int | None = None
    container: str | None = None
    verify_ssl: bool = True

    def resolve_endpoint(self) -> tuple[str, int | None]:
        """Return (host, port) from explicit fields, else from the URL."""
        scheme = getattr(self.protocol, "value", self.protocol)
        url = self.url if "://" in self.url else f"{scheme}://{self.url}"
        parts = urlsplit(url)
        host = self.host or parts.hostname or self.url
        port = self.port or parts.port
        if port is None:
            port = DEFAULT_PORTS.get(scheme) or DEFAULT_PORTS.get(parts.scheme)
        return host, port


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a single probe."""

    status: ProbeStatus
    response_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=_now)
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StatusRecord:
    """Latest known state of one service."""

    status: ProbeStatus = ProbeStatus.PENDING
    response_time_ms: float = 0.0
    timestamp: datetime | None = None
    error: str | None = None
    last_status_change: datetime | None = None
    consecutive_failures: int = 0


@dataclass(frozen=True, slots=True)
class StatusChange:
    service_id: str
    previous: ProbeStatus
    current: ProbeStatus
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class MetricPoint:
    timestamp: datetime
    value: float


class SeriesKey(NamedTuple):
    service_id: str
    metric: MetricType


@dataclass(frozen=True, slots=True)
class HistoryBucket:
    """Aggregate of the checks that fell into one history window."""

    timestamp: datetime
    status: ProbeStatus
    uptime: float
    response_time_ms: float | None
    checks: int


@dataclass(frozen=True, slots=True)
class ServiceMetrics:
    uptime: float
    average_response_time: float
    history: tuple[HistoryBucket, ...] = ()


@dataclass(frozen=True, slots=True)
class SystemHealth:
    current_health: float = 100.0
    status: HealthLevel = HealthLevel.HEALTHY
    total_services: int = 0
    online_services: int = 0
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class MonitoringStats:
    total_servers: int
    online_servers: int
    offline_servers: int
    error_servers: int
    pending_servers: int
    last_check: datetime | None
    uptime: float  # seconds since the scheduler was created
    system_health: SystemHealth


@dataclass(frozen=True, slots=True)
class Baseline:
    """Statistical reference for one (service, metric) series."""

    mean: float
    std_dev: float
    median: float
    mad: float
    sample_count: int


@dataclass(frozen=True, slots=True)
class Anomaly:
    """A detected deviation from a baseline or from expected behaviour."""

    type: str
    severity: AnomalySeverity
    value: float
    expected: float
    threshold: float
    description: str
    service_id: str = ""
    metric: MetricType | None = None
    deviation: float | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class Prediction:
    predicted: float
    confidence: int  # 0-100
    trend: ForecastTrend
    horizon: str


@dataclass(frozen=True, slots=True)
class ThresholdViolation:
    metric: MetricType
    severity: AnomalySeverity
    value: float
    threshold: float
    service_id: str = ""
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class Recommendation:
    type: str  # performance, resource, reliability, proactive
    priority: str  # medium, high, critical
    title: str
    description: str
    action: str


@dataclass(frozen=True, slots=True)
class AnalyticsReport:
    service_id: str
    timeframe: str
    generated_at: datetime
    summary: dict[str, Any]
    trends: dict[str, dict[str, float]]
    trend_analysis: dict[str, str]
    anomalies: tuple[Anomaly, ...]
    predictions: dict[str, Prediction]
    recommendations: tuple[Recommendation, ...]
    threshold_violations: tuple[ThresholdViolation, ...] = ()


class AlertKey(NamedTuple):
    """Deduplication key: same service, same alert type, same fingerprint."""

    service_id: str
    type: str
    fingerprint: str = ""


@dataclass(frozen=True, slots=True)
class ChannelResult:
    channel: str
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Alert:
    """An alert raised against a single service."""

    type: str
    severity: Severity
    service_id: str
    message: str
    title: str = ""
    fingerprint: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    timestamp: datetime = field(default_factory=_now)
    channel_results: tuple[ChannelResult, ...] = ()

    @property
    def key(self) -> AlertKey:
        return AlertKey(self.service_id, self.type, self.fingerprint)


@dataclass(frozen=True, slots=True)
class ActiveAlertEntry:
    alert: Alert
    last_sent_at: datetime
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class MaintenanceWindow:
    """Time range during which alerts for a service are suppressed."""

    service_id: str
    start: datetime
    end: datetime
    reason: str = ""

    def covers(self, service_id: str, when: datetime) -> bool:
        return self.service_id == service_id and self.start <= when <= self.end
