"""Enumerations for labwatch runtime models."""

from enum import Enum


class Protocol(str, Enum):
    """Probe protocol for a monitored service."""

    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"
    SSH = "ssh"
    MYSQL = "mysql"
    REDIS = "redis"
    DOCKER = "docker"
    PING = "ping"
    CUSTOM = "custom"


class ProbeStatus(str, Enum):
    """Observed state of a service."""

    PENDING = "pending"
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class MetricType(str, Enum):
    """Kinds of time series kept per service."""

    STATUS = "status"
    RESPONSE_TIME = "response_time"
    CPU_USAGE = "cpu_usage"
    MEMORY_USAGE = "memory_usage"
    DISK_USAGE = "disk_usage"
    UPTIME = "uptime"


_SEVERITY_STYLE: dict[str, tuple[int, str, str, int]] = {
    # level, color, emoji, pushover priority
    "INFO": (0, "#3b82f6", "ℹ️", -1),
    "WARNING": (1, "#f59e0b", "⚠️", 0),
    "ERROR": (2, "#ef4444", "❌", 1),
    "CRITICAL": (3, "#dc2626", "🚨", 2),
}


class Severity(str, Enum):
    """Alert severity with display and push-priority attributes."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def level(self) -> int:
        return _SEVERITY_STYLE[self.value][0]

    @property
    def color(self) -> str:
        return _SEVERITY_STYLE[self.value][1]

    @property
    def emoji(self) -> str:
        return _SEVERITY_STYLE[self.value][2]

    @property
    def pushover_priority(self) -> int:
        return _SEVERITY_STYLE[self.value][3]


class AnomalySeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ForecastTrend(str, Enum):
    """Direction of the smoothed trend component of a forecast."""

    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class TrendDirection(str, Enum):
    """Health-oriented trend classification of a metric series."""

    IMPROVING = "improving"
    DEGRADING = "degrading"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class HealthLevel(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @classmethod
    def from_score(cls, score: float) -> "HealthLevel":
        if score >= 90:
            return cls.HEALTHY
        if score >= 70:
            return cls.DEGRADED
        return cls.UNHEALTHY
