"""labwatch data models."""

from labwatch.models.enums import (
    AnomalySeverity,
    ForecastTrend,
    HealthLevel,
    MetricType,
    ProbeStatus,
    Protocol,
    Severity,
    TrendDirection,
)
from labwatch.models.runtime import (
    ActiveAlertEntry,
    Alert,
    AlertKey,
    AnalyticsReport,
    Anomaly,
    Baseline,
    ChannelResult,
    HistoryBucket,
    MaintenanceWindow,
    MetricPoint,
    MonitoringStats,
    Prediction,
    ProbeResult,
    Recommendation,
    SeriesKey,
    ServiceMetrics,
    ServiceTarget,
    StatusChange,
    StatusRecord,
    SystemHealth,
    ThresholdViolation,
)

__all__ = [
    "Protocol",
    "ProbeStatus",
    "MetricType",
    "Severity",
    "AnomalySeverity",
    "ForecastTrend",
    "TrendDirection",
    "HealthLevel",
    "ServiceTarget",
    "ProbeResult",
    "StatusRecord",
    "StatusChange",
    "MetricPoint",
    "SeriesKey",
    "HistoryBucket",
    "ServiceMetrics",
    "SystemHealth",
    "MonitoringStats",
    "Baseline",
    "Anomaly",
    "Prediction",
    "ThresholdViolation",
    "Recommendation",
    "AnalyticsReport",
    "Alert",
    "AlertKey",
    "ChannelResult",
    "ActiveAlertEntry",
    "MaintenanceWindow",
]
