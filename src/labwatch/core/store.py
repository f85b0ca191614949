"""In-memory bounded time-series store for probe outcomes and host metrics."""

from __future__ import annotations

import bisect
import csv
import io
import logging
import re
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta, timezone
from statistics import fmean

from labwatch.config import RetentionConfig
from labwatch.models import (
    HealthLevel,
    HistoryBucket,
    MetricPoint,
    MetricType,
    ProbeStatus,
    SeriesKey,
    ServiceMetrics,
    StatusChange,
    StatusRecord,
    SystemHealth,
)

logger = logging.getLogger("labwatch.store")

CSV_HEADER = ("Timestamp", "Service", "Status", "Response Time", "Uptime %")

_TIMEFRAME_RE = re.compile(r"^\s*(\d+)\s*([mhd])\s*$", re.IGNORECASE)
_TIMEFRAME_UNITS = {"m": "minutes", "h": "hours", "d": "days"}

# details keys that map onto resource series
_DETAIL_METRICS = (MetricType.CPU_USAGE, MetricType.MEMORY_USAGE, MetricType.DISK_USAGE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(point: MetricPoint) -> datetime:
    return point.timestamp


def parse_timeframe(timeframe: str) -> timedelta:
    """Parse ``"<n>m"``, ``"<n>h"`` or ``"<n>d"`` into a timedelta."""
    match = _TIMEFRAME_RE.match(timeframe or "")
    if match is None:
        raise ValueError(f"Invalid timeframe: {timeframe!r} (expected e.g. 30m, 24h, 7d)")
    amount, unit = int(match.group(1)), match.group(2).lower()
    return timedelta(**{_TIMEFRAME_UNITS[unit]: amount})


class MetricsStore:
    """Per-(service, metric) series kept time-ascending and pruned to retention.

    Reads hand out tuples, so callers (the analyzer in particular) work on a
    snapshot that later appends cannot disturb.
    """

    def __init__(
        self,
        config: RetentionConfig | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._config = config or RetentionConfig()
        self._clock = clock
        self._series: dict[SeriesKey, list[MetricPoint]] = {}
        self._status_changes: dict[str, list[StatusChange]] = defaultdict(list)
        self._system_health: SystemHealth | None = None

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self._config.raw_hours)

    @property
    def bucket_minutes(self) -> int:
        return self._config.bucket_minutes

    # --- Writes ---

    def append(
        self,
        service_id: str,
        metric: MetricType,
        value: float,
        timestamp: datetime | None = None,
    ) -> MetricPoint:
        """Append one point, keeping the series ordered and pruned."""
        point = MetricPoint(timestamp=timestamp or self._clock(), value=float(value))
        points = self._series.setdefault(SeriesKey(service_id, MetricType(metric)), [])

        if not points or point.timestamp >= points[-1].timestamp:
            points.append(point)
        else:
            bisect.insort(points, point, key=_ts)

        self._prune(points, self._clock() - self.retention)
        return point

    def record_check(
        self,
        service_id: str,
        status: ProbeStatus,
        response_time_ms: float | None = None,
        timestamp: datetime | None = None,
        details: Mapping[str, object] | None = None,
    ) -> None:
        """Record a probe outcome as status, response-time, uptime and resource points."""
        ts = timestamp or self._clock()
        online = ProbeStatus(status) is ProbeStatus.ONLINE

        self.append(service_id, MetricType.STATUS, 1.0 if online else 0.0, ts)
        if response_time_ms is not None:
            self.append(service_id, MetricType.RESPONSE_TIME, response_time_ms, ts)
        self.append(service_id, MetricType.UPTIME, 100.0 if online else 0.0, ts)

        for metric in _DETAIL_METRICS:
            value = (details or {}).get(metric.value)
            if isinstance(value, (int, float)):
                self.append(service_id, metric, value, ts)

    def record_status_change(self, change: StatusChange) -> None:
        changes = self._status_changes[change.service_id]
        changes.append(change)
        cutoff = self._clock() - self.retention
        while changes and changes[0].timestamp < cutoff:
            changes.pop(0)

    def record_system_health(
        self, total_services: int, online_services: int, timestamp: datetime | None = None
    ) -> SystemHealth:
        """Store the fleet-wide health score (percent of services online)."""
        score = round(online_services / total_services * 100) if total_services else 100
        self._system_health = SystemHealth(
            current_health=float(score),
            status=HealthLevel.from_score(score),
            total_services=total_services,
            online_services=online_services,
            timestamp=timestamp or self._clock(),
        )
        return self._system_health

    def remove_service(self, service_id: str) -> None:
        for key in [k for k in self._series if k.service_id == service_id]:
            del self._series[key]
        self._status_changes.pop(service_id, None)

    def cleanup(self) -> int:
        """Drop every point older than the raw retention window. Returns points removed."""
        cutoff = self._clock() - self.retention
        removed = 0
        for key in list(self._series):
            points = self._series[key]
            removed += self._prune(points, cutoff)
            if not points:
                del self._series[key]
        for service_id in list(self._status_changes):
            changes = [c for c in self._status_changes[service_id] if c.timestamp >= cutoff]
            if changes:
                self._status_changes[service_id] = changes
            else:
                del self._status_changes[service_id]
        if removed:
            logger.debug("Pruned %d points older than %s", removed, cutoff.isoformat())
        return removed

    def _prune(self, points: list[MetricPoint], cutoff: datetime) -> int:
        idx = bisect.bisect_left(points, cutoff, key=_ts)
        overflow = len(points) - idx - self._config.max_points_per_series
        if overflow > 0:
            idx += overflow
        if idx:
            del points[:idx]
        return idx

    # --- Reads ---

    def series(
        self, service_id: str, metric: MetricType, since: datetime | None = None
    ) -> tuple[MetricPoint, ...]:
        points = self._series.get(SeriesKey(service_id, MetricType(metric)), [])
        if since is None:
            return tuple(points)
        return tuple(points[bisect.bisect_left(points, since, key=_ts):])

    def latest(self, service_id: str, metric: MetricType) -> MetricPoint | None:
        points = self._series.get(SeriesKey(service_id, MetricType(metric)))
        return points[-1] if points else None

    def service_ids(self) -> list[str]:
        return sorted({key.service_id for key in self._series})

    def metrics_for(self, service_id: str) -> list[MetricType]:
        return [key.metric for key in self._series if key.service_id == service_id]

    def recent_status_changes(
        self, service_id: str, window: timedelta
    ) -> tuple[StatusChange, ...]:
        cutoff = self._clock() - window
        return tuple(c for c in self._status_changes.get(service_id, ()) if c.timestamp >= cutoff)

    def get_service_metrics(self, service_id: str, timeframe: str = "24h") -> ServiceMetrics:
        """Uptime %, mean response time and bucketed history over a timeframe."""
        since = self._clock() - parse_timeframe(timeframe)
        statuses = self.series(service_id, MetricType.STATUS, since)
        response_times = self.series(service_id, MetricType.RESPONSE_TIME, since)

        uptime = round(sum(p.value for p in statuses) / len(statuses) * 100, 2) if statuses else 0.0
        average = round(fmean(p.value for p in response_times), 2) if response_times else 0.0

        return ServiceMetrics(
            uptime=uptime,
            average_response_time=average,
            history=self._bucket_history(statuses, response_times),
        )

    def _bucket_history(
        self,
        statuses: Iterable[MetricPoint],
        response_times: Iterable[MetricPoint],
    ) -> tuple[HistoryBucket, ...]:
        width = self._config.bucket_minutes * 60
        status_buckets: dict[int, list[float]] = defaultdict(list)
        latency_buckets: dict[int, list[float]] = defaultdict(list)

        for p in statuses:
            status_buckets[int(p.timestamp.timestamp() // width) * width].append(p.value)
        for p in response_times:
            latency_buckets[int(p.timestamp.timestamp() // width) * width].append(p.value)

        starts = sorted(status_buckets.keys() | latency_buckets.keys())[-self._config.max_buckets:]
        history = []
        for start in starts:
            checks = status_buckets.get(start, [])
            latencies = latency_buckets.get(start, [])
            uptime = round(sum(checks) / len(checks) * 100, 2) if checks else 0.0
            history.append(
                HistoryBucket(
                    timestamp=datetime.fromtimestamp(start, tz=timezone.utc),
                    status=ProbeStatus.ONLINE if checks and uptime >= 50 else ProbeStatus.OFFLINE,
                    uptime=uptime,
                    response_time_ms=round(fmean(latencies), 2) if latencies else None,
                    checks=len(checks),
                )
            )
        return tuple(history)

    def get_system_health(self) -> SystemHealth:
        return self._system_health or SystemHealth()

    def get_services_overview(self, timeframe: str = "24h") -> dict[str, dict[str, float]]:
        """Per-service uptime, mean response time and check count."""
        since = self._clock() - parse_timeframe(timeframe)
        overview = {}
        for service_id in self.service_ids():
            metrics = self.get_service_metrics(service_id, timeframe)
            overview[service_id] = {
                "uptime": metrics.uptime,
                "average_response_time": metrics.average_response_time,
                "total_checks": len(self.series(service_id, MetricType.STATUS, since)),
            }
        return overview

    def export_csv(self, statuses: Mapping[str, StatusRecord], timeframe: str = "24h") -> str:
        """CSV with one row per service that has a recorded status."""
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for service_id, record in statuses.items():
            if record.timestamp is None:
                continue
            uptime = self.get_service_metrics(service_id, timeframe).uptime
            writer.writerow([
                record.timestamp.isoformat(),
                service_id,
                ProbeStatus(record.status).value,
                f"{record.response_time_ms:g}",
                f"{uptime:g}",
            ])
        return buf.getvalue()

    def get_stats(self) -> dict[str, int]:
        return {
            "series": len(self._series),
            "points": sum(len(p) for p in self._series.values()),
            "services": len(self.service_ids()),
        }
