"""Baselines, anomaly scoring, trend classification and Holt-linear forecasting.

Baselines combine mean/stddev with median/MAD so a single extreme sample
cannot hide itself by inflating the dispersion it is measured against.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from statistics import fmean, median, pstdev
from typing import TYPE_CHECKING

from labwatch.config import AnalyticsConfig
from labwatch.core.store import MetricsStore, parse_timeframe
from labwatch.errors import InsufficientDataError
from labwatch.models import (
    AnalyticsReport,
    Anomaly,
    AnomalySeverity,
    Baseline,
    ForecastTrend,
    MetricPoint,
    MetricType,
    Prediction,
    Recommendation,
    SeriesKey,
    ThresholdViolation,
    TrendDirection,
)

if TYPE_CHECKING:
    from labwatch.core.alerts import AlertDispatcher

logger = logging.getLogger("labwatch.anomaly")

# Minimum samples before a baseline / forecast exists
MIN_BASELINE_SAMPLES = 5
MIN_FORECAST_SAMPLES = 10

# Rescales MAD to be comparable with stddev for normally distributed data
MAD_SCALE = 1.4826
CRITICAL_SCORE = 5.0

STABLE_SLOPE = 0.05
FORECAST_TREND_EPSILON = 0.1
CONFIDENCE_WINDOW = 5

UNSTABLE_CHANGE_LIMIT = 5
ANOMALY_HISTORY_LIMIT = 1000
REPORT_ANOMALY_LIMIT = 20

TRACKED_METRICS = (
    MetricType.RESPONSE_TIME,
    MetricType.CPU_USAGE,
    MetricType.MEMORY_USAGE,
    MetricType.DISK_USAGE,
    MetricType.UPTIME,
)
SCORED_METRICS = (
    MetricType.RESPONSE_TIME,
    MetricType.CPU_USAGE,
    MetricType.MEMORY_USAGE,
    MetricType.DISK_USAGE,
)
RESOURCE_METRICS = (MetricType.CPU_USAGE, MetricType.MEMORY_USAGE, MetricType.DISK_USAGE)

# metric -> (warning, critical)
DEFAULT_THRESHOLDS: dict[MetricType, tuple[float, float]] = {
    MetricType.RESPONSE_TIME: (2000.0, 5000.0),
    MetricType.CPU_USAGE: (80.0, 95.0),
    MetricType.MEMORY_USAGE: (85.0, 95.0),
    MetricType.DISK_USAGE: (85.0, 95.0),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def require_samples(values: Sequence[float], minimum: int) -> None:
    if len(values) < minimum:
        raise InsufficientDataError(minimum, len(values))


def compute_baseline(values: Sequence[float]) -> Baseline:
    """Mean, population stddev, median and MAD of at least five samples."""
    require_samples(values, MIN_BASELINE_SAMPLES)
    center = median(values)
    return Baseline(
        mean=fmean(values),
        std_dev=pstdev(values),
        median=center,
        mad=median(abs(v - center) for v in values),
        sample_count=len(values),
    )


def score_value(
    value: float,
    baseline: Baseline,
    z_threshold: float = 3.0,
    mad_threshold: float = 3.5,
    metric: MetricType | None = None,
    service_id: str = "",
    timestamp: datetime | None = None,
) -> Anomaly | None:
    """Flag ``value`` if its Z-score or robust MAD score exceeds the thresholds."""
    z_score = abs(value - baseline.mean) / baseline.std_dev if baseline.std_dev > 0 else 0.0
    mad_score = (
        abs(value - baseline.median) / (baseline.mad * MAD_SCALE) if baseline.mad > 0 else 0.0
    )

    if not (mad_score > mad_threshold or z_score > z_threshold):
        return None

    name = metric.value if metric else "metric"
    method = "Robust MAD" if mad_score > z_score else "Z-Score"
    critical = mad_score > CRITICAL_SCORE or z_score > CRITICAL_SCORE
    return Anomaly(
        type=f"{name}_anomaly",
        severity=AnomalySeverity.CRITICAL if critical else AnomalySeverity.WARNING,
        value=value,
        expected=baseline.median,
        threshold=baseline.median + baseline.mad * mad_threshold * MAD_SCALE,
        deviation=round(z_score, 4),
        description=f"Detected {name} anomaly via {method} analysis.",
        service_id=service_id,
        metric=metric,
        timestamp=timestamp or _now(),
    )


def linear_regression_slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_xx = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def classify_trend(metric: MetricType, points: Sequence[MetricPoint]) -> TrendDirection:
    """Map the regression slope onto improving/degrading for this metric's polarity."""
    if len(points) < MIN_BASELINE_SAMPLES:
        return TrendDirection.INSUFFICIENT_DATA

    slope = linear_regression_slope([p.value for p in points])
    if abs(slope) < STABLE_SLOPE:
        return TrendDirection.STABLE

    # Uptime going up is good; every other metric going up is bad
    rising_is_good = metric is MetricType.UPTIME
    if (slope > 0) == rising_is_good:
        return TrendDirection.IMPROVING
    return TrendDirection.DEGRADING


def prediction_confidence(values: Sequence[float]) -> int:
    """100 minus the coefficient of variation (percent), clamped to [0, 100]."""
    if len(values) < 3:
        return 0
    mean = fmean(values)
    if mean == 0:
        return 100
    cv = pstdev(values) / mean * 100
    return round(max(0.0, min(100.0, 100 - cv)))


def forecast(
    points: Sequence[MetricPoint],
    alpha: float = 0.3,
    beta: float = 0.1,
    horizon: str = "5m",
) -> Prediction:
    """One-step-ahead Holt-linear (double exponential smoothing) forecast."""
    values = [p.value for p in points]
    require_samples(values, MIN_FORECAST_SAMPLES)

    level = values[0]
    trend = values[1] - values[0]
    for value in values[1:]:
        last_level = level
        level = alpha * value + (1 - alpha) * (level + trend)
        trend = beta * (level - last_level) + (1 - beta) * trend

    if trend > FORECAST_TREND_EPSILON:
        label = ForecastTrend.INCREASING
    elif trend < -FORECAST_TREND_EPSILON:
        label = ForecastTrend.DECREASING
    else:
        label = ForecastTrend.STABLE

    return Prediction(
        predicted=max(0.0, level + trend),
        confidence=prediction_confidence(values[-CONFIDENCE_WINDOW:]),
        trend=label,
        horizon=horizon,
    )


def check_thresholds(
    values: Mapping[MetricType, float],
    thresholds: Mapping[MetricType, tuple[float, float]] = DEFAULT_THRESHOLDS,
) -> list[ThresholdViolation]:
    """Static warning/critical limits on the latest values."""
    violations = []
    for metric, value in values.items():
        limits = thresholds.get(metric)
        if limits is None or value is None:
            continue
        warning, critical = limits
        if value > critical:
            violations.append(ThresholdViolation(metric, AnomalySeverity.CRITICAL, value, critical))
        elif value > warning:
            violations.append(ThresholdViolation(metric, AnomalySeverity.WARNING, value, warning))
    return violations


def generate_recommendations(
    analysis: Mapping[MetricType, TrendDirection],
    averages: Mapping[MetricType, float],
    predictions: Mapping[MetricType, Prediction],
) -> list[Recommendation]:
    """Rule table over trend state, series averages and forecasts."""
    recommendations: list[Recommendation] = []

    def degrading(metric: MetricType) -> bool:
        return analysis.get(metric) is TrendDirection.DEGRADING

    if degrading(MetricType.CPU_USAGE) and degrading(MetricType.RESPONSE_TIME):
        recommendations.append(Recommendation(
            type="performance",
            priority="critical",
            title="Critical Resource Bottleneck",
            description="CPU usage increase is directly correlating with response time degradation.",
            action="Immediate resource scaling or process optimization required.",
        ))
    else:
        if degrading(MetricType.RESPONSE_TIME):
            recommendations.append(Recommendation(
                type="performance",
                priority="medium",
                title="Response Time Degradation",
                description=(
                    "Response times are increasing. Consider optimizing server performance "
                    "or checking network connectivity."
                ),
                action="Investigate server load and network latency",
            ))
        avg_cpu = averages.get(MetricType.CPU_USAGE, 0.0)
        if degrading(MetricType.CPU_USAGE) and avg_cpu > 80:
            recommendations.append(Recommendation(
                type="resource",
                priority="high",
                title="High CPU Usage",
                description=(
                    f"Average CPU usage is {round(avg_cpu)}%. Consider upgrading hardware "
                    "or optimizing applications."
                ),
                action="Scale up CPU resources or optimize processes",
            ))

    avg_memory = averages.get(MetricType.MEMORY_USAGE, 0.0)
    if degrading(MetricType.MEMORY_USAGE) and avg_memory > 85:
        recommendations.append(Recommendation(
            type="resource",
            priority="high",
            title="High Memory Usage",
            description=(
                f"Average memory usage is {round(avg_memory)}%. Consider increasing RAM "
                "or optimizing memory usage."
            ),
            action="Scale up memory or optimize application memory usage",
        ))

    if degrading(MetricType.UPTIME):
        recommendations.append(Recommendation(
            type="reliability",
            priority="high",
            title="Service Reliability Issues",
            description="Service uptime is decreasing. Investigate potential stability issues.",
            action="Check logs, monitor dependencies, and implement health checks",
        ))

    for metric, pred in predictions.items():
        if metric in RESOURCE_METRICS and pred.predicted > 90 and pred.trend is ForecastTrend.INCREASING:
            recommendations.append(Recommendation(
                type="proactive",
                priority="high",
                title=f"Upcoming {metric.value} Threshold Violation",
                description=(
                    f"Based on current trends, {metric.value} is predicted to reach "
                    f"{round(pred.predicted)}% in the next {pred.horizon}."
                ),
                action="Proactive intervention recommended.",
            ))

    return recommendations


class AnomalyAnalyzer:
    """Periodic analytics over a MetricsStore.

    Baselines, trends and predictions are derived state: each pass discards
    and recomputes them from copy-on-read snapshots of the store's series.
    """

    def __init__(
        self,
        store: MetricsStore,
        dispatcher: AlertDispatcher | None = None,
        config: AnalyticsConfig | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._config = config or AnalyticsConfig()
        self._clock = clock
        self._baselines: dict[SeriesKey, Baseline] = {}
        self._trend_analysis: dict[str, dict[MetricType, TrendDirection]] = {}
        self._predictions: dict[str, dict[MetricType, Prediction]] = {}
        self._anomalies: deque[Anomaly] = deque(maxlen=ANOMALY_HISTORY_LIMIT)
        self._last_scored: dict[SeriesKey, datetime] = {}
        self._violations: deque[ThresholdViolation] = deque(maxlen=ANOMALY_HISTORY_LIMIT)
        self._last_threshold_check: dict[SeriesKey, datetime] = {}
        self._reports_generated = 0
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    # --- Baselines and anomalies ---

    def compute_baselines(self, service_id: str | None = None) -> dict[SeriesKey, Baseline]:
        """Recompute baselines for one service (or all). Series under 5 points get none."""
        service_ids = [service_id] if service_id else self._store.service_ids()
        for sid in service_ids:
            for metric in TRACKED_METRICS:
                key = SeriesKey(sid, metric)
                values = [p.value for p in self._store.series(sid, metric)]
                try:
                    self._baselines[key] = compute_baseline(values)
                except InsufficientDataError:
                    self._baselines.pop(key, None)
        return {k: v for k, v in self._baselines.items() if k.service_id in service_ids}

    def get_baseline(self, service_id: str, metric: MetricType) -> Baseline | None:
        return self._baselines.get(SeriesKey(service_id, metric))

    def detect_anomalies(self, service_id: str) -> list[Anomaly]:
        """Score every point recorded since the previous pass, plus the instability check."""
        if not self._config.enable_anomaly_detection:
            return []

        detected = []
        for metric in SCORED_METRICS:
            key = SeriesKey(service_id, metric)
            baseline = self._baselines.get(key)
            if baseline is None:
                continue
            for point in self._unseen_points(key, self._last_scored):
                anomaly = self._score(service_id, metric, point, baseline)
                if anomaly is not None:
                    detected.append(anomaly)

        unstable = self.unstable_service_anomaly(service_id)
        if unstable is not None:
            detected.append(unstable)

        if detected:
            self._anomalies.extend(detected)
            logger.info("Anomalies detected for %s: %d", service_id, len(detected))
        return detected

    def _unseen_points(
        self, key: SeriesKey, marks: dict[SeriesKey, datetime]
    ) -> list[MetricPoint]:
        """Points newer than ``marks[key]``; advances the mark past them."""
        last = marks.get(key)
        points = [
            p for p in self._store.series(key.service_id, key.metric, since=last)
            if last is None or p.timestamp > last
        ]
        if points:
            marks[key] = points[-1].timestamp
        return points

    def scan_series(self, service_id: str, metric: MetricType) -> list[Anomaly]:
        """Score every retained point of a series against its baseline."""
        points = self._store.series(service_id, metric)
        baseline = self._baselines.get(SeriesKey(service_id, metric))
        if baseline is None:
            try:
                baseline = compute_baseline([p.value for p in points])
            except InsufficientDataError:
                logger.debug("Not enough samples to scan %s.%s", service_id, metric.value)
                return []
        return [
            a for a in (self._score(service_id, metric, p, baseline) for p in points) if a is not None
        ]

    def _score(
        self, service_id: str, metric: MetricType, point: MetricPoint, baseline: Baseline
    ) -> Anomaly | None:
        return score_value(
            point.value,
            baseline,
            z_threshold=self._config.z_score_threshold,
            mad_threshold=self._config.mad_threshold,
            metric=metric,
            service_id=service_id,
            timestamp=point.timestamp,
        )

    def unstable_service_anomaly(self, service_id: str) -> Anomaly | None:
        window = timedelta(minutes=self._config.instability_window_minutes)
        changes = len(self._store.recent_status_changes(service_id, window))
        if changes <= UNSTABLE_CHANGE_LIMIT:
            return None
        return Anomaly(
            type="unstable_service",
            severity=AnomalySeverity.WARNING,
            value=float(changes),
            expected=0.0,
            threshold=float(UNSTABLE_CHANGE_LIMIT),
            description="Service showing instability with frequent status changes",
            service_id=service_id,
            timestamp=self._clock(),
        )

    def recent_anomalies(self, service_id: str | None = None, limit: int = 50) -> list[Anomaly]:
        matches = [a for a in self._anomalies if service_id is None or a.service_id == service_id]
        return matches[-limit:]

    # --- Trends and predictions ---

    def analyze_trends(self, service_id: str) -> dict[MetricType, TrendDirection]:
        analysis = {
            metric: classify_trend(metric, self._store.series(service_id, metric))
            for metric in TRACKED_METRICS
        }
        self._trend_analysis[service_id] = analysis
        return analysis

    def generate_predictions(self, service_id: str) -> dict[MetricType, Prediction]:
        if not self._config.enable_predictions:
            return {}

        predictions = {}
        for metric in TRACKED_METRICS:
            try:
                predictions[metric] = forecast(
                    self._store.series(service_id, metric),
                    alpha=self._config.alpha,
                    beta=self._config.beta,
                    horizon=f"{self._store.bucket_minutes}m",
                )
            except InsufficientDataError:
                continue
        self._predictions[service_id] = predictions
        return predictions

    def recommendations(self, service_id: str) -> list[Recommendation]:
        analysis = self._trend_analysis.get(service_id) or self.analyze_trends(service_id)
        predictions = self._predictions.get(service_id, {})
        averages = {}
        for metric in TRACKED_METRICS:
            points = self._store.series(service_id, metric)
            if points:
                averages[metric] = fmean(p.value for p in points)
        return generate_recommendations(analysis, averages, predictions)

    def check_threshold_violations(self, service_id: str) -> list[ThresholdViolation]:
        """Check every point recorded since the previous pass against the static limits."""
        found = []
        for metric in DEFAULT_THRESHOLDS:
            key = SeriesKey(service_id, metric)
            for point in self._unseen_points(key, self._last_threshold_check):
                found.extend(
                    replace(v, service_id=service_id, timestamp=point.timestamp)
                    for v in check_thresholds({metric: point.value})
                )
        if found:
            self._violations.extend(found)
            logger.info("Threshold violations for %s: %d", service_id, len(found))
        return found

    def recent_threshold_violations(
        self, service_id: str | None = None, limit: int = 50
    ) -> list[ThresholdViolation]:
        matches = [v for v in self._violations if service_id is None or v.service_id == service_id]
        return matches[-limit:]

    # --- Reports ---

    def generate_report(self, service_id: str, timeframe: str = "24h") -> AnalyticsReport:
        """Summary, trends, anomalies, predictions and recommendations for a service."""
        since = self._clock() - parse_timeframe(timeframe)
        trends: dict[str, dict[str, float]] = {}
        for metric in TRACKED_METRICS:
            values = [p.value for p in self._store.series(service_id, metric, since)]
            if values:
                trends[metric.value] = {
                    "current": values[-1],
                    "average": fmean(values),
                    "min": min(values),
                    "max": max(values),
                    "data_points": len(values),
                }

        analysis = self.analyze_trends(service_id)
        predictions = self.generate_predictions(service_id)
        metrics = self._store.get_service_metrics(service_id, timeframe)
        anomalies = self.recent_anomalies(service_id, REPORT_ANOMALY_LIMIT)

        self._reports_generated += 1
        return AnalyticsReport(
            service_id=service_id,
            timeframe=timeframe,
            generated_at=self._clock(),
            summary={
                "uptime": metrics.uptime,
                "average_response_time": round(metrics.average_response_time),
                "total_checks": len(self._store.series(service_id, MetricType.UPTIME, since)),
                "anomaly_count": len(self.recent_anomalies(service_id, ANOMALY_HISTORY_LIMIT)),
            },
            trends=trends,
            trend_analysis={m.value: t.value for m, t in analysis.items()},
            anomalies=tuple(anomalies),
            predictions={m.value: p for m, p in predictions.items()},
            recommendations=tuple(self.recommendations(service_id)),
            threshold_violations=tuple(
                v for v in self.recent_threshold_violations(service_id, ANOMALY_HISTORY_LIMIT)
                if v.timestamp is None or v.timestamp >= since
            )[-REPORT_ANOMALY_LIMIT:],
        )

    # --- Periodic pass ---

    async def run_analysis(self) -> list[Anomaly]:
        """One full pass over every service in the store."""
        from labwatch.core.alerts import anomaly_alert, forecast_alert

        found: list[Anomaly] = []
        for service_id in self._store.service_ids():
            self.compute_baselines(service_id)
            self.analyze_trends(service_id)
            predictions = self.generate_predictions(service_id)
            anomalies = self.detect_anomalies(service_id)
            found.extend(anomalies)
            self.check_threshold_violations(service_id)

            if self._dispatcher is None:
                continue
            for anomaly in anomalies:
                await self._dispatcher.send_alert(anomaly_alert(anomaly))
            for metric, pred in predictions.items():
                if metric in RESOURCE_METRICS and pred.predicted > 90 and pred.trend is ForecastTrend.INCREASING:
                    await self._dispatcher.send_alert(forecast_alert(service_id, metric, pred))

        logger.debug("Analysis pass complete: %d anomalies", len(found))
        return found

    def start(self, interval_seconds: float | None = None) -> None:
        """Run ``run_analysis`` every interval on the current event loop. Idempotent."""
        if self._task is not None and not self._task.done():
            return
        interval = interval_seconds or self._config.interval_seconds
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(interval))
        logger.info("Analytics timer started (interval: %ss)", interval)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.run_analysis()
            except Exception:
                logger.exception("Analysis pass failed")

    def get_stats(self) -> dict[str, int]:
        return {
            "baselines": len(self._baselines),
            "total_anomalies": len(self._anomalies),
            "threshold_violations": len(self._violations),
            "active_predictions": sum(len(p) for p in self._predictions.values()),
            "generated_reports": self._reports_generated,
        }


