"""Monitoring loop: probe every target on an interval and apply the results."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from labwatch.config import LabwatchConfig, MonitorConfig
from labwatch.core.alerts import AlertDispatcher, high_response_time_alert, status_change_alert
from labwatch.core.anomaly import AnomalyAnalyzer
from labwatch.core.channels import alert_payload
from labwatch.core.monitor import capture_host_usage, is_local_target
from labwatch.core.probe import ProtocolProbe, with_details
from labwatch.core.store import MetricsStore, parse_timeframe
from labwatch.models import (
    MetricType,
    MonitoringStats,
    ProbeResult,
    ProbeStatus,
    ServiceMetrics,
    ServiceTarget,
    StatusChange,
    StatusRecord,
)

logger = logging.getLogger("labwatch.scheduler")

HostSampler = Callable[[], dict[MetricType, float] | None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def status_record_dict(record: StatusRecord) -> dict[str, Any]:
    return {
        "status": ProbeStatus(record.status).value,
        "response_time_ms": record.response_time_ms,
        "timestamp": record.timestamp.isoformat() if record.timestamp else None,
        "error": record.error,
        "last_status_change": (
            record.last_status_change.isoformat() if record.last_status_change else None
        ),
        "consecutive_failures": record.consecutive_failures,
    }


class MonitorScheduler:
    """Owns the working set of targets and their latest StatusRecords.

    Each tick probes every target concurrently (bounded by a semaphore),
    feeds the results to the MetricsStore and raises one status-change
    alert per transition. The dispatcher's cooldown decides delivery.
    """

    def __init__(
        self,
        targets: Iterable[ServiceTarget] = (),
        config: MonitorConfig | None = None,
        store: MetricsStore | None = None,
        dispatcher: AlertDispatcher | None = None,
        analyzer: AnomalyAnalyzer | None = None,
        probe: ProtocolProbe | None = None,
        clock: Callable[[], datetime] = _now,
        host_sampler: HostSampler = capture_host_usage,
    ) -> None:
        self._config = config or MonitorConfig()
        self._clock = clock
        self._store = store or MetricsStore(clock=clock)
        self._dispatcher = dispatcher or AlertDispatcher(clock=clock)
        self._analyzer = analyzer
        self._probe = probe or ProtocolProbe()
        self._host_sampler = host_sampler

        self._targets: dict[str, ServiceTarget] = {}
        self._statuses: dict[str, StatusRecord] = {}
        self.update_config(targets)

        self._started_at = clock()
        self._last_check: datetime | None = None
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_config(cls, config: LabwatchConfig, **kwargs: Any) -> MonitorScheduler:
        """Wire store, dispatcher and analyzer from a loaded LabwatchConfig."""
        clock = kwargs.pop("clock", _now)
        store = MetricsStore(config.retention, clock=clock)
        dispatcher = AlertDispatcher(config.alerting, clock=clock)
        analyzer = AnomalyAnalyzer(store, dispatcher, config.analytics, clock=clock)
        return cls(
            config.services,
            config.monitor,
            store=store,
            dispatcher=dispatcher,
            analyzer=analyzer,
            clock=clock,
            **kwargs,
        )

    @property
    def store(self) -> MetricsStore:
        return self._store

    @property
    def dispatcher(self) -> AlertDispatcher:
        return self._dispatcher

    @property
    def analyzer(self) -> AnomalyAnalyzer | None:
        return self._analyzer

    @property
    def targets(self) -> list[ServiceTarget]:
        return list(self._targets.values())

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # --- Lifecycle ---

    def start_monitoring(self, interval_seconds: float | None = None) -> None:
        """Probe immediately, then every interval. A second call while running is a no-op."""
        if self.is_running:
            logger.debug("Monitoring already running")
            return

        interval = interval_seconds or self._config.interval_seconds
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._periodic(interval, self.update_all_server_statuses, immediate=True)),
            loop.create_task(self._periodic(self._config.housekeeping_seconds, self._housekeeping_tick)),
        ]
        if self._analyzer is not None:
            self._analyzer.start()
        logger.info("Monitoring %d services every %ss", len(self._targets), interval)

    async def stop(self) -> None:
        """Disarm the timers. An in-flight pass is allowed to finish."""
        self._stop_event.set()
        if self._analyzer is not None:
            await self._analyzer.stop()
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks)
            logger.info("Monitoring stopped")

    async def close(self) -> None:
        await self.stop()
        await self._probe.close()
        await self._dispatcher.close()

    async def _periodic(
        self, interval: float, job: Callable[[], Awaitable[Any]], immediate: bool = False
    ) -> None:
        if not immediate and await self._wait(interval):
            return
        while True:
            try:
                await job()
            except Exception:
                logger.exception("Scheduled %s failed", getattr(job, "__name__", "job"))
            if await self._wait(interval):
                return

    async def _wait(self, interval: float) -> bool:
        """Sleep up to ``interval``; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _housekeeping_tick(self) -> None:
        self.housekeeping()

    # --- Checking ---

    async def update_all_server_statuses(self) -> dict[str, StatusRecord]:
        """One full pass: probe every target and apply each result."""
        targets = list(self._targets.values())

        async def check(target: ServiceTarget) -> None:
            async with self._semaphore:
                result = await self.ping_server(target.id)
            await self.update_server_status(target.id, result)

        await asyncio.gather(*(check(t) for t in targets))

        now = self._clock()
        online = sum(1 for r in self._statuses.values() if r.status is ProbeStatus.ONLINE)
        self._store.record_system_health(len(self._statuses), online, now)
        self._last_check = now
        logger.debug("Pass complete: %d/%d online", online, len(self._statuses))
        return self.get_all_server_statuses()

    async def ping_server(self, service_id: str) -> ProbeResult:
        target = self._targets.get(service_id)
        if target is None:
            return ProbeResult(status=ProbeStatus.ERROR, error="Server not found", timestamp=self._clock())

        result = await self._probe.check(target, target.timeout_ms)
        if is_local_target(target):
            usage = self._host_sampler()
            if usage:
                result = with_details(result, **{m.value: v for m, v in usage.items()})
        return result

    async def update_server_status(self, service_id: str, result: ProbeResult) -> StatusRecord | None:
        """Merge ``result`` into the service's record, store it and alert on transitions."""
        target = self._targets.get(service_id)
        if target is None:
            logger.debug("Dropping result for unknown service %s", service_id)
            return None

        now = self._clock()
        previous = self._statuses.get(service_id, StatusRecord())
        status = ProbeStatus(result.status)
        online = status is ProbeStatus.ONLINE
        changed = status is not previous.status

        record = StatusRecord(
            status=status,
            response_time_ms=result.response_time_ms,
            timestamp=now,
            error=result.error,
            last_status_change=now if changed else previous.last_status_change,
            consecutive_failures=0 if online else previous.consecutive_failures + 1,
        )
        self._statuses[service_id] = record

        self._store.record_check(
            service_id,
            status,
            result.response_time_ms if online else None,
            now,
            result.details,
        )

        if changed:
            self._store.record_status_change(StatusChange(service_id, previous.status, status, now))
            logger.info("%s: %s -> %s", service_id, previous.status.value, status.value)
            await self._dispatcher.send_alert(
                status_change_alert(target, previous.status, status, result.error)
            )

        if online and result.response_time_ms > self._config.slow_response_ms:
            await self._dispatcher.send_alert(
                high_response_time_alert(target, result.response_time_ms, self._config.slow_response_ms)
            )
        return record

    async def force_check_server(self, service_id: str) -> StatusRecord | None:
        """Check one service now, outside the schedule. None for unknown ids."""
        if service_id not in self._targets:
            return None
        result = await self.ping_server(service_id)
        return await self.update_server_status(service_id, result)

    # --- Queries ---

    def get_server_status(self, service_id: str) -> StatusRecord | None:
        return self._statuses.get(service_id)

    def get_all_server_statuses(self) -> dict[str, StatusRecord]:
        return dict(self._statuses)

    def get_server_metrics(self, service_id: str, timeframe: str = "24h") -> ServiceMetrics:
        return self._store.get_service_metrics(service_id, timeframe)

    def get_monitoring_stats(self) -> MonitoringStats:
        counts = {status: 0 for status in ProbeStatus}
        for record in self._statuses.values():
            counts[record.status] += 1
        return MonitoringStats(
            total_servers=len(self._statuses),
            online_servers=counts[ProbeStatus.ONLINE],
            offline_servers=counts[ProbeStatus.OFFLINE],
            error_servers=counts[ProbeStatus.ERROR],
            pending_servers=counts[ProbeStatus.PENDING],
            last_check=self._last_check,
            uptime=(self._clock() - self._started_at).total_seconds(),
            system_health=self._store.get_system_health(),
        )

    def export_monitoring_data(self, format: str = "json", timeframe: str = "24h") -> dict[str, Any] | str:
        """Snapshot of statuses, metrics and alerts as a JSON-ready dict or CSV text."""
        window = parse_timeframe(timeframe)
        if format == "csv":
            return self._store.export_csv(self._statuses, timeframe)
        if format != "json":
            raise ValueError(f"Unsupported export format: {format!r} (expected json or csv)")

        hours = window / timedelta(hours=1)
        return {
            "timestamp": self._clock().isoformat(),
            "timeframe": timeframe,
            "server_statuses": {sid: status_record_dict(r) for sid, r in self._statuses.items()},
            "metrics_overview": self._store.get_services_overview(timeframe),
            "alerts": [alert_payload(a) for a in self._dispatcher.get_recent_alerts(hours)],
        }

    # --- Configuration and housekeeping ---

    def update_config(self, targets: Iterable[ServiceTarget]) -> None:
        """Replace the working set. Removed services lose their state; new ones start pending."""
        new_targets = {t.id: t for t in targets}
        for service_id in set(self._targets) - set(new_targets):
            self._statuses.pop(service_id, None)
            self._store.remove_service(service_id)
        for service_id in new_targets:
            self._statuses.setdefault(service_id, StatusRecord())
        self._targets = new_targets
        logger.debug("Working set: %s", sorted(new_targets))

    def housekeeping(self) -> dict[str, int]:
        removed = {"points": self._store.cleanup()}
        removed.update(self._dispatcher.cleanup())
        return removed
