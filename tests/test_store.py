"""Tests for MetricsStore: ordering, retention, aggregation, CSV export."""

import csv
import io
from datetime import timedelta

import pytest

from labwatch.config import RetentionConfig
from labwatch.core.store import CSV_HEADER, MetricsStore, parse_timeframe
from labwatch.models import (
    HealthLevel,
    MetricType,
    ProbeStatus,
    StatusChange,
    StatusRecord,
)


@pytest.fixture
def store(clock):
    return MetricsStore(clock=clock)


class TestParseTimeframe:
    def test_units(self):
        assert parse_timeframe("30m") == timedelta(minutes=30)
        assert parse_timeframe("24h") == timedelta(hours=24)
        assert parse_timeframe("7d") == timedelta(days=7)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_timeframe("yesterday")
        with pytest.raises(ValueError):
            parse_timeframe("")


class TestAppend:
    def test_time_ascending_with_out_of_order_insert(self, store, clock):
        t0 = clock()
        store.append("web", MetricType.RESPONSE_TIME, 1, t0)
        store.append("web", MetricType.RESPONSE_TIME, 3, t0 + timedelta(seconds=20))
        store.append("web", MetricType.RESPONSE_TIME, 2, t0 + timedelta(seconds=10))
        values = [p.value for p in store.series("web", MetricType.RESPONSE_TIME)]
        assert values == [1, 2, 3]

    def test_prunes_on_append(self, store, clock):
        store.append("web", MetricType.UPTIME, 100, clock() - timedelta(hours=30))
        store.append("web", MetricType.UPTIME, 100, clock())
        assert len(store.series("web", MetricType.UPTIME)) == 1

    def test_point_cap(self, clock):
        store = MetricsStore(RetentionConfig(max_points_per_series=3), clock=clock)
        for i in range(5):
            store.append("web", MetricType.RESPONSE_TIME, i, clock() - timedelta(seconds=5 - i))
        assert [p.value for p in store.series("web", MetricType.RESPONSE_TIME)] == [2, 3, 4]

    def test_series_is_snapshot(self, store, clock):
        store.append("web", MetricType.RESPONSE_TIME, 1)
        snapshot = store.series("web", MetricType.RESPONSE_TIME)
        store.append("web", MetricType.RESPONSE_TIME, 2)
        assert len(snapshot) == 1

    def test_since(self, store, clock):
        t0 = clock()
        for i in range(3):
            store.append("web", MetricType.RESPONSE_TIME, i, t0 - timedelta(minutes=10 * i))
        recent = store.series("web", MetricType.RESPONSE_TIME, since=t0 - timedelta(minutes=15))
        assert [p.value for p in recent] == [1, 0]


class TestRecordCheck:
    def test_online(self, store):
        store.record_check("web", ProbeStatus.ONLINE, 120.0)
        assert store.latest("web", MetricType.STATUS).value == 1
        assert store.latest("web", MetricType.UPTIME).value == 100
        assert store.latest("web", MetricType.RESPONSE_TIME).value == 120

    def test_offline_without_response_time(self, store):
        store.record_check("web", ProbeStatus.OFFLINE)
        assert store.latest("web", MetricType.STATUS).value == 0
        assert store.latest("web", MetricType.UPTIME).value == 0
        assert store.latest("web", MetricType.RESPONSE_TIME) is None

    def test_resource_details(self, store):
        store.record_check("web", ProbeStatus.ONLINE, 50.0, details={"cpu_usage": 40.0, "status_code": 200})
        assert store.latest("web", MetricType.CPU_USAGE).value == 40.0
        assert store.latest("web", MetricType.MEMORY_USAGE) is None


class TestRetention:
    def test_cleanup_removes_old_points(self, store, clock):
        t0 = clock()
        store.append("web", MetricType.UPTIME, 100, t0)
        store.append("db", MetricType.UPTIME, 100, t0)
        clock.advance(hours=23)
        store.append("web", MetricType.UPTIME, 0)
        clock.advance(hours=2)

        removed = store.cleanup()

        assert removed == 2
        cutoff = clock() - store.retention
        for sid in store.service_ids():
            for metric in store.metrics_for(sid):
                assert all(p.timestamp >= cutoff for p in store.series(sid, metric))
        assert store.service_ids() == ["web"]

    def test_status_changes_pruned(self, store, clock):
        store.record_status_change(StatusChange("web", ProbeStatus.ONLINE, ProbeStatus.OFFLINE, clock()))
        clock.advance(hours=25)
        store.cleanup()
        assert store.recent_status_changes("web", timedelta(days=7)) == ()

    def test_remove_service(self, store):
        store.record_check("web", ProbeStatus.ONLINE, 10.0)
        store.remove_service("web")
        assert store.service_ids() == []


class TestServiceMetrics:
    def test_uptime_and_average(self, store, clock):
        t0 = clock()
        for i, status in enumerate([ProbeStatus.ONLINE, ProbeStatus.ONLINE, ProbeStatus.OFFLINE]):
            rt = 100.0 * (i + 1) if status is ProbeStatus.ONLINE else None
            store.record_check("web", status, rt, t0 - timedelta(minutes=i))

        metrics = store.get_service_metrics("web", "1h")
        assert metrics.uptime == 66.67
        assert metrics.average_response_time == 150.0

    def test_timeframe_excludes_old(self, store, clock):
        store.record_check("web", ProbeStatus.OFFLINE, timestamp=clock() - timedelta(hours=2))
        store.record_check("web", ProbeStatus.ONLINE, 10.0, clock())
        assert store.get_service_metrics("web", "1h").uptime == 100.0
        assert store.get_service_metrics("web", "24h").uptime == 50.0

    def test_empty(self, store):
        metrics = store.get_service_metrics("nope")
        assert metrics.uptime == 0.0
        assert metrics.history == ()

    def test_five_minute_buckets(self, store, clock):
        t0 = clock()
        store.record_check("web", ProbeStatus.ONLINE, 100.0, t0 - timedelta(minutes=11))
        store.record_check("web", ProbeStatus.OFFLINE, None, t0 - timedelta(minutes=9))
        store.record_check("web", ProbeStatus.ONLINE, 200.0, t0 - timedelta(minutes=8))
        store.record_check("web", ProbeStatus.OFFLINE, None, t0 - timedelta(minutes=1))

        history = store.get_service_metrics("web", "1h").history

        assert [b.checks for b in history] == [1, 2, 1]
        assert [b.status for b in history] == [ProbeStatus.ONLINE, ProbeStatus.ONLINE, ProbeStatus.OFFLINE]
        assert history[1].uptime == 50.0
        assert history[1].response_time_ms == 200.0
        assert history[2].response_time_ms is None

    def test_bucket_cap(self, clock):
        store = MetricsStore(RetentionConfig(max_buckets=3), clock=clock)
        for i in range(10):
            store.record_check("web", ProbeStatus.ONLINE, 1.0, clock() - timedelta(minutes=5 * i))
        history = store.get_service_metrics("web").history
        assert len(history) == 3
        assert history[-1].timestamp <= clock()


class TestSystemHealth:
    def test_default(self, store):
        health = store.get_system_health()
        assert health.current_health == 100
        assert health.status is HealthLevel.HEALTHY

    def test_degraded(self, store):
        health = store.record_system_health(total_services=10, online_services=8)
        assert health.current_health == 80
        assert store.get_system_health().status is HealthLevel.DEGRADED

    def test_no_services(self, store):
        assert store.record_system_health(0, 0).status is HealthLevel.HEALTHY


class TestExportCsv:
    def test_one_row_per_recorded_service(self, store, clock):
        store.record_check("web", ProbeStatus.ONLINE, 120.0)
        store.record_check("db", ProbeStatus.OFFLINE)
        statuses = {
            "web": StatusRecord(ProbeStatus.ONLINE, 120.0, clock()),
            "db": StatusRecord(ProbeStatus.OFFLINE, 0.0, clock(), error="Connection refused"),
            "new": StatusRecord(),
        }

        rows = list(csv.reader(io.StringIO(store.export_csv(statuses))))

        assert tuple(rows[0]) == CSV_HEADER
        assert ",".join(rows[0]) == "Timestamp,Service,Status,Response Time,Uptime %"
        assert len(rows) - 1 == 2
        assert rows[1][1:] == ["web", "online", "120", "100"]
        assert rows[2][1:] == ["db", "offline", "0", "0"]
