"""Tests for MonitorScheduler with a scripted probe."""

import asyncio
import csv
import io
from datetime import timedelta

import pytest

from labwatch.config import AlertingConfig, LabwatchConfig, MonitorConfig
from labwatch.core.alerts import AlertDispatcher
from labwatch.core.scheduler import MonitorScheduler
from labwatch.core.store import MetricsStore
from labwatch.models import MetricType, ProbeResult, ProbeStatus, ServiceTarget


class ScriptedProbe:
    """Returns queued results per service; repeats the last one when exhausted."""

    def __init__(self, script=None):
        self.script = {sid: list(results) for sid, results in (script or {}).items()}
        self.calls = []
        self.closed = False

    async def check(self, target, timeout_ms=None):
        self.calls.append(target.id)
        queue = self.script.get(target.id) or [ProbeResult(ProbeStatus.ONLINE, 10.0)]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def close(self):
        self.closed = True


def online(rt=10.0, **details):
    return ProbeResult(ProbeStatus.ONLINE, rt, details=details)


def offline(error="Connection refused"):
    return ProbeResult(ProbeStatus.OFFLINE, 0.0, error=error)


WEB = ServiceTarget(id="web", name="Web", url="http://web.lan")
DB = ServiceTarget(id="db", name="DB", url="tcp://db.lan:5432")


@pytest.fixture
def make_scheduler(clock, recorder):
    def make(targets=(WEB,), script=None, **kwargs):
        probe = ScriptedProbe(script)
        kwargs.setdefault("host_sampler", lambda: None)
        scheduler = MonitorScheduler(
            targets,
            store=MetricsStore(clock=clock),
            dispatcher=AlertDispatcher(AlertingConfig(), channels=[recorder], clock=clock),
            probe=probe,
            clock=clock,
            **kwargs,
        )
        return scheduler, probe

    return make


class TestTransitions:
    @pytest.mark.asyncio
    async def test_one_alert_per_transition(self, make_scheduler, recorder, clock):
        scheduler, _ = make_scheduler(script={"web": [online(), offline(), offline(), online()]})

        for _ in range(4):
            await scheduler.update_all_server_statuses()
            clock.advance(seconds=30)

        fingerprints = [a.fingerprint for a in recorder.sent]
        assert fingerprints == ["pending->online", "online->offline", "offline->online"]
        assert scheduler.get_server_status("web").status is ProbeStatus.ONLINE

    @pytest.mark.asyncio
    async def test_flapping_within_cooldown(self, make_scheduler, recorder, clock):
        scheduler, _ = make_scheduler(script={"web": [online(), offline(), online(), offline(), online()]})

        for _ in range(5):
            await scheduler.update_all_server_statuses()
            clock.advance(seconds=30)

        assert [a.fingerprint for a in recorder.sent] == [
            "pending->online", "online->offline", "offline->online",
        ]
        assert len(scheduler.store.recent_status_changes("web", timedelta(hours=1))) == 5

    @pytest.mark.asyncio
    async def test_silenced_service(self, make_scheduler, recorder):
        scheduler, _ = make_scheduler(script={"web": [offline()]})
        scheduler.dispatcher.silence_alerts("web", 30)

        await scheduler.update_all_server_statuses()

        assert recorder.sent == []
        assert scheduler.get_server_status("web").status is ProbeStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, make_scheduler):
        scheduler, _ = make_scheduler(script={"web": [offline(), offline(), online()]})
        await scheduler.update_all_server_statuses()
        await scheduler.update_all_server_statuses()
        assert scheduler.get_server_status("web").consecutive_failures == 2
        await scheduler.update_all_server_statuses()
        assert scheduler.get_server_status("web").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_slow_response_alert(self, make_scheduler, recorder):
        scheduler, _ = make_scheduler(
            script={"web": [online(rt=900.0)]}, config=MonitorConfig(slow_response_ms=500.0)
        )
        await scheduler.update_all_server_statuses()
        assert [a.type for a in recorder.sent] == ["status_change", "high_response_time"]


class TestRecording:
    @pytest.mark.asyncio
    async def test_response_time_only_when_online(self, make_scheduler):
        scheduler, _ = make_scheduler(script={"web": [online(rt=42.0), offline()]})
        await scheduler.update_all_server_statuses()
        await scheduler.update_all_server_statuses()

        rts = [p.value for p in scheduler.store.series("web", MetricType.RESPONSE_TIME)]
        assert rts == [42.0]
        assert [p.value for p in scheduler.store.series("web", MetricType.UPTIME)] == [100, 0]

    @pytest.mark.asyncio
    async def test_local_target_gets_host_usage(self, make_scheduler):
        local = ServiceTarget(id="self", name="Self", url="http://localhost:8080")
        scheduler, _ = make_scheduler(
            targets=(local,), host_sampler=lambda: {MetricType.CPU_USAGE: 33.0}
        )
        await scheduler.update_all_server_statuses()
        assert scheduler.store.latest("self", MetricType.CPU_USAGE).value == 33.0

    @pytest.mark.asyncio
    async def test_remote_target_skips_host_usage(self, make_scheduler):
        scheduler, _ = make_scheduler(host_sampler=lambda: {MetricType.CPU_USAGE: 33.0})
        await scheduler.update_all_server_statuses()
        assert scheduler.store.latest("web", MetricType.CPU_USAGE) is None

    @pytest.mark.asyncio
    async def test_system_health(self, make_scheduler):
        scheduler, _ = make_scheduler(targets=(WEB, DB), script={"db": [offline()]})
        await scheduler.update_all_server_statuses()
        assert scheduler.store.get_system_health().current_health == 50


class TestSingleService:
    @pytest.mark.asyncio
    async def test_unknown_ping(self, make_scheduler):
        scheduler, probe = make_scheduler()
        result = await scheduler.ping_server("nope")
        assert result.status is ProbeStatus.ERROR
        assert result.error == "Server not found"
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_unknown_force_check(self, make_scheduler):
        scheduler, _ = make_scheduler()
        assert await scheduler.force_check_server("nope") is None
        assert await scheduler.update_server_status("nope", online()) is None

    @pytest.mark.asyncio
    async def test_force_check(self, make_scheduler):
        scheduler, probe = make_scheduler(targets=(WEB, DB))
        record = await scheduler.force_check_server("db")
        assert record.status is ProbeStatus.ONLINE
        assert probe.calls == ["db"]
        assert scheduler.get_server_status("web").status is ProbeStatus.PENDING


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_disarms(self, make_scheduler):
        scheduler, probe = make_scheduler()

        scheduler.start_monitoring(interval_seconds=60)
        scheduler.start_monitoring(interval_seconds=60)

        async def first_pass():
            while scheduler.get_monitoring_stats().last_check is None:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(first_pass(), timeout=2)
        assert scheduler.is_running
        assert probe.calls == ["web"]

        await scheduler.stop()
        assert not scheduler.is_running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_close_releases_probe(self, make_scheduler):
        scheduler, probe = make_scheduler()
        await scheduler.close()
        assert probe.closed

    @pytest.mark.asyncio
    async def test_from_config_wires_analyzer(self, clock):
        config = LabwatchConfig(services=(WEB,))
        scheduler = MonitorScheduler.from_config(config, probe=ScriptedProbe(), clock=clock)
        assert scheduler.analyzer is not None
        assert [t.id for t in scheduler.targets] == ["web"]
        await scheduler.close()


class TestStatsAndConfig:
    @pytest.mark.asyncio
    async def test_monitoring_stats(self, make_scheduler, clock):
        extra = ServiceTarget(id="nas", name="NAS", url="http://nas.lan")
        scheduler, _ = make_scheduler(
            targets=(WEB, DB),
            script={"db": [ProbeResult(ProbeStatus.ERROR, error="bad config")]},
        )
        await scheduler.update_all_server_statuses()
        scheduler.update_config((WEB, DB, extra))
        clock.advance(seconds=90)

        stats = scheduler.get_monitoring_stats()

        assert stats.total_servers == 3
        assert stats.online_servers == 1
        assert stats.error_servers == 1
        assert stats.pending_servers == 1
        assert stats.offline_servers == 0
        assert stats.uptime == 90

    @pytest.mark.asyncio
    async def test_update_config_drops_removed(self, make_scheduler):
        scheduler, _ = make_scheduler(targets=(WEB, DB))
        await scheduler.update_all_server_statuses()

        scheduler.update_config((DB,))

        assert scheduler.get_server_status("web") is None
        assert scheduler.store.series("web", MetricType.UPTIME) == ()
        assert set(scheduler.get_all_server_statuses()) == {"db"}

    @pytest.mark.asyncio
    async def test_housekeeping(self, make_scheduler, clock):
        scheduler, _ = make_scheduler()
        await scheduler.update_all_server_statuses()
        clock.advance(days=8)
        removed = scheduler.housekeeping()
        assert removed["points"] > 0
        assert removed["history"] == 1


class TestExport:
    @pytest.mark.asyncio
    async def test_csv_one_row_per_checked_service(self, make_scheduler):
        extra = ServiceTarget(id="nas", name="NAS", url="http://nas.lan")
        scheduler, _ = make_scheduler(targets=(WEB, DB))
        await scheduler.update_all_server_statuses()
        scheduler.update_config((WEB, DB, extra))

        rows = list(csv.reader(io.StringIO(scheduler.export_monitoring_data("csv"))))

        assert rows[0] == ["Timestamp", "Service", "Status", "Response Time", "Uptime %"]
        assert sorted(r[1] for r in rows[1:]) == ["db", "web"]

    @pytest.mark.asyncio
    async def test_json(self, make_scheduler):
        scheduler, _ = make_scheduler(script={"web": [offline()]})
        await scheduler.update_all_server_statuses()

        data = scheduler.export_monitoring_data("json", "1h")

        assert set(data) == {"timestamp", "timeframe", "server_statuses", "metrics_overview", "alerts"}
        assert data["server_statuses"]["web"]["status"] == "offline"
        assert data["alerts"][0]["type"] == "status_change"

    def test_invalid_format(self, make_scheduler):
        scheduler, _ = make_scheduler()
        with pytest.raises(ValueError):
            scheduler.export_monitoring_data("xml")
