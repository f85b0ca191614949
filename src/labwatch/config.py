"""Layered configuration: .labwatch/config.toml -> LABWATCH_* env vars -> defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomllib  # 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from labwatch.models.enums import Protocol
from labwatch.models.runtime import ServiceTarget


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Probe scheduling settings."""

    interval_seconds: float = 30.0
    default_timeout_ms: int = 5000
    max_concurrency: int = 50
    slow_response_ms: float = 5000.0
    housekeeping_seconds: float = 300.0


@dataclass(frozen=True, slots=True)
class RetentionConfig:
    """Time-series retention and history bucketing."""

    raw_hours: float = 24.0
    bucket_minutes: int = 5
    max_buckets: int = 100
    max_points_per_series: int = 10_000


@dataclass(frozen=True, slots=True)
class AnalyticsConfig:
    """Baseline, anomaly and forecast settings."""

    interval_seconds: float = 3600.0
    z_score_threshold: float = 3.0
    mad_threshold: float = 3.5
    alpha: float = 0.3
    beta: float = 0.1
    instability_window_minutes: int = 60
    enable_predictions: bool = True
    enable_anomaly_detection: bool = True


@dataclass(frozen=True, slots=True)
class EmailConfig:
    enabled: bool = False
    smtp_host: str = "localhost"
    smtp_port: int = 587
    use_tls: bool = True
    username: str | None = None
    password: str | None = None
    sender: str = "labwatch@localhost"
    recipients: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ChatWebhookConfig:
    """Slack or Discord incoming-webhook settings."""

    enabled: bool = False
    webhook_url: str = ""


@dataclass(frozen=True, slots=True)
class PushoverConfig:
    enabled: bool = False
    app_token: str = ""
    user_key: str = ""
    sound: str = "default"


@dataclass(frozen=True, slots=True)
class AlertingConfig:
    """Alert dispatch policy and channel settings."""

    cooldown_minutes: float = 5.0
    history_limit: int = 1000
    history_days: float = 7.0
    active_expiry_minutes: float = 60.0
    channel_timeout_seconds: float = 10.0
    email: EmailConfig = field(default_factory=EmailConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    slack: ChatWebhookConfig = field(default_factory=ChatWebhookConfig)
    discord: ChatWebhookConfig = field(default_factory=ChatWebhookConfig)
    pushover: PushoverConfig = field(default_factory=PushoverConfig)


@dataclass(frozen=True, slots=True)
class LabwatchConfig:
    """Top-level configuration container."""

    project_path: Path = field(default_factory=Path.cwd)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    services: tuple[ServiceTarget, ...] = ()

    @property
    def labwatch_dir(self) -> Path:
        return self.project_path / ".labwatch"

    @property
    def config_path(self) -> Path:
        return self.labwatch_dir / "config.toml"

    @classmethod
    def load(cls, project_path: Path | None = None) -> LabwatchConfig:
        """Load config with layering: TOML file -> env vars -> defaults."""
        project = Path(project_path) if project_path else Path.cwd()
        toml_path = project / ".labwatch" / "config.toml"

        toml_data: dict = {}
        if toml_path.is_file():
            with open(toml_path, "rb") as f:
                toml_data = tomllib.load(f)

        monitor_data = toml_data.get("monitor", {})
        retention_data = toml_data.get("retention", {})
        analytics_data = toml_data.get("analytics", {})
        alerting_data = toml_data.get("alerting", {})

        # Use literal defaults (slots=True prevents class-level attribute access)
        _mon = MonitorConfig()
        _ret = RetentionConfig()
        _ana = AnalyticsConfig()
        _alr = AlertingConfig()

        monitor = MonitorConfig(
            interval_seconds=float(
                _layer("LABWATCH_INTERVAL_SECONDS", monitor_data, "interval_seconds", _mon.interval_seconds)
            ),
            default_timeout_ms=int(
                _layer("LABWATCH_TIMEOUT_MS", monitor_data, "default_timeout_ms", _mon.default_timeout_ms)
            ),
            max_concurrency=int(
                _layer("LABWATCH_MAX_CONCURRENCY", monitor_data, "max_concurrency", _mon.max_concurrency)
            ),
            slow_response_ms=float(
                _layer("LABWATCH_SLOW_RESPONSE_MS", monitor_data, "slow_response_ms", _mon.slow_response_ms)
            ),
            housekeeping_seconds=float(
                _layer(
                    "LABWATCH_HOUSEKEEPING_SECONDS",
                    monitor_data,
                    "housekeeping_seconds",
                    _mon.housekeeping_seconds,
                )
            ),
        )

        retention = RetentionConfig(
            raw_hours=float(
                _layer("LABWATCH_RETENTION_HOURS", retention_data, "raw_hours", _ret.raw_hours)
            ),
            bucket_minutes=int(retention_data.get("bucket_minutes", _ret.bucket_minutes)),
            max_buckets=int(retention_data.get("max_buckets", _ret.max_buckets)),
            max_points_per_series=int(
                retention_data.get("max_points_per_series", _ret.max_points_per_series)
            ),
        )

        analytics = AnalyticsConfig(
            interval_seconds=float(
                _layer(
                    "LABWATCH_ANALYTICS_INTERVAL_SECONDS",
                    analytics_data,
                    "interval_seconds",
                    _ana.interval_seconds,
                )
            ),
            z_score_threshold=float(analytics_data.get("z_score_threshold", _ana.z_score_threshold)),
            mad_threshold=float(analytics_data.get("mad_threshold", _ana.mad_threshold)),
            alpha=float(analytics_data.get("alpha", _ana.alpha)),
            beta=float(analytics_data.get("beta", _ana.beta)),
            instability_window_minutes=int(
                analytics_data.get("instability_window_minutes", _ana.instability_window_minutes)
            ),
            enable_predictions=bool(analytics_data.get("enable_predictions", _ana.enable_predictions)),
            enable_anomaly_detection=bool(
                analytics_data.get("enable_anomaly_detection", _ana.enable_anomaly_detection)
            ),
        )

        alerting = AlertingConfig(
            cooldown_minutes=float(
                _layer("LABWATCH_ALERT_COOLDOWN_MINUTES", alerting_data, "cooldown_minutes", _alr.cooldown_minutes)
            ),
            history_limit=int(alerting_data.get("history_limit", _alr.history_limit)),
            history_days=float(alerting_data.get("history_days", _alr.history_days)),
            active_expiry_minutes=float(
                alerting_data.get("active_expiry_minutes", _alr.active_expiry_minutes)
            ),
            channel_timeout_seconds=float(
                alerting_data.get("channel_timeout_seconds", _alr.channel_timeout_seconds)
            ),
            email=_email_config(alerting_data.get("email", {})),
            webhook=_webhook_config(alerting_data.get("webhook", {})),
            slack=_chat_config(alerting_data.get("slack", {}), "LABWATCH_SLACK_WEBHOOK_URL"),
            discord=_chat_config(alerting_data.get("discord", {}), "LABWATCH_DISCORD_WEBHOOK_URL"),
            pushover=_pushover_config(alerting_data.get("pushover", {})),
        )

        services = tuple(
            parse_service(entry, monitor.default_timeout_ms)
            for entry in toml_data.get("services", [])
        )

        return cls(
            project_path=project,
            monitor=monitor,
            retention=retention,
            analytics=analytics,
            alerting=alerting,
            services=services,
        )


def _layer(env_var: str, section: dict, key: str, default: Any) -> Any:
    return os.environ.get(env_var, section.get(key, default))


def _email_config(data: dict) -> EmailConfig:
    data = dict(data)
    if "recipients" in data:
        data["recipients"] = tuple(data["recipients"])
    if "LABWATCH_SMTP_PASSWORD" in os.environ:
        data["password"] = os.environ["LABWATCH_SMTP_PASSWORD"]
    data.setdefault("enabled", bool(data.get("recipients")))
    return EmailConfig(**data)


def _webhook_config(data: dict) -> WebhookConfig:
    data = dict(data)
    data.setdefault("enabled", bool(data.get("url")))
    return WebhookConfig(**data)


def _pushover_config(data: dict) -> PushoverConfig:
    data = dict(data)
    data.setdefault("enabled", bool(data.get("app_token") and data.get("user_key")))
    return PushoverConfig(**data)


def _chat_config(data: dict, env_var: str) -> ChatWebhookConfig:
    url = os.environ.get(env_var, data.get("webhook_url", ""))
    return ChatWebhookConfig(enabled=bool(data.get("enabled", bool(url))), webhook_url=url)


def parse_service(entry: dict, default_timeout_ms: int = 5000) -> ServiceTarget:
    """Build a ServiceTarget from a ``[[services]]`` table."""
    from labwatch.core.probe import detect_protocol

    url = entry["url"]
    protocol = entry.get("protocol")
    try:
        proto = Protocol(protocol.lower()) if protocol else detect_protocol(url)
    except ValueError:
        raise ValueError(f"Unsupported protocol for service {entry.get('id')}: {protocol}") from None
    codes = entry.get("expected_status_codes")

    return ServiceTarget(
        id=str(entry["id"]),
        name=entry.get("name", str(entry["id"])),
        url=url,
        protocol=proto,
        timeout_ms=int(entry.get("timeout_ms", default_timeout_ms)),
        critical=bool(entry.get("critical", False)),
        expected_status_codes=tuple(codes) if codes else (200, 301, 302),
        expected_text=entry.get("expected_text"),
        host=entry.get("host"),
        port=entry.get("port"),
        container=entry.get("container"),
        verify_ssl=bool(entry.get("verify_ssl", True)),
    )
