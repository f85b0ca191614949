"""Protocol-specific reachability probes (HTTP, TCP family, Docker, ping, custom)."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, NamedTuple
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from labwatch.errors import ProbeConfigError, ProbeTimeout
from labwatch.models.enums import ProbeStatus, Protocol
from labwatch.models.runtime import ProbeResult, ServiceTarget

logger = logging.getLogger("labwatch.probe")

CustomCheck = Callable[[ServiceTarget], Awaitable["bool | ProbeResult"]]

# Ports tried, in order, when a ping target has no explicit port
PING_FALLBACK_PORTS = (80, 443, 22)

_SCHEME_PROTOCOLS: dict[str, Protocol] = {
    "http": Protocol.HTTP,
    "https": Protocol.HTTPS,
    "tcp": Protocol.TCP,
    "ssh": Protocol.SSH,
    "mysql": Protocol.MYSQL,
    "redis": Protocol.REDIS,
    "rediss": Protocol.REDIS,
    "docker": Protocol.DOCKER,
    "icmp": Protocol.PING,
    "ping": Protocol.PING,
}


class _Outcome(NamedTuple):
    status: ProbeStatus
    error: str | None = None
    details: dict[str, Any] | None = None


def detect_protocol(url: str) -> Protocol:
    """Guess the probe protocol from a URL scheme. Defaults to HTTP."""
    if "://" not in url:
        return Protocol.HTTP
    scheme = url.split("://", 1)[0].lower()
    return _SCHEME_PROTOCOLS.get(scheme, Protocol.HTTP)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, ConnectionRefusedError):
        return "Connection refused"
    return str(exc) or type(exc).__name__


class ProtocolProbe:
    """Stateless dispatcher over protocol checks.

    Every check races against the target's timeout; the first to settle wins.
    Network failures become ``offline`` results, configuration problems
    become ``error`` results. Nothing is retried here.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        custom_checks: dict[str, CustomCheck] | None = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._custom_checks: dict[str, CustomCheck] = dict(custom_checks or {})

    def register_custom(self, service_id: str, check: CustomCheck) -> None:
        """Attach a predicate used by targets with the ``custom`` protocol."""
        self._custom_checks[service_id] = check

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def check(self, target: ServiceTarget, timeout_ms: float | None = None) -> ProbeResult:
        """Probe one target and return its status, latency and error."""
        timeout_ms = timeout_ms or target.timeout_ms
        started = time.perf_counter()

        try:
            outcome = await asyncio.wait_for(self._dispatch(target), timeout_ms / 1000)
        except asyncio.TimeoutError:
            outcome = _Outcome(ProbeStatus.OFFLINE, str(ProbeTimeout(timeout_ms)))
        except ProbeConfigError as exc:
            logger.error("Probe misconfigured for %s: %s", target.id, exc)
            outcome = _Outcome(ProbeStatus.ERROR, str(exc))
        except (aiohttp.ClientError, OSError) as exc:
            outcome = _Outcome(ProbeStatus.OFFLINE, _describe(exc))
        except Exception as exc:
            logger.exception("Probe for %s raised unexpectedly", target.id)
            outcome = _Outcome(ProbeStatus.ERROR, _describe(exc))

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.debug(
            "Probe %s (%s): %s in %.1fms", target.id, target.protocol, outcome.status.value, elapsed_ms
        )
        return ProbeResult(
            status=outcome.status,
            response_time_ms=elapsed_ms,
            error=outcome.error,
            details=dict(outcome.details or {}),
        )

    async def _dispatch(self, target: ServiceTarget) -> _Outcome:
        try:
            protocol = Protocol(target.protocol)
        except ValueError:
            raise ProbeConfigError(f"Unsupported protocol: {target.protocol}") from None

        match protocol:
            case Protocol.HTTP | Protocol.HTTPS:
                return await self._check_http(target)
            case Protocol.TCP | Protocol.SSH | Protocol.MYSQL | Protocol.REDIS:
                return await self._check_tcp(target)
            case Protocol.DOCKER:
                return await self._check_docker(target)
            case Protocol.PING:
                return await self._check_ping(target)
            case Protocol.CUSTOM:
                return await self._check_custom(target)
            case _:
                raise ProbeConfigError(f"Unsupported protocol: {protocol.value}")

    async def _check_http(self, target: ServiceTarget) -> _Outcome:
        session = await self._get_session()
        ssl = None if target.verify_ssl else False
        async with session.get(target.url, allow_redirects=False, ssl=ssl) as resp:
            details = {"status_code": resp.status}
            if resp.status not in target.expected_status_codes:
                return _Outcome(ProbeStatus.OFFLINE, f"HTTP {resp.status}", details)
            if target.expected_text:
                body = await resp.text(errors="replace")
                if target.expected_text not in body:
                    return _Outcome(ProbeStatus.OFFLINE, "Expected text not found", details)
            return _Outcome(ProbeStatus.ONLINE, None, details)

    async def _check_tcp(self, target: ServiceTarget) -> _Outcome:
        host, port = target.resolve_endpoint()
        if port is None:
            raise ProbeConfigError(f"No port for {target.protocol} target {target.id}")
        await _connect(host, port)
        return _Outcome(ProbeStatus.ONLINE, None, {"host": host, "port": port})

    async def _check_docker(self, target: ServiceTarget) -> _Outcome:
        container = target.container or target.name
        api = _docker_api_base(target)
        try:
            session = await self._get_session()
            async with session.get(f"{api}/containers/{container}/json") as resp:
                if resp.status == 404:
                    return _Outcome(ProbeStatus.OFFLINE, f"Container {container} not found")
                resp.raise_for_status()
                info = await resp.json()
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            logger.info("Docker API check failed for %s (%s), falling back to TCP", target.id, exc)
            return await self._check_tcp(target)

        state = info.get("State", {})
        details = {"container": container, "state": state.get("Status", "unknown")}
        if state.get("Running"):
            return _Outcome(ProbeStatus.ONLINE, None, details)
        return _Outcome(ProbeStatus.OFFLINE, f"Container {details['state']}", details)

    async def _check_ping(self, target: ServiceTarget) -> _Outcome:
        host, _ = target.resolve_endpoint()
        ports = (target.port,) if target.port else PING_FALLBACK_PORTS
        last_error: OSError | None = None
        for port in ports:
            try:
                await _connect(host, port)
            except OSError as exc:
                last_error = exc
                continue
            return _Outcome(ProbeStatus.ONLINE, None, {"host": host, "port": port})
        return _Outcome(ProbeStatus.OFFLINE, _describe(last_error) if last_error else "Unreachable")

    async def _check_custom(self, target: ServiceTarget) -> _Outcome:
        check = self._custom_checks.get(target.id)
        if check is None:
            return await self._check_http(target)

        outcome = await check(target)
        if isinstance(outcome, ProbeResult):
            if outcome.status is ProbeStatus.PENDING:
                return _Outcome(ProbeStatus.ERROR, "Custom check returned pending", outcome.details)
            return _Outcome(outcome.status, outcome.error, outcome.details)
        if outcome:
            return _Outcome(ProbeStatus.ONLINE)
        return _Outcome(ProbeStatus.OFFLINE, "Custom check failed")


async def _connect(host: str, port: int) -> None:
    _reader, writer = await asyncio.open_connection(host, port)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        logger.debug("Error closing probe connection to %s:%d", host, port)


def _docker_api_base(target: ServiceTarget) -> str:
    """Docker Engine API base URL; ``docker://host:port`` maps to plain HTTP."""
    parts = urlsplit(target.url if "://" in target.url else f"docker://{target.url}")
    if parts.scheme in ("http", "https"):
        return target.url.rstrip("/")
    host, port = target.resolve_endpoint()
    return urlunsplit(("http", f"{host}:{port}", "", "", "")).rstrip("/")


def with_details(result: ProbeResult, **details: Any) -> ProbeResult:
    """Return a copy of ``result`` with extra detail fields merged in."""
    return replace(result, details={**result.details, **details})
