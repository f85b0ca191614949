"""Exception taxonomy for probing, analytics and alert delivery."""

from __future__ import annotations


class LabwatchError(Exception):
    """Base class for labwatch errors."""


class ProbeError(LabwatchError):
    """A probe could not produce a result."""


class ProbeTimeout(ProbeError):
    """The probe did not settle before its deadline."""

    def __init__(self, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms:g}ms")


class ProbeConfigError(ProbeError):
    """The target is misconfigured (e.g. unsupported protocol)."""


class ChannelDeliveryError(LabwatchError):
    """A single alert channel failed to deliver."""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel}: {reason}")


class InsufficientDataError(LabwatchError):
    """Too few samples for a statistical computation."""

    def __init__(self, required: int, actual: int) -> None:
        self.required = required
        self.actual = actual
        super().__init__(f"need at least {required} samples, have {actual}")
