from __future__ import annotations

from enum import Enum


class ConfigurationError(ValueError):
    """Policy weights, thresholds or limits are missing or inconsistent."""


class SignalUnavailable(RuntimeError):
    """A collector or provider produced no usable signal."""

    def __init__(self, signal: str, reason: str = "no data"):
        super().__init__(f"{signal} signal unavailable: {reason}")
        self.signal = signal
        self.reason = reason


class StoreUnavailable(RuntimeError):
    """A backing store could not complete a read or write."""


class MFAErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_CODE = "invalid_code"
    LOCKED_OUT = "locked_out"
    METHOD_NOT_CONFIGURED = "method_not_configured"
    SERVICE_UNAVAILABLE = "service_unavailable"
