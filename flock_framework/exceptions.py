"""
Flock Coordination Framework - Exception Hierarchy

Structured exception taxonomy for the coordination layer. Every failure
mode carries context, a recovery hint and a severity classification so
callers can decide between retrying, dropping and degrading.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


# ══════════════════════════════════════════════════════════════════════════════
# SEVERITY CLASSIFICATION
# ══════════════════════════════════════════════════════════════════════════════

class ExceptionSeverity(Enum):
    """Severity levels for exceptions."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class RecoveryAction(Enum):
    """Recommended recovery actions."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    FALLBACK = "fallback"
    SKIP = "skip"
    ABORT = "abort"
    RECONFIGURE = "reconfigure"


# ══════════════════════════════════════════════════════════════════════════════
# BASE EXCEPTION
# ══════════════════════════════════════════════════════════════════════════════

class FlockError(Exception):
    """
    Base exception for all coordination layer errors.
    Provides structured context, severity, and recovery guidance.
    """

    def __init__(
        self,
        message: str,
        severity: ExceptionSeverity = ExceptionSeverity.ERROR,
        recovery: RecoveryAction = RecoveryAction.ABORT,
        recovery_hint: str = "",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        retryable: bool = False,
        error_code: str = "FLOCK-0000",
    ):
        super().__init__(message)
        self.severity = severity
        self.recovery = recovery
        self.recovery_hint = recovery_hint
        self.context = context or {}
        self.cause = cause
        self.retryable = retryable
        self.error_code = error_code
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging and tool responses."""
        return {
            "error_code": self.error_code,
            "severity": self.severity.value,
            "message": str(self),
            "recovery_action": self.recovery.value,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp,
            "exception_type": self.__class__.__name__,
        }

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} [{self.error_code}] "
            f"severity={self.severity.value} "
            f"message='{str(self)[:80]}'>"
        )


class ConfigurationError(FlockError):
    """Invalid or unsupported configuration."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-CFG-0001")
        kwargs.setdefault("recovery", RecoveryAction.RECONFIGURE)
        super().__init__(message, **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# BUS EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class BusError(FlockError):
    """Base class for message bus errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-BUS-0000")
        super().__init__(message, **kwargs)


class BusConnectionError(BusError):
    """The bus endpoint is unreachable or the connection was lost."""

    def __init__(self, url: str, reason: str = "", attempts: int = 0, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-BUS-0001")
        kwargs.setdefault("recovery", RecoveryAction.RETRY_WITH_BACKOFF)
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("context", {"url": url, "reason": reason, "attempts": attempts})
        message = f"Bus unreachable at {url}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, **kwargs)


class BusClosedError(BusError):
    """Operation attempted on a bus connection that is not open."""

    def __init__(self, operation: str = "", **kwargs):
        kwargs.setdefault("error_code", "FLOCK-BUS-0002")
        kwargs.setdefault("recovery", RecoveryAction.ABORT)
        kwargs.setdefault("context", {"operation": operation})
        super().__init__(f"Bus connection is closed ({operation or 'unknown operation'})", **kwargs)


class RequestTimeoutError(BusError):
    """No reply arrived on the reply inbox before the deadline."""

    def __init__(self, topic: str, timeout: float, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-BUS-0003")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.FALLBACK)
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("context", {"topic": topic, "timeout": timeout})
        super().__init__(f"No reply on '{topic}' within {timeout}s", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATION EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class ValidationError(FlockError):
    """Base class for malformed inbound messages."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-VAL-0000")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        super().__init__(message, **kwargs)


class TaskValidationError(ValidationError):
    """Task message is missing a required field or has the wrong shape."""

    def __init__(self, field: str, reason: str = "missing", **kwargs):
        kwargs.setdefault("error_code", "FLOCK-VAL-0001")
        kwargs.setdefault("context", {"field": field, "reason": reason})
        super().__init__(f"Invalid task: '{field}' {reason}", **kwargs)


class MessageValidationError(ValidationError):
    """Event, broadcast or envelope message could not be decoded."""

    def __init__(self, kind: str, reason: str = "", **kwargs):
        kwargs.setdefault("error_code", "FLOCK-VAL-0002")
        kwargs.setdefault("context", {"kind": kind, "reason": reason})
        super().__init__(f"Invalid {kind} message: {reason}", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# PROCESSING EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class ProcessingError(FlockError):
    """A task handler failed while executing."""

    def __init__(self, task_id: str, reason: str = "", **kwargs):
        kwargs.setdefault("error_code", "FLOCK-PROC-0001")
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        kwargs.setdefault("context", {"task_id": task_id, "reason": reason})
        super().__init__(reason or f"Task {task_id} failed", **kwargs)


class TaskTimeoutError(ProcessingError):
    """Task handler exceeded the task's own timeout."""

    def __init__(self, task_id: str, timeout_ms: int, **kwargs):
        kwargs.setdefault("error_code", "FLOCK-PROC-0002")
        kwargs.setdefault("retryable", True)
        super().__init__(task_id, f"Task {task_id} timed out after {timeout_ms}ms", **kwargs)
