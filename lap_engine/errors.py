"""
Lap Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Exception hierarchy and error code registry for the lap engine.

ERROR CATEGORIES:
1. Validation Errors - Rejected before any remote call
2. Timeout Errors - A guarded operation exceeded its bound
3. Network / Ledger Errors - Remote call failed
4. Partial Failures - Some per-worker operations failed
5. Fatal Errors - A phase produced no usable result
6. Checkpoint Errors - Session state cannot be loaded/resumed

PROPAGATION:
- Per-item failures are recorded in phase results and never
  raised past the phase boundary
- Only FatalError reaches the orchestrator loop

============================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    LEDGER = "LEDGER"
    PARTIAL = "PARTIAL"
    FATAL = "FATAL"
    CHECKPOINT = "CHECKPOINT"
    INTERNAL = "INTERNAL"


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    is_retryable: bool
    description: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "VAL_POOL_SIZE": ErrorCodeInfo(
        code="VAL_POOL_SIZE",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Worker pool size outside the allowed range",
    ),
    "VAL_AMOUNT": ErrorCodeInfo(
        code="VAL_AMOUNT",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Non-positive or malformed amount",
    ),
    "VAL_OVER_DISTRIBUTION": ErrorCodeInfo(
        code="VAL_OVER_DISTRIBUTION",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Distribution plan exceeds the available total",
    ),
    "VAL_STRATEGY": ErrorCodeInfo(
        code="VAL_STRATEGY",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Unknown trading strategy",
    ),
    "VAL_STAGE": ErrorCodeInfo(
        code="VAL_STAGE",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Invalid restart point",
    ),
    "VAL_CONFIG": ErrorCodeInfo(
        code="VAL_CONFIG",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Engine configuration is invalid",
    ),

    # ========== TIMEOUT ERRORS ==========
    "TMO_GUARD": ErrorCodeInfo(
        code="TMO_GUARD",
        category=ErrorCategory.TIMEOUT,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Guarded operation exceeded its bound",
    ),

    # ========== NETWORK / LEDGER ERRORS ==========
    "NET_CONNECTION_FAILED": ErrorCodeInfo(
        code="NET_CONNECTION_FAILED",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Could not reach the ledger",
    ),
    "NET_RATE_LIMITED": ErrorCodeInfo(
        code="NET_RATE_LIMITED",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Remote side rate-limited the request",
    ),
    "NET_BAD_RESPONSE": ErrorCodeInfo(
        code="NET_BAD_RESPONSE",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Remote side returned an unusable response",
    ),
    "LED_INSUFFICIENT_FUNDS": ErrorCodeInfo(
        code="LED_INSUFFICIENT_FUNDS",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Source identity cannot cover the transfer",
    ),
    "LED_REJECTED": ErrorCodeInfo(
        code="LED_REJECTED",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Ledger rejected the operation",
    ),
    "LED_NOT_FOUND": ErrorCodeInfo(
        code="LED_NOT_FOUND",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Referenced resource or pair does not exist",
    ),

    # ========== PHASE ERRORS ==========
    "PHS_PARTIAL": ErrorCodeInfo(
        code="PHS_PARTIAL",
        category=ErrorCategory.PARTIAL,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Some per-worker operations failed",
    ),
    "FAT_PHASE": ErrorCodeInfo(
        code="FAT_PHASE",
        category=ErrorCategory.FATAL,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Phase produced no usable result; session halted",
    ),

    # ========== CHECKPOINT ERRORS ==========
    "CHK_MISSING": ErrorCodeInfo(
        code="CHK_MISSING",
        category=ErrorCategory.CHECKPOINT,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Session checkpoint not found",
    ),
    "CHK_INCOMPLETE": ErrorCodeInfo(
        code="CHK_INCOMPLETE",
        category=ErrorCategory.CHECKPOINT,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Checkpoint lacks data required for the requested stage",
    ),
    "CHK_REGRESSION": ErrorCodeInfo(
        code="CHK_REGRESSION",
        category=ErrorCategory.CHECKPOINT,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Forward progress attempted to move the stage backward",
    ),
    "CHK_EXISTS": ErrorCodeInfo(
        code="CHK_EXISTS",
        category=ErrorCategory.CHECKPOINT,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="A session with this reference already exists",
    ),
    "CHK_WRITE_FAILED": ErrorCodeInfo(
        code="CHK_WRITE_FAILED",
        category=ErrorCategory.CHECKPOINT,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Session store write could not be verified",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}


# ============================================================
# EXCEPTIONS
# ============================================================

class LapEngineError(Exception):
    """Base exception for the lap engine."""

    default_code = "INTERNAL"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if is_retryable is None:
            is_retryable = get_error_info(self.code).is_retryable
        self.is_retryable = is_retryable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "is_retryable": self.is_retryable,
            "context": self.context,
        }


class ValidationError(LapEngineError, ValueError):
    """Input rejected before any remote call."""

    default_code = "VAL_AMOUNT"


class ConfigurationError(LapEngineError):
    """Configuration is invalid."""

    default_code = "VAL_CONFIG"


class GuardTimeoutError(LapEngineError, TimeoutError):
    """A guarded operation exceeded its deadline."""

    default_code = "TMO_GUARD"

    def __init__(self, label: str, bound_seconds: float):
        super().__init__(
            f"{label} timed out after {int(round(bound_seconds * 1000))}ms",
            context={"label": label, "bound_seconds": bound_seconds},
        )
        self.label = label
        self.bound_seconds = bound_seconds

    @property
    def bound_ms(self) -> int:
        return int(round(self.bound_seconds * 1000))


class LedgerError(LapEngineError):
    """The ledger refused or failed an operation."""

    default_code = "LED_REJECTED"


class NetworkError(LedgerError):
    """Communication with a remote service failed."""

    default_code = "NET_CONNECTION_FAILED"


class InsufficientFundsError(LedgerError):
    """Source identity cannot cover a transfer."""

    default_code = "LED_INSUFFICIENT_FUNDS"


class NotFoundError(LapEngineError):
    """A referenced pair or resource does not exist."""

    default_code = "LED_NOT_FOUND"


class PartialFailure(LapEngineError):
    """
    One or more per-worker operations failed inside a phase.

    Only used for reporting; never raised past a phase boundary.
    """

    default_code = "PHS_PARTIAL"

    def __init__(self, phase: str, failed: int, total: int):
        super().__init__(
            f"{phase}: {failed}/{total} operations failed",
            context={"phase": phase, "failed": failed, "total": total},
        )
        self.phase = phase
        self.failed = failed
        self.total = total


class FatalError(LapEngineError):
    """A phase cannot produce a usable result; the session halts."""

    default_code = "FAT_PHASE"

    def __init__(
        self,
        reason: str,
        phase: Optional[str] = None,
        timed_out: bool = False,
    ):
        super().__init__(reason, context={"phase": phase, "timed_out": timed_out})
        self.reason = reason
        self.phase = phase
        self.timed_out = timed_out


class CheckpointError(LapEngineError):
    """Session checkpoint missing, duplicated, incomplete or regressing."""

    default_code = "CHK_MISSING"


class StateTransitionError(LapEngineError):
    """Invalid lap phase transition."""

    default_code = "INTERNAL"


def is_transient(exc: BaseException) -> bool:
    """Check whether an exception is worth retrying."""
    if isinstance(exc, LapEngineError):
        return exc.is_retryable
    return isinstance(exc, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "RETRYABLE_ERROR_CODES",
    "get_error_info",
    "LapEngineError",
    "ValidationError",
    "ConfigurationError",
    "GuardTimeoutError",
    "LedgerError",
    "NetworkError",
    "InsufficientFundsError",
    "NotFoundError",
    "PartialFailure",
    "FatalError",
    "CheckpointError",
    "StateTransitionError",
    "is_transient",
]
