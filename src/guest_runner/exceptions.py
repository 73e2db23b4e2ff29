"""Exception hierarchy for guest-runner.

All exceptions inherit from GuestRunnerError.

Hierarchy:
    GuestRunnerError (base)
    ├── TransientError (retryable marker base)
    │   └── VCenterTransientError       ← connection reset / unreachable at login
    ├── PermanentError (non-retryable marker base)
    │   ├── ConfigurationError          ← missing or invalid settings
    │   ├── VCenterConnectionError      ← login rejected, bad endpoint
    │   ├── VmNotFoundError             ← target VM or datacenter not found
    │   ├── GuestAuthenticationError    ← guest credentials rejected
    │   ├── GuestOperationError         ← guest-operations call failed
    │   ├── TransferError               ← transfer URL request failed
    │   └── RunError                    ← a run stage aborted
    │       ├── StagingError
    │       ├── ProcessLaunchError
    │       ├── ProcessPollError
    │       ├── OutputRetrievalError
    │       └── RunBudgetExceededError
    └── InputValidationError (caller-bug marker base)
        └── ScriptPayloadError          ← unreadable or oversized script

A process that never reports completion is not an exception: the run
returns a RunResult with outcome TIMED_OUT. Cleanup failures are never
raised either; they are recorded as CleanupResult entries.
"""

from __future__ import annotations

from typing import Any


class GuestRunnerError(Exception):
    """Base exception for all guest-runner errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(GuestRunnerError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(GuestRunnerError):
    """Base for permanent errors that won't succeed on retry."""


class InputValidationError(GuestRunnerError):
    """Base for input validation errors (caller bugs, not guest failures)."""


# =============================================================================
# Configuration and Session
# =============================================================================


class ConfigurationError(PermanentError):
    """Required setting missing or invalid.

    Raised before any connection is attempted.
    """


class ScriptPayloadError(InputValidationError):
    """Script payload could not be read or exceeds the size limit."""


class VCenterTransientError(TransientError):
    """vCenter temporarily unreachable.

    Raised for socket-level failures during login. Retried with backoff by
    VSphereSession.connect().
    """


class VCenterConnectionError(PermanentError):
    """vCenter login failed permanently (bad credentials, bad endpoint)."""


class VmNotFoundError(PermanentError):
    """Target virtual machine or datacenter does not exist in the inventory."""


# =============================================================================
# Guest Operations
# =============================================================================


class GuestAuthenticationError(PermanentError):
    """Guest credentials were rejected.

    A configuration defect, never retried. Raised before any guest-side
    file exists.
    """


class GuestOperationError(PermanentError):
    """A guest-operations API call failed.

    Attributes:
        operation: Name of the failed call (e.g. "start_process")
    """

    def __init__(self, message: str, operation: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("operation", operation)
        super().__init__(message, ctx)
        self.operation = operation


class TransferError(PermanentError):
    """Upload or download against a transfer URL failed.

    Attributes:
        status_code: HTTP status, or None when the request never completed
        body_snippet: Start of the response body (bounded) for diagnostics
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body_snippet: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"status_code": status_code, "body_snippet": body_snippet})
        super().__init__(message, ctx)
        self.status_code = status_code
        self.body_snippet = body_snippet


# =============================================================================
# Run Stages
# =============================================================================


class RunError(PermanentError):
    """A run stage aborted the pipeline.

    Cleanup has already been attempted when this reaches the caller;
    its results are in context["cleanup"].
    """


class StagingError(RunError):
    """Script upload to the guest failed."""


class ProcessLaunchError(RunError):
    """Guest process could not be started."""


class ProcessPollError(RunError):
    """Querying the guest process status failed."""


class OutputRetrievalError(RunError):
    """Guest output file could not be downloaded."""


class RunBudgetExceededError(RunError):
    """The overall run budget elapsed before the run finished."""
