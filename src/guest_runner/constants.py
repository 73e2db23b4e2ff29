"""Constants for guest-runner timing, paths and protocol details."""

from typing import Final

# ============================================================================
# Run Timing
# ============================================================================

DEFAULT_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Interval between process-status queries while waiting for completion."""

DEFAULT_COMPLETION_TIMEOUT_SECONDS: Final[float] = 300.0
"""How long to wait for the guest process to report an end time (5 minutes)."""

DEFAULT_RUN_TIMEOUT_SECONDS: Final[float] = 600.0
"""Wall-clock budget for a whole run, staging through retrieval (10 minutes)."""

DEFAULT_RETRIEVAL_RESERVE_SECONDS: Final[float] = 30.0
"""Time kept back from the run budget so output can still be fetched after polling gives up."""

DEFAULT_HTTP_TIMEOUT_SECONDS: Final[float] = 180.0
"""Timeout for a single transfer URL request (3 minutes)."""

DEFAULT_CLEANUP_TIMEOUT_SECONDS: Final[float] = 15.0
"""Limit on deleting one guest file; cleanup runs after the run budget has closed."""

# ============================================================================
# vCenter Connection
# ============================================================================

VCENTER_SDK_PATH: Final[str] = "/sdk"
"""SOAP endpoint path on the vCenter host."""

VCENTER_CONNECT_MAX_RETRIES: Final[int] = 3
"""Connection attempts before a transient vCenter failure is reported."""

VCENTER_CONNECT_RETRY_MIN_SECONDS: Final[float] = 0.5
"""Minimum backoff between connection attempts."""

VCENTER_CONNECT_RETRY_MAX_SECONDS: Final[float] = 5.0
"""Maximum backoff between connection attempts."""

# ============================================================================
# Guest Files
# ============================================================================

DEFAULT_GUEST_TMP_DIR: Final[str] = "/tmp"  # noqa: S108
"""Guest directory that receives the staged script and its output file."""

GUEST_SCRIPT_PREFIX: Final[str] = "guest_runner_script_"
GUEST_SCRIPT_SUFFIX: Final[str] = ".sh"
GUEST_OUTPUT_PREFIX: Final[str] = "guest_runner_out_"
GUEST_OUTPUT_SUFFIX: Final[str] = ".out"

DEFAULT_GUEST_OWNER_ID: Final[int] = 0
"""Owner uid of the staged script (root)."""

DEFAULT_GUEST_GROUP_ID: Final[int] = 0
"""Group gid of the staged script (root)."""

DEFAULT_GUEST_PERMISSIONS: Final[int] = 0o777
"""Permission bits of the staged script (world-executable)."""

# ============================================================================
# Process Launch
# ============================================================================

GUEST_SHELL_PATH: Final[str] = "/bin/bash"
"""Shell used both as the launched program and as the script interpreter."""

EXIT_MARKER_PREFIX: Final[str] = "EXIT:"
"""Prefix of the trailing line carrying the inner script's exit code."""

EXIT_MARKER_TAIL_BYTES: Final[int] = 256
"""Bytes read from the end of the local output file to find the EXIT line."""

# ============================================================================
# Transfers and Local Output
# ============================================================================

TRANSFER_CONTENT_TYPE: Final[str] = "application/octet-stream"
"""Content-Type declared for script uploads."""

DIAGNOSTIC_SNIPPET_BYTES: Final[int] = 2048
"""Maximum response body bytes captured into a failed-transfer error."""

DOWNLOAD_CHUNK_SIZE: Final[int] = 64 * 1024
"""Chunk size when streaming guest output to disk."""

LOCAL_OUTPUT_SUFFIX: Final[str] = ".txt"
"""Suffix of the local output file named after the target VM."""

DEFAULT_SCRIPT_FILE: Final[str] = "script.sh"
"""Script read by the CLI when no path is given."""

MAX_SCRIPT_SIZE_BYTES: Final[int] = 16 * 1024 * 1024
"""Largest script payload accepted for staging."""
