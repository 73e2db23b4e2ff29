"""Runner configuration for guest-runner.

RunnerConfig holds the tuning knobs of a run: polling cadence, the two
nested deadlines, transfer settings and the guest-side file policy.

Example:
    ```python
    from guest_runner import GuestScriptRunner, RunnerConfig

    config = RunnerConfig(completion_timeout_seconds=60, poll_interval_seconds=2)
    runner = GuestScriptRunner(guest_ops, config)
    ```
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from guest_runner import constants
from guest_runner.models import GuestFileAttributes


class RunnerConfig(BaseModel):
    """Configuration for GuestScriptRunner.

    Attributes:
        poll_interval_seconds: Delay between process-status queries.
        completion_timeout_seconds: How long after launch to wait for the
            guest process to report an end time. Expiry is not fatal.
        run_timeout_seconds: Budget for the whole run. Expiry is fatal.
        retrieval_reserve_seconds: Part of the run budget kept for output
            retrieval; polling stops early enough to leave it.
        http_timeout_seconds: Timeout of each transfer URL request.
        cleanup_timeout_seconds: Limit on deleting each guest file.
        verify_tls: Verify certificates of transfer URLs.
        guest_tmp_dir: Guest directory for the script and output files.
            Restricted to characters that need no shell quoting.
        file_attributes: Ownership and mode of the staged script.
        use_sudo: Run the script through sudo inside the guest.
        output_dir: Local directory for <target>.txt output files.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    poll_interval_seconds: float = Field(
        default=constants.DEFAULT_POLL_INTERVAL_SECONDS,
        gt=0,
        le=60,
        description="Delay between process-status queries",
    )
    completion_timeout_seconds: float = Field(
        default=constants.DEFAULT_COMPLETION_TIMEOUT_SECONDS,
        gt=0,
        description="Wait for guest process completion (non-fatal on expiry)",
    )
    run_timeout_seconds: float = Field(
        default=constants.DEFAULT_RUN_TIMEOUT_SECONDS,
        gt=0,
        description="Overall run budget (fatal on expiry)",
    )
    retrieval_reserve_seconds: float = Field(
        default=constants.DEFAULT_RETRIEVAL_RESERVE_SECONDS,
        ge=0,
        description="Run budget reserved for output retrieval after polling",
    )
    http_timeout_seconds: float = Field(
        default=constants.DEFAULT_HTTP_TIMEOUT_SECONDS,
        gt=0,
        description="Per-request timeout for transfer URLs",
    )
    cleanup_timeout_seconds: float = Field(
        default=constants.DEFAULT_CLEANUP_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Per-file timeout for guest cleanup",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify TLS certificates of transfer URLs",
    )

    guest_tmp_dir: str = Field(
        default=constants.DEFAULT_GUEST_TMP_DIR,
        pattern=r"^/[A-Za-z0-9._/-]*$",
        description="Absolute guest directory for run artifacts",
    )
    file_attributes: GuestFileAttributes = Field(default_factory=GuestFileAttributes)
    use_sudo: bool = Field(
        default=True,
        description="Run the staged script with sudo",
    )

    output_dir: Path = Field(
        default=Path(),
        description="Local directory receiving <target>.txt",
    )

    @model_validator(mode="after")
    def _check_reserve_fits_budget(self) -> RunnerConfig:
        if self.retrieval_reserve_seconds >= self.run_timeout_seconds:
            raise ValueError(
                f"retrieval_reserve_seconds ({self.retrieval_reserve_seconds}) must be smaller "
                f"than run_timeout_seconds ({self.run_timeout_seconds})"
            )
        return self
