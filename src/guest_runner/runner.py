"""Run pipeline - execute a script inside a guest through guest operations.

A run stages the script into the guest filesystem, launches it as a
detached shell, polls until the process reports an end time or the
completion deadline passes, downloads the captured output and removes the
guest-side files.

Example:
    ```python
    async with VSphereSession.from_settings(settings) as session:
        ops = session.guest_operations(await session.find_vm("web-01"))
        runner = GuestScriptRunner(ops, RunnerConfig())
        result = await runner.run(
            RunRequest(target="web-01", credentials=creds, script=b"echo hi\\n")
        )
        print(result.output_path.read_text())  # "hi\\nEXIT:0\\n"
    ```

Failure policy:
    - Credential rejection aborts before any guest file exists.
    - Staging, launch, polling and retrieval errors abort the run.
    - A process that never reports completion is not an error: the run
      still retrieves whatever output exists and returns TIMED_OUT.
    - Cleanup runs once per created guest path whatever the outcome, and
      its failures are only recorded.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

from guest_runner import constants
from guest_runner._logging import get_logger
from guest_runner.config import RunnerConfig
from guest_runner.exceptions import (
    GuestOperationError,
    GuestRunnerError,
    OutputRetrievalError,
    ProcessLaunchError,
    ProcessPollError,
    RunBudgetExceededError,
    StagingError,
    TransferError,
)
from guest_runner.models import (
    CleanupResult,
    ProcessState,
    ProcessStatus,
    RunContext,
    RunOutcome,
    RunResult,
    TimingBreakdown,
    parse_exit_marker,
)
from guest_runner.transport import TransferClient

if TYPE_CHECKING:
    from guest_runner.guest_ops import GuestOperations
    from guest_runner.models import GuestCredentials, GuestFileAttributes, RunRequest

logger = get_logger(__name__)


# =============================================================================
# Stages
# =============================================================================


async def validate_credentials(ops: GuestOperations, credentials: GuestCredentials, target: str) -> None:
    """Gate the run on usable guest credentials.

    Raises:
        GuestAuthenticationError: Credentials rejected (never retried)
        GuestOperationError: The validation call itself failed
    """
    await ops.validate_credentials(credentials)
    logger.info("Authentication successful: %s@%s", credentials.username, target)


async def stage_script(
    ops: GuestOperations,
    transfer: TransferClient,
    credentials: GuestCredentials,
    payload: bytes,
    guest_path: str,
    attributes: GuestFileAttributes,
    *,
    on_created: Callable[[str], None] | None = None,
) -> int:
    """Upload the script bytes to guest_path.

    on_created is called as soon as the guest has accepted the file, so a
    failing PUT still leaves the path registered for cleanup.

    Returns:
        Uploaded byte count (equals len(payload); zero-length is valid)

    Raises:
        StagingError: Transfer handle request or PUT failed
    """
    try:
        handle = await ops.initiate_upload(credentials, guest_path, attributes, len(payload), True)
        if on_created is not None:
            on_created(guest_path)
        url = ops.resolve_transfer_url(handle)
        uploaded = await transfer.upload(url, payload)
    except (GuestOperationError, TransferError) as e:
        raise StagingError(
            f"Failed to stage script at {guest_path}: {e.message}",
            context={**e.context, "guest_path": guest_path},
        ) from e

    logger.info("Script uploaded to guest: %s (size=%d)", guest_path, uploaded)
    return uploaded


def build_launch_command(script_path: str, output_path: str, *, use_sudo: bool = True) -> tuple[str, str]:
    """Build the guest program path and argument string for a run.

    The wrapper shell runs the script with stdout and stderr redirected into
    output_path, then appends "EXIT:<code>". The guest API only reports the
    wrapper's exit status, so the marker line is the only record of the
    script's own exit code. "$?" is escaped so it is expanded by the wrapper
    bash, not by the shell the guest tools use to spawn it.
    """
    shell = constants.GUEST_SHELL_PATH
    script = shlex.quote(script_path)
    output = shlex.quote(output_path)
    runner = f"sudo {shell}" if use_sudo else shell
    inner = f"{runner} {script} > {output} 2>&1; echo {constants.EXIT_MARKER_PREFIX}\\$? >> {output}"
    return shell, f'-lc "{inner}"'


async def launch_process(
    ops: GuestOperations,
    credentials: GuestCredentials,
    script_path: str,
    output_path: str,
    *,
    use_sudo: bool = True,
) -> int:
    """Start the staged script as a detached guest process.

    Returns:
        Guest pid

    Raises:
        ProcessLaunchError: The start call failed
    """
    program_path, arguments = build_launch_command(script_path, output_path, use_sudo=use_sudo)
    try:
        pid = await ops.start_process(credentials, program_path, arguments)
    except GuestOperationError as e:
        raise ProcessLaunchError(
            f"Failed to start guest process: {e.message}",
            context={**e.context, "script_path": script_path},
        ) from e

    logger.info("Started script (pid=%d), waiting for completion", pid)
    return pid


async def poll_completion(
    ops: GuestOperations,
    credentials: GuestCredentials,
    pid: int,
    *,
    interval: float,
    deadline: float,
) -> ProcessStatus:
    """Poll the guest process until it reports an end time or deadline passes.

    The wait between polls is clamped to the time left, so the poller never
    sleeps past the deadline and returns immediately on a first-poll
    completion. The remote process is not cancelled on timeout.

    Args:
        interval: Seconds between status queries
        deadline: Event-loop time (loop.time()) at which to give up

    Returns:
        ProcessStatus in state COMPLETED or TIMED_OUT

    Raises:
        ProcessPollError: A status query failed
    """
    loop = asyncio.get_running_loop()
    polls = 0
    while True:
        try:
            processes = await ops.list_processes(credentials, [pid])
        except GuestOperationError as e:
            raise ProcessPollError(
                f"Failed to query guest process {pid}: {e.message}",
                context={**e.context, "pid": pid, "polls": polls},
            ) from e
        polls += 1

        status = ProcessStatus.from_listing(processes)
        if status.state is ProcessState.COMPLETED:
            logger.info("Script finished (exitCode=%s)", status.exit_code)
            return status

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning(
                "No end time reported for pid=%d before the deadline, fetching output anyway",
                pid,
                extra={"pid": pid, "polls": polls, "last_state": status.state.value},
            )
            return ProcessStatus(state=ProcessState.TIMED_OUT)

        await asyncio.sleep(min(interval, remaining))


def local_output_path(output_dir: Path, target: str) -> Path:
    """Local file that receives the output of a run against target."""
    safe_name = target.replace("/", "_").replace("\\", "_")
    return output_dir / f"{safe_name}{constants.LOCAL_OUTPUT_SUFFIX}"


async def retrieve_output(
    ops: GuestOperations,
    transfer: TransferClient,
    credentials: GuestCredentials,
    guest_path: str,
    destination: Path,
) -> int:
    """Download the guest output file to destination, replacing it.

    Returns:
        Bytes written

    Raises:
        OutputRetrievalError: Transfer handle request, GET, or local write failed
    """
    try:
        handle = await ops.initiate_download(credentials, guest_path)
        url = ops.resolve_transfer_url(handle)
        await aiofiles.os.makedirs(destination.parent, exist_ok=True)
        written = await transfer.download(url, destination)
    except (GuestOperationError, TransferError) as e:
        raise OutputRetrievalError(
            f"Failed to download {guest_path}: {e.message}",
            context={**e.context, "guest_path": guest_path},
        ) from e
    except OSError as e:
        raise OutputRetrievalError(
            f"Cannot write output to {destination}: {e}",
            context={"guest_path": guest_path, "destination": str(destination)},
        ) from e

    logger.info("Output saved to file: %s", destination)
    return written


async def read_exit_marker(path: Path) -> int | None:
    """Script exit code from the EXIT line at the end of a local output file."""
    async with aiofiles.open(path, "rb") as f:
        size = await f.seek(0, os.SEEK_END)
        await f.seek(max(0, size - constants.EXIT_MARKER_TAIL_BYTES))
        tail = await f.read()
    return parse_exit_marker(tail)


async def cleanup_guest_paths(
    ops: GuestOperations,
    credentials: GuestCredentials,
    paths: list[str],
    *,
    timeout: float = constants.DEFAULT_CLEANUP_TIMEOUT_SECONDS,
) -> list[CleanupResult]:
    """Delete guest files once each, never raising.

    Each deletion gets its own timeout, so one hung call neither blocks
    the others nor holds the caller indefinitely.

    Returns:
        One CleanupResult per path, in order
    """
    results: list[CleanupResult] = []
    for path in paths:
        try:
            async with asyncio.timeout(timeout):
                await ops.delete_file(credentials, path)
        except TimeoutError:
            logger.warning("Timed out deleting guest file %s after %gs", path, timeout, extra={"path": path})
            results.append(CleanupResult(path=path, deleted=False, error=f"timed out after {timeout:g}s"))
        except Exception as e:  # noqa: BLE001 - cleanup must not mask the run result
            logger.warning(
                "Failed to delete guest file %s",
                path,
                extra={"path": path, "error": str(e), "error_type": type(e).__name__},
            )
            results.append(CleanupResult(path=path, deleted=False, error=str(e)))
        else:
            results.append(CleanupResult(path=path, deleted=True))

    if paths:
        logger.info(
            "Removed guest temporary files: %s",
            ", ".join(r.path for r in results if r.deleted) or "none",
            extra={"failed": [r.path for r in results if not r.deleted]},
        )
    return results


# =============================================================================
# Runner
# =============================================================================


class GuestScriptRunner:
    """Runs scripts on one guest through an explicit guest-operations handle.

    Each run() call owns its RunContext; nothing is shared between runs
    except the injected collaborators. Concurrent runs against the same
    guest are safe as far as guest paths go (unique suffix per run); the
    guest-operations handle must tolerate concurrent use if runs overlap.
    """

    def __init__(
        self,
        guest_ops: GuestOperations,
        config: RunnerConfig | None = None,
        *,
        transfer: TransferClient | None = None,
    ) -> None:
        self._ops = guest_ops
        self._config = config or RunnerConfig()
        self._transfer = transfer

    @property
    def config(self) -> RunnerConfig:
        return self._config

    async def run(self, request: RunRequest) -> RunResult:
        """Execute request.script on the guest and save its output locally.

        Returns:
            RunResult with outcome COMPLETED (exit code from the guest) or
            TIMED_OUT (output retrieved anyway, exit code None)

        Raises:
            GuestAuthenticationError: Credentials rejected, nothing staged
            StagingError, ProcessLaunchError, ProcessPollError,
            OutputRetrievalError, RunBudgetExceededError: run aborted;
                cleanup results are in error.context["cleanup"]
            asyncio.CancelledError: caller cancelled; cleanup was attempted
        """
        ctx = RunContext.create(self._config.guest_tmp_dir)
        logger.debug(
            "Starting run",
            extra={"target": request.target, "suffix": ctx.suffix, "script_size": len(request.script)},
        )

        try:
            result = await self._run_within_budget(request, ctx)
        except GuestRunnerError as e:
            cleanup = await self._cleanup(request, ctx)
            e.context["cleanup"] = [c.model_dump() for c in cleanup]
            raise
        except BaseException:
            # Cancellation or an unexpected error: still remove guest files.
            if ctx.pid is not None:
                logger.warning(
                    "Run interrupted, guest process pid=%d may still be running",
                    ctx.pid,
                    extra={"target": request.target, "pid": ctx.pid},
                )
            await self._cleanup(request, ctx)
            raise

        cleanup = await self._cleanup(request, ctx)
        return result.model_copy(update={"cleanup": cleanup})

    async def _run_within_budget(self, request: RunRequest, ctx: RunContext) -> RunResult:
        budget = asyncio.timeout(self._config.run_timeout_seconds)
        try:
            async with budget:
                return await self._execute(request, ctx, budget)
        except TimeoutError as e:
            if not budget.expired():
                raise
            raise RunBudgetExceededError(
                f"Run exceeded its {self._config.run_timeout_seconds:g}s budget",
                context={"target": request.target, "pid": ctx.pid},
            ) from e

    async def _execute(self, request: RunRequest, ctx: RunContext, budget: asyncio.Timeout) -> RunResult:
        config = self._config
        credentials = request.credentials
        loop = asyncio.get_running_loop()
        started = loop.time()

        await validate_credentials(self._ops, credentials, request.target)

        async with self._transfer_scope() as transfer:
            uploaded = await stage_script(
                self._ops,
                transfer,
                credentials,
                request.script,
                ctx.script_path,
                config.file_attributes,
                on_created=ctx.track,
            )
            staged = loop.time()

            ctx.pid = await launch_process(
                self._ops,
                credentials,
                ctx.script_path,
                ctx.output_path,
                use_sudo=config.use_sudo,
            )
            ctx.track(ctx.output_path)
            ctx.deadline = self._completion_deadline(loop.time(), budget)

            status = await poll_completion(
                self._ops,
                credentials,
                ctx.pid,
                interval=config.poll_interval_seconds,
                deadline=ctx.deadline,
            )
            waited = loop.time()

            destination = local_output_path(config.output_dir, request.target)
            await retrieve_output(self._ops, transfer, credentials, ctx.output_path, destination)
            try:
                script_exit_code = await read_exit_marker(destination)
            except OSError as e:
                raise OutputRetrievalError(
                    f"Cannot read saved output {destination}: {e}",
                    context={"destination": str(destination)},
                ) from e
            finished = loop.time()
            if script_exit_code is None:
                logger.warning("No %s line at the end of %s", constants.EXIT_MARKER_PREFIX, destination)
            else:
                logger.debug("Script exit code from output: %d", script_exit_code)

        timed_out = status.state is ProcessState.TIMED_OUT
        return RunResult(
            outcome=RunOutcome.TIMED_OUT if timed_out else RunOutcome.COMPLETED,
            exit_code=None if timed_out else status.exit_code,
            script_exit_code=script_exit_code,
            pid=ctx.pid,
            output_path=destination,
            uploaded_bytes=uploaded,
            timing=TimingBreakdown(
                stage_ms=round((staged - started) * 1000),
                wait_ms=round((waited - staged) * 1000),
                retrieve_ms=round((finished - waited) * 1000),
                total_ms=round((finished - started) * 1000),
            ),
        )

    def _completion_deadline(self, launched_at: float, budget: asyncio.Timeout) -> float:
        """Completion deadline, clamped so retrieval still fits in the run budget."""
        deadline = launched_at + self._config.completion_timeout_seconds
        budget_end = budget.when()
        if budget_end is not None:
            deadline = min(deadline, budget_end - self._config.retrieval_reserve_seconds)
        return deadline

    @asynccontextmanager
    async def _transfer_scope(self) -> AsyncIterator[TransferClient]:
        if self._transfer is not None:
            yield self._transfer
            return
        async with TransferClient(
            verify=self._config.verify_tls,
            timeout_seconds=self._config.http_timeout_seconds,
        ) as transfer:
            yield transfer

    async def _cleanup(self, request: RunRequest, ctx: RunContext) -> list[CleanupResult]:
        return await cleanup_guest_paths(
            self._ops,
            request.credentials,
            list(ctx.created_paths),
            timeout=self._config.cleanup_timeout_seconds,
        )

