"""Command-line interface for guest-runner.

Usage:
    guest-runner                         # Run ./script.sh on $VM_NAME
    guest-runner health.sh --vm web-01   # Run a given script on a given VM
    guest-runner -t 60 --insecure job.sh # Shorter completion wait, no TLS checks

Connection settings come from the environment or a .env file:
VCENTER_HOST, VCENTER_USER, VCENTER_PASS, VCENTER_INSECURE,
VCENTER_DATACENTER, VM_NAME, GUEST_USER, GUEST_PASS.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import aiofiles
import click
from pydantic import ValidationError

from guest_runner import (
    ConfigurationError,
    GuestAuthenticationError,
    GuestRunnerError,
    GuestScriptRunner,
    RunBudgetExceededError,
    RunnerConfig,
    RunRequest,
    RunResult,
    ScriptPayloadError,
    Settings,
    VCenterConnectionError,
    VCenterTransientError,
    VmNotFoundError,
    VSphereSession,
    __version__,
    constants,
)
from guest_runner._logging import configure_logging, shutdown_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_RUNNER_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def load_settings(
    env_file: Path | None,
    *,
    vm_name: str | None = None,
    datacenter: str | None = None,
    insecure: bool = False,
) -> Settings:
    """Load Settings from env/.env with CLI overrides applied on top.

    Raises:
        ConfigurationError: A required variable is missing or invalid
    """
    overrides: dict[str, object] = {}
    if vm_name:
        overrides["vm_name"] = vm_name
    if datacenter:
        overrides["vcenter_datacenter"] = datacenter
    if insecure:
        overrides["vcenter_insecure"] = True

    try:
        if env_file is not None:
            return Settings(_env_file=env_file, **overrides)  # type: ignore[call-arg]
        return Settings(**overrides)  # type: ignore[call-arg]
    except ValidationError as e:
        missing = [str(err["loc"][0]).upper() for err in e.errors() if err["loc"]]
        raise ConfigurationError(
            f"Invalid or missing settings: {', '.join(missing) or e}",
            context={"fields": missing},
        ) from e


async def read_script(path: Path) -> bytes:
    """Read the script payload once, before anything touches the guest.

    Raises:
        ScriptPayloadError: File missing, unreadable, or too large
    """
    try:
        async with aiofiles.open(path, "rb") as f:
            payload = await f.read(constants.MAX_SCRIPT_SIZE_BYTES + 1)
    except OSError as e:
        raise ScriptPayloadError(f"Cannot read script {path}: {e.strerror or e}", context={"path": str(path)}) from e

    if len(payload) > constants.MAX_SCRIPT_SIZE_BYTES:
        raise ScriptPayloadError(
            f"Script {path} exceeds {constants.MAX_SCRIPT_SIZE_BYTES} bytes",
            context={"path": str(path), "max_size": constants.MAX_SCRIPT_SIZE_BYTES},
        )
    return payload


def exit_code_for(result: RunResult) -> int:
    """Map a run result to the CLI exit code.

    The guest reports the wrapper shell's status, so the script's own code
    comes from the EXIT line of the output. Without that line the script's
    status is unknown.
    """
    if result.timed_out:
        return EXIT_TIMEOUT
    if result.script_exit_code is None:
        return EXIT_RUNNER_ERROR
    return result.script_exit_code


async def run_script(settings: Settings, config: RunnerConfig, script_path: Path) -> RunResult:
    """Connect to vCenter, locate the VM and run the script on it."""
    payload = await read_script(script_path)
    request = RunRequest(target=settings.vm_name, credentials=settings.guest_credentials, script=payload)

    async with VSphereSession.from_settings(settings) as session:
        vm = await session.find_vm(settings.vm_name, datacenter=settings.vcenter_datacenter or None)
        runner = GuestScriptRunner(session.guest_operations(vm), config)
        return await runner.run(request)


def report_error(error: GuestRunnerError, timeout: float) -> int:
    """Print a formatted error and return the matching exit code."""
    if isinstance(error, ConfigurationError):
        click.echo(
            format_error(
                "Configuration error",
                error.message,
                [
                    "Set the variable in the environment or in a .env file",
                    "Required: VCENTER_HOST, VCENTER_USER, VCENTER_PASS, VM_NAME, GUEST_USER, GUEST_PASS",
                ],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    if isinstance(error, ScriptPayloadError):
        click.echo(format_error("Cannot read script", error.message), err=True)
        return EXIT_CLI_ERROR

    suggestions: list[str] = []
    if isinstance(error, GuestAuthenticationError):
        suggestions = ["Check GUEST_USER / GUEST_PASS", "Make sure VMware Tools is running in the guest"]
    elif isinstance(error, (VCenterConnectionError, VCenterTransientError)):
        suggestions = ["Check VCENTER_HOST and credentials", "Use --insecure for self-signed certificates"]
    elif isinstance(error, VmNotFoundError):
        suggestions = ["Check VM_NAME (or --vm)", "Set VCENTER_DATACENTER when names repeat across datacenters"]
    elif isinstance(error, RunBudgetExceededError):
        suggestions = ["Increase --run-timeout", f"Completion wait was {timeout:g}s"]

    click.echo(format_error("Run failed", error.message, suggestions or None), err=True)
    return EXIT_RUNNER_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument(
    "script",
    required=False,
    default=constants.DEFAULT_SCRIPT_FILE,
    type=click.Path(dir_okay=False, path_type=Path),
)
@click.option("--vm", "vm_name", help="Target VM name (overrides VM_NAME)")
@click.option("--datacenter", help="Datacenter to search (overrides VCENTER_DATACENTER)")
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path(),
    show_default=True,
    help="Directory for <vm>.txt",
)
@click.option(
    "-t",
    "--timeout",
    type=float,
    default=constants.DEFAULT_COMPLETION_TIMEOUT_SECONDS,
    show_default=True,
    help="Seconds to wait for the script to finish",
)
@click.option(
    "--run-timeout",
    type=float,
    default=constants.DEFAULT_RUN_TIMEOUT_SECONDS,
    show_default=True,
    help="Overall budget in seconds",
)
@click.option(
    "--poll-interval",
    type=float,
    default=constants.DEFAULT_POLL_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between status checks",
)
@click.option("--no-sudo", is_flag=True, help="Run the script without sudo")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Read settings from this file instead of ./.env",
)
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(__version__, "-V", "--version", prog_name="guest-runner")
def main(
    script: Path,
    vm_name: str | None,
    datacenter: str | None,
    output_dir: Path,
    timeout: float,
    run_timeout: float,
    poll_interval: float,
    no_sudo: bool,
    insecure: bool,
    env_file: Path | None,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Run SCRIPT inside a vSphere guest and save its output to <vm>.txt.

    The script is uploaded through VMware Tools guest operations, started
    under bash, and its stdout/stderr plus a final EXIT:<code> line are
    downloaded once it finishes. Exit status is the script's own exit code,
    124 if it did not finish in time (output is still saved), 2 for usage
    or configuration errors and 125 for other failures, including output
    that does not end in an EXIT line.
    """
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)

    try:
        settings = load_settings(env_file, vm_name=vm_name, datacenter=datacenter, insecure=insecure)
        config = RunnerConfig(
            poll_interval_seconds=poll_interval,
            completion_timeout_seconds=timeout,
            run_timeout_seconds=run_timeout,
            verify_tls=not settings.vcenter_insecure,
            use_sudo=not no_sudo,
            output_dir=output_dir,
        )
    except ConfigurationError as e:
        exit_code = report_error(e, timeout)
        shutdown_logging()
        sys.exit(exit_code)
    except ValidationError as e:
        shutdown_logging()
        raise click.UsageError(str(e)) from e

    try:
        result = asyncio.run(run_script(settings, config, script))
        exit_code = exit_code_for(result)
    except GuestRunnerError as e:
        exit_code = report_error(e, timeout)
    finally:
        shutdown_logging()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
