"""Tests for the guest-runner CLI.

Most tests replace run_script with a stub and cover option parsing,
settings loading, exit codes and error reporting. The end-to-end tests keep
the real run_script and swap only the vCenter session and transfer client
for in-memory fakes.
"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from click.testing import CliRunner

from guest_runner import constants
from guest_runner.cli import (
    EXIT_CLI_ERROR,
    EXIT_RUNNER_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    exit_code_for,
    format_error,
    main,
    read_script,
)
from guest_runner.config import RunnerConfig
from guest_runner.exceptions import GuestAuthenticationError, ScriptPayloadError, VmNotFoundError
from guest_runner.models import RunOutcome, RunResult
from guest_runner.settings import Settings
from guest_runner.transport import TransferClient
from tests.guest_fakes import FakeGuestOperations

_ENV = {
    "VCENTER_HOST": "vc.example.com",
    "VCENTER_USER": "admin",
    "VCENTER_PASS": "vc-pass",
    "VM_NAME": "web-01",
    "GUEST_USER": "root",
    "GUEST_PASS": "guest-pass",
}


def _result(outcome: RunOutcome = RunOutcome.COMPLETED, script_exit_code: int | None = 0) -> RunResult:
    return RunResult(
        outcome=outcome,
        exit_code=0,
        script_exit_code=script_exit_code,
        pid=1,
        output_path=Path("web-01.txt"),
        uploaded_bytes=5,
    )


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name, value in _ENV.items():
        monkeypatch.setenv(name, value)


@pytest.fixture
def script(tmp_path: Path) -> Path:
    path = tmp_path / "script.sh"
    path.write_text("echo hi\n")
    return path


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Replace run_script with a stub recording its arguments."""
    calls: dict[str, Any] = {"result": _result()}

    async def fake_run_script(settings: Settings, config: RunnerConfig, script_path: Path) -> RunResult:
        calls.update(settings=settings, config=config, script_path=script_path)
        if isinstance(calls["result"], BaseException):
            raise calls["result"]
        return calls["result"]

    monkeypatch.setattr("guest_runner.cli.run_script", fake_run_script)
    return calls


# ============================================================================
# Exit codes
# ============================================================================


class TestExitCodes:
    def test_script_exit_code_propagated(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        captured["result"] = _result(script_exit_code=3)
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == 3

    def test_success(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == 0

    def test_timed_out(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        captured["result"] = _result(RunOutcome.TIMED_OUT, None)
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == EXIT_TIMEOUT

    def test_runner_error(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        captured["result"] = GuestAuthenticationError("Guest authentication failed: invalid login")
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == EXIT_RUNNER_ERROR
        assert "Guest authentication failed" in result.output
        assert "GUEST_USER" in result.output

    def test_vm_not_found(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        captured["result"] = VmNotFoundError("VM not found: web-01")
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == EXIT_RUNNER_ERROR
        assert "VM not found" in result.output

    def test_missing_settings(self, script: Path, captured: dict[str, Any]) -> None:
        result = CliRunner().invoke(main, [str(script)])
        assert result.exit_code == EXIT_CLI_ERROR
        assert "Configuration error" in result.output
        assert "VCENTER_HOST" in result.output
        assert "settings" not in captured

    def test_missing_script(self, env: None, tmp_path: Path) -> None:
        """Real run_script: the payload is read before any vCenter contact."""
        result = CliRunner().invoke(main, [str(tmp_path / "nope.sh")])
        assert result.exit_code == EXIT_CLI_ERROR
        assert "Cannot read script" in result.output

    def test_invalid_timeouts_are_usage_errors(self, env: None, script: Path, captured: dict[str, Any]) -> None:
        result = CliRunner().invoke(main, [str(script), "--run-timeout", "10"])
        assert result.exit_code == EXIT_CLI_ERROR
        assert "settings" not in captured

    def test_exit_code_for(self) -> None:
        assert exit_code_for(_result(script_exit_code=7)) == 7
        assert exit_code_for(_result(script_exit_code=0)) == EXIT_SUCCESS
        assert exit_code_for(_result(script_exit_code=None)) == EXIT_RUNNER_ERROR
        assert exit_code_for(_result(RunOutcome.TIMED_OUT, None)) == EXIT_TIMEOUT


# ============================================================================
# Options
# ============================================================================


class TestOptions:
    def test_defaults(self, env: None, captured: dict[str, Any], tmp_path: Path) -> None:
        """Without arguments ./script.sh runs with default timings."""
        result = CliRunner().invoke(main, [])
        assert result.exit_code == 0

        assert captured["script_path"] == Path("script.sh")
        config: RunnerConfig = captured["config"]
        assert config.completion_timeout_seconds == constants.DEFAULT_COMPLETION_TIMEOUT_SECONDS
        assert config.run_timeout_seconds == constants.DEFAULT_RUN_TIMEOUT_SECONDS
        assert config.use_sudo is True
        assert config.verify_tls is True

    def test_overrides(self, env: None, script: Path, captured: dict[str, Any], tmp_path: Path) -> None:
        out = tmp_path / "out"
        result = CliRunner().invoke(
            main,
            [
                str(script),
                "--vm",
                "db-02",
                "--datacenter",
                "dc1",
                "-o",
                str(out),
                "-t",
                "60",
                "--poll-interval",
                "2",
                "--no-sudo",
                "--insecure",
            ],
        )
        assert result.exit_code == 0, result.output

        settings: Settings = captured["settings"]
        config: RunnerConfig = captured["config"]
        assert settings.vm_name == "db-02"
        assert settings.vcenter_datacenter == "dc1"
        assert settings.vcenter_insecure is True
        assert config.completion_timeout_seconds == 60
        assert config.poll_interval_seconds == 2
        assert config.use_sudo is False
        assert config.verify_tls is False
        assert config.output_dir == out

    def test_insecure_from_environment(
        self, env: None, script: Path, captured: dict[str, Any], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("VCENTER_INSECURE", "true")
        CliRunner().invoke(main, [str(script)])
        assert captured["config"].verify_tls is False

    def test_env_file(self, script: Path, captured: dict[str, Any], tmp_path: Path) -> None:
        env_file = tmp_path / "lab.env"
        env_file.write_text("\n".join(f"{k}={v}" for k, v in _ENV.items()) + "\nVM_NAME=lab-vm\n")

        result = CliRunner().invoke(main, [str(script), "--env-file", str(env_file)])
        assert result.exit_code == 0, result.output
        assert captured["settings"].vm_name == "lab-vm"

    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "guest-runner" in result.output


# ============================================================================
# Helpers
# ============================================================================


class TestReadScript:
    async def test_reads_bytes(self, script: Path) -> None:
        assert await read_script(script) == b"echo hi\n"

    async def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ScriptPayloadError):
            await read_script(tmp_path / "missing.sh")

    async def test_too_large(self, script: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(constants, "MAX_SCRIPT_SIZE_BYTES", 4)
        with pytest.raises(ScriptPayloadError, match="exceeds"):
            await read_script(script)


class TestFormatError:
    def test_with_suggestions(self) -> None:
        text = format_error("Run failed", "boom", ["try again"])
        assert "Error: Run failed" in text
        assert "boom" in text
        assert "• try again" in text

    def test_without_suggestions(self) -> None:
        assert "Suggestions" not in format_error("Run failed", "boom")


# ============================================================================
# End to end against a fake guest
# ============================================================================


class _FakeSession:
    """Stands in for VSphereSession, handing out one fake guest."""

    guest: FakeGuestOperations

    @classmethod
    def from_settings(cls, settings: Settings) -> "_FakeSession":
        return cls()

    async def __aenter__(self) -> "_FakeSession":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None

    async def find_vm(self, name: str, datacenter: str | None = None) -> str:
        return name

    def guest_operations(self, vm: str) -> FakeGuestOperations:
        return self.guest


@pytest.fixture
def fake_guest(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeGuestOperations]:
    """Route the real run_script to a FakeGuestOperations and MockTransport."""

    def install(**kwargs: Any) -> FakeGuestOperations:
        fake = FakeGuestOperations(**kwargs)

        def transfer_client(**_options: Any) -> TransferClient:
            return TransferClient(client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handle_http)))

        monkeypatch.setattr(_FakeSession, "guest", fake, raising=False)
        monkeypatch.setattr("guest_runner.cli.VSphereSession", _FakeSession)
        monkeypatch.setattr("guest_runner.runner.TransferClient", transfer_client)
        return fake

    return install


class TestEndToEnd:
    def test_exit_status_from_marker_not_wrapper(
        self, env: None, script: Path, tmp_path: Path, fake_guest: Callable[..., FakeGuestOperations]
    ) -> None:
        """The guest reports 0 for the wrapper shell; the CLI exits with the script's 3."""
        fake_guest(guest_stdout=b"boom\n", exit_code=3, reported_exit_code=0)
        out = tmp_path / "out"

        result = CliRunner().invoke(main, [str(script), "-o", str(out)])

        assert result.exit_code == 3, result.output
        assert (out / "web-01.txt").read_bytes() == b"boom\nEXIT:3\n"

    def test_success_exits_zero(
        self, env: None, script: Path, tmp_path: Path, fake_guest: Callable[..., FakeGuestOperations]
    ) -> None:
        fake = fake_guest(guest_stdout=b"hi\n")

        result = CliRunner().invoke(main, [str(script), "-o", str(tmp_path / "out")])

        assert result.exit_code == EXIT_SUCCESS, result.output
        assert fake.upload_sizes == [len(b"echo hi\n")]
        assert fake.files == {}
