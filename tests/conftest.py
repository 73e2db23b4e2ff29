"""Shared pytest fixtures for guest-runner tests."""

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
from pydantic import SecretStr

from guest_runner.config import RunnerConfig
from guest_runner.models import GuestCredentials
from guest_runner.transport import TransferClient
from tests.guest_fakes import FakeGuestOperations, TransferFactory

# ============================================================================
# Settings isolation
# ============================================================================

_SETTINGS_ENV_VARS = (
    "VCENTER_HOST",
    "VCENTER_USER",
    "VCENTER_PASS",
    "VCENTER_INSECURE",
    "VCENTER_DATACENTER",
    "VM_NAME",
    "GUEST_USER",
    "GUEST_PASS",
)


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's environment and ./.env out of every test."""
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


# ============================================================================
# Guest fixtures
# ============================================================================


@pytest.fixture
def credentials() -> GuestCredentials:
    return GuestCredentials(username="root", password=SecretStr("s3cret"))


@pytest.fixture
def fake_ops() -> FakeGuestOperations:
    """Guest whose process completes on the first poll with empty output."""
    return FakeGuestOperations()


@pytest.fixture
async def transfer(fake_ops: FakeGuestOperations) -> AsyncGenerator[TransferClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_ops.handle_http)) as client:
        yield TransferClient(client=client)


@pytest.fixture
async def transfer_for() -> AsyncGenerator[TransferFactory, None]:
    """Build a TransferClient whose endpoint is served by the given fake."""
    clients: list[httpx.AsyncClient] = []

    def factory(fake: FakeGuestOperations) -> TransferClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake.handle_http))
        clients.append(client)
        return TransferClient(client=client)

    yield factory
    for client in clients:
        await client.aclose()


@pytest.fixture
def fast_config(tmp_path: Path) -> RunnerConfig:
    """Millisecond polling, short deadlines, output under tmp_path."""
    return RunnerConfig(
        poll_interval_seconds=0.01,
        completion_timeout_seconds=5,
        run_timeout_seconds=10,
        retrieval_reserve_seconds=1,
        output_dir=tmp_path / "out",
    )

