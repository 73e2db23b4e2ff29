"""guest-runner: Run shell scripts inside vSphere guests.

Executes a script in a guest OS reachable only through the vSphere
guest-operations API (VMware Tools), with no SSH or network path to the
guest, and saves the captured output locally.

Quick Start:
    ```python
    from guest_runner import GuestScriptRunner, RunRequest, Settings, VSphereSession

    settings = Settings()  # VCENTER_*, VM_NAME, GUEST_* from env / .env
    async with VSphereSession.from_settings(settings) as session:
        vm = await session.find_vm(settings.vm_name)
        runner = GuestScriptRunner(session.guest_operations(vm))
        result = await runner.run(
            RunRequest(
                target=settings.vm_name,
                credentials=settings.guest_credentials,
                script=b"uptime\\n",
            )
        )
        print(result.outcome, result.script_exit_code, result.output_path)
    ```

Run protocol:
    1. Validate guest credentials
    2. Upload the script to a unique guest path via a signed transfer URL
    3. Start it under bash, output and "EXIT:<code>" redirected to a guest file
    4. Poll until the process reports an end time or the deadline passes
    5. Download the output file to <target>.txt
    6. Delete both guest files (best effort)

Requirements:
    - vCenter/ESXi with guest operations enabled and VMware Tools in the guest
    - Python 3.12+
"""

from guest_runner import constants
from guest_runner.config import RunnerConfig
from guest_runner.exceptions import (
    ConfigurationError,
    GuestAuthenticationError,
    GuestOperationError,
    GuestRunnerError,
    InputValidationError,
    OutputRetrievalError,
    PermanentError,
    ProcessLaunchError,
    ProcessPollError,
    RunBudgetExceededError,
    RunError,
    ScriptPayloadError,
    StagingError,
    TransferError,
    TransientError,
    VCenterConnectionError,
    VCenterTransientError,
    VmNotFoundError,
)
from guest_runner.guest_ops import GuestOperations, normalize_transfer_url
from guest_runner.models import (
    CleanupResult,
    GuestCredentials,
    GuestFileAttributes,
    GuestProcessInfo,
    ProcessState,
    ProcessStatus,
    RunOutcome,
    RunRequest,
    RunResult,
    TimingBreakdown,
)
from guest_runner.runner import GuestScriptRunner
from guest_runner.settings import Settings
from guest_runner.transport import TransferClient
from guest_runner.vsphere import VSphereGuestOperations, VSphereSession

__all__ = [
    "CleanupResult",
    "ConfigurationError",
    "GuestAuthenticationError",
    "GuestCredentials",
    "GuestFileAttributes",
    "GuestOperationError",
    "GuestOperations",
    "GuestProcessInfo",
    "GuestRunnerError",
    "GuestScriptRunner",
    "InputValidationError",
    "OutputRetrievalError",
    "PermanentError",
    "ProcessLaunchError",
    "ProcessPollError",
    "ProcessState",
    "ProcessStatus",
    "RunBudgetExceededError",
    "RunError",
    "RunOutcome",
    "RunRequest",
    "RunResult",
    "RunnerConfig",
    "ScriptPayloadError",
    "Settings",
    "StagingError",
    "TimingBreakdown",
    "TransferClient",
    "TransferError",
    "TransientError",
    "VCenterConnectionError",
    "VCenterTransientError",
    "VSphereGuestOperations",
    "VSphereSession",
    "VmNotFoundError",
    "constants",
    "normalize_transfer_url",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("guest-runner")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
