"""vSphere binding - vCenter session and guest operations via pyVmomi.

pyVmomi is a blocking SOAP client, so every call is pushed to a worker
thread with asyncio.to_thread(). Cancelling the awaiting coroutine abandons
the call on the event loop side; the SOAP request itself finishes in its
thread.

Fault mapping:
    vim.fault.InvalidGuestLogin       → GuestAuthenticationError
    vmodl.MethodFault (any other)     → GuestOperationError
    OSError (socket, TLS)             → GuestOperationError
    http.client.HTTPException         → GuestOperationError
    vim.fault.InvalidLogin at login   → VCenterConnectionError
    ssl.SSLError at login             → VCenterConnectionError
    OSError, HTTPException at login   → VCenterTransientError (retried)
"""

from __future__ import annotations

import asyncio
import http.client
import logging
import ssl
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Self, TypeVar

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from guest_runner import constants
from guest_runner._logging import get_logger
from guest_runner.exceptions import (
    GuestAuthenticationError,
    GuestOperationError,
    VCenterConnectionError,
    VCenterTransientError,
    VmNotFoundError,
)
from guest_runner.guest_ops import normalize_transfer_url
from guest_runner.models import GuestCredentials, GuestFileAttributes, GuestProcessInfo

if TYPE_CHECKING:
    import types

    from guest_runner.settings import Settings

logger = get_logger(__name__)

T = TypeVar("T")

_HTTPS_PORT = 443


def _fault_message(fault: BaseException) -> str:
    msg = getattr(fault, "msg", None)
    return msg or str(fault) or type(fault).__name__


# =============================================================================
# Guest Operations
# =============================================================================


class VSphereGuestOperations:
    """GuestOperations implementation for one VM through a vCenter session.

    Attributes:
        vm_name: Name of the target VM (for logging)
        endpoint_host: vCenter host used to resolve transfer URLs
    """

    def __init__(self, guest_ops_manager: Any, vm: Any, endpoint_host: str) -> None:
        self._manager = guest_ops_manager
        self._vm = vm
        self.endpoint_host = endpoint_host
        self.vm_name: str = getattr(vm, "name", "<vm>")

    @staticmethod
    def _auth(credentials: GuestCredentials) -> Any:
        return vim.vm.guest.NamePasswordAuthentication(
            username=credentials.username,
            password=credentials.password.get_secret_value(),
            interactiveSession=False,
        )

    async def _call(self, operation: str, func: Callable[..., T], /, **kwargs: Any) -> T:
        """Run a blocking guest-operations call in a thread, mapping faults."""
        try:
            return await asyncio.to_thread(func, vm=self._vm, **kwargs)
        except vim.fault.InvalidGuestLogin as e:
            raise GuestAuthenticationError(
                f"Guest authentication failed: {_fault_message(e)}",
                context={"operation": operation, "vm": self.vm_name},
            ) from e
        except vmodl.MethodFault as e:
            raise GuestOperationError(
                f"{operation} failed: {_fault_message(e)}",
                operation=operation,
                context={"vm": self.vm_name, "fault": type(e).__name__},
            ) from e
        except (OSError, http.client.HTTPException) as e:
            raise GuestOperationError(
                f"{operation} failed: {e}",
                operation=operation,
                context={"vm": self.vm_name, "error_type": type(e).__name__},
            ) from e

    async def validate_credentials(self, credentials: GuestCredentials) -> None:
        await self._call(
            "validate_credentials",
            self._manager.authManager.ValidateCredentialsInGuest,
            auth=self._auth(credentials),
        )

    async def initiate_upload(
        self,
        credentials: GuestCredentials,
        path: str,
        attributes: GuestFileAttributes,
        size: int,
        overwrite: bool,
    ) -> str:
        posix_attrs = vim.vm.guest.FileManager.PosixFileAttributes(
            ownerId=attributes.owner_id,
            groupId=attributes.group_id,
            permissions=attributes.permissions,
        )
        return await self._call(
            "initiate_upload",
            self._manager.fileManager.InitiateFileTransferToGuest,
            auth=self._auth(credentials),
            guestFilePath=path,
            fileAttributes=posix_attrs,
            fileSize=size,
            overwrite=overwrite,
        )

    async def initiate_download(self, credentials: GuestCredentials, path: str) -> str:
        info = await self._call(
            "initiate_download",
            self._manager.fileManager.InitiateFileTransferFromGuest,
            auth=self._auth(credentials),
            guestFilePath=path,
        )
        return info.url

    def resolve_transfer_url(self, handle: str) -> str:
        return normalize_transfer_url(handle, self.endpoint_host)

    async def start_process(self, credentials: GuestCredentials, program_path: str, arguments: str) -> int:
        spec = vim.vm.guest.ProcessManager.ProgramSpec(programPath=program_path, arguments=arguments)
        pid = await self._call(
            "start_process",
            self._manager.processManager.StartProgramInGuest,
            auth=self._auth(credentials),
            spec=spec,
        )
        return int(pid)

    async def list_processes(self, credentials: GuestCredentials, pids: list[int]) -> list[GuestProcessInfo]:
        processes = await self._call(
            "list_processes",
            self._manager.processManager.ListProcessesInGuest,
            auth=self._auth(credentials),
            pids=pids,
        )
        return [
            GuestProcessInfo(pid=p.pid, end_time=p.endTime, exit_code=p.exitCode)
            for p in processes or []
        ]

    async def delete_file(self, credentials: GuestCredentials, path: str) -> None:
        await self._call(
            "delete_file",
            self._manager.fileManager.DeleteFileInGuest,
            auth=self._auth(credentials),
            filePath=path,
        )


# =============================================================================
# Session
# =============================================================================


class VSphereSession:
    """Authenticated vCenter session.

    One session per run; sessions are not shared across concurrent runs.

    Example:
        ```python
        async with VSphereSession.from_settings(settings) as session:
            vm = await session.find_vm("web-01", datacenter="dc1")
            ops = session.guest_operations(vm)
        ```
    """

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        *,
        insecure: bool = False,
        port: int = _HTTPS_PORT,
        connect: Callable[..., Any] = SmartConnect,
        disconnect: Callable[[Any], None] = Disconnect,
    ) -> None:
        self.host = host
        self.port = port
        self._user = user
        self._password = password
        self._insecure = insecure
        self._connect = connect
        self._disconnect = disconnect
        self._service_instance: Any = None
        self._service_content: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Self:
        return cls(
            settings.vcenter_host,
            settings.vcenter_user,
            settings.vcenter_pass.get_secret_value(),
            insecure=settings.vcenter_insecure,
        )

    @property
    def endpoint_host(self) -> str:
        return self.host if self.port == _HTTPS_PORT else f"{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._service_instance is not None

    def _content(self) -> Any:
        if self._service_content is None:
            raise VCenterConnectionError("vCenter session is not connected", context={"host": self.host})
        return self._service_content

    def _login(self) -> tuple[Any, Any]:
        """Connect and fetch the service content, both blocking SOAP calls."""
        try:
            service_instance = self._connect(
                host=self.host,
                user=self._user,
                pwd=self._password,
                port=self.port,
                path=constants.VCENTER_SDK_PATH,
                disableSslCertValidation=self._insecure,
            )
            return service_instance, service_instance.RetrieveContent()
        except vim.fault.InvalidLogin as e:
            raise VCenterConnectionError(
                f"vCenter login rejected: {_fault_message(e)}",
                context={"host": self.host, "user": self._user},
            ) from e
        except vmodl.MethodFault as e:
            raise VCenterConnectionError(
                f"vCenter connect error: {_fault_message(e)}",
                context={"host": self.host},
            ) from e
        except ssl.SSLError as e:
            raise VCenterConnectionError(
                f"vCenter TLS handshake failed: {e}",
                context={"host": self.host, "insecure": self._insecure},
            ) from e
        except (OSError, http.client.HTTPException) as e:
            raise VCenterTransientError(
                f"vCenter unreachable: {e}",
                context={"host": self.host, "error_type": type(e).__name__},
            ) from e

    async def connect(self) -> None:
        """Log in to vCenter, retrying transient network failures.

        Raises:
            VCenterConnectionError: Login rejected or endpoint invalid
            VCenterTransientError: Still unreachable after all retries
        """
        if self._service_instance is not None:
            return

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.VCENTER_CONNECT_MAX_RETRIES),
            wait=wait_random_exponential(
                multiplier=constants.VCENTER_CONNECT_RETRY_MIN_SECONDS,
                max=constants.VCENTER_CONNECT_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(VCenterTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                self._service_instance, self._service_content = await asyncio.to_thread(self._login)

        logger.info("Connected to vCenter %s", self.host, extra={"host": self.host, "user": self._user})

    async def find_vm(self, name: str, datacenter: str | None = None) -> Any:
        """Look up a virtual machine by name, optionally inside one datacenter.

        Raises:
            VmNotFoundError: Datacenter or VM does not exist
        """
        return await asyncio.to_thread(self._find_vm, name, datacenter)

    def _find_vm(self, name: str, datacenter: str | None) -> Any:
        content = self._content()
        container = content.rootFolder
        if datacenter:
            container = next(
                (
                    entity
                    for entity in content.rootFolder.childEntity
                    if isinstance(entity, vim.Datacenter) and entity.name == datacenter
                ),
                None,
            )
            if container is None:
                raise VmNotFoundError(f"Datacenter not found: {datacenter}", context={"datacenter": datacenter})

        view = content.viewManager.CreateContainerView(container, [vim.VirtualMachine], True)
        try:
            matches = [vm for vm in view.view if vm.name == name]
        finally:
            view.Destroy()

        if not matches:
            raise VmNotFoundError(f"VM not found: {name}", context={"vm": name, "datacenter": datacenter})
        if len(matches) > 1:
            logger.warning("Multiple VMs named %s, using the first", name, extra={"count": len(matches)})
        return matches[0]

    def guest_operations(self, vm: Any) -> VSphereGuestOperations:
        """Guest-operations handle bound to vm and this session."""
        return VSphereGuestOperations(self._content().guestOperationsManager, vm, self.endpoint_host)

    async def disconnect(self) -> None:
        """Log out. Idempotent; logout errors are logged, not raised."""
        if self._service_instance is None:
            return
        service_instance, self._service_instance = self._service_instance, None
        self._service_content = None
        try:
            await asyncio.to_thread(self._disconnect, service_instance)
        except (vmodl.MethodFault, OSError, http.client.HTTPException) as e:
            logger.warning("vCenter logout failed", extra={"host": self.host, "error": str(e)})

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()
