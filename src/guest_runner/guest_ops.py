"""Guest-operations contract consumed by the run pipeline.

The runner depends only on this structural Protocol. The vSphere adapter
(guest_runner.vsphere) implements it with pyVmomi; tests implement it with
an in-memory fake.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urljoin, urlsplit, urlunsplit

if TYPE_CHECKING:
    from guest_runner.models import GuestCredentials, GuestFileAttributes, GuestProcessInfo


@runtime_checkable
class GuestOperations(Protocol):
    """Guest-operations surface of one VM.

    Every call takes the guest credentials explicitly; implementations hold
    the management session and the VM reference, never the guest login.
    Failures raise GuestOperationError (or GuestAuthenticationError from
    validate_credentials).
    """

    async def validate_credentials(self, credentials: GuestCredentials) -> None:
        """Confirm the credentials are usable for guest operations."""
        ...

    async def initiate_upload(
        self,
        credentials: GuestCredentials,
        path: str,
        attributes: GuestFileAttributes,
        size: int,
        overwrite: bool,
    ) -> str:
        """Create a guest file and return the transfer handle for its content."""
        ...

    async def initiate_download(self, credentials: GuestCredentials, path: str) -> str:
        """Return the transfer handle for reading a guest file."""
        ...

    def resolve_transfer_url(self, handle: str) -> str:
        """Turn a transfer handle into an absolute URL."""
        ...

    async def start_process(self, credentials: GuestCredentials, program_path: str, arguments: str) -> int:
        """Start a detached guest process and return its pid."""
        ...

    async def list_processes(self, credentials: GuestCredentials, pids: list[int]) -> list[GuestProcessInfo]:
        """Return status entries for the given pids."""
        ...

    async def delete_file(self, credentials: GuestCredentials, path: str) -> None:
        """Delete a guest file."""
        ...


def normalize_transfer_url(handle: str, endpoint_host: str, scheme: str = "https") -> str:
    """Resolve a transfer handle against the management endpoint.

    The guest-operations API may hand back a path-only URL or one whose host
    is the "*" wildcard. Both are rewritten to the endpoint the session is
    already talking to; fully qualified URLs pass through unchanged.

    Args:
        handle: URL string returned by initiate_upload/initiate_download
        endpoint_host: Management endpoint host, optionally with ":port"
        scheme: Scheme used for path-only handles

    Returns:
        Absolute URL
    """
    parts = urlsplit(handle)
    if not parts.scheme or not parts.netloc:
        return urljoin(f"{scheme}://{endpoint_host}/", handle)

    if parts.hostname != "*":
        return handle

    endpoint = urlsplit(f"//{endpoint_host}")
    host = endpoint.hostname or endpoint_host
    if ":" in host:  # IPv6 literal
        host = f"[{host}]"
    port = parts.port or endpoint.port
    netloc = f"{host}:{port}" if port else host
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
