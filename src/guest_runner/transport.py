"""HTTPS byte transfer against guest-operations transfer URLs.

Transfer URLs are short-lived and signed, so requests carry no extra
credentials. Uploads are a single PUT of the exact payload; downloads are
streamed to disk through a temporary sibling file that replaces the
destination only once the body has been fully written.
"""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import TYPE_CHECKING, Self

import aiofiles
import aiofiles.os
import httpx

from guest_runner import constants
from guest_runner._logging import get_logger
from guest_runner.exceptions import TransferError

if TYPE_CHECKING:
    import types

logger = get_logger(__name__)


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300  # noqa: PLR2004


def _decode_snippet(data: bytes) -> str:
    return data[: constants.DIAGNOSTIC_SNIPPET_BYTES].decode("utf-8", errors="replace")


class TransferClient:
    """Async HTTPS client for transfer URL uploads and downloads.

    Usable as an async context manager; owns its httpx.AsyncClient unless
    one is injected (tests inject clients backed by httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        verify: bool = True,
        timeout_seconds: float = constants.DEFAULT_HTTP_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(verify=verify, timeout=timeout_seconds)

    async def upload(self, url: str, payload: bytes) -> int:
        """PUT the payload to a transfer URL.

        Returns:
            Number of bytes sent (always len(payload))

        Raises:
            TransferError: Connection failure or non-2xx response
        """
        try:
            response = await self._client.put(
                url,
                content=payload,
                headers={"Content-Type": constants.TRANSFER_CONTENT_TYPE},
            )
        except httpx.HTTPError as e:
            raise TransferError(f"Upload request failed: {e}", context={"method": "PUT"}) from e

        if not _is_success(response.status_code):
            raise TransferError(
                f"Upload rejected with status {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                body_snippet=_decode_snippet(response.content),
                context={"method": "PUT"},
            )
        return len(payload)

    async def download(self, url: str, destination: Path) -> int:
        """Stream a transfer URL body into destination, replacing it.

        Returns:
            Number of bytes written

        Raises:
            TransferError: Connection failure or non-200 response
            OSError: Local file could not be written
        """
        tmp_path = destination.with_name(f".{destination.name}.part")
        written = 0
        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code != httpx.codes.OK:
                    snippet = await self._read_snippet(response)
                    raise TransferError(
                        f"Download failed with status {response.status_code} {response.reason_phrase}",
                        status_code=response.status_code,
                        body_snippet=snippet,
                        context={"method": "GET"},
                    )
                async with aiofiles.open(tmp_path, "wb") as f:
                    async for chunk in response.aiter_bytes(constants.DOWNLOAD_CHUNK_SIZE):
                        await f.write(chunk)
                        written += len(chunk)
            await aiofiles.os.replace(tmp_path, destination)
        except httpx.HTTPError as e:
            await self._discard(tmp_path)
            raise TransferError(f"Download request failed: {e}", context={"method": "GET"}) from e
        except BaseException:
            await self._discard(tmp_path)
            raise
        return written

    @staticmethod
    async def _read_snippet(response: httpx.Response) -> str:
        """Read at most DIAGNOSTIC_SNIPPET_BYTES of a streamed error body."""
        buf = bytearray()
        with contextlib.suppress(httpx.HTTPError):
            async for chunk in response.aiter_bytes():
                buf.extend(chunk)
                if len(buf) >= constants.DIAGNOSTIC_SNIPPET_BYTES:
                    break
        return _decode_snippet(bytes(buf))

    @staticmethod
    async def _discard(path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(path)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()
