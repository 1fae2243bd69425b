"""Fetching of remote files referenced by a desired state.

Certificates, values files and hooks may be given as URLs or object store
URIs. A `BlobFetcher` places a local copy in a temporary directory.
"""

from abc import ABC, abstractmethod
import logging
from pathlib import Path
from urllib.parse import urlparse

import aiofiles
import httpx

from .command import Command
from .exceptions import CommandException, InputException

__all__ = [
    "BlobFetcher",
    "CliBlobFetcher",
    "is_remote",
    "OBJECT_STORE_SCHEMES",
]

_LOGGER = logging.getLogger(__name__)

OBJECT_STORE_SCHEMES = ("s3", "gs", "az")
HTTP_SCHEMES = ("http", "https")


def is_remote(uri: str) -> bool:
    """Return True if the value refers to an object store or http location."""
    return urlparse(uri).scheme in OBJECT_STORE_SCHEMES + HTTP_SCHEMES


class BlobFetcher(ABC):
    """Downloads a file to a local path."""

    @abstractmethod
    async def fetch(self, uri: str, dest: Path) -> Path:
        """Store the contents of `uri` at `dest` and return the local path."""


class CliBlobFetcher(BlobFetcher):
    """Fetches files with the cloud provider command line tools.

    Object store credentials come from the usual environment variables of
    each tool (`AWS_*`, `GOOGLE_APPLICATION_CREDENTIALS`, `AZURE_*`).
    """

    def __init__(
        self,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize CliBlobFetcher."""
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, uri: str, dest: Path) -> Path:
        """Store the contents of `uri` at `dest` and return the local path."""
        parsed = urlparse(uri)
        _LOGGER.debug("Fetching %s to %s", uri, dest)
        if parsed.scheme in HTTP_SCHEMES:
            await self._fetch_http(uri, dest)
        elif parsed.scheme == "s3":
            await self._run(["aws", "s3", "cp", uri, str(dest)], uri)
        elif parsed.scheme == "gs":
            await self._run(["gsutil", "cp", uri, str(dest)], uri)
        elif parsed.scheme == "az":
            await self._run(
                [
                    "az",
                    "storage",
                    "blob",
                    "download",
                    "--container-name",
                    parsed.netloc,
                    "--name",
                    parsed.path.lstrip("/"),
                    "--file",
                    str(dest),
                ],
                uri,
            )
        else:
            await self._copy(Path(uri), dest)
        return dest

    async def _run(self, cmd: list[str], uri: str) -> None:
        try:
            await Command(cmd, description=f"Downloading [ {uri} ]").run()
        except CommandException as err:
            raise InputException(f"Unable to download [ {uri} ]: {err}") from err

    async def _fetch_http(self, uri: str, dest: Path) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(uri)
                response.raise_for_status()
        except httpx.HTTPError as err:
            raise InputException(f"Unable to download [ {uri} ]: {err}") from err
        async with aiofiles.open(dest, mode="wb") as f:
            await f.write(response.content)

    async def _copy(self, src: Path, dest: Path) -> None:
        try:
            async with aiofiles.open(src, mode="rb") as f:
                content = await f.read()
        except OSError as err:
            raise InputException(f"Unable to read [ {src} ]: {err}") from err
        async with aiofiles.open(dest, mode="wb") as f:
            await f.write(content)
