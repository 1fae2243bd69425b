"""Library for decrypting the secrets files of releases.

Secrets files are passed to helm as plain values files once decrypted. The
decrypted copy is written next to the encrypted file with a `.dec` suffix and
removed when the run ends.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path

import aiofiles

from .command import Command, tool_exists
from .exceptions import EnvironmentException, SecretsException
from .helm import HELM_BIN, Helm
from .loader import TempFiles
from .state import Settings

__all__ = [
    "SecretDecryptor",
    "HelmSecretsDecryptor",
    "EyamlDecryptor",
    "new_decryptor",
    "decrypted_path",
]

_LOGGER = logging.getLogger(__name__)

DECRYPTED_SUFFIX = ".dec"
EYAML_BIN = "eyaml"


def decrypted_path(path: str) -> str:
    """Return the path of the decrypted copy of a secrets file."""
    if path.endswith(DECRYPTED_SUFFIX):
        return path
    return f"{path}{DECRYPTED_SUFFIX}"


class SecretDecryptor(ABC):
    """Decrypts secrets files at most once per run."""

    def __init__(self, temp: TempFiles) -> None:
        """Initialize SecretDecryptor."""
        self._temp = temp
        self._cache: dict[str, asyncio.Task[str]] = {}
        self._checked = False

    async def decrypt(self, path: str) -> str:
        """Decrypt a secrets file and return the path of the decrypted copy."""
        if not self._checked:
            await self.check()
            self._checked = True
        if (task := self._cache.get(path)) is None:
            task = asyncio.create_task(self._decrypt_tracked(path))
            self._cache[path] = task
        return await task

    async def _decrypt_tracked(self, path: str) -> str:
        result = await self._decrypt(path)
        self._temp.track(Path(result))
        return result

    @abstractmethod
    async def check(self) -> None:
        """Raise if the decryption tooling is not installed."""

    @abstractmethod
    async def _decrypt(self, path: str) -> str:
        """Decrypt the file, returning the path of the decrypted copy."""


class HelmSecretsDecryptor(SecretDecryptor):
    """Decrypts files with the helm secrets plugin."""

    def __init__(self, temp: TempFiles, helm: Helm) -> None:
        """Initialize HelmSecretsDecryptor."""
        super().__init__(temp)
        self._helm = helm

    async def check(self) -> None:
        if not await self._helm.plugin_exists("secrets"):
            raise EnvironmentException(
                "helm secrets plugin is not installed/configured correctly. Aborting!"
            )

    async def _decrypt(self, path: str) -> str:
        cmd = Command(
            [HELM_BIN, "secrets", "dec", path],
            description=f"Decrypting {path}",
            exc=SecretsException,
        )
        result = await cmd.exec()
        output = decrypted_path(path)
        if not result.ok or not Path(output).exists():
            raise SecretsException(
                f"Failed to decrypt [ {path} ]: {(result.stderr or result.stdout).strip()}"
            )
        return output


class EyamlDecryptor(SecretDecryptor):
    """Decrypts hiera-eyaml files, optionally with a pkcs7 key pair."""

    def __init__(
        self,
        temp: TempFiles,
        private_key: str | None = None,
        public_key: str | None = None,
    ) -> None:
        """Initialize EyamlDecryptor."""
        super().__init__(temp)
        self._private_key = private_key
        self._public_key = public_key

    async def check(self) -> None:
        if not tool_exists(EYAML_BIN):
            raise EnvironmentException(
                "hiera-eyaml is not installed/configured correctly. Aborting!"
            )

    async def _decrypt(self, path: str) -> str:
        args = [EYAML_BIN, "decrypt", "-f", path]
        if self._private_key and self._public_key:
            args.extend(
                [
                    "--pkcs7-private-key",
                    self._private_key,
                    "--pkcs7-public-key",
                    self._public_key,
                ]
            )
        cmd = Command(args, description=f"Decrypting {path}", exc=SecretsException)
        result = await cmd.exec()
        if not result.ok or result.stderr.strip():
            raise SecretsException(
                f"Failed to decrypt [ {path} ]: {(result.stderr or result.stdout).strip()}"
            )
        output = decrypted_path(path)
        try:
            async with aiofiles.open(output, mode="w") as f:
                await f.write(result.stdout)
        except OSError as err:
            raise SecretsException(f"Can't write [ {output} ] file: {err}") from err
        return output


def new_decryptor(settings: Settings, temp: TempFiles, helm: Helm) -> SecretDecryptor:
    """Return the decryptor selected by the settings."""
    if settings.eyaml_enabled:
        _LOGGER.debug("Using hiera-eyaml to decrypt secrets")
        return EyamlDecryptor(
            temp, settings.eyaml_private_key_path, settings.eyaml_public_key_path
        )
    return HelmSecretsDecryptor(temp, helm)
