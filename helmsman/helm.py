"""Library for preparing the helm environment of a run.

This checks the installed helm version and plugins, and registers the
repositories declared in the desired state:

```python
from helmsman.helm import Helm

helm = Helm()
await helm.check_version()
await helm.add_repos(state.helm_repos)
await helm.update()
```
"""

import logging
import re
from urllib.parse import urlparse, urlunparse, unquote

from .command import Command, run
from .exceptions import CommandException, EnvironmentException, HelmException

__all__ = [
    "Helm",
    "helm_cmd",
    "HELM_BIN",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"

_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)\.(\d+)")


def helm_cmd(args: list[str], description: str = "", best_effort: bool = False) -> Command:
    """Return a helm command."""
    return Command(
        [HELM_BIN, *args],
        description=description,
        exc=HelmException,
        best_effort=best_effort,
    )


def split_repo_credentials(url: str) -> tuple[str, str | None, str | None]:
    """Split basic auth credentials out of a repository URL."""
    parsed = urlparse(url)
    if not parsed.username:
        return url, None, None
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    clean = urlunparse(parsed._replace(netloc=netloc))
    password = unquote(parsed.password) if parsed.password else None
    return clean, unquote(parsed.username), password


class Helm:
    """Manages the local helm installation used by a run."""

    def __init__(self) -> None:
        """Initialize Helm."""
        self._plugins: str | None = None

    async def version(self) -> str:
        """Return the client version reported by helm."""
        return (
            await run(helm_cmd(["version", "--short"], "Checking Helm version"))
        ).strip()

    async def check_version(self) -> None:
        """Raise if helm is missing or older than helm 3."""
        try:
            version = await self.version()
        except CommandException as err:
            raise EnvironmentException(
                f"helm is not installed/configured correctly: {err}"
            ) from err
        if not (match := _VERSION_RE.search(version)) or int(match.group(1)) < 3:
            raise EnvironmentException(
                f"this version of helmsman requires helm v3 or newer, found [ {version} ]"
            )
        _LOGGER.info("Using helm %s", version)

    async def plugin_exists(self, plugin: str) -> bool:
        """Return True if the named helm plugin is installed."""
        if self._plugins is None:
            result = await helm_cmd(
                ["plugin", "list"], f"Validating that [ {plugin} ] is installed"
            ).exec()
            if not result.ok:
                return False
            self._plugins = result.stdout
        return any(
            line.split()[0] == plugin
            for line in self._plugins.splitlines()
            if line.strip()
        )

    async def add_repos(self, repos: dict[str, str]) -> None:
        """Register helm repositories, passing credentials embedded in the URL."""
        for name, url in repos.items():
            if url.startswith("oci://"):
                _LOGGER.debug("Skipping OCI registry %s", name)
                continue
            clean, username, password = split_repo_credentials(url)
            args = ["repo", "add", "--force-update", name, clean]
            if username:
                args.extend(["--username", username])
            if password:
                args.extend(["--password", password])
            try:
                await run(helm_cmd(args, f"Adding helm repository [ {name} ]"))
            except CommandException as err:
                raise HelmException(
                    f"While adding helm repository [ {name} ]: {err}"
                ) from err

    async def update(self) -> None:
        """Update the local cache of every registered repository."""
        await run(helm_cmd(["repo", "update"], "Updating helm repositories"))
