"""Library for observing the releases currently deployed in a cluster.

The observer lists every helm release in the cluster and reads the managing
context label that helmsman stamps on each release's helm storage object
(a secret or configmap, depending on the storage backend).

A release belongs to a managing context. Releases managed by a different
context are invisible to decisions, except that trying to install a release
with the same name into the same namespace is a conflict.
"""

import asyncio
from dataclasses import dataclass, field
import datetime
import json
import logging
import re
from types import MappingProxyType
from collections.abc import Mapping

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.json import json_decode
from mashumaro.config import BaseConfig

from .chart import parse_chart
from .config import DEFAULT_CONTEXT, OBSERVER_POOL_SIZE, Options
from .exceptions import ObservationException
from .helm import helm_cmd
from .kube import kubectl_cmd
from .state import Release, State

__all__ = [
    "HelmRelease",
    "CurrentState",
    "Observer",
    "STATUS_DEPLOYED",
    "STATUS_UNINSTALLED",
    "STATUS_FAILED",
    "PENDING_STATUSES",
]

_LOGGER = logging.getLogger(__name__)

STATUS_DEPLOYED = "deployed"
STATUS_UNINSTALLED = "uninstalled"
STATUS_DELETED = "deleted"
STATUS_FAILED = "failed"
STATUS_SUPERSEDED = "superseded"
STATUS_PENDING_INSTALL = "pending-install"
STATUS_PENDING_UPGRADE = "pending-upgrade"
STATUS_PENDING_ROLLBACK = "pending-rollback"
STATUS_UNINSTALLING = "uninstalling"

PENDING_STATUSES = (
    STATUS_PENDING_INSTALL,
    STATUS_PENDING_UPGRADE,
    STATUS_PENDING_ROLLBACK,
    STATUS_UNINSTALLING,
)
UNINSTALLED_STATUSES = (STATUS_UNINSTALLED, STATUS_DELETED)

CONTEXT_LABEL = "HELMSMAN_CONTEXT"
MANAGED_BY_LABEL = "MANAGED-BY=HELMSMAN"

# Helm storage objects are named sh.helm.release.v1.<release>.v<revision>
_RESOURCE_NAME_RE = re.compile(r"(^\w+/|\.v\d+$)")
_RELEASE_NAME_RE = re.compile(r"sh\.helm\.release\.v\d+\.")

_HELM_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})(?:\.(\d+))? ([+-]\d{4})"
)


def parse_helm_time(value: str) -> datetime.datetime | None:
    """Parse a timestamp printed by helm, e.g. `2023-01-02 10:11:12.1234 +0000 UTC`."""
    if not (match := _HELM_TIME_RE.match(value.strip())):
        return None
    fraction = (match.group(2) or "0")[:6].ljust(6, "0")
    return datetime.datetime.strptime(
        f"{match.group(1)}.{fraction} {match.group(3)}", "%Y-%m-%d %H:%M:%S.%f %z"
    )


@dataclass
class HelmRelease(DataClassDictMixin):
    """A release as reported by `helm list --output json`."""

    name: str
    namespace: str
    revision: int = field(metadata=field_options(deserialize=int, serialize=str))
    updated: str = ""
    status: str = ""
    chart: str = ""
    """Chart label such as `jenkins-0.9.0`."""

    app_version: str = ""

    helmsman_context: str = field(default="", metadata={"serialize": "omit"})
    """Managing context read from the storage object labels, empty if unknown."""

    class Config(BaseConfig):
        omit_none = True

    @property
    def key(self) -> str:
        """Identity of the release within a cluster."""
        return f"{self.name}-{self.namespace}"

    @property
    def updated_at(self) -> datetime.datetime | None:
        """Return the time of the last change to the release."""
        return parse_helm_time(self.updated)

    @property
    def chart_name(self) -> str:
        return parse_chart(self.chart)[0]

    @property
    def chart_version(self) -> str:
        return parse_chart(self.chart)[1]


class CurrentState:
    """The observed releases of a cluster, read-only once built."""

    def __init__(self, releases: Mapping[str, HelmRelease], context: str) -> None:
        """Initialize CurrentState."""
        self._releases = MappingProxyType(dict(releases))
        self._context = context

    @property
    def context(self) -> str:
        """Managing context decisions are made for."""
        return self._context

    @property
    def releases(self) -> Mapping[str, HelmRelease]:
        """Observed releases keyed by `name-namespace`."""
        return self._releases

    def get(self, release: Release) -> HelmRelease | None:
        """Return the observed release with the same identity, in any context."""
        return self._releases.get(release.key)

    def observed(self, release: Release) -> HelmRelease | None:
        """Return the observed release if it is managed by the current context."""
        if (observed := self.get(release)) is None:
            return None
        if observed.helmsman_context != self._context:
            return None
        return observed

    def release_status(self, release: Release) -> str | None:
        """Return the observed status, None if missing from the current context."""
        if (observed := self.observed(release)) is None:
            return None
        return observed.status

    def release_exists(self, release: Release, status: str | None = None) -> bool:
        """Return True if the release exists in the current context.

        When a status is given the observed status must match it too.
        """
        current = self.release_status(release)
        if status is not None:
            return current == status
        return current is not None

    def foreign_owner(self, release: Release) -> str | None:
        """Return the managing context of a release owned by another context."""
        if (observed := self.get(release)) is None:
            return None
        if observed.helmsman_context == self._context:
            return None
        return observed.helmsman_context

    def moved_from(self, release: Release, desired: State) -> HelmRelease | None:
        """Return the release this app was deployed as in another namespace.

        Only releases of the current context which no other app claims are
        considered.
        """
        claimed = desired.release_names()
        candidates = [
            observed
            for observed in self._releases.values()
            if observed.name == release.name
            and observed.namespace != release.namespace
            and observed.helmsman_context == self._context
            and (observed.name, observed.namespace) not in claimed
        ]
        if len(candidates) != 1:
            return None
        return candidates[0]

    def replace(self, release: HelmRelease) -> "CurrentState":
        """Return a copy of the state with one observed release replaced."""
        releases = dict(self._releases)
        releases[release.key] = release
        return CurrentState(releases, self._context)


class Observer:
    """Reads the current state of helm releases from the cluster."""

    def __init__(
        self,
        options: Options,
        storage_backend: str,
        pool_size: int = OBSERVER_POOL_SIZE,
    ) -> None:
        """Initialize Observer."""
        self._options = options
        self._backend = storage_backend
        self._pool_size = pool_size

    async def list_releases(self) -> list[HelmRelease]:
        """Return every release in the cluster, in any state."""
        cmd = helm_cmd(
            ["list", "--all", "--max", "0", "--output", "json", "--all-namespaces"],
            "Listing all existing releases...",
        )
        result = await cmd.exec()
        if not result.ok:
            raise ObservationException(
                f"Failed to list helm releases: {result.stderr.strip()}"
            )
        try:
            return json_decode(result.stdout or "[]", list[HelmRelease])
        except (ValueError, LookupError, TypeError) as err:
            raise ObservationException(
                f"Unexpected output of helm list: {err}"
            ) from err

    async def release_context(self, name: str, namespace: str) -> str:
        """Return the managing context label of a release.

        Releases deployed before contexts existed have no label and belong to
        the default context. A failed lookup yields an empty context.
        """
        cmd = kubectl_cmd(
            [
                "get",
                self._backend,
                "-n",
                namespace,
                "-l",
                f"owner=helm,name={name}",
                "-o",
                f"jsonpath={{.items[-1].metadata.labels.{CONTEXT_LABEL}}}",
            ],
            f"Getting context for helm release [ {name} ] in namespace [ {namespace} ]",
        )
        result = await cmd.exec()
        if not result.ok:
            _LOGGER.warning(
                "Could not get the context of release [ %s ] in namespace [ %s ]: %s",
                name,
                namespace,
                result.stderr.strip(),
            )
            return ""
        return result.stdout.strip() or DEFAULT_CONTEXT

    async def current_state(self, context: str) -> CurrentState:
        """Build the current state, reading contexts concurrently."""
        _LOGGER.info("Acquiring current Helm state from cluster")
        releases = await self.list_releases()
        sem = asyncio.Semaphore(self._pool_size)
        override = self._options.context_override

        async def _annotate(release: HelmRelease) -> None:
            if override:
                release.helmsman_context = override
                _LOGGER.debug(
                    "Overwrote Helmsman context for release [ %s ] to %s",
                    release.name,
                    override,
                )
                return
            async with sem:
                release.helmsman_context = await self.release_context(
                    release.name, release.namespace
                )

        await asyncio.gather(*(_annotate(release) for release in releases))
        return CurrentState({release.key: release for release in releases}, context)

    async def status(self, release: HelmRelease) -> HelmRelease:
        """Return the release with its status read again from helm."""
        cmd = helm_cmd(
            ["status", release.name, "--namespace", release.namespace, "--output", "json"],
            f"Checking status of release [ {release.name} ] in namespace "
            f"[ {release.namespace} ]",
        )
        result = await cmd.exec()
        if not result.ok:
            raise ObservationException(
                f"Failed to get the status of release [ {release.name} ]: "
                f"{result.stderr.strip()}"
            )
        try:
            doc = json.loads(result.stdout)
        except ValueError as err:
            raise ObservationException(
                f"Unexpected output of helm status for [ {release.name} ]: {err}"
            ) from err
        status = doc.get("info", {}).get("status", release.status)
        return HelmRelease(
            name=release.name,
            namespace=release.namespace,
            revision=int(doc.get("version", release.revision)),
            updated=release.updated,
            status=status,
            chart=release.chart,
            app_version=release.app_version,
            helmsman_context=release.helmsman_context,
        )

    async def managed_releases(self, namespace: str) -> dict[str, str]:
        """Return releases labeled as managed by helmsman, with their context."""
        cmd = kubectl_cmd(
            [
                "get",
                self._backend,
                "-n",
                namespace,
                "-l",
                MANAGED_BY_LABEL,
                "-o",
                f"custom-columns=NAME:.metadata.name,CTX:.metadata.labels.{CONTEXT_LABEL}",
                "--no-headers",
            ],
            f"Getting Helmsman-managed releases from namespace [ {namespace} ]",
        )
        result = await cmd.retry_exec(3)
        if not result.ok:
            raise ObservationException(result.stderr.strip())
        releases: dict[str, str] = {}
        output = result.stdout.strip()
        if output.lower().startswith("no resources found"):
            return releases
        for line in output.splitlines():
            if not (fields := line.split()):
                continue
            name = _RELEASE_NAME_RE.sub("", _RESOURCE_NAME_RE.sub("", fields[0]))
            context = DEFAULT_CONTEXT
            if len(fields) > 1 and fields[1] != "<none>":
                context = fields[1]
            releases[name] = context
        return releases

    async def untracked_releases(self, desired: State) -> list[tuple[str, str]]:
        """Return `(name, namespace)` of managed releases absent from the desired state.

        Only enabled namespaces of the desired state are inspected and only
        releases of the current context are reported.
        """
        _LOGGER.info(
            "Checking if any Helmsman managed releases are no longer tracked by your "
            "desired state ..."
        )
        namespaces = sorted(
            name for name, ns in desired.namespaces.items() if not ns.disabled
        )
        sem = asyncio.Semaphore(self._pool_size)

        async def _fetch(namespace: str) -> dict[str, str]:
            async with sem:
                return await self.managed_releases(namespace)

        found = await asyncio.gather(*(_fetch(ns) for ns in namespaces))
        claimed = desired.release_names()
        untracked: list[tuple[str, str]] = []
        for namespace, releases in zip(namespaces, found):
            for name, context in sorted(releases.items()):
                if desired.target_map and not desired.target_map.get(name):
                    continue
                if context != desired.managing_context:
                    continue
                if (name, namespace) in claimed:
                    continue
                untracked.append((name, namespace))
        if not untracked:
            _LOGGER.info("No untracked releases found")
        return untracked
