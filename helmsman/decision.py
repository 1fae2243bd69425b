"""The decision maker compares the desired state with the current state.

For each release of the desired state it records a decision in the plan and
queues the commands that make the cluster match, then optionally sweeps the
releases that helmsman deployed earlier but which are no longer desired.

```python
maker = DecisionMaker(options, desired, current, charts)
plan = await maker.make_plan()
```

Decisions only ever look at releases of the current managing context. A
release with the same name and namespace owned by another context is a
conflict and stops the run.
"""

import asyncio
import logging

from .chart import ChartInfo
from .command import run_piped
from .config import UNTRACKED_PRIORITY, Options
from .exceptions import CommandException, ContextConflictError, DecisionException
from .observer import (
    PENDING_STATUSES,
    STATUS_DEPLOYED,
    STATUS_FAILED,
    UNINSTALLED_STATUSES,
    CurrentState,
    HelmRelease,
    Observer,
)
from .plan import DecisionType, Plan
from .release_ops import (
    DELETE,
    INSTALL,
    TEST,
    UPGRADE,
    diff_cmds,
    hook_cmds,
    install_cmd,
    rollback_cmd,
    test_cmd,
    uninstall_cmd,
    untracked_uninstall_cmd,
    upgrade_cmd,
)
from .secrets import SecretDecryptor
from .state import Release, State

__all__ = [
    "DecisionMaker",
]

_LOGGER = logging.getLogger(__name__)

PV_DOCS = (
    "https://github.com/Praqma/helmsman/blob/master/docs/how_to/apps/"
    "moving_across_namespaces.md#note-on-persistent-volumes"
)


def _prefix(release: Release) -> str:
    return f"Release [ {release.name} ] in namespace [ {release.namespace} ]"


def _same_version(desired: str, observed: str) -> bool:
    return desired.lstrip("v") == observed.lstrip("v")


class DecisionMaker:
    """Builds the plan converging the cluster to the desired state."""

    def __init__(
        self,
        options: Options,
        desired: State,
        current: CurrentState,
        charts: dict[str, ChartInfo],
        observer: Observer | None = None,
        decryptor: SecretDecryptor | None = None,
    ) -> None:
        """Initialize DecisionMaker.

        `charts` holds the resolved chart of each release keyed by release
        key. The observer is used to refresh pending releases and to find
        untracked releases.
        """
        self._options = options
        self._desired = desired
        self._current = current
        self._charts = charts
        self._observer = observer
        self._decryptor = decryptor
        self._plan = Plan()

    @property
    def plan(self) -> Plan:
        return self._plan

    @property
    def _skip_ignored(self) -> bool:
        return self._options.skip_ignored or bool(
            self._desired.settings.skip_ignored_apps
        )

    @property
    def _skip_pending(self) -> bool:
        return self._options.skip_pending or bool(
            self._desired.settings.skip_pending_apps
        )

    async def make_plan(self) -> Plan:
        """Decide every release, sweep untracked releases and return the plan."""
        _LOGGER.info("Preparing plan")
        sem = asyncio.Semaphore(self._options.pool_size)

        async def _decide(release: Release) -> None:
            async with sem:
                await self.decide(release, self._options.pending_max_retries)

        results = await asyncio.gather(
            *(_decide(release) for release in self._desired.apps.values()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        if not self._options.keep_untracked_releases:
            await self.clean_untracked_releases()
        return self._plan

    async def decide(self, release: Release, retries: int = 0) -> None:
        """Record the decision and queue the commands for one release."""
        plan = self._plan
        prefix = _prefix(release)
        if not release.is_considered_to_run:
            if not self._skip_ignored:
                plan.add_decision(
                    f"{prefix} ignored", release.priority, DecisionType.IGNORED
                )
            return

        observed = self._current.observed(release)
        if observed is not None and self._is_protected(release, observed.namespace):
            plan.add_decision(
                f"{prefix} is PROTECTED. Operations are not allowed on this release "
                "until protection is removed.",
                release.priority,
                DecisionType.NOOP,
            )
            return

        if self._options.destroy:
            if observed is not None:
                plan.add_decision(
                    f"{prefix} will be DELETED (destroy flag enabled).",
                    release.priority,
                    DecisionType.DELETE,
                )
                self.uninstall(release)
            return

        if not release.is_enabled:
            if observed is not None:
                plan.add_decision(
                    f"{prefix} is desired to be DELETED.",
                    release.priority,
                    DecisionType.DELETE,
                )
                self.uninstall(release)
            else:
                plan.add_decision(
                    f"{prefix} is disabled", release.priority, DecisionType.NOOP
                )
            return

        if observed is None:
            await self._decide_missing(release)
            return

        status = observed.status
        if status == STATUS_DEPLOYED:
            await self.inspect_upgrade_scenario(release, observed)
        elif status in UNINSTALLED_STATUSES:
            await self.rollback(release, observed)
        elif status == STATUS_FAILED:
            plan.add_decision(
                f"{prefix} is in FAILED state. Upgrade is scheduled!",
                release.priority,
                DecisionType.CHANGE,
            )
            await self.upgrade(release)
        elif status in PENDING_STATUSES:
            await self._decide_pending(release, observed, retries)
        else:
            raise DecisionException(
                f"{prefix} is in an unexpected state [ {status} ]"
            )

    def _is_protected(self, release: Release, namespace: str) -> bool:
        if release.protected:
            return True
        if self._options.ns_override:
            return False
        return self._desired.is_namespace_protected(namespace)

    async def _decide_missing(self, release: Release) -> None:
        prefix = _prefix(release)
        if (owner := self._current.foreign_owner(release)) is not None:
            raise ContextConflictError(
                release.name, release.namespace, self._current.context, owner
            )
        if (moved := self._current.moved_from(release, self._desired)) is not None:
            if self._is_protected(release, moved.namespace):
                self._plan.add_decision(
                    f"{prefix} is PROTECTED. Operations are not allowed on this "
                    "release until protection is removed.",
                    release.priority,
                    DecisionType.NOOP,
                )
                return
            await self.move(release, moved)
            return
        self._plan.add_decision(
            f"{prefix} will be installed using version [ {release.version} ]",
            release.priority,
            DecisionType.CREATE,
        )
        await self.install(release)

    async def _decide_pending(
        self, release: Release, observed: HelmRelease, retries: int
    ) -> None:
        prefix = _prefix(release)
        if self._skip_pending:
            self._plan.add_decision(
                f"{prefix} is in a pending state and will be ignored",
                release.priority,
                DecisionType.IGNORED,
            )
            return
        if retries <= 0 or self._observer is None:
            raise DecisionException(
                f"{prefix} is in a pending (install/upgrade/rollback or uninstalling) "
                "state. This means application is being operated on outside of this "
                "Helmsman invocation's scope. Exiting, as this may cause issues when "
                "continuing..."
            )
        retries -= 1
        delay = 2 ** (2 + retries)
        _LOGGER.info("%s is pending, checking again in %ds", prefix, delay)
        await asyncio.sleep(delay)
        refreshed = await self._observer.status(observed)
        self._current = self._current.replace(refreshed)
        await self.decide(release, retries)

    async def _decrypted(self, release: Release) -> list[str]:
        secrets = release.all_secrets_files()
        if not secrets:
            return []
        if self._decryptor is None:
            raise DecisionException(
                f"{_prefix(release)} uses secrets files but no decryptor is configured"
            )
        return [await self._decryptor.decrypt(path) for path in secrets]

    def _delete_priority(self, release: Release) -> int:
        if self._desired.settings.reverse_delete:
            return -release.priority
        return release.priority

    async def install(self, release: Release) -> None:
        """Queue the install of a release with its hooks and tests."""
        decrypted = await self._decrypted(release)
        before, after = hook_cmds(release, INSTALL, self._options)
        self._plan.add_command(
            install_cmd(release, self._options, decrypted),
            release.priority,
            release,
            before,
            after,
        )
        self._queue_test(release)

    def _queue_test(self, release: Release) -> None:
        if not release.test:
            return
        before, after = hook_cmds(release, TEST, self._options)
        self._plan.add_command(
            test_cmd(release), release.priority, release, before, after
        )

    async def upgrade(self, release: Release) -> None:
        """Queue the upgrade of a release with its hooks and tests."""
        decrypted = await self._decrypted(release)
        before, after = hook_cmds(release, UPGRADE, self._options)
        self._plan.add_command(
            upgrade_cmd(release, self._options, decrypted),
            release.priority,
            release,
            before,
            after,
        )
        self._queue_test(release)

    def uninstall(self, release: Release, namespace: str | None = None) -> None:
        """Queue the uninstall of a release, optionally from another namespace."""
        before, after = hook_cmds(release, DELETE, self._options, namespace)
        self._plan.add_command(
            uninstall_cmd(release, self._options, namespace),
            self._delete_priority(release),
            release,
            before,
            after,
        )

    async def reinstall(self, release: Release, old_namespace: str | None = None) -> None:
        """Queue an uninstall followed by a fresh install."""
        self.uninstall(release, old_namespace)
        await self.install(release)

    async def diff(self, release: Release) -> str:
        """Run the diff of a release now and return its output."""
        decrypted = await self._decrypted(release)
        try:
            output = await run_piped(diff_cmds(release, self._options, decrypted))
        except CommandException as err:
            raise DecisionException(
                f"{_prefix(release)} could not be diffed: {err}"
            ) from err
        if output.strip() and (self._options.verbose or self._options.show_diff):
            print(output)
        return output.strip()

    async def rollback(self, release: Release, observed: HelmRelease) -> None:
        """Queue a rollback of an uninstalled release followed by an upgrade."""
        self._plan.add_command(
            rollback_cmd(release, observed.revision, self._options),
            release.priority,
            release,
        )
        await self.upgrade(release)
        self._plan.add_decision(
            f"Release [ {release.name} ] was deleted and is desired to be rolled back "
            f"to namespace [ {release.namespace} ]",
            release.priority,
            DecisionType.CREATE,
        )

    async def move(self, release: Release, moved: HelmRelease) -> None:
        """Queue the move of a release observed in another namespace."""
        await self.reinstall(release, moved.namespace)
        if moved.status in UNINSTALLED_STATUSES:
            self._plan.add_decision(
                f"Release [ {release.name} ] is deleted BUT from namespace "
                f"[ {moved.namespace} ]. Will purge delete it from there and install "
                f"it in namespace [ {release.namespace} ]",
                release.priority,
                DecisionType.CREATE,
            )
        else:
            self._plan.add_decision(
                f"Release [ {release.name} ] is desired to be enabled in a new namespace "
                f"[ {release.namespace} ]. Uninstall of the current release from "
                f"namespace [ {moved.namespace} ] will be performed and then "
                f"installation in namespace [ {release.namespace} ] will take place",
                release.priority,
                DecisionType.CHANGE,
            )
        self._plan.add_decision(
            f"WARNING: moving release [ {release.name} ] from [ {moved.namespace} ] "
            f"to [ {release.namespace} ] might not correctly connect existing volumes. "
            f"Check {PV_DOCS} for details if this release uses PV and PVC.",
            release.priority,
            DecisionType.CHANGE,
        )

    async def inspect_upgrade_scenario(
        self, release: Release, observed: HelmRelease
    ) -> None:
        """Decide between reinstall, upgrade and nothing for a deployed release."""
        info = self._charts.get(release.key)
        if info is None or not info.name or not info.version:
            _LOGGER.warning(
                "%s has no resolved chart information, skipping", _prefix(release)
            )
            return
        release.version = info.version
        chart_changed = info.name != observed.chart_name
        if chart_changed and self._options.replace_on_rename:
            self.uninstall(release)
            await self.install(release)
            self._plan.add_decision(
                f"Release [ {release.name} ] is desired to use a new chart "
                f"[ {release.chart} ]. Delete of the current release will be planned "
                f"and new chart will be installed in namespace [ {release.namespace} ]",
                release.priority,
                DecisionType.CHANGE,
            )
            return

        version_changed = bool(observed.chart_version) and not _same_version(
            info.version, observed.chart_version
        )
        if self._options.always_upgrade or version_changed or chart_changed:
            if self._options.kubectl_diff:
                await self.diff(release)
            else:
                decrypted = await self._decrypted(release)
                diff = diff_cmds(release, self._options, decrypted)[0]
                self._plan.add_command(diff, release.priority, release)
            await self.upgrade(release)
            self._plan.add_decision(
                f"Release [ {release.name} ] will be updated",
                release.priority,
                DecisionType.CHANGE,
            )
            return

        if await self.diff(release):
            await self.upgrade(release)
            self._plan.add_decision(
                f"Release [ {release.name} ] will be updated",
                release.priority,
                DecisionType.CHANGE,
            )
            return
        self._plan.add_decision(
            f"Release [ {release.name} ] installed and up-to-date",
            release.priority,
            DecisionType.NOOP,
        )

    async def clean_untracked_releases(self) -> None:
        """Queue the removal of managed releases no longer in the desired state."""
        if self._observer is None:
            return
        moving = {
            (moved.name, moved.namespace)
            for release in self._desired.apps.values()
            if release.is_considered_to_run
            and (moved := self._current.moved_from(release, self._desired)) is not None
        }
        priority = min(
            UNTRACKED_PRIORITY,
            min((planned.priority for planned in self._plan.commands), default=0) - 1,
        )
        for name, namespace in await self._observer.untracked_releases(self._desired):
            if (name, namespace) in moving:
                continue
            self._plan.add_decision(
                f"Untracked release [ {name} ] found and it will be deleted",
                priority,
                DecisionType.DELETE,
            )
            self._plan.add_command(
                untracked_uninstall_cmd(name, namespace, self._options),
                priority,
            )
