"""The helmsman pipeline, from desired state files to an executed plan.

```python
from helmsman.app import run
from helmsman.config import Options

plan = await run(Options(files=[Path("example.yaml")], apply=True))
```

Temporary files (rendered values, downloaded certificates and charts and
decrypted secrets) are removed when the run ends, whether it succeeded or
not, unless `no_cleanup` is set.
"""

import dataclasses
import logging
import os

from .chart import ChartInfo, ChartResolver
from .command import tool_exists
from .config import Options
from .context import trace_context
from .decision import DecisionMaker
from .exceptions import ChartException, HelmException, HelmsmanException
from .helm import Helm
from .kube import KUBECTL_BIN, Kubectl
from .loader import StateLoader, TempFiles, load_env_files
from .notify import Notifier, new_notifier
from .observer import Observer
from .plan import Plan
from .release_ops import label_cmd
from .secrets import new_decryptor
from .state import State
from .validate import Validator

__all__ = [
    "run",
]

_LOGGER = logging.getLogger(__name__)

HELM_DIFF_PLUGIN = "diff"


async def run(options: Options) -> Plan:
    """Load, validate and decide the desired state, executing the plan when asked."""
    load_env_files(options.env_files)
    if options.kubeconfig:
        os.environ["KUBECONFIG"] = options.kubeconfig
    with TempFiles(keep=options.no_cleanup) as temp:
        with trace_context("Load"):
            state = await StateLoader(options, temp).load()
        os.environ["HELM_DRIVER"] = state.settings.backend
        notifier = new_notifier(state.settings.slack_webhook)
        try:
            return await _reconcile(options, state, temp, notifier)
        except HelmsmanException as err:
            await notifier.notify(str(err), failure=True)
            raise


async def _reconcile(
    options: Options, state: State, temp: TempFiles, notifier: Notifier
) -> Plan:
    helm = Helm()
    kubectl = Kubectl(options, temp.new_dir("manifests"))

    with trace_context("Validate"):
        has_context = bool(state.settings.kube_context) or (
            await kubectl.current_context() is not None
        )
        Validator(options, has_context).validate(state)

    with trace_context("Setup"):
        await helm.check_version()
        await kubectl.set_context(state)
        _LOGGER.info("Setting up helm")
        try:
            await helm.add_repos(state.helm_repos)
            if state.helm_repos and not options.no_update:
                await helm.update()
        except HelmException:
            if not options.destroy:
                raise
            _LOGGER.warning("Failed to set up helm repositories, continuing to destroy")
        if (options.apply or options.dry_run or options.destroy) and not options.no_ns:
            await kubectl.add_namespaces(state)
        options = await _select_diff(options, helm)

    with trace_context("Charts"):
        charts = await _resolve_charts(options, state, temp)

    if options.destroy:
        _LOGGER.warning("Destroy flag is enabled. Your releases will be deleted!")
    if options.migrate_context:
        await _migrate_context(options, state)

    observer = Observer(options, state.settings.backend)
    with trace_context("Observe"):
        current = await observer.current_state(state.managing_context)

    with trace_context("Decide"):
        maker = DecisionMaker(
            options,
            state,
            current,
            charts,
            observer=observer,
            decryptor=new_decryptor(state.settings, temp, helm),
        )
        plan = await maker.make_plan()

    plan.sort()
    plan.print()
    if options.debug:
        plan.print_cmds()
    await plan.send_to_slack(notifier)

    if options.apply or options.dry_run or options.destroy:
        with trace_context("Execute"):
            await plan.exec(
                options, state.settings.backend, state.managing_context, notifier
            )
    return plan


async def _select_diff(options: Options, helm: Helm) -> Options:
    """Fall back to `kubectl diff` when the helm diff plugin is missing."""
    if options.kubectl_diff or options.destroy:
        return options
    if await helm.plugin_exists(HELM_DIFF_PLUGIN):
        return options
    if not tool_exists(KUBECTL_BIN):
        raise HelmException(
            "helm diff plugin is not installed/configured correctly. Aborting!"
        )
    _LOGGER.warning("helm diff plugin is not installed, using kubectl diff instead")
    return dataclasses.replace(options, kubectl_diff=True)


async def _resolve_charts(
    options: Options, state: State, temp: TempFiles
) -> dict[str, ChartInfo]:
    _LOGGER.info("Getting chart information")
    resolver = ChartResolver(options)
    releases = list(state.apps.values())
    if options.update_deps:
        await resolver.update_deps(releases)
    try:
        charts = await resolver.resolve(state)
    except ChartException:
        if not options.skip_validation:
            raise
        _LOGGER.info("Skipping charts' validation.")
        charts = {}
    else:
        _LOGGER.info("Charts validated.")
    if options.check_for_chart_updates:
        await resolver.check_for_updates(releases)
    if options.download_charts:
        await resolver.download(releases, temp.new_dir("charts"))
    return charts


async def _migrate_context(options: Options, state: State) -> None:
    """Stamp the managing context on the storage objects of every selected release."""
    _LOGGER.warning(
        "migrate-context flag is enabled. Context will be changed to [ %s ] and "
        "Helmsman labels will be applied.",
        state.managing_context,
    )
    if options.dry_run:
        return
    for release in state.apps.values():
        if not release.is_considered_to_run:
            continue
        cmd = label_cmd(release, state.settings.backend, state.managing_context)
        result = await cmd.exec()
        if not result.ok:
            _LOGGER.warning(
                "Could not label release [ %s ]: %s", release.name, result.stderr.strip()
            )
