"""Library for preparing the cluster side of a run with kubectl.

This selects or creates the kube context used by every later helm and
kubectl call, and creates and configures the namespaces of the desired
state. The kube context is process wide and must be set before any
concurrent work starts.
"""

import asyncio
import json
import logging
from pathlib import Path

import aiofiles
import yaml

from .command import Command
from .config import Options
from .exceptions import EnvironmentException, KubectlException
from .state import Limit, Namespace, Quotas, State

__all__ = [
    "Kubectl",
    "kubectl_cmd",
    "KUBECTL_BIN",
]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"

# Service account token mounted into pods.
IN_CLUSTER_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"
DEFAULT_TOKEN_USER = "helmsman"

# Label kubernetes adds to every namespace, never removed.
NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"


def kubectl_cmd(
    args: list[str], description: str = "", best_effort: bool = False
) -> Command:
    """Return a kubectl command."""
    return Command(
        [KUBECTL_BIN, *args],
        description=description,
        exc=KubectlException,
        best_effort=best_effort,
    )


def limit_range_manifest(limits: list[Limit]) -> str:
    """Return the LimitRange applied to a namespace."""
    return yaml.dump(
        {
            "apiVersion": "v1",
            "kind": "LimitRange",
            "metadata": {"name": "limit-range"},
            "spec": {"limits": [limit.to_dict() for limit in limits]},
        },
        sort_keys=False,
    )


def resource_quota_manifest(quotas: Quotas) -> str:
    """Return the ResourceQuota applied to a namespace."""
    return yaml.dump(
        {
            "apiVersion": "v1",
            "kind": "ResourceQuota",
            "metadata": {"name": "resource-quota"},
            "spec": {"hard": quotas.hard()},
        },
        sort_keys=False,
    )


class Kubectl:
    """Prepares the kube context and namespaces of a run."""

    def __init__(self, options: Options, manifest_dir: Path) -> None:
        """Initialize Kubectl.

        Generated manifests are written below `manifest_dir`.
        """
        self._options = options
        self._manifest_dir = manifest_dir

    async def current_context(self) -> str | None:
        """Return the current kube context, None if there is none."""
        result = await kubectl_cmd(
            ["config", "current-context"], "Getting kubectl context"
        ).exec()
        if not result.ok or not result.stdout.strip():
            _LOGGER.info("Kubectl context is not set")
            return None
        return result.stdout.strip()

    async def use_context(self, context: str) -> bool:
        """Switch to a kube context, returning False if it doesn't exist."""
        result = await kubectl_cmd(
            ["config", "use-context", context],
            f"Setting kube context to [ {context} ]",
        ).exec()
        if not result.ok:
            _LOGGER.info(
                "Kubectl context [ %s ] does not exist. Attempting to create it...",
                context,
            )
            return False
        return True

    async def set_context(self, state: State) -> None:
        """Select the kube context of the settings, creating it when missing."""
        _LOGGER.info("Setting up kubectl")
        context = state.settings.kube_context
        if not context:
            if await self.current_context() is None:
                raise EnvironmentException(
                    "no kube context is set and none is defined in the settings"
                )
            return
        if await self.use_context(context):
            return
        await self.create_context(state)

    async def create_context(self, state: State) -> None:
        """Create the kube context from the settings and certificates."""
        settings = state.settings
        context = settings.kube_context or ""
        certs = state.certificates
        if settings.bearer_token:
            if not settings.bearer_token_path:
                _LOGGER.info(
                    "Creating kube context with bearer token from K8S service account."
                )
                settings.bearer_token_path = IN_CLUSTER_TOKEN
            else:
                _LOGGER.info(
                    "Creating kube context with bearer token from %s",
                    settings.bearer_token_path,
                )
            if not certs.get("caCrt"):
                raise EnvironmentException(
                    f"missing information to create context [ {context} ] caCrt is "
                    "missing in the Certifications section of your desired state file."
                )
        elif not settings.password or not settings.username or not settings.cluster_uri:
            raise EnvironmentException(
                f"missing information to create context [ {context} ] you are either "
                "missing PASSWORD, USERNAME or CLUSTERURI in the Settings section of "
                "your desired state file."
            )
        elif not certs.get("caCrt") or not certs.get("caKey"):
            raise EnvironmentException(
                f"missing information to create context [ {context} ] you are either "
                "missing caCrt or caKey or both in the Certifications section of your "
                "desired state file."
            )

        if settings.bearer_token:
            token = await _read_token(Path(settings.bearer_token_path or IN_CLUSTER_TOKEN))
            if not settings.username:
                settings.username = DEFAULT_TOKEN_USER
            credentials = [
                "config",
                "set-credentials",
                settings.username,
                f"--token={token}",
            ]
        else:
            credentials = [
                "config",
                "set-credentials",
                settings.username or "",
                f"--username={settings.username}",
                f"--password={settings.password}",
                f"--client-key={certs['caKey']}",
            ]
            if certs.get("caClient"):
                credentials.append(f"--client-certificate={certs['caClient']}")
        steps = [
            (credentials, "Creating kubectl context - setting credentials"),
            (
                [
                    "config",
                    "set-cluster",
                    context,
                    f"--server={settings.cluster_uri}",
                    f"--certificate-authority={certs.get('caCrt', '')}",
                ],
                "Creating kubectl context - setting cluster",
            ),
            (
                [
                    "config",
                    "set-context",
                    context,
                    f"--cluster={context}",
                    f"--user={settings.username}",
                ],
                "Creating kubectl context - setting context",
            ),
        ]
        for args, description in steps:
            result = await kubectl_cmd(args, description).exec()
            if not result.ok:
                raise EnvironmentException(
                    f"failed to create context [ {context} ]: {result.stderr.strip()}"
                )
        if not await self.use_context(context):
            raise EnvironmentException(
                "something went wrong while setting the kube context to the newly "
                "created one"
            )

    async def namespace_exists(self, namespace: str) -> bool:
        result = await kubectl_cmd(
            ["get", "namespace", namespace], f"Looking for namespace [ {namespace} ]"
        ).exec()
        return result.ok

    async def create_namespace(self, namespace: str) -> None:
        """Create a namespace unless it already exists."""
        if await self.namespace_exists(namespace):
            _LOGGER.debug("Namespace [ %s ] exists", namespace)
            return
        cmd = kubectl_cmd(
            [
                "create",
                "namespace",
                namespace,
                self._options.kube_dry_run_flag("create"),
            ],
            f"Creating namespace [ {namespace} ]",
        )
        result = await cmd.retry_exec(3)
        if not result.ok:
            raise KubectlException(
                f"Failed creating namespace [ {namespace} ] with error: "
                f"{result.stderr.strip()}"
            )
        _LOGGER.info("Namespace [ %s ] created", namespace)

    async def namespace_labels(self, namespace: str) -> dict[str, str]:
        """Return the labels currently set on a namespace."""
        result = await kubectl_cmd(
            ["get", "namespace", namespace, "-o", "jsonpath={.metadata.labels}"],
            f"Getting namespace [ {namespace} ] current labels",
        ).exec()
        if not result.ok:
            _LOGGER.error(
                "Could not get namespace [ %s ] labels. Error message: %s",
                namespace,
                result.stderr.strip(),
            )
            return {}
        output = result.stdout.strip().strip("'")
        if not output:
            return {}
        try:
            return dict(json.loads(output))
        except ValueError as err:
            raise KubectlException(
                f"failed to parse kubectl get namespace labels output: {output}: {err}"
            ) from err

    async def label_namespace(
        self, namespace: str, labels: dict[str, str], authoritative: bool = False
    ) -> None:
        """Label a namespace, removing undeclared labels when authoritative."""
        removed: list[str] = []
        if authoritative:
            current = await self.namespace_labels(namespace)
            removed = [
                f"{key}-"
                for key in current
                if key != NAMESPACE_NAME_LABEL and key not in labels
            ]
        if not labels and not removed:
            return
        args = [
            "label",
            "--overwrite",
            f"namespace/{namespace}",
            self._options.kube_dry_run_flag("label"),
            *removed,
            *(f"{key}={value}" for key, value in labels.items()),
        ]
        result = await kubectl_cmd(args, f"Labeling namespace [ {namespace} ]").exec()
        if not result.ok:
            _LOGGER.warning(
                "Could not label namespace [ %s ]. Error message: %s",
                namespace,
                result.stderr.strip(),
            )

    async def annotate_namespace(
        self, namespace: str, annotations: dict[str, str]
    ) -> None:
        """Annotate a namespace."""
        if not annotations:
            return
        args = [
            "annotate",
            "--overwrite",
            f"namespace/{namespace}",
            self._options.kube_dry_run_flag("annotate"),
            *(f"{key}={value}" for key, value in annotations.items()),
        ]
        result = await kubectl_cmd(args, f"Annotating namespace [ {namespace} ]").exec()
        if not result.ok:
            _LOGGER.warning(
                "Could not annotate namespace [ %s ]. Error message: %s",
                namespace,
                result.stderr.strip(),
            )

    async def apply_manifest(self, definition: str, namespace: str, kind: str) -> None:
        """Write a manifest to a private file and apply it to a namespace."""
        path = self._manifest_dir / f"{kind}-{namespace}.yaml"
        async with aiofiles.open(path, mode="w") as f:
            await f.write(definition)
        try:
            cmd = kubectl_cmd(
                [
                    "apply",
                    "-f",
                    str(path),
                    "-n",
                    namespace,
                    self._options.kube_dry_run_flag("apply"),
                ],
                f"Creating {kind} in namespace [ {namespace} ]",
            )
            result = await cmd.exec()
        finally:
            path.unlink(missing_ok=True)
        if not result.ok:
            raise KubectlException(
                f"error creating {kind} in namespace [ {namespace} ]: "
                f"{result.stderr.strip()}"
            )

    async def configure_namespace(
        self, name: str, namespace: Namespace, authoritative: bool = False
    ) -> None:
        """Create a namespace and apply its labels, annotations, limits and quotas."""
        await self.create_namespace(name)
        await self.label_namespace(name, namespace.labels, authoritative)
        await self.annotate_namespace(name, namespace.annotations)
        if self._options.dry_run:
            return
        if namespace.limits:
            await self.apply_manifest(
                limit_range_manifest(namespace.limits), name, "LimitRange"
            )
        if namespace.quotas is not None:
            await self.apply_manifest(
                resource_quota_manifest(namespace.quotas), name, "ResourceQuota"
            )

    async def add_namespaces(self, state: State) -> None:
        """Create and configure every enabled namespace concurrently."""
        _LOGGER.info("Setting up namespaces")
        authoritative = bool(state.settings.namespace_labels_authoritative)
        await asyncio.gather(
            *(
                self.configure_namespace(name, namespace, authoritative)
                for name, namespace in state.namespaces.items()
                if not namespace.disabled
            )
        )


async def _read_token(path: Path) -> str:
    try:
        async with aiofiles.open(path, mode="r") as f:
            return (await f.read()).strip()
    except OSError as err:
        raise EnvironmentException(
            f"Unable to read the bearer token [ {path} ]: {err}"
        ) from err
