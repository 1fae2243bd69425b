"""Representation of a desired state file (DSF).

A desired state describes the Helm repositories, namespaces and releases
that should exist in a cluster. It is decoded strictly: an unknown key in a
file is an error rather than silently ignored.

```python
from helmsman.state import State

state = State.parse_yaml(content)
for label, release in state.apps.items():
    print(f"{label}: {release.chart} {release.version}")
```

Booleans in the file are tri-state (`None` when absent) so that merging
several files never lets an omitted flag clobber a value set by an earlier
file.
"""

from dataclasses import dataclass, field
import logging
import shlex
from typing import Any

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .config import DEFAULT_CONTEXT, DEFAULT_STORAGE_BACKEND

__all__ = [
    "State",
    "Settings",
    "Namespace",
    "Limit",
    "Resources",
    "Quotas",
    "CustomQuota",
    "Release",
    "Hooks",
    "HookAction",
    "ManifestHook",
    "UrlHook",
    "ExecHook",
    "StateFileRef",
    "StateFiles",
    "HOOK_SLOTS",
    "MANIFEST_EXTENSIONS",
]

_LOGGER = logging.getLogger(__name__)

PRE_INSTALL = "preInstall"
POST_INSTALL = "postInstall"
PRE_UPGRADE = "preUpgrade"
POST_UPGRADE = "postUpgrade"
PRE_DELETE = "preDelete"
POST_DELETE = "postDelete"
TEST = "test"

HOOK_SLOTS = (
    PRE_INSTALL,
    POST_INSTALL,
    PRE_UPGRADE,
    POST_UPGRADE,
    PRE_DELETE,
    POST_DELETE,
    TEST,
)

_HOOK_ATTRS = {
    PRE_INSTALL: "pre_install",
    POST_INSTALL: "post_install",
    PRE_UPGRADE: "pre_upgrade",
    POST_UPGRADE: "post_upgrade",
    PRE_DELETE: "pre_delete",
    POST_DELETE: "post_delete",
    TEST: "test",
}

MANIFEST_EXTENSIONS = (".yaml", ".yml", ".json")
KUBE_SYSTEM = "kube-system"


class BaseModel(DataClassDictMixin):
    """Base class for all desired state objects."""

    class Config(BaseConfig):
        omit_none = True
        omit_default = True
        serialize_by_alias = True
        forbid_extra_keys = True


@dataclass
class Resources(BaseModel):
    """Resource amounts used in a LimitRange entry."""

    cpu: str | None = None
    memory: str | None = None


@dataclass
class Limit(BaseModel):
    """A single LimitRange entry applied to a namespace."""

    type: str
    """The kind of object the limit applies to, e.g. Container or Pod."""

    max: Resources | None = None
    min: Resources | None = None
    default: Resources | None = None
    default_request: Resources | None = field(
        default=None, metadata=field_options(alias="defaultRequest")
    )
    max_limit_request_ratio: Resources | None = field(
        default=None, metadata=field_options(alias="maxLimitRequestRatio")
    )


@dataclass
class CustomQuota(BaseModel):
    """A quota on a resource not covered by the named quota fields."""

    name: str
    value: str


@dataclass
class Quotas(BaseModel):
    """ResourceQuota hard limits applied to a namespace."""

    pods: str | None = None
    cpu_limits: str | None = field(
        default=None, metadata=field_options(alias="limits.cpu")
    )
    cpu_requests: str | None = field(
        default=None, metadata=field_options(alias="requests.cpu")
    )
    memory_limits: str | None = field(
        default=None, metadata=field_options(alias="limits.memory")
    )
    memory_requests: str | None = field(
        default=None, metadata=field_options(alias="requests.memory")
    )
    custom_quotas: list[CustomQuota] = field(
        default_factory=list, metadata=field_options(alias="customQuotas")
    )

    def hard(self) -> dict[str, str]:
        """Return the `spec.hard` map of the ResourceQuota."""
        result: dict[str, str] = {}
        if self.pods:
            result["pods"] = self.pods
        if self.cpu_limits:
            result["limits.cpu"] = self.cpu_limits
        if self.cpu_requests:
            result["requests.cpu"] = self.cpu_requests
        if self.memory_limits:
            result["limits.memory"] = self.memory_limits
        if self.memory_requests:
            result["requests.memory"] = self.memory_requests
        for quota in self.custom_quotas:
            result[quota.name] = quota.value
        return result


@dataclass
class Namespace(BaseModel):
    """A namespace declared in the desired state."""

    protected: bool | None = None
    """Releases in a protected namespace can't be changed."""

    limits: list[Limit] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    quotas: Quotas | None = None

    def __post_init__(self) -> None:
        self.disabled = False


@dataclass(frozen=True)
class ManifestHook:
    """A hook applied from a local manifest file."""

    path: str


@dataclass(frozen=True)
class UrlHook:
    """A hook applied from a manifest served at a URL."""

    url: str


@dataclass(frozen=True)
class ExecHook:
    """A hook that runs an arbitrary executable."""

    argv: list[str]


HookAction = ManifestHook | UrlHook | ExecHook


@dataclass
class Hooks(BaseModel):
    """Lifecycle hooks of a release, or the global hooks of the settings.

    Each slot holds a manifest path, a URL of a raw manifest or a command
    line. The control fields apply to every manifest hook of the release.
    """

    pre_install: str | None = field(
        default=None, metadata=field_options(alias=PRE_INSTALL)
    )
    post_install: str | None = field(
        default=None, metadata=field_options(alias=POST_INSTALL)
    )
    pre_upgrade: str | None = field(
        default=None, metadata=field_options(alias=PRE_UPGRADE)
    )
    post_upgrade: str | None = field(
        default=None, metadata=field_options(alias=POST_UPGRADE)
    )
    pre_delete: str | None = field(
        default=None, metadata=field_options(alias=PRE_DELETE)
    )
    post_delete: str | None = field(
        default=None, metadata=field_options(alias=POST_DELETE)
    )
    test: str | None = None

    success_condition: str | None = field(
        default=None, metadata=field_options(alias="successCondition")
    )
    """Condition passed to `kubectl wait --for=condition=` after a manifest hook."""

    success_timeout: str | None = field(
        default=None, metadata=field_options(alias="successTimeout")
    )
    """Timeout passed to `kubectl wait`, e.g. `90s`."""

    delete_on_success: bool | None = field(
        default=None, metadata=field_options(alias="deleteOnSuccess")
    )
    """Delete the hook resources once the success condition was met."""

    def slots(self) -> dict[str, str]:
        """Return the populated hook slots keyed by hook name."""
        return {
            slot: value
            for slot, attr in _HOOK_ATTRS.items()
            if (value := getattr(self, attr))
        }

    def get(self, slot: str) -> str | None:
        """Return the raw value of a hook slot."""
        return getattr(self, _HOOK_ATTRS[slot])

    def set_slot(self, slot: str, value: str | None) -> None:
        """Set the raw value of a hook slot."""
        setattr(self, _HOOK_ATTRS[slot], value)

    def action(self, slot: str) -> HookAction | None:
        """Return the typed action for a hook slot, if it is set."""
        if not (value := self.get(slot)):
            return None
        return parse_hook(value)


def parse_hook(value: str) -> HookAction:
    """Classify a raw hook value as a manifest, URL or executable."""
    if value.startswith(("http://", "https://")):
        return UrlHook(value)
    if value.lower().endswith(MANIFEST_EXTENSIONS):
        return ManifestHook(value)
    return ExecHook(shlex.split(value))


@dataclass
class Release(BaseModel):
    """A Helm release declared in the `apps` section."""

    name: str = ""
    """Release name, defaults to the key of the app in the DSF."""

    description: str | None = None
    namespace: str = ""
    enabled: bool | None = None
    group: str | None = None

    chart: str = ""
    """A `repo/chart` reference or a path to a local chart directory."""

    version: str = ""
    """Exact chart version or a semver constraint."""

    template: str | None = None
    """Name of an entry in `appsTemplates` to inherit defaults from."""

    values_file: str | None = field(
        default=None, metadata=field_options(alias="valuesFile")
    )
    values_files: list[str] = field(
        default_factory=list, metadata=field_options(alias="valuesFiles")
    )
    secrets_file: str | None = field(
        default=None, metadata=field_options(alias="secretsFile")
    )
    secrets_files: list[str] = field(
        default_factory=list, metadata=field_options(alias="secretsFiles")
    )
    post_renderer: str | None = field(
        default=None, metadata=field_options(alias="postRenderer")
    )
    test: bool | None = None
    protected: bool | None = None
    wait: bool | None = None
    priority: int = 0
    """Non-positive execution order, lower values run earlier."""

    set_values: dict[str, str] = field(
        default_factory=dict, metadata=field_options(alias="set")
    )
    set_string: dict[str, str] = field(
        default_factory=dict, metadata=field_options(alias="setString")
    )
    set_file: dict[str, str] = field(
        default_factory=dict, metadata=field_options(alias="setFile")
    )
    helm_flags: list[str] = field(
        default_factory=list, metadata=field_options(alias="helmFlags")
    )
    helm_diff_flags: list[str] = field(
        default_factory=list, metadata=field_options(alias="helmDiffFlags")
    )
    no_hooks: bool | None = field(
        default=None, metadata=field_options(alias="noHooks")
    )
    timeout: int = 0
    """Seconds passed to helm as `--timeout`."""

    hooks: Hooks | None = None
    max_history: int = field(default=0, metadata=field_options(alias="maxHistory"))

    def __post_init__(self) -> None:
        self.disabled = False

    @property
    def key(self) -> str:
        """Identity of the release within a cluster."""
        return f"{self.name}-{self.namespace}"

    @property
    def is_considered_to_run(self) -> bool:
        """Return True if the release was selected for this run."""
        return not self.disabled

    @property
    def is_enabled(self) -> bool:
        """Return True if the release should be deployed, releases are off unless enabled."""
        return bool(self.enabled)

    def all_values_files(self) -> list[str]:
        """Return the values files in the order they are passed to helm."""
        if self.values_file:
            return [self.values_file]
        return list(self.values_files)

    def all_secrets_files(self) -> list[str]:
        """Return the encrypted values files in the order they are passed to helm."""
        if self.secrets_file:
            return [self.secrets_file]
        return list(self.secrets_files)

    def hook(self, slot: str) -> HookAction | None:
        """Return the typed action of a hook slot."""
        if self.hooks is None:
            return None
        return self.hooks.action(slot)


@dataclass
class Settings(BaseModel):
    """Cluster access and behavior settings of the desired state."""

    kube_context: str | None = field(
        default=None, metadata=field_options(alias="kubeContext")
    )
    username: str | None = None
    password: str | None = None
    cluster_uri: str | None = field(
        default=None, metadata=field_options(alias="clusterURI")
    )
    storage_backend: str | None = field(
        default=None, metadata=field_options(alias="storageBackend")
    )
    slack_webhook: str | None = field(
        default=None, metadata=field_options(alias="slackWebhook")
    )
    reverse_delete: bool | None = field(
        default=None, metadata=field_options(alias="reverseDelete")
    )
    bearer_token: bool | None = field(
        default=None, metadata=field_options(alias="bearerToken")
    )
    bearer_token_path: str | None = field(
        default=None, metadata=field_options(alias="bearerTokenPath")
    )
    namespace_labels_authoritative: bool | None = field(
        default=None, metadata=field_options(alias="namespaceLabelsAuthoritative")
    )
    eyaml_enabled: bool | None = field(
        default=None, metadata=field_options(alias="eyamlEnabled")
    )
    eyaml_private_key_path: str | None = field(
        default=None, metadata=field_options(alias="eyamlPrivateKeyPath")
    )
    eyaml_public_key_path: str | None = field(
        default=None, metadata=field_options(alias="eyamlPublicKeyPath")
    )
    global_hooks: Hooks | None = field(
        default=None, metadata=field_options(alias="globalHooks")
    )
    global_max_history: int = field(
        default=0, metadata=field_options(alias="globalMaxHistory")
    )
    skip_ignored_apps: bool | None = field(
        default=None, metadata=field_options(alias="skipIgnoredApps")
    )
    skip_pending_apps: bool | None = field(
        default=None, metadata=field_options(alias="skipPendingApps")
    )

    @property
    def backend(self) -> str:
        """Helm storage backend holding the release history."""
        return self.storage_backend or DEFAULT_STORAGE_BACKEND


@dataclass
class State(BaseModel):
    """The desired state of a cluster."""

    metadata: dict[str, str] = field(default_factory=dict)
    """Free form information for human readers."""

    certificates: dict[str, str] = field(default_factory=dict)
    """Paths or object store URIs of the cluster CA and client certificates."""

    settings: Settings = field(default_factory=Settings)
    context: str | None = None
    """The managing context stamped on releases deployed from this state."""

    helm_repos: dict[str, str] = field(
        default_factory=dict, metadata=field_options(alias="helmRepos")
    )
    preconfigured_helm_repos: list[str] = field(
        default_factory=list, metadata=field_options(alias="preconfiguredHelmRepos")
    )
    namespaces: dict[str, Namespace] = field(default_factory=dict)
    apps: dict[str, Release] = field(default_factory=dict)
    apps_templates: dict[str, Release] = field(
        default_factory=dict, metadata=field_options(alias="appsTemplates")
    )

    def __post_init__(self) -> None:
        self.target_map: dict[str, bool] = {}
        self.group_map: dict[str, bool] = {}

    @classmethod
    def __pre_deserialize__(cls, d: dict[Any, Any]) -> dict[Any, Any]:
        # A namespace or app declared without a body decodes as null.
        for section in ("namespaces", "apps", "appsTemplates"):
            if isinstance(entries := d.get(section), dict):
                d[section] = {
                    key: value if value is not None else {}
                    for key, value in entries.items()
                }
        return d

    @property
    def managing_context(self) -> str:
        """Return the managing context, falling back to the default name."""
        return self.context or DEFAULT_CONTEXT

    def is_namespace_defined(self, namespace: str) -> bool:
        """Return True if the namespace is declared in the desired state."""
        return namespace in self.namespaces

    def is_namespace_protected(self, namespace: str) -> bool:
        """Return True if the namespace is declared protected."""
        if (ns := self.namespaces.get(namespace)) is None:
            return False
        return bool(ns.protected)

    def release_names(self) -> set[tuple[str, str]]:
        """Return the `(name, namespace)` identities of all declared apps."""
        return {(r.name, r.namespace) for r in self.apps.values()}

    @classmethod
    def parse_yaml(cls, content: str) -> "State":
        """Parse a serialized desired state."""
        return yaml_decode(content, cls)

    def to_yaml(self) -> str:
        """Return a YAML string representation of the desired state."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]


@dataclass
class StateFileRef(BaseModel):
    """A desired state file listed in a spec file."""

    path: str
    priority: int = 0
    """Files with a lower priority are merged first."""


@dataclass
class StateFiles(BaseModel):
    """A spec file composing several desired state files."""

    state_files: list[StateFileRef] = field(
        default_factory=list, metadata=field_options(alias="stateFiles")
    )

    @classmethod
    def parse_yaml(cls, content: str) -> "StateFiles":
        """Parse a serialized spec file."""
        return yaml_decode(content, cls)
