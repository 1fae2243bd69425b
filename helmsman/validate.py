"""Validation of a merged desired state.

The validator checks independent sections (settings, certificates,
namespaces, repositories and apps) and reports the first problem found in
each section, so a single run surfaces as many useful messages as possible
without cascading errors from the same root cause.
"""

from collections.abc import Callable
import logging
import os
from pathlib import Path
from urllib.parse import urlparse

from .blob import OBJECT_STORE_SCHEMES
from .command import tool_exists
from .config import Options
from .exceptions import ValidationException
from .state import (
    KUBE_SYSTEM,
    MANIFEST_EXTENSIONS,
    ExecHook,
    HOOK_SLOTS,
    Hooks,
    ManifestHook,
    Release,
    State,
    UrlHook,
)

__all__ = [
    "Validator",
    "check_unique",
]

_LOGGER = logging.getLogger(__name__)


def _is_url(value: str, schemes: tuple[str, ...] = ("http", "https")) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in schemes and bool(parsed.netloc)


def _check_file(path: str, extensions: tuple[str, ...] = MANIFEST_EXTENSIONS) -> None:
    if path.startswith("http"):
        if not _is_url(path):
            raise ValidationException(f"{path} must be valid URL path to a raw file")
    elif not Path(path).is_file():
        raise ValidationException(
            f"{path} must be valid relative (from dsf file) file path"
        )
    elif not path.lower().endswith(extensions):
        raise ValidationException(
            f"{path} must be of one the following file formats: {', '.join(extensions)}"
        )


def _check_hooks(hooks: Hooks) -> None:
    for slot in HOOK_SLOTS:
        action = hooks.action(slot)
        if action is None:
            continue
        if isinstance(action, ManifestHook):
            _check_file(action.path)
        elif isinstance(action, UrlHook):
            if not _is_url(action.url):
                raise ValidationException(
                    f"{slot} hook [ {action.url} ] must be a valid URL"
                )
        elif isinstance(action, ExecHook):
            program = action.argv[0] if action.argv else ""
            if not program:
                raise ValidationException(f"{slot} hook can't be empty")
            if not tool_exists(program) and not os.access(program, os.X_OK):
                raise ValidationException(
                    f"{slot} hook [ {program} ] is not a valid manifest file and "
                    "can't be found as an executable"
                )


def check_unique(state: State) -> None:
    """Check that no two apps share a name within a namespace."""
    seen: dict[tuple[str, str], str] = {}
    for label, app in state.apps.items():
        identity = (app.name, app.namespace)
        if (other := seen.get(identity)) is not None:
            raise ValidationException(
                f"apps validation failed -- for app [ {label} ]. release name must be "
                f"unique within a given namespace (conflicts with app [ {other} ])"
            )
        seen[identity] = label


class Validator:
    """Checks that a desired state can be acted upon."""

    def __init__(self, options: Options, has_kube_context: bool = True) -> None:
        """Initialize Validator.

        `has_kube_context` tells whether kubectl already has a current context
        that can be used when the settings don't name one.
        """
        self._options = options
        self._has_kube_context = has_kube_context

    def validate(self, state: State) -> None:
        """Raise a `ValidationException` describing every failed section."""
        if self._options.destroy or self._options.skip_validation:
            _LOGGER.info("Skipping desired state validation")
            check_unique(state)
            return
        sections: list[Callable[[State], None]] = [
            self.validate_settings,
            self.validate_certificates,
            self.validate_namespaces,
            self.validate_repos,
            self.validate_apps,
        ]
        errors: list[str] = []
        for section in sections:
            try:
                section(state)
            except ValidationException as err:
                errors.append(str(err))
        if errors:
            raise ValidationException("\n".join(errors))

    def validate_settings(self, state: State) -> None:
        settings = state.settings
        if not settings.kube_context and not self._has_kube_context:
            raise ValidationException(
                "settings validation failed -- you have not defined a kubeContext to "
                "use. Either define it in the desired state file or pass a kubeconfig "
                "with --kubeconfig to use an existing context"
            )
        ca_client = "caClient" in state.certificates
        if settings.cluster_uri:
            if not _is_url(settings.cluster_uri):
                raise ValidationException(
                    "settings validation failed -- clusterURI must have a valid URL "
                    "set in an env variable or passed directly. Either the env var is "
                    "missing/empty or the URL is invalid"
                )
            if not settings.kube_context:
                raise ValidationException(
                    "settings validation failed -- KubeContext needs to be provided in "
                    "the settings stanza"
                )
            if not settings.bearer_token and not ca_client:
                if not settings.username:
                    raise ValidationException(
                        "settings validation failed -- username needs to be provided "
                        "in the settings stanza"
                    )
                if not settings.password:
                    raise ValidationException(
                        "settings validation failed -- password needs to be provided "
                        "(directly or from env var) in the settings stanza"
                    )
            if settings.bearer_token and settings.bearer_token_path:
                if not Path(settings.bearer_token_path).is_file():
                    raise ValidationException(
                        "settings validation failed -- bearer token path "
                        f"{settings.bearer_token_path} is not found. The path has to "
                        "be relative to the desired state file"
                    )
        elif settings.bearer_token:
            raise ValidationException(
                "settings validation failed -- bearer token is enabled but no cluster "
                "URI provided"
            )
        if settings.global_hooks is not None:
            try:
                _check_hooks(settings.global_hooks)
            except ValidationException as err:
                raise ValidationException(
                    f"settings validation failed -- globalHooks: {err}"
                ) from err
        if settings.slack_webhook and not _is_url(settings.slack_webhook):
            raise ValidationException(
                "settings validation failed -- slackWebhook must be a valid URL"
            )
        if bool(settings.eyaml_private_key_path) != bool(
            settings.eyaml_public_key_path
        ):
            raise ValidationException(
                "both EyamlPrivateKeyPath and EyamlPublicKeyPath are required"
            )

    def validate_certificates(self, state: State) -> None:
        settings = state.settings
        if not state.certificates:
            if settings.cluster_uri:
                raise ValidationException(
                    "certificates validation failed -- kube context setup is required "
                    "but no certificates stanza provided"
                )
            return
        for key, value in state.certificates.items():
            if not Path(value).is_file() and not _is_url(value, OBJECT_STORE_SCHEMES):
                raise ValidationException(
                    f"certifications validation failed -- [ {key} ] must be a valid "
                    "S3, GCS, AZ bucket/container URL or a valid relative file path"
                )
        ca_crt = "caCrt" in state.certificates
        ca_key = "caKey" in state.certificates
        if settings.cluster_uri and not settings.bearer_token:
            if not ca_crt or not ca_key:
                raise ValidationException(
                    "certificates validation failed -- connection to cluster is "
                    "required but no cert/key was given. Please add [caCrt] and "
                    "[caKey] under Certifications. You might also need to provide "
                    "[clientCrt]"
                )
        elif settings.cluster_uri and settings.bearer_token and not ca_crt:
            raise ValidationException(
                "certificates validation failed -- cluster connection with bearer "
                "token is enabled but [caCrt] is missing. Please provide [caCrt] in "
                "the Certifications stanza"
            )

    def validate_namespaces(self, state: State) -> None:
        if self._options.ns_override:
            _LOGGER.info(
                "ns-override is used to override all namespaces with [ %s ] Skipping "
                "defined namespaces validation.",
                self._options.ns_override,
            )
            return
        if not state.namespaces:
            raise ValidationException(
                "namespaces validation failed -- at least one namespace is required"
            )

    def validate_repos(self, state: State) -> None:
        for name, url in state.helm_repos.items():
            if not _is_url(url, ("http", "https", "oci", "s3", "gs")):
                raise ValidationException(
                    f"repos validation failed -- repo [ {name} ] must have a valid URL"
                )

    def validate_apps(self, state: State) -> None:
        seen: set[tuple[str, str]] = set()
        for label, app in state.apps.items():
            try:
                self._validate_release(app, seen, state)
            except ValidationException as err:
                raise ValidationException(
                    f"apps validation failed -- for app [ {label} ]. {err}"
                ) from err

    def _validate_release(
        self, app: Release, seen: set[tuple[str, str]], state: State
    ) -> None:
        if (app.name, app.namespace) in seen:
            raise ValidationException(
                "release name must be unique within a given namespace"
            )
        seen.add((app.name, app.namespace))

        ns_override = self._options.ns_override
        if not app.namespace:
            raise ValidationException("release targeted namespace can't be empty")
        if (
            app.namespace not in (KUBE_SYSTEM, ns_override)
            and not state.is_namespace_defined(app.namespace)
        ):
            raise ValidationException(
                f"release {app.name} is using namespace [ {app.namespace} ] which is "
                "not defined in the Namespaces section of your desired state file. "
                f"Release [ {app.name} ] can't be installed in that Namespace until "
                "its defined."
            )

        if not app.chart or (
            "/" not in app.chart and not Path(app.chart).is_dir()
        ):
            raise ValidationException(
                "chart can't be empty and must be of the format: repo/chart"
            )
        if not app.chart.startswith("oci://") and not Path(app.chart).is_dir():
            repo = app.chart.split("/", 1)[0]
            if repo not in state.helm_repos and repo not in state.preconfigured_helm_repos:
                raise ValidationException(
                    f"chart [ {app.chart} ] must either be a local chart directory or "
                    f"use a repo defined in helmRepos or preconfiguredHelmRepos"
                )
        if not app.version:
            raise ValidationException("version can't be empty")

        if app.values_file and app.values_files:
            raise ValidationException(
                "valuesFile and valuesFiles should not be used together"
            )
        for values in app.all_values_files():
            _check_file(values)
        if app.secrets_file and app.secrets_files:
            raise ValidationException(
                "secretsFile and secretsFiles should not be used together"
            )
        for secret in app.all_secrets_files():
            _check_file(secret)

        if app.priority > 0:
            raise ValidationException(
                "priority can only be 0 or negative value, positive values are not "
                "allowed"
            )
        if app.hooks is not None:
            _check_hooks(app.hooks)
