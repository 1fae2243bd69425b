"""Library for loading and merging desired state files.

Desired state files are read in the order given by their priority, each
file is rendered by a `Templater`, decoded strictly, has its relative paths
expanded and is then merged over the files loaded before it.

```python
from helmsman.config import Options
from helmsman.loader import StateLoader, TempFiles

with TempFiles() as temp:
    loader = StateLoader(Options(files=[Path("example.yaml")]), temp)
    state = await loader.load()
```

Merging follows these rules:
- maps are merged key by key, recursively
- lists replace the previous value
- empty strings, zero numbers and unset (`None`) values never override
- tri-state booleans override whenever they were set in the later file
"""

from collections.abc import Iterable
import copy
from dataclasses import fields, is_dataclass
import json
import logging
import os
from pathlib import Path
import shlex
import shutil
import tempfile
import tomllib
from types import TracebackType
from typing import Any

import aiofiles
from dotenv import dotenv_values
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.exceptions import ExtraKeysError
import yaml

from .blob import BlobFetcher, CliBlobFetcher, is_remote
from .config import Options, DEFAULT_CONTEXT, DEFAULT_STORAGE_BACKEND
from .exceptions import InputException
from .state import (
    HOOK_SLOTS,
    Hooks,
    ExecHook,
    ManifestHook,
    Namespace,
    Release,
    State,
    StateFiles,
)
from .templater import ChainTemplater, EnvTemplater, SsmTemplater, Templater

__all__ = [
    "StateLoader",
    "TempFiles",
    "decode_state",
    "merge_into",
    "expand_templates",
    "disable_apps",
    "load_env_files",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"
YAML_EXTENSIONS = (".yaml", ".yml")


class TempFiles:
    """Temporary files created during a run, removed when the run ends.

    Holds substituted values files, downloaded certificates and decrypted
    secrets. Set `keep` to leave them on disk for debugging.
    """

    def __init__(self, keep: bool = False) -> None:
        """Initialize TempFiles."""
        self._keep = keep
        self._root: Path | None = None
        self._tracked: list[Path] = []

    @property
    def root(self) -> Path:
        """Return the root temporary directory, creating it on first use."""
        if self._root is None:
            self._root = Path(tempfile.mkdtemp(prefix="helmsman-"))
        return self._root

    def new_dir(self, prefix: str = "tmp") -> Path:
        """Create a fresh directory below the root directory."""
        return Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.root))

    def track(self, path: Path) -> None:
        """Remove a file living outside of the root directory on cleanup."""
        self._tracked.append(path)

    def cleanup(self) -> None:
        """Delete every temporary file."""
        if self._keep:
            _LOGGER.info("Keeping temporary files in %s", self._root)
            return
        _LOGGER.debug("Cleaning up sensitive and temp files")
        for path in self._tracked:
            path.unlink(missing_ok=True)
        self._tracked.clear()
        if self._root is not None:
            shutil.rmtree(self._root, ignore_errors=True)
            self._root = None

    def __enter__(self) -> "TempFiles":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup()


def load_env_files(env_files: list[Path]) -> None:
    """Load environment variables from dotenv files.

    The default `.env` file is read when it exists, followed by each of the
    given files. A later file wins over an earlier one, and variables already
    present in the process environment win over every file.
    """
    paths: list[Path] = []
    if Path(DEFAULT_ENV_FILE).exists():
        paths.append(Path(DEFAULT_ENV_FILE))
    for env_file in env_files:
        if not env_file.exists():
            raise InputException(f"Env file [ {env_file} ] does not exist")
        paths.append(env_file)
    values: dict[str, str] = {}
    for path in paths:
        _LOGGER.debug("Loading environment variables from %s", path)
        values.update(
            {key: value for key, value in dotenv_values(path).items() if value is not None}
        )
    for key, value in values.items():
        os.environ.setdefault(key, value)


def decode_state(text: str, path: Path) -> State:
    """Decode the text of a desired state file, selecting the format by extension."""
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            return State.from_dict(tomllib.loads(text))
        if suffix == ".json":
            return State.from_dict(json.loads(text))
        if suffix in YAML_EXTENSIONS:
            if not text.strip():
                return State()
            return yaml_decode(text, State)
    except ExtraKeysError as err:
        raise InputException(f"Unknown key in [ {path} ]: {err}") from err
    except (
        ValueError,
        LookupError,
        TypeError,
        yaml.YAMLError,
        tomllib.TOMLDecodeError,
    ) as err:
        raise InputException(f"Unable to parse [ {path} ]: {err}") from err
    raise InputException(
        f"Desired state file [ {path} ] must be of type .yaml, .yml, .json or .toml"
    )


def merge_into(dst: Any, src: Any) -> None:
    """Merge the dataclass `src` over `dst` in place."""
    for f in fields(dst):
        value = getattr(src, f.name)
        current = getattr(dst, f.name)
        if value is None:
            continue
        if isinstance(value, bool):
            setattr(dst, f.name, value)
        elif is_dataclass(value):
            if current is None:
                setattr(dst, f.name, copy.deepcopy(value))
            else:
                merge_into(current, value)
        elif isinstance(value, dict):
            for key, item in value.items():
                existing = current.get(key)
                if is_dataclass(item) and is_dataclass(existing):
                    merge_into(existing, item)
                else:
                    current[key] = copy.deepcopy(item)
        elif isinstance(value, list):
            if value:
                setattr(dst, f.name, copy.deepcopy(value))
        elif value == "" or value == 0:
            continue
        else:
            setattr(dst, f.name, value)


def _resolve_template(
    name: str,
    templates: dict[str, Release],
    resolved: dict[str, Release],
    visiting: list[str],
) -> Release:
    if (done := resolved.get(name)) is not None:
        return done
    if name not in templates:
        raise InputException(f"App template [ {name} ] is not defined in appsTemplates")
    if name in visiting:
        cycle = " -> ".join(visiting[visiting.index(name) :] + [name])
        raise InputException(f"Cyclic app template inheritance: {cycle}")
    template = templates[name]
    result = copy.deepcopy(template)
    if template.template:
        base = copy.deepcopy(
            _resolve_template(template.template, templates, resolved, visiting + [name])
        )
        merge_into(base, template)
        result = base
    result.template = None
    resolved[name] = result
    return result


def expand_templates(state: State) -> None:
    """Apply `appsTemplates` defaults to every app that declares a template."""
    resolved: dict[str, Release] = {}
    for name in state.apps_templates:
        _resolve_template(name, state.apps_templates, resolved, [])
    for label, app in list(state.apps.items()):
        if not app.template:
            continue
        try:
            base = copy.deepcopy(resolved[app.template])
        except KeyError as err:
            raise InputException(
                f"App [ {label} ] uses template [ {app.template} ] which is not "
                "defined in appsTemplates"
            ) from err
        merge_into(base, app)
        base.template = app.template
        state.apps[label] = base


def inherit_global_settings(state: State) -> None:
    """Copy global hooks and max history into apps which don't set their own."""
    global_hooks = state.settings.global_hooks
    for app in state.apps.values():
        if global_hooks is not None:
            if app.hooks is None:
                app.hooks = copy.deepcopy(global_hooks)
            else:
                for slot, value in global_hooks.slots().items():
                    if not app.hooks.get(slot):
                        app.hooks.set_slot(slot, value)
                if app.hooks.success_condition is None:
                    app.hooks.success_condition = global_hooks.success_condition
                if app.hooks.success_timeout is None:
                    app.hooks.success_timeout = global_hooks.success_timeout
                if app.hooks.delete_on_success is None:
                    app.hooks.delete_on_success = global_hooks.delete_on_success
        if state.settings.global_max_history and not app.max_history:
            app.max_history = state.settings.global_max_history


def disable_apps(
    state: State,
    groups: Iterable[str],
    targets: Iterable[str],
    exclude_groups: Iterable[str] = (),
    exclude_targets: Iterable[str] = (),
) -> None:
    """Mark apps outside of the selected targets and groups as disabled.

    Excluded groups and targets are always disabled. When targets or groups
    are given, namespaces without any selected app are disabled too.
    """
    exclude_groups = set(exclude_groups)
    exclude_targets = set(exclude_targets)
    for app in state.apps.values():
        if (app.group and app.group in exclude_groups) or app.name in exclude_targets:
            app.disabled = True

    targets = list(targets)
    groups = set(groups)
    if not targets and not groups:
        return
    for target in targets:
        state.target_map[target] = True
    for group in groups:
        state.group_map[group] = True
    namespaces: set[str] = set()
    for app in state.apps.values():
        if app.name in state.target_map:
            namespaces.add(app.namespace)
            continue
        if app.group and app.group in groups:
            state.target_map[app.name] = True
            namespaces.add(app.namespace)
        else:
            app.disabled = True
    for name, ns in state.namespaces.items():
        if name not in namespaces:
            ns.disabled = True


def set_defaults(state: State, options: Options) -> None:
    """Fill in names, storage backend and managing context."""
    if not state.settings.storage_backend:
        state.settings.storage_backend = DEFAULT_STORAGE_BACKEND
    if options.context_override:
        _LOGGER.info("Overriding the managing context with %s", options.context_override)
        state.context = options.context_override
    elif not state.context:
        state.context = DEFAULT_CONTEXT
    for label, app in state.apps.items():
        if not app.name:
            app.name = label


def override_namespace(state: State, namespace: str) -> None:
    """Force every app into one namespace, which becomes the only namespace."""
    for app in state.apps.values():
        _LOGGER.info("Overriding namespace for app: %s", app.name)
        app.namespace = namespace
    existing = state.namespaces.get(namespace)
    state.namespaces = {namespace: existing if existing else Namespace()}


class StateLoader:
    """Loads desired state files and merges them into a single `State`."""

    def __init__(
        self,
        options: Options,
        temp: TempFiles,
        templater: Templater | None = None,
        fetcher: BlobFetcher | None = None,
    ) -> None:
        """Initialize StateLoader."""
        self._options = options
        self._temp = temp
        self._fetcher = fetcher or CliBlobFetcher()
        if templater is None:
            templaters: list[Templater] = []
            if options.env_subst:
                templaters.append(
                    EnvTemplater(
                        validate=not options.skip_validation,
                        recursive=options.recursive_env_expand,
                    )
                )
            if options.ssm_subst:
                templaters.append(SsmTemplater())
            templater = ChainTemplater(templaters)
        self._templater = templater
        values_templaters: list[Templater] = []
        if options.subst_env_values and options.env_subst:
            values_templaters.append(
                EnvTemplater(recursive=options.recursive_env_expand)
            )
        if options.subst_ssm_values and options.ssm_subst:
            values_templaters.append(SsmTemplater())
        self._values_templater = (
            ChainTemplater(values_templaters) if values_templaters else None
        )

    async def state_files(self) -> list[tuple[Path, int]]:
        """Return the files to load with their merge priority."""
        result: list[tuple[Path, int]] = []
        if (spec := self._options.spec_file) is not None:
            content = await _read_text(spec)
            try:
                spec_files = StateFiles.parse_yaml(content)
            except (ValueError, LookupError, TypeError, yaml.YAMLError) as err:
                raise InputException(f"Unable to parse spec file [ {spec} ]: {err}") from err
            for ref in spec_files.state_files:
                path = Path(ref.path)
                if not path.is_absolute():
                    path = spec.parent / path
                result.append((path, ref.priority))
        result.extend((path, 0) for path in self._options.files)
        if not result:
            raise InputException("No desired state files were given")
        return sorted(result, key=lambda item: item[1])

    async def load_file(self, path: Path) -> State:
        """Read, render, decode and expand a single desired state file."""
        text = await _read_text(path)
        text = await self._templater.render(text, str(path))
        state = decode_state(text, path)
        await self._expand(state, path.parent.absolute())
        _LOGGER.info(
            "Parsed [[ %s ]] successfully and found [ %d ] apps", path, len(state.apps)
        )
        return state

    async def load(self) -> State:
        """Load every file and return the merged, finalized desired state."""
        state = State()
        for path, _ in await self.state_files():
            merge_into(state, await self.load_file(path))
        expand_templates(state)
        set_defaults(state, self._options)
        inherit_global_settings(state)
        if self._options.ns_override:
            override_namespace(state, self._options.ns_override)
        disable_apps(
            state,
            self._options.groups,
            self._options.targets,
            self._options.exclude_groups,
            self._options.exclude_targets,
        )
        return state

    async def _expand(self, state: State, base: Path) -> None:
        """Resolve relative paths and download remote files of one file's state."""
        download_dir = self._temp.new_dir("download")
        repos = set(state.helm_repos) | set(state.preconfigured_helm_repos)
        for release in [*state.apps.values(), *state.apps_templates.values()]:
            if release.chart:
                if _is_local_chart(release.chart, repos, base):
                    release.chart = _absolute(os.path.expandvars(release.chart), base)
            if release.values_file:
                release.values_file = await self._resolve_values(
                    release.values_file, base, download_dir
                )
            release.values_files = [
                await self._resolve_values(values, base, download_dir)
                for values in release.values_files
            ]
            if release.secrets_file:
                release.secrets_file = await self._resolve(
                    release.secrets_file, base, download_dir
                )
            release.secrets_files = [
                await self._resolve(secret, base, download_dir)
                for secret in release.secrets_files
            ]
            if release.post_renderer and not _is_bare_command(release.post_renderer):
                release.post_renderer = _absolute(release.post_renderer, base)
            if release.hooks is not None:
                await self._resolve_hooks(release.hooks, base, download_dir)
        if state.settings.global_hooks is not None:
            await self._resolve_hooks(state.settings.global_hooks, base, download_dir)
        if state.settings.bearer_token_path:
            state.settings.bearer_token_path = await self._resolve(
                state.settings.bearer_token_path, base, download_dir
            )
        for key, cert in state.certificates.items():
            state.certificates[key] = await self._resolve(cert, base, download_dir)

    async def _resolve(self, value: str, base: Path, download_dir: Path) -> str:
        if is_remote(value):
            dest = download_dir / os.path.basename(value.rstrip("/"))
            return str(await self._fetcher.fetch(value, dest))
        return _absolute(value, base)

    async def _resolve_values(self, value: str, base: Path, download_dir: Path) -> str:
        path = await self._resolve(value, base, download_dir)
        if self._values_templater is None:
            return path
        return await self._render_copy(path)

    async def _resolve_hooks(self, hooks: Hooks, base: Path, download_dir: Path) -> None:
        for slot in HOOK_SLOTS:
            action = hooks.action(slot)
            if isinstance(action, ManifestHook):
                path = _absolute(action.path, base)
                if self._values_templater is not None and Path(path).exists():
                    path = await self._render_copy(path)
                hooks.set_slot(slot, path)
            elif isinstance(action, ExecHook) and action.argv:
                program = action.argv[0]
                if program.startswith(("./", "../")):
                    argv = [_absolute(program, base), *action.argv[1:]]
                    hooks.set_slot(slot, shlex.join(argv))

    async def _render_copy(self, path: str) -> str:
        """Render a values or hook file into a private temporary copy."""
        assert self._values_templater is not None
        source = Path(path)
        text = await _read_text(source)
        rendered = await self._values_templater.render(text, path)
        dest = self._temp.new_dir("values") / source.name
        async with aiofiles.open(dest, mode="w") as f:
            await f.write(rendered)
        return str(dest)


def _is_local_chart(chart: str, repos: set[str], base: Path) -> bool:
    """Return True if the chart refers to a directory rather than a repository."""
    if chart.startswith("oci://") or os.path.dirname(chart) in repos:
        return False
    if chart.startswith((".", "/", "~", "$")):
        return True
    return (base / chart).is_dir()


def _is_bare_command(value: str) -> bool:
    return "/" not in value


def _absolute(value: str, base: Path) -> str:
    path = Path(value).expanduser()
    if path.is_absolute():
        return str(path)
    return str((base / path).resolve())


async def _read_text(path: Path) -> str:
    try:
        async with aiofiles.open(path, mode="r") as f:
            return await f.read()
    except OSError as err:
        raise InputException(f"Failed to read [ {path} ] file content: {err}") from err
