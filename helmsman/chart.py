"""Library for resolving the charts used by releases.

Every enabled release names a chart and a version, which may be a semver
constraint. The resolver finds the concrete chart name and version, either
from the `Chart.yaml` of a local chart directory or by searching the helm
repositories, and pins the release to the concrete version.

Observed releases report their chart as a single label such as
`jenkins-0.9.0` or `cert-manager-v0.5.2`, which `parse_chart` splits back
into a name and a version.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
import logging
from pathlib import Path
import re

import aiofiles
from mashumaro import DataClassDictMixin
from mashumaro.codecs.json import json_decode
from mashumaro.config import BaseConfig
import semver
import yaml

from .command import run
from .config import OBSERVER_POOL_SIZE, Options
from .exceptions import ChartException, CommandException
from .helm import helm_cmd
from .state import Release, State

__all__ = [
    "ChartInfo",
    "ChartResolver",
    "parse_chart",
    "version_matches",
]

_LOGGER = logging.getLogger(__name__)

CHART_VERSION_RE = re.compile(r"-(v?\d+\.\d+\.\d+[-+A-Za-z0-9.]*)$")
CHART_FILE = "Chart.yaml"


def parse_chart(label: str) -> tuple[str, str]:
    """Split an observed chart label into its chart name and version.

    A label without a recognizable version suffix yields an empty version.
    """
    if match := CHART_VERSION_RE.search(label):
        return label[: match.start()], match.group(1)
    return label, ""


@dataclass(frozen=True)
class ChartInfo:
    """The concrete chart a release resolved to."""

    name: str
    version: str


@dataclass
class ChartVersion(DataClassDictMixin):
    """An entry of `helm search repo --output json`."""

    name: str
    version: str
    app_version: str | None = None
    description: str | None = None

    class Config(BaseConfig):
        omit_none = True


def _parse_version(value: str) -> semver.Version | None:
    try:
        return semver.Version.parse(value.lstrip("v"), optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None


def _expand_term(term: str) -> list[str]:
    """Translate one constraint term into semver match expressions."""
    term = term.strip().lstrip("=").strip()
    if term in ("", "*", "x", "X"):
        return []
    for op in (">=", "<=", "!=", ">", "<"):
        if term.startswith(op):
            version = _parse_version(term[len(op) :].strip())
            if version is None:
                raise ValueError(f"invalid version constraint [ {term} ]")
            return [f"{op}{version}"]
    if term[0] in "~^":
        version = _parse_version(term[1:])
        if version is None:
            raise ValueError(f"invalid version constraint [ {term} ]")
        parts = term[1:].lstrip("v").split(".")
        if term[0] == "~" and len(parts) >= 2:
            upper = version.bump_minor()
        elif term[0] == "~" or version.major > 0:
            upper = version.bump_major()
        elif version.minor > 0 or len(parts) < 3:
            upper = version.bump_minor()
        else:
            upper = version.bump_patch()
        return [f">={version}", f"<{upper}"]
    parts = term.lstrip("v").split(".")
    wildcard = [i for i, part in enumerate(parts) if part in ("*", "x", "X")]
    if wildcard or len(parts) < 3:
        fixed = parts[: wildcard[0]] if wildcard else parts
        if not fixed:
            return []
        version = _parse_version(".".join(fixed))
        if version is None:
            raise ValueError(f"invalid version constraint [ {term} ]")
        upper = version.bump_major() if len(fixed) == 1 else version.bump_minor()
        return [f">={version}", f"<{upper}"]
    if _parse_version(term) is None:
        raise ValueError(f"invalid version constraint [ {term} ]")
    return [f"=={term.lstrip('v')}"]


def version_matches(version: str, constraint: str) -> bool:
    """Return True if a concrete chart version satisfies a constraint.

    Supports exact versions, comparison operators, `~`, `^`, wildcards,
    space or comma separated conjunctions and `||` alternatives.
    """
    parsed = _parse_version(version)
    if parsed is None:
        return version == constraint
    for alternative in constraint.split("||"):
        terms = re.split(r"[\s,]+", alternative.strip())
        expressions: list[str] = []
        for term in terms:
            expressions.extend(_expand_term(term))
        if all(parsed.match(expr) for expr in expressions):
            return True
    return False


def is_local_chart(chart: str) -> bool:
    """Return True if the chart is a local chart directory."""
    return Path(chart).is_dir()


class ChartResolver:
    """Resolves the chart name and concrete version of releases."""

    def __init__(self, options: Options, pool_size: int = OBSERVER_POOL_SIZE) -> None:
        """Initialize ChartResolver."""
        self._options = options
        self._sem = asyncio.Semaphore(pool_size)

    async def chart_info(self, chart: str, version: str) -> ChartInfo:
        """Return the chart name and the newest version matching the constraint."""
        async with self._sem:
            if is_local_chart(chart):
                return await self._local_chart_info(chart, version)
            if chart.startswith("oci://"):
                return await self._oci_chart_info(chart, version)
            return await self._remote_chart_info(chart, version)

    async def _local_chart_info(self, chart: str, version: str) -> ChartInfo:
        path = Path(chart) / CHART_FILE
        try:
            async with aiofiles.open(path, mode="r") as f:
                doc = yaml.safe_load(await f.read()) or {}
        except (OSError, yaml.YAMLError) as err:
            raise ChartException(f"Unable to read [ {path} ]: {err}") from err
        name = str(doc.get("name", ""))
        declared = str(doc.get("version", ""))
        if not name or not declared:
            raise ChartException(f"[ {path} ] must declare a chart name and version")
        try:
            matched = version_matches(declared, version)
        except ValueError as err:
            raise ChartException(f"chart [ {chart} ]: {err}") from err
        if not matched:
            raise ChartException(
                f"chart [ {chart} ] with version [ {version} ] is specified but the "
                f"local chart declares version [ {declared} ]"
            )
        return ChartInfo(name, declared)

    async def _oci_chart_info(self, chart: str, version: str) -> ChartInfo:
        cmd = helm_cmd(
            ["show", "chart", chart, "--version", version],
            f"Getting latest chart information for [ {chart} ]",
        )
        try:
            doc = yaml.safe_load(await run(cmd)) or {}
        except (CommandException, yaml.YAMLError) as err:
            raise ChartException(
                f"chart [ {chart} ] with version [ {version} ] is specified but not "
                f"found in the OCI registry: {err}"
            ) from err
        return ChartInfo(str(doc.get("name", "")), str(doc.get("version", version)))

    async def search(self, chart: str, version: str | None = None) -> list[ChartVersion]:
        """Search the helm repositories for versions of a chart."""
        args = ["search", "repo", chart, "--output", "json"]
        if version:
            args.extend(["--version", version])
        cmd = helm_cmd(args, f"Getting latest chart information for [ {chart} ]")
        try:
            output = await run(cmd)
        except CommandException as err:
            raise ChartException(
                f"While getting chart information for [ {chart} ]: {err}"
            ) from err
        try:
            results = json_decode(output or "[]", list[ChartVersion])
        except ValueError as err:
            raise ChartException(
                f"Unexpected output of helm search for [ {chart} ]: {err}"
            ) from err
        return [result for result in results if result.name == chart]

    async def _remote_chart_info(self, chart: str, version: str) -> ChartInfo:
        results = await self.search(chart, version)
        if not results:
            raise ChartException(
                f"chart [ {chart} ] with version [ {version} ] is specified but not "
                "found in the helm repositories"
            )
        return ChartInfo(chart.rsplit("/", 1)[-1], results[0].version)

    async def resolve(self, state: State) -> dict[str, ChartInfo]:
        """Resolve every selected release and pin it to a concrete version.

        Returns the chart information keyed by release key.
        All resolution errors are reported together.
        """
        releases = [r for r in state.apps.values() if r.is_considered_to_run]
        pairs = sorted({(r.chart, r.version) for r in releases if r.chart})
        outcomes = await asyncio.gather(
            *(self.chart_info(chart, version) for chart, version in pairs),
            return_exceptions=True,
        )
        errors: list[str] = []
        resolved: dict[tuple[str, str], ChartInfo] = {}
        for (chart, version), outcome in zip(pairs, outcomes):
            if isinstance(outcome, ChartException):
                _LOGGER.error(str(outcome))
                errors.append(str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                _LOGGER.debug(
                    "Extracted chart information from chart [ %s ] with version "
                    "[ %s ]: %s %s",
                    chart,
                    version,
                    outcome.name,
                    outcome.version,
                )
                resolved[(chart, version)] = outcome
        if errors:
            raise ChartException("chart validation failed:\n" + "\n".join(errors))
        result: dict[str, ChartInfo] = {}
        for release in releases:
            if (info := resolved.get((release.chart, release.version))) is None:
                continue
            release.version = info.version
            result[release.key] = info
        return result

    async def update_deps(self, releases: Iterable[Release]) -> None:
        """Run `helm dependency update` for each distinct local chart."""
        charts = sorted(
            {r.chart for r in releases if r.is_considered_to_run and is_local_chart(r.chart)}
        )
        for chart in charts:
            try:
                await run(
                    helm_cmd(
                        ["dependency", "update", chart],
                        f"Updating dependency for local chart [ {chart} ]",
                    )
                )
            except CommandException as err:
                raise ChartException(
                    f"helm dependency update failed for [ {chart} ]: {err}"
                ) from err

    async def check_for_updates(self, releases: Iterable[Release]) -> list[str]:
        """Warn about pinned remote charts that have a newer version available."""
        warnings: list[str] = []
        for release in releases:
            if not release.is_considered_to_run or is_local_chart(release.chart):
                continue
            if release.chart.startswith("oci://"):
                continue
            results = await self.search(release.chart)
            if not results:
                continue
            latest = results[0].version
            current = _parse_version(release.version)
            newest = _parse_version(latest)
            if current is not None and newest is not None and newest > current:
                message = (
                    f"Newer version [ {latest} ] of chart [ {release.chart} ] is "
                    f"available for release [ {release.name} ], which uses version "
                    f"[ {release.version} ]"
                )
                _LOGGER.warning(message)
                warnings.append(message)
        return warnings

    async def download(self, releases: Iterable[Release], dest: Path) -> None:
        """Pull remote charts into `dest` and point releases at the local copy."""
        pulled: dict[tuple[str, str], str] = {}
        for release in releases:
            if not release.is_considered_to_run or is_local_chart(release.chart):
                continue
            key = (release.chart, release.version)
            if key not in pulled:
                target = dest / f"{release.chart.rsplit('/', 1)[-1]}-{release.version}"
                try:
                    await run(
                        helm_cmd(
                            [
                                "pull",
                                release.chart,
                                "--version",
                                release.version,
                                "--untar",
                                "--untardir",
                                str(target),
                            ],
                            f"Downloading chart [ {release.chart} ] version "
                            f"[ {release.version} ]",
                        )
                    )
                except CommandException as err:
                    raise ChartException(
                        f"Unable to download chart [ {release.chart} ]: {err}"
                    ) from err
                pulled[key] = str(target / release.chart.rsplit("/", 1)[-1])
            release.chart = pulled[key]
