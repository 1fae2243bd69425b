"""Substitution of environment variables and SSM parameters in text.

A `Templater` is applied to the raw text of a desired state file, and
optionally to values, secrets and hook files, before it is decoded.
"""

from abc import ABC, abstractmethod
import logging
import os
import re

from .command import Command
from .exceptions import CommandException, InputException

__all__ = [
    "Templater",
    "EnvTemplater",
    "SsmTemplater",
    "ChainTemplater",
]

_LOGGER = logging.getLogger(__name__)

ENV_VAR_RE = re.compile(r"\${([a-zA-Z_][a-zA-Z0-9_-]*)}|\$([a-zA-Z_][a-zA-Z0-9_-]*)")
_EXPAND_RE = re.compile(
    r"\$\$|\${([a-zA-Z_][a-zA-Z0-9_-]*)}|\$([a-zA-Z_][a-zA-Z0-9_]*)"
)
_COMMENT_RE = re.compile(r"#(.*)$")
SSM_RE = re.compile(r"{{ssm: ([^~}]+)(~(true))?}}")

# Bounds recursive expansion of variables whose values reference variables.
_MAX_EXPAND_DEPTH = 10


class Templater(ABC):
    """Renders placeholders in the text of a file."""

    @abstractmethod
    async def render(self, text: str, source: str) -> str:
        """Return the text with all placeholders replaced."""


def validate_env_vars(text: str, source: str) -> None:
    """Check every variable referenced outside of comments is set.

    A literal `$` is written as `$$` and is not treated as a reference.
    """
    if "$" not in text:
        return
    _LOGGER.debug("Validating environment variables in %s", source)
    for line in text.splitlines():
        line = _COMMENT_RE.sub("", line.strip().replace("$$", "!?"))
        for match in ENV_VAR_RE.finditer(line):
            key = match.group(1) or match.group(2)
            if key not in os.environ:
                raise InputException(
                    f"{match.group(0)} is used as an env variable but is currently "
                    f"unset. Either set it or escape it like so: ${match.group(0)} "
                    f"(in {source})"
                )


def expand_env(text: str, recursive: bool = True, depth: int = 0) -> str:
    """Replace `$VAR` and `${VAR}` with their values, unset variables expand empty."""

    def _replace(match: re.Match[str]) -> str:
        if match.group(0) == "$$":
            return "$"
        value = os.environ.get(match.group(1) or match.group(2), "")
        if recursive and "$" in value and depth < _MAX_EXPAND_DEPTH:
            return expand_env(value, recursive, depth + 1)
        return value

    return _EXPAND_RE.sub(_replace, text)


class EnvTemplater(Templater):
    """Validates and expands environment variable references."""

    def __init__(self, validate: bool = True, recursive: bool = True) -> None:
        """Initialize EnvTemplater."""
        self._validate = validate
        self._recursive = recursive

    async def render(self, text: str, source: str) -> str:
        """Return the text with environment variables expanded."""
        if "$" not in text:
            return text
        if self._validate:
            validate_env_vars(text, source)
        return expand_env(text, self._recursive)


class SsmTemplater(Templater):
    """Replaces `{{ssm: /path[~true]}}` tokens with AWS SSM parameter values.

    The `~true` suffix requests decryption of SecureString parameters.
    """

    def __init__(self) -> None:
        """Initialize SsmTemplater."""
        self._cache: dict[tuple[str, bool], str] = {}

    async def fetch(self, path: str, decrypt: bool) -> str:
        """Return the value of a single SSM parameter."""
        if (cached := self._cache.get((path, decrypt))) is not None:
            return cached
        cmd = Command(
            [
                "aws",
                "ssm",
                "get-parameter",
                "--name",
                path,
                "--with-decryption" if decrypt else "",
                "--query",
                "Parameter.Value",
                "--output",
                "text",
            ],
            description=f"Reading SSM parameter [ {path} ]",
        )
        try:
            value = (await cmd.run()).rstrip("\n")
        except CommandException as err:
            raise InputException(
                f"Unable to read SSM parameter [ {path} ]: {err}"
            ) from err
        self._cache[(path, decrypt)] = value
        return value

    async def render(self, text: str, source: str) -> str:
        """Return the text with SSM parameters substituted."""
        if "{{ssm: " not in text:
            return text
        _LOGGER.debug("Substituting SSM parameters in %s", source)
        for match in SSM_RE.finditer(text):
            value = await self.fetch(match.group(1), match.group(3) == "true")
            text = text.replace(match.group(0), value)
        return text


class ChainTemplater(Templater):
    """Applies several templaters in order."""

    def __init__(self, templaters: list[Templater]) -> None:
        """Initialize ChainTemplater."""
        self._templaters = templaters

    async def render(self, text: str, source: str) -> str:
        """Return the text rendered by every templater in turn."""
        for templater in self._templaters:
            text = await templater.render(text, source)
        return text
