"""Exceptions related to helmsman."""

__all__ = [
    "HelmsmanException",
    "InputException",
    "ValidationException",
    "CommandException",
    "HelmException",
    "KubectlException",
    "EnvironmentException",
    "ChartException",
    "ObservationException",
    "DecisionException",
    "ContextConflictError",
    "PlanExecutionError",
    "SecretsException",
]


class HelmsmanException(Exception):
    """Generic base exception used for this library."""


class InputException(HelmsmanException):
    """Raised when the desired state files are not formatted as expected."""


class ValidationException(InputException):
    """Raised when the merged desired state breaks one of its rules."""


class CommandException(HelmsmanException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class KubectlException(CommandException):
    """Raised when there is a failure running a kubectl command."""


class EnvironmentException(HelmsmanException):
    """Raised when a required tool, plugin or tool version is missing."""


class ChartException(HelmsmanException):
    """Raised when a chart or a chart version can't be resolved."""


class ObservationException(HelmsmanException):
    """Raised when the current state of the cluster can't be read."""


class DecisionException(HelmsmanException):
    """Raised when no safe decision can be made for a release."""


class ContextConflictError(DecisionException):
    """Raised when a release is owned by a different managing context."""

    def __init__(
        self, name: str, namespace: str, context: str, owner_context: str
    ) -> None:
        super().__init__(
            f"Release [ {name} ] in namespace [ {namespace} ] already exists but is "
            f"managed by context [ {owner_context} ], not by the current context "
            f"[ {context} ]. Applying changes will likely cause conflicts. Change "
            "the release name or namespace."
        )
        self.name = name
        self.namespace = namespace
        self.context = context
        self.owner_context = owner_context


class PlanExecutionError(HelmsmanException):
    """Raised when a planned command fails while the plan is executed."""

    def __init__(self, description: str, code: int, message: str) -> None:
        super().__init__(
            f"Command '{description}' returned [ {code} ] exit code and error "
            f"message [ {message} ]"
        )
        self.description = description
        self.code = code
        self.message = message


class SecretsException(HelmsmanException):
    """Raised when an encrypted values file can't be decrypted."""
