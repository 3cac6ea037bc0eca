"""
Error taxonomy for the reconciliation engine.

Components below the reconciler raise these and never retry. The reconciler
is the single place that turns them into conditions and retry decisions.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for failures surfaced to the reconciliation loop."""

    reason = "ReconcileError"
    retryable = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def _copy_with_message(self, message: str) -> "ReconcileError":
        return type(self)(message)

    def wrap(self, message: str) -> "ReconcileError":
        """
        Prefix this error with the name of the operation that failed.

        The returned error is of the same kind (so retry policy and condition
        reason are preserved) and is chained to this one.
        """
        wrapped = self._copy_with_message(f"{message}: {self.message}")
        wrapped.__cause__ = self
        return wrapped


class TypeMismatchError(ReconcileError):
    """The object is not of a kind (or shape) any registered client handles."""

    reason = "TypeMismatchError"
    retryable = False


class ConfigError(ReconcileError):
    """Tracking, lookup or credential failure for the referenced config."""

    reason = "ConfigError"


class TrackUsageError(ConfigError):
    """Could not record that the object uses its ProviderConfig."""


class ConfigLookupError(ConfigError):
    """The referenced ProviderConfig could not be fetched."""


class CredentialsError(ConfigError):
    """The ProviderConfig does not hold usable credentials."""


class AuthenticationError(CredentialsError):
    """The remote host rejected the principal/secret pair."""


class DialError(ReconcileError):
    """The remote host could not be reached."""

    reason = "DialError"


class ExecutionError(ReconcileError):
    """A remote command invocation failed; partial output may be attached."""

    reason = "ExecutionError"

    def __init__(self, message: str, output: Optional[bytes] = None):
        super().__init__(message)
        self.output = output or b""

    def _copy_with_message(self, message: str) -> "ExecutionError":
        return type(self)(message, output=self.output)


class ConflictError(Exception):
    """A status write lost an optimistic-concurrency race."""

    def __init__(self, resource_id: int, resource_version: int):
        self.resource_id = resource_id
        self.resource_version = resource_version
        super().__init__(
            f"Resource {resource_id} was modified since version {resource_version}"
        )
