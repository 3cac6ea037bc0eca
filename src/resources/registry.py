"""
Kind Registry - typed entry points for resource kinds.

Each resource kind registers its model and connector once at startup. The
reconciler looks objects up here instead of type-checking them mid-pass.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from errors import TypeMismatchError
from resources.base import Connector, ManagedResource

logger = logging.getLogger(__name__)


@dataclass
class KindRegistration:
    """A registered resource kind."""

    kind: str
    model: Type[ManagedResource]
    connector: Connector


class KindRegistry:
    """Maps resource kind names to their model and connector."""

    def __init__(self):
        self._kinds: Dict[str, KindRegistration] = {}

    def register(
        self, kind: str, model: Type[ManagedResource], connector: Connector
    ) -> None:
        """
        Register a resource kind.

        Args:
            kind: The kind name stored on objects (e.g. 'File')
            model: The pydantic model objects of this kind parse into
            connector: The Connector producing clients for this kind
        """
        if kind in self._kinds:
            logger.warning(f"Overwriting existing resource kind: {kind}")

        self._kinds[kind] = KindRegistration(kind=kind, model=model, connector=connector)
        logger.info(f"Registered resource kind: {kind}")

    def get(self, kind: str) -> KindRegistration:
        """
        Get the registration for a kind.

        Raises:
            TypeMismatchError: If no such kind is registered.
        """
        registration = self._kinds.get(kind)
        if registration is None:
            available = ", ".join(self._kinds.keys()) or "none"
            raise TypeMismatchError(
                f"Unknown resource kind: {kind}. Available kinds: {available}"
            )
        return registration

    def has_kind(self, kind: str) -> bool:
        return kind in self._kinds

    def list_kinds(self) -> List[str]:
        return list(self._kinds.keys())

    def parse(self, record: Dict[str, Any]) -> ManagedResource:
        """
        Parse a stored object into its kind's model.

        Raises:
            TypeMismatchError: If the kind is unknown or the object does not
                match the kind's schema.
        """
        registration = self.get(record.get("kind", ""))
        try:
            return registration.model.model_validate(record)
        except ValidationError as e:
            raise TypeMismatchError(
                f"Object is not a valid {registration.kind}: {e.error_count()} "
                f"validation error(s): {_first_error(e)}"
            ) from e

    def validate_spec(self, kind: str, spec: Dict[str, Any]) -> None:
        """
        Check a spec against a kind's model without a stored object.

        Raises:
            TypeMismatchError: If the kind is unknown or the spec is invalid.
        """
        registration = self.get(kind)
        spec_model = registration.model.model_fields["spec"].annotation
        try:
            spec_model.model_validate(spec)
        except ValidationError as e:
            raise TypeMismatchError(
                f"Invalid {kind} spec: {_first_error(e)}"
            ) from e


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first["loc"]) or "(root)"
    return f"{location}: {first['msg']}"


# Global registry instance
_registry: Optional[KindRegistry] = None


def get_registry() -> KindRegistry:
    """Get the global kind registry singleton."""
    global _registry
    if _registry is None:
        _registry = KindRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_kinds(store, ssh_config) -> KindRegistry:
    """
    Register the resource kinds that ship with the provider.

    Called during application startup.
    """
    from resources.file import KIND, File, FileConnector

    registry = get_registry()
    registry.register(KIND, File, FileConnector(store, ssh_config))
    return registry
