"""
Resource kinds managed by the provider.

Each kind registers a typed model and a Connector with the kind registry.
"""

from resources.base import (
    BoundClient,
    Connector,
    ExternalClient,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    ManagedResource,
    ObservationState,
)
from resources.registry import KindRegistry, get_registry

__all__ = [
    "BoundClient",
    "Connector",
    "ExternalClient",
    "ExternalCreation",
    "ExternalObservation",
    "ExternalUpdate",
    "ManagedResource",
    "ObservationState",
    "KindRegistry",
    "get_registry",
]
