"""
Managed resource model and the external client contract.

A resource kind supplies a typed model, an ExternalClient that implements
Observe/Create/Update/Delete against a remote connection, and a Connector
that resolves credentials and opens that connection for one reconcile pass.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from conditions import Condition, get_condition, set_condition
from ssh import Command

ConnectionDetails = Dict[str, str]


class ProviderConfigReference(BaseModel):
    """Reference to the ProviderConfig holding credentials for a resource."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)


class ResourceSpec(BaseModel):
    """Desired state. Never mutated by the reconciler."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provider_config_ref: ProviderConfigReference = Field(..., alias="providerConfigRef")


class ResourceStatus(BaseModel):
    """Observed state written back by the reconciler."""

    model_config = ConfigDict(populate_by_name=True)

    conditions: List[Condition] = Field(default_factory=list)


class ManagedResource(BaseModel):
    """
    A desired-state object as read from the store for one reconcile pass.

    Subclasses narrow ``kind``, ``spec`` and ``status`` for their resource kind.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    kind: str
    generation: int = 1
    resource_version: int = 1
    finalizers: List[str] = Field(default_factory=list)
    deleted_at: Optional[datetime] = None
    spec: ResourceSpec
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @property
    def deleting(self) -> bool:
        """True once the object has been marked for removal."""
        return self.deleted_at is not None

    def set_conditions(self, *conditions: Condition) -> None:
        for condition in conditions:
            set_condition(self.status.conditions, condition)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        return get_condition(self.status.conditions, condition_type)

    def status_dict(self) -> Dict[str, Any]:
        return self.status.model_dump(by_alias=True, mode="json")


class ObservationState(Enum):
    """What Observe found."""

    ABSENT = "absent"
    DRIFTED = "drifted"
    CONVERGED = "converged"


@dataclass
class ExternalObservation:
    """Result of Observe."""

    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: ConnectionDetails = field(default_factory=dict)

    @property
    def state(self) -> ObservationState:
        if not self.resource_exists:
            return ObservationState.ABSENT
        if not self.resource_up_to_date:
            return ObservationState.DRIFTED
        return ObservationState.CONVERGED


@dataclass
class ExternalCreation:
    """Result of Create."""

    connection_details: ConnectionDetails = field(default_factory=dict)


@dataclass
class ExternalUpdate:
    """Result of Update."""

    connection_details: ConnectionDetails = field(default_factory=dict)


class Connection(Protocol):
    """A remote session owned by exactly one reconcile pass."""

    async def execute(self, commands: Sequence[Command]) -> bytes: ...

    async def close(self) -> None: ...


class ExternalClient(ABC):
    """
    Observes, then either creates, updates, or deletes an external resource
    so that it reflects the managed resource's desired state.

    Implementations hold no session state: the connection for the current
    pass is passed to every call.
    """

    @abstractmethod
    async def observe(
        self, resource: ManagedResource, conn: Connection
    ) -> ExternalObservation:
        """Report whether the external resource exists and is up to date."""
        pass

    @abstractmethod
    async def create(
        self, resource: ManagedResource, conn: Connection
    ) -> ExternalCreation:
        """Create the external resource."""
        pass

    @abstractmethod
    async def update(
        self, resource: ManagedResource, conn: Connection
    ) -> ExternalUpdate:
        """Bring an existing external resource up to date."""
        pass

    @abstractmethod
    async def delete(self, resource: ManagedResource, conn: Connection) -> None:
        """Delete the external resource. Deleting an absent resource succeeds."""
        pass


class BoundClient:
    """An ExternalClient bound to the connection opened for one pass."""

    def __init__(self, client: ExternalClient, connection: Connection):
        self.client = client
        self.connection = connection

    async def observe(self, resource: ManagedResource) -> ExternalObservation:
        return await self.client.observe(resource, self.connection)

    async def create(self, resource: ManagedResource) -> ExternalCreation:
        return await self.client.create(resource, self.connection)

    async def update(self, resource: ManagedResource) -> ExternalUpdate:
        return await self.client.update(resource, self.connection)

    async def delete(self, resource: ManagedResource) -> None:
        await self.client.delete(resource, self.connection)

    async def close(self) -> None:
        await self.connection.close()

    async def __aenter__(self) -> "BoundClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class Connector(ABC):
    """Produces a BoundClient for a managed resource."""

    @abstractmethod
    async def connect(self, resource: ManagedResource) -> BoundClient:
        """
        Track config usage, resolve credentials and open a connection.

        No partial client is ever returned: any failing step raises.
        """
        pass
