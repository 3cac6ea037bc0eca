"""
Conditions and the status projector.

A resource carries one condition per type ("Ready" and "Synced"). Setting a
condition overwrites the previous one of the same type; only the current
condition per type is kept.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from errors import ReconcileError
from events import EventBus, ResourceEvent

if TYPE_CHECKING:
    from resources.base import ManagedResource

logger = logging.getLogger(__name__)

# Condition types
TYPE_READY = "Ready"
TYPE_SYNCED = "Synced"

# Condition statuses
STATUS_TRUE = "True"
STATUS_FALSE = "False"

# Condition reasons
REASON_AVAILABLE = "Available"
REASON_CREATING = "Creating"
REASON_DELETING = "Deleting"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Condition(BaseModel):
    """A named lifecycle flag with a reason and transition time."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=_now, alias="lastTransitionTime"
    )

    def equivalent(self, other: Optional["Condition"]) -> bool:
        """True if ``other`` differs from this one only in transition time."""
        return (
            other is not None
            and self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


def available() -> Condition:
    return Condition(type=TYPE_READY, status=STATUS_TRUE, reason=REASON_AVAILABLE)


def creating() -> Condition:
    return Condition(type=TYPE_READY, status=STATUS_FALSE, reason=REASON_CREATING)


def deleting() -> Condition:
    return Condition(type=TYPE_READY, status=STATUS_FALSE, reason=REASON_DELETING)


def reconcile_success() -> Condition:
    return Condition(
        type=TYPE_SYNCED, status=STATUS_TRUE, reason=REASON_RECONCILE_SUCCESS
    )


def reconcile_error(error: ReconcileError) -> Condition:
    """Synced=False with the error kind as the reason."""
    return Condition(
        type=TYPE_SYNCED,
        status=STATUS_FALSE,
        reason=error.reason,
        message=str(error),
    )


def set_condition(conditions: List[Condition], condition: Condition) -> List[Condition]:
    """
    Replace the condition of the same type, or append it.

    An equivalent condition is left untouched so its transition time is kept.
    """
    for idx, existing in enumerate(conditions):
        if existing.type == condition.type:
            if not condition.equivalent(existing):
                conditions[idx] = condition
            return conditions
    conditions.append(condition)
    return conditions


def get_condition(
    conditions: List[Condition], condition_type: str
) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def transitions(
    previous: List[Condition], current: List[Condition]
) -> List[Condition]:
    """Conditions in ``current`` that are new or changed since ``previous``."""
    return [
        condition
        for condition in current
        if not condition.equivalent(get_condition(previous, condition.type))
    ]


def set_condition_on_record(
    status: Dict[str, Any], condition: Condition
) -> Dict[str, Any]:
    """
    Set a condition on a raw status dict.

    Used when an object cannot be parsed into its typed model.
    """
    conditions = [Condition.model_validate(c) for c in status.get("conditions", [])]
    set_condition(conditions, condition)
    status = dict(status)
    status["conditions"] = [
        c.model_dump(by_alias=True, mode="json") for c in conditions
    ]
    return status


class StatusProjector:
    """
    Writes a resource's status back to the store and reports transitions.

    Every condition that changed is reported exactly once, after the write
    succeeded: one log line and one CONDITION_CHANGED event.
    """

    def __init__(self, store, event_bus: Optional[EventBus] = None):
        self.store = store
        self.event_bus = event_bus

    async def project(
        self,
        resource: "ManagedResource",
        previous_status: Dict[str, Any],
    ) -> int:
        """
        Persist ``resource.status`` if it differs from ``previous_status``.

        Returns:
            The resource version after the write (unchanged if nothing was written).

        Raises:
            ConflictError: If the object changed since it was read.
        """
        status = resource.status_dict()
        if status == previous_status:
            return resource.resource_version

        new_version = await self.store.update_resource_status(
            resource.id, status, resource.resource_version
        )
        resource.resource_version = new_version

        previous = [
            Condition.model_validate(c) for c in previous_status.get("conditions", [])
        ]
        for condition in transitions(previous, resource.status.conditions):
            await self._on_transition(
                resource.id, resource.kind, resource.name, condition
            )
        return new_version

    async def project_record(
        self, record: Dict[str, Any], condition: Condition
    ) -> int:
        """Set one condition on an unparsed object and persist it."""
        previous_status = record.get("status") or {}
        status = set_condition_on_record(previous_status, condition)
        new_version = await self.store.update_resource_status(
            record["id"], status, record["resource_version"]
        )
        previous = get_condition(
            [Condition.model_validate(c) for c in previous_status.get("conditions", [])],
            condition.type,
        )
        if not condition.equivalent(previous):
            await self._on_transition(
                record["id"], record.get("kind", ""), record["name"], condition
            )
        return new_version

    async def _on_transition(
        self, resource_id: int, kind: str, name: str, condition: Condition
    ) -> None:
        message = f": {condition.message}" if condition.message else ""
        failed = condition.type == TYPE_SYNCED and condition.status == STATUS_FALSE
        log = logger.warning if failed else logger.info
        log(
            f"{kind}/{name}: {condition.type}={condition.status} "
            f"({condition.reason}){message}"
        )

        if self.event_bus:
            await self.event_bus.publish(
                ResourceEvent.condition_changed(
                    resource_id,
                    kind,
                    name,
                    condition.model_dump(by_alias=True, mode="json"),
                )
            )
