"""
Managed Reconciler - one reconcile pass for one desired-state object.

Every pass re-derives what to do from a fresh Observe, so running it again
with the same desired state does nothing new:

    Connect -> Observe -> absent:            Create -> requeue now
                          present, drifted:  Update -> requeue now
                          present, converged: requeue after the poll interval
    (marked for deletion) Observe -> present: Delete -> requeue now
                                     absent:  remove finalizer

The reconciler is the only place that turns errors into conditions and
retry decisions.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from conditions import StatusProjector, reconcile_error, reconcile_success
from config import ControllerConfig
from errors import ConflictError, ExecutionError, ReconcileError, TypeMismatchError
from resources.base import (
    ConnectionDetails,
    Connector,
    ManagedResource,
    ObservationState,
)
from resources.registry import KindRegistry
from workqueue import backoff_delay

logger = logging.getLogger(__name__)

FINALIZER = "finalizer.managedresource.ssh-provider"

ERR_CONNECT = "connect failed"
ERR_OBSERVE = "observe failed"
ERR_CREATE = "create failed"
ERR_UPDATE = "update failed"
ERR_DELETE = "delete failed"


@dataclass
class ReconcileResult:
    """Result of a reconcile pass."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None  # None: not requeued


@dataclass
class PassProgress:
    """The step a pass has reached, named by its error prefix."""

    step: str = ERR_CONNECT


class ManagedReconciler:
    """Drives managed resources of every registered kind toward their spec."""

    def __init__(
        self,
        store,
        registry: KindRegistry,
        projector: StatusProjector,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.registry = registry
        self.projector = projector
        self.config = config or ControllerConfig()

    def backoff(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` failures."""
        return backoff_delay(
            retry_count,
            self.config.backoff_base_delay,
            self.config.backoff_max_delay,
            self.config.backoff_jitter_factor,
        )

    async def reconcile(self, resource_id: int) -> ReconcileResult:
        """
        Run one pass for a resource.

        Args:
            resource_id: The resource ID

        Returns:
            What happened and when the resource should be looked at again.
        """
        record = await self.store.get_resource(resource_id)
        if record is None:
            logger.debug(f"Resource {resource_id} no longer exists")
            return ReconcileResult(success=True, message="Resource not found")

        retry_count = record.get("retry_count") or 0

        try:
            resource = self.registry.parse(record)
            connector = self.registry.get(resource.kind).connector
        except TypeMismatchError as e:
            return await self._park(record, e)

        label = f"{resource.kind}/{resource.name}"

        if not resource.deleting and FINALIZER not in resource.finalizers:
            await self.store.add_finalizer(resource.id, FINALIZER)
            resource.finalizers.append(FINALIZER)

        previous_status = resource.status_dict()
        requeue_after: Optional[float] = None
        error: Optional[ReconcileError] = None

        progress = PassProgress()
        try:
            requeue_after = await asyncio.wait_for(
                self._run(resource, connector, progress),
                timeout=self.config.reconcile_timeout,
            )
        except asyncio.TimeoutError:
            error = ExecutionError(
                f"{progress.step}: reconcile timed out after "
                f"{self.config.reconcile_timeout}s"
            )
        except ReconcileError as e:
            error = e

        if error is None and resource.deleting and requeue_after is None:
            if await self._finalize(resource):
                return ReconcileResult(success=True, message="Resource deleted")

        if error is None:
            resource.set_conditions(reconcile_success())
        else:
            logger.error(f"Failed to reconcile {label}: {error}")
            resource.set_conditions(reconcile_error(error))

        try:
            await self.projector.project(resource, previous_status)
        except ConflictError as e:
            # The object changed under us; look again with the new version.
            logger.info(f"{label}: {e}, requeueing")
            await self.store.schedule_reconcile(resource.id, 0)
            return ReconcileResult(
                success=error is None, message=str(e), requeue_after=0
            )

        if error is not None:
            retry_count += 1
            delay = self.backoff(retry_count) if error.retryable else None
            await self.store.schedule_reconcile(resource.id, delay, retry_count)
            return ReconcileResult(
                success=False, message=str(error), requeue_after=delay
            )

        await self.store.schedule_reconcile(resource.id, requeue_after, 0)
        if requeue_after is not None and requeue_after > 0:
            logger.debug(f"{label} is up to date, next check in {requeue_after}s")
        return ReconcileResult(
            success=True, message="Reconcile succeeded", requeue_after=requeue_after
        )

    async def _run(
        self,
        resource: ManagedResource,
        connector: Connector,
        progress: PassProgress,
    ) -> Optional[float]:
        """
        The remote part of a pass.

        ``progress.step`` is kept current so a caller that cancels the pass
        can tell which step stalled.

        Returns:
            Seconds until the next pass, or None when a resource marked for
            deletion is confirmed gone.
        """
        try:
            client = await connector.connect(resource)
        except ReconcileError as e:
            raise e.wrap(ERR_CONNECT) from e

        async with client:
            progress.step = ERR_OBSERVE
            try:
                observation = await client.observe(resource)
            except ReconcileError as e:
                raise e.wrap(ERR_OBSERVE) from e
            await self._publish_connection_details(
                resource, observation.connection_details
            )

            if resource.deleting:
                if not observation.resource_exists:
                    return None
                progress.step = ERR_DELETE
                try:
                    await client.delete(resource)
                except ReconcileError as e:
                    raise e.wrap(ERR_DELETE) from e
                return 0

            state = observation.state
            if state is ObservationState.ABSENT:
                progress.step = ERR_CREATE
                try:
                    creation = await client.create(resource)
                except ReconcileError as e:
                    raise e.wrap(ERR_CREATE) from e
                await self._publish_connection_details(
                    resource, creation.connection_details
                )
                return 0

            if state is ObservationState.DRIFTED:
                progress.step = ERR_UPDATE
                try:
                    update = await client.update(resource)
                except ReconcileError as e:
                    raise e.wrap(ERR_UPDATE) from e
                await self._publish_connection_details(
                    resource, update.connection_details
                )
                return 0

            return self.config.poll_interval

    async def _finalize(self, resource: ManagedResource) -> bool:
        """
        Release the resource once its external counterpart is gone.

        Returns:
            True if the resource was removed from the store.
        """
        await self.store.remove_finalizer(resource.id, FINALIZER)
        if FINALIZER in resource.finalizers:
            resource.finalizers.remove(FINALIZER)

        remaining = await self.store.get_finalizers(resource.id)
        if remaining:
            logger.info(
                f"Finalizer removed for {resource.kind}/{resource.name}, "
                f"waiting on: {remaining}"
            )
            return False

        deleted = await self.store.hard_delete_resource(resource.id)
        if deleted:
            logger.info(f"Deleted {resource.kind}/{resource.name}")
        return deleted

    async def _publish_connection_details(
        self, resource: ManagedResource, details: ConnectionDetails
    ) -> None:
        if details:
            await self.store.update_connection_details(resource.id, details)

    async def _park(
        self, record: Dict[str, Any], error: TypeMismatchError
    ) -> ReconcileResult:
        """Report an object no kind can handle and stop retrying it."""
        resource_id = record["id"]
        logger.error(
            f"Cannot reconcile {record.get('kind')}/{record.get('name')}: {error}"
        )
        try:
            await self.projector.project_record(record, reconcile_error(error))
        except ConflictError as e:
            logger.info(f"{e}, requeueing")
            await self.store.schedule_reconcile(resource_id, 0)
            return ReconcileResult(success=False, message=str(e), requeue_after=0)

        await self.store.schedule_reconcile(resource_id, None)
        return ReconcileResult(success=False, message=str(error))
