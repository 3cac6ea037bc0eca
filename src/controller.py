"""
Provider Controller - worker pool around the managed reconciler.

Similar to Kubernetes controllers: resource IDs flow into a work queue from
a periodic resync against the store and from the event bus, and a fixed pool
of workers runs reconcile passes. The queue hands a given ID to at most one
worker at a time.
"""

import asyncio
import logging
from typing import List, Optional

from config import ControllerConfig
from db import DatabaseManager
from events import WATCHED_EVENT_TYPES, EventBus, event_filter
from reconciler import ManagedReconciler
from workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Runs ``max_concurrent_reconciles`` workers, a resync loop that picks up
    resources whose next reconcile time has passed, and a watch loop that
    picks up resources as soon as they are created, modified or deleted.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: ManagedReconciler,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.queue = WorkQueue()
        self.running = False
        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the workers, the resync loop and the watch loop."""
        logger.info(
            f"Starting controller with {self.config.max_concurrent_reconciles} workers"
        )
        self.running = True

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        if self._event_bus:
            self._tasks.append(asyncio.create_task(self._watch_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping controller")
        self.running = False
        await self.queue.shutdown()

        if self._event_bus and self._subscriber_id:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        # Wait for in-flight passes, then drop anything still sleeping.
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=5)
            for task in pending:
                task.cancel()
        self._tasks.clear()

    async def _worker(self, worker_id: int):
        """Process queued resource IDs until the queue shuts down."""
        while True:
            resource_id = await self.queue.get()
            if resource_id is None:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                result = await self.reconciler.reconcile(resource_id)
            except Exception as e:
                logger.error(
                    f"Error reconciling resource {resource_id}: {e}", exc_info=True
                )
                delay = self.config.backoff_base_delay
                try:
                    await self.db.schedule_reconcile(resource_id, delay)
                except Exception as schedule_error:
                    logger.error(
                        f"Could not reschedule resource {resource_id}: {schedule_error}"
                    )
                self.queue.add_after(resource_id, delay)
            else:
                if result.requeue_after is not None:
                    # Re-adding while processing defers the key until done().
                    self.queue.add_after(resource_id, result.requeue_after)
            finally:
                self.queue.done(resource_id)

    async def _resync_loop(self):
        """Periodically queue resources whose next reconcile time has passed."""
        while self.running:
            try:
                resources = await self.db.get_resources_needing_reconciliation(
                    limit=self.config.max_concurrent_reconciles * 2
                )

                queued = 0
                for resource in resources:
                    if not self.queue.is_processing(resource["id"]):
                        self.queue.add(resource["id"])
                        queued += 1

                if queued:
                    logger.info(f"Found {queued} resources needing reconciliation")

                await asyncio.sleep(self.config.resync_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def _watch_loop(self):
        """Queue resources as soon as their desired state changes."""
        self._subscriber_id, subscription = await self._event_bus.subscribe(
            event_filter(event_types=WATCHED_EVENT_TYPES)
        )
        async for event in subscription:
            logger.debug(
                f"{event.event_type.value} {event.kind}/{event.resource_name}, queueing"
            )
            self.queue.add(event.resource_id)

    async def trigger_reconciliation(self, resource_id: int):
        """Manually trigger reconciliation for a specific resource."""
        logger.info(f"Manually triggering reconciliation for resource {resource_id}")
        await self.db.mark_resource_for_reconciliation(resource_id)
        self.queue.add(resource_id)
