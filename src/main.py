"""
Main entry point for the SSH provider.

Wires the store, the kind registry, the reconciler, the controller and the
HTTP API together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer
from conditions import StatusProjector
from config import get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from reconciler import ManagedReconciler
from resources.registry import register_builtin_kinds

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.event_bus: Optional[EventBus] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing SSH provider")

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info(f"Database initialized ({db_config.dsn})")

        # Initialize event bus
        self.event_bus = EventBus()

        # Register resource kinds
        registry = register_builtin_kinds(self.db, self.config.ssh)

        projector = StatusProjector(self.db, self.event_bus)
        reconciler = ManagedReconciler(
            store=self.db,
            registry=registry,
            projector=projector,
            config=self.config.controller,
        )

        self.controller = Controller(
            db_manager=self.db,
            reconciler=reconciler,
            config=self.config.controller,
            event_bus=self.event_bus,
        )

        self.api = APIServer(
            config=self.config.api,
            db_manager=self.db,
            registry=registry,
            event_bus=self.event_bus,
            trigger_reconciliation=self.controller.trigger_reconciliation,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting SSH provider")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping SSH provider")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.controller:
            await self.controller.stop()

        if self.db:
            await self.db.close()

        logger.info("SSH provider stopped")


async def main():
    """Main entry point."""
    app = Application()

    logging.basicConfig(
        level=getattr(logging, app.config.api.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
