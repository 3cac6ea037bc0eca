"""
HTTP API - REST and watch endpoints for resources and provider configs.

Provides a FastAPI-based REST API for submitting desired-state objects and
credentials records, and Server-Sent Events streams for watching them.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import APIConfig
from errors import TypeMismatchError
from events import EventBus, EventFilter, EventType, ResourceEvent, event_filter
from resources.registry import KindRegistry
from ssh import split_address

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec

ReconcileTrigger = Callable[[int], Awaitable[None]]


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that JSON data doesn't exceed size limits."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE} bytes")
    return value


def validate_address_format(value: Optional[str]) -> Optional[str]:
    """Reject addresses the SSH channel could not dial."""
    if value is not None:
        split_address(value)
    return value


# Resource models


class ResourceCreate(BaseModel):
    """Request model for creating a resource."""

    name: str = Field(..., description="Resource name", examples=["motd"])
    kind: str = Field(..., description="Resource kind", examples=["File"])
    spec: Dict[str, Any] = Field(..., description="Desired state")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ResourceUpdate(BaseModel):
    """Request model for updating a resource."""

    spec: Dict[str, Any] = Field(..., description="Updated desired state")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ResourceResponse(BaseModel):
    """Response model for a resource."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    kind: str
    spec: Dict[str, Any]
    status: Dict[str, Any] = {}
    generation: int
    resource_version: int
    finalizers: List[str] = []
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


# Provider config models


class ProviderConfigCreate(BaseModel):
    """Request model for creating a provider config."""

    name: str = Field(..., description="Config name", examples=["default"])
    address: str = Field(
        ..., min_length=1, description="host or host:port", examples=["10.0.0.5:22"]
    )
    username: str = Field(..., min_length=1, description="Login user")
    password: Optional[str] = Field(default=None, description="Password (write-only)")
    private_key: Optional[str] = Field(
        default=None, description="Private key (write-only)"
    )

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_address_format(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")


class ProviderConfigUpdate(BaseModel):
    """Request model for updating a provider config."""

    address: Optional[str] = Field(default=None, min_length=1)
    username: Optional[str] = Field(default=None, min_length=1)
    password: Optional[str] = None
    private_key: Optional[str] = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return validate_address_format(v)


class ProviderConfigResponse(BaseModel):
    """Response model for a provider config. Secrets are never returned."""

    id: int
    name: str
    address: str
    username: str
    has_password: bool = False
    has_private_key: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ProviderConfigResponse":
        return cls(
            id=record["id"],
            name=record["name"],
            address=record["address"],
            username=record["username"],
            has_password=bool(record.get("password")),
            has_private_key=bool(record.get("private_key")),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )


class APIServer:
    """
    REST API for resource management.

    Mutations publish CREATED / MODIFIED / DELETED events on the event bus.
    """

    def __init__(
        self,
        config: Optional[APIConfig] = None,
        db_manager=None,
        registry: Optional[KindRegistry] = None,
        event_bus: Optional[EventBus] = None,
        trigger_reconciliation: Optional[ReconcileTrigger] = None,
    ):
        self.config = config or APIConfig()
        self.host = self.config.host
        self.port = self.config.port
        self.server: Optional[uvicorn.Server] = None
        self._db_manager = db_manager
        self._registry = registry
        self._event_bus = event_bus
        self._trigger_reconciliation = trigger_reconciliation

        self.app = FastAPI(
            title="SSH Provider API",
            description="Desired-state management of files on remote hosts",
            version="1.0.0",
        )
        if self.config.cors_enabled:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        self._setup_routes()

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    def _validate_spec(self, kind: str, spec: Dict[str, Any]) -> None:
        if self._registry is None:
            return
        try:
            self._registry.validate_spec(kind, spec)
        except TypeMismatchError as e:
            raise HTTPException(status_code=400, detail=e.message)

    async def _publish(self, event_type: EventType, resource: Dict[str, Any]) -> None:
        if self._event_bus and resource:
            await self._event_bus.publish(
                ResourceEvent.from_resource(event_type, resource)
            )

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Provider configs CRUD: /api/v1/providerconfigs
        - Resources CRUD: /api/v1/resources
        - Resource by name: /api/v1/resources/by-name/{kind}/{name}
        - Reconciliation: POST /api/v1/resources/{id}/reconcile
        - Watch streams: /api/v1/events, /api/v1/resources/{id}/events
        """

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "ssh-provider"}

        # ==================== Provider Config Endpoints ====================

        @self.app.post(
            "/api/v1/providerconfigs",
            response_model=ProviderConfigResponse,
            status_code=201,
        )
        async def create_provider_config(pc: ProviderConfigCreate):
            """Create a new provider config."""
            db = self._require_db()
            if not pc.password and not pc.private_key:
                raise HTTPException(
                    status_code=400,
                    detail="Either password or private_key is required",
                )

            try:
                if await db.get_provider_config(pc.name):
                    raise HTTPException(
                        status_code=409,
                        detail=f"ProviderConfig {pc.name} already exists",
                    )
                await db.create_provider_config(
                    name=pc.name,
                    address=pc.address,
                    username=pc.username,
                    password=pc.password,
                    private_key=pc.private_key,
                )
                created = await db.get_provider_config(pc.name)
                return ProviderConfigResponse.from_record(created)

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error creating provider config: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/providerconfigs", response_model=List[ProviderConfigResponse]
        )
        async def list_provider_configs(limit: int = 100):
            """List provider configs."""
            db = self._require_db()
            try:
                configs = await db.list_provider_configs(limit=limit)
                return [ProviderConfigResponse.from_record(c) for c in configs]
            except Exception as e:
                logger.error(f"Error listing provider configs: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/providerconfigs/{name}", response_model=ProviderConfigResponse
        )
        async def get_provider_config(name: str):
            """Get a provider config by name."""
            db = self._require_db()
            try:
                record = await db.get_provider_config(name)
                if not record:
                    raise HTTPException(
                        status_code=404, detail="ProviderConfig not found"
                    )
                return ProviderConfigResponse.from_record(record)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting provider config: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/providerconfigs/{name}", response_model=ProviderConfigResponse
        )
        async def update_provider_config(name: str, update: ProviderConfigUpdate):
            """Update a provider config. Takes effect on the next reconcile pass."""
            db = self._require_db()
            try:
                found = await db.update_provider_config(
                    name,
                    address=update.address,
                    username=update.username,
                    password=update.password,
                    private_key=update.private_key,
                )
                if not found:
                    raise HTTPException(
                        status_code=404, detail="ProviderConfig not found"
                    )
                record = await db.get_provider_config(name)
                return ProviderConfigResponse.from_record(record)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating provider config: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/providerconfigs/{name}")
        async def delete_provider_config(name: str):
            """Delete a provider config that no resource uses."""
            db = self._require_db()
            try:
                if not await db.get_provider_config(name):
                    raise HTTPException(
                        status_code=404, detail="ProviderConfig not found"
                    )
                if not await db.delete_provider_config(name):
                    usages = await db.count_provider_config_usages(name)
                    raise HTTPException(
                        status_code=409,
                        detail=f"ProviderConfig {name} is in use by "
                        f"{usages} resource(s)",
                    )
                return {"message": "ProviderConfig deleted", "name": name}
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting provider config: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Resource Endpoints ====================

        @self.app.post(
            "/api/v1/resources", response_model=ResourceResponse, status_code=201
        )
        async def create_resource(resource: ResourceCreate):
            """Create a new resource."""
            db = self._require_db()
            self._validate_spec(resource.kind, resource.spec)

            try:
                if await db.get_resource_by_name(resource.kind, resource.name):
                    raise HTTPException(
                        status_code=409,
                        detail=f"{resource.kind} {resource.name} already exists",
                    )

                resource_id = await db.create_resource(
                    name=resource.name, kind=resource.kind, spec=resource.spec
                )
                created = await db.get_resource(resource_id)
                await self._publish(EventType.CREATED, created)
                return ResourceResponse(**created)

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error creating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/resources", response_model=List[ResourceResponse])
        async def list_resources(kind: Optional[str] = None, limit: int = 100):
            """List all resources with an optional kind filter."""
            db = self._require_db()
            try:
                resources = await db.list_resources(kind=kind, limit=limit)
                return [ResourceResponse(**r) for r in resources]
            except Exception as e:
                logger.error(f"Error listing resources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/resources/by-name/{kind}/{name}",
            response_model=ResourceResponse,
        )
        async def get_resource_by_name(kind: str, name: str):
            """Get a resource by kind and name."""
            db = self._require_db()
            try:
                resource = await db.get_resource_by_name(kind, name)
                if not resource:
                    raise HTTPException(status_code=404, detail="Resource not found")
                return ResourceResponse(**resource)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/resources/{resource_id}", response_model=ResourceResponse
        )
        async def get_resource_by_id(resource_id: int):
            """Get a resource by ID."""
            db = self._require_db()
            try:
                resource = await db.get_resource(resource_id)
                if not resource:
                    raise HTTPException(status_code=404, detail="Resource not found")
                return ResourceResponse(**resource)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/resources/{resource_id}", response_model=ResourceResponse
        )
        async def update_resource(resource_id: int, update: ResourceUpdate):
            """Replace a resource's desired state."""
            db = self._require_db()
            try:
                current = await db.get_resource(resource_id)
                if not current:
                    raise HTTPException(status_code=404, detail="Resource not found")
                if current.get("deleted_at"):
                    raise HTTPException(
                        status_code=409, detail="Resource is being deleted"
                    )

                self._validate_spec(current["kind"], update.spec)

                await db.update_resource(resource_id, update.spec)
                updated = await db.get_resource(resource_id)
                await self._publish(EventType.MODIFIED, updated)
                return ResourceResponse(**updated)

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/resources/{resource_id}", status_code=202)
        async def delete_resource(resource_id: int):
            """Delete a resource (removes the remote file first)."""
            db = self._require_db()
            try:
                resource = await db.get_resource(resource_id)
                if not resource:
                    raise HTTPException(status_code=404, detail="Resource not found")

                removed = await db.delete_resource(resource_id)
                await self._publish(EventType.DELETED, resource)

                return {
                    "message": (
                        "Resource deleted"
                        if removed
                        else "Resource marked for deletion"
                    ),
                    "resource_id": resource_id,
                }

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post("/api/v1/resources/{resource_id}/reconcile", status_code=202)
        async def trigger_reconciliation(resource_id: int):
            """Manually trigger reconciliation for a resource."""
            db = self._require_db()
            try:
                if not await db.get_resource(resource_id):
                    raise HTTPException(status_code=404, detail="Resource not found")

                if self._trigger_reconciliation:
                    await self._trigger_reconciliation(resource_id)
                else:
                    await db.mark_resource_for_reconciliation(resource_id)
                return {
                    "message": "Reconciliation triggered",
                    "resource_id": resource_id,
                }
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events(kind: Optional[str] = None):
            """SSE stream of all resource events.

            Optionally filter by resource kind.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            return await self._stream(event_filter(kind=kind or None))

        @self.app.get("/api/v1/resources/{resource_id}/events")
        async def stream_resource_events(resource_id: int):
            """SSE stream for a specific resource."""
            db = self._require_db()
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")

            return await self._stream(event_filter(resource_id=resource_id))

    async def _stream(self, filter_fn: Optional[EventFilter]) -> StreamingResponse:
        subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await self._event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
