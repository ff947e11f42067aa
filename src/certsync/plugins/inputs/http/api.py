"""
HTTP Input Plugin - REST API for certificate binding management.

This plugin provides a FastAPI-based REST API for creating, updating,
deleting and inspecting certificate bindings, plus a Prometheus scrape
endpoint for the sync metrics.
"""

import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field, field_validator

from certsync.metrics import SyncMetrics
from certsync.plugins.inputs.base import BindingCallback, InputPlugin
from certsync.plugins.registry import PluginRegistry
from certsync.validation import validate_binding_spec

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 256 * 1024


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
        raise ValueError(
            f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB"
        )
    return value


# Binding models


class BindingCreate(BaseModel):
    """Request model for creating a certificate binding."""

    name: str = Field(..., description="Binding name", examples=["web-tls"])
    namespace: str = Field(default="default", description="Binding namespace")
    spec: Dict[str, Any] = Field(..., description="Binding spec (camelCase)")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class BindingUpdate(BaseModel):
    """Request model for replacing a binding's spec."""

    spec: Dict[str, Any] = Field(..., description="Updated binding spec")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class BindingResponse(BaseModel):
    """Response model for a certificate binding."""

    id: int
    name: str
    namespace: str
    spec: Dict[str, Any]
    status: Dict[str, Any] = {}
    phase: str
    status_message: Optional[str] = None
    generation: int
    observed_generation: int
    resource_version: int
    retry_count: int = 0
    finalizers: List[str] = []
    created_at: datetime
    updated_at: datetime
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconciliationHistoryResponse(BaseModel):
    """Response model for reconciliation history."""

    id: int
    binding_id: int
    generation: int
    success: bool
    phase: str
    error_message: Optional[str] = None
    destinations_synced: int
    destinations_failed: int
    duration_seconds: Optional[float] = None
    trigger_reason: Optional[str] = None
    source_changed: bool = False
    reconcile_time: datetime


class PluginInfo(BaseModel):
    """Response model for plugin information."""

    name: str
    version: str


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for binding management.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._on_binding_event: Optional[BindingCallback] = None
        self._db_manager = None
        self._registry: Optional[PluginRegistry] = None
        self._metrics: Optional[SyncMetrics] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = str(config.get("log_level", "info")).lower()

        self.app = FastAPI(
            title="certsync API",
            description="Certificate binding reconciliation controller",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_registry(self, registry: PluginRegistry) -> None:
        """Set the destination plugin registry."""
        self._registry = registry

    def set_metrics(self, metrics: SyncMetrics) -> None:
        """Set the metrics collector served on /metrics."""
        self._metrics = metrics

    async def _notify(self, event_type: str, binding: Dict[str, Any]) -> None:
        if not self._on_binding_event:
            return
        try:
            await self._on_binding_event(event_type, binding)
        except Exception as e:
            logger.warning(f"Binding event callback failed for {event_type}: {e}")

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Bindings CRUD: /api/v1/bindings
        - Binding by name: /api/v1/bindings/by-name/{namespace}/{name}
        - Reconciliation: POST /api/v1/bindings/{id}/reconcile
        - History: GET /api/v1/bindings/{id}/history
        - Plugin discovery: GET /api/v1/plugins/destinations
        - Prometheus metrics: GET /metrics

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "certsync"}

        # ==================== Binding Endpoints ====================

        @self.app.post(
            "/api/v1/bindings", response_model=BindingResponse, status_code=201
        )
        async def create_binding(binding: BindingCreate):
            """Create a new certificate binding."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            is_valid, error = validate_binding_spec(binding.spec)
            if not is_valid:
                raise HTTPException(
                    status_code=400, detail=f"Spec validation failed: {error}"
                )

            try:
                existing = await self._db_manager.get_binding_by_name(
                    binding.namespace, binding.name
                )
                if existing:
                    raise HTTPException(
                        status_code=409,
                        detail=f"Binding {binding.namespace}/{binding.name} "
                        f"already exists",
                    )

                binding_id = await self._db_manager.create_binding(
                    name=binding.name,
                    namespace=binding.namespace,
                    spec=binding.spec,
                )
                created = await self._db_manager.get_binding(binding_id)
                await self._notify("created", created)
                return BindingResponse(**created)
            except HTTPException:
                raise
            except asyncpg.UniqueViolationError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Binding {binding.namespace}/{binding.name} "
                    f"already exists",
                )
            except Exception as e:
                logger.error(f"Error creating binding: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/bindings", response_model=List[BindingResponse])
        async def list_bindings(
            namespace: Optional[str] = None,
            phase: Optional[str] = None,
            limit: int = 100,
        ):
            """List bindings with optional filters."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                bindings = await self._db_manager.list_bindings(
                    namespace=namespace, phase=phase, limit=limit
                )
                return [BindingResponse(**b) for b in bindings]
            except Exception as e:
                logger.error(f"Error listing bindings: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/bindings/by-name/{namespace}/{name}",
            response_model=BindingResponse,
        )
        async def get_binding_by_name(namespace: str, name: str):
            """Get a binding by namespace and name."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                binding = await self._db_manager.get_binding_by_name(namespace, name)
                if not binding:
                    raise HTTPException(status_code=404, detail="Binding not found")
                return BindingResponse(**binding)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting binding: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/bindings/{binding_id}", response_model=BindingResponse)
        async def get_binding_by_id(binding_id: int):
            """Get a binding by ID."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                binding = await self._db_manager.get_binding(binding_id)
                if not binding:
                    raise HTTPException(status_code=404, detail="Binding not found")
                return BindingResponse(**binding)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting binding: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put("/api/v1/bindings/{binding_id}", response_model=BindingResponse)
        async def update_binding(binding_id: int, update: BindingUpdate):
            """Replace a binding's spec."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            is_valid, error = validate_binding_spec(update.spec)
            if not is_valid:
                raise HTTPException(
                    status_code=400, detail=f"Spec validation failed: {error}"
                )

            try:
                binding = await self._db_manager.get_binding(binding_id)
                if not binding or binding.get("deleted_at"):
                    raise HTTPException(status_code=404, detail="Binding not found")

                await self._db_manager.update_binding(binding_id, update.spec)
                updated = await self._db_manager.get_binding(binding_id)
                await self._notify("updated", updated)
                return BindingResponse(**updated)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating binding: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/bindings/{binding_id}", status_code=202)
        async def delete_binding(binding_id: int):
            """Mark a binding for deletion; the controller finalizes it."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                binding = await self._db_manager.get_binding(binding_id)
                if not binding:
                    raise HTTPException(status_code=404, detail="Binding not found")
                if not binding.get("deleted_at"):
                    await self._db_manager.delete_binding(binding_id)
                    await self._notify("deleted", binding)
                return {"status": "deleting", "id": binding_id}
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting binding: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post("/api/v1/bindings/{binding_id}/reconcile", status_code=202)
        async def trigger_reconcile(binding_id: int):
            """Request an immediate reconcile pass for a binding."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                binding = await self._db_manager.get_binding(binding_id)
                if not binding:
                    raise HTTPException(status_code=404, detail="Binding not found")
                await self._db_manager.mark_binding_for_reconciliation(binding_id)
                return {"status": "queued", "id": binding_id}
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/bindings/{binding_id}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_history(binding_id: int, limit: int = 10):
            """Get reconciliation history for a binding, newest first."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                binding = await self._db_manager.get_binding(binding_id)
                if not binding:
                    raise HTTPException(status_code=404, detail="Binding not found")
                history = await self._db_manager.get_reconciliation_history(
                    binding_id, limit=limit
                )
                return [ReconciliationHistoryResponse(**h) for h in history]
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting history: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Plugin Discovery ====================

        @self.app.get(
            "/api/v1/plugins/destinations", response_model=List[PluginInfo]
        )
        async def list_destination_plugins():
            """List registered destination plugins."""
            if not self._registry:
                return []

            plugins = []
            for name in self._registry.list_destination_plugins():
                info = self._registry.get_destination_plugin_info(name)
                if info:
                    plugins.append(PluginInfo(**info))
            return plugins

        # ==================== Metrics ====================

        @self.app.get("/metrics")
        async def metrics():
            """Prometheus scrape endpoint."""
            if not self._metrics:
                raise HTTPException(status_code=503, detail="Metrics not available")
            return Response(
                content=self._metrics.render(), media_type=self._metrics.content_type
            )

    async def start(self, on_binding_event: BindingCallback) -> None:
        """Start the HTTP server."""
        if not self.app:
            raise RuntimeError("App not initialized")
        self._on_binding_event = on_binding_event

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
