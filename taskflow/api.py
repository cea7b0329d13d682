"""
FastAPI app wiring for the storage routing service.

Routes are plain `def` handlers: probing, initialization and guard runs
block on the network, so FastAPI runs them in its worker threadpool and
the event loop stays free for other tenants.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from taskflow import __version__
from taskflow.errors import (
    ConcurrentMigrationInProgress,
    ConnectionProbeFailed,
    DestructiveChangeRejected,
    InvalidStorageRequest,
    SecretDecryptionError,
    StorageRoutingError,
)
from taskflow.service import StorageService

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    InvalidStorageRequest: 400,
    ConnectionProbeFailed: 400,
    DestructiveChangeRejected: 409,
    ConcurrentMigrationInProgress: 409,
    SecretDecryptionError: 409,
}


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConnectionTestRequest(_ApiModel):
    connection_string: SecretStr = Field(alias="connectionString")
    database_name: Optional[str] = Field(default=None, alias="databaseName")


class ConfigureRequest(_ApiModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    mode: str
    connection_string: Optional[SecretStr] = Field(default=None, alias="connectionString")
    database_name: Optional[str] = Field(default=None, alias="databaseName")
    include_organization_metadata: Optional[bool] = Field(default=None, alias="includeOrganizationMetadata")
    tenant_kind: Optional[str] = Field(default=None, alias="tenantKind")
    confirm: bool = False


class InitializeRequest(_ApiModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    connection_string: Optional[SecretStr] = Field(default=None, alias="connectionString")
    database_name: Optional[str] = Field(default=None, alias="databaseName")


class TenantRequest(_ApiModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    tenant_kind: str = Field(default="user", alias="tenantKind")


class InvalidateRequest(_ApiModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)


def _secret(value: Optional[SecretStr]) -> Optional[str]:
    return value.get_secret_value() if value is not None else None


def _status_code(exc: StorageRoutingError) -> int:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(service: Optional[StorageService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: Preconfigured service (tests). If None, one is built
            from the environment and closed on shutdown.
    """
    owns_service = service is None
    service = service or StorageService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if owns_service:
                service.close()

    app = FastAPI(title="Taskflow Storage", version=__version__, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(StorageRoutingError)
    async def storage_error_handler(request: Request, exc: StorageRoutingError) -> JSONResponse:
        status_code = _status_code(exc)
        if status_code >= 500:
            logger.error("Unhandled storage error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Never echo request input back: it may contain a connection string
        problems = [
            {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
            for error in exc.errors()
        ]
        fields = ", ".join(problem["field"] for problem in problems) or "body"
        error = InvalidStorageRequest(f"Invalid request: {fields}", field=fields)
        content = error.to_dict()
        content["problems"] = problems
        return JSONResponse(status_code=400, content=content)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.post("/storage/test-connection")
    def test_connection(body: ConnectionTestRequest):
        result = app.state.service.test_connection(
            body.connection_string.get_secret_value(), body.database_name
        )
        return JSONResponse(status_code=200 if result.success else 400, content=result.to_dict())

    @app.post("/storage/configure")
    def configure(body: ConfigureRequest) -> Dict[str, Any]:
        outcome = app.state.service.configure(
            tenant_id=body.tenant_id,
            mode=body.mode,
            connection_string=_secret(body.connection_string),
            database_name=body.database_name,
            include_organization_metadata=body.include_organization_metadata,
            tenant_kind=body.tenant_kind,
            confirm=body.confirm,
        )
        return outcome.to_dict()

    @app.post("/storage/initialize")
    def initialize(body: InitializeRequest):
        report = app.state.service.initialize(
            body.tenant_id, _secret(body.connection_string), body.database_name
        )
        return JSONResponse(status_code=200 if report.success else 400, content=report.to_dict())

    @app.post("/storage/invalidate-cache")
    def invalidate_cache(body: InvalidateRequest) -> Dict[str, Any]:
        app.state.service.invalidate_cache(body.tenant_id)
        return {"success": True, "tenantId": body.tenant_id}

    @app.get("/storage/status")
    def status(tenant_id: str = Query(alias="tenantId", min_length=1)) -> Dict[str, Any]:
        return app.state.service.status(tenant_id)

    @app.get("/storage/config")
    def get_config(tenant_id: Optional[str] = Query(default=None, alias="tenantId")):
        if tenant_id:
            return app.state.service.get_configuration(tenant_id)
        return {"configurations": app.state.service.list_configurations()}

    @app.post("/storage/tenants")
    def register_tenant(body: TenantRequest) -> Dict[str, Any]:
        return app.state.service.register_tenant(body.tenant_id, body.tenant_kind)

    return app
