"""FastAPI application.

Every endpoint answers HTTP 200 with a response envelope
``{code, err?, data?, total?}``; failures are carried in ``code``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from metaguard.auth import (
    AuthMiddleware,
    Identity,
    JWTService,
    get_client_mode,
    get_current_identity,
)
from metaguard.core.config import Settings
from metaguard.core.errors import Code, EntityError, error_response
from metaguard.metadata.loader import load_registry
from metaguard.metadata.validator import validate_metadata_dir
from metaguard.persistence import create_store
from metaguard.service.entity import EntityService

logger = logging.getLogger(__name__)


class ListRequest(BaseModel):
    """Request body for list operations. Extra keys are search values."""

    model_config = ConfigDict(extra="allow")

    page: Any = None
    limit: Any = None
    sort_by: Any = None
    desc: Any = None
    attr_names: Any = None
    ref_by_entity: str | None = None
    mode: str | None = None


class DataRequest(BaseModel):
    """Request body for create, clone and update operations."""

    data: dict[str, Any] = {}
    mode: str | None = None


class BatchRequest(BaseModel):
    ids: list[str] | str
    data: dict[str, Any] = {}
    mode: str | None = None


class DeleteRequest(BaseModel):
    ids: list[str] | str
    mode: str | None = None


class RefRequest(BaseModel):
    ref_by_entity: str | None = None
    query: dict[str, Any] | str | None = None
    mode: str | None = None


async def build_service(settings: Settings) -> EntityService:
    """Load metadata, connect the store and build the entity service."""
    schema_issues = validate_metadata_dir(settings.metadata_path)
    if schema_issues:
        error_count = sum(1 for i in schema_issues if i.severity == "error")
        warn_count = sum(1 for i in schema_issues if i.severity == "warning")
        for issue in schema_issues:
            if issue.severity == "error":
                logger.error("Metadata schema error: %s", issue)
            else:
                logger.warning("Metadata schema warning: %s", issue)
        logger.warning(
            "Metadata validation: %d error(s), %d warning(s). "
            "Run 'metaguard metadata validate' for details.",
            error_count,
            warn_count,
        )

    registry = load_registry(
        settings.metadata_path,
        strict_ids=settings.strict_ids,
        hook_modules=settings.hook_modules,
    )

    store = create_store(settings.store)
    await store.connect()
    return EntityService(registry, store, max_limit=settings.max_limit)


def create_app(settings: Settings | None = None, service: EntityService | None = None) -> FastAPI:
    """Create the API application.

    Args:
        settings: Runtime settings; read from the environment when omitted
        service: A ready entity service. When omitted one is built from
            settings during startup and its store closed on shutdown.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            app.state.service = await build_service(settings)
        yield
        if owned:
            await app.state.service.store.close()
            app.state.service = None

    app = FastAPI(title="MetaGuard API", lifespan=lifespan)
    app.state.service = service
    app.state.settings = settings

    # CORS for frontend dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.disable_auth:
        logger.warning("Authentication disabled; every request acts as role '%s'", settings.default_role)
        app.add_middleware(
            AuthMiddleware,
            jwt_service=None,
            default_identity=Identity(subject="anonymous", role=settings.default_role),
        )
    else:
        app.add_middleware(AuthMiddleware, jwt_service=JWTService(settings.secret_key))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in exc.errors()
        )
        return JSONResponse(content=error_response(Code.INVALID_PARAMS, messages))

    @app.exception_handler(EntityError)
    async def entity_error_handler(request: Request, exc: EntityError):
        return JSONResponse(content=exc.to_response())

    def get_service(request: Request) -> EntityService:
        service = request.app.state.service
        if service is None:
            raise EntityError(Code.ERROR, "Service not initialized")
        return service

    # --- Health / metadata ---

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.get("/api/meta/{collection}")
    async def describe(
        collection: str,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
    ) -> dict[str, Any]:
        """Client-visible field definitions of a collection."""
        return await service.describe_collection(collection, identity)

    @app.get("/api/{collection}/mode")
    async def get_mode(
        collection: str,
        mode: str | None = None,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        """The caller's effective mode string."""
        return await service.get_mode(collection, identity, mode or header_mode)

    # --- Entity operations ---

    @app.post("/api/{collection}/list")
    async def list_entity(
        collection: str,
        request: ListRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        params = request.model_dump(exclude_none=True)
        mode = params.pop("mode", None) or header_mode
        return await service.list_entity(
            collection, params, identity, ref_by_entity=request.ref_by_entity, mode=mode
        )

    @app.get("/api/{collection}/read/{id}")
    async def read_entity(
        collection: str,
        id: str,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.read_entity(collection, id, identity, mode=header_mode)

    @app.post("/api/{collection}/create")
    async def create_entity(
        collection: str,
        request: DataRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.create_entity(
            collection, request.data, identity, mode=request.mode or header_mode
        )

    @app.post("/api/{collection}/clone/{id}")
    async def clone_entity(
        collection: str,
        id: str,
        request: DataRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.clone_entity(
            collection, id, request.data, identity, mode=request.mode or header_mode
        )

    @app.post("/api/{collection}/update/{id}")
    async def update_entity(
        collection: str,
        id: str,
        request: DataRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.update_entity(
            collection, id, request.data, identity, mode=request.mode or header_mode
        )

    @app.post("/api/{collection}/batch")
    async def batch_update(
        collection: str,
        request: BatchRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.batch_update(
            collection, request.ids, request.data, identity, mode=request.mode or header_mode
        )

    @app.post("/api/{collection}/delete")
    async def delete_entity(
        collection: str,
        request: DeleteRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.delete_entity(
            collection, request.ids, identity, mode=request.mode or header_mode
        )

    @app.post("/api/{collection}/ref")
    async def resolve_reference(
        collection: str,
        request: RefRequest,
        service: EntityService = Depends(get_service),
        identity: Identity | None = Depends(get_current_identity),
        header_mode: str | None = Depends(get_client_mode),
    ) -> dict[str, Any]:
        return await service.resolve_reference(
            collection,
            request.ref_by_entity,
            identity,
            query=request.query,
            mode=request.mode or header_mode,
        )

    return app


app = create_app()
