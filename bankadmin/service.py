"""HTTP API for cross-bank user administration."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .access import AccessResolver
from .audit import AuditTrail
from .backends import ShardPool
from .balances import BalanceOrchestrator
from .config import CONFIG_ENV, AdminConfig, load_config, resolve_config_path
from .errors import NotFound, ShardUnavailable, ValidationError
from .hierarchy import HierarchyStore
from .listing import ShardQueryExecutor, UserListingService
from .models import ALL, ListRequest, UserRef
from .security import TOKENS_ENV, TokenAuth, load_tokens_from_env, request_operator
from .users import UserDirectory

logger = logging.getLogger("bankadmin.service")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ShardResponse(BaseModel):
    key: str
    name: str
    backend: str


class AssignRequest(_CamelModel):
    bank_key: str = Field(..., alias="bankKey", min_length=1)
    superior_id: str = Field(..., alias="superiorId", min_length=1)
    subordinate_id: str = Field(..., alias="subordinateId", min_length=1)
    relationship_type: str = Field(..., alias="relationshipType", min_length=1)


class PromoteRequest(BaseModel):
    role: str = Field(..., min_length=1)


class KycUpdateRequest(BaseModel):
    status: str = Field(..., min_length=1)


class BalanceUpdateRequest(_CamelModel):
    bank_key: str = Field(..., alias="bankKey", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)
    operation: str = Field(..., min_length=1)
    balances: Dict[str, Any] = Field(default_factory=dict)


class BalanceUpdateResponse(BaseModel):
    success: bool


def _actor_ref(actor_id: Optional[str], actor_bank: Optional[str]) -> Optional[UserRef]:
    if not actor_id and not actor_bank:
        return None
    if not actor_id or not actor_bank:
        raise ValidationError("X-Actor-Id and X-Actor-Bank must be supplied together")
    return UserRef(actor_bank, actor_id)


def _resolve_auth(auth: TokenAuth | None, environ: Mapping[str, str]) -> TokenAuth | None:
    if auth is not None:
        return auth
    tokens = load_tokens_from_env(environ)
    if tokens:
        return TokenAuth(tokens)
    logger.warning("%s is not set; the administration API is running without authentication", TOKENS_ENV)
    return None


def audit_actor(request: Request, x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """The audited actor: ``X-Actor-Id`` when sent, else the authenticated operator."""

    return x_actor_id or request_operator(request)


def create_app(
    *,
    config: AdminConfig | None = None,
    pool: ShardPool | None = None,
    auth: TokenAuth | None = None,
    audit: AuditTrail | None = None,
    require_auth: bool = True,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    """Build the administration API.

    ``config`` defaults to the YAML file named by ``BANKADMIN_SHARDS_CONFIG``
    (or ``config/shards.yaml``). One backend per shard is created here and
    closed when the application shuts down. ``environ`` replaces
    ``os.environ`` for the configuration path and ``BANKADMIN_API_TOKENS``.
    """

    env = os.environ if environ is None else environ
    if config is None:
        config = load_config(resolve_config_path(env.get(CONFIG_ENV)))
    if pool is None:
        pool = ShardPool(config.registry)
    if require_auth:
        auth = _resolve_auth(auth, env)
    else:
        auth = None

    settings = config.settings
    audit = audit or AuditTrail()

    resolver = AccessResolver(pool, policy=settings.access_policy)
    executor = ShardQueryExecutor(pool, parallel=settings.parallel_fanout, timeout=settings.fanout_timeout)
    listing = UserListingService(resolver, executor)
    hierarchy = HierarchyStore(
        pool,
        audit=audit,
        parallel=settings.parallel_fanout,
        timeout=settings.fanout_timeout,
    )
    directory = UserDirectory(pool, audit=audit)
    balances = BalanceOrchestrator(pool, audit=audit)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("Serving %d shard(s): %s", len(pool), ", ".join(config.registry.keys()))
        try:
            yield
        finally:
            await pool.aclose()

    app = FastAPI(
        title="Multi-bank Administration",
        description="Cross-bank user listing, manager hierarchy and balance administration",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.pool = pool
    app.state.hierarchy = hierarchy
    app.state.balances = balances

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    async def require_token(request: Request) -> None:
        if auth is not None:
            await auth(request)

    protected_router = APIRouter(dependencies=[Depends(require_token)])

    @protected_router.get("/v1/shards", response_model=List[ShardResponse])
    async def list_shards() -> List[ShardResponse]:
        return [
            ShardResponse(key=shard.key, name=shard.name, backend=shard.backend)
            for shard in config.registry.list()
        ]

    @protected_router.get("/v1/users")
    async def list_users(
        page: int = Query(1),
        per_page: Optional[int] = Query(None, alias="perPage"),
        bank: str = Query(ALL),
        kyc: str = Query(ALL),
        search: str = Query(""),
        x_actor_id: Optional[str] = Header(None),
        x_actor_bank: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        request = ListRequest(
            page=page,
            per_page=per_page if per_page is not None else settings.default_per_page,
            shard_filter=bank,
            kyc_filter=kyc,
            search=search,
        )
        envelope = await listing.list_users(request, actor=_actor_ref(x_actor_id, x_actor_bank))
        return envelope.to_dict()

    @protected_router.get("/v1/hierarchy")
    async def list_relationships() -> Dict[str, Any]:
        relationships = await hierarchy.list_relationships()
        return {"relationships": [relationship.to_dict() for relationship in relationships]}

    @protected_router.get("/v1/hierarchy/users")
    async def list_role_holders(admins_only: bool = Query(False, alias="adminsOnly")) -> Dict[str, Any]:
        users = await hierarchy.list_role_holders(admins_only=admins_only)
        return {"users": [user.to_dict() for user in users]}

    @protected_router.post("/v1/hierarchy", status_code=status.HTTP_201_CREATED)
    async def assign(
        request: AssignRequest,
        actor: Optional[str] = Depends(audit_actor),
    ) -> Dict[str, Any]:
        relationship = await hierarchy.insert_relationship(
            UserRef(request.bank_key, request.superior_id),
            UserRef(request.bank_key, request.subordinate_id),
            request.relationship_type,
            actor=actor,
        )
        return relationship.to_dict()

    @protected_router.delete("/v1/hierarchy/{relationship_id}")
    async def unassign(
        relationship_id: str,
        bank: Optional[str] = Query(None),
        actor: Optional[str] = Depends(audit_actor),
    ) -> Dict[str, str]:
        shard_key = await hierarchy.delete_relationship(relationship_id, shard_key=bank, actor=actor)
        return {"id": relationship_id, "bankKey": shard_key}

    @protected_router.post("/v1/users/{bank}/{user_id}/roles")
    async def promote(
        bank: str,
        user_id: str,
        request: PromoteRequest,
        actor: Optional[str] = Depends(audit_actor),
    ) -> Dict[str, Any]:
        user = await hierarchy.promote(UserRef(bank, user_id), request.role, actor=actor)
        return user.to_dict()

    @protected_router.patch("/v1/users/{bank}/{user_id}/kyc")
    async def update_kyc(
        bank: str,
        user_id: str,
        request: KycUpdateRequest,
        actor: Optional[str] = Depends(audit_actor),
    ) -> Dict[str, Any]:
        user = await directory.update_kyc_status(UserRef(bank, user_id), request.status, actor=actor)
        return user.to_dict()

    @protected_router.get("/v1/balances/{bank}/{user_id}")
    async def read_balances(bank: str, user_id: str) -> Dict[str, Any]:
        await directory.get_user(UserRef(bank, user_id))
        values = await balances.get_balances(bank, user_id)
        return {"bankKey": bank, "userId": user_id, "balances": values}

    @protected_router.post("/v1/balances/update", response_model=BalanceUpdateResponse)
    async def update_balances(
        request: BalanceUpdateRequest,
        actor: Optional[str] = Depends(audit_actor),
    ) -> BalanceUpdateResponse:
        result = await balances.update_balances(
            request.bank_key,
            request.user_id,
            request.operation,
            request.balances,
            actor=actor,
        )
        return BalanceUpdateResponse(success=result.success)

    app.include_router(protected_router)

    @app.exception_handler(ValidationError)
    async def handle_validation_error(_: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(NotFound)
    async def handle_not_found(_: Request, exc: NotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ShardUnavailable)
    async def handle_shard_unavailable(_: Request, exc: ShardUnavailable):
        logger.error("Shard %s unavailable: %s", exc.shard_key, exc.reason)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": f"Bank '{exc.shard_key}' is currently unavailable"},
        )

    return app


__all__ = ["create_app"]
