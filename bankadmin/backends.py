"""Per-shard capability surface: PostgREST over HTTP or a local SQLite file."""

from __future__ import annotations

import functools
import logging
import sqlite3
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, TypeVar

import anyio
import httpx

from .config import BACKEND_SQLITE, ShardConfig, ShardRegistry
from .database import ShardDatabase
from .errors import NotFound, ShardUnavailable, ValidationError
from .models import (
    BALANCE_GROUPS,
    CURRENCIES,
    BalanceOperation,
    HierarchyRelationship,
    RelationshipType,
    ShardPage,
    ShardUser,
    UserQuery,
    group_currencies,
)

logger = logging.getLogger("bankadmin.backends")

T = TypeVar("T")

_SEARCH_COLUMNS = ("email", "full_name", "first_name", "last_name")
_ROLE_SELECT = "id,email,full_name,is_admin,is_manager,is_superiormanager,bank_origin,created_at"
_HIERARCHY_SELECT = (
    "id,superior_id,subordinate_id,relationship_type,created_at,"
    "superior:superior_id(full_name,email),subordinate:subordinate_id(full_name,email)"
)
ACCESSIBLE_IDS_RPC = "get_accessible_user_ids"


class ShardBackend(ABC):
    """Operations every shard must answer, addressed by shard-local ids."""

    def __init__(self, shard: ShardConfig) -> None:
        self._shard = shard

    @property
    def shard(self) -> ShardConfig:
        return self._shard

    @property
    def key(self) -> str:
        return self._shard.key

    @property
    def name(self) -> str:
        return self._shard.name

    def _user(self, row: Mapping[str, Any]) -> ShardUser:
        try:
            return ShardUser.from_row(row, shard_key=self.key, shard_name=self.name)
        except (KeyError, TypeError, ValueError) as exc:
            raise ShardUnavailable(self.key, f"malformed user row: {exc!r}") from exc

    def _relationship(self, row: Mapping[str, Any]) -> HierarchyRelationship:
        try:
            return HierarchyRelationship.from_row(row, shard_key=self.key)
        except (KeyError, TypeError, ValueError) as exc:
            raise ShardUnavailable(self.key, f"malformed relationship row: {exc!r}") from exc

    @abstractmethod
    async def query_users(self, query: UserQuery) -> ShardPage: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[ShardUser]: ...

    @abstractmethod
    async def list_users_with_role_flags(self, *, admins_only: bool = False) -> List[ShardUser]: ...

    @abstractmethod
    async def get_accessible_user_ids(self, actor_id: str) -> FrozenSet[str]: ...

    @abstractmethod
    async def insert_relationship(
        self,
        superior_id: str,
        subordinate_id: str,
        relationship_type: RelationshipType,
    ) -> HierarchyRelationship: ...

    @abstractmethod
    async def delete_relationship(self, relationship_id: str) -> bool: ...

    @abstractmethod
    async def list_relationships_joined(self) -> List[HierarchyRelationship]: ...

    @abstractmethod
    async def update_user_flags(self, user_id: str, **fields: object) -> Optional[ShardUser]: ...

    @abstractmethod
    async def get_balances(self, user_id: str) -> Dict[str, Decimal]: ...

    @abstractmethod
    async def update_balance(
        self,
        user_id: str,
        group: str,
        operation: BalanceOperation,
        amounts: Mapping[str, Decimal],
    ) -> Dict[str, Decimal]: ...

    async def aclose(self) -> None:
        return None


class LocalShardBackend(ShardBackend):
    """Serve a shard from a SQLite file without blocking the event loop."""

    def __init__(self, shard: ShardConfig, database: ShardDatabase) -> None:
        super().__init__(shard)
        self._database = database

    @property
    def database(self) -> ShardDatabase:
        return self._database

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))
        except sqlite3.Error as exc:
            raise ShardUnavailable(self.key, f"database error: {exc}") from exc

    async def query_users(self, query: UserQuery) -> ShardPage:
        rows, count = await self._call(self._database.query_users, query)
        return ShardPage(shard_key=self.key, rows=tuple(self._user(row) for row in rows), total_count=count)

    async def get_user(self, user_id: str) -> Optional[ShardUser]:
        row = await self._call(self._database.get_user, user_id)
        return self._user(row) if row is not None else None

    async def list_users_with_role_flags(self, *, admins_only: bool = False) -> List[ShardUser]:
        rows = await self._call(self._database.list_users_with_role_flags, admins_only=admins_only)
        return [self._user(row) for row in rows]

    async def get_accessible_user_ids(self, actor_id: str) -> FrozenSet[str]:
        return await self._call(self._database.get_accessible_user_ids, actor_id)

    async def insert_relationship(
        self,
        superior_id: str,
        subordinate_id: str,
        relationship_type: RelationshipType,
    ) -> HierarchyRelationship:
        row = await self._call(self._database.insert_relationship, superior_id, subordinate_id, relationship_type)
        return self._relationship(row)

    async def delete_relationship(self, relationship_id: str) -> bool:
        return await self._call(self._database.delete_relationship, relationship_id)

    async def list_relationships_joined(self) -> List[HierarchyRelationship]:
        rows = await self._call(self._database.list_relationships_joined)
        return [self._relationship(row) for row in rows]

    async def update_user_flags(self, user_id: str, **fields: object) -> Optional[ShardUser]:
        row = await self._call(self._database.update_user_flags, user_id, **fields)
        return self._user(row) if row is not None else None

    async def get_balances(self, user_id: str) -> Dict[str, Decimal]:
        return await self._call(self._database.get_balances, user_id)

    async def update_balance(
        self,
        user_id: str,
        group: str,
        operation: BalanceOperation,
        amounts: Mapping[str, Decimal],
    ) -> Dict[str, Decimal]:
        return await self._call(self._database.update_balance, user_id, group, operation, dict(amounts))


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "details", "hint", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _parse_total(content_range: Optional[str], fallback: int) -> int:
    if not content_range or "/" not in content_range:
        return fallback
    total = content_range.rsplit("/", 1)[1].strip()
    if total == "*":
        return fallback
    try:
        return int(total)
    except ValueError:
        return fallback


def _extract_ids(payload: object) -> FrozenSet[str]:
    if not isinstance(payload, list):
        raise ValueError("expected a list of ids")
    ids: set[str] = set()
    for item in payload:
        if isinstance(item, Mapping):
            for key in ("user_id", "id", ACCESSIBLE_IDS_RPC):
                if item.get(key) is not None:
                    ids.add(str(item[key]))
                    break
            else:
                raise ValueError("id rows must carry a user_id column")
        elif item is not None:
            ids.add(str(item))
    return frozenset(ids)


class RestShardBackend(ShardBackend):
    """Talk to a PostgREST shard (``/rest/v1``) using the shard's service role key."""

    def __init__(
        self,
        shard: ShardConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(shard)
        if not shard.endpoint or not shard.service_role_key:
            raise ValueError(f"Shard '{shard.key}' is missing its endpoint or credentials")
        self._client = httpx.AsyncClient(
            base_url=f"{shard.endpoint}/rest/v1",
            headers={
                "apikey": shard.service_role_key,
                "Authorization": f"Bearer {shard.service_role_key}",
                "Content-Type": "application/json",
            },
            timeout=shard.timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Sequence[Tuple[str, str]] | None = None,
        json: object = None,
        prefer: str | None = None,
        accept: Tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise ShardUnavailable(self.key, f"request to {path} failed: {exc}") from exc

        if response.status_code >= 400 and response.status_code not in accept:
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(parsed, f"{path} returned status {response.status_code}")
            if response.status_code == 409:
                raise ValidationError(message)
            raise ShardUnavailable(self.key, message)
        return response

    def _rows(self, response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise ShardUnavailable(self.key, "shard returned an invalid response") from exc
        if isinstance(payload, dict):
            return [payload]
        if not isinstance(payload, list):
            raise ShardUnavailable(self.key, "shard returned an unexpected response payload")
        return payload

    async def query_users(self, query: UserQuery) -> ShardPage:
        if query.ids is not None and not query.ids:
            return ShardPage(shard_key=self.key, rows=(), total_count=0)

        params: List[Tuple[str, str]] = [("select", "*")]
        if query.kyc_status:
            params.append(("kyc_status", f"eq.{query.kyc_status}"))
        if query.search:
            pattern = _quote(f"*{query.search}*")
            params.append(("or", "(" + ",".join(f"{column}.ilike.{pattern}" for column in _SEARCH_COLUMNS) + ")"))
        if query.ids is not None:
            params.append(("id", "in.(" + ",".join(_quote(item) for item in sorted(query.ids)) + ")"))
        params.extend(
            [
                ("order", "created_at.desc"),
                ("offset", str(query.offset)),
                ("limit", str(query.limit)),
            ]
        )

        # An offset past the last row is answered with 416 and a "*/N" range.
        response = await self._request("GET", "/users", params=params, prefer="count=exact", accept=(416,))
        rows = [] if response.status_code == 416 else self._rows(response)
        total = _parse_total(response.headers.get("content-range"), len(rows))
        return ShardPage(shard_key=self.key, rows=tuple(self._user(row) for row in rows), total_count=total)

    async def get_user(self, user_id: str) -> Optional[ShardUser]:
        response = await self._request("GET", "/users", params=[("select", "*"), ("id", f"eq.{user_id}")])
        rows = self._rows(response)
        return self._user(rows[0]) if rows else None

    async def list_users_with_role_flags(self, *, admins_only: bool = False) -> List[ShardUser]:
        params = [("select", _ROLE_SELECT), ("order", "email.asc")]
        if admins_only:
            params.append(("is_admin", "eq.true"))
        response = await self._request("GET", "/users", params=params)
        return [self._user(row) for row in self._rows(response)]

    async def get_accessible_user_ids(self, actor_id: str) -> FrozenSet[str]:
        response = await self._request("POST", f"/rpc/{ACCESSIBLE_IDS_RPC}", json={"p_user_id": actor_id})
        try:
            return _extract_ids(response.json() if response.content else [])
        except ValueError as exc:
            raise ShardUnavailable(self.key, f"invalid accessible id payload: {exc}") from exc

    async def insert_relationship(
        self,
        superior_id: str,
        subordinate_id: str,
        relationship_type: RelationshipType,
    ) -> HierarchyRelationship:
        response = await self._request(
            "POST",
            "/user_hierarchy",
            json={
                "superior_id": superior_id,
                "subordinate_id": subordinate_id,
                "relationship_type": relationship_type.value,
            },
            prefer="return=representation",
        )
        rows = self._rows(response)
        if not rows:
            raise ShardUnavailable(self.key, "shard did not return the inserted relationship")
        return self._relationship(rows[0])

    async def delete_relationship(self, relationship_id: str) -> bool:
        response = await self._request(
            "DELETE",
            "/user_hierarchy",
            params=[("id", f"eq.{relationship_id}")],
            prefer="return=representation",
        )
        return len(self._rows(response)) > 0

    async def list_relationships_joined(self) -> List[HierarchyRelationship]:
        response = await self._request(
            "GET",
            "/user_hierarchy",
            params=[("select", _HIERARCHY_SELECT), ("order", "created_at.desc")],
        )
        return [self._relationship(row) for row in self._rows(response)]

    async def update_user_flags(self, user_id: str, **fields: object) -> Optional[ShardUser]:
        payload = {key: value for key, value in fields.items() if value is not None}
        if not payload:
            return await self.get_user(user_id)
        response = await self._request(
            "PATCH",
            "/users",
            params=[("id", f"eq.{user_id}")],
            json=payload,
            prefer="return=representation",
        )
        rows = self._rows(response)
        return self._user(rows[0]) if rows else None

    async def _balance_row(self, table: str, user_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/{table}", params=[("select", "*"), ("user_id", f"eq.{user_id}")])
        rows = self._rows(response)
        return rows[0] if rows else None

    def _decimal(self, value: object) -> Decimal:
        try:
            return Decimal(str(value)) if value is not None else Decimal(0)
        except InvalidOperation as exc:
            raise ShardUnavailable(self.key, f"invalid balance value {value!r}") from exc

    async def get_balances(self, user_id: str) -> Dict[str, Decimal]:
        balances = {name: Decimal(0) for name in CURRENCIES}
        for group, table in BALANCE_GROUPS.items():
            row = await self._balance_row(table, user_id)
            if row is None:
                continue
            for spec in group_currencies(group):
                balances[spec.name] = self._decimal(row.get(spec.column))
        return balances

    async def update_balance(
        self,
        user_id: str,
        group: str,
        operation: BalanceOperation,
        amounts: Mapping[str, Decimal],
    ) -> Dict[str, Decimal]:
        # Read-modify-write over HTTP; concurrent writers to the same row can interleave.
        table = BALANCE_GROUPS[group]
        specs = {spec.name: spec for spec in group_currencies(group)}
        unknown = set(amounts) - specs.keys()
        if unknown:
            raise ValidationError(f"Currencies {sorted(unknown)} do not belong to group '{group}'")

        row = await self._balance_row(table, user_id)
        current = {name: self._decimal(row.get(spec.column) if row else None) for name, spec in specs.items()}
        updated = dict(current)
        for name, amount in amounts.items():
            result = specs[name].quantize(operation.apply(current[name], amount))
            if result < 0:
                raise ValidationError(f"{name} balance may not become negative")
            updated[name] = result

        payload = {specs[name].column: specs[name].format(updated[name]) for name in amounts}
        if row is None:
            await self._request("POST", f"/{table}", json={"user_id": user_id, **payload})
        else:
            await self._request("PATCH", f"/{table}", params=[("user_id", f"eq.{user_id}")], json=payload)
        return updated


BackendFactory = Callable[[ShardConfig], ShardBackend]


def build_backend(shard: ShardConfig) -> ShardBackend:
    """Create the backend matching the shard's configured kind."""

    if shard.backend == BACKEND_SQLITE:
        assert shard.path is not None
        database = ShardDatabase(shard.path)
        database.initialize()
        return LocalShardBackend(shard, database)
    return RestShardBackend(shard)


class ShardPool:
    """One backend per configured shard, kept for the lifetime of the process."""

    def __init__(
        self,
        registry: ShardRegistry,
        *,
        backends: Mapping[str, ShardBackend] | None = None,
        factory: BackendFactory = build_backend,
    ) -> None:
        self._registry = registry
        provided = dict(backends or {})
        unknown = set(provided) - set(registry.keys())
        if unknown:
            raise ValueError(f"Backends supplied for unknown shards: {', '.join(sorted(unknown))}")
        self._backends: Dict[str, ShardBackend] = {
            shard.key: provided.get(shard.key) or factory(shard) for shard in registry.list()
        }

    @property
    def registry(self) -> ShardRegistry:
        return self._registry

    def backend(self, key: str) -> ShardBackend:
        shard = self._registry.get(key)
        return self._backends[shard.key]

    def backends(self) -> List[ShardBackend]:
        """Backends in registry order."""

        return [self._backends[key] for key in self._registry.keys()]

    def __len__(self) -> int:
        return len(self._registry)

    async def aclose(self) -> None:
        for backend in self.backends():
            try:
                await backend.aclose()
            except Exception:  # pragma: no cover - best effort shutdown
                logger.exception("Failed to close backend for shard %s", backend.key)


def require_user(user: Optional[ShardUser], shard_key: str, user_id: str) -> ShardUser:
    if user is None:
        raise NotFound(f"Unknown user '{user_id}' in shard '{shard_key}'")
    return user


__all__ = [
    "ACCESSIBLE_IDS_RPC",
    "LocalShardBackend",
    "RestShardBackend",
    "ShardBackend",
    "ShardPool",
    "build_backend",
    "require_user",
]
