from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

from bankadmin.access import AccessResolver
from bankadmin.backends import LocalShardBackend, RestShardBackend, ShardPool, build_backend
from bankadmin.config import BACKEND_REST, ShardConfig, ShardRegistry
from bankadmin.database import ShardDatabase
from bankadmin.errors import NotFound, ShardUnavailable, ValidationError
from bankadmin.listing import ShardQueryExecutor, UserListingService
from bankadmin.models import BalanceOperation, ListRequest, RelationshipType, UserQuery

from shard_fixtures import add_user, run, shard_config

SHARD = ShardConfig(
    key="cayman",
    name="Cayman Bank",
    backend=BACKEND_REST,
    endpoint="https://cayman.example.com",
    service_role_key="service-secret",
)


def _backend(handler: Callable[[httpx.Request], httpx.Response]) -> RestShardBackend:
    return RestShardBackend(SHARD, transport=httpx.MockTransport(handler))


def _user_row(user_id: str, **fields: object) -> dict:
    row = {
        "id": user_id,
        "email": f"{user_id}@example.com",
        "full_name": user_id.title(),
        "is_admin": False,
        "is_manager": False,
        "is_superiormanager": False,
        "kyc_status": "pending",
        "created_at": "2024-02-01T10:00:00+00:00",
    }
    row.update(fields)
    return row


def test_query_users_sends_postgrest_filters_and_reads_exact_count() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[_user_row("u2"), _user_row("u1", password="hash")],
            headers={"Content-Range": "6-7/42"},
        )

    backend = _backend(handler)
    query = UserQuery(offset=6, limit=6, kyc_status="pending", search="smith", ids=frozenset({"u1", "u2"}))
    page = run(backend.query_users, query)

    assert page.shard_key == "cayman"
    assert page.total_count == 42
    assert [user.id for user in page.rows] == ["u2", "u1"]
    assert page.rows[0].shard_name == "Cayman Bank"
    assert "password" not in page.rows[1].to_dict()

    request = seen[0]
    assert request.url.path == "/rest/v1/users"
    assert request.headers["apikey"] == "service-secret"
    assert request.headers["Authorization"] == "Bearer service-secret"
    assert request.headers["Prefer"] == "count=exact"
    params = request.url.params
    assert params["kyc_status"] == "eq.pending"
    assert params["offset"] == "6"
    assert params["limit"] == "6"
    assert params["order"] == "created_at.desc"
    assert params["id"] == 'in.("u1","u2")'
    assert 'email.ilike."*smith*"' in params["or"]
    assert 'last_name.ilike."*smith*"' in params["or"]


def test_query_users_with_empty_id_set_never_calls_the_shard() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("shard must not be queried")

    page = run(_backend(handler).query_users, UserQuery(offset=0, limit=6, ids=frozenset()))

    assert page.rows == ()
    assert page.total_count == 0


def test_server_errors_and_transport_failures_become_shard_unavailable() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "database is down"})

    with pytest.raises(ShardUnavailable) as excinfo:
        run(_backend(failing).get_user, "u1")
    assert excinfo.value.shard_key == "cayman"
    assert excinfo.value.reason == "database is down"

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ShardUnavailable):
        run(_backend(unreachable).get_user, "u1")


def test_conflicts_are_validation_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"message": "duplicate key value violates unique constraint"})

    async def insert() -> None:
        await _backend(handler).insert_relationship("m1", "u1", RelationshipType.MANAGER_TO_USER)

    with pytest.raises(ValidationError, match="duplicate key"):
        run(insert)


def test_accessible_ids_use_the_rpc_endpoint() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"user_id": "u1"}, {"user_id": "u2"}])

    ids = run(_backend(handler).get_accessible_user_ids, "m1")

    assert ids == frozenset({"u1", "u2"})
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/rest/v1/rpc/get_accessible_user_ids"
    assert json.loads(seen[0].content) == {"p_user_id": "m1"}


def test_malformed_accessible_ids_payload_is_a_shard_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(ShardUnavailable):
        run(_backend(handler).get_accessible_user_ids, "m1")


def test_relationship_listing_and_delete() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(
                200,
                json=[
                    {
                        "id": "r1",
                        "superior_id": "m1",
                        "subordinate_id": "u1",
                        "relationship_type": "manager_to_user",
                        "created_at": "2024-02-01T10:00:00+00:00",
                        "superior": {"full_name": None, "email": "manager@example.com"},
                        "subordinate": None,
                    }
                ],
            )
        if request.url.params["id"] == "eq.r1":
            return httpx.Response(200, json=[{"id": "r1"}])
        return httpx.Response(200, json=[])

    backend = _backend(handler)
    relationships = run(backend.list_relationships_joined)

    assert relationships[0].superior_name == "manager@example.com"
    assert relationships[0].subordinate_name == "Unknown"
    assert run(backend.delete_relationship, "r1") is True
    assert run(backend.delete_relationship, "r2") is False


def test_update_balance_creates_missing_row() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[])
        return httpx.Response(201)

    async def update() -> dict:
        return await _backend(handler).update_balance(
            "u1", "crypto", BalanceOperation.ADD, {"btc": Decimal("0.1")}
        )

    updated = run(update)

    assert updated["btc"] == Decimal("0.10000000")
    assert seen[-1].method == "POST"
    assert seen[-1].url.path == "/rest/v1/crypto_balances"
    assert json.loads(seen[-1].content) == {"user_id": "u1", "btc_balance": "0.10000000"}


def test_update_balance_patches_existing_row_and_rejects_negative_results() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[{"user_id": "u1", "balance": "20.00"}])
        return httpx.Response(204)

    async def deduct(amount: str) -> dict:
        return await _backend(handler).update_balance(
            "u1", "eur", BalanceOperation.DEDUCT, {"eur": Decimal(amount)}
        )

    assert run(deduct, "5")["eur"] == Decimal("15.00")
    assert seen[-1].method == "PATCH"
    assert seen[-1].url.path == "/rest/v1/euro_balances"
    assert json.loads(seen[-1].content) == {"balance": "15.00"}

    with pytest.raises(ValidationError):
        run(deduct, "25")


def test_pool_builds_local_backends_and_rejects_unknown_keys(tmp_path: Path) -> None:
    config = shard_config(tmp_path, "digitalchain", "Digital Chain Bank")
    pool = ShardPool(ShardRegistry([config]), factory=build_backend)

    backend = pool.backend("digitalchain")
    add_user(backend.database, "alice")  # type: ignore[attr-defined]
    user = run(backend.get_user, "alice")

    assert user is not None
    assert user.shard_key == "digitalchain"
    assert user.bank_origin == "Digital Chain Bank"
    with pytest.raises(NotFound):
        pool.backend("atlantis")
    run(pool.aclose)


def _rest_shard(key: str, name: str) -> ShardConfig:
    return ShardConfig(
        key=key,
        name=name,
        backend=BACKEND_REST,
        endpoint=f"https://{key}.example.com",
        service_role_key=f"{key}-secret",
    )


def test_offset_past_last_row_keeps_the_shard_count() -> None:
    rows = [_user_row(f"big-{index}") for index in range(40)]

    def big(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        page = rows[offset : offset + limit]
        return httpx.Response(
            200,
            json=page,
            headers={"Content-Range": f"{offset}-{offset + len(page) - 1}/40"},
        )

    def small(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            416,
            json={"message": "Requested range not satisfiable"},
            headers={"Content-Range": "*/4"},
        )

    configs = [_rest_shard("big", "Big"), _rest_shard("small", "Small")]
    pool = ShardPool(
        ShardRegistry(configs),
        backends={
            "big": RestShardBackend(configs[0], transport=httpx.MockTransport(big)),
            "small": RestShardBackend(configs[1], transport=httpx.MockTransport(small)),
        },
    )
    service = UserListingService(AccessResolver(pool), ShardQueryExecutor(pool))

    envelope = run(service.list_users, ListRequest(page=2, per_page=12))

    assert envelope.pagination.total_count == 44
    assert envelope.pagination.total_pages == 4
    assert envelope.skipped_shards == ()
    assert [row.id for row in envelope.rows] == [f"big-{index}" for index in range(6, 12)]


def test_range_not_satisfiable_is_an_empty_page() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(416, json={"message": "Requested range not satisfiable"}, headers={"Content-Range": "*/3"})

    page = run(_backend(handler).query_users, UserQuery(offset=6, limit=6))

    assert page.rows == ()
    assert page.total_count == 3

    with pytest.raises(ShardUnavailable):
        run(_backend(handler).get_user, "u1")


def test_malformed_rows_are_shard_failures() -> None:
    def users(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"email": "no-id@example.com"}], headers={"Content-Range": "0-0/1"})

    with pytest.raises(ShardUnavailable) as excinfo:
        run(_backend(users).query_users, UserQuery(offset=0, limit=6))
    assert excinfo.value.shard_key == "cayman"

    def relationships(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {
                    "id": "r1",
                    "superior_id": "m1",
                    "subordinate_id": "u1",
                    "relationship_type": "peer",
                    "created_at": "2024-02-01T10:00:00+00:00",
                }
            ],
        )

    with pytest.raises(ShardUnavailable):
        run(_backend(relationships).list_relationships_joined)


def test_listing_skips_a_shard_returning_malformed_rows(tmp_path: Path) -> None:
    local = shard_config(tmp_path, "digitalchain", "Digital Chain Bank")
    database = ShardDatabase(local.path)
    database.initialize()
    add_user(database, "alice")

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"email": "no-id@example.com"}], headers={"Content-Range": "0-0/1"})

    pool = ShardPool(
        ShardRegistry([local, SHARD]),
        backends={
            "digitalchain": LocalShardBackend(local, database),
            "cayman": RestShardBackend(SHARD, transport=httpx.MockTransport(broken)),
        },
    )
    service = UserListingService(AccessResolver(pool), ShardQueryExecutor(pool))

    envelope = run(service.list_users, ListRequest())

    assert [row.id for row in envelope.rows] == ["alice"]
    assert envelope.pagination.total_count == 1
    assert envelope.skipped_shards == ("cayman",)
