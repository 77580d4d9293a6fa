"""Cross-shard user listing: per-shard windows, fan-out and aggregation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .access import AccessResolver
from .backends import ShardBackend, ShardPool
from .errors import NotFound, ValidationError
from .fanout import gather_shards
from .models import (
    ALL,
    AccessScope,
    KycStatus,
    ListRequest,
    Pagination,
    ResultEnvelope,
    ShardPage,
    UserQuery,
    UserRef,
)

logger = logging.getLogger("bankadmin.listing")

_KYC_VALUES = {status.value for status in KycStatus}


def per_shard_window(page: int, per_page: int, configured_shards: int) -> Tuple[int, int]:
    """Return ``(limit, offset)`` applied to every shard for one logical page.

    The divisor is the number of *configured* shards, not the number queried
    after a shard filter, so a single-bank view still gets ``ceil(per_page / N)``
    rows per page.
    """

    if configured_shards < 1:
        raise ValueError("At least one shard must be configured")
    limit = math.ceil(per_page / configured_shards)
    offset = (page - 1) * limit
    return limit, offset


def aggregate_results(
    pages: Sequence[ShardPage],
    request: ListRequest,
    *,
    skipped_shards: Sequence[str] = (),
) -> ResultEnvelope:
    """Concatenate shard pages (shard-major) and sum their exact counts."""

    rows = tuple(row for page in pages for row in page.rows)
    total_count = sum(page.total_count for page in pages)
    total_pages = math.ceil(total_count / request.per_page) if total_count else 0
    return ResultEnvelope(
        rows=rows,
        pagination=Pagination(
            page=request.page,
            per_page=request.per_page,
            total_count=total_count,
            total_pages=total_pages,
        ),
        skipped_shards=tuple(skipped_shards),
    )


@dataclass(frozen=True)
class ExecutionResult:
    pages: Tuple[ShardPage, ...]
    skipped_shards: Tuple[str, ...]


class ShardQueryExecutor:
    """Issue one filtered, windowed query per relevant shard."""

    def __init__(
        self,
        pool: ShardPool,
        *,
        parallel: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        self._pool = pool
        self._parallel = parallel
        self._timeout = timeout

    def window(self, request: ListRequest) -> Tuple[int, int]:
        return per_shard_window(request.page, request.per_page, len(self._pool))

    def plan(
        self,
        request: ListRequest,
        scope: AccessScope | None = None,
    ) -> List[Tuple[ShardBackend, UserQuery]]:
        """Pair every shard that will be asked with the query it receives."""

        if request.shard_filter != ALL and request.shard_filter not in self._pool.registry:
            raise NotFound(f"Unknown shard '{request.shard_filter}'")
        if request.kyc_filter != ALL and request.kyc_filter not in _KYC_VALUES:
            raise ValidationError(f"Unknown KYC status '{request.kyc_filter}'")

        limit, offset = self.window(request)
        restricted = scope is not None and scope.restricted
        search = request.search.strip() or None
        kyc_status = None if request.kyc_filter == ALL else request.kyc_filter

        planned: List[Tuple[ShardBackend, UserQuery]] = []
        for backend in self._pool.backends():
            if request.shard_filter != ALL and backend.key != request.shard_filter:
                continue
            if restricted and backend.key != scope.shard_key:
                continue
            planned.append(
                (
                    backend,
                    UserQuery(
                        offset=offset,
                        limit=limit,
                        kyc_status=kyc_status,
                        search=search,
                        ids=scope.ids if restricted else None,
                    ),
                )
            )
        return planned

    async def execute(self, request: ListRequest, scope: AccessScope | None = None) -> ExecutionResult:
        planned = self.plan(request, scope)
        queries = {backend.key: query for backend, query in planned}

        async def fetch(backend: ShardBackend) -> ShardPage:
            query = queries[backend.key]
            if query.ids is not None and not query.ids:
                return ShardPage(shard_key=backend.key, rows=(), total_count=0)
            return await backend.query_users(query)

        outcomes = await gather_shards(
            [backend for backend, _ in planned],
            fetch,
            parallel=self._parallel,
            timeout=self._timeout,
            operation="user listing",
        )

        pages = tuple(outcome.value for outcome in outcomes if outcome.ok and outcome.value is not None)
        skipped = tuple(outcome.shard_key for outcome in outcomes if not outcome.ok)
        return ExecutionResult(pages=pages, skipped_shards=skipped)


class UserListingService:
    """Entry point for "list users": resolve access, query shards, aggregate."""

    def __init__(self, resolver: AccessResolver, executor: ShardQueryExecutor) -> None:
        self._resolver = resolver
        self._executor = executor

    async def list_users(self, request: ListRequest, *, actor: UserRef | None = None) -> ResultEnvelope:
        scope: AccessScope | None = None
        if actor is not None:
            scope = await self._resolver.resolve_accessible_user_ids(actor.user_id, actor.shard_key)

        result = await self._executor.execute(request, scope)
        envelope = aggregate_results(result.pages, request, skipped_shards=result.skipped_shards)

        if envelope.skipped_shards:
            logger.warning(
                "User listing page %s returned partial results; skipped shards: %s",
                request.page,
                ", ".join(envelope.skipped_shards),
            )
        return envelope


__all__ = [
    "ExecutionResult",
    "ShardQueryExecutor",
    "UserListingService",
    "aggregate_results",
    "per_shard_window",
]
