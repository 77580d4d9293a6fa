"""Resolve which users a requesting actor may see.

Managers and superior managers are restricted to the users reachable through
their shard's hierarchy. When that set cannot be determined (the shard errors,
or the actor has no subordinates yet) the outcome is decided by a single
policy function, :func:`unresolved_scope`. The configured default is
``AccessPolicy.FAIL_OPEN``: the actor keeps unrestricted visibility, the same
as an administrator. Switching the policy to ``FAIL_CLOSED`` makes such actors
see nothing instead. Call sites never make that decision themselves.
"""

from __future__ import annotations

import logging

from .backends import ShardPool, require_user
from .errors import ShardUnavailable
from .models import AccessPolicy, AccessScope

logger = logging.getLogger("bankadmin.access")


def unresolved_scope(policy: AccessPolicy, shard_key: str) -> AccessScope:
    """Scope granted to a manager whose accessible set is empty or unknown."""

    if policy is AccessPolicy.FAIL_CLOSED:
        return AccessScope.restricted_to((), shard_key)
    return AccessScope.unrestricted()


class AccessResolver:
    """Compute :class:`AccessScope` values for actors."""

    def __init__(self, pool: ShardPool, *, policy: AccessPolicy = AccessPolicy.FAIL_OPEN) -> None:
        self._pool = pool
        self._policy = policy

    async def resolve_accessible_user_ids(self, actor_id: str, shard_key: str) -> AccessScope:
        backend = self._pool.backend(shard_key)

        try:
            actor = require_user(await backend.get_user(actor_id), shard_key, actor_id)
        except ShardUnavailable as exc:
            logger.warning("Could not load actor %s from shard %s: %s", actor_id, shard_key, exc)
            return self._unresolved(actor_id, shard_key, "actor lookup failed")

        if not actor.holds_management_role:
            return AccessScope.unrestricted()

        try:
            ids = await backend.get_accessible_user_ids(actor_id)
        except ShardUnavailable as exc:
            logger.warning("Hierarchy lookup for %s on shard %s failed: %s", actor_id, shard_key, exc)
            return self._unresolved(actor_id, shard_key, "hierarchy lookup failed")

        if not ids:
            return self._unresolved(actor_id, shard_key, "no subordinates assigned")

        return AccessScope.restricted_to(ids, shard_key)

    def _unresolved(self, actor_id: str, shard_key: str, reason: str) -> AccessScope:
        scope = unresolved_scope(self._policy, shard_key)
        if scope.restricted:
            logger.info("Denying visibility to %s on shard %s (%s)", actor_id, shard_key, reason)
        else:
            logger.warning(
                "Granting unrestricted visibility to %s on shard %s (%s, policy=%s)",
                actor_id,
                shard_key,
                reason,
                self._policy.value,
            )
        return scope


__all__ = ["AccessResolver", "unresolved_scope"]
