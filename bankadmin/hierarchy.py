"""Manager hierarchy maintenance across shards."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

from .audit import AuditAction, AuditTrail
from .backends import ShardPool, require_user
from .errors import NotFound, ShardUnavailable, ValidationError
from .fanout import gather_shards
from .models import HierarchyRelationship, RelationshipType, Role, ShardUser, UserRef

logger = logging.getLogger("bankadmin.hierarchy")

HIERARCHY_TABLE = "user_hierarchy"


def validate_assignment(
    superior: ShardUser,
    subordinate: ShardUser,
    relationship_type: RelationshipType,
) -> None:
    """Raise :class:`ValidationError` unless the pair may form ``relationship_type``."""

    if superior.shard_key != subordinate.shard_key:
        raise ValidationError("Superior and subordinate must belong to the same bank")
    if superior.id == subordinate.id:
        raise ValidationError("A user cannot be assigned to themselves")

    if relationship_type is RelationshipType.MANAGER_TO_USER:
        if not superior.is_manager:
            raise ValidationError("Users can only be assigned to a manager")
        if subordinate.holds_management_role:
            raise ValidationError("Managers and superior managers cannot be assigned to a manager")
        return

    if not superior.is_superior_manager:
        raise ValidationError("Managers can only be assigned to a superior manager")
    if not subordinate.is_manager:
        raise ValidationError("Only managers can be assigned to a superior manager")
    if subordinate.is_superior_manager:
        raise ValidationError("Superior managers cannot be assigned to another superior manager")


class HierarchyStore:
    """Create, remove and list superior -> subordinate relationships."""

    def __init__(
        self,
        pool: ShardPool,
        *,
        audit: AuditTrail | None = None,
        parallel: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        self._pool = pool
        self._audit = audit or AuditTrail()
        self._parallel = parallel
        self._timeout = timeout

    async def insert_relationship(
        self,
        superior: UserRef,
        subordinate: UserRef,
        relationship_type: RelationshipType | str,
        *,
        actor: Optional[str] = None,
    ) -> HierarchyRelationship:
        try:
            kind = RelationshipType(relationship_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown relationship type '{relationship_type}'") from exc

        if superior.shard_key != subordinate.shard_key:
            raise ValidationError("Superior and subordinate must belong to the same bank")

        backend = self._pool.backend(superior.shard_key)
        superior_user = await backend.get_user(superior.user_id)
        if superior_user is None:
            raise ValidationError(f"Superior '{superior.user_id}' does not exist in bank '{backend.key}'")
        subordinate_user = await backend.get_user(subordinate.user_id)
        if subordinate_user is None:
            raise ValidationError(f"Subordinate '{subordinate.user_id}' does not exist in bank '{backend.key}'")

        validate_assignment(superior_user, subordinate_user, kind)

        relationship = await backend.insert_relationship(superior_user.id, subordinate_user.id, kind)
        relationship = replace(
            relationship,
            superior_name=superior_user.display_name,
            subordinate_name=subordinate_user.display_name,
        )

        logger.info(
            "Assigned %s to %s on shard %s (%s)",
            subordinate_user.id,
            superior_user.id,
            backend.key,
            kind.value,
        )
        self._audit.record(
            backend.key,
            AuditAction.CREATE,
            HIERARCHY_TABLE,
            relationship.id,
            actor=actor,
            new_data=relationship.to_dict(),
        )
        return relationship

    async def delete_relationship(
        self,
        relationship_id: str,
        *,
        shard_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> str:
        """Delete a relationship and return the key of the shard that held it.

        Without ``shard_key`` every shard is tried in registry order and the
        sweep stops at the first shard that deletes a row. Relationship ids are
        only unique per shard, so an id reused by an earlier shard is the one
        removed; pass ``shard_key`` to address the row unambiguously.
        """

        deleted_in: Optional[str] = None
        if shard_key is not None:
            backend = self._pool.backend(shard_key)
            if await backend.delete_relationship(relationship_id):
                deleted_in = backend.key
        else:
            for backend in self._pool.backends():
                try:
                    deleted = await backend.delete_relationship(relationship_id)
                except ShardUnavailable as exc:
                    logger.error("Could not delete relationship %s on shard %s: %s", relationship_id, backend.key, exc)
                    continue
                if deleted:
                    deleted_in = backend.key
                    break

        if deleted_in is None:
            raise NotFound(f"Relationship '{relationship_id}' not found")

        logger.info("Removed relationship %s from shard %s", relationship_id, deleted_in)
        self._audit.record(deleted_in, AuditAction.DELETE, HIERARCHY_TABLE, relationship_id, actor=actor)
        return deleted_in

    async def list_relationships(self) -> List[HierarchyRelationship]:
        """Every relationship of every reachable shard, shard-major, newest first."""

        outcomes = await gather_shards(
            self._pool.backends(),
            lambda backend: backend.list_relationships_joined(),
            parallel=self._parallel,
            timeout=self._timeout,
            operation="hierarchy listing",
        )
        return [relationship for outcome in outcomes if outcome.ok for relationship in outcome.value or ()]

    async def list_role_holders(self, *, admins_only: bool = False) -> List[ShardUser]:
        """Users with their role flags from every reachable shard, ordered by email per shard."""

        outcomes = await gather_shards(
            self._pool.backends(),
            lambda backend: backend.list_users_with_role_flags(admins_only=admins_only),
            parallel=self._parallel,
            timeout=self._timeout,
            operation="role listing",
        )
        return [user for outcome in outcomes if outcome.ok for user in outcome.value or ()]

    async def promote(self, user: UserRef, role: Role | str, *, actor: Optional[str] = None) -> ShardUser:
        """Grant the manager or superior manager flag to an administrator."""

        try:
            target_role = Role(role)
        except ValueError as exc:
            raise ValidationError(f"Unknown role '{role}'") from exc

        backend = self._pool.backend(user.shard_key)
        current = require_user(await backend.get_user(user.user_id), backend.key, user.user_id)

        if not current.is_admin:
            raise ValidationError("Only administrators can hold management roles")
        if target_role is Role.SUPERIOR_MANAGER and not current.is_manager:
            raise ValidationError("Only managers can be promoted to superior manager")

        already = current.is_manager if target_role is Role.MANAGER else current.is_superior_manager
        if already:
            return current

        updated = require_user(
            await backend.update_user_flags(current.id, **{target_role.column: True}),
            backend.key,
            current.id,
        )
        logger.info("Promoted %s on shard %s to %s", current.id, backend.key, target_role.value)
        self._audit.record(
            backend.key,
            AuditAction.UPDATE,
            "users",
            current.id,
            actor=actor,
            old_data={target_role.column: False},
            new_data={target_role.column: True},
        )
        return updated


__all__ = ["HIERARCHY_TABLE", "HierarchyStore", "validate_assignment"]
