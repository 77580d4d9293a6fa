"""Single-user operations addressed by ``(shard key, user id)``."""

from __future__ import annotations

import logging
from typing import Optional

from .audit import AuditAction, AuditTrail
from .backends import ShardPool, require_user
from .errors import ValidationError
from .models import KycStatus, ShardUser, UserRef

logger = logging.getLogger("bankadmin.users")


class UserDirectory:
    def __init__(self, pool: ShardPool, *, audit: AuditTrail | None = None) -> None:
        self._pool = pool
        self._audit = audit or AuditTrail()

    async def get_user(self, user: UserRef) -> ShardUser:
        backend = self._pool.backend(user.shard_key)
        return require_user(await backend.get_user(user.user_id), backend.key, user.user_id)

    async def update_kyc_status(
        self,
        user: UserRef,
        status: KycStatus | str,
        *,
        actor: Optional[str] = None,
    ) -> ShardUser:
        """Change the KYC status of one user and return the updated record."""

        try:
            new_status = KycStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown KYC status '{status}'") from exc

        backend = self._pool.backend(user.shard_key)
        current = require_user(await backend.get_user(user.user_id), backend.key, user.user_id)
        if current.kyc_status == new_status.value:
            return current

        updated = require_user(
            await backend.update_user_flags(current.id, kyc_status=new_status.value),
            backend.key,
            current.id,
        )
        logger.info("KYC status of %s on shard %s set to %s", current.id, backend.key, new_status.value)
        self._audit.record(
            backend.key,
            AuditAction.UPDATE,
            "users",
            current.id,
            actor=actor,
            old_data={"kyc_status": current.kyc_status},
            new_data={"kyc_status": new_status.value},
        )
        return updated


__all__ = ["UserDirectory"]
