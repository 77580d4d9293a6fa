"""Multi-currency balance reads and updates against a single shard.

An update touches up to four storage rows (usd, eur, cad and the shared crypto
row). Each group is written by its own call, in that order, and a failing
group does not stop the remaining ones. Nothing is rolled back and the caller
is told the orchestration succeeded; failed groups are only visible in the
``bankadmin.balances`` log.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from .audit import AuditAction, AuditTrail
from .backends import ShardPool
from .errors import NotFound, ShardUnavailable, ValidationError
from .models import (
    BALANCE_GROUPS,
    CURRENCIES,
    BalanceOperation,
    BalanceUpdateResult,
    currency_spec,
    parse_amount,
)

logger = logging.getLogger("bankadmin.balances")


def group_amounts(currencies: Mapping[str, object]) -> Dict[str, Dict[str, Decimal]]:
    """Validate raw currency amounts and split them into storage groups.

    Groups come back in issue order; groups with no currency present are left
    out. Raises :class:`ValidationError` for an empty map, an unsupported
    currency, an invalid amount or a currency given twice (``eur`` and its
    ``euro`` alias).
    """

    if not currencies:
        raise ValidationError("At least one currency amount is required")

    parsed: Dict[str, Decimal] = {}
    for raw_name, raw_value in currencies.items():
        spec = currency_spec(str(raw_name))
        if spec.name in parsed:
            raise ValidationError(f"Currency '{spec.name}' given more than once")
        parsed[spec.name] = parse_amount(raw_value, spec)

    grouped: Dict[str, Dict[str, Decimal]] = {}
    for group in BALANCE_GROUPS:
        members = {
            name: amount for name, amount in parsed.items() if CURRENCIES[name].group == group
        }
        if members:
            grouped[group] = members
    return grouped


class BalanceOrchestrator:
    def __init__(self, pool: ShardPool, *, audit: AuditTrail | None = None) -> None:
        self._pool = pool
        self._audit = audit or AuditTrail()

    async def get_balances(self, shard_key: str, user_id: str) -> Dict[str, str]:
        """All six balances of a user as fixed-precision strings, zero filled."""

        backend = self._pool.backend(shard_key)
        values = await backend.get_balances(user_id)
        return {
            name: spec.format(values.get(name, Decimal(0)))
            for name, spec in CURRENCIES.items()
        }

    async def update_balances(
        self,
        shard_key: str,
        user_id: str,
        operation: BalanceOperation | str,
        currencies: Mapping[str, object],
        *,
        actor: Optional[str] = None,
    ) -> BalanceUpdateResult:
        try:
            op = BalanceOperation(operation)
        except ValueError as exc:
            raise ValidationError(f"Unknown balance operation '{operation}'") from exc

        grouped = group_amounts(currencies)
        backend = self._pool.backend(shard_key)

        attempted = []
        failed = []
        for group, amounts in grouped.items():
            attempted.append(group)
            try:
                updated = await backend.update_balance(user_id, group, op, amounts)
            except (ShardUnavailable, ValidationError, NotFound) as exc:
                failed.append(group)
                logger.error(
                    "Balance update (%s) of %s for %s on shard %s failed: %s",
                    op.value,
                    group,
                    user_id,
                    backend.key,
                    exc,
                )
                continue

            self._audit.record(
                backend.key,
                AuditAction.UPDATE,
                BALANCE_GROUPS[group],
                user_id,
                actor=actor,
                new_data={name: CURRENCIES[name].format(updated[name]) for name in amounts},
            )

        if failed:
            logger.warning(
                "Balance update for %s on shard %s completed with failed groups: %s",
                user_id,
                backend.key,
                ", ".join(failed),
            )
        return BalanceUpdateResult(success=True, attempted_groups=tuple(attempted), failed_groups=tuple(failed))


__all__ = ["BalanceOrchestrator", "group_amounts"]
