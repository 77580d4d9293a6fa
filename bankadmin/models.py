"""Domain models for users, hierarchy relationships, listings and balances."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .errors import ValidationError

ALL = "all"


class KycStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RelationshipType(str, Enum):
    """The two supported hierarchy edges."""

    MANAGER_TO_USER = "manager_to_user"
    SUPERIOR_MANAGER_TO_MANAGER = "superior_manager_to_manager"


class Role(str, Enum):
    """Role flags that can be granted through the hierarchy surface."""

    MANAGER = "manager"
    SUPERIOR_MANAGER = "superior_manager"

    @property
    def column(self) -> str:
        if self is Role.MANAGER:
            return "is_manager"
        return "is_superiormanager"


class AccessPolicy(str, Enum):
    """What an unresolvable hierarchy lookup grants a manager."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class BalanceOperation(str, Enum):
    SET = "set"
    ADD = "add"
    DEDUCT = "deduct"

    def apply(self, current: Decimal, amount: Decimal) -> Decimal:
        if self is BalanceOperation.SET:
            return amount
        if self is BalanceOperation.ADD:
            return current + amount
        return current - amount


@dataclass(frozen=True)
class CurrencySpec:
    """Where a currency is stored inside a shard."""

    name: str
    group: str
    column: str
    places: int

    def quantize(self, value: Decimal) -> Decimal:
        return value.quantize(Decimal(1).scaleb(-self.places))

    def format(self, value: Decimal) -> str:
        return f"{self.quantize(value):.{self.places}f}"


CURRENCIES: Dict[str, CurrencySpec] = {
    "usd": CurrencySpec("usd", "usd", "balance", 2),
    "eur": CurrencySpec("eur", "eur", "balance", 2),
    "cad": CurrencySpec("cad", "cad", "balance", 2),
    "btc": CurrencySpec("btc", "crypto", "btc_balance", 8),
    "eth": CurrencySpec("eth", "crypto", "eth_balance", 8),
    "usdt": CurrencySpec("usdt", "crypto", "usdt_balance", 6),
}

# Issue order for multi-currency updates; values are the shard table names.
BALANCE_GROUPS: Dict[str, str] = {
    "usd": "usd_balances",
    "eur": "euro_balances",
    "cad": "cad_balances",
    "crypto": "crypto_balances",
}

_CURRENCY_ALIASES = {"euro": "eur"}


def currency_spec(name: str) -> CurrencySpec:
    key = name.strip().lower()
    key = _CURRENCY_ALIASES.get(key, key)
    try:
        return CURRENCIES[key]
    except KeyError as exc:
        raise ValidationError(f"Unsupported currency '{name}'") from exc


def group_currencies(group: str) -> Tuple[CurrencySpec, ...]:
    return tuple(spec for spec in CURRENCIES.values() if spec.group == group)


def parse_amount(value: object, spec: CurrencySpec) -> Decimal:
    """Parse a user supplied amount into a quantized, finite decimal."""

    if isinstance(value, bool):
        raise ValidationError(f"Invalid {spec.name} amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid {spec.name} amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid {spec.name} amount: {value!r}")
    return spec.quantize(amount)


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _flag(value: object) -> bool:
    return bool(value) if value is not None else False


@dataclass(frozen=True)
class UserRef:
    """Globally unique address of a user: ids repeat across shards."""

    shard_key: str
    user_id: str


_USER_COLUMNS = {
    "id",
    "email",
    "full_name",
    "first_name",
    "last_name",
    "is_admin",
    "is_manager",
    "is_superiormanager",
    "kyc_status",
    "bank_origin",
    "created_at",
}

# Never echoed back to administrators.
_HIDDEN_COLUMNS = {"password"}


@dataclass(frozen=True)
class ShardUser:
    """A user row tagged with the shard it was read from."""

    id: str
    shard_key: str
    shard_name: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_admin: bool = False
    is_manager: bool = False
    is_superior_manager: bool = False
    kyc_status: Optional[str] = None
    bank_origin: Optional[str] = None
    created_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def holds_management_role(self) -> bool:
        return self.is_manager or self.is_superior_manager

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "Unknown"

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, shard_key: str, shard_name: str) -> "ShardUser":
        return cls(
            id=str(row["id"]),
            shard_key=shard_key,
            shard_name=shard_name,
            email=row.get("email"),
            full_name=row.get("full_name"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_admin=_flag(row.get("is_admin")),
            is_manager=_flag(row.get("is_manager")),
            is_superior_manager=_flag(row.get("is_superiormanager")),
            kyc_status=row.get("kyc_status"),
            bank_origin=row.get("bank_origin") or shard_name,
            created_at=_parse_timestamp(row.get("created_at")),
            extra={key: value for key, value in row.items() if key not in _USER_COLUMNS and key not in _HIDDEN_COLUMNS},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "email": self.email,
                "full_name": self.full_name,
                "first_name": self.first_name,
                "last_name": self.last_name,
                "is_admin": self.is_admin,
                "is_manager": self.is_manager,
                "is_superiormanager": self.is_superior_manager,
                "kyc_status": self.kyc_status,
                "bank_origin": self.bank_origin,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "bank_key": self.shard_key,
                "bank_name": self.shard_name,
            }
        )
        return payload


@dataclass(frozen=True)
class HierarchyRelationship:
    """A superior -> subordinate edge stored in one shard."""

    id: str
    shard_key: str
    superior_id: str
    subordinate_id: str
    relationship_type: RelationshipType
    superior_name: str = "Unknown"
    subordinate_name: str = "Unknown"
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, shard_key: str) -> "HierarchyRelationship":
        return cls(
            id=str(row["id"]),
            shard_key=shard_key,
            superior_id=str(row["superior_id"]),
            subordinate_id=str(row["subordinate_id"]),
            relationship_type=RelationshipType(row["relationship_type"]),
            superior_name=_joined_name(row.get("superior")) or row.get("superior_name") or "Unknown",
            subordinate_name=_joined_name(row.get("subordinate")) or row.get("subordinate_name") or "Unknown",
            created_at=_parse_timestamp(row.get("created_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_key": self.shard_key,
            "superior_id": self.superior_id,
            "subordinate_id": self.subordinate_id,
            "relationship_type": self.relationship_type.value,
            "superior_name": self.superior_name,
            "subordinate_name": self.subordinate_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _joined_name(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        return value.get("full_name") or value.get("email") or None
    return None


@dataclass(frozen=True)
class AccessScope:
    """Result of access resolution for one actor."""

    restricted: bool
    ids: FrozenSet[str] = frozenset()
    shard_key: Optional[str] = None

    @classmethod
    def unrestricted(cls) -> "AccessScope":
        return cls(restricted=False)

    @classmethod
    def restricted_to(cls, ids: Iterable[str], shard_key: str) -> "AccessScope":
        return cls(restricted=True, ids=frozenset(str(item) for item in ids), shard_key=shard_key)


@dataclass(frozen=True)
class ListRequest:
    """A logical "list users" request spanning every shard."""

    page: int = 1
    per_page: int = 18
    shard_filter: str = ALL
    kyc_filter: str = ALL
    search: str = ""

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError("page must be at least 1")
        if self.per_page < 1:
            raise ValidationError("perPage must be at least 1")


@dataclass(frozen=True)
class UserQuery:
    """The per-shard query derived from a :class:`ListRequest`."""

    offset: int
    limit: int
    kyc_status: Optional[str] = None
    search: Optional[str] = None
    ids: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class ShardPage:
    shard_key: str
    rows: Tuple[ShardUser, ...]
    total_count: int


@dataclass(frozen=True)
class Pagination:
    page: int
    per_page: int
    total_count: int
    total_pages: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "perPage": self.per_page,
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
        }


@dataclass(frozen=True)
class ResultEnvelope:
    rows: Tuple[ShardUser, ...]
    pagination: Pagination
    skipped_shards: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users": [row.to_dict() for row in self.rows],
            "pagination": self.pagination.to_dict(),
        }


@dataclass(frozen=True)
class BalanceUpdateResult:
    """Outcome reported to callers; failed groups only reach the logs."""

    success: bool
    attempted_groups: Tuple[str, ...] = ()
    failed_groups: Tuple[str, ...] = field(default=(), repr=False)


__all__ = [
    "ALL",
    "AccessPolicy",
    "AccessScope",
    "BALANCE_GROUPS",
    "BalanceOperation",
    "BalanceUpdateResult",
    "CURRENCIES",
    "CurrencySpec",
    "HierarchyRelationship",
    "KycStatus",
    "ListRequest",
    "Pagination",
    "RelationshipType",
    "ResultEnvelope",
    "Role",
    "ShardPage",
    "ShardUser",
    "UserQuery",
    "UserRef",
    "currency_spec",
    "group_currencies",
    "parse_amount",
]
