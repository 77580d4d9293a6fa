"""SQLite-backed storage for a single bank shard."""
from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import NotFound, ValidationError
from .models import (
    BALANCE_GROUPS,
    CURRENCIES,
    BalanceOperation,
    KycStatus,
    RelationshipType,
    UserQuery,
    group_currencies,
)

# Hierarchy resolution stops after superior manager -> manager -> user.
MAX_HIERARCHY_DEPTH = 2

_SEARCH_COLUMNS = ("email", "full_name", "first_name", "last_name")
_ROLE_COLUMNS = "id, email, full_name, is_admin, is_manager, is_superiormanager, bank_origin, created_at"


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def collect_subordinates(
    edges: Iterable[Tuple[str, str]],
    root: str,
    *,
    max_depth: int = MAX_HIERARCHY_DEPTH,
) -> FrozenSet[str]:
    """Return every id reachable from ``root`` within ``max_depth`` hops."""

    children: Dict[str, List[str]] = {}
    for superior, subordinate in edges:
        children.setdefault(superior, []).append(subordinate)

    visited = {root}
    found: set[str] = set()
    frontier = [root]
    for _ in range(max_depth):
        next_frontier: List[str] = []
        for node in frontier:
            for child in children.get(node, ()):
                if child in visited:
                    continue
                visited.add(child)
                found.add(child)
                next_frontier.append(child)
        if not next_frontier:
            break
        frontier = next_frontier
    return frozenset(found)


class ShardDatabase:
    """Simple wrapper around SQLite holding one shard's users, hierarchy and balances."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    full_name TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    is_manager INTEGER NOT NULL DEFAULT 0,
                    is_superiormanager INTEGER NOT NULL DEFAULT 0,
                    kyc_status TEXT NOT NULL DEFAULT 'not_started',
                    bank_origin TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_hierarchy (
                    id TEXT PRIMARY KEY,
                    superior_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    subordinate_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    relationship_type TEXT NOT NULL CHECK (
                        relationship_type IN ('manager_to_user', 'superior_manager_to_manager')
                    ),
                    created_at TEXT NOT NULL,
                    UNIQUE (superior_id, subordinate_id)
                );

                CREATE TABLE IF NOT EXISTS usd_balances (
                    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    balance TEXT NOT NULL DEFAULT '0.00',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS euro_balances (
                    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    balance TEXT NOT NULL DEFAULT '0.00',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cad_balances (
                    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    balance TEXT NOT NULL DEFAULT '0.00',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS crypto_balances (
                    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    btc_balance TEXT NOT NULL DEFAULT '0.00000000',
                    eth_balance TEXT NOT NULL DEFAULT '0.00000000',
                    usdt_balance TEXT NOT NULL DEFAULT '0.000000',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at);
                CREATE INDEX IF NOT EXISTS idx_hierarchy_superior ON user_hierarchy(superior_id);
                """
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: Optional[str],
        *,
        full_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_admin: bool = False,
        is_manager: bool = False,
        is_superior_manager: bool = False,
        kyc_status: str = KycStatus.NOT_STARTED.value,
        bank_origin: Optional[str] = None,
        user_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, object]:
        """Insert a user row and return it."""

        status = KycStatus(kyc_status).value
        normalized_email = email.strip().lower() if email else None
        identifier = user_id or str(uuid.uuid4())
        timestamp = created_at or _current_timestamp()

        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, email, full_name, first_name, last_name, is_admin, is_manager,
                        is_superiormanager, kyc_status, bank_origin, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        identifier,
                        normalized_email,
                        full_name,
                        first_name,
                        last_name,
                        int(is_admin),
                        int(is_manager),
                        int(is_superior_manager),
                        status,
                        bank_origin,
                        _serialize_datetime(timestamp),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("A user with that id or email already exists") from exc

        user = self.get_user(identifier)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def get_user(self, user_id: str) -> Optional[Dict[str, object]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def query_users(self, query: UserQuery) -> Tuple[List[Dict[str, object]], int]:
        """Return one window of matching users plus the exact match count."""

        clauses: List[str] = []
        params: List[object] = []

        if query.kyc_status:
            clauses.append("kyc_status = ?")
            params.append(query.kyc_status)

        if query.search:
            pattern = f"%{_escape_like(query.search.lower())}%"
            clauses.append(
                "(" + " OR ".join(f"LOWER({column}) LIKE ? ESCAPE '\\'" for column in _SEARCH_COLUMNS) + ")"
            )
            params.extend([pattern] * len(_SEARCH_COLUMNS))

        if query.ids is not None:
            if not query.ids:
                return [], 0
            placeholders = ", ".join("?" for _ in query.ids)
            clauses.append(f"id IN ({placeholders})")
            params.extend(sorted(query.ids))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            count = conn.execute(f"SELECT COUNT(*) FROM users{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM users{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, query.limit, query.offset],
            ).fetchall()

        return [self._row_to_user(row) for row in rows], int(count)

    def list_users_with_role_flags(self, *, admins_only: bool = False) -> List[Dict[str, object]]:
        where = " WHERE is_admin = 1" if admins_only else ""
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {_ROLE_COLUMNS} FROM users{where} ORDER BY email").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_flags(self, user_id: str, **fields: object) -> Optional[Dict[str, object]]:
        """Update role flags and/or the KYC status of a user."""

        allowed = {
            "is_admin": "is_admin",
            "is_manager": "is_manager",
            "is_superiormanager": "is_superiormanager",
            "kyc_status": "kyc_status",
        }

        updates: List[str] = []
        values: List[object] = []
        for key, column in allowed.items():
            if key not in fields:
                continue
            value = fields[key]
            if value is None:
                continue
            if column == "kyc_status":
                value = KycStatus(str(value)).value
            else:
                value = int(bool(value))
            updates.append(f"{column} = ?")
            values.append(value)

        if not updates:
            return self.get_user(user_id)

        values.append(user_id)
        query = f"UPDATE users SET {', '.join(updates)} WHERE id = ?"

        with self._connect() as conn:
            cursor = conn.execute(query, values)
            if cursor.rowcount == 0:
                return None

        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------
    def insert_relationship(
        self,
        superior_id: str,
        subordinate_id: str,
        relationship_type: RelationshipType,
        *,
        relationship_id: Optional[str] = None,
    ) -> Dict[str, object]:
        relationship_id = relationship_id or str(uuid.uuid4())
        created_at = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO user_hierarchy (id, superior_id, subordinate_id, relationship_type, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (relationship_id, superior_id, subordinate_id, relationship_type.value, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("That hierarchy relationship already exists") from exc

        for row in self.list_relationships_joined():
            if row["id"] == relationship_id:
                return row
        raise RuntimeError("Failed to load relationship after creation")

    def delete_relationship(self, relationship_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM user_hierarchy WHERE id = ?", (relationship_id,))
            return cursor.rowcount > 0

    def list_relationships_joined(self) -> List[Dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT h.id, h.superior_id, h.subordinate_id, h.relationship_type, h.created_at,
                       COALESCE(sup.full_name, sup.email) AS superior_name,
                       COALESCE(sub.full_name, sub.email) AS subordinate_name
                  FROM user_hierarchy AS h
                  LEFT JOIN users AS sup ON sup.id = h.superior_id
                  LEFT JOIN users AS sub ON sub.id = h.subordinate_id
                 ORDER BY h.created_at DESC, h.id DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def hierarchy_edges(self) -> List[Tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT superior_id, subordinate_id FROM user_hierarchy").fetchall()
        return [(str(row["superior_id"]), str(row["subordinate_id"])) for row in rows]

    def get_accessible_user_ids(self, actor_id: str) -> FrozenSet[str]:
        return collect_subordinates(self.hierarchy_edges(), actor_id)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------
    def get_balances(self, user_id: str) -> Dict[str, Decimal]:
        balances = {name: Decimal(0) for name in CURRENCIES}
        with self._connect() as conn:
            for group, table in BALANCE_GROUPS.items():
                row = conn.execute(f"SELECT * FROM {table} WHERE user_id = ?", (user_id,)).fetchone()
                if row is None:
                    continue
                for spec in group_currencies(group):
                    balances[spec.name] = Decimal(str(row[spec.column]))
        return balances

    def update_balance(
        self,
        user_id: str,
        group: str,
        operation: BalanceOperation,
        amounts: Mapping[str, Decimal],
    ) -> Dict[str, Decimal]:
        """Apply ``operation`` to the given currencies of one balance group atomically."""

        table = BALANCE_GROUPS[group]
        specs = {spec.name: spec for spec in group_currencies(group)}
        unknown = set(amounts) - specs.keys()
        if unknown:
            raise ValidationError(f"Currencies {sorted(unknown)} do not belong to group '{group}'")

        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                raise NotFound(f"Unknown user '{user_id}'")

            row = conn.execute(f"SELECT * FROM {table} WHERE user_id = ?", (user_id,)).fetchone()
            current = {
                name: Decimal(str(row[spec.column])) if row is not None else Decimal(0)
                for name, spec in specs.items()
            }

            updated = dict(current)
            for name, amount in amounts.items():
                spec = specs[name]
                result = spec.quantize(operation.apply(current[name], amount))
                if result < 0:
                    raise ValidationError(f"{name} balance may not become negative")
                updated[name] = result

            columns = [specs[name].column for name in specs]
            values = [specs[name].format(updated[name]) for name in specs]
            if row is None:
                placeholders = ", ".join("?" for _ in range(len(columns) + 3))
                conn.execute(
                    f"INSERT INTO {table} (user_id, {', '.join(columns)}, created_at, updated_at)"
                    f" VALUES ({placeholders})",
                    [user_id, *values, now, now],
                )
            else:
                assignments = ", ".join(f"{column} = ?" for column in columns)
                conn.execute(
                    f"UPDATE {table} SET {assignments}, updated_at = ? WHERE user_id = ?",
                    [*values, now, user_id],
                )

        return updated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> Dict[str, object]:
        record: Dict[str, object] = dict(row)
        for column in ("is_admin", "is_manager", "is_superiormanager"):
            if column in record:
                record[column] = bool(record[column])
        return record


__all__ = ["MAX_HIERARCHY_DEPTH", "ShardDatabase", "collect_subordinates"]
