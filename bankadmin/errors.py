"""Error taxonomy shared by the shard-facing components."""
from __future__ import annotations


class BankAdminError(RuntimeError):
    """Base class for errors raised by the administration core."""


class ValidationError(BankAdminError):
    """Raised when a request violates hierarchy or balance invariants."""


class NotFound(BankAdminError):
    """Raised for unknown shard keys, users or relationships."""


class ShardUnavailable(BankAdminError):
    """Raised when a single shard cannot answer a request."""

    def __init__(self, shard_key: str, message: str) -> None:
        super().__init__(f"{shard_key}: {message}")
        self.shard_key = shard_key
        self.reason = message


__all__ = ["BankAdminError", "NotFound", "ShardUnavailable", "ValidationError"]
