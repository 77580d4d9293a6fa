"""Operator authentication for the administration API.

``BANKADMIN_API_TOKENS`` holds comma separated entries. An entry is either a
bare token or ``operator:token``; the operator name is what the audit trail
records when a request carries no ``X-Actor-Id`` header.
"""
from __future__ import annotations

import os
import secrets
from typing import Dict, Iterable, List, Mapping, Optional

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

TOKENS_ENV = "BANKADMIN_API_TOKENS"
DEFAULT_OPERATOR = "operator"


def parse_token_entries(entries: Iterable[str]) -> Dict[str, str]:
    """Map each configured token to the operator it identifies."""

    operators: Dict[str, str] = {}
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        name, separator, token = entry.partition(":")
        if not separator:
            name, token = DEFAULT_OPERATOR, entry
        name, token = name.strip(), token.strip()
        if not name or not token:
            raise ValueError(f"Malformed API token entry for operator '{name or '?'}'")
        operators[token] = name
    return operators


class TokenAuth:
    """Bearer token check that resolves the calling operator."""

    def __init__(self, tokens: Iterable[str]):
        self._operators = parse_token_entries(tokens)
        if not self._operators:
            raise ValueError("At least one API token must be provided")
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> str:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        provided = credentials.credentials.encode("utf-8")
        operator: Optional[str] = None
        for token, name in self._operators.items():
            if secrets.compare_digest(provided, token.encode("utf-8")):
                operator = name
        if operator is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")

        request.state.operator = operator
        return operator


def load_tokens_from_env(environ: Mapping[str, str] | None = None) -> List[str]:
    env = os.environ if environ is None else environ
    raw = env.get(TOKENS_ENV, "")
    return [token.strip() for token in raw.split(",") if token.strip()]


def request_operator(request: Request) -> Optional[str]:
    return getattr(request.state, "operator", None)


__all__ = [
    "DEFAULT_OPERATOR",
    "TOKENS_ENV",
    "TokenAuth",
    "load_tokens_from_env",
    "parse_token_entries",
    "request_operator",
]
