from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from bankadmin.security import TokenAuth, load_tokens_from_env, parse_token_entries


def _app(auth: TokenAuth) -> FastAPI:
    app = FastAPI()

    async def require_token(request: Request) -> str:
        return await auth(request)

    @app.get("/protected")
    async def protected(operator: str = Depends(require_token)) -> dict:
        return {"operator": operator}

    return app


def test_token_auth_accepts_any_configured_token() -> None:
    client = TestClient(_app(TokenAuth(["first", " treasury: second "])))

    assert client.get("/protected", headers={"Authorization": "Bearer second"}).json() == {"operator": "treasury"}
    assert client.get("/protected", headers={"Authorization": "Bearer first"}).json() == {"operator": "operator"}
    assert client.get("/protected", headers={"Authorization": "Bearer third"}).status_code == 403
    missing = client.get("/protected")
    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"


def test_token_auth_requires_tokens() -> None:
    with pytest.raises(ValueError):
        TokenAuth(["", "  "])


def test_token_entries_name_their_operator() -> None:
    assert parse_token_entries(["alpha", "ops-lead:beta", " "]) == {"alpha": "operator", "beta": "ops-lead"}
    with pytest.raises(ValueError):
        parse_token_entries(["ops-lead:"])
    with pytest.raises(ValueError):
        parse_token_entries([":orphan"])


def test_load_tokens_from_env() -> None:
    assert load_tokens_from_env({"BANKADMIN_API_TOKENS": " a, ,ops:b "}) == ["a", "ops:b"]
    assert load_tokens_from_env({}) == []
