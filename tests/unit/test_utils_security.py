import types
import sys
from fastapi import FastAPI, Depends
from fastapi.testclient import TestClient

from booking_backend.utils.security import get_current_user, require_user, COOKIE_NAME


def _make_app():
    app = FastAPI()

    @app.get("/me")
    def me(user=Depends(get_current_user)):
        return user

    @app.get("/private")
    def private(user=Depends(require_user)):
        return {"id": user["id"]}

    return app


def test_get_current_user_bearer_success(monkeypatch):
    fake_auth = types.SimpleNamespace(
        get_user_from_token=lambda token: {"id": "u1", "email": "a@b", "role": "user", "token": token}
    )
    monkeypatch.setitem(sys.modules, "booking_backend.auth.service", fake_auth)

    client = TestClient(_make_app())
    r = client.get("/me", headers={"Authorization": "Bearer tok-123"})
    assert r.status_code == 200
    assert r.json()["token"] == "tok-123"


def test_get_current_user_cookie_fallback(monkeypatch):
    fake_auth = types.SimpleNamespace(get_user_from_token=lambda token: {"id": "u1", "token": token})
    monkeypatch.setitem(sys.modules, "booking_backend.auth.service", fake_auth)

    client = TestClient(_make_app())
    client.cookies.set(COOKIE_NAME, "cookie-token")
    r = client.get("/private")
    assert r.status_code == 200
    assert r.json() == {"id": "u1"}


def test_get_current_user_missing_token_401():
    client = TestClient(_make_app())
    r = client.get("/me")
    assert r.status_code == 401
    assert "Non authentifié" in r.text


def test_get_current_user_missing_id_401(monkeypatch):
    fake_auth = types.SimpleNamespace(get_user_from_token=lambda token: {"email": "x@y"})
    monkeypatch.setitem(sys.modules, "booking_backend.auth.service", fake_auth)

    client = TestClient(_make_app())
    r = client.get("/me", headers={"Authorization": "Bearer tok"})
    assert r.status_code == 401
    assert "Session expirée" in r.text


def test_get_current_user_rejected_token_401(monkeypatch):
    def _boom(token):
        raise RuntimeError("invalid JWT")
    monkeypatch.setitem(sys.modules, "booking_backend.auth.service", types.SimpleNamespace(get_user_from_token=_boom))

    client = TestClient(_make_app())
    r = client.get("/me", headers={"Authorization": "Bearer expired"})
    assert r.status_code == 401


def test_auth_service_normalizes_supabase_user(monkeypatch):
    from booking_backend.auth import service as auth_service
    monkeypatch.setattr(
        auth_service,
        "_repo_get_user_from_token",
        lambda token: {"id": "u9", "email": "p@h.io", "user_metadata": {"role": "PARTNER"}},
    )
    user = auth_service.get_user_from_token("tok")
    assert user == {"id": "u9", "email": "p@h.io", "metadata": {"role": "PARTNER"}, "role": "partner", "token": "tok"}
    assert auth_service.determine_role({"role": "root"}) == "user"
