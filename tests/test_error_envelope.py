"""Error mapping for failures that cannot be provoked through normal requests."""

import pytest
from fastapi.testclient import TestClient

from authkit.app import app
from authkit.service.errors import UnavailableError
from authkit.service.runtime import get_runtime
from authkit.storage.errors import CacheUnavailable, StorageUnavailable


@pytest.fixture
def client():
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def _register(client):
    return client.post(
        "/auth/register",
        json={"email": "e@example.com", "password": "correct-horse", "name": "E"},
    )


def test_store_outage_is_503_with_retry_after(client, monkeypatch):
    def down(*args, **kwargs):
        raise StorageUnavailable("connection refused")

    monkeypatch.setattr(get_runtime().store, "get_user_by_email", down)
    response = _register(client)
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    error = response.json()["error"]
    assert error["code"] == "unavailable"
    assert "connection refused" not in response.text


def test_cache_outage_on_logout_is_503(client, monkeypatch):
    token = _register(client).json()["data"]["token"]

    async def down(*args, **kwargs):
        raise CacheUnavailable("timeout")

    cache = get_runtime().cache
    monkeypatch.setattr(cache, "delete", down)
    monkeypatch.setattr(cache, "get", down)
    response = client.post("/auth/logout", headers={"X-Auth-Token": token})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "unavailable"


def test_login_survives_cache_outage(client, monkeypatch):
    _register(client)

    async def down(*args, **kwargs):
        raise CacheUnavailable("timeout")

    monkeypatch.setattr(get_runtime().cache, "set", down)
    response = client.post(
        "/auth/login", json={"email": "e@example.com", "password": "correct-horse"}
    )
    assert response.status_code == 200


def test_unexpected_exception_is_generic_500(client, monkeypatch):
    def boom(*args, **kwargs):
        raise KeyError("internal detail")

    monkeypatch.setattr(get_runtime().auth, "get_profile", boom)
    token = _register(client).json()["data"]["token"]
    response = client.get("/api/profile", headers={"X-Auth-Token": token})
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "server_error"
    assert "internal detail" not in response.text


def test_service_error_details_survive_for_non_auth_errors(client, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise UnavailableError("provider down", detail={"provider": "github"})

    monkeypatch.setattr(get_runtime().auth, "logout_all", unavailable)
    token = _register(client).json()["data"]["token"]
    response = client.post("/auth/logout/all", headers={"X-Auth-Token": token})
    assert response.status_code == 503
    assert response.json()["error"]["details"] == {"provider": "github"}
