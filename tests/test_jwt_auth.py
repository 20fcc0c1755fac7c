import jwt
from fastapi.testclient import TestClient

from chunkdrop.config import settings
from chunkdrop.main import app

JWT_SECRET = "chunkdrop-test-secret-0123456789abcdef"


def _use_jwt(monkeypatch, mode: str = "jwt") -> None:
    monkeypatch.setattr(settings, "auth_mode", mode)
    monkeypatch.setattr(settings, "jwt_secret", JWT_SECRET)
    monkeypatch.setattr(settings, "jwt_algorithm", "HS256")
    monkeypatch.setattr(settings, "jwt_audience", "")
    monkeypatch.setattr(settings, "jwt_issuer", "")


def test_jwt_mode_accepts_valid_bearer_token(monkeypatch) -> None:
    _use_jwt(monkeypatch)
    token = jwt.encode({"sub": "jwt-user"}, JWT_SECRET, algorithm="HS256")
    with TestClient(app) as client:
        response = client.post("/upload/init", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200, response.text
        upload_id = response.json()["uploadId"]

        status = client.get(f"/upload/{upload_id}/status", headers={"Authorization": f"Bearer {token}"})
        assert status.status_code == 200


def test_jwt_mode_rejects_invalid_token(monkeypatch) -> None:
    _use_jwt(monkeypatch)
    with TestClient(app) as client:
        response = client.get("/files", headers={"Authorization": "Bearer bad.token.value"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Unauthorized: Invalid or expired token"
        assert response.json()["error_code"] == "unauthenticated"


def test_jwt_mode_ignores_api_keys(monkeypatch) -> None:
    _use_jwt(monkeypatch)
    with TestClient(app) as client:
        response = client.get("/files", headers={"X-API-Key": "dev-key"})
        assert response.status_code == 401


def test_jwt_claims_fall_back_to_uid(monkeypatch) -> None:
    _use_jwt(monkeypatch)
    token = jwt.encode({"uid": "uid-user"}, JWT_SECRET, algorithm="HS256")
    with TestClient(app) as client:
        response = client.get("/files", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json() == {"files": []}


def test_hybrid_mode_keeps_api_key_fallback(monkeypatch) -> None:
    _use_jwt(monkeypatch, mode="hybrid")
    token = jwt.encode({"sub": "jwt-user"}, JWT_SECRET, algorithm="HS256")
    with TestClient(app) as client:
        assert client.get("/files", headers={"X-API-Key": "dev-key"}).status_code == 200
        assert client.get("/files", headers={"Authorization": f"Bearer {token}"}).status_code == 200
