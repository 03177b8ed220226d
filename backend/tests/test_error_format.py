from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_http_error_shape():
    res = client.get("/api/v1/does-not-exist")
    assert res.status_code == 404
    body = res.json()
    assert set(body.keys()) == {"detail", "code", "meta"}
    assert body["detail"] == "Not Found"
    assert body["code"] is None


def test_auth_error_shape():
    res = client.get("/api/v1/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid token"
