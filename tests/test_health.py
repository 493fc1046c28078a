from fastapi.testclient import TestClient

from app.main import app


def test_health():
    app.state.services = None
    with TestClient(app) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}
        assert r.headers["X-Request-ID"]
    app.state.services = None


def test_request_id_is_echoed():
    app.state.services = None
    with TestClient(app) as c:
        r = c.get("/health", headers={"X-Request-ID": "req-123"})
        assert r.headers["X-Request-ID"] == "req-123"
    app.state.services = None
