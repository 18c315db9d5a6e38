import importlib

import pytest

import main
from api_client import ApiError
from conftest import FakeApi, make_exam


class UnreachableApi(FakeApi):
    def get(self, endpoint):
        raise ApiError("Backend unreachable: refused", code="network")

    def login(self, email, password):
        raise ApiError("Backend unreachable: refused", code="network")


class BackendUp(FakeApi):
    def get(self, endpoint):
        raise ApiError("Route not found", status=404)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setitem(main.app.config, "SESSION_COOKIE_SECURE", False)
    main.app.testing = True
    return main.app.test_client()


def _use_api(monkeypatch, api):
    made = []

    def fake_make_api(token=None):
        made.append(token)
        return api

    monkeypatch.setattr(main, "make_api", fake_make_api)
    return made


def test_exam_pages_require_login(client, monkeypatch):
    _use_api(monkeypatch, FakeApi())
    monkeypatch.setattr(main, "AUTH_REQUIRED", True)
    resp = client.get("/exams")
    assert resp.status_code == 302
    assert "/login?next=/exams" in resp.headers["Location"]


def test_login_stores_token_and_user(client, monkeypatch):
    api = FakeApi()
    made = _use_api(monkeypatch, api)

    resp = client.post("/login", data={"email": "Sam@Example.com", "password": "pw", "next": "/exams"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/exams")
    assert ("login", "sam@example.com", "pw") in api.calls

    with client.session_transaction() as sess:
        assert sess["token"] == "tok-1"
        assert sess["user"] == {"id": "s1", "name": "Sam", "email": "sam@example.com", "role": "student"}

    page = client.get("/exams")
    assert page.status_code == 200
    assert "Midterm" in page.get_data(as_text=True)
    assert made[-1] == "tok-1"


def test_login_falls_back_to_me_for_user(client, monkeypatch):
    class TokenOnly(FakeApi):
        def login(self, email, password):
            self._call("login", email, password)
            return {"token": "tok-2"}

    api = TokenOnly()
    made = _use_api(monkeypatch, api)
    resp = client.post("/login", data={"email": "sam@example.com", "password": "pw"})
    assert resp.status_code == 302
    assert "me" in api.names()
    assert "tok-2" in made
    with client.session_transaction() as sess:
        assert sess["user"]["id"] == "s1"


def test_login_failure_shows_backend_message(client, monkeypatch):
    api = FakeApi()
    api.fail["login"] = ApiError("Invalid credentials", status=400)
    _use_api(monkeypatch, api)

    resp = client.post("/login", data={"email": "sam@example.com", "password": "nope"})
    assert resp.status_code == 200
    assert "Invalid credentials" in resp.get_data(as_text=True)
    with client.session_transaction() as sess:
        assert "token" not in sess


def test_login_when_backend_down(client, monkeypatch):
    _use_api(monkeypatch, UnreachableApi())
    resp = client.post("/login", data={"email": "sam@example.com", "password": "pw"})
    assert "The exam service is unavailable" in resp.get_data(as_text=True)


def test_next_url_cannot_leave_site():
    assert main._sanitize_next("https://evil.example/exams") == "/exams"
    assert main._sanitize_next("/login") == "/exams"
    assert main._sanitize_next("/exams/take?x=1") == "/exams/take?x=1"


def test_logout_drops_attempt(client, monkeypatch):
    # real countdown thread here, so keep the window open
    _use_api(monkeypatch, FakeApi([make_exam(endTime="2999-01-01T00:00:00Z")]))
    client.post("/login", data={"email": "sam@example.com", "password": "pw"})
    client.post("/exams/e1/start")
    ctl = main.exam_bp.attempts.get("s1")
    assert ctl is not None and ctl.is_active

    resp = client.get("/logout")
    assert resp.headers["Location"].endswith("/login")
    assert not ctl.is_active
    assert main.exam_bp.attempts.get("s1") is None


def test_logout_forgets_monitor(client, monkeypatch):
    _use_api(monkeypatch, FakeApi([make_exam(endTime="2999-01-01T00:00:00Z")]))
    client.post("/login", data={"email": "sam@example.com", "password": "pw"})
    client.post("/exams/e1/start")
    client.post("/exams/take/event", json={"type": "visibilitychange", "visible": False})
    assert "s1" in main.exam_bp.monitors

    client.get("/logout")
    assert "s1" not in main.exam_bp.monitors


def test_healthz(client, monkeypatch):
    _use_api(monkeypatch, BackendUp())
    assert client.get("/healthz").status_code == 200
    _use_api(monkeypatch, UnreachableApi())
    assert client.get("/healthz").status_code == 503


def test_render_rich_markdown(monkeypatch):
    monkeypatch.setattr(main, "ALLOW_RAW_HTML", False)
    html = str(main.render_rich("Answer **all** questions"))
    assert "<strong>all</strong>" in html
    assert str(main.render_rich(None)) == ""


@pytest.fixture
def portal(monkeypatch):
    monkeypatch.setenv("BASE_PATH", "/portal")
    monkeypatch.setenv("SESSION_COOKIE_SECURE", "0")
    importlib.reload(main)
    main.app.testing = True
    yield main.app.test_client()
    monkeypatch.undo()
    importlib.reload(main)


def test_base_path_sign_in_flow(portal, monkeypatch):
    _use_api(monkeypatch, FakeApi())

    resp = portal.get("/portal/exams")
    assert resp.status_code == 302
    assert "/portal/login?next=/portal/exams" in resp.headers["Location"]
    assert portal.get("/portal/login?next=/portal/exams").status_code == 200

    resp = portal.post("/portal/login", data={"email": "sam@example.com", "password": "pw", "next": "/portal/exams"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/portal/exams")
    assert "Midterm" in portal.get("/portal/exams").get_data(as_text=True)
    assert portal.get("/portal/").headers["Location"].endswith("/portal/exams")

    resp = portal.get("/portal/logout")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/portal/login")


def test_base_path_health_and_sanitize(portal, monkeypatch):
    _use_api(monkeypatch, BackendUp())
    assert portal.get("/portal/healthz").status_code == 200
    assert main._sanitize_next("/portal/login") == "/portal/exams"
    assert main._sanitize_next("https://evil.example/") == "/portal/exams"
