import pytest

from freightdesk import auth
from freightdesk.auth import (
    Permission, SessionData, create_session_token, has_permission, parse_permissions, read_session_token,
)
from freightdesk.deps import settings
from freightdesk.errors import ValidationFailed
from freightdesk.models import Role


def session_for(username, role):
    return read_session_token(create_session_token(username, role))


def test_token_round_trip():
    s = session_for("admin", Role.ADMIN)
    assert s.username == "admin"
    assert s.role == Role.ADMIN


def test_expired_token_reads_as_no_session(monkeypatch):
    monkeypatch.setattr(settings, "SESSION_TTL_MINUTES", -5)
    token = create_session_token("admin", Role.ADMIN)
    assert read_session_token(token) is None


def test_tampered_token_reads_as_no_session():
    token = create_session_token("acme", Role.USER)
    assert read_session_token(token[:-2] + "xx") is None
    assert read_session_token("") is None
    assert read_session_token(None) is None


def test_parse_permissions_rejects_unknown_values():
    assert parse_permissions(["console", " console ", "", "import-invoice"]) == ["console", "import-invoice"]
    with pytest.raises(ValidationFailed):
        parse_permissions(["everything"])


def test_admin_passes_every_permission_check(db):
    s = session_for("admin", Role.ADMIN)
    assert all(has_permission(db, s, p) for p in Permission)


def test_agent_permission_comes_from_stored_list(db, make_agent):
    make_agent(permissions=["console"])
    s = session_for("sara", Role.SALES_AGENT)
    assert has_permission(db, s, Permission.CONSOLE)
    assert not has_permission(db, s, Permission.IMPORT_INVOICE)


def test_user_and_anonymous_have_no_permissions(db):
    assert not has_permission(db, session_for("acme", Role.USER), Permission.ORDERS)
    assert not has_permission(db, None, Permission.ORDERS)


# ---------- Login & routes ----------
def test_admin_login_sets_cookie_and_redirects(anon):
    r = anon.post("/login", data={"username": "admin", "password": "admin123"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/admin/dashboard"
    assert "httponly" in r.headers["set-cookie"].lower()


def test_user_and_agent_login(make_client, make_user, make_agent):
    make_user("bob", "pw1")
    make_agent(username="ali", password="pw2")
    client = make_client()
    r = client.post("/login", data={"username": "bob", "password": "pw1"}, follow_redirects=False)
    assert r.headers["location"] == "/user/dashboard"
    client = make_client()
    r = client.post("/login", data={"username": "ali", "password": "pw2"}, follow_redirects=False)
    assert r.headers["location"] == "/sales-agent/dashboard"


def test_bad_credentials_render_error(anon, make_user):
    make_user("bob", "pw1")
    r = anon.post("/login", data={"username": "bob", "password": "nope"})
    assert r.status_code == 200
    assert "Invalid username or password" in r.text
    r = anon.post("/login", data={"username": " ", "password": ""})
    assert "Username and password are required" in r.text


def test_root_redirects_to_login(anon):
    r = anon.get("/", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login"


def test_protected_pages_need_matching_role(anon, user):
    for path in ("/admin/dashboard", "/user/dashboard", "/sales-agent/dashboard"):
        r = anon.get(path, follow_redirects=False)
        assert r.headers["location"] == "/login"
    assert user.get("/admin/dashboard", follow_redirects=False).headers["location"] == "/login"
    assert user.get("/user/dashboard", follow_redirects=False).status_code == 200


def test_logged_in_user_is_sent_from_login_to_dashboard(admin):
    r = admin.get("/login", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/admin/dashboard"


def test_logout_clears_cookie(admin):
    r = admin.post("/logout", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    assert 'session=""' in r.headers["set-cookie"] or "Max-Age=0" in r.headers["set-cookie"]


def test_api_is_not_redirected(anon):
    r = anon.get("/api/consoles")
    assert r.status_code == 200
    assert r.json() == {"error": "Unauthorized", "kind": "auth"}


def test_session_is_rechecked_each_call(admin, monkeypatch):
    assert "consoles" in admin.get("/api/consoles").json()
    monkeypatch.setattr(auth.settings, "SESSION_SECRET", "rotated")
    assert admin.get("/api/consoles").json()["error"] == "Unauthorized"


def test_session_data_shape():
    s = session_for("acme", Role.USER)
    assert isinstance(s, SessionData)
    assert s.expires is not None
