import pytest
from sqlalchemy import select

from app.tenantdesk.db import session_scope
from app.tenantdesk.errors import DENIAL_MESSAGE
from app.tenantdesk.models import AuditLog, Project

from conftest import Factory, login

JSON = {"Accept": "application/json"}


@pytest.fixture()
def world(app):
    with app.app_context(), session_scope(app) as s:
        make = Factory(s)
        mine = make.company("Mine")
        theirs = make.company("Theirs")
        own_project = make.project(mine, "Own")
        other_project = make.project(theirs, "Other")
        own_dash = make.dashboard(own_project, "Own sales")
        make.dashboard(other_project, "Other sales")
        make.user("admin@example.com", role=make.superadmin_role(), name="Admin")
        client_user = make.user("client@mine.test", role=make.client_role(), company=mine, name="Client")
        return {
            "client_role": make.client_role().id,
            "client_user": client_user.id,
            "mine": mine.id,
            "theirs": theirs.id,
            "own_project": own_project.id,
            "other_project": other_project.id,
            "own_dash": own_dash.id,
        }


@pytest.fixture()
def client(app, world):
    return app.test_client()


def _actions(app, module="sessions"):
    with app.app_context(), session_scope(app) as s:
        return [e.action for e in s.execute(select(AuditLog).where(AuditLog.module_name == module).order_by(AuditLog.id)).scalars()]


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json == {"ok": True, "db": True}
    assert client.get("/healthz").data == b"ok"


def test_anonymous_is_sent_to_login(client):
    r = client.get("/projects")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert "next=/projects" in r.headers["Location"]


def test_login_failure(client):
    r = client.post("/auth/login", json={"email": "client@mine.test", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    r = client.post("/auth/login", data={"email": "client@mine.test", "password": "nope"})
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_login_and_logout_are_audited(app, client):
    login(client, "client@mine.test")
    r = client.post("/auth/logout")
    assert r.status_code == 302
    assert _actions(app) == ["login", "logout"]


def test_login_lands_on_first_accessible_page(client):
    r = client.post("/auth/login", data={"email": "client@mine.test", "password": "pw"})
    assert r.headers["Location"].endswith("/dashboard")

    r = client.get("/", follow_redirects=False)
    assert r.headers["Location"].endswith("/dashboard")


def test_other_tenant_record_is_indistinguishable_from_missing(client, world):
    login(client, "client@mine.test")

    foreign = client.get(f"/projects/{world['other_project']}", headers=JSON)
    missing = client.get("/projects/999999", headers=JSON)
    assert foreign.status_code == missing.status_code == 404
    assert foreign.data == missing.data
    assert foreign.json == {"error": "not_found"}

    own = client.get(f"/projects/{world['own_project']}", headers=JSON)
    assert own.status_code == 200
    assert [d["name"] for d in own.json["dashboards"]] == ["Own sales"]


def test_browser_denial_flashes_and_redirects_the_same_way(client, world):
    login(client, "client@mine.test")

    foreign = client.get(f"/projects/{world['other_project']}")
    with client.session_transaction() as sess:
        flashes = sess.pop("_flashes", [])
    missing = client.get("/projects/999999")

    assert foreign.status_code == missing.status_code == 302
    assert foreign.headers["Location"] == missing.headers["Location"]
    assert foreign.headers["Location"].endswith("/dashboard")
    assert flashes == [("danger", DENIAL_MESSAGE)]


def test_denial_goes_back_only_to_same_host_referrer(client, world):
    login(client, "client@mine.test")
    path = f"/projects/{world['other_project']}"

    r = client.get(path, headers={"Referer": "http://localhost/bi-dashboards"})
    assert r.headers["Location"] == "http://localhost/bi-dashboards"

    r = client.get(path, headers={"Referer": "https://evil.example/phish"})
    assert r.headers["Location"].endswith("/dashboard")


def test_missing_permission_is_denied(client):
    login(client, "client@mine.test")
    r = client.get("/companies", headers=JSON)
    assert r.status_code == 404
    assert r.json == {"error": "not_found"}


def test_mutation_without_csrf_token_is_rejected(app, client, world):
    login(client, "admin@example.com")
    r = client.post("/projects/new", json={"name": "Sneaky", "company_id": world["mine"]})
    assert r.status_code == 400
    assert r.json["error"] == "csrf"
    with app.app_context(), session_scope(app) as s:
        assert s.execute(select(Project).where(Project.name == "Sneaky")).first() is None


def test_create_project_over_json(app, client, world):
    headers = login(client, "admin@example.com")
    r = client.post("/projects/new", json={"name": "Apollo", "company_id": world["mine"]}, headers=headers)
    assert r.status_code == 201
    assert r.json["name"] == "Apollo"
    assert _actions(app, "projects") == ["create"]

    listing = client.get("/projects?q=apol", headers=JSON)
    assert [p["name"] for p in listing.json["items"]] == ["Apollo"]


def test_validation_failure_is_422(client, world):
    headers = login(client, "admin@example.com")
    r = client.post("/projects/new", json={"name": "  ", "company_id": world["mine"]}, headers=headers)
    assert r.status_code == 422
    assert r.json["error"] == "validation_failed"
    assert r.json["errors"]


def test_company_with_projects_cannot_be_deleted(client, world):
    headers = login(client, "admin@example.com")
    r = client.post(f"/companies/{world['mine']}/delete", json={}, headers=headers)
    assert r.status_code == 409
    assert r.json["error"] == "has_active_children"


def test_client_sees_only_own_bi_dashboards(client, world):
    login(client, "client@mine.test")
    r = client.get("/bi-dashboards", headers=JSON)
    assert r.status_code == 200
    assert [p["name"] for p in r.json["projects"]] == ["Own"]
    assert r.json["selected_project_id"] == world["own_project"]
    assert r.json["selected_dashboard"]["id"] == world["own_dash"]

    r = client.get(f"/bi-dashboards?project_id={world['other_project']}", headers=JSON)
    assert r.json["selected_project_id"] is None
    assert r.json["dashboards"] == []


def test_profile_update_requires_current_password(client):
    headers = login(client, "client@mine.test")
    r = client.get("/auth/profile")
    assert r.json["email"] == "client@mine.test"
    assert r.json["company"] == "Mine"

    r = client.post("/auth/profile", json={"password": "newpass1"}, headers=headers)
    assert r.status_code == 422

    r = client.post(
        "/auth/profile",
        json={"name": "Renamed", "password": "newpass1", "current_password": "pw"},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json["name"] == "Renamed"


def test_home_counts_what_the_actor_sees(client):
    login(client, "admin@example.com")
    r = client.get("/dashboard", headers=JSON)
    assert r.status_code == 200
    assert r.json["projects_count"] == 2
    assert r.json["dashboards_count"] == 2
    assert r.json["users_count"] == 2
    assert r.json["audit_logs_count"] == 1
    assert r.json["recent_logs"][0]["action"] == "login"


def test_sidebar_lists_only_own_projects(client):
    login(client, "client@mine.test")
    r = client.get("/projects/sidebar", headers=JSON)
    assert [p["name"] for p in r.json["items"]] == ["Own"]


def test_deleted_project_moves_to_the_trash_view(client, world):
    headers = login(client, "admin@example.com")
    r = client.post(f"/projects/{world['own_project']}/delete", json={}, headers=headers)
    assert r.status_code == 200
    assert r.json["discarded_at"] is not None

    kept = client.get("/projects", headers=JSON)
    trash = client.get("/projects?discarded=1", headers=JSON)
    assert [p["name"] for p in kept.json["items"]] == ["Other"]
    assert [p["name"] for p in trash.json["items"]] == ["Own"]

    r = client.post(f"/projects/{world['own_project']}/restore", json={}, headers=headers)
    assert r.status_code == 200
    assert r.json["discarded_at"] is None


def test_audit_log_listing_filters(client):
    headers = login(client, "admin@example.com")
    client.post("/companies/new", json={"name": "Initech"}, headers=headers)

    r = client.get("/audit-logs?action=create", headers=JSON)
    assert r.status_code == 200
    assert [e["summary"] for e in r.json["items"]] == ["Created company: Initech"]
    entry_id = r.json["items"][0]["id"]

    detail = client.get(f"/audit-logs/{entry_id}", headers=JSON)
    assert detail.json["data_after"]["name"] == "Initech"

    r = client.get("/audit-logs?date_from=yesterday", headers=JSON)
    assert r.status_code == 422


def test_create_user_from_a_browser_form(client, world):
    headers = login(client, "admin@example.com")
    form = {
        "name": "New Client",
        "email": "new@mine.test",
        "password": "secret123",
        "role_id": str(world["client_role"]),
        "company_id": str(world["mine"]),
        "csrf_token": headers["X-CSRF-Token"],
    }
    r = client.post("/user-management/users/new", data=form)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/user-management/users")

    r = client.get("/user-management/users?q=new@", headers=JSON)
    assert [u["email"] for u in r.json["items"]] == ["new@mine.test"]


def test_company_membership_listing(client, world):
    login(client, "admin@example.com")
    r = client.get(f"/companies/{world['mine']}/users", headers=JSON)
    assert r.status_code == 200
    assert [u["id"] for u in r.json["assigned"]] == [world["client_user"]]
    assert r.json["available"] == []


def test_permission_catalog_is_grouped(client):
    login(client, "admin@example.com")
    r = client.get("/user-management/roles/permissions", headers=JSON)
    names = [section["name"] for section in r.json["sections"]]
    assert "User Management" in names
    assert "Project Management" in names


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    from app.tenantdesk import create_app

    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()
