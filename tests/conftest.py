import pytest
from werkzeug.security import generate_password_hash

from app.tenantdesk import create_app, soft_delete
from app.tenantdesk.auth import _login_attempts
from app.tenantdesk.catalog import CLIENT_ROLE, SUPERADMIN_ROLE, seed_catalog
from app.tenantdesk.db import session_scope
from app.tenantdesk.models import Base, Company, Dashboard, Permission, Project, Role, User
from app.tenantdesk.rbac import AccessContext


@pytest.fixture(autouse=True)
def _reset_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


def _make_app(tmp_path, monkeypatch, tenancy_model="company"):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("TENANCY_MODEL", tenancy_model)

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_catalog(s)
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch)


@pytest.fixture()
def assignment_app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch, tenancy_model="dashboard_assignment")


def _open_session(app):
    with app.app_context():
        s = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            yield s
        finally:
            s.close()


@pytest.fixture()
def s(app):
    yield from _open_session(app)


@pytest.fixture()
def assignment_s(assignment_app):
    yield from _open_session(assignment_app)


class Factory:
    """Direct inserts for test setup; counters kept in step via soft_delete."""

    def __init__(self, s):
        self.s = s

    def perms(self, *codes):
        return list(self.s.query(Permission).filter(Permission.code.in_(codes)).all())

    def role(self, name, *codes):
        r = Role(name=name, permissions_version=1)
        r.permissions = self.perms(*codes)
        self.s.add(r)
        self.s.commit()
        return r

    def seeded_role(self, name):
        return self.s.query(Role).filter(Role.name == name).one()

    def superadmin_role(self):
        return self.seeded_role(SUPERADMIN_ROLE)

    def client_role(self):
        return self.seeded_role(CLIENT_ROLE)

    def company(self, name, status="active"):
        c = Company(name=name, status=status, users_count=0, projects_count=0)
        self.s.add(c)
        self.s.commit()
        return c

    def user(self, email, role=None, company=None, password="pw", name=None):
        u = User(
            email=email,
            name=name or email.split("@")[0].title(),
            password_hash=generate_password_hash(password),
            is_active=True,
            role_id=role.id if role else None,
            company_id=company.id if company else None,
        )
        self.s.add(u)
        soft_delete.count_created(self.s, u)
        self.s.commit()
        return u

    def project(self, company, name="Project"):
        p = Project(company_id=company.id, name=name, status="active")
        self.s.add(p)
        soft_delete.count_created(self.s, p)
        self.s.commit()
        return p

    def dashboard(self, project, name="Dashboard", users=(), position=0):
        d = Dashboard(project_id=project.id, name=name, embed_url="https://bi.example.com/embed/1", position=position)
        d.users = list(users)
        self.s.add(d)
        self.s.commit()
        return d


@pytest.fixture()
def make(s):
    return Factory(s)


@pytest.fixture()
def assignment_make(assignment_s):
    return Factory(assignment_s)


def ctx_for(user):
    return AccessContext(actor=user, ip="127.0.0.1", user_agent="pytest", request_id="test-req")


def login(client, email, password="pw"):
    r = client.post("/auth/login", data={"email": email, "password": password})
    assert r.status_code == 302
    with client.session_transaction() as sess:
        token = sess["csrf_token"]
    return {"X-CSRF-Token": token}
