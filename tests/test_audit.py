from datetime import datetime, timedelta

import pytest
from sqlalchemy import delete, select, update

from app.tenantdesk import audit
from app.tenantdesk.audit import AuditFilters, find, sanitize, snapshot
from app.tenantdesk.errors import AuditLogImmutable, AuditWriteFailed, ValidationFailed
from app.tenantdesk.models import AuditLog, Project, User
from app.tenantdesk.modules.projects.service import create_project, discard_project, update_project
from app.tenantdesk.modules.user_management.service import create_user

from conftest import ctx_for


@pytest.fixture()
def root(make):
    return make.user("root@example.test", role=make.superadmin_role(), name="Root Admin")


def test_entries_are_immutable(s, root):
    entry = audit.record(s, action="login", module="sessions", actor=root)

    entry.summary = "rewritten"
    with pytest.raises(AuditLogImmutable):
        s.flush()
    s.rollback()

    s.delete(s.get(AuditLog, entry.id))
    with pytest.raises(AuditLogImmutable):
        s.flush()
    s.rollback()
    assert s.get(AuditLog, entry.id) is not None


def test_entry_requires_committed_mutation(s, make, root):
    company = make.company("Acme")
    s.add(Project(company_id=company.id, name="Uncommitted"))
    with pytest.raises(RuntimeError):
        audit.record(s, action="create", module="projects", actor=root)
    s.rollback()


def test_unknown_action_is_rejected(s, root):
    with pytest.raises(ValidationFailed):
        audit.record(s, action="approve", module="projects", actor=root)


def test_create_writes_entry_after_commit(s, make, root):
    company = make.company("Acme")
    project = create_project(s, ctx_for(root), {"name": "Apollo", "company_id": company.id})

    entry = s.execute(select(AuditLog).where(AuditLog.module_name == "projects")).scalar_one()
    assert entry.action == "create"
    assert entry.summary == "Created project: Apollo"
    assert entry.auditable_type == "Project"
    assert entry.auditable_id == str(project.id)
    assert entry.data_after["name"] == "Apollo"
    assert entry.user_name == "Root Admin"
    assert entry.ip_address == "127.0.0.1"
    assert entry.request_id == "test-req"


def test_update_captures_before_and_after(s, make, root):
    company = make.company("Acme")
    project = make.project(company, "Old name")
    update_project(s, ctx_for(root), project.id, {"name": "New name"})

    entry = s.execute(select(AuditLog).where(AuditLog.action == "update")).scalar_one()
    assert entry.data_before["name"] == "Old name"
    assert entry.data_after["name"] == "New name"


def test_delete_snapshot_is_taken_before_discard(s, make, root):
    company = make.company("Acme")
    project = make.project(company, "Doomed")
    discard_project(s, ctx_for(root), project.id)

    entry = s.execute(select(AuditLog).where(AuditLog.action == "delete")).scalar_one()
    assert entry.data_before["discarded_at"] is None
    assert s.get(Project, project.id).discarded_at is not None


def test_credentials_never_reach_the_ledger(s, make, root):
    company = make.company("Acme")
    user = create_user(
        s,
        ctx_for(root),
        {
            "name": "New Person",
            "email": "new@acme.test",
            "password": "secret123",
            "role_id": make.client_role().id,
            "company_id": company.id,
        },
    )
    assert "password_hash" not in snapshot(user)

    entry = s.execute(select(AuditLog).where(AuditLog.module_name == "user_management")).scalar_one()
    assert "password_hash" not in entry.data_after
    assert entry.data_after["email"] == "new@acme.test"


def test_sanitize_works_at_any_depth():
    doc = {"a": {"password": "x", "b": [{"token": "t", "keep": 1}]}, "Password_Hash": "h"}
    assert sanitize(doc) == {"a": {"b": [{"keep": 1}]}}


def test_failed_audit_write_never_undoes_the_mutation(s, make, root, monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise AuditWriteFailed("disk full")

    monkeypatch.setattr(audit, "record", boom)
    company = make.company("Acme")
    with caplog.at_level("ERROR", logger="app.tenantdesk.audit"):
        project = create_project(s, ctx_for(root), {"name": "Survivor", "company_id": company.id})

    assert s.get(Project, project.id) is not None
    assert s.execute(select(AuditLog)).first() is None
    assert "Audit write failed" in caplog.text


def test_entries_survive_actor_deletion(s, make, root):
    company = make.company("Acme")
    actor = make.user("gone@acme.test", role=make.client_role(), company=company, name="Gone Person")
    audit.record(s, action="login", module="sessions", actor=actor, target=actor)

    s.execute(delete(User).where(User.id == actor.id))
    s.commit()
    s.expire_all()

    entry = s.execute(select(AuditLog)).scalar_one()
    assert entry.user_id is None
    assert entry.user_name == "Gone Person"


def test_find_orders_newest_first_with_id_tiebreak(s, root):
    base = datetime(2026, 1, 1, 12, 0, 0)
    for i in range(3):
        audit.record(s, action="login", module="sessions", actor=root, summary=f"#{i}")
    # Two entries share a timestamp; the later insert wins the tie.
    s.execute(update(AuditLog.__table__).values(created_at=base))
    s.execute(
        update(AuditLog.__table__).where(AuditLog.__table__.c.summary == "#0").values(created_at=base - timedelta(days=1))
    )
    s.commit()

    page = find(s, ctx_for(root))
    assert [e.summary for e in page.items] == ["#2", "#1", "#0"]


def test_find_filters_and_scope(s, make, root):
    company = make.company("Acme")
    viewer = make.user("v@acme.test", role=make.role("Logs", "audit_logs.index"), company=company)
    audit.record(s, action="login", module="sessions", actor=viewer)
    audit.record(s, action="create", module="projects", actor=viewer)
    audit.record(s, action="create", module="projects", actor=root)

    mine = find(s, ctx_for(viewer))
    assert mine.total == 2
    assert {e.user_id for e in mine.items} == {viewer.id}

    everything = find(s, ctx_for(root), AuditFilters(action="create"))
    assert everything.total == 2
    sessions_only = find(s, ctx_for(root), AuditFilters(module="sessions"))
    assert [e.action for e in sessions_only.items] == ["login"]
    by_actor = find(s, ctx_for(root), AuditFilters(actor_id=root.id))
    assert by_actor.total == 1

    today = datetime.utcnow().date()
    in_range = find(s, ctx_for(root), AuditFilters(date_from=today, date_to=today))
    assert in_range.total == 3
    future = find(s, ctx_for(root), AuditFilters(date_from=today + timedelta(days=1)))
    assert future.total == 0


def test_filters_reject_bad_dates():
    with pytest.raises(ValidationFailed):
        AuditFilters.from_args({"date_from": "31/12/2026"})
    f = AuditFilters.from_args({"action": " create ", "actor_id": "7", "date_to": "2026-02-01"})
    assert f.action == "create"
    assert f.actor_id == 7
    assert f.date_to.isoformat() == "2026-02-01"
