import threading

import pytest
from sqlalchemy import select, update

from app.tenantdesk import soft_delete
from app.tenantdesk.errors import HasActiveChildren
from app.tenantdesk.models import Company, Project, Role
from app.tenantdesk.modules.companies.service import discard_company
from app.tenantdesk.modules.user_management.service import change_user_company, delete_role

from conftest import ctx_for


def _kept_projects(s, company):
    return len(
        s.execute(select(Project.id).where(Project.company_id == company.id, Project.discarded_at.is_(None))).all()
    )


def _fresh_count(s, company, column="projects_count"):
    return s.execute(select(getattr(Company, column)).where(Company.id == company.id)).scalar_one()


def test_discard_and_restore_move_counter_by_one(s, make):
    company = make.company("Acme")
    projects = [make.project(company, f"P{i}") for i in range(3)]
    assert _fresh_count(s, company) == 3

    assert soft_delete.discard(s, projects[0])
    s.commit()
    assert _fresh_count(s, company) == 2
    assert company.projects_count == 2

    assert soft_delete.undiscard(s, projects[0])
    s.commit()
    assert _fresh_count(s, company) == 3


def test_double_discard_decrements_once(s, make):
    company = make.company("Acme")
    p = make.project(company)
    make.project(company, "Other")

    assert soft_delete.discard(s, p)
    assert not soft_delete.discard(s, p)
    s.commit()
    assert _fresh_count(s, company) == 1

    assert soft_delete.undiscard(s, p)
    assert not soft_delete.undiscard(s, p)
    s.commit()
    assert _fresh_count(s, company) == 2


def test_counter_invariant_over_a_sequence(s, make):
    company = make.company("Acme")
    ps = [make.project(company, f"P{i}") for i in range(4)]
    for op, idx in [("d", 0), ("d", 1), ("u", 0), ("d", 0), ("d", 3), ("u", 1), ("d", 1), ("u", 3)]:
        (soft_delete.discard if op == "d" else soft_delete.undiscard)(s, ps[idx])
        s.commit()
        assert _fresh_count(s, company) == _kept_projects(s, company)


def test_users_count_follows_company_changes(s, make):
    role = make.client_role()
    a = make.company("A")
    b = make.company("B")
    u = make.user("u@a.test", role=role, company=a)
    assert _fresh_count(s, a, "users_count") == 1

    change_user_company(s, u, b.id)
    s.commit()
    assert _fresh_count(s, a, "users_count") == 0
    assert _fresh_count(s, b, "users_count") == 1

    soft_delete.discard(s, u)
    s.commit()
    assert _fresh_count(s, b, "users_count") == 0


def test_recount_is_idempotent_and_repairs_drift(s, make):
    company = make.company("Acme")
    for i in range(3):
        make.project(company, f"P{i}")
    s.execute(update(Company).where(Company.id == company.id).values(projects_count=42, users_count=-3))
    s.commit()

    first = soft_delete.recount(s, company)
    s.commit()
    second = soft_delete.recount(s, company)
    s.commit()
    assert first == second == {"projects_count": 3, "users_count": 0}
    assert company.projects_count == 3


def test_recount_all_reports_every_company(s, make):
    a = make.company("A")
    b = make.company("B")
    make.project(a)
    s.execute(update(Company).where(Company.id == b.id).values(projects_count=5))
    s.commit()
    repaired = soft_delete.recount_all(s)
    s.commit()
    assert repaired[a.id]["projects_count"] == 1
    assert repaired[b.id]["projects_count"] == 0


def test_company_with_kept_projects_cannot_be_discarded(s, make):
    company = make.company("Acme")
    p = make.project(company)
    with pytest.raises(HasActiveChildren, match="active projects"):
        soft_delete.discard(s, company)
    s.rollback()
    assert s.get(Company, company.id).discarded_at is None

    soft_delete.discard(s, p)
    s.commit()
    assert soft_delete.discard(s, company)
    s.commit()


def test_role_in_use_cannot_be_deleted(s, make):
    root = make.user("root@example.test", role=make.superadmin_role())
    role = make.role("Auditor", "audit_logs.index")
    make.user("a@acme.test", role=role, company=make.company("Acme"))

    with pytest.raises(HasActiveChildren, match="associated users"):
        delete_role(s, ctx_for(root), role.id)
    s.rollback()
    assert s.get(Role, role.id).discarded_at is None


def test_company_delete_through_service_is_blocked(s, make):
    root = make.user("root@example.test", role=make.superadmin_role())
    company = make.company("Acme")
    make.project(company)
    with pytest.raises(HasActiveChildren):
        discard_company(s, ctx_for(root), company.id)


def _run_concurrently(app, project_ids):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    barrier = threading.Barrier(len(project_ids))
    results, errors = [], []

    def worker(pid):
        s = sm()
        try:
            project = s.get(Project, pid)
            barrier.wait()
            results.append(soft_delete.discard(s, project))
            s.commit()
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)
            s.rollback()
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(pid,)) for pid in project_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def test_concurrent_sibling_discards_are_both_counted(app, s, make):
    company = make.company("Acme")
    p1 = make.project(company, "P1")
    p2 = make.project(company, "P2")
    make.project(company, "P3")
    assert _fresh_count(s, company) == 3

    results, errors = _run_concurrently(app, [p1.id, p2.id])
    assert errors == []
    assert results == [True, True]
    s.expire_all()
    assert _fresh_count(s, company) == 1


def test_concurrent_discards_of_the_same_project_count_once(app, s, make):
    company = make.company("Acme")
    p = make.project(company, "P1")
    make.project(company, "P2")

    results, errors = _run_concurrently(app, [p.id, p.id])
    assert errors == []
    assert sorted(results) == [False, True]
    s.expire_all()
    assert _fresh_count(s, company) == 1
