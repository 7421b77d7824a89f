import pytest

from app.tenantdesk.errors import ValidationFailed
from app.tenantdesk.models import Permission
from app.tenantdesk.modules.user_management.service import (
    delete_permission,
    grant_permissions,
    load_permissions,
    set_role_permissions,
)
from app.tenantdesk.rbac import (
    PermissionResolver,
    first_accessible_endpoint,
    has_permission,
    has_resource_permission,
    is_superadmin,
)

from conftest import ctx_for


def test_resolve_matches_role_codes(make):
    role = make.role("Editor", "projects.index", "projects.show")
    company = make.company("Acme")
    user = make.user("ed@acme.test", role=role, company=company)

    resolver = PermissionResolver()
    assert resolver.resolve(user) == {"projects.index", "projects.show"}


def test_user_without_role_has_no_permissions(make):
    user = make.user("nobody@acme.test")
    assert PermissionResolver().resolve(user) == frozenset()
    assert not has_permission(user, "projects.index")
    assert not has_resource_permission(user, "projects")


def test_cached_until_role_changes(s, make):
    role = make.role("Editor", "projects.index")
    user = make.user("ed@acme.test", role=role, company=make.company("Acme"))
    resolver = PermissionResolver()

    first = resolver.resolve(user)
    assert resolver.resolve(user) is first

    version = role.permissions_version
    assert grant_permissions(s, role, make.perms("projects.update"))
    s.commit()
    assert role.permissions_version == version + 1

    second = resolver.resolve(user)
    assert second == {"projects.index", "projects.update"}
    assert second is not first


def test_replacing_grants_bumps_version_only_on_change(s, make):
    role = make.role("Editor", "projects.index")
    version = role.permissions_version

    assert not set_role_permissions(s, role, make.perms("projects.index"))
    assert role.permissions_version == version

    assert set_role_permissions(s, role, make.perms("projects.show"))
    s.commit()
    assert role.permissions_version == version + 1
    assert [p.code for p in role.permissions] == ["projects.show"]


def test_role_reassignment_is_seen_on_next_resolution(s, make):
    viewer = make.role("Viewer", "projects.index")
    admin = make.role("Admin", "projects.index", "projects.destroy")
    user = make.user("u@acme.test", role=viewer, company=make.company("Acme"))
    resolver = PermissionResolver()
    assert "projects.destroy" not in resolver.resolve(user)

    user.role = admin
    s.commit()
    assert "projects.destroy" in resolver.resolve(user)


def test_deleting_permission_bumps_holders(s, make):
    role = make.role("Editor", "projects.index", "projects.show")
    user = make.user("ed@acme.test", role=role, company=make.company("Acme"))
    resolver = PermissionResolver()
    assert "projects.show" in resolver.resolve(user)

    version = role.permissions_version
    (perm,) = make.perms("projects.show")
    delete_permission(s, perm)
    s.commit()

    assert role.permissions_version == version + 1
    assert resolver.resolve(user) == {"projects.index"}


def test_deleted_permission_is_gone_not_hidden(s, make):
    (perm,) = make.perms("projects.destroy")
    perm_id = perm.id
    delete_permission(s, perm)
    s.commit()

    assert s.get(Permission, perm_id) is None
    assert not hasattr(Permission, "discarded_at")
    with pytest.raises(ValidationFailed, match="Unknown permission"):
        load_permissions(s, [perm_id])


def test_superadmin_is_separate_from_grants(s, make):
    role = make.superadmin_role()
    set_role_permissions(s, role, [])
    s.commit()
    user = make.user("root@example.test", role=role)

    assert is_superadmin(user)
    assert PermissionResolver().resolve(user) == frozenset()
    assert has_permission(user, "anything.at.all")
    assert has_resource_permission(user, "company_management.companies")


def test_inactive_or_discarded_user_has_nothing(s, make):
    role = make.role("Editor", "projects.index")
    user = make.user("ed@acme.test", role=role, company=make.company("Acme"))
    user.is_active = False
    s.commit()
    assert PermissionResolver().resolve(user) == frozenset()
    assert not ctx_for(user).is_authenticated


def test_resource_prefix_match_is_segment_aware(make):
    role = make.role("Users", "user_management.users.index")
    user = make.user("um@acme.test", role=role, company=make.company("Acme"))

    assert has_resource_permission(user, "user_management.users")
    assert has_resource_permission(user, "user_management")
    assert not has_resource_permission(user, "user_management.roles")
    assert not has_resource_permission(user, "user_manage")


def test_first_accessible_endpoint_order(make):
    company = make.company("Acme")
    home = make.user("a@acme.test", role=make.role("Home", "dashboard.index"), company=company)
    bi = make.user("b@acme.test", role=make.role("Bi", "bi_dashboards.index"), company=company)
    users = make.user("c@acme.test", role=make.role("Um", "user_management.users.index"), company=company)
    logs = make.user("d@acme.test", role=make.role("Logs", "audit_logs.index"), company=company)
    none = make.user("e@acme.test", role=make.role("Empty"), company=company)

    assert first_accessible_endpoint(ctx_for(home)) == "home.index"
    assert first_accessible_endpoint(ctx_for(bi)) == "bi_dashboards.index"
    assert first_accessible_endpoint(ctx_for(users)) == "user_management.users_list"
    assert first_accessible_endpoint(ctx_for(logs)) == "audit_logs.audit_logs_list"
    assert first_accessible_endpoint(ctx_for(none)) == "home.index"
