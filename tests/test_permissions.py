from types import SimpleNamespace

from portal.permissions import (
    ALL_PERMISSIONS,
    PermissionKey,
    build_principal,
    has_permission,
    parse_permission_keys,
    resolve_permissions,
)

ROLE_PERMISSIONS = {
    "10": ["page_applies", "admin_panel"],
    "20": ["admin_submissions"],
    "30": ["_super_admin"],
    "40": ["no_such_key"],
}


def test_union_of_all_held_roles():
    resolved = resolve_permissions({"10", "20"}, ROLE_PERMISSIONS)
    assert resolved == {
        PermissionKey.PAGE_APPLIES,
        PermissionKey.ADMIN_PANEL,
        PermissionKey.ADMIN_SUBMISSIONS,
    }


def test_roles_without_a_row_grant_nothing():
    assert resolve_permissions({"77"}, ROLE_PERMISSIONS) == frozenset()
    assert resolve_permissions(set(), ROLE_PERMISSIONS) == frozenset()


def test_unknown_keys_are_ignored():
    assert resolve_permissions({"40"}, ROLE_PERMISSIONS) == frozenset()
    assert parse_permission_keys(["admin_panel", "bogus"]) == {PermissionKey.ADMIN_PANEL}


def test_super_admin_key_grants_everything():
    assert resolve_permissions({"30"}, ROLE_PERMISSIONS) == ALL_PERMISSIONS


def test_configured_super_admin_role_grants_everything():
    assert resolve_permissions({"999"}, ROLE_PERMISSIONS, super_admin_role_ids={"999"}) == ALL_PERMISSIONS


def test_adding_a_role_never_removes_a_permission():
    base = resolve_permissions({"10"}, ROLE_PERMISSIONS)
    for extra in ROLE_PERMISSIONS:
        assert base <= resolve_permissions({"10", extra}, ROLE_PERMISSIONS)


def test_build_principal_from_profile():
    profile = SimpleNamespace(id="100", username="alice", roles=["20", "30"], highest_role="Officer")
    principal = build_principal(profile, ROLE_PERMISSIONS)

    assert principal.roles == {"20", "30"}
    assert principal.is_super_admin
    assert has_permission(principal, PermissionKey.ADMIN_LOOKUP)
    assert principal.highest_role == "Officer"


def test_profile_with_no_roles_has_no_permissions():
    profile = SimpleNamespace(id="100", username="alice", roles=[], highest_role=None)
    principal = build_principal(profile, ROLE_PERMISSIONS)
    assert not principal.is_super_admin
    assert not has_permission(principal, PermissionKey.PAGE_APPLIES)
