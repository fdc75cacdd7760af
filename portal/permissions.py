"""
Role-derived permission resolution.

A user's permissions are never stored. They are derived from the Discord role
ids on their profile and the ``rolepermission`` table every time a principal is
built, so a role change takes effect on the next revalidation.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)


class PermissionKey(str, Enum):
    SUPER_ADMIN = "_super_admin"
    PAGE_STORE = "page_store"
    PAGE_RULES = "page_rules"
    PAGE_APPLIES = "page_applies"
    ADMIN_PANEL = "admin_panel"
    ADMIN_SUBMISSIONS = "admin_submissions"
    ADMIN_QUIZZES = "admin_quizzes"
    ADMIN_RULES = "admin_rules"
    ADMIN_STORE = "admin_store"
    ADMIN_TRANSLATIONS = "admin_translations"
    ADMIN_APPEARANCE = "admin_appearance"
    ADMIN_AUDIT_LOG = "admin_audit_log"
    ADMIN_PERMISSIONS = "admin_permissions"
    ADMIN_LOOKUP = "admin_lookup"


PERMISSIONS: dict[PermissionKey, str] = {
    PermissionKey.SUPER_ADMIN: "Grants all other permissions automatically.",
    PermissionKey.PAGE_STORE: "Allow user to see and access the Store page.",
    PermissionKey.PAGE_RULES: "Allow user to see and access the Rules page.",
    PermissionKey.PAGE_APPLIES: "Allow user to see and access the Applies page.",
    PermissionKey.ADMIN_PANEL: "Allow user to access the admin panel.",
    PermissionKey.ADMIN_SUBMISSIONS: "Allow user to view and handle all application submissions.",
    PermissionKey.ADMIN_QUIZZES: "Allow user to create, edit, open and close application forms.",
    PermissionKey.ADMIN_RULES: "Allow user to edit the server rules.",
    PermissionKey.ADMIN_STORE: "Allow user to manage items in the store.",
    PermissionKey.ADMIN_TRANSLATIONS: "Allow user to edit all website text and translations.",
    PermissionKey.ADMIN_APPEARANCE: "Allow user to change site-wide settings like name, logo, and theme.",
    PermissionKey.ADMIN_AUDIT_LOG: "Allow user to view the log of all admin actions.",
    PermissionKey.ADMIN_PERMISSIONS: "Allow user to change permissions for other Discord roles.",
    PermissionKey.ADMIN_LOOKUP: "Allow user to look up user profiles by Discord ID.",
}

ALL_PERMISSIONS = frozenset(PermissionKey)


@dataclass(frozen=True)
class Principal:
    """The acting user, passed explicitly into every core operation."""

    id: str
    username: str
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[PermissionKey] = field(default_factory=frozenset)
    highest_role: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return PermissionKey.SUPER_ADMIN in self.permissions


def parse_permission_keys(raw: Iterable[str]) -> set[PermissionKey]:
    keys = set()
    for value in raw:
        try:
            keys.add(PermissionKey(value))
        except ValueError:
            logger.debug("Ignoring unknown permission key %r", value)
    return keys


def resolve_permissions(
    role_ids: Iterable[str],
    role_permissions: Mapping[str, Iterable[str]],
    super_admin_role_ids: Iterable[str] = (),
) -> frozenset[PermissionKey]:
    """Union the grants of every held role; super admins get every key.

    A role with no row contributes nothing. No role can take away a permission
    that another role grants.
    """
    roles = set(role_ids)
    resolved: set[PermissionKey] = set()
    for role_id in roles:
        resolved |= parse_permission_keys(role_permissions.get(role_id, ()))

    if roles & set(super_admin_role_ids) or PermissionKey.SUPER_ADMIN in resolved:
        return ALL_PERMISSIONS
    return frozenset(resolved)


def has_permission(principal: Principal, key: PermissionKey) -> bool:
    return key in principal.permissions


def build_principal(
    profile,
    role_permissions: Mapping[str, Iterable[str]],
    super_admin_role_ids: Iterable[str] = (),
) -> Principal:
    """Derive a fresh ``Principal`` from a stored profile's role snapshot."""
    roles = frozenset(profile.roles or [])
    return Principal(
        id=profile.id,
        username=profile.username,
        roles=roles,
        permissions=resolve_permissions(roles, role_permissions, super_admin_role_ids),
        highest_role=profile.highest_role,
    )
