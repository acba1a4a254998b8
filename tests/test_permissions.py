"""Unit tests for threatpulse.services.permissions: the fixed role capability table."""

import unittest

from threatpulse.schemas.auth import PermissionSet
from threatpulse.services.permissions import (
    CAPABILITIES,
    ROLE_PERMISSIONS,
    has_permission,
    parse_role,
    resolve_permissions,
)

EXPECTED = {
    "admin": {
        "can_view_dashboard": True,
        "can_manage_users": True,
        "can_configure_alerts": True,
        "can_export_data": True,
        "can_view_audit_log": True,
        "can_delete_audit_log": True,
        "can_manage_integrations": True,
    },
    "manager": {
        "can_view_dashboard": True,
        "can_manage_users": False,
        "can_configure_alerts": False,
        "can_export_data": True,
        "can_view_audit_log": True,
        "can_delete_audit_log": False,
        "can_manage_integrations": False,
    },
    "analyst": {
        "can_view_dashboard": True,
        "can_manage_users": False,
        "can_configure_alerts": True,
        "can_export_data": False,
        "can_view_audit_log": True,
        "can_delete_audit_log": False,
        "can_manage_integrations": True,
    },
}


class TestResolvePermissions(unittest.TestCase):
    """Each role maps to exactly its row of the table."""

    def test_table_matches_for_every_role(self) -> None:
        for role, expected in EXPECTED.items():
            with self.subTest(role=role):
                self.assertEqual(resolve_permissions(role).model_dump(), expected)

    def test_table_is_total_over_roles(self) -> None:
        self.assertEqual(set(ROLE_PERMISSIONS), set(EXPECTED))

    def test_no_identity_is_all_false(self) -> None:
        perms = resolve_permissions(None)
        self.assertFalse(any(perms.model_dump().values()))

    def test_unknown_role_fails_closed(self) -> None:
        for role in ("root", "Admin", "", " admin", "gestor", "analista"):
            with self.subTest(role=role):
                self.assertEqual(resolve_permissions(role), PermissionSet())

    def test_serializes_with_dashboard_names(self) -> None:
        dumped = resolve_permissions("analyst").model_dump(by_alias=True)
        self.assertIs(dumped["canManageUsers"], False)
        self.assertIs(dumped["canConfigureAlerts"], True)
        self.assertEqual(len(dumped), 7)

    def test_permission_sets_are_immutable(self) -> None:
        with self.assertRaises(Exception):
            resolve_permissions("analyst").can_manage_users = True  # type: ignore[misc]
        self.assertFalse(resolve_permissions("analyst").can_manage_users)


class TestHelpers(unittest.TestCase):
    def test_parse_role(self) -> None:
        self.assertEqual(parse_role("manager"), "manager")
        self.assertIsNone(parse_role("MANAGER"))
        self.assertIsNone(parse_role(None))
        self.assertIsNone(parse_role(3))

    def test_has_permission(self) -> None:
        self.assertTrue(has_permission("admin", "can_delete_audit_log"))
        self.assertFalse(has_permission("manager", "can_configure_alerts"))
        self.assertFalse(has_permission(None, "can_view_dashboard"))

    def test_has_permission_rejects_unknown_capability(self) -> None:
        with self.assertRaises(KeyError):
            has_permission("admin", "can_fly")

    def test_capabilities_order(self) -> None:
        self.assertEqual(CAPABILITIES[0], "can_view_dashboard")
        self.assertEqual(len(CAPABILITIES), 7)
