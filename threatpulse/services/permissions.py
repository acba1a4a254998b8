"""Role to capability mapping. The only place role branching is allowed."""

from threatpulse.schemas.auth import ROLE_VALUES, PermissionSet, RoleName

# Capability names, in display order (keys of PermissionSet).
CAPABILITIES: tuple[str, ...] = tuple(PermissionSet.model_fields)

NO_PERMISSIONS = PermissionSet()

ROLE_PERMISSIONS: dict[str, PermissionSet] = {
    "admin": PermissionSet(
        can_view_dashboard=True,
        can_manage_users=True,
        can_configure_alerts=True,
        can_export_data=True,
        can_view_audit_log=True,
        can_delete_audit_log=True,
        can_manage_integrations=True,
    ),
    "manager": PermissionSet(
        can_view_dashboard=True,
        can_manage_users=False,
        can_configure_alerts=False,
        can_export_data=True,
        can_view_audit_log=True,
        can_delete_audit_log=False,
        can_manage_integrations=False,
    ),
    "analyst": PermissionSet(
        can_view_dashboard=True,
        can_manage_users=False,
        can_configure_alerts=True,
        can_export_data=False,
        can_view_audit_log=True,
        can_delete_audit_log=False,
        can_manage_integrations=True,
    ),
}


def parse_role(value: object) -> RoleName | None:
    """Return the role if value is exactly one of the known roles, else None."""
    if isinstance(value, str) and value in ROLE_VALUES:
        return value  # type: ignore[return-value]
    return None


def resolve_permissions(role: str | None) -> PermissionSet:
    """
    Capabilities for a role. No identity or an unrecognized role yields the
    all-false set (fail closed).
    """
    parsed = parse_role(role)
    if parsed is None:
        return NO_PERMISSIONS
    return ROLE_PERMISSIONS[parsed]


def has_permission(role: str | None, capability: str) -> bool:
    """True if role grants capability. Unknown capability names raise KeyError."""
    if capability not in CAPABILITIES:
        raise KeyError(f"Unknown capability: {capability}")
    return bool(getattr(resolve_permissions(role), capability))
