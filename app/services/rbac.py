"""
StudioSign - RBAC (Role-Based Access Control) for studio staff
"""

from __future__ import annotations

from typing import Dict, Set

from app.core.exceptions import PermissionDeniedError

# ─── Permission matrix ────────────────────────────────────────────────────────

ROLE_PERMISSIONS: Dict[str, Dict[str, Set[str]]] = {
    "studio_staff": {
        "allow": {
            "READ:envelopes",
            "WRITE:envelopes",
            "DELETE:envelopes",
            "WRITE:send_envelope",
            "READ:envelope_stats",
            "READ:audit_logs",
            "READ:signatures",
        },
        "deny": {
            "WRITE:cancel_envelope",
            "WRITE:users",
        },
    },
    "auditor": {
        "allow": {
            "READ:envelopes",
            "READ:envelope_stats",
            "READ:audit_logs",
            "READ:signatures",
        },
        "deny": {
            "WRITE:*",
            "DELETE:*",
        },
    },
    "studio_admin": {
        "allow": {
            "READ:*",
            "WRITE:*",
            "DELETE:*",
        },
        "deny": set(),
    },
}


def _permission_key(action: str, resource: str) -> str:
    return f"{action}:{resource}"


def _matches(rule: str, action: str, resource: str) -> bool:
    rule_action, rule_resource = rule.split(":", 1)
    return rule_action in (action, "*") and rule_resource in (resource, "*")


class RBACService:
    """Checks whether a given role is permitted to perform an action on a resource."""

    def check(self, role: str, action: str, resource: str) -> bool:
        """
        Return True if the role is allowed.
        Raise PermissionDeniedError otherwise.

        Priority: explicit deny > explicit allow > default deny.
        Wildcard '*' is supported on both sides of allow and deny rules.
        """
        perms = ROLE_PERMISSIONS.get(role)
        if perms is None:
            raise PermissionDeniedError(role, action, resource)

        if any(_matches(rule, action, resource) for rule in perms.get("deny", set())):
            raise PermissionDeniedError(role, action, resource)

        if _permission_key(action, resource) in perms.get("allow", set()):
            return True
        if any(_matches(rule, action, resource) for rule in perms.get("allow", set())):
            return True

        raise PermissionDeniedError(role, action, resource)

    def has_permission(self, role: str, action: str, resource: str) -> bool:
        """Non-raising version of check(). Returns True/False."""
        try:
            return self.check(role, action, resource)
        except PermissionDeniedError:
            return False
