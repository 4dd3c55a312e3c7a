"""
StudioSign - RBAC permission matrix tests.
"""

from __future__ import annotations

import pytest

from app.core.exceptions import PermissionDeniedError
from app.models.users import ROLES
from app.services.rbac import ROLE_PERMISSIONS, RBACService


@pytest.fixture
def rbac():
    return RBACService()


class TestRBAC:
    def test_every_role_has_a_matrix(self):
        assert set(ROLE_PERMISSIONS) == set(ROLES)

    def test_staff_manages_envelopes(self, rbac):
        for action, resource in [
            ("READ", "envelopes"),
            ("WRITE", "envelopes"),
            ("DELETE", "envelopes"),
            ("WRITE", "send_envelope"),
            ("READ", "signatures"),
        ]:
            assert rbac.check(role="studio_staff", action=action, resource=resource) is True

    def test_staff_cannot_cancel(self, rbac):
        # explicit deny
        assert (
            rbac.has_permission(role="studio_staff", action="WRITE", resource="cancel_envelope")
            is False
        )

    def test_auditor_read_only(self, rbac):
        assert rbac.check(role="auditor", action="READ", resource="audit_logs") is True
        assert rbac.has_permission(role="auditor", action="WRITE", resource="envelopes") is False
        assert rbac.has_permission(role="auditor", action="DELETE", resource="envelopes") is False

    def test_admin_wildcards(self, rbac):
        for action, resource in [
            ("WRITE", "cancel_envelope"),
            ("WRITE", "users"),
            ("DELETE", "envelopes"),
            ("READ", "audit_logs"),
        ]:
            assert rbac.check(role="studio_admin", action=action, resource=resource) is True

    def test_unknown_role_denied(self, rbac):
        assert rbac.has_permission(role="guest", action="READ", resource="envelopes") is False

    def test_unlisted_permission_denied(self, rbac):
        assert rbac.has_permission(role="auditor", action="READ", resource="users") is False

    def test_permission_denied_exception(self, rbac):
        with pytest.raises(PermissionDeniedError) as exc_info:
            rbac.check(role="studio_staff", action="WRITE", resource="cancel_envelope")
        assert exc_info.value.http_status_code == 403
        assert exc_info.value.detail["resource"] == "cancel_envelope"
