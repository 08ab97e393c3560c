"""
Permission evaluator tests.

The evaluators are pure functions over an explicit list of Assignment
values, so most of these tests never touch the database.  The last class
checks that load_assignments builds that list from active memberships.
"""

from property_records.services.permission_service import (
    Assignment,
    PermissionGrant,
    can_approve_at_level,
    get_assignment,
    has_permission,
    is_member,
    load_assignments,
)


def _assignment(bu_id, level=1, role_id=10, **grants):
    perms = tuple(
        PermissionGrant(module=module, **{f"can_{c}": True for c in caps})
        for module, caps in grants.items()
    )
    return Assignment(
        business_unit_id=bu_id, role_id=role_id, role_name=f"role-{role_id}",
        role_level=level, permissions=perms,
    )


class TestHasPermission:
    def test_granted_capability(self):
        ctx = [_assignment(1, APPROVAL=("read", "create"))]
        assert has_permission(ctx, 1, "APPROVAL", "create") is True

    def test_missing_capability_on_granted_module(self):
        ctx = [_assignment(1, APPROVAL=("read",))]
        assert has_permission(ctx, 1, "APPROVAL", "delete") is False

    def test_module_without_grant_row(self):
        ctx = [_assignment(1, APPROVAL=("read",))]
        assert has_permission(ctx, 1, "PROPERTY", "read") is False

    def test_other_business_unit_is_denied(self):
        ctx = [_assignment(1, APPROVAL=("read", "create", "update", "delete", "approve"))]
        assert has_permission(ctx, 2, "APPROVAL", "read") is False

    def test_unknown_module_and_capability_deny_without_raising(self):
        ctx = [_assignment(1, APPROVAL=("read",))]
        assert has_permission(ctx, 1, "PAYROLL", "read") is False
        assert has_permission(ctx, 1, "APPROVAL", "admin") is False

    def test_empty_context(self):
        assert has_permission([], 1, "APPROVAL", "read") is False
        assert has_permission(None, 1, "APPROVAL", "read") is False

    def test_deterministic_for_same_inputs(self):
        ctx = [_assignment(1, PROPERTY=("update",))]
        results = {has_permission(ctx, 1, "PROPERTY", "update") for _ in range(5)}
        assert results == {True}


class TestMembership:
    def test_get_assignment_picks_business_unit(self):
        a1, a2 = _assignment(1, role_id=1), _assignment(2, role_id=2)
        assert get_assignment([a1, a2], 2) is a2
        assert get_assignment([a1, a2], 3) is None

    def test_is_member(self):
        assert is_member([_assignment(5)], 5) is True
        assert is_member([_assignment(5)], 6) is False
        assert is_member([_assignment(5)], None) is False


class TestApproveAtLevel:
    def test_level_at_or_above_threshold(self):
        assert can_approve_at_level([_assignment(1, level=3)], 3) is True
        assert can_approve_at_level([_assignment(1, level=4)], 3) is True

    def test_level_below_threshold(self):
        assert can_approve_at_level([_assignment(1, level=2)], 3) is False

    def test_scoped_to_business_unit(self):
        ctx = [_assignment(1, level=0), _assignment(2, level=4)]
        assert can_approve_at_level(ctx, 3) is True
        assert can_approve_at_level(ctx, 3, business_unit_id=1) is False
        assert can_approve_at_level(ctx, 3, business_unit_id=2) is True

    def test_no_required_level(self):
        assert can_approve_at_level([_assignment(1, level=4)], None) is False


class TestLoadAssignments:
    def test_builds_context_from_active_memberships(self, bu, other_bu, roles, make_user, add_member):
        user = make_user()
        add_member(user, bu, roles["manager"])
        add_member(user, other_bu, roles["vp"], is_active=False)

        ctx = load_assignments(user.id)
        assert len(ctx) == 1
        (a,) = ctx
        assert a.business_unit_id == bu.id
        assert a.role_id == roles["manager"].id
        assert a.role_level == 1
        assert has_permission(ctx, bu.id, "APPROVAL", "approve") is True
        assert has_permission(ctx, other_bu.id, "APPROVAL", "read") is False

    def test_anonymous_user(self):
        assert load_assignments(None) == []
