"""
Workflow definition service tests.

Tests cover:
  - Creation with contiguous 1..N steps; gaps, duplicates, unknown roles rejected
  - Override fields validated together
  - Name uniqueness (case-insensitive)
  - Top-level updates; step replacement bumps the version
  - Toggle, duplicate (structural copy), delete guard
  - Stats
"""

import pytest

from property_records.core.exceptions import ConflictError, NotFoundError, ValidationError
from property_records.models import db
from property_records.models.approval import ApprovalStep, ApprovalWorkflow
from property_records.models.audit import AuditLog
from property_records.services import approval_service, workflow_service


def _steps(roles, *orders):
    keys = ["manager", "director", "vp", "md"]
    return [
        {"step_name": f"Step {o}", "role_id": roles[keys[i % len(keys)]].id, "step_order": o}
        for i, o in enumerate(orders)
    ]


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateWorkflow:
    def test_create_with_steps(self, roles, signoff_definition):
        wf = workflow_service.create_workflow(signoff_definition())
        assert wf.id is not None
        assert wf.version == 1
        assert wf.is_active is True
        assert wf.entity_type == "PROPERTY_RELEASE"
        steps = wf.steps_for_version()
        assert [s.step_order for s in steps] == [1, 2]
        assert steps[0].role_id == roles["manager"].id
        assert all(s.version == 1 for s in steps)

    def test_steps_stored_sorted_regardless_of_input_order(self, roles):
        wf = workflow_service.create_workflow({
            "name": "Unordered", "entity_type": "PROPERTY_TURNOVER",
            "steps": _steps(roles, 3, 1, 2),
        })
        assert [s.step_order for s in wf.steps_for_version()] == [1, 2, 3]

    @pytest.mark.parametrize("orders", [(1, 3), (2, 3), (1, 1), (0, 1)])
    def test_rejects_non_contiguous_orders(self, roles, orders):
        with pytest.raises(ValidationError) as exc:
            workflow_service.create_workflow({
                "name": "Broken", "entity_type": "PROPERTY_RELEASE",
                "steps": _steps(roles, *orders),
            })
        assert "steps" in exc.value.details
        assert ApprovalWorkflow.query.count() == 0

    def test_rejects_empty_steps(self, roles):
        with pytest.raises(ValidationError) as exc:
            workflow_service.create_workflow({"name": "Empty", "entity_type": "PROPERTY_RELEASE", "steps": []})
        assert exc.value.details["steps"] == "at least one step is required"

    def test_field_level_errors(self, roles):
        with pytest.raises(ValidationError) as exc:
            workflow_service.create_workflow({
                "name": " ",
                "entity_type": "PAYROLL",
                "steps": [
                    {"step_name": "", "role_id": 9999, "step_order": 1},
                    {"step_name": "Override", "role_id": roles["manager"].id, "step_order": 2,
                     "can_override": True},
                ],
            })
        details = exc.value.details
        assert "name" in details
        assert "entity_type" in details
        assert "steps[0].step_name" in details
        assert details["steps[0].role_id"] == "role 9999 does not exist"
        assert "steps[1].override_min_level" in details

    def test_override_level_out_of_range(self, roles, signoff_definition):
        with pytest.raises(ValidationError) as exc:
            workflow_service.create_workflow(signoff_definition(can_override=True, override_min_level=7))
        assert "steps[0].override_min_level" in exc.value.details

    @pytest.mark.parametrize("field, value", [
        ("can_override", "false"), ("is_required", "false"), ("can_override", 0),
    ])
    def test_step_flags_must_be_booleans(self, roles, signoff_definition, field, value):
        definition = signoff_definition(**{field: value, "override_min_level": 3})
        with pytest.raises(ValidationError) as exc:
            workflow_service.create_workflow(definition)
        assert exc.value.details[f"steps[0].{field}"] == f"{field} must be a boolean"
        assert ApprovalWorkflow.query.count() == 0

    def test_override_level_ignored_without_can_override(self, roles, signoff_definition):
        wf = workflow_service.create_workflow(signoff_definition(override_min_level=3))
        assert wf.steps_for_version()[0].override_min_level is None

    def test_duplicate_name_case_insensitive(self, roles, signoff_definition):
        workflow_service.create_workflow(signoff_definition())
        with pytest.raises(ConflictError):
            workflow_service.create_workflow(signoff_definition(name="release SIGN-OFF"))

    def test_create_writes_audit(self, roles, people, signoff_definition):
        wf = workflow_service.create_workflow(signoff_definition(), actor_id=people["md"].id)
        row = AuditLog.query.filter_by(entity_type="approval_workflow", entity_id=str(wf.id)).one()
        assert row.action == "workflow.create"
        assert row.actor_user_id == people["md"].id
        assert row.diff["steps"] == 2


# ═════════════════════════════════════════════════════════════════════════
# UPDATE / VERSIONING
# ═════════════════════════════════════════════════════════════════════════

class TestUpdateWorkflow:
    def test_update_top_level_fields(self, release_workflow):
        wf = workflow_service.update_workflow(
            release_workflow.id, {"name": "Release Approval", "description": "Two-step"},
        )
        assert wf.name == "Release Approval"
        assert wf.description == "Two-step"
        assert wf.version == 1

    def test_update_rejects_unknown_fields(self, release_workflow):
        with pytest.raises(ValidationError) as exc:
            workflow_service.update_workflow(release_workflow.id, {"steps": []})
        assert "steps" in exc.value.details

    def test_update_missing_workflow(self, roles):
        with pytest.raises(NotFoundError):
            workflow_service.update_workflow(404, {"name": "X"})

    def test_replace_steps_bumps_version_and_keeps_old(self, roles, release_workflow):
        wf = workflow_service.replace_steps(release_workflow.id, _steps(roles, 1, 2, 3))
        assert wf.version == 2
        assert len(wf.steps_for_version()) == 3
        assert len(wf.steps_for_version(1)) == 2
        assert ApprovalStep.query.filter_by(workflow_id=wf.id).count() == 5

    def test_replace_steps_validates(self, roles, release_workflow):
        with pytest.raises(ValidationError):
            workflow_service.replace_steps(release_workflow.id, _steps(roles, 1, 4))
        assert workflow_service.get_workflow(release_workflow.id).version == 1

    def test_toggle(self, release_workflow):
        assert workflow_service.toggle_active(release_workflow.id).is_active is False
        assert workflow_service.toggle_active(release_workflow.id).is_active is True


# ═════════════════════════════════════════════════════════════════════════
# DUPLICATE / DELETE
# ═════════════════════════════════════════════════════════════════════════

class TestDuplicateAndDelete:
    def test_duplicate_is_structural_copy(self, roles, signoff_definition):
        source = workflow_service.create_workflow(
            signoff_definition(can_override=True, override_min_level=3),
        )
        copy = workflow_service.duplicate(source.id, "Release Sign-off (copy)")

        assert copy.id != source.id
        assert copy.name == "Release Sign-off (copy)"
        assert copy.description == "Copy of Release Sign-off"
        assert copy.is_active is False
        assert copy.requests.count() == 0

        fields = ("role_id", "step_order", "is_required", "can_override", "override_min_level")
        src = [tuple(getattr(s, f) for f in fields) for s in source.steps_for_version()]
        dup = [tuple(getattr(s, f) for f in fields) for s in copy.steps_for_version()]
        assert src == dup
        assert {s.id for s in source.steps_for_version()}.isdisjoint(
            {s.id for s in copy.steps_for_version()}
        )

    def test_duplicate_requires_fresh_name(self, release_workflow):
        with pytest.raises(ConflictError):
            workflow_service.duplicate(release_workflow.id, "Release Sign-off")
        with pytest.raises(ValidationError):
            workflow_service.duplicate(release_workflow.id, "  ")

    def test_delete_unused_workflow(self, release_workflow):
        wf_id = release_workflow.id
        workflow_service.delete(wf_id)
        assert db.session.get(ApprovalWorkflow, wf_id) is None
        assert ApprovalStep.query.filter_by(workflow_id=wf_id).count() == 0

    def test_delete_with_history_conflicts(self, bu, people, release_workflow):
        approval_service.create_request(
            release_workflow.id, "PROPERTY_RELEASE", "1", people["staff"].id, bu.id,
        )
        with pytest.raises(ConflictError):
            workflow_service.delete(release_workflow.id)
        assert workflow_service.get_workflow(release_workflow.id) is not None


# ═════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════

class TestQueries:
    def test_list_filters(self, roles, release_workflow):
        workflow_service.create_workflow({
            "name": "Turnover", "entity_type": "PROPERTY_TURNOVER", "is_active": False,
            "steps": _steps(roles, 1),
        })
        assert workflow_service.list_workflows().count() == 2
        assert [w.name for w in workflow_service.list_workflows(entity_type="PROPERTY_TURNOVER")] == ["Turnover"]
        assert [w.name for w in workflow_service.list_workflows(is_active=True)] == ["Release Sign-off"]

    def test_find_active_workflow_skips_inactive(self, release_workflow):
        assert workflow_service.find_active_workflow("PROPERTY_RELEASE").id == release_workflow.id
        workflow_service.toggle_active(release_workflow.id)
        assert workflow_service.find_active_workflow("PROPERTY_RELEASE") is None

    def test_stats(self, roles, release_workflow):
        workflow_service.create_workflow({
            "name": "Return", "entity_type": "PROPERTY_RETURN", "is_active": False,
            "steps": _steps(roles, 1),
        })
        stats = workflow_service.get_workflow_stats()
        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["inactive"] == 1
        assert stats["by_entity_type"] == {"PROPERTY_RELEASE": 1, "PROPERTY_RETURN": 1}
        assert stats["total_steps"] == 3
        assert stats["avg_steps_per_workflow"] == 1.5
        assert stats["recently_created"] == 2
        assert stats["in_use"] == 0
