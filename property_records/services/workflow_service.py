"""
Workflow Definition Service — create, edit, version, toggle, duplicate, delete.

A workflow's steps must always form the contiguous sequence 1..N.  Step
lists are never edited in place: ``replace_steps`` writes a new version and
leaves the old one for requests that were pinned to it.

All writes happen in one transaction per call; a validation failure leaves
nothing behind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func

from property_records.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from property_records.models import db
from property_records.models.approval import (
    ENTITY_TYPE_VALUES,
    ApprovalEntityType,
    ApprovalRequest,
    ApprovalStep,
    ApprovalWorkflow,
)
from property_records.models.audit import write_audit
from property_records.models.auth import MAX_ROLE_LEVEL, MIN_ROLE_LEVEL, Role
from property_records.utils.helpers import commit_or_raise, parse_int

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "entity_type", "is_active")


# ── Validation ────────────────────────────────────────────────────────────────


def _validate_header(data: dict, errors: dict, *, partial: bool = False) -> None:
    if not partial or "name" in data:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            errors["name"] = "name is required"
        elif len(name.strip()) > 200:
            errors["name"] = "name must be at most 200 characters"
    if not partial or "entity_type" in data:
        if data.get("entity_type") not in ENTITY_TYPE_VALUES:
            errors["entity_type"] = (
                f"entity_type must be one of {sorted(ENTITY_TYPE_VALUES)}"
            )
    if "is_active" in data and not isinstance(data["is_active"], bool):
        errors["is_active"] = "is_active must be a boolean"


def _flag(raw: dict, field: str, default: bool, errors: dict, key: str) -> bool:
    value = raw.get(field, default)
    if not isinstance(value, bool):
        errors[f"{key}.{field}"] = f"{field} must be a boolean"
        return default
    return value


def _validate_steps(steps, errors: dict) -> list[dict]:
    """Check a step list and return it normalised, sorted by step_order.

    Populates *errors* with ``steps[i].<field>`` keys; the returned list is
    only meaningful when *errors* stays empty.
    """
    if not isinstance(steps, list) or not steps:
        errors["steps"] = "at least one step is required"
        return []

    normalised = []
    role_ids = set()
    for i, raw in enumerate(steps):
        key = f"steps[{i}]"
        if not isinstance(raw, dict):
            errors[key] = "step must be an object"
            continue

        step_name = raw.get("step_name")
        if not isinstance(step_name, str) or not step_name.strip():
            errors[f"{key}.step_name"] = "step_name is required"

        step_order = parse_int(raw.get("step_order"))
        if step_order is None:
            errors[f"{key}.step_order"] = "step_order must be an integer"

        role_id = parse_int(raw.get("role_id"))
        if role_id is None:
            errors[f"{key}.role_id"] = "role_id is required"
        else:
            role_ids.add(role_id)

        can_override = _flag(raw, "can_override", False, errors, key)
        override_min_level = None
        if can_override:
            override_min_level = parse_int(raw.get("override_min_level"))
            if override_min_level is None:
                errors[f"{key}.override_min_level"] = (
                    "override_min_level is required when can_override is set"
                )
            elif not MIN_ROLE_LEVEL <= override_min_level <= MAX_ROLE_LEVEL:
                errors[f"{key}.override_min_level"] = (
                    f"override_min_level must be between {MIN_ROLE_LEVEL} and {MAX_ROLE_LEVEL}"
                )

        normalised.append({
            "index": i,
            "step_name": step_name.strip() if isinstance(step_name, str) else step_name,
            "step_order": step_order,
            "role_id": role_id,
            "is_required": _flag(raw, "is_required", True, errors, key),
            "can_override": can_override,
            "override_min_level": override_min_level,
        })

    orders = [s["step_order"] for s in normalised if s["step_order"] is not None]
    if len(orders) == len(normalised) and "steps" not in errors:
        if len(set(orders)) != len(orders):
            errors["steps"] = "step_order values must be unique"
        elif sorted(orders) != list(range(1, len(orders) + 1)):
            errors["steps"] = "step_order values must be contiguous starting at 1"

    if role_ids:
        known = {
            r for (r,) in db.session.query(Role.id).filter(Role.id.in_(role_ids)).all()
        }
        for s in normalised:
            if s["role_id"] is not None and s["role_id"] not in known:
                errors[f"steps[{s['index']}].role_id"] = f"role {s['role_id']} does not exist"

    normalised.sort(key=lambda s: s["step_order"] or 0)
    return normalised


def _raise_if_errors(errors: dict) -> None:
    if errors:
        raise ValidationError("Invalid workflow definition", details=errors)


def _name_taken(name: str, exclude_id: int | None = None) -> bool:
    q = ApprovalWorkflow.query.filter(func.lower(ApprovalWorkflow.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(ApprovalWorkflow.id != exclude_id)
    return db.session.query(q.exists()).scalar()


def _add_steps(workflow: ApprovalWorkflow, steps: list[dict], version: int) -> None:
    for s in steps:
        db.session.add(ApprovalStep(
            workflow_id=workflow.id,
            version=version,
            step_name=s["step_name"],
            role_id=s["role_id"],
            step_order=s["step_order"],
            is_required=s["is_required"],
            can_override=s["can_override"],
            override_min_level=s["override_min_level"],
        ))


def _get_or_404(workflow_id) -> ApprovalWorkflow:
    wf = db.session.get(ApprovalWorkflow, workflow_id)
    if wf is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id)
    return wf


# ── Public API ────────────────────────────────────────────────────────────────


def create_workflow(definition: dict, actor_id: int | None = None) -> ApprovalWorkflow:
    """Create a workflow with its steps at version 1.

    Args:
        definition: ``{name, description?, entity_type, is_active?, steps: [...]}``
                    where each step is ``{step_name, role_id, step_order,
                    is_required?, can_override?, override_min_level?}``.
        actor_id:   User performing the change (audit).

    Raises:
        ValidationError: with a field→message map for every problem found.
        ConflictError:   another workflow already uses the name.
    """
    data = definition or {}
    errors: dict = {}
    _validate_header(data, errors)
    steps = _validate_steps(data.get("steps"), errors)
    _raise_if_errors(errors)

    name = data["name"].strip()
    if _name_taken(name):
        raise ConflictError(f"A workflow named '{name}' already exists")

    wf = ApprovalWorkflow(
        name=name,
        description=data.get("description"),
        entity_type=ApprovalEntityType(data["entity_type"]).value,
        is_active=data.get("is_active", True),
        version=1,
        created_by_id=actor_id,
    )
    db.session.add(wf)
    db.session.flush()
    _add_steps(wf, steps, version=1)
    write_audit(
        entity_type="approval_workflow", entity_id=wf.id, action="workflow.create",
        actor_user_id=actor_id,
        diff={"name": name, "entity_type": wf.entity_type, "steps": len(steps)},
    )
    commit_or_raise(f"A workflow named '{name}' already exists")

    logger.info(
        "Approval workflow created id=%s name=%s", wf.id, wf.name,
        extra={"workflow_id": wf.id, "user_id": actor_id, "event_type": "workflow.create"},
    )
    return wf


def update_workflow(workflow_id: int, patch: dict, actor_id: int | None = None) -> ApprovalWorkflow:
    """Update top-level fields only (name, description, entity_type, is_active)."""
    wf = _get_or_404(workflow_id)
    data = patch or {}

    errors: dict = {}
    unknown = sorted(set(data) - set(UPDATABLE_FIELDS))
    for key in unknown:
        errors[key] = "field cannot be updated here"
    _validate_header(data, errors, partial=True)
    _raise_if_errors(errors)

    if "name" in data:
        name = data["name"].strip()
        if _name_taken(name, exclude_id=wf.id):
            raise ConflictError(f"A workflow named '{name}' already exists")
        data = {**data, "name": name}
    if "entity_type" in data:
        data = {**data, "entity_type": ApprovalEntityType(data["entity_type"]).value}

    diff = {}
    for key in UPDATABLE_FIELDS:
        if key in data and getattr(wf, key) != data[key]:
            diff[key] = {"old": getattr(wf, key), "new": data[key]}
            setattr(wf, key, data[key])

    write_audit(
        entity_type="approval_workflow", entity_id=wf.id, action="workflow.update",
        actor_user_id=actor_id, diff=diff,
    )
    commit_or_raise("A workflow with that name already exists")
    logger.info(
        "Approval workflow updated id=%s fields=%s", wf.id, sorted(diff),
        extra={"workflow_id": wf.id, "user_id": actor_id, "event_type": "workflow.update"},
    )
    return wf


def replace_steps(workflow_id: int, steps, actor_id: int | None = None) -> ApprovalWorkflow:
    """Write a new step-list version and make it current.

    Requests created before the call stay on the version they pinned.
    """
    wf = _get_or_404(workflow_id)
    errors: dict = {}
    normalised = _validate_steps(steps, errors)
    _raise_if_errors(errors)

    old_version = wf.version
    wf.version = old_version + 1
    _add_steps(wf, normalised, version=wf.version)
    write_audit(
        entity_type="approval_workflow", entity_id=wf.id, action="workflow.replace_steps",
        actor_user_id=actor_id,
        diff={"version": {"old": old_version, "new": wf.version}, "steps": len(normalised)},
    )
    commit_or_raise("Workflow steps were modified concurrently")
    logger.info(
        "Approval workflow steps replaced id=%s version=%s", wf.id, wf.version,
        extra={"workflow_id": wf.id, "user_id": actor_id, "event_type": "workflow.replace_steps"},
    )
    return wf


def toggle_active(workflow_id: int, actor_id: int | None = None) -> ApprovalWorkflow:
    """Flip ``is_active``.  In-flight requests are unaffected."""
    wf = _get_or_404(workflow_id)
    wf.is_active = not wf.is_active
    write_audit(
        entity_type="approval_workflow", entity_id=wf.id, action="workflow.toggle",
        actor_user_id=actor_id, diff={"is_active": {"old": not wf.is_active, "new": wf.is_active}},
    )
    commit_or_raise()
    logger.info(
        "Approval workflow %s id=%s", "activated" if wf.is_active else "deactivated", wf.id,
        extra={"workflow_id": wf.id, "user_id": actor_id, "event_type": "workflow.toggle"},
    )
    return wf


def duplicate(workflow_id: int, new_name: str, actor_id: int | None = None) -> ApprovalWorkflow:
    """Copy a workflow and its current steps under *new_name*.

    The copy starts inactive, at version 1, with no requests.
    """
    source = _get_or_404(workflow_id)
    if not isinstance(new_name, str) or not new_name.strip():
        raise ValidationError("Invalid duplicate", details={"new_name": "new_name is required"})
    name = new_name.strip()
    if _name_taken(name):
        raise ConflictError(f"A workflow named '{name}' already exists")

    copy = ApprovalWorkflow(
        name=name,
        description=f"Copy of {source.name}",
        entity_type=source.entity_type,
        is_active=False,
        version=1,
        created_by_id=actor_id,
    )
    db.session.add(copy)
    db.session.flush()
    _add_steps(copy, [
        {
            "step_name": s.step_name,
            "role_id": s.role_id,
            "step_order": s.step_order,
            "is_required": s.is_required,
            "can_override": s.can_override,
            "override_min_level": s.override_min_level,
        }
        for s in source.steps_for_version()
    ], version=1)
    write_audit(
        entity_type="approval_workflow", entity_id=copy.id, action="workflow.duplicate",
        actor_user_id=actor_id, diff={"source_id": source.id, "name": name},
    )
    commit_or_raise(f"A workflow named '{name}' already exists")
    logger.info(
        "Approval workflow duplicated source=%s copy=%s", source.id, copy.id,
        extra={"workflow_id": copy.id, "user_id": actor_id, "event_type": "workflow.duplicate"},
    )
    return copy


def delete(workflow_id: int, actor_id: int | None = None) -> None:
    """Delete a workflow that has never been used by a request."""
    wf = _get_or_404(workflow_id)
    if wf.requests.count() > 0:
        raise ConflictError(
            "Cannot delete a workflow that has approval requests; deactivate it instead"
        )
    write_audit(
        entity_type="approval_workflow", entity_id=wf.id, action="workflow.delete",
        actor_user_id=actor_id, diff={"name": wf.name},
    )
    ApprovalStep.query.filter_by(workflow_id=wf.id).delete(synchronize_session=False)
    db.session.delete(wf)
    commit_or_raise("Workflow is still referenced")
    logger.info(
        "Approval workflow deleted id=%s", workflow_id,
        extra={"workflow_id": workflow_id, "user_id": actor_id, "event_type": "workflow.delete"},
    )


# ── Queries ───────────────────────────────────────────────────────────────────


def get_workflow(workflow_id: int) -> ApprovalWorkflow:
    return _get_or_404(workflow_id)


def list_workflows(entity_type: str | None = None, is_active: bool | None = None):
    """Query of workflows, optionally filtered, ordered by name."""
    q = ApprovalWorkflow.query
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if is_active is not None:
        q = q.filter_by(is_active=is_active)
    return q.order_by(ApprovalWorkflow.name)


def get_current_steps(workflow: ApprovalWorkflow) -> list[ApprovalStep]:
    return workflow.steps_for_version()


def find_active_workflow(entity_type: str) -> ApprovalWorkflow | None:
    """The active workflow for *entity_type* that has steps, newest first."""
    candidates = (
        ApprovalWorkflow.query
        .filter_by(entity_type=entity_type, is_active=True)
        .order_by(ApprovalWorkflow.updated_at.desc(), ApprovalWorkflow.id.desc())
        .all()
    )
    for wf in candidates:
        if wf.steps_for_version():
            return wf
    return None


def get_workflow_stats() -> dict:
    """Counts for the workflow overview: totals, per entity type, step averages."""
    total = ApprovalWorkflow.query.count()
    active = ApprovalWorkflow.query.filter_by(is_active=True).count()

    by_entity_type = dict(
        db.session.query(ApprovalWorkflow.entity_type, func.count(ApprovalWorkflow.id))
        .group_by(ApprovalWorkflow.entity_type)
        .all()
    )

    total_steps = (
        db.session.query(func.count(ApprovalStep.id))
        .join(ApprovalWorkflow, ApprovalStep.workflow_id == ApprovalWorkflow.id)
        .filter(ApprovalStep.version == ApprovalWorkflow.version)
        .scalar()
    ) or 0

    since = datetime.now(timezone.utc) - timedelta(days=30)
    recently_created = ApprovalWorkflow.query.filter(ApprovalWorkflow.created_at >= since).count()

    in_use = (
        db.session.query(func.count(func.distinct(ApprovalRequest.workflow_id))).scalar()
    ) or 0

    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_entity_type": by_entity_type,
        "total_steps": total_steps,
        "avg_steps_per_workflow": round(total_steps / total, 2) if total else 0,
        "recently_created": recently_created,
        "in_use": in_use,
    }
