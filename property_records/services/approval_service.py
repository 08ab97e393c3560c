"""
Approval Request Service — the sequential sign-off state machine.

States: PENDING (with ``current_step_order`` as the live pointer) and the
terminal APPROVED, REJECTED, OVERRIDDEN and CANCELLED.

Responding to a step runs as one transaction:

    1. NotFound      request or step missing, or step not on the request's
                     pinned workflow version
    2. Conflict      the step already carries a response
    3. InvalidState  request not PENDING, or step is not the current step
    4. Forbidden     responder neither holds the step's role in the
                     request's business unit nor clears its override level
    5. insert response; UNIQUE(approval_request_id, step_id) catches a
       concurrent responder that got past (2)
    6. conditional UPDATE ... WHERE status='PENDING' AND
       current_step_order=:expected; zero rows means someone else moved
       the request first
    7. on a terminal transition, call the resolution handler registered
       for the request's entity type, inside the same transaction

Every step is mandatory; ``is_required`` is stored but never skipped.

Resolution handlers are registered with ``@register_resolution_handler``:

    @register_resolution_handler(ApprovalEntityType.PROPERTY_RELEASE)
    def _on_release_resolved(request, final_response):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from property_records.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from property_records.models import db
from property_records.models.approval import (
    ApprovalDecision,
    ApprovalEntityType,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalStep,
    ApprovalStepResponse,
    ApprovalWorkflow,
)
from property_records.models.audit import write_audit
from property_records.models.property import Property
from property_records.services.permission_service import (
    can_approve_at_level,
    get_assignment,
)
from property_records.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)

PENDING = ApprovalRequestStatus.PENDING.value


# ═══════════════════════════════════════════════════════════════
# Resolution handler registry
# ═══════════════════════════════════════════════════════════════

_resolution_handlers: dict[str, Callable] = {}


def register_resolution_handler(entity_type):
    """Decorator to register the callback run when a request of
    *entity_type* reaches a terminal state.

    The callback receives ``(request, final_response)``; ``final_response``
    is None for cancellations.  It runs inside the caller's transaction and
    must not commit.
    """
    key = ApprovalEntityType(entity_type).value

    def decorator(fn: Callable) -> Callable:
        _resolution_handlers[key] = fn
        return fn
    return decorator


def get_resolution_handler(entity_type) -> Callable | None:
    return _resolution_handlers.get(entity_type)


def _notify_resolution(request: ApprovalRequest, final_response) -> None:
    handler = get_resolution_handler(request.entity_type)
    if handler is None:
        logger.debug("No resolution handler for entity_type=%s", request.entity_type)
        return
    handler(request, final_response)


# ═══════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RespondEligibility:
    eligible: bool
    is_override: bool = False
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.eligible


@dataclass(frozen=True)
class SubmitResult:
    request: ApprovalRequest
    response: ApprovalStepResponse
    is_completed: bool
    next_step: ApprovalStep | None

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "response": self.response.to_dict(),
            "is_completed": self.is_completed,
            "next_step": self.next_step.to_dict() if self.next_step else None,
        }


# ── Private helpers ────────────────────────────────────────────────────────────


def _utcnow():
    return datetime.now(timezone.utc)


def _lock_request(request_id) -> ApprovalRequest | None:
    """Load the request row with a row lock (no-op on SQLite)."""
    stmt = (
        select(ApprovalRequest)
        .where(ApprovalRequest.id == request_id)
        .with_for_update()
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _parse_decision(decision) -> ApprovalDecision:
    try:
        return ApprovalDecision(decision)
    except ValueError:
        raise ValidationError(
            "Invalid decision",
            details={"decision": f"decision must be one of {[d.value for d in ApprovalDecision]}"},
        ) from None


def _conditional_transition(request: ApprovalRequest, expected_step_order: int, **values) -> None:
    """Apply *values* only if the request is still PENDING at *expected_step_order*.

    Raises ConflictError when another transaction moved the request first.
    """
    values.setdefault("updated_at", _utcnow())
    result = db.session.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == request.id,
            ApprovalRequest.status == PENDING,
            ApprovalRequest.current_step_order == expected_step_order,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("The approval request was updated by another user; reload and try again")
    db.session.refresh(request)


# ═══════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════

def create_request(
    workflow_id: int,
    entity_type,
    entity_id,
    requested_by_id: int,
    business_unit_id: int,
    property_id: int | None = None,
    *,
    commit: bool = True,
) -> ApprovalRequest:
    """Open a PENDING request at step 1, pinned to the workflow's current version.

    Pass ``commit=False`` to keep the request inside the caller's
    transaction (movement creation does this).
    """
    try:
        entity_type = ApprovalEntityType(entity_type).value
    except ValueError:
        raise ValidationError(
            "Invalid entity type",
            details={"entity_type": f"entity_type must be one of {[e.value for e in ApprovalEntityType]}"},
        ) from None

    wf = db.session.get(ApprovalWorkflow, workflow_id)
    if wf is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id)
    if not wf.is_active:
        raise InvalidStateError(f"Workflow '{wf.name}' is not active")
    if not wf.steps_for_version():
        raise InvalidStateError(f"Workflow '{wf.name}' has no steps")
    if wf.entity_type != entity_type:
        raise InvalidStateError(
            f"Workflow '{wf.name}' handles {wf.entity_type}, not {entity_type}"
        )

    if property_id is not None:
        prop = db.session.get(Property, property_id)
        if prop is None or prop.business_unit_id != business_unit_id:
            raise ValidationError(
                "Invalid property",
                details={"property_id": "property not found in this business unit"},
            )

    entity_id = str(entity_id)
    existing = ApprovalRequest.query.filter_by(
        entity_type=entity_type, entity_id=entity_id, status=PENDING,
    ).first()
    if existing is not None:
        raise ConflictError(
            f"{entity_type} {entity_id} already has a pending approval request (id={existing.id})"
        )

    req = ApprovalRequest(
        workflow_id=wf.id,
        workflow_version=wf.version,
        business_unit_id=business_unit_id,
        property_id=property_id,
        entity_type=entity_type,
        entity_id=entity_id,
        requested_by_id=requested_by_id,
        status=PENDING,
        current_step_order=1,
    )
    db.session.add(req)
    db.session.flush()
    write_audit(
        entity_type="approval_request", entity_id=req.id, action="approval.create",
        actor_user_id=requested_by_id, business_unit_id=business_unit_id,
        diff={"workflow_id": wf.id, "workflow_version": wf.version,
              "entity_type": entity_type, "entity_id": entity_id},
    )
    if commit:
        commit_or_raise("A pending approval request already exists for this entity")

    logger.info(
        "Approval request opened id=%s workflow=%s v%s for %s/%s",
        req.id, wf.id, wf.version, entity_type, entity_id,
        extra={
            "approval_request_id": req.id, "workflow_id": wf.id,
            "business_unit_id": business_unit_id, "user_id": requested_by_id,
            "event_type": "approval.create",
        },
    )
    return req


# ═══════════════════════════════════════════════════════════════
# Step pointer & eligibility
# ═══════════════════════════════════════════════════════════════

def get_current_step(request: ApprovalRequest) -> ApprovalStep | None:
    """The pinned step at ``current_step_order``; None once terminal.

    A PENDING request whose pointer has run past its steps is corrupt and
    raises InvalidStateError.
    """
    if request.is_terminal:
        return None
    for step in request.steps:
        if step.step_order == request.current_step_order:
            return step
    logger.error(
        "Approval request %s is PENDING but step %s does not exist",
        request.id, request.current_step_order,
        extra={"approval_request_id": request.id, "event_type": "approval.invariant"},
    )
    raise InvalidStateError(
        f"Approval request {request.id} has no step {request.current_step_order}"
    )


def can_respond(assignments, request: ApprovalRequest, step: ApprovalStep,
                responder_id: int | None = None) -> RespondEligibility:
    """Decide whether the holder of *assignments* may answer *step*.

    Only the assignment in the request's business unit counts.  An exact
    role match wins over an override; an override needs ``can_override`` and
    a role level of at least ``override_min_level``.
    """
    if responder_id is not None:
        already = ApprovalStepResponse.query.filter_by(
            approval_request_id=request.id, step_id=step.id, responded_by_id=responder_id,
        ).first()
        if already is not None:
            return RespondEligibility(False, reason="already responded to this step")

    assignment = get_assignment(assignments, request.business_unit_id)
    if assignment is None:
        return RespondEligibility(False, reason="not a member of the request's business unit")

    if assignment.role_id == step.role_id:
        return RespondEligibility(True, is_override=False)

    if (
        step.can_override
        and step.override_min_level is not None
        and can_approve_at_level(assignments, step.override_min_level, request.business_unit_id)
    ):
        return RespondEligibility(True, is_override=True)

    return RespondEligibility(False, reason="role does not match this step")


# ═══════════════════════════════════════════════════════════════
# Responding
# ═══════════════════════════════════════════════════════════════

def submit_response(
    request_id: int,
    step_id: int,
    responder_id: int,
    assignments,
    decision,
    comments: str | None = None,
    *,
    business_unit_id: int | None = None,
) -> SubmitResult:
    """Record one decision on the current step and advance the request.

    Args:
        request_id:       ApprovalRequest PK.
        step_id:          ApprovalStep PK the responder is answering.
        responder_id:     User responding.
        assignments:      Responder's capability context.
        decision:         ``APPROVED`` or ``REJECTED``.
        comments:         Optional note stored on the response.
        business_unit_id: When given, a request from another business unit
                          is reported as not found.

    Returns:
        SubmitResult with the refreshed request, the stored response,
        ``is_completed`` and the next step (None when completed).
    """
    decision = _parse_decision(decision)
    try:
        req = _lock_request(request_id)
        if req is None or (business_unit_id is not None and req.business_unit_id != business_unit_id):
            raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
        step = db.session.get(ApprovalStep, step_id)
        if (
            step is None
            or step.workflow_id != req.workflow_id
            or step.version != req.workflow_version
        ):
            raise NotFoundError(resource="ApprovalStep", resource_id=step_id)

        answered = ApprovalStepResponse.query.filter_by(
            approval_request_id=req.id, step_id=step.id,
        ).first()
        if answered is not None:
            raise ConflictError(f"Step '{step.step_name}' has already been answered")

        if req.status != PENDING:
            raise InvalidStateError(f"Approval request is {req.status}, not PENDING")
        if step.step_order != req.current_step_order:
            raise InvalidStateError(
                f"Step {step.step_order} is not the current step ({req.current_step_order})"
            )

        eligibility = can_respond(assignments, req, step, responder_id)
        if not eligibility:
            logger.warning(
                "User %s denied on request %s step %s: %s",
                responder_id, req.id, step.step_order, eligibility.reason,
                extra={
                    "approval_request_id": req.id, "user_id": responder_id,
                    "business_unit_id": req.business_unit_id, "event_type": "approval.forbidden",
                },
            )
            raise ForbiddenError("You are not authorised to respond to this step")

        now = _utcnow()
        response = ApprovalStepResponse(
            approval_request_id=req.id,
            step_id=step.id,
            responded_by_id=responder_id,
            status=decision.value,
            comments=comments,
            is_override=eligibility.is_override,
            responded_at=now,
        )
        db.session.add(response)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Step '{step.step_name}' has already been answered") from exc

        expected = req.current_step_order
        is_last = step.step_order == max(s.step_order for s in req.steps)
        if decision is ApprovalDecision.REJECTED:
            _conditional_transition(
                req, expected, status=ApprovalRequestStatus.REJECTED.value, completed_at=now,
            )
        elif is_last:
            final = (
                ApprovalRequestStatus.OVERRIDDEN if eligibility.is_override
                else ApprovalRequestStatus.APPROVED
            )
            _conditional_transition(req, expected, status=final.value, completed_at=now)
        else:
            _conditional_transition(req, expected, current_step_order=expected + 1)

        is_completed = req.is_terminal
        write_audit(
            entity_type="approval_request", entity_id=req.id, action="approval.respond",
            actor_user_id=responder_id, business_unit_id=req.business_unit_id,
            diff={
                "step_order": step.step_order, "decision": decision.value,
                "is_override": eligibility.is_override, "status": req.status,
            },
        )
        if is_completed:
            _notify_resolution(req, response)
        commit_or_raise(f"Step '{step.step_name}' has already been answered")
    except Exception:
        db.session.rollback()
        raise

    next_step = None if is_completed else get_current_step(req)
    logger.info(
        "Approval request %s step %s %s by user %s%s → %s",
        req.id, step.step_order, decision.value, responder_id,
        " (override)" if eligibility.is_override else "", req.status,
        extra={
            "approval_request_id": req.id, "workflow_id": req.workflow_id,
            "business_unit_id": req.business_unit_id, "user_id": responder_id,
            "event_type": "approval.respond",
        },
    )
    return SubmitResult(
        request=req, response=response, is_completed=is_completed, next_step=next_step,
    )


# ═══════════════════════════════════════════════════════════════
# Cancellation
# ═══════════════════════════════════════════════════════════════

def withdraw_request(request: ApprovalRequest, actor_id: int | None) -> None:
    """Move a PENDING request to CANCELLED inside the caller's transaction.

    Does not notify the resolution handler; the caller owns the entity.
    """
    if request.status != PENDING:
        raise InvalidStateError(f"Approval request is {request.status}, not PENDING")
    _conditional_transition(
        request, request.current_step_order,
        status=ApprovalRequestStatus.CANCELLED.value, completed_at=_utcnow(),
    )
    write_audit(
        entity_type="approval_request", entity_id=request.id, action="approval.cancel",
        actor_user_id=actor_id, business_unit_id=request.business_unit_id,
    )


def cancel_request(request_id: int, actor_id: int, *, business_unit_id: int | None = None) -> ApprovalRequest:
    """Requester withdraws their own PENDING request."""
    try:
        req = _lock_request(request_id)
        if req is None or (business_unit_id is not None and req.business_unit_id != business_unit_id):
            raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
        if req.status != PENDING:
            raise InvalidStateError(f"Approval request is {req.status}, not PENDING")
        if req.requested_by_id != actor_id:
            raise ForbiddenError("Only the requester can cancel an approval request")

        withdraw_request(req, actor_id)
        _notify_resolution(req, None)
        commit_or_raise()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Approval request %s cancelled by user %s", req.id, actor_id,
        extra={
            "approval_request_id": req.id, "business_unit_id": req.business_unit_id,
            "user_id": actor_id, "event_type": "approval.cancel",
        },
    )
    return req


# ═══════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════

def get_request(business_unit_id: int, request_id: int) -> ApprovalRequest | None:
    """The request if it exists in *business_unit_id*, else None."""
    req = db.session.get(ApprovalRequest, request_id)
    if req is None or req.business_unit_id != business_unit_id:
        return None
    return req


def list_requests(business_unit_id: int, status: str | None = None,
                  workflow_id: int | None = None, entity_type: str | None = None):
    """Query of the business unit's requests, newest first."""
    q = ApprovalRequest.query.filter_by(business_unit_id=business_unit_id)
    if status:
        q = q.filter_by(status=status)
    if workflow_id:
        q = q.filter_by(workflow_id=workflow_id)
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    return q.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())


def list_actionable_requests(assignments, business_unit_id: int,
                             responder_id: int | None = None) -> list[ApprovalRequest]:
    """PENDING requests in the business unit whose current step the caller may answer."""
    if get_assignment(assignments, business_unit_id) is None:
        return []
    pending = (
        ApprovalRequest.query
        .filter_by(business_unit_id=business_unit_id, status=PENDING)
        .order_by(ApprovalRequest.created_at, ApprovalRequest.id)
        .all()
    )
    actionable = []
    for req in pending:
        step = get_current_step(req)
        if step is not None and can_respond(assignments, req, step, responder_id):
            actionable.append(req)
    return actionable


def get_approval_stats(business_unit_id: int) -> dict:
    """Counts per status and per workflow, plus mean processing time in days."""
    by_status = dict(
        db.session.query(ApprovalRequest.status, func.count(ApprovalRequest.id))
        .filter(ApprovalRequest.business_unit_id == business_unit_id)
        .group_by(ApprovalRequest.status)
        .all()
    )
    by_workflow = dict(
        db.session.query(ApprovalWorkflow.name, func.count(ApprovalRequest.id))
        .join(ApprovalWorkflow, ApprovalRequest.workflow_id == ApprovalWorkflow.id)
        .filter(ApprovalRequest.business_unit_id == business_unit_id)
        .group_by(ApprovalWorkflow.name)
        .all()
    )

    completed = (
        db.session.query(ApprovalRequest.created_at, ApprovalRequest.completed_at)
        .filter(
            ApprovalRequest.business_unit_id == business_unit_id,
            ApprovalRequest.completed_at.isnot(None),
        )
        .all()
    )
    durations = [
        (_aware(done) - _aware(started)).total_seconds()
        for started, done in completed
        if started is not None
    ]
    avg_days = sum(durations) / len(durations) / 86400 if durations else 0

    stats = {s.value.lower(): by_status.get(s.value, 0) for s in ApprovalRequestStatus}
    stats.update({
        "total": sum(by_status.values()),
        "by_workflow": by_workflow,
        "avg_processing_days": round(avg_days, 2),
    })
    return stats


def _aware(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone=True columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
