"""
Movement Service — property releases, turnovers and returns.

Each movement is opened together with its approval request in one
transaction; the property is parked in UNDER_REVIEW until the request
resolves.  Resolution arrives through the handlers registered at the
bottom of this module:

    approved / overridden → movement APPROVED, property to its destination
    rejected / cancelled  → movement REJECTED / CANCELLED, property restored

Completing (physical hand-over confirmed) and cancelling are separate,
later actions.  A movement only moves the property while the property
still holds the status that movement gave it; cancelling is refused while
another movement on the same property is open.  PENDING movements can
have their descriptive fields edited.

Eligibility:
    release, turnover   property ACTIVE or PENDING
    return              property RELEASED or BANK_CUSTODY
    all kinds           no other open (PENDING/APPROVED/IN_PROGRESS)
                        movement of the same kind on the property
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func

from property_records.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from property_records.models import db
from property_records.models.approval import (
    APPROVED_STATUSES,
    ApprovalEntityType,
    ApprovalRequest,
    ApprovalRequestStatus,
)
from property_records.models.audit import write_audit
from property_records.models.auth import BusinessUnit
from property_records.models.property import (
    OPEN_TRANSACTION_STATUSES,
    Property,
    PropertyRelease,
    PropertyReturn,
    PropertyStatus,
    PropertyTurnover,
    ReleaseType,
    TransactionStatus,
)
from property_records.services import approval_service, workflow_service
from property_records.services.approval_service import register_resolution_handler
from property_records.utils.helpers import commit_or_raise, parse_date, parse_int

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Movement kinds ─────────────────────────────────────────────────────────────


def _release_destination(release: PropertyRelease) -> str:
    if release.release_type == ReleaseType.TO_BANK.value:
        return PropertyStatus.BANK_CUSTODY.value
    return PropertyStatus.RELEASED.value


@dataclass(frozen=True)
class MovementKind:
    name: str
    model: type
    entity_type: ApprovalEntityType
    eligible_statuses: frozenset
    destination: Callable


RELEASES = MovementKind(
    name="releases",
    model=PropertyRelease,
    entity_type=ApprovalEntityType.PROPERTY_RELEASE,
    eligible_statuses=frozenset({PropertyStatus.ACTIVE.value, PropertyStatus.PENDING.value}),
    destination=_release_destination,
)
TURNOVERS = MovementKind(
    name="turnovers",
    model=PropertyTurnover,
    entity_type=ApprovalEntityType.PROPERTY_TURNOVER,
    eligible_statuses=frozenset({PropertyStatus.ACTIVE.value, PropertyStatus.PENDING.value}),
    destination=lambda _m: PropertyStatus.TURNED_OVER.value,
)
RETURNS = MovementKind(
    name="returns",
    model=PropertyReturn,
    entity_type=ApprovalEntityType.PROPERTY_RETURN,
    eligible_statuses=frozenset({PropertyStatus.RELEASED.value, PropertyStatus.BANK_CUSTODY.value}),
    destination=lambda _m: PropertyStatus.ACTIVE.value,
)

MOVEMENT_KINDS = {k.name: k for k in (RELEASES, TURNOVERS, RETURNS)}


def get_kind(kind) -> MovementKind:
    if isinstance(kind, MovementKind):
        return kind
    try:
        return MOVEMENT_KINDS[kind]
    except KeyError:
        raise ValidationError(
            "Unknown movement kind",
            details={"kind": f"kind must be one of {sorted(MOVEMENT_KINDS)}"},
        ) from None


# ── Private helpers ────────────────────────────────────────────────────────────


def _audit_entity(kind: MovementKind) -> str:
    return kind.model.__tablename__[:-1]


def _require_property(kind: MovementKind, business_unit_id: int, property_id) -> Property:
    prop = db.session.get(Property, property_id) if property_id is not None else None
    if prop is None or prop.business_unit_id != business_unit_id:
        raise NotFoundError(resource="Property", resource_id=property_id)
    if prop.status not in kind.eligible_statuses:
        raise InvalidStateError(
            f"Property {prop.title_number} is {prop.status}; "
            f"{kind.name} require one of {sorted(kind.eligible_statuses)}"
        )
    open_movement = kind.model.query.filter(
        kind.model.property_id == prop.id,
        kind.model.status.in_(OPEN_TRANSACTION_STATUSES),
    ).first()
    if open_movement is not None:
        raise ConflictError(
            f"Property {prop.title_number} already has an open {kind.entity_type.value} (id={open_movement.id})"
        )
    return prop


def _require_workflow(kind: MovementKind):
    wf = workflow_service.find_active_workflow(kind.entity_type.value)
    if wf is None:
        raise InvalidStateError(
            f"No active approval workflow with steps is configured for {kind.entity_type.value}"
        )
    return wf


def _require_active_business_unit(business_unit_id, field: str) -> BusinessUnit:
    bu = db.session.get(BusinessUnit, business_unit_id) if business_unit_id is not None else None
    if bu is None or not bu.is_active:
        raise ValidationError(
            "Invalid business unit", details={field: "business unit not found or inactive"},
        )
    return bu


def _open_movement(kind: MovementKind, business_unit_id: int, property_id: int,
                   actor_id: int, build: Callable):
    """Shared create path: movement + approval request + property hold, one commit."""
    try:
        prop = _require_property(kind, business_unit_id, property_id)
        wf = _require_workflow(kind)

        movement = build(prop)
        movement.status = TransactionStatus.PENDING.value
        movement.prior_property_status = prop.status
        db.session.add(movement)
        db.session.flush()

        req = approval_service.create_request(
            wf.id, kind.entity_type, movement.id, actor_id, business_unit_id,
            property_id=prop.id, commit=False,
        )
        movement.approval_request_id = req.id
        prop.status = PropertyStatus.UNDER_REVIEW.value

        write_audit(
            entity_type=_audit_entity(kind), entity_id=movement.id, action="movement.create",
            actor_user_id=actor_id, business_unit_id=business_unit_id,
            diff={"property_id": prop.id, "approval_request_id": req.id,
                  "property_status": {"old": movement.prior_property_status, "new": prop.status}},
        )
        commit_or_raise(f"Property already has an open {kind.entity_type.value}")
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "%s opened id=%s property=%s request=%s",
        kind.entity_type.value, movement.id, prop.id, movement.approval_request_id,
        extra={
            "business_unit_id": business_unit_id, "approval_request_id": movement.approval_request_id,
            "workflow_id": wf.id, "user_id": actor_id, "event_type": "movement.create",
        },
    )
    return movement


def _collect(data: dict, required: tuple[str, ...]) -> dict:
    errors = {}
    for key in required:
        value = data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[key] = f"{key} is required"
    if "property_id" in required and "property_id" not in errors and parse_int(data.get("property_id")) is None:
        errors["property_id"] = "property_id must be an integer"
    return errors


# ═══════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════

def create_release(business_unit_id: int, data: dict, actor_id: int) -> PropertyRelease:
    """Open a release request.

    Body: ``{property_id, release_type, purpose, bank_name?,
    target_business_unit_id?, expected_return_date?, notes?}``.
    TO_BANK needs ``bank_name``; TO_SUBSIDIARY needs an active
    ``target_business_unit_id``.
    """
    data = data or {}
    errors = _collect(data, ("property_id", "release_type", "purpose"))
    release_type = data.get("release_type")
    if release_type and release_type not in {t.value for t in ReleaseType}:
        errors["release_type"] = f"release_type must be one of {[t.value for t in ReleaseType]}"
    if release_type == ReleaseType.TO_BANK.value and not (data.get("bank_name") or "").strip():
        errors["bank_name"] = "bank_name is required for a release to a bank"
    if release_type == ReleaseType.TO_SUBSIDIARY.value and parse_int(data.get("target_business_unit_id")) is None:
        errors["target_business_unit_id"] = "target_business_unit_id is required for a release to a subsidiary"
    expected_return = parse_date(data.get("expected_return_date"))
    if data.get("expected_return_date") and expected_return is None:
        errors["expected_return_date"] = "expected_return_date must be a date"
    if errors:
        raise ValidationError("Invalid release", details=errors)

    target_bu_id = None
    if release_type == ReleaseType.TO_SUBSIDIARY.value:
        target_bu_id = _require_active_business_unit(
            parse_int(data["target_business_unit_id"]), "target_business_unit_id",
        ).id

    def build(prop):
        return PropertyRelease(
            property_id=prop.id,
            release_type=release_type,
            bank_name=data.get("bank_name") if release_type == ReleaseType.TO_BANK.value else None,
            target_business_unit_id=target_bu_id,
            purpose=data["purpose"].strip(),
            expected_return_date=expected_return,
            notes=data.get("notes"),
            released_by_id=actor_id,
        )

    return _open_movement(RELEASES, business_unit_id, parse_int(data["property_id"]), actor_id, build)


def create_turnover(business_unit_id: int, data: dict, actor_id: int) -> PropertyTurnover:
    """Open a turnover request to another business unit.

    Body: ``{property_id, to_business_unit_id, purpose, notes?}``.
    """
    data = data or {}
    errors = _collect(data, ("property_id", "to_business_unit_id", "purpose"))
    to_bu_id = parse_int(data.get("to_business_unit_id"))
    if "to_business_unit_id" not in errors:
        if to_bu_id is None:
            errors["to_business_unit_id"] = "to_business_unit_id must be an integer"
        elif to_bu_id == business_unit_id:
            errors["to_business_unit_id"] = "cannot turn a property over to its own business unit"
    if errors:
        raise ValidationError("Invalid turnover", details=errors)
    _require_active_business_unit(to_bu_id, "to_business_unit_id")

    def build(prop):
        return PropertyTurnover(
            property_id=prop.id,
            from_business_unit_id=business_unit_id,
            to_business_unit_id=to_bu_id,
            purpose=data["purpose"].strip(),
            notes=data.get("notes"),
            turned_over_by_id=actor_id,
        )

    return _open_movement(TURNOVERS, business_unit_id, parse_int(data["property_id"]), actor_id, build)


def create_return(business_unit_id: int, data: dict, actor_id: int) -> PropertyReturn:
    """Open a return request for a released property.

    Body: ``{property_id, reason, release_id?, notes?}``.  When
    ``release_id`` is omitted the property's latest completed or approved
    release is linked, if there is one.
    """
    data = data or {}
    errors = _collect(data, ("property_id", "reason"))
    if errors:
        raise ValidationError("Invalid return", details=errors)
    property_id = parse_int(data["property_id"])

    release_id = parse_int(data.get("release_id"))
    if data.get("release_id") is not None:
        release = db.session.get(PropertyRelease, release_id) if release_id is not None else None
        if release is None or release.property_id != property_id:
            raise ValidationError(
                "Invalid return", details={"release_id": "release not found for this property"},
            )
    else:
        latest = (
            PropertyRelease.query
            .filter(
                PropertyRelease.property_id == property_id,
                PropertyRelease.status.in_(
                    [TransactionStatus.COMPLETED.value, TransactionStatus.APPROVED.value]
                ),
            )
            .order_by(PropertyRelease.created_at.desc(), PropertyRelease.id.desc())
            .first()
        )
        release_id = latest.id if latest else None

    def build(prop):
        return PropertyReturn(
            property_id=prop.id,
            release_id=release_id,
            reason=data["reason"].strip(),
            notes=data.get("notes"),
            returned_by_id=actor_id,
        )

    return _open_movement(RETURNS, business_unit_id, property_id, actor_id, build)


# ═══════════════════════════════════════════════════════════════
# Resolution (approval outcome → movement + property)
# ═══════════════════════════════════════════════════════════════

def _held_status(kind: MovementKind, movement) -> str:
    """The property status an open movement is responsible for."""
    if movement.status == TransactionStatus.PENDING.value:
        return PropertyStatus.UNDER_REVIEW.value
    return kind.destination(movement)


def _move_property(kind: MovementKind, movement, held: str, new_status: str) -> bool:
    """Set the property to *new_status* only while it still holds *held*.

    Another movement may have taken the property over since; its status is
    left alone.
    """
    prop = movement.property
    if prop.status != held:
        logger.warning(
            "%s %s leaves property %s as %s (expected %s)",
            kind.entity_type.value, movement.id, prop.id, prop.status, held,
            extra={"approval_request_id": movement.approval_request_id, "event_type": "movement.resolve"},
        )
        return False
    prop.status = new_status
    return True


def _restore_property(kind: MovementKind, movement, held: str) -> bool:
    return _move_property(
        kind, movement, held, movement.prior_property_status or PropertyStatus.ACTIVE.value,
    )


def _other_open_movement(movement):
    """Any open movement on the same property other than *movement*."""
    for other in MOVEMENT_KINDS.values():
        q = other.model.query.filter(
            other.model.property_id == movement.property_id,
            other.model.status.in_(OPEN_TRANSACTION_STATUSES),
        )
        if isinstance(movement, other.model):
            q = q.filter(other.model.id != movement.id)
        found = q.first()
        if found is not None:
            return other, found
    return None


def _resolve(kind: MovementKind, request: ApprovalRequest, final_response) -> None:
    movement = kind.model.query.filter_by(approval_request_id=request.id).first()
    if movement is None:
        logger.warning(
            "No %s linked to approval request %s", kind.entity_type.value, request.id,
            extra={"approval_request_id": request.id, "event_type": "movement.resolve"},
        )
        return

    prop = movement.property
    old = {"movement": movement.status, "property": prop.status}
    held = _held_status(kind, movement)
    if request.status in APPROVED_STATUSES:
        movement.status = TransactionStatus.APPROVED.value
        movement.approved_by_id = final_response.responded_by_id if final_response else None
        _move_property(kind, movement, held, kind.destination(movement))
        if isinstance(movement, PropertyRelease):
            movement.date_released = _utcnow()
    elif request.status == ApprovalRequestStatus.REJECTED.value:
        movement.status = TransactionStatus.REJECTED.value
        _restore_property(kind, movement, held)
    elif request.status == ApprovalRequestStatus.CANCELLED.value:
        movement.status = TransactionStatus.CANCELLED.value
        _restore_property(kind, movement, held)
    else:
        return

    write_audit(
        entity_type=_audit_entity(kind), entity_id=movement.id, action="movement.resolve",
        actor_user_id=final_response.responded_by_id if final_response else None,
        business_unit_id=request.business_unit_id,
        diff={
            "approval_status": request.status,
            "movement_status": {"old": old["movement"], "new": movement.status},
            "property_status": {"old": old["property"], "new": prop.status},
        },
    )
    logger.info(
        "%s %s resolved → %s (property %s → %s)",
        kind.entity_type.value, movement.id, movement.status, old["property"], prop.status,
        extra={
            "approval_request_id": request.id, "business_unit_id": request.business_unit_id,
            "event_type": "movement.resolve",
        },
    )


@register_resolution_handler(ApprovalEntityType.PROPERTY_RELEASE)
def _on_release_resolved(request, final_response):
    _resolve(RELEASES, request, final_response)


@register_resolution_handler(ApprovalEntityType.PROPERTY_TURNOVER)
def _on_turnover_resolved(request, final_response):
    _resolve(TURNOVERS, request, final_response)


@register_resolution_handler(ApprovalEntityType.PROPERTY_RETURN)
def _on_return_resolved(request, final_response):
    _resolve(RETURNS, request, final_response)


# ═══════════════════════════════════════════════════════════════
# Queries & edits
# ═══════════════════════════════════════════════════════════════

def get_movement(kind, business_unit_id: int, movement_id: int):
    """The movement if its property belongs to *business_unit_id*."""
    kind = get_kind(kind)
    movement = db.session.get(kind.model, movement_id)
    if movement is None or movement.property.business_unit_id != business_unit_id:
        raise NotFoundError(resource=kind.model.__name__, resource_id=movement_id)
    return movement


def list_movements(kind, business_unit_id: int, status: str | None = None):
    """Query of the business unit's movements of one kind, newest first."""
    kind = get_kind(kind)
    q = kind.model.query.join(Property, kind.model.property_id == Property.id).filter(
        Property.business_unit_id == business_unit_id,
    )
    if status:
        q = q.filter(kind.model.status == status)
    return q.order_by(kind.model.created_at.desc(), kind.model.id.desc())


_EDITABLE_FIELDS = {
    "releases": ("purpose", "bank_name", "expected_return_date", "notes"),
    "turnovers": ("purpose", "notes"),
    "returns": ("reason", "notes"),
}
_REQUIRED_TEXT = ("purpose", "reason", "bank_name")


def update_movement(kind, business_unit_id: int, movement_id: int, patch: dict, actor_id: int):
    """Edit the descriptive fields of a PENDING movement.

    Property, destination and approval linkage are fixed at creation;
    ``bank_name`` only applies to TO_BANK releases.
    """
    kind = get_kind(kind)
    movement = get_movement(kind, business_unit_id, movement_id)
    if movement.status != TransactionStatus.PENDING.value:
        raise InvalidStateError(
            f"{kind.model.__name__} {movement.id} is {movement.status}; only PENDING movements can be edited"
        )

    data = patch or {}
    allowed = _EDITABLE_FIELDS[kind.name]
    errors = {key: "field cannot be updated here" for key in sorted(set(data) - set(allowed))}
    patch_keys = set(data) & set(allowed)
    for key in _REQUIRED_TEXT:
        if key in patch_keys and (not isinstance(data[key], str) or not data[key].strip()):
            errors[key] = f"{key} is required"
    if "notes" in data and data["notes"] is not None and not isinstance(data["notes"], str):
        errors["notes"] = "notes must be a string"
    if "bank_name" in patch_keys and movement.release_type != ReleaseType.TO_BANK.value:
        errors["bank_name"] = "bank_name only applies to a release to a bank"
    if "expected_return_date" in patch_keys:
        expected_return = parse_date(data["expected_return_date"])
        if data["expected_return_date"] and expected_return is None:
            errors["expected_return_date"] = "expected_return_date must be a date"
    if errors:
        raise ValidationError(f"Invalid {kind.name[:-1]} update", details=errors)

    diff = {}
    for key in allowed:
        if key not in data:
            continue
        value = data[key]
        if key == "expected_return_date":
            value = parse_date(value)
        elif key in _REQUIRED_TEXT:
            value = value.strip()
        old = getattr(movement, key)
        if old != value:
            diff[key] = {"old": old, "new": value}
            setattr(movement, key, value)

    write_audit(
        entity_type=_audit_entity(kind), entity_id=movement.id, action="movement.update",
        actor_user_id=actor_id, business_unit_id=business_unit_id, diff=diff,
    )
    commit_or_raise()
    logger.info(
        "%s %s updated (%s)", kind.entity_type.value, movement.id, ", ".join(diff) or "no changes",
        extra={"business_unit_id": business_unit_id, "user_id": actor_id, "event_type": "movement.update"},
    )
    return movement


def get_movement_stats(kind, business_unit_id: int) -> dict:
    """Counts per TransactionStatus for one movement kind in a business unit.

    Releases also report counts per release type and how many open
    releases are past their expected return date.
    """
    kind = get_kind(kind)
    rows = (
        db.session.query(kind.model.status, func.count(kind.model.id))
        .join(Property, kind.model.property_id == Property.id)
        .filter(Property.business_unit_id == business_unit_id)
        .group_by(kind.model.status)
        .all()
    )
    by_status = {s.value: 0 for s in TransactionStatus}
    by_status.update(dict(rows))
    stats = {"total": sum(by_status.values()), "by_status": by_status}

    if kind is RELEASES:
        by_type = {t.value: 0 for t in ReleaseType}
        by_type.update(dict(
            db.session.query(PropertyRelease.release_type, func.count(PropertyRelease.id))
            .join(Property, PropertyRelease.property_id == Property.id)
            .filter(Property.business_unit_id == business_unit_id)
            .group_by(PropertyRelease.release_type)
            .all()
        ))
        stats["by_release_type"] = by_type
        stats["overdue"] = (
            list_movements(RELEASES, business_unit_id)
            .filter(
                PropertyRelease.expected_return_date < date.today(),
                PropertyRelease.status.in_(OPEN_TRANSACTION_STATUSES),
            )
            .count()
        )
    return stats


# ═══════════════════════════════════════════════════════════════
# Complete / cancel
# ═══════════════════════════════════════════════════════════════

def complete_movement(kind, business_unit_id: int, movement_id: int, actor_id: int,
                      received_by_id: int | None = None):
    """Confirm the physical hand-over of an APPROVED movement."""
    kind = get_kind(kind)
    movement = get_movement(kind, business_unit_id, movement_id)
    if movement.status != TransactionStatus.APPROVED.value:
        raise InvalidStateError(
            f"{kind.model.__name__} {movement.id} is {movement.status}; only APPROVED movements can be completed"
        )
    movement.status = TransactionStatus.COMPLETED.value
    movement.received_by_id = received_by_id or actor_id
    movement.completed_at = _utcnow()
    write_audit(
        entity_type=_audit_entity(kind), entity_id=movement.id, action="movement.complete",
        actor_user_id=actor_id, business_unit_id=business_unit_id,
        diff={"received_by_id": movement.received_by_id},
    )
    commit_or_raise()
    logger.info(
        "%s %s completed", kind.entity_type.value, movement.id,
        extra={"business_unit_id": business_unit_id, "user_id": actor_id, "event_type": "movement.complete"},
    )
    return movement


def cancel_movement(kind, business_unit_id: int, movement_id: int, actor_id: int):
    """Cancel a PENDING or APPROVED movement and restore the property.

    A still-pending approval request is cancelled along with it.  Refused
    while another movement on the same property is open.
    """
    kind = get_kind(kind)
    try:
        movement = get_movement(kind, business_unit_id, movement_id)
        if movement.status not in (TransactionStatus.PENDING.value, TransactionStatus.APPROVED.value):
            raise InvalidStateError(
                f"{kind.model.__name__} {movement.id} is {movement.status} and cannot be cancelled"
            )
        blocking = _other_open_movement(movement)
        if blocking is not None:
            other_kind, other = blocking
            raise InvalidStateError(
                f"Property {movement.property.title_number} has an open "
                f"{other_kind.entity_type.value} (id={other.id}); resolve it first"
            )
        held = _held_status(kind, movement)
        req = movement.approval_request
        if req is not None and req.status == ApprovalRequestStatus.PENDING.value:
            approval_service.withdraw_request(req, actor_id)

        old_status = movement.status
        movement.status = TransactionStatus.CANCELLED.value
        _restore_property(kind, movement, held)
        write_audit(
            entity_type=_audit_entity(kind), entity_id=movement.id, action="movement.cancel",
            actor_user_id=actor_id, business_unit_id=business_unit_id,
            diff={"status": {"old": old_status, "new": movement.status},
                  "property_status": movement.property.status},
        )
        commit_or_raise()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "%s %s cancelled", kind.entity_type.value, movement.id,
        extra={"business_unit_id": business_unit_id, "user_id": actor_id, "event_type": "movement.cancel"},
    )
    return movement
