"""
Approval Models — workflows, steps, requests, step responses.

A workflow is a named, ordered list of steps bound to one entity type.
Steps are versioned: replacing a workflow's step list bumps
``ApprovalWorkflow.version`` and writes a fresh set of steps under the new
version, leaving earlier versions in place.  Each ApprovalRequest pins the
version it was created against, so later edits never change the sign-off
path of a request that already exists.

ApprovalStepResponse is unique on (approval_request_id, step_id).  That
constraint, not an application check, is what stops two concurrent
responders from both recording a decision on the same step.
"""

from datetime import datetime, timezone
from enum import Enum

from property_records.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalEntityType(str, Enum):
    PROPERTY_RELEASE = "PROPERTY_RELEASE"
    PROPERTY_TURNOVER = "PROPERTY_TURNOVER"
    PROPERTY_RETURN = "PROPERTY_RETURN"
    RPT_PAYMENT = "RPT_PAYMENT"
    DOCUMENT_APPROVAL = "DOCUMENT_APPROVAL"
    USER_ASSIGNMENT = "USER_ASSIGNMENT"


class ApprovalRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    OVERRIDDEN = "OVERRIDDEN"
    CANCELLED = "CANCELLED"


class ApprovalDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


ENTITY_TYPE_VALUES = frozenset(e.value for e in ApprovalEntityType)
TERMINAL_STATUSES = frozenset({
    ApprovalRequestStatus.APPROVED.value,
    ApprovalRequestStatus.REJECTED.value,
    ApprovalRequestStatus.OVERRIDDEN.value,
    ApprovalRequestStatus.CANCELLED.value,
})
APPROVED_STATUSES = frozenset({
    ApprovalRequestStatus.APPROVED.value,
    ApprovalRequestStatus.OVERRIDDEN.value,
})


# ═════════════════════════════════════════════════════════════════════════════
# Workflow definition
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalWorkflow(db.Model):
    __tablename__ = "approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text)
    entity_type = db.Column(
        db.String(30), nullable=False, index=True,
        comment="PROPERTY_RELEASE | PROPERTY_TURNOVER | PROPERTY_RETURN | …",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Current step-list version; requests pin the version they start on",
    )
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "ApprovalStep", back_populates="workflow", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    requests = db.relationship("ApprovalRequest", back_populates="workflow", lazy="dynamic")

    def steps_for_version(self, version=None):
        """Steps of one version (default: current), ordered by step_order."""
        v = self.version if version is None else version
        return self.steps.filter_by(version=v).order_by(ApprovalStep.step_order).all()

    def to_dict(self, include_steps=False):
        current = self.steps_for_version()
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "is_active": self.is_active,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "_count": {"steps": len(current), "requests": self.requests.count()},
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in current]
        return d


class ApprovalStep(db.Model):
    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    step_name = db.Column(db.String(200), nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
    step_order = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    can_override = db.Column(db.Boolean, nullable=False, default=False)
    override_min_level = db.Column(
        db.Integer, nullable=True,
        comment="Minimum role level that may answer this step in place of role_id",
    )

    __table_args__ = (
        db.UniqueConstraint(
            "workflow_id", "version", "step_order", name="uq_approval_step_order",
        ),
        db.Index("ix_approval_steps_workflow_version", "workflow_id", "version"),
    )

    workflow = db.relationship("ApprovalWorkflow", back_populates="steps")
    role = db.relationship("Role")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "version": self.version,
            "step_name": self.step_name,
            "role_id": self.role_id,
            "role": self.role.to_subset() if self.role else None,
            "step_order": self.step_order,
            "is_required": self.is_required,
            "can_override": self.can_override,
            "override_min_level": self.override_min_level,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Requests & responses
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalRequest(db.Model):
    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("approval_workflows.id"), nullable=False)
    workflow_version = db.Column(db.Integer, nullable=False)
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id"), nullable=False, index=True,
    )
    property_id = db.Column(db.Integer, db.ForeignKey("properties.id"), nullable=True)

    # Polymorphic target
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the target movement/document, stored as a string",
    )

    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=ApprovalRequestStatus.PENDING.value,
        comment="PENDING | APPROVED | REJECTED | OVERRIDDEN | CANCELLED",
    )
    current_step_order = db.Column(db.Integer, nullable=False, default=1)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_approval_requests_entity", "entity_type", "entity_id"),
        db.Index("ix_approval_requests_bu_status", "business_unit_id", "status"),
    )

    workflow = db.relationship("ApprovalWorkflow", back_populates="requests")
    requested_by = db.relationship("User", foreign_keys=[requested_by_id])
    target_property = db.relationship("Property")
    responses = db.relationship(
        "ApprovalStepResponse", back_populates="request", lazy="dynamic",
        order_by="ApprovalStepResponse.responded_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def steps(self):
        """The pinned step list this request is resolved against."""
        return self.workflow.steps_for_version(self.workflow_version)

    def to_dict(self, include_details=False):
        d = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "business_unit_id": self.business_unit_id,
            "property_id": self.property_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "requested_by_id": self.requested_by_id,
            "status": self.status,
            "current_step_order": self.current_step_order,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_details:
            d["workflow"] = {"id": self.workflow.id, "name": self.workflow.name}
            d["steps"] = [s.to_dict() for s in self.steps]
            d["requested_by"] = self.requested_by.to_subset() if self.requested_by else None
            d["property"] = self.target_property.to_subset() if self.target_property else None
            d["responses"] = [r.to_dict() for r in self.responses.all()]
        return d


class ApprovalStepResponse(db.Model):
    """One decision on one step of one request.  Immutable once written."""

    __tablename__ = "approval_step_responses"

    id = db.Column(db.Integer, primary_key=True)
    approval_request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False
    )
    step_id = db.Column(db.Integer, db.ForeignKey("approval_steps.id"), nullable=False)
    responded_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, comment="APPROVED | REJECTED")
    comments = db.Column(db.Text)
    is_override = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when the responder qualified by role level, not by role match",
    )
    responded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("approval_request_id", "step_id", name="uq_step_response_request_step"),
    )

    request = db.relationship("ApprovalRequest", back_populates="responses")
    step = db.relationship("ApprovalStep")
    responded_by = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "approval_request_id": self.approval_request_id,
            "step_id": self.step_id,
            "step_order": self.step.step_order if self.step else None,
            "step_name": self.step.step_name if self.step else None,
            "responded_by_id": self.responded_by_id,
            "responded_by": self.responded_by.to_subset() if self.responded_by else None,
            "status": self.status,
            "comments": self.comments,
            "is_override": self.is_override,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }
