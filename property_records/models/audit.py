"""
Audit trail.

Every mutating service call appends one ``AuditLog`` row in the same
transaction as the change it records.  Rows are never updated or deleted.
"""

import json
from datetime import datetime, timezone

from flask import g, has_request_context

from property_records.models import db

AUDIT_ENTITY_TYPES = frozenset({
    "approval_workflow",
    "approval_request",
    "property_release",
    "property_turnover",
    "property_return",
    "role",
    "business_unit_member",
})

AUDIT_ACTIONS = frozenset({
    "workflow.create", "workflow.update", "workflow.replace_steps",
    "workflow.toggle", "workflow.duplicate", "workflow.delete",
    "approval.create", "approval.respond", "approval.cancel",
    "movement.create", "movement.update", "movement.resolve", "movement.complete",
    "movement.cancel",
    "role.create", "role.update", "role.replace_permissions", "role.delete",
    "member.assign", "member.deactivate",
})


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id", ondelete="SET NULL"), index=True,
    )
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True,
        comment="Null for system-initiated entries",
    )
    # Correlates the row with the log lines of the same HTTP request
    request_id = db.Column(db.String(64))
    diff_json = db.Column(db.Text, nullable=False, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        return json.loads(self.diff_json) if self.diff_json else {}

    def to_dict(self):
        return {
            "id": self.id,
            "business_unit_id": self.business_unit_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}/{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, actor_user_id=None,
                business_unit_id=None, diff=None) -> AuditLog:
    """Add one audit row and flush; the caller commits.

    Unknown entity types or actions raise ValueError.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"unknown audit entity type {entity_type!r}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"unknown audit action {action!r}")

    row = AuditLog(
        business_unit_id=business_unit_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        request_id=getattr(g, "request_id", None) if has_request_context() else None,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(row)
    db.session.flush()
    return row
