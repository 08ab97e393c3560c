"""
Property Models — property master record and its three movement kinds.

Models:
    - Property: one titled property owned by a business unit.
    - PropertyRelease: release to a bank, a subsidiary or an external party.
    - PropertyTurnover: transfer of custody to another business unit.
    - PropertyReturn: a released property coming back.

Each movement carries ``approval_request_id`` and ``prior_property_status``;
the latter is what the property is restored to when the approval is
rejected or the movement is cancelled.
"""

from datetime import datetime, timezone
from enum import Enum

from property_records.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class PropertyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RELEASED = "RELEASED"
    BANK_CUSTODY = "BANK_CUSTODY"
    TURNED_OVER = "TURNED_OVER"
    INACTIVE = "INACTIVE"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReleaseType(str, Enum):
    TO_BANK = "TO_BANK"
    TO_SUBSIDIARY = "TO_SUBSIDIARY"
    TO_EXTERNAL = "TO_EXTERNAL"


OPEN_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.PENDING.value,
    TransactionStatus.APPROVED.value,
    TransactionStatus.IN_PROGRESS.value,
})


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Property
# ═════════════════════════════════════════════════════════════════════════════

class Property(db.Model):
    __tablename__ = "properties"

    id = db.Column(db.Integer, primary_key=True)
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id"), nullable=False, index=True,
    )
    title_number = db.Column(db.String(100), unique=True, nullable=False)
    property_name = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(300))
    status = db.Column(
        db.String(20), nullable=False, default=PropertyStatus.ACTIVE.value,
        comment="ACTIVE | PENDING | UNDER_REVIEW | RELEASED | BANK_CUSTODY | TURNED_OVER | INACTIVE",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    business_unit = db.relationship("BusinessUnit")

    def to_dict(self):
        return {
            "id": self.id,
            "business_unit_id": self.business_unit_id,
            "title_number": self.title_number,
            "property_name": self.property_name,
            "location": self.location,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_subset(self):
        return {
            "id": self.id,
            "title_number": self.title_number,
            "property_name": self.property_name,
            "status": self.status,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Movements
# ═════════════════════════════════════════════════════════════════════════════

class _MovementMixin:
    """Columns shared by every movement kind."""

    id = db.Column(db.Integer, primary_key=True)
    notes = db.Column(db.Text)
    status = db.Column(
        db.String(20), nullable=False, default=TransactionStatus.PENDING.value,
        comment="PENDING | APPROVED | REJECTED | IN_PROGRESS | COMPLETED | CANCELLED",
    )
    prior_property_status = db.Column(db.String(20), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def _base_dict(self):
        return {
            "id": self.id,
            "property_id": self.property_id,
            "property": self.property.to_subset() if self.property else None,
            "status": self.status,
            "notes": self.notes,
            "approval_request_id": self.approval_request_id,
            "approved_by_id": self.approved_by_id,
            "received_by_id": self.received_by_id,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PropertyRelease(_MovementMixin, db.Model):
    __tablename__ = "property_releases"

    property_id = db.Column(db.Integer, db.ForeignKey("properties.id"), nullable=False, index=True)
    release_type = db.Column(
        db.String(20), nullable=False, comment="TO_BANK | TO_SUBSIDIARY | TO_EXTERNAL",
    )
    bank_name = db.Column(db.String(200))
    target_business_unit_id = db.Column(db.Integer, db.ForeignKey("business_units.id"))
    purpose = db.Column(db.Text, nullable=False)
    expected_return_date = db.Column(db.Date)
    date_released = db.Column(db.DateTime(timezone=True))
    released_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    received_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approval_request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"))

    property = db.relationship("Property")
    approval_request = db.relationship("ApprovalRequest")

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "release_type": self.release_type,
            "bank_name": self.bank_name,
            "target_business_unit_id": self.target_business_unit_id,
            "purpose": self.purpose,
            "expected_return_date": _iso(self.expected_return_date),
            "date_released": _iso(self.date_released),
            "released_by_id": self.released_by_id,
        })
        return d


class PropertyTurnover(_MovementMixin, db.Model):
    __tablename__ = "property_turnovers"

    property_id = db.Column(db.Integer, db.ForeignKey("properties.id"), nullable=False, index=True)
    from_business_unit_id = db.Column(db.Integer, db.ForeignKey("business_units.id"), nullable=False)
    to_business_unit_id = db.Column(db.Integer, db.ForeignKey("business_units.id"), nullable=False)
    purpose = db.Column(db.Text, nullable=False)
    turned_over_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    received_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approval_request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"))

    property = db.relationship("Property")
    approval_request = db.relationship("ApprovalRequest")

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "from_business_unit_id": self.from_business_unit_id,
            "to_business_unit_id": self.to_business_unit_id,
            "purpose": self.purpose,
            "turned_over_by_id": self.turned_over_by_id,
        })
        return d


class PropertyReturn(_MovementMixin, db.Model):
    __tablename__ = "property_returns"

    property_id = db.Column(db.Integer, db.ForeignKey("properties.id"), nullable=False, index=True)
    release_id = db.Column(db.Integer, db.ForeignKey("property_releases.id"), nullable=True)
    reason = db.Column(db.Text, nullable=False)
    returned_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    received_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approval_request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"))

    property = db.relationship("Property")
    release = db.relationship("PropertyRelease")
    approval_request = db.relationship("ApprovalRequest")

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "release_id": self.release_id,
            "reason": self.reason,
            "returned_by_id": self.returned_by_id,
        })
        return d
