"""
Auth Models — business units, users, roles, role permissions, memberships.

A business unit is the tenant scope. A user holds at most one role per
business unit (BusinessUnitMember); the role carries a numeric authority
level and one capability row per module (RolePermission).

Memberships are never hard-deleted: removal flips ``is_active`` so that
historical approval responses keep a valid responder context.
"""

from datetime import datetime, timezone

from property_records.models import db

# ── Constants ────────────────────────────────────────────────────────────────

PERMISSION_MODULES = frozenset({
    "PROPERTY",
    "RPT",
    "USER_MANAGEMENT",
    "APPROVAL",
    "DOCUMENTS",
    "AUDIT",
})

# capability name → RolePermission column
CAPABILITY_COLUMNS = {
    "create": "can_create",
    "read": "can_read",
    "update": "can_update",
    "delete": "can_delete",
    "approve": "can_approve",
}

ROLE_LEVELS = {
    "STAFF": 0,
    "MANAGER": 1,
    "DIRECTOR": 2,
    "VP": 3,
    "MANAGING_DIRECTOR": 4,
}
MIN_ROLE_LEVEL = min(ROLE_LEVELS.values())
MAX_ROLE_LEVEL = max(ROLE_LEVELS.values())


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# 1. BUSINESS UNITS
# ═══════════════════════════════════════════════════════════════
class BusinessUnit(db.Model):
    __tablename__ = "business_units"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    members = db.relationship("BusinessUnitMember", back_populates="business_unit", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    memberships = db.relationship(
        "BusinessUnitMember", back_populates="user", lazy="dynamic",
    )

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
        }

    def to_subset(self):
        """Compact form embedded in approval and movement payloads."""
        return {"id": self.id, "first_name": self.first_name, "last_name": self.last_name}


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)
    level = db.Column(db.Integer, nullable=False, default=0)  # 0=Staff … 4=Managing Director
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    permissions = db.relationship(
        "RolePermission", back_populates="role", cascade="all, delete-orphan",
        order_by="RolePermission.module",
    )
    members = db.relationship("BusinessUnitMember", back_populates="role", lazy="dynamic")

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "level": self.level,
        }
        if include_permissions:
            d["permissions"] = [p.to_dict() for p in self.permissions]
        return d

    def to_subset(self):
        return {"id": self.id, "name": self.name, "level": self.level}


# ═══════════════════════════════════════════════════════════════
# 4. ROLE_PERMISSIONS (capability tuple per module)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    module = db.Column(db.String(50), nullable=False)
    can_create = db.Column(db.Boolean, nullable=False, default=False)
    can_read = db.Column(db.Boolean, nullable=False, default=False)
    can_update = db.Column(db.Boolean, nullable=False, default=False)
    can_delete = db.Column(db.Boolean, nullable=False, default=False)
    can_approve = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.UniqueConstraint("role_id", "module", name="uq_role_permission_module"),
    )

    role = db.relationship("Role", back_populates="permissions")

    def to_dict(self):
        return {
            "module": self.module,
            "can_create": self.can_create,
            "can_read": self.can_read,
            "can_update": self.can_update,
            "can_delete": self.can_delete,
            "can_approve": self.can_approve,
        }


# ═══════════════════════════════════════════════════════════════
# 5. BUSINESS_UNIT_MEMBERS (user ↔ business unit, one role each)
# ═══════════════════════════════════════════════════════════════
class BusinessUnitMember(db.Model):
    __tablename__ = "business_unit_members"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id", ondelete="CASCADE"), nullable=False
    )
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    joined_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("user_id", "business_unit_id", name="uq_member_user_business_unit"),
        db.Index("ix_business_unit_members_bu", "business_unit_id"),
        db.Index("ix_business_unit_members_user", "user_id"),
    )

    user = db.relationship("User", back_populates="memberships")
    business_unit = db.relationship("BusinessUnit", back_populates="members")
    role = db.relationship("Role", back_populates="members")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "business_unit_id": self.business_unit_id,
            "role": self.role.to_subset() if self.role else None,
            "is_active": self.is_active,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }
