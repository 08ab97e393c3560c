"""
Shared pytest fixtures for the Property Records test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - bu / other_bu: two active business units
    - roles: Staff, Manager, Director, VP, Managing Director (levels 0..4)
    - make_user / add_member / make_property: factories
    - auth_headers: bearer token header for a user
    - release_workflow: "Release Sign-off" (Manager → Director)
"""

import pytest

from property_records import create_app
from property_records.models import db as _db
from property_records.models.auth import BusinessUnit, BusinessUnitMember, Role, RolePermission, User
from property_records.models.property import Property, PropertyStatus
from property_records.services.jwt_service import generate_access_token
from property_records.services.permission_service import load_assignments


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


ALL_CAPS = ("create", "read", "update", "delete", "approve")


def grant(module, *caps):
    """RolePermission kwargs for *module* with the given capabilities."""
    return {"module": module, **{f"can_{c}": c in caps for c in ALL_CAPS}}


def _make_role(name, level, grants):
    role = Role(name=name, level=level)
    role.permissions = [RolePermission(**g) for g in grants]
    _db.session.add(role)
    return role


@pytest.fixture()
def bu():
    unit = BusinessUnit(name="Head Office")
    _db.session.add(unit)
    _db.session.commit()
    return unit


@pytest.fixture()
def other_bu():
    unit = BusinessUnit(name="Northern Subsidiary")
    _db.session.add(unit)
    _db.session.commit()
    return unit


@pytest.fixture()
def roles():
    """Five roles, one per level.

    Staff can raise movements and approval requests; Manager and up can
    also manage workflows; only the Managing Director manages users.
    """
    staff_grants = [
        grant("PROPERTY", "create", "read", "update"),
        grant("APPROVAL", "create", "read"),
    ]
    senior_grants = [
        grant("PROPERTY", *ALL_CAPS),
        grant("APPROVAL", *ALL_CAPS),
    ]
    created = {
        "staff": _make_role("Staff", 0, staff_grants),
        "manager": _make_role("Manager", 1, senior_grants),
        "director": _make_role("Director", 2, senior_grants),
        "vp": _make_role("VP", 3, senior_grants),
        "md": _make_role("Managing Director", 4, senior_grants + [grant("USER_MANAGEMENT", *ALL_CAPS)]),
    }
    _db.session.commit()
    return created


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(first_name="Test", last_name=None):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            first_name=first_name,
            last_name=last_name or f"User{counter['n']}",
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def add_member():
    def _add(user, unit, role, is_active=True):
        member = BusinessUnitMember(
            user_id=user.id, business_unit_id=unit.id, role_id=role.id, is_active=is_active,
        )
        _db.session.add(member)
        _db.session.commit()
        return member
    return _add


@pytest.fixture()
def make_property():
    counter = {"n": 0}

    def _make(unit, status=PropertyStatus.ACTIVE.value, name=None):
        counter["n"] += 1
        prop = Property(
            business_unit_id=unit.id,
            title_number=f"TCT-{1000 + counter['n']}",
            property_name=name or f"Lot {counter['n']}",
            location="Makati",
            status=status,
        )
        _db.session.add(prop)
        _db.session.commit()
        return prop
    return _make


@pytest.fixture()
def people(bu, roles, make_user, add_member):
    """One member of *bu* per role, keyed like ``roles``."""
    result = {}
    for key, role in roles.items():
        user = make_user(first_name=role.name)
        add_member(user, bu, role)
        result[key] = user
    return result


@pytest.fixture()
def assignments_for():
    def _load(user):
        return load_assignments(user.id)
    return _load


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id)}"}
    return _headers


# ── Workflow fixtures ────────────────────────────────────────────────────


def _release_signoff_definition(roles, name="Release Sign-off", **step1_extra):
    return {
        "name": name,
        "entity_type": "PROPERTY_RELEASE",
        "steps": [
            {"step_name": "Manager review", "role_id": roles["manager"].id, "step_order": 1, **step1_extra},
            {"step_name": "Director sign-off", "role_id": roles["director"].id, "step_order": 2},
        ],
    }


@pytest.fixture()
def signoff_definition(roles):
    """Builder for the two-step Manager → Director definition."""
    def _build(name="Release Sign-off", **step1_extra):
        return _release_signoff_definition(roles, name=name, **step1_extra)
    return _build


@pytest.fixture()
def release_workflow(roles, people):
    from property_records.services import workflow_service
    return workflow_service.create_workflow(_release_signoff_definition(roles), actor_id=people["md"].id)
