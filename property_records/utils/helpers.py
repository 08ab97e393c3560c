"""Boundary parsing and commit helpers shared by services and blueprints."""
import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError

from property_records.core.exceptions import ConflictError
from property_records.models import db

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y")


def parse_date(value):
    """A ``date`` from a date, datetime or string; None when empty or unparseable.

    Strings may be ISO dates or datetimes, ``DD.MM.YYYY`` or ``DD/MM/YYYY``.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_int(value):
    """Return *value* as an int, or None when it is missing or not numeric.

    Booleans are rejected even though ``bool`` subclasses ``int``.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_raise(conflict_message="Duplicate or constraint violation"):
    """Commit the current session.

    IntegrityError → rollback + ConflictError(conflict_message).
    Anything else is rolled back and re-raised for the boundary to log.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise ConflictError(conflict_message) from exc
    except Exception:
        db.session.rollback()
        raise
