"""
Property Records Administration
Model package — shared SQLAlchemy handle.

Every model module imports ``db`` from here so that one metadata object
covers the whole schema:

    from property_records.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
