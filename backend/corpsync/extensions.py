"""
Shared Flask extension instances.

Bound to the application in ``create_app`` through ``init_app``.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Database (kv_entries, esi_records)
db = SQLAlchemy()

# Schema migrations (flask db upgrade)
migrate = Migrate()
