"""
Key-value entry model

Stores the sync core's persisted state (credentials, schedules,
run states, error log) as JSON documents.
"""
import json
from datetime import datetime
from ..extensions import db


class KVEntry(db.Model):
    """JSON document stored under a string key"""
    __tablename__ = 'kv_entries'

    key = db.Column(db.String(128), primary_key=True)
    value = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_value(self):
        """Decode the stored JSON value (None when unreadable)"""
        try:
            return json.loads(self.value)
        except (json.JSONDecodeError, TypeError):
            return None

    def set_value(self, value) -> None:
        self.value = json.dumps(value, ensure_ascii=False)

    def __repr__(self):
        return f'<KVEntry {self.key}>'
