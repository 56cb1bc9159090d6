"""
ESI record model

One row per synced ESI object (member, asset, job, order, transaction,
mining ledger line, container log entry, contract), upserted by natural key.
"""
import json
from datetime import datetime
from ..extensions import db


class EsiRecord(db.Model):
    """Synced corporation data row"""
    __tablename__ = 'esi_records'
    __table_args__ = (
        db.UniqueConstraint('corporation_id', 'category', 'external_id', name='uq_esi_record_key'),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    corporation_id = db.Column(db.BigInteger, nullable=False, index=True)
    # members, assets, industry_jobs, market_orders, wallet_transactions, ...
    category = db.Column(db.String(64), nullable=False, index=True)
    # Natural key joined with ':' (e.g. "2112000001" or "1027:9000:34:2024-01-01")
    external_id = db.Column(db.String(255), nullable=False)
    payload = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_payload(self) -> dict:
        try:
            return json.loads(self.payload)
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        """Convert to dict"""
        return {
            'id': self.id,
            'corporation_id': self.corporation_id,
            'category': self.category,
            'external_id': self.external_id,
            'data': self.get_payload(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<EsiRecord {self.category}:{self.external_id}>'
