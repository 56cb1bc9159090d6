"""
Database models
"""
from .kv_entry import KVEntry
from .esi_record import EsiRecord

__all__ = ['KVEntry', 'EsiRecord']
