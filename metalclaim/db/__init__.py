"""Database module."""
from metalclaim.db.database import close_db, init_db
from metalclaim.db.models import Base, HostStateLog, LeaseRecord, PhysicalHostRecord

__all__ = [
    "init_db",
    "close_db",
    "Base",
    "PhysicalHostRecord",
    "HostStateLog",
    "LeaseRecord",
]
