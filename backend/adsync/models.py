"""SQLAlchemy ORM models and enums.

The engine keeps no relational schema of its own: cached insight blobs, sync
status and change history all live in one key/value table (`cache_entries`)
so the SQL backend behaves exactly like the in-memory and Redis ones.
"""

from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, LargeBinary
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class SyncModeEnum(str, enum.Enum):
    full = "full"
    incremental = "incremental"
    initial = "initial"  # short recent window for a fresh account


class SyncStateEnum(str, enum.Enum):
    idle = "idle"
    probing = "probing"
    planning = "planning"
    fetching = "fetching"
    flushing = "flushing"
    completed = "completed"
    partially_failed = "partially_failed"  # completed with skipped chunks
    cancelled = "cancelled"
    failed = "failed"


class LevelEnum(str, enum.Enum):
    account = "account"
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class ChangeOperationEnum(str, enum.Enum):
    save = "save"
    clear = "clear"
    merge = "merge"


class CreativeTypeEnum(str, enum.Enum):
    image = "image"
    video = "video"
    carousel = "carousel"
    unknown = "unknown"


# Models --------------------------------------------------------

class CacheEntry(Base):
    """One key of the SQL-backed key/value store.

    `size_bytes` is kept alongside the value so quota checks are a single
    SUM() instead of loading every blob.
    """

    __tablename__ = "cache_entries"

    key = Column(String(255), primary_key=True)
    value = Column(LargeBinary, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)  # leases only
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"CacheEntry({self.key}, {self.size_bytes} bytes)"
