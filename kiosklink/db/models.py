from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from kiosklink.db.session import Base


class CacheEntry(Base):
    """One key of the device's local identity cache."""

    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
