from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from kommo_bridge.database import Base


class KVEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True)  # NULL = no expiry
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
