from sqlalchemy import Column, String, DateTime
from models.base import Base, utcnow


SYNC_PAUSED_KEY = "sync_paused"


class SystemSetting(Base):
    """Operator-controlled switches, e.g. the global sync kill switch."""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
