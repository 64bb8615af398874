"""Audit log model for what-if pipeline events."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON

from .database import Base


class AuditLog(Base):
    """Audit log entry."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    meta = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action})>"
