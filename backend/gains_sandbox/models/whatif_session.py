"""What-if session model - deferred gains previews.

A session is created in QUEUED state and moves exactly once to READY or
FAILED, written by the worker that completes it. It never reverts.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Boolean, DateTime, Text, JSON, Enum as SQLEnum

from .database import Base


class CostBasisMethod(str, Enum):
    """Cost basis accounting convention."""
    FIFO = "FIFO"
    LIFO = "LIFO"
    HIFO = "HIFO"
    SPEC_ID = "SPEC_ID"


class SessionStatus(str, Enum):
    """What-if session status enumeration."""
    QUEUED = "queued"
    READY = "ready"
    FAILED = "failed"


class WhatIfSession(Base):
    """What-if session row.

    summary and details are set iff status is READY; error_message iff FAILED.
    Amounts inside summary/details are decimal strings.
    """
    __tablename__ = "whatif_sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    method = Column(SQLEnum(CostBasisMethod), nullable=False)
    lot_order = Column(JSON, nullable=True)  # SPEC_ID only

    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.QUEUED, index=True)
    summary = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    cancel_requested = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)  # Last time a worker picked it up
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<WhatIfSession(id={self.id}, method={self.method.value}, status={self.status.value})>"

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.QUEUED

    def to_status_dict(self):
        """Status payload; summary present only when READY."""
        data = {
            "session_id": self.id,
            "status": self.status.value,
        }
        if self.status == SessionStatus.READY:
            data["summary"] = self.summary
        elif self.status == SessionStatus.FAILED:
            data["error"] = self.error_message
        return data

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "session_id": self.id,
            "user_id": self.user_id,
            "method": self.method.value,
            "status": self.status.value,
            "summary": self.summary,
            "error": self.error_message,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
