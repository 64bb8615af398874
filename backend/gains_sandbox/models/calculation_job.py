"""Calculation job model - the durable work queue.

Rows move pending -> claimed -> done. A claimed row whose claim is older
than the visibility timeout is handed out again (at-least-once delivery).
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index, Enum as SQLEnum

from .database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    DEAD = "dead"


class CalculationJob(Base):
    """Queued gains calculation."""
    __tablename__ = "calculation_jobs"
    __table_args__ = (Index("ix_calculation_jobs_status", "status", "available_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    payload = Column(JSON, nullable=False)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    claimed_by = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    available_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<CalculationJob(id={self.id}, status={self.status.value}, attempts={self.attempts})>"
