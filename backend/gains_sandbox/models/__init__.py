# Database Models

from .database import Base, engine, async_session_maker, get_session, init_db, configure_database
from .trade import Trade
from .whatif_session import WhatIfSession, SessionStatus, CostBasisMethod
from .calculation_job import CalculationJob, JobStatus
from .audit_log import AuditLog

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "configure_database",
    "Trade",
    "WhatIfSession",
    "SessionStatus",
    "CostBasisMethod",
    "CalculationJob",
    "JobStatus",
    "AuditLog",
]
