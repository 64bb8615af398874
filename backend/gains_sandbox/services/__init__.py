# Business Logic Services

from .errors import (
    GainsError,
    ValidationError,
    AdmissionError,
    SessionNotFoundError,
    ConfigurationError,
    ComputationError,
    InsufficientLotsError,
)
from .lot_ordering import (
    LotOrdering,
    Chronological,
    ByUnitPrice,
    Explicit,
    ordering_for,
    parse_method,
)
from .gains_engine import (
    GainsEngine,
    GainsResult,
    GainDetail,
    GainSummary,
    TradeRecord,
    summarize,
)
from .job_queue import (
    JobQueue,
    InMemoryJobQueue,
    SqlJobQueue,
    CalculationJobPayload,
    ClaimedJob,
)
from .notifications import (
    NotificationBus,
    InMemoryNotificationBus,
    Subscription,
    topic_for,
)
from .session_manager import SessionManager
from .calculation_worker import CalculationWorker, WorkerPool
from .trade_ledger import TradeLedger
from .audit import AuditService
from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
)
from .logging_service import setup_logging

__all__ = [
    # Errors
    "GainsError",
    "ValidationError",
    "AdmissionError",
    "SessionNotFoundError",
    "ConfigurationError",
    "ComputationError",
    "InsufficientLotsError",
    # Lot ordering
    "LotOrdering",
    "Chronological",
    "ByUnitPrice",
    "Explicit",
    "ordering_for",
    "parse_method",
    # Gains engine
    "GainsEngine",
    "GainsResult",
    "GainDetail",
    "GainSummary",
    "TradeRecord",
    "summarize",
    # Queue
    "JobQueue",
    "InMemoryJobQueue",
    "SqlJobQueue",
    "CalculationJobPayload",
    "ClaimedJob",
    # Notifications
    "NotificationBus",
    "InMemoryNotificationBus",
    "Subscription",
    "topic_for",
    # Pipeline
    "SessionManager",
    "CalculationWorker",
    "WorkerPool",
    "TradeLedger",
    "AuditService",
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    # Logging
    "setup_logging",
]
