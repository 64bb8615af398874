"""Wiring of the what-if pipeline.

SandboxRuntime owns the queue, the notification bus and the worker pool and
opens/closes them in order. The FastAPI app keeps one on app.state; tests
build their own with in-memory fakes.
"""

import logging
from typing import Optional

from fastapi import Request

from .audit import AuditService
from .calculation_worker import CalculationWorker, WorkerPool
from .config import ConfigService
from .gains_engine import GainsEngine
from .job_queue import JobQueue, SqlJobQueue
from .notifications import NotificationBus, InMemoryNotificationBus
from .session_manager import SessionManager
from .trade_ledger import TradeLedger

logger = logging.getLogger(__name__)


class SandboxRuntime:
    """Explicitly constructed pipeline dependencies."""

    def __init__(
        self,
        session_maker,
        queue: JobQueue,
        bus: NotificationBus,
        engine: Optional[GainsEngine] = None,
        concurrency: int = 2,
        poll_interval: float = 0.5,
        claim_timeout: float = 300.0,
        sweep_interval: float = 30.0,
        max_pending_per_user: int = 0,
        audit: bool = True,
    ):
        self.session_maker = session_maker
        self.queue = queue
        self.bus = bus
        self.audit = AuditService(session_maker) if audit else None

        self.ledger = TradeLedger(session_maker)
        self.sessions = SessionManager(
            session_maker,
            queue,
            audit=self.audit,
            max_pending_per_user=max_pending_per_user,
        )
        self.worker = CalculationWorker(
            session_maker,
            self.ledger,
            bus,
            engine=engine,
            audit=self.audit,
        )
        self.pool = WorkerPool(
            queue,
            self.worker,
            concurrency=concurrency,
            poll_interval=poll_interval,
            claim_timeout=claim_timeout,
            sweep_interval=sweep_interval,
        )

    @classmethod
    def from_config(cls, config: ConfigService, session_maker) -> "SandboxRuntime":
        """Build the production wiring: SQL-backed queue, in-process bus."""
        queue = SqlJobQueue(
            session_maker,
            visibility_timeout=config.get("worker.visibility_timeout_seconds"),
            poll_interval=config.get("worker.poll_interval_seconds"),
            max_attempts=config.get("worker.max_attempts"),
        )
        engine = GainsEngine(
            oversell_policy=config.get("gains.oversell_policy"),
            long_term_days=config.get("gains.long_term_days"),
        )
        return cls(
            session_maker,
            queue,
            InMemoryNotificationBus(),
            engine=engine,
            concurrency=config.get("worker.concurrency"),
            poll_interval=config.get("worker.poll_interval_seconds"),
            claim_timeout=config.get("worker.claim_timeout_seconds"),
            sweep_interval=config.get("worker.sweep_interval_seconds"),
            max_pending_per_user=config.get("worker.max_pending_per_user"),
        )

    async def open(self, start_workers: bool = True) -> None:
        await self.queue.open()
        await self.bus.open()
        if start_workers:
            await self.pool.start()
        logger.info("Sandbox runtime opened")

    async def close(self) -> None:
        await self.pool.stop()
        await self.bus.close()
        await self.queue.close()
        logger.info("Sandbox runtime closed")


def get_runtime(request: Request) -> SandboxRuntime:
    """Dependency returning the app's runtime."""
    return request.app.state.sandbox


def get_session_manager(request: Request) -> SessionManager:
    """Dependency returning the app's session manager."""
    return request.app.state.sandbox.sessions
