"""Calculation worker and worker pool for what-if sessions.

CRITICAL: A session reaches exactly one terminal state.
- The terminal write is conditional on status == QUEUED
- Only the writer that wins that update publishes the terminal message
- Redelivered jobs for terminal sessions are acknowledged without work

Job lifecycle:
    claim -> load session -> load trades -> match (thread) -> persist -> publish -> ack

Any exception from loading trades, matching or aggregating is persisted as
FAILED on that session alone. Exceptions while persisting are left to the
pool, which nacks the job so it is delivered again.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, update, func

from ..models import WhatIfSession, SessionStatus
from .audit import AuditService, PROCESS_START, PROCESS_COMPLETE, PROCESS_FAILED
from .errors import GainsError
from .gains_engine import GainsEngine, GainsResult
from .job_queue import JobQueue, CalculationJobPayload
from .lot_ordering import parse_method
from .notifications import NotificationBus, topic_for, completion_message, failure_message
from .trade_ledger import TradeLedger

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"
TIMED_OUT_MESSAGE = "timed out waiting for a worker"


class CalculationWorker:
    """Computes one session per job."""

    def __init__(
        self,
        session_maker,
        ledger: TradeLedger,
        bus: NotificationBus,
        engine: Optional[GainsEngine] = None,
        audit: Optional[AuditService] = None,
    ):
        """Initialize calculation worker.

        Args:
            session_maker: Async session factory
            ledger: Trade ledger to read trades from
            bus: Notification bus for terminal messages
            engine: Gains engine (defaults to FIFO-capable engine with "error" oversell policy)
            audit: Audit trail, optional
        """
        self.session_maker = session_maker
        self.ledger = ledger
        self.bus = bus
        self.engine = engine or GainsEngine()
        self.audit = audit

    async def process(self, payload: CalculationJobPayload) -> Optional[SessionStatus]:
        """Compute and complete one session.

        Returns:
            The session's status after processing, or None if the session
            does not exist
        """
        session_id = payload.session_id

        async with self.session_maker() as session:
            whatif = await session.get(WhatIfSession, session_id)
            if whatif is None:
                logger.warning(f"Job for unknown session {session_id}, dropping")
                return None

            if whatif.is_terminal:
                logger.info(f"Session {session_id} already {whatif.status.value}, skipping redelivery")
                return whatif.status

            cancel_requested = whatif.cancel_requested
            await session.execute(
                update(WhatIfSession)
                .where(
                    WhatIfSession.id == session_id,
                    WhatIfSession.status == SessionStatus.QUEUED,
                )
                .values(started_at=datetime.utcnow())
            )
            await session.commit()

        if cancel_requested:
            await self.fail_session(session_id, payload.user_id, CANCELLED_MESSAGE)
            return SessionStatus.FAILED

        start = time.monotonic()
        if self.audit:
            await self.audit.record(payload.user_id, PROCESS_START, {
                "session_id": session_id,
                "method": payload.method,
            })

        try:
            method = parse_method(payload.method)
            trades = await self.ledger.trades_for_user(payload.user_id)
            result: GainsResult = await asyncio.to_thread(
                self.engine.calculate, trades, method, payload.lot_order
            )
        except GainsError as e:
            logger.warning(f"Session {session_id}: calculation failed: {e}")
            await self.fail_session(session_id, payload.user_id, str(e))
            return SessionStatus.FAILED
        except Exception as e:
            logger.error(f"Session {session_id}: unexpected error during calculation: {e}", exc_info=True)
            await self.fail_session(session_id, payload.user_id, f"Calculation failed: {e}")
            return SessionStatus.FAILED

        completed = await self._complete(
            session_id,
            SessionStatus.READY,
            summary=result.summary.to_dict(),
            details=[d.to_dict() for d in result.details],
        )
        if completed:
            await self._publish(session_id, completion_message(result.summary))

            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                f"Gains calc for session {session_id} done in {duration_ms}ms "
                f"({len(result.details)} detail(s), total {result.summary.total_gain})"
            )
            if self.audit:
                await self.audit.record(payload.user_id, PROCESS_COMPLETE, {
                    "session_id": session_id,
                    "duration_ms": duration_ms,
                })
            return SessionStatus.READY

        return await self._current_status(session_id)

    async def fail_session(self, session_id: str, user_id: Optional[str], message: str) -> bool:
        """Move a QUEUED session to FAILED and publish the failure.

        Returns:
            True if this call made the transition
        """
        completed = await self._complete(session_id, SessionStatus.FAILED, error_message=message)
        if completed:
            await self._publish(session_id, failure_message(message))
            if self.audit:
                await self.audit.record(user_id, PROCESS_FAILED, {
                    "session_id": session_id,
                    "error": message,
                })
        return completed

    async def _complete(
        self,
        session_id: str,
        status: SessionStatus,
        summary: Optional[dict] = None,
        details: Optional[List[dict]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                update(WhatIfSession)
                .where(
                    WhatIfSession.id == session_id,
                    WhatIfSession.status == SessionStatus.QUEUED,
                )
                .values(
                    status=status,
                    summary=summary,
                    details=details,
                    error_message=error_message,
                    completed_at=datetime.utcnow(),
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.info(f"Session {session_id} was completed elsewhere, not overwriting")
            return False
        return True

    async def _publish(self, session_id: str, message: dict) -> None:
        # The status row is already persisted; a lost push is covered by polling.
        try:
            delivered = await self.bus.publish(topic_for(session_id), message)
            logger.debug(f"Session {session_id}: terminal message delivered to {delivered} listener(s)")
        except Exception as e:
            logger.error(f"Session {session_id}: failed to publish terminal message: {e}")

    async def _current_status(self, session_id: str) -> Optional[SessionStatus]:
        async with self.session_maker() as session:
            whatif = await session.get(WhatIfSession, session_id)
            return whatif.status if whatif else None


class WorkerPool:
    """Runs calculation workers against the shared queue.

    Also sweeps sessions that stayed QUEUED past the claim timeout, so no
    session waits forever when no worker picks up its job.
    """

    def __init__(
        self,
        queue: JobQueue,
        worker: CalculationWorker,
        concurrency: int = 2,
        poll_interval: float = 0.5,
        claim_timeout: float = 300.0,
        sweep_interval: float = 30.0,
    ):
        """Initialize worker pool.

        Args:
            queue: Work queue to claim jobs from
            worker: Worker that processes each job
            concurrency: Number of concurrent worker loops
            poll_interval: Seconds a worker waits for a job before re-checking for shutdown
            claim_timeout: Seconds a session may stay QUEUED without progress
            sweep_interval: Seconds between stale-session sweeps
        """
        self.queue = queue
        self.worker = worker
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.claim_timeout = claim_timeout
        self.sweep_interval = sweep_interval

        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start worker loops and the sweeper."""
        if self._running:
            return

        self._running = True
        for n in range(self.concurrency):
            worker_id = f"worker-{n + 1}"
            self._tasks[worker_id] = asyncio.create_task(self._run_worker(worker_id))
        self._tasks["sweeper"] = asyncio.create_task(self._run_sweeper())

        logger.info(f"WorkerPool started with {self.concurrency} worker(s)")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop loops; in-flight jobs get up to timeout seconds to finish."""
        self._running = False

        tasks = list(self._tasks.values())
        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for worker tasks, cancelling...")
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("WorkerPool stopped")

    async def run_once(self, worker_id: str = "worker-inline") -> bool:
        """Claim and process a single job if one is waiting.

        Returns:
            True if a job was processed
        """
        job = await self.queue.claim(worker_id, timeout=0)
        if job is None:
            return False

        await self._handle(job)
        return True

    async def drain(self) -> int:
        """Process jobs until the queue is empty; returns how many ran."""
        count = 0
        while await self.run_once():
            count += 1
        return count

    async def _run_worker(self, worker_id: str) -> None:
        logger.info(f"{worker_id}: Starting loop")

        while self._running:
            try:
                job = await self.queue.claim(worker_id, timeout=self.poll_interval)
                if job is None:
                    continue
                await self._handle(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{worker_id}: Error in worker loop: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

        logger.info(f"{worker_id}: Loop ended")

    async def _handle(self, job) -> None:
        if job.attempts > 1:
            logger.warning(
                f"Job {job.job_id} for session {job.payload.session_id} delivered "
                f"again (attempt {job.attempts})"
            )

        try:
            await self.worker.process(job.payload)
        except Exception as e:
            logger.error(
                f"Job {job.job_id} for session {job.payload.session_id} failed to complete: {e}",
                exc_info=True,
            )
            await self.queue.nack(job.job_id, str(e))
            return

        await self.queue.ack(job.job_id)

    async def _run_sweeper(self) -> None:
        while self._running:
            try:
                await self.sweep_stale_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error sweeping stale sessions: {e}", exc_info=True)

            # Sleep in short steps so stop() is not held up by the sweep interval
            waited = 0.0
            while self._running and waited < self.sweep_interval:
                step = min(self.poll_interval, self.sweep_interval - waited)
                await asyncio.sleep(step)
                waited += step

    async def sweep_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """Fail sessions that made no progress within the claim timeout.

        Returns:
            Number of sessions failed
        """
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=self.claim_timeout)

        async with self.worker.session_maker() as session:
            result = await session.execute(
                select(WhatIfSession.id, WhatIfSession.user_id).where(
                    WhatIfSession.status == SessionStatus.QUEUED,
                    func.coalesce(WhatIfSession.started_at, WhatIfSession.created_at) < cutoff,
                )
            )
            stale = result.all()

        failed = 0
        for session_id, user_id in stale:
            if await self.worker.fail_session(session_id, user_id, TIMED_OUT_MESSAGE):
                logger.warning(f"Session {session_id} timed out waiting for a worker")
                failed += 1
        return failed
