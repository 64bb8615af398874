"""Work queue for gains calculation jobs.

Delivery is at-least-once: a job may be handed out again if its worker
disappears before acknowledging it, so job handlers must be idempotent.

Two implementations share the JobQueue interface:
- SqlJobQueue: durable, backed by the calculation_jobs table
- InMemoryJobQueue: process-local, for tests and single-process runs
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

from sqlalchemy import select, update, func, and_, or_

from ..models import CalculationJob, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class CalculationJobPayload:
    """What a worker needs to compute one session."""
    session_id: str
    user_id: str
    method: str
    lot_order: Optional[List[str]] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "method": self.method,
            "lot_order": self.lot_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CalculationJobPayload":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            method=data["method"],
            lot_order=data.get("lot_order"),
        )


@dataclass
class ClaimedJob:
    """A delivery of a job to one worker."""
    job_id: str
    payload: CalculationJobPayload
    attempts: int = 1
    claimed_by: str = ""
    claimed_at: datetime = field(default_factory=datetime.utcnow)


class JobQueue(ABC):
    """Queue interface with an explicit open/close lifecycle."""

    def __init__(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise RuntimeError(f"{type(self).__name__} is not open")

    @abstractmethod
    async def enqueue(self, payload: CalculationJobPayload) -> str:
        """Add a job; returns its id."""

    @abstractmethod
    async def claim(self, worker_id: str, timeout: float = 0.0) -> Optional[ClaimedJob]:
        """Take the next available job, waiting up to timeout seconds."""

    @abstractmethod
    async def ack(self, job_id: str) -> None:
        """Mark a claimed job as done."""

    @abstractmethod
    async def nack(self, job_id: str, error: str = "") -> None:
        """Return a claimed job to the queue (or drop it after max attempts)."""

    @abstractmethod
    async def depth(self) -> int:
        """Number of jobs waiting to be claimed."""


class InMemoryJobQueue(JobQueue):
    """asyncio.Queue backed job queue.

    Jobs that exhaust max_attempts are kept in `dead`, newest last, up to
    max_dead entries.
    """

    def __init__(self, max_attempts: int = 3, max_dead: int = 100):
        super().__init__()
        self.max_attempts = max_attempts
        self._queue: Optional[asyncio.Queue] = None
        self._ids = itertools.count(1)
        self._attempts: Dict[str, int] = {}
        self._in_flight: Dict[str, ClaimedJob] = {}
        self.dead: Deque[ClaimedJob] = deque(maxlen=max_dead)

    async def open(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        await super().open()

    async def enqueue(self, payload: CalculationJobPayload) -> str:
        self._ensure_open()
        job_id = str(next(self._ids))
        self._attempts[job_id] = 0
        await self._queue.put((job_id, payload))
        logger.debug(f"Enqueued job {job_id} for session {payload.session_id}")
        return job_id

    async def claim(self, worker_id: str, timeout: float = 0.0) -> Optional[ClaimedJob]:
        self._ensure_open()
        try:
            if timeout > 0:
                job_id, payload = await asyncio.wait_for(self._queue.get(), timeout)
            else:
                job_id, payload = self._queue.get_nowait()
        except (asyncio.TimeoutError, asyncio.QueueEmpty):
            return None

        self._attempts[job_id] += 1
        job = ClaimedJob(
            job_id=job_id,
            payload=payload,
            attempts=self._attempts[job_id],
            claimed_by=worker_id,
        )
        self._in_flight[job_id] = job
        return job

    async def ack(self, job_id: str) -> None:
        self._in_flight.pop(job_id, None)
        self._attempts.pop(job_id, None)

    async def nack(self, job_id: str, error: str = "") -> None:
        job = self._in_flight.pop(job_id, None)
        if job is None:
            return

        if job.attempts >= self.max_attempts:
            self._attempts.pop(job_id, None)
            logger.error(f"Job {job_id} dropped after {job.attempts} attempt(s): {error}")
            self.dead.append(job)
            return

        await self._queue.put((job_id, job.payload))

    async def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0


class SqlJobQueue(JobQueue):
    """Durable job queue on the calculation_jobs table.

    Claiming is a conditional UPDATE on (id, status, claimed_at), so two
    workers racing for the same row cannot both win. A claimed row whose
    claim is older than visibility_timeout is delivered again.
    """

    def __init__(
        self,
        session_maker,
        visibility_timeout: float = 120.0,
        poll_interval: float = 0.5,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
    ):
        """Initialize SQL job queue.

        Args:
            session_maker: Async session factory
            visibility_timeout: Seconds before an unacknowledged claim expires
            poll_interval: Seconds between polls while waiting in claim()
            max_attempts: Deliveries before a job is marked dead
            retry_delay: Seconds a nacked job waits before it is claimable again
        """
        super().__init__()
        self.session_maker = session_maker
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def enqueue(self, payload: CalculationJobPayload) -> str:
        self._ensure_open()
        now = datetime.utcnow()
        async with self.session_maker() as session:
            job = CalculationJob(
                payload=payload.to_dict(),
                status=JobStatus.PENDING,
                attempts=0,
                created_at=now,
                available_at=now,
            )
            session.add(job)
            await session.commit()
            job_id = str(job.id)

        logger.debug(f"Enqueued job {job_id} for session {payload.session_id}")
        return job_id

    async def claim(self, worker_id: str, timeout: float = 0.0) -> Optional[ClaimedJob]:
        self._ensure_open()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            job = await self._try_claim(worker_id)
            if job is not None or loop.time() >= deadline:
                return job
            await asyncio.sleep(min(self.poll_interval, max(deadline - loop.time(), 0)))

    async def _try_claim(self, worker_id: str) -> Optional[ClaimedJob]:
        now = datetime.utcnow()
        expired_before = now - timedelta(seconds=self.visibility_timeout)

        async with self.session_maker() as session:
            query = select(CalculationJob).where(
                or_(
                    and_(
                        CalculationJob.status == JobStatus.PENDING,
                        CalculationJob.available_at <= now,
                    ),
                    and_(
                        CalculationJob.status == JobStatus.CLAIMED,
                        CalculationJob.claimed_at < expired_before,
                    ),
                )
            ).order_by(CalculationJob.id).limit(10)

            result = await session.execute(query)
            candidates = result.scalars().all()

            for candidate in candidates:
                if candidate.status == JobStatus.CLAIMED:
                    logger.warning(
                        f"Job {candidate.id} claim by {candidate.claimed_by} expired, redelivering"
                    )

                if candidate.attempts >= self.max_attempts:
                    await session.execute(
                        update(CalculationJob)
                        .where(CalculationJob.id == candidate.id)
                        .values(status=JobStatus.DEAD, processed_at=now)
                    )
                    await session.commit()
                    logger.error(f"Job {candidate.id} dead after {candidate.attempts} attempt(s)")
                    continue

                job_id = candidate.id
                payload = CalculationJobPayload.from_dict(candidate.payload)
                next_attempt = candidate.attempts + 1

                # Leave the loaded row untouched; only the database copy changes
                stmt = (
                    update(CalculationJob)
                    .where(
                        CalculationJob.id == job_id,
                        CalculationJob.status == candidate.status,
                        CalculationJob.attempts == candidate.attempts,
                    )
                    .values(
                        status=JobStatus.CLAIMED,
                        claimed_by=worker_id,
                        claimed_at=now,
                        attempts=next_attempt,
                    )
                    .execution_options(synchronize_session=False)
                )
                claimed = await session.execute(stmt)
                await session.commit()

                if claimed.rowcount == 1:
                    return ClaimedJob(
                        job_id=str(job_id),
                        payload=payload,
                        attempts=next_attempt,
                        claimed_by=worker_id,
                        claimed_at=now,
                    )

        return None

    async def ack(self, job_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                update(CalculationJob)
                .where(CalculationJob.id == int(job_id))
                .values(status=JobStatus.DONE, processed_at=datetime.utcnow())
            )
            await session.commit()

    async def nack(self, job_id: str, error: str = "") -> None:
        now = datetime.utcnow()
        async with self.session_maker() as session:
            job = await session.get(CalculationJob, int(job_id))
            if job is None or job.status != JobStatus.CLAIMED:
                return

            job.last_error = error or None
            if job.attempts >= self.max_attempts:
                job.status = JobStatus.DEAD
                job.processed_at = now
                logger.error(f"Job {job_id} dead after {job.attempts} attempt(s): {error}")
            else:
                job.status = JobStatus.PENDING
                job.available_at = now + timedelta(seconds=self.retry_delay)
            await session.commit()

    async def depth(self) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count(CalculationJob.id)).where(CalculationJob.status == JobStatus.PENDING)
            )
            return result.scalar_one()
