"""What-if session management.

CRITICAL: Session creation never computes gains inline.
- create_session persists a QUEUED row and enqueues a job, then returns
- The persisted row is the source of truth for status, whether or not the
  push notification reached the client
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select, update, func

from ..models import WhatIfSession, SessionStatus, CostBasisMethod
from .audit import AuditService, SESSION_CREATED
from .errors import ValidationError, AdmissionError, SessionNotFoundError
from .job_queue import JobQueue, CalculationJobPayload
from .lot_ordering import parse_method

logger = logging.getLogger(__name__)

MAX_USER_ID_LENGTH = 100


class SessionManager:
    """Creates what-if sessions and answers status lookups."""

    def __init__(
        self,
        session_maker,
        queue: JobQueue,
        audit: Optional[AuditService] = None,
        max_pending_per_user: int = 0,
    ):
        """Initialize session manager.

        Args:
            session_maker: Async session factory
            queue: Work queue the calculation jobs go to
            audit: Audit trail, optional
            max_pending_per_user: Queued sessions allowed per user (0 = unlimited)
        """
        self.session_maker = session_maker
        self.queue = queue
        self.audit = audit
        self.max_pending_per_user = max_pending_per_user
        # Count-then-insert for the admission limit runs under this lock.
        # Managers in other processes are not covered.
        self._admission_lock = asyncio.Lock()

    async def create_session(
        self,
        user_id: str,
        method,
        lot_order: Optional[Sequence[str]] = None,
    ) -> WhatIfSession:
        """Persist a QUEUED session and enqueue its calculation.

        Raises:
            ValidationError: Bad user id, method or lot order
            AdmissionError: User already has max_pending_per_user queued sessions
        """
        user_id = (user_id or "").strip() if isinstance(user_id, str) else ""
        if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
            raise ValidationError("user_id is required (1-100 characters)")

        method = parse_method(method)

        if lot_order is not None:
            if isinstance(lot_order, (str, bytes)) or not all(isinstance(i, str) and i for i in lot_order):
                raise ValidationError("lot_order must be a list of trade ids")
            lot_order = list(lot_order)
            if method != CostBasisMethod.SPEC_ID:
                logger.debug(f"Ignoring lot_order for {method.value} session")
                lot_order = None

        async with self._admission_lock:
            whatif = await self._admit_and_persist(user_id, method, lot_order)

        job_id = await self.queue.enqueue(CalculationJobPayload(
            session_id=whatif.id,
            user_id=user_id,
            method=method.value,
            lot_order=lot_order,
        ))

        logger.info(f"Created what-if session {whatif.id} ({method.value}) for user {user_id}, job {job_id}")
        if self.audit:
            await self.audit.record(user_id, SESSION_CREATED, {
                "session_id": whatif.id,
                "method": method.value,
                "job_id": job_id,
            })

        return whatif

    async def _admit_and_persist(self, user_id: str, method: CostBasisMethod, lot_order) -> WhatIfSession:
        async with self.session_maker() as session:
            if self.max_pending_per_user > 0:
                pending = await session.execute(
                    select(func.count(WhatIfSession.id)).where(
                        WhatIfSession.user_id == user_id,
                        WhatIfSession.status == SessionStatus.QUEUED,
                    )
                )
                if pending.scalar_one() >= self.max_pending_per_user:
                    raise AdmissionError(
                        f"User {user_id} already has {self.max_pending_per_user} queued session(s)"
                    )

            whatif = WhatIfSession(
                id=str(uuid.uuid4()),
                user_id=user_id,
                method=method,
                lot_order=lot_order,
                status=SessionStatus.QUEUED,
                cancel_requested=False,
                created_at=datetime.utcnow(),
            )
            session.add(whatif)
            await session.commit()

        return whatif

    async def get_session(self, session_id: str) -> WhatIfSession:
        """Read the persisted session row.

        Raises:
            SessionNotFoundError: Unknown session id
        """
        async with self.session_maker() as session:
            whatif = await session.get(WhatIfSession, session_id)

        if whatif is None:
            raise SessionNotFoundError(session_id)
        return whatif

    async def get_status(self, session_id: str) -> dict:
        """Status payload: {session_id, status, summary?, error?}."""
        whatif = await self.get_session(session_id)
        return whatif.to_status_dict()

    async def cancel_session(self, session_id: str) -> bool:
        """Request cancellation of a queued session.

        Best-effort: the worker honours the flag only if it has not started
        matching yet. Returns False if the session is already terminal.
        """
        async with self.session_maker() as session:
            result = await session.execute(
                update(WhatIfSession)
                .where(
                    WhatIfSession.id == session_id,
                    WhatIfSession.status == SessionStatus.QUEUED,
                )
                .values(cancel_requested=True)
            )
            await session.commit()

        if result.rowcount == 1:
            logger.info(f"Cancellation requested for session {session_id}")
            return True

        # Distinguish unknown from already terminal
        await self.get_session(session_id)
        return False

    async def list_sessions(self, user_id: str, limit: int = 20) -> List[WhatIfSession]:
        """Most recent sessions for a user."""
        async with self.session_maker() as session:
            query = select(WhatIfSession).where(
                WhatIfSession.user_id == user_id
            ).order_by(WhatIfSession.created_at.desc()).limit(limit)

            result = await session.execute(query)
            return list(result.scalars().all())
