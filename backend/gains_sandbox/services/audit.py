"""Audit trail for the what-if pipeline.

Audit writes are best-effort: a failed write is logged and never affects
the session being audited.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models import AuditLog

logger = logging.getLogger(__name__)

SESSION_CREATED = "session_created"
PROCESS_START = "process_session_start"
PROCESS_COMPLETE = "process_session_complete"
PROCESS_FAILED = "process_session_failed"


class AuditService:
    """Records pipeline events to the audit_logs table."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def record(self, user_id: Optional[str], action: str, meta: Optional[Dict[str, Any]] = None) -> None:
        try:
            async with self.session_maker() as session:
                session.add(AuditLog(
                    user_id=user_id,
                    action=action,
                    meta=meta or {},
                    created_at=datetime.utcnow(),
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Audit log error ({action}): {e}")
