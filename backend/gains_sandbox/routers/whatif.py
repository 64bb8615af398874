"""What-if session router.

Session creation only queues work; results arrive through the status
endpoint or the sandbox WebSocket.
"""

from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..models import SessionStatus
from ..services.errors import ValidationError, AdmissionError, SessionNotFoundError
from ..services.runtime import get_session_manager
from ..services.session_manager import SessionManager

router = APIRouter()


class SessionCreate(BaseModel):
    """Schema for creating a what-if session."""
    user_id: str = Field(..., min_length=1, max_length=100)
    method: str = Field(..., min_length=1, max_length=20)
    lot_order: Optional[List[str]] = None


class SessionCreated(BaseModel):
    """Schema for session creation response."""
    session_id: str
    status: str


class SessionStatusResponse(BaseModel):
    """Schema for session status; summary iff ready, error iff failed."""
    session_id: str
    status: str
    summary: Optional[Dict[str, str]] = None
    error: Optional[str] = None


class SessionResponse(BaseModel):
    """Schema for session listing."""
    session_id: str
    user_id: str
    method: str
    status: str
    summary: Optional[Dict[str, str]]
    error: Optional[str]
    cancel_requested: bool
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/sessions", response_model=SessionCreated, status_code=status.HTTP_202_ACCEPTED)
async def create_session(
    body: SessionCreate,
    manager: SessionManager = Depends(get_session_manager),
):
    """Queue a gains calculation under the requested cost basis method."""
    try:
        whatif = await manager.create_session(body.user_id, body.method, body.lot_order)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except AdmissionError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))

    return {"session_id": whatif.id, "status": whatif.status.value}


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    user_id: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(20, ge=1, le=100),
    manager: SessionManager = Depends(get_session_manager),
):
    """List a user's most recent sessions."""
    sessions = await manager.list_sessions(user_id, limit=limit)
    return [s.to_dict() for s in sessions]


@router.get("/sessions/{session_id}/status", response_model=SessionStatusResponse, response_model_exclude_none=True)
async def get_status(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Authoritative session status."""
    try:
        return await manager.get_status(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.get("/sessions/{session_id}/details")
async def get_details(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Per-disposal gain details of a ready session."""
    try:
        whatif = await manager.get_session(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)

    if whatif.status != SessionStatus.READY:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {session_id} is {whatif.status.value}",
        )

    return {
        "session_id": whatif.id,
        "count": len(whatif.details or []),
        "details": whatif.details or [],
    }


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Request best-effort cancellation of a queued session."""
    try:
        requested = await manager.cancel_session(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)

    return {"session_id": session_id, "cancel_requested": requested}
