"""WebSocket router for what-if results."""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..models import SessionStatus
from ..services.errors import SessionNotFoundError
from ..services.notifications import Subscription, topic_for, failure_message

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_NOT_FOUND_CLOSE_CODE = 4404


def _persisted_message(whatif) -> dict:
    if whatif.status == SessionStatus.READY:
        return {"summary": whatif.summary}
    return failure_message(whatif.error_message or "failed")


async def _wait_for_terminal(websocket: WebSocket, subscription: Subscription) -> Optional[dict]:
    """Wait for the terminal message while answering client pings.

    Raises WebSocketDisconnect if the client goes away first.
    """
    message_task = asyncio.create_task(subscription.get())
    try:
        while True:
            receive_task = asyncio.create_task(websocket.receive_text())
            done, _ = await asyncio.wait(
                {message_task, receive_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if message_task in done:
                receive_task.cancel()
                return message_task.result()

            text = receive_task.result()
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from client: {text[:100]}")
                continue

            if isinstance(data, dict) and data.get("action") == "ping":
                await websocket.send_json({"type": "pong"})
    finally:
        message_task.cancel()


@router.websocket("/ws/sandbox/{session_id}")
async def sandbox_socket(websocket: WebSocket, session_id: str):
    """
    Deliver one terminal message for a what-if session, then close.

    Messages from client:
    - {"action": "ping"}

    Messages to client:
    - {"summary": {"shortTermGain": "...", "longTermGain": "...", "totalGain": "..."}}
    - {"error": true, "message": "..."}
    - {"type": "pong"}

    The listener is attached before the status is read, so a result published
    in between is not lost; if the session is already terminal the persisted
    result is sent instead.
    """
    runtime = websocket.app.state.sandbox
    await websocket.accept()

    subscription = await runtime.bus.subscribe(topic_for(session_id))
    try:
        try:
            whatif = await runtime.sessions.get_session(session_id)
        except SessionNotFoundError as e:
            await websocket.send_json(failure_message(str(e)))
            await websocket.close(code=SESSION_NOT_FOUND_CLOSE_CODE)
            return

        if whatif.status != SessionStatus.QUEUED:
            message = _persisted_message(whatif)
        else:
            message = await _wait_for_terminal(websocket, subscription)

        await websocket.send_json(message)
        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"Sandbox client for session {session_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error for session {session_id}: {e}")
    finally:
        await subscription.close()
