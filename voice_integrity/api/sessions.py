"""
Call session status and control endpoints.
"""

import structlog
from fastapi import APIRouter, HTTPException

from voice_integrity.models.api_models import (
    DisconnectResponse,
    MismatchEventModel,
    MismatchListResponse,
    SessionListResponse,
    SessionStatusResponse,
)
from voice_integrity.services.session import CallSession, get_session_manager

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


def _get_session(call_id: str) -> CallSession:
    session = get_session_manager().get(call_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for call {call_id}")
    return session


@router.get("", response_model=SessionListResponse)
async def list_sessions() -> SessionListResponse:
    sessions = [SessionStatusResponse(**s.snapshot()) for s in get_session_manager().list()]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get("/{call_id}", response_model=SessionStatusResponse)
async def get_session_status(call_id: str) -> SessionStatusResponse:
    """Lifecycle, enrollment and verification state of one call."""
    return SessionStatusResponse(**_get_session(call_id).snapshot())


@router.get("/{call_id}/mismatches", response_model=MismatchListResponse)
async def get_session_mismatches(call_id: str) -> MismatchListResponse:
    session = _get_session(call_id)
    return MismatchListResponse(
        call_id=call_id,
        mismatches=[MismatchEventModel.from_event(e) for e in session.mismatch_events]
    )


@router.post("/{call_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_session(call_id: str) -> DisconnectResponse:
    """Explicitly end a call session and release its resources."""
    session = _get_session(call_id)
    disconnected = await session.disconnect()
    logger.info("Session disconnect requested", call_id=call_id, disconnected=disconnected)
    return DisconnectResponse(call_id=call_id, status=session.status.value, disconnected=disconnected)
