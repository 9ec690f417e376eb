"""
VAPI server webhook handler.

Maps Vapi server messages onto call session lifecycle events.
"""

from datetime import datetime
from typing import Dict, Any, Optional

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from voice_integrity.models.api_models import ErrorResponse, WebhookAck
from voice_integrity.observability import trace_function
from voice_integrity.services.session import CallSession, get_session_manager

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["vapi-webhook"])

CONNECTING_STATUSES = ("queued", "ringing")


def _message(payload: Dict[str, Any]) -> Dict[str, Any]:
    message = payload.get("message")
    return message if isinstance(message, dict) else {}


def _monitor(payload: Dict[str, Any]) -> Dict[str, Any]:
    call_data = _message(payload).get("call") or {}
    monitor = call_data.get("monitor") if isinstance(call_data, dict) else None
    return monitor if isinstance(monitor, dict) else {}


def extract_call_id(payload: Dict[str, Any]) -> Optional[str]:
    """Extract the call id from a VAPI webhook payload."""
    call_data = _message(payload).get("call")
    if isinstance(call_data, dict) and call_data.get("id"):
        return str(call_data["id"])
    return None


def extract_listen_url(payload: Dict[str, Any]) -> Optional[str]:
    """Extract the WebSocket listen URL from a VAPI webhook payload."""
    return _monitor(payload).get("listenUrl")


def extract_control_url(payload: Dict[str, Any]) -> Optional[str]:
    """Extract the live call control URL from a VAPI webhook payload."""
    return _monitor(payload).get("controlUrl")


async def dispatch_event(session: CallSession, message: Dict[str, Any]) -> bool:
    """
    Apply one webhook message to its session.

    Returns:
        True when the message changed session state
    """
    event_type = message.get("type")

    if event_type == "status-update":
        status = message.get("status")
        if status in CONNECTING_STATUSES:
            return session.begin_connecting()
        if status == "in-progress":
            return await session.on_call_start()
        if status == "ended":
            ended_reason = message.get("endedReason") or ""
            if "error" in ended_reason:
                return await session.on_error(ended_reason)
            return await session.on_call_end()
        return False

    if event_type == "end-of-call-report":
        return await session.on_call_end()

    if event_type == "transcript":
        return session.on_transcript(
            message.get("role"),
            message.get("transcriptType"),
            message.get("transcript")
        )

    if event_type == "speech-update":
        if message.get("status") == "started":
            session.on_speech_start()
            return True
        if message.get("status") == "stopped":
            session.on_speech_end()
            return True
        return False

    if event_type == "error":
        error = message.get("error") or message.get("message") or "unknown error"
        return await session.on_error(str(error))

    return False


@router.post("/vapi-webhook")
@trace_function("vapi_webhook")
async def handle_vapi_webhook(request: Request) -> JSONResponse:
    """
    Handle VAPI server webhooks for a call.

    Status updates, end-of-call reports, transcripts, speech updates and
    errors drive the call's session. Other message types are acknowledged
    and ignored.
    """
    correlation_id = request.headers.get("X-Call-ID", "unknown")

    try:
        payload = await request.json()
    except ValueError:
        return _error_response(400, "InvalidPayload", "Webhook body is not valid JSON", correlation_id)

    if not isinstance(payload, dict):
        return _error_response(400, "InvalidPayload", "Webhook body must be a JSON object", correlation_id)

    message = _message(payload)
    event_type = message.get("type", "unknown")

    call_id = extract_call_id(payload)
    if not call_id:
        logger.error("Could not extract call id from VAPI payload",
                     event_type=event_type, correlation_id=correlation_id)
        return _error_response(400, "MissingCallId", "Could not extract call id from call data", correlation_id)

    try:
        session = get_session_manager().get_or_create(
            call_id,
            listen_url=extract_listen_url(payload),
            control_url=extract_control_url(payload)
        )
        handled = await dispatch_event(session, message)

        logger.info(
            "Processed VAPI webhook",
            call_id=call_id,
            event_type=event_type,
            handled=handled,
            status=session.status.value,
            correlation_id=correlation_id
        )

        ack = WebhookAck(call_id=call_id, event_type=event_type, handled=handled)
        return JSONResponse(status_code=200, content=ack.model_dump())

    except Exception as e:
        logger.error(
            "Unexpected error in VAPI webhook",
            error=str(e),
            call_id=call_id,
            event_type=event_type,
            correlation_id=correlation_id
        )
        return _error_response(500, "InternalServerError",
                               "An unexpected error occurred while handling the event", correlation_id)


def _error_response(status_code: int, error: str, message: str, correlation_id: str) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.utcnow()
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json")
    )
