"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from voice_integrity.models.internal_models import MismatchEvent


class WebhookAck(BaseModel):
    """Acknowledgement returned for every accepted webhook event."""

    received: bool = Field(True, description="The event was accepted")
    call_id: str = Field(..., description="Call the event belongs to")
    event_type: str = Field(..., description="Webhook message type")
    handled: bool = Field(..., description="Whether the event changed session state")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "received": True,
            "call_id": "call_123",
            "event_type": "status-update",
            "handled": True
        }
    })


class SessionStatusResponse(BaseModel):
    """State of one call session."""

    call_id: str
    status: str = Field(..., description="inactive, connecting, active or finished")
    verification_state: str = Field(..., description="pending, disabled, enrolling, verifying or stopped")
    is_speaking: bool
    enrollment_progress: float = Field(..., ge=0.0, le=100.0, description="Profiler progress in percent")
    profile_kind: Optional[str] = Field(None, description="backend or sample, once enrolled")
    scorer: Optional[str] = None
    verification_ticks: int = 0
    skipped_ticks: int = 0
    last_max_score: Optional[float] = None
    mismatch_count: int = 0
    interviewer_index: int = 0
    current_interviewer: Optional[str] = None
    created_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionStatusResponse]
    total: int


class MismatchEventModel(BaseModel):
    """A verification tick that did not match the enrolled voice."""

    tick: int
    scores: List[float]
    threshold: float
    scorer: str
    detected_at: datetime

    @classmethod
    def from_event(cls, event: MismatchEvent) -> "MismatchEventModel":
        return cls(
            tick=event.tick,
            scores=list(event.scores),
            threshold=event.threshold,
            scorer=event.scorer,
            detected_at=event.detected_at
        )


class MismatchListResponse(BaseModel):
    call_id: str
    mismatches: List[MismatchEventModel]


class DisconnectResponse(BaseModel):
    call_id: str
    status: str
    disconnected: bool = Field(..., description="False when the session had already finished")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")
    active_sessions: int = Field(0, description="Sessions not yet finished")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-01T12:00:00Z",
            "version": "1.0.0",
            "active_sessions": 2
        }
    })


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "MissingCallId",
            "message": "Webhook payload has no call id",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
