"""Data models for the voice integrity service."""

from .api_models import (
    WebhookAck,
    SessionStatusResponse,
    SessionListResponse,
    MismatchEventModel,
    MismatchListResponse,
    DisconnectResponse,
    HealthResponse,
    ErrorResponse
)
from .internal_models import (
    AudioFrame,
    BackendProfile,
    CallStatus,
    EnrollmentWindow,
    MismatchEvent,
    SampleProfile,
    ScoreResult,
    VerificationSample,
    VerificationState,
    VoiceProfile
)

__all__ = [
    "WebhookAck",
    "SessionStatusResponse",
    "SessionListResponse",
    "MismatchEventModel",
    "MismatchListResponse",
    "DisconnectResponse",
    "HealthResponse",
    "ErrorResponse",
    "AudioFrame",
    "BackendProfile",
    "CallStatus",
    "EnrollmentWindow",
    "MismatchEvent",
    "SampleProfile",
    "ScoreResult",
    "VerificationSample",
    "VerificationState",
    "VoiceProfile"
]
