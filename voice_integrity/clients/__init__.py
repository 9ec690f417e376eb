"""Client modules for audio capture and external service integrations."""

from voice_integrity.clients.audio_source import (
    AudioCaptureError,
    AudioFrameSource,
    PermissionDenied
)

from voice_integrity.clients.vapi_client import (
    VAPIListenSource,
    VAPIControlClient,
    VAPIConnectionError,
    VAPIControlError
)

__all__ = [
    "AudioCaptureError",
    "AudioFrameSource",
    "PermissionDenied",
    "VAPIListenSource",
    "VAPIControlClient",
    "VAPIConnectionError",
    "VAPIControlError"
]
