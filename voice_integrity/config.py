"""Configuration management for the voice integrity service."""

from typing import List, Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SUPPORTED_BACKENDS = ("eagle", "ecapa", "none")
SUPPORTED_AUDIO_SOURCES = ("vapi", "microphone")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Biometric backend
    picovoice_access_key: Optional[str] = None
    biometric_backend: str = "eagle"
    eagle_model_path: Optional[str] = None

    # Voice verification settings
    match_threshold: float = 0.7
    enrollment_duration: float = 30.0
    verification_period: float = 5.0
    verification_sample_frames: int = 10
    verification_sample_timeout: float = 10.0

    # Audio capture
    audio_source: str = "vapi"
    frame_size: int = 4096
    sample_rate: int = 16000
    listen_channels: int = 1
    listen_channel_index: int = 0
    connection_timeout: float = 10.0

    # Interviewer panel
    panel_size: int = 3
    interviewer_names: List[str] = ["John", "Michael", "Sarah"]
    rotation_delay: float = 2.0

    # Mismatch warnings
    announce_mismatch: bool = True
    mismatch_warning_message: str = (
        "Warning: Voice mismatch detected. Please ensure you are the same "
        "person who started the interview."
    )

    session_history_limit: int = 100

    # Logging configuration
    log_level: str = "INFO"

    # OpenTelemetry export
    otlp_endpoint: Optional[str] = None
    otel_console_export: bool = False

    @field_validator('match_threshold')
    @classmethod
    def validate_match_threshold(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('MATCH_THRESHOLD must be between 0.0 and 1.0')
        return v

    @field_validator('enrollment_duration', 'verification_period',
                     'verification_sample_timeout', 'connection_timeout')
    @classmethod
    def validate_positive_seconds(cls, v):
        if v <= 0:
            raise ValueError('durations must be greater than zero seconds')
        return v

    @field_validator('rotation_delay')
    @classmethod
    def validate_rotation_delay(cls, v):
        if v < 0:
            raise ValueError('ROTATION_DELAY cannot be negative')
        return v

    @field_validator('verification_sample_frames', 'frame_size', 'sample_rate', 'panel_size')
    @classmethod
    def validate_positive_counts(cls, v):
        if v < 1:
            raise ValueError('frame, rate and panel settings must be at least 1')
        return v

    @field_validator('biometric_backend')
    @classmethod
    def validate_biometric_backend(cls, v):
        v = v.lower()
        if v not in SUPPORTED_BACKENDS:
            raise ValueError(f'BIOMETRIC_BACKEND must be one of {", ".join(SUPPORTED_BACKENDS)}')
        return v

    @field_validator('audio_source')
    @classmethod
    def validate_audio_source(cls, v):
        v = v.lower()
        if v not in SUPPORTED_AUDIO_SOURCES:
            raise ValueError(f'AUDIO_SOURCE must be one of {", ".join(SUPPORTED_AUDIO_SOURCES)}')
        return v

    @field_validator('listen_channels')
    @classmethod
    def validate_listen_channels(cls, v):
        if v not in (1, 2):
            raise ValueError('LISTEN_CHANNELS must be 1 (mono) or 2 (stereo)')
        return v

    @model_validator(mode='after')
    def validate_channel_index(self):
        if not 0 <= self.listen_channel_index < self.listen_channels:
            raise ValueError('LISTEN_CHANNEL_INDEX must select one of the listen channels')
        return self

    @property
    def verification_enabled(self) -> bool:
        """Voice verification runs only when an access key is configured."""
        return bool(self.picovoice_access_key)


# Global settings instance
settings = Settings()
