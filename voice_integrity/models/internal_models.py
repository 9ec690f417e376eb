"""Internal data models for the voice integrity service."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np


class CallStatus(str, Enum):
    """Lifecycle states of a call session."""

    INACTIVE = "inactive"
    CONNECTING = "connecting"
    ACTIVE = "active"
    FINISHED = "finished"


class VerificationState(str, Enum):
    """Progress of the voice verification feature within a session."""

    PENDING = "pending"
    DISABLED = "disabled"
    ENROLLING = "enrolling"
    VERIFYING = "verifying"
    STOPPED = "stopped"


@dataclass(frozen=True)
class AudioFrame:
    """Immutable block of single-channel float32 samples."""

    samples: np.ndarray
    # Source clock reading taken when the frame arrived
    received_at: Optional[float] = field(default=None, compare=False)

    def __post_init__(self):
        """Copy samples into a read-only 1-D float32 array."""
        samples = np.array(self.samples, dtype=np.float32).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])

    def mean_absolute_amplitude(self) -> float:
        if self.sample_count == 0:
            return 0.0
        return float(np.mean(np.abs(self.samples)))


@dataclass(frozen=True)
class BackendProfile:
    """Voice profile exported by a biometric backend."""

    profile_id: str
    profile_data: bytes
    created_at: datetime = field(default_factory=datetime.utcnow)

    kind = "backend"


@dataclass(frozen=True)
class SampleProfile:
    """Voice profile made of raw enrollment frames, used by the fallback estimator."""

    reference_frames: Tuple[AudioFrame, ...]
    created_at: datetime = field(default_factory=datetime.utcnow)

    kind = "sample"


VoiceProfile = Union[BackendProfile, SampleProfile]


class WindowClosedError(Exception):
    """Raised when appending to an enrollment window that has already closed."""
    pass


@dataclass
class EnrollmentWindow:
    """Append-only enrollment frames bounded by wall-clock duration."""

    started_at: float
    duration: float
    frames: List[AudioFrame] = field(default_factory=list)
    closed_at: Optional[float] = None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def append(self, frame: AudioFrame) -> None:
        if self.is_closed:
            raise WindowClosedError("Enrollment window is closed")
        self.frames.append(frame)

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def is_due(self, now: float) -> bool:
        return self.elapsed(now) >= self.duration

    def close(self, now: float) -> None:
        if not self.is_closed:
            self.closed_at = now


@dataclass
class VerificationSample:
    """Frames collected for a single verification tick."""

    target_frames: int
    frames: List[AudioFrame] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return len(self.frames) >= self.target_frames

    def append(self, frame: AudioFrame) -> None:
        self.frames.append(frame)

    def concatenated(self) -> np.ndarray:
        if not self.frames:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate([frame.samples for frame in self.frames])


@dataclass(frozen=True)
class ScoreResult:
    """Similarity scores of one verification tick against the enrolled profiles."""

    scores: Tuple[float, ...]
    threshold: float
    scorer: str
    is_match: bool

    @property
    def max_score(self) -> Optional[float]:
        return max(self.scores) if self.scores else None


@dataclass(frozen=True)
class MismatchEvent:
    """Raised when a verification tick does not match the enrolled voice."""

    call_id: str
    tick: int
    scores: Tuple[float, ...]
    threshold: float
    scorer: str
    detected_at: datetime = field(default_factory=datetime.utcnow)
