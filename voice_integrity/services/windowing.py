"""
Windowing buffer that groups incoming frames into enrollment windows and
verification samples.

Exactly one mode is active at a time. The buffer never awaits, so a frame
is appended and any completed unit handed off within a single call.
"""

import logging
from enum import Enum
from typing import Optional, Union

from voice_integrity.models.internal_models import (
    AudioFrame,
    EnrollmentWindow,
    VerificationSample,
)

logger = logging.getLogger(__name__)


class BufferMode(str, Enum):
    IDLE = "idle"
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


class WindowingError(Exception):
    """Raised when the buffer is asked for an illegal mode change."""
    pass


class WindowingBuffer:
    """Accumulates frames for whichever controller is currently active."""

    def __init__(self, enrollment_duration: float = 30.0, sample_frames: int = 10):
        self.enrollment_duration = enrollment_duration
        self.sample_frames = sample_frames
        self.mode = BufferMode.IDLE
        self.dropped_frames = 0

        self._window: Optional[EnrollmentWindow] = None
        self._sample: Optional[VerificationSample] = None
        self._enrollment_done = False

    @property
    def window(self) -> Optional[EnrollmentWindow]:
        return self._window

    @property
    def sample_armed(self) -> bool:
        return self._sample is not None

    def start_enrollment(self, now: float) -> EnrollmentWindow:
        """Open the single enrollment window of this buffer."""
        if self._enrollment_done or self._window is not None:
            raise WindowingError("Enrollment window already opened")
        self._window = EnrollmentWindow(started_at=now, duration=self.enrollment_duration)
        self.mode = BufferMode.ENROLLMENT
        logger.debug(f"Enrollment window opened at {now:.3f}")
        return self._window

    def start_verification(self) -> None:
        """Switch to verification mode once enrollment has closed."""
        if not self._enrollment_done:
            raise WindowingError("Verification requires a closed enrollment window")
        self.mode = BufferMode.VERIFICATION

    def arm_sample(self) -> VerificationSample:
        """Begin collecting a fresh verification sample."""
        if self.mode is not BufferMode.VERIFICATION:
            raise WindowingError(f"Cannot arm a sample in {self.mode.value} mode")
        if self._sample is not None:
            raise WindowingError("A verification sample is already being collected")
        self._sample = VerificationSample(target_frames=self.sample_frames)
        return self._sample

    def disarm_sample(self) -> None:
        self._sample = None

    def stop(self) -> None:
        """Stop accepting frames in any mode."""
        self._sample = None
        self.mode = BufferMode.IDLE

    def push(self, frame: AudioFrame, now: float) -> Optional[Union[EnrollmentWindow, VerificationSample]]:
        """
        Append a frame in the current mode.

        Args:
            frame: Incoming audio frame
            now: Arrival time of the frame on the session clock

        Returns:
            The closed enrollment window or the completed verification
            sample when this frame finishes one, otherwise None
        """
        if self.mode is BufferMode.ENROLLMENT:
            return self._push_enrollment(frame, now)
        if self.mode is BufferMode.VERIFICATION and self._sample is not None:
            return self._push_verification(frame)

        self.dropped_frames += 1
        return None

    def _push_enrollment(self, frame: AudioFrame, now: float) -> Optional[EnrollmentWindow]:
        window = self._window
        window.append(frame)
        if not window.is_due(now):
            return None

        window.close(now)
        self._enrollment_done = True
        self.mode = BufferMode.IDLE
        logger.info(f"Enrollment window closed after {window.elapsed(now):.3f}s with {len(window.frames)} frames")
        return window

    def _push_verification(self, frame: AudioFrame) -> Optional[VerificationSample]:
        sample = self._sample
        sample.append(frame)
        if not sample.is_complete:
            return None
        self._sample = None
        return sample
