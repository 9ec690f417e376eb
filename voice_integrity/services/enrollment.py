"""
Enrollment controller.

Drives the fixed-duration enrollment window and turns it into a voice
profile: a backend profile when the profiler exports successfully, otherwise
a sample profile holding every collected frame.
"""

import logging
import time
from typing import Optional

from voice_integrity.models.internal_models import (
    AudioFrame,
    BackendProfile,
    EnrollmentWindow,
    SampleProfile,
    VoiceProfile,
)
from voice_integrity.services.biometric import (
    BackendCallFailure,
    BackendUnavailable,
    BiometricBackend,
    Profiler,
)
from voice_integrity.services.windowing import WindowingBuffer

logger = logging.getLogger(__name__)


class EnrollmentError(Exception):
    """Raised when the enrollment controller is driven out of order."""
    pass


class EnrollmentController:
    """Builds exactly one voice profile per session."""

    def __init__(self, buffer: WindowingBuffer, backend: Optional[BiometricBackend] = None):
        self.buffer = buffer
        self.backend = backend
        self.profiler: Optional[Profiler] = None
        self.progress = 0.0
        self.failed_enroll_calls = 0

        self._window: Optional[EnrollmentWindow] = None
        self._profile: Optional[VoiceProfile] = None

    @property
    def is_enrolling(self) -> bool:
        return self._window is not None and self._profile is None

    @property
    def is_complete(self) -> bool:
        return self._profile is not None

    @property
    def profile(self) -> Optional[VoiceProfile]:
        return self._profile

    async def prepare(self) -> Optional[Profiler]:
        """
        Create the backend profiler, if a backend was selected.

        A backend that cannot be initialized leaves the controller on the
        sample-profile path.
        """
        if self.backend is None or self.profiler is not None:
            return self.profiler
        try:
            self.profiler = await self.backend.create_profiler()
        except BackendUnavailable as e:
            logger.info(f"Biometric backend unavailable, enrolling with audio samples only: {e}")
            self.profiler = None
        return self.profiler

    def start(self, now: float) -> EnrollmentWindow:
        """Open the enrollment window."""
        if self._profile is not None:
            raise EnrollmentError("Enrollment already completed")
        if self._window is not None:
            raise EnrollmentError("Enrollment already started")
        self._window = self.buffer.start_enrollment(now)
        logger.info(f"Voice enrollment started, collecting {self.buffer.enrollment_duration:.0f}s of audio")
        return self._window

    async def handle_frame(self, frame: AudioFrame, now: float) -> Optional[VoiceProfile]:
        """
        Add one frame to the enrollment window.

        Returns:
            The finished voice profile when this frame closes the window
        """
        if not self.is_enrolling:
            return None

        closed = self.buffer.push(frame, now)

        if self.profiler is not None:
            try:
                self.progress = await self.profiler.enroll(frame)
            except BackendCallFailure as e:
                self.failed_enroll_calls += 1
                logger.debug(f"Profiler enroll call failed, continuing to collect samples: {e}")

        if closed is None:
            return None
        return await self._finalize(closed)

    async def _finalize(self, window: EnrollmentWindow) -> VoiceProfile:
        profile: Optional[VoiceProfile] = None

        if self.profiler is not None:
            try:
                profile_data = await self.profiler.export()
                profile = BackendProfile(
                    profile_id=f"profile_{int(time.time() * 1000)}",
                    profile_data=profile_data
                )
            except BackendCallFailure as e:
                logger.warning(f"Profile export failed, falling back to audio samples: {e}")
            finally:
                await self.release()

        if profile is None:
            profile = SampleProfile(reference_frames=tuple(window.frames))

        self._profile = profile
        self.progress = 100.0
        logger.info(
            f"Voice enrollment completed with {profile.kind} profile "
            f"({len(window.frames)} frames, {self.failed_enroll_calls} failed enroll calls)"
        )
        return profile

    async def release(self) -> None:
        """Release the profiler handle. Safe to call from teardown."""
        if self.profiler is not None:
            await self.profiler.release()
