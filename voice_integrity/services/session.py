"""
Call session lifecycle.

A ``CallSession`` follows one interview call from connecting to finished and
owns everything the voice verification feature acquires along the way: the
capture stream, the biometric handles, the verification loop and the
interviewer rotation timers. Teardown releases all of it exactly once, no
matter how many end-of-call triggers arrive or in which order.

``SessionManager`` keeps the sessions of the running process keyed by call id.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from voice_integrity import observability
from voice_integrity.clients.audio_source import AudioCaptureError, AudioFrameSource
from voice_integrity.clients.vapi_client import VAPIControlClient, VAPIControlError, VAPIListenSource
from voice_integrity.config import Settings, settings
from voice_integrity.models.internal_models import (
    AudioFrame,
    CallStatus,
    MismatchEvent,
    ScoreResult,
    VerificationState,
    VoiceProfile,
)
from voice_integrity.services.biometric import BackendUnavailable, BiometricBackend, EagleBackend
from voice_integrity.services.embedding_service import EcapaBackend
from voice_integrity.services.enrollment import EnrollmentController
from voice_integrity.services.rotation import InterviewerRotationScheduler
from voice_integrity.services.similarity import SimilarityScorer
from voice_integrity.services.verification import VerificationScheduler, select_scorer
from voice_integrity.services.windowing import BufferMode, WindowingBuffer

logger = logging.getLogger(__name__)

# Error texts that mean the meeting ended normally rather than failed
NORMAL_END_MARKERS = ("Meeting has ended", "ejected")

BackendFactory = Callable[[Settings], Optional[BiometricBackend]]
SourceFactory = Callable[[], Optional[AudioFrameSource]]
MismatchNotifier = Callable[[MismatchEvent], Awaitable[None]]


class InvalidTransition(Exception):
    """Raised when a lifecycle edge is requested from the wrong state."""
    pass


def select_backend(config: Settings) -> Optional[BiometricBackend]:
    """
    Choose the biometric backend for a new session.

    Returns None when the backend is switched off or cannot be constructed,
    which puts enrollment on the sample-profile path.
    """
    name = config.biometric_backend
    if name == "none":
        return None

    try:
        if name == "eagle":
            return EagleBackend(config.picovoice_access_key, config.eagle_model_path)
        return EcapaBackend(sample_rate=config.sample_rate)
    except BackendUnavailable as e:
        logger.info(f"Biometric backend '{name}' unavailable: {e}")
        return None


def build_frame_source(config: Settings, listen_url: Optional[str]) -> Optional[AudioFrameSource]:
    """Create the capture stream configured for this process."""
    if config.audio_source == "microphone":
        try:
            # sounddevice loads PortAudio at import time
            from voice_integrity.clients.microphone import MicrophoneFrameSource
        except OSError as e:
            logger.warning(f"Microphone capture unavailable: {e}")
            return None
        return MicrophoneFrameSource(frame_size=config.frame_size, sample_rate=config.sample_rate)

    if not listen_url:
        return None

    return VAPIListenSource(
        listen_url,
        frame_size=config.frame_size,
        sample_rate=config.sample_rate,
        channels=config.listen_channels,
        channel_index=config.listen_channel_index,
        connection_timeout=config.connection_timeout
    )


class CallSession:
    """Lifecycle controller for a single interview call."""

    def __init__(
        self,
        call_id: str,
        config: Optional[Settings] = None,
        listen_url: Optional[str] = None,
        control_url: Optional[str] = None,
        backend_factory: BackendFactory = select_backend,
        source_factory: Optional[SourceFactory] = None,
        notifier: Optional[MismatchNotifier] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.call_id = call_id
        self.config = config or settings
        self.listen_url = listen_url
        self.control_url = control_url

        self.status = CallStatus.INACTIVE
        self.verification_state = VerificationState.PENDING
        self.is_speaking = False
        self.created_at = datetime.utcnow()
        self.ended_at: Optional[datetime] = None
        self.end_reason: Optional[str] = None
        self.mismatch_events: List[MismatchEvent] = []

        self.buffer = WindowingBuffer(
            enrollment_duration=self.config.enrollment_duration,
            sample_frames=self.config.verification_sample_frames
        )
        self.rotation = InterviewerRotationScheduler(
            panel_size=self.config.panel_size,
            delay=self.config.rotation_delay,
            interviewer_names=self.config.interviewer_names
        )
        self.backend: Optional[BiometricBackend] = None
        self.source: Optional[AudioFrameSource] = None
        self.enrollment: Optional[EnrollmentController] = None
        self.verification: Optional[VerificationScheduler] = None

        self._backend_factory = backend_factory
        self._source_factory = source_factory
        self._notifier = notifier or self._announce_mismatch
        self._clock = clock

        self._profile: Optional[VoiceProfile] = None
        self._capture = AsyncExitStack()
        self._handles = AsyncExitStack()
        self._notifications: Set[asyncio.Task] = set()
        self._setup_tasks: Set[asyncio.Task] = set()
        self._last_transcript: Optional[str] = None
        self._feature_started = False
        self._finishing = False

    @property
    def profile(self) -> Optional[VoiceProfile]:
        return self._profile

    @property
    def is_finished(self) -> bool:
        return self.status is CallStatus.FINISHED

    def _set_status(self, status: CallStatus) -> None:
        logger.info(f"Call {self.call_id}: {self.status.value} -> {status.value}")
        self.status = status

    # Lifecycle edges

    def begin_connecting(self) -> bool:
        """Inactive -> Connecting. Returns False when the call is already further along."""
        if self.status is not CallStatus.INACTIVE:
            return False
        self._set_status(CallStatus.CONNECTING)
        return True

    def startup_failed(self, reason: str) -> bool:
        """Connecting -> Inactive after the call could not be established."""
        if self.status is not CallStatus.CONNECTING:
            return False
        logger.warning(f"Call {self.call_id} failed to start: {reason}")
        self._set_status(CallStatus.INACTIVE)
        return True

    async def on_call_start(self) -> bool:
        """
        The call became active.

        Resets the interviewer rotation and, the first time only, starts voice
        verification. Returns False if the call was already active or finished.
        """
        if self.status in (CallStatus.ACTIVE, CallStatus.FINISHED):
            logger.debug(f"Ignoring call-start for call {self.call_id} in state {self.status.value}")
            return False

        if self.status is CallStatus.INACTIVE:
            self.begin_connecting()
        self._set_status(CallStatus.ACTIVE)
        observability.record_session_started()
        self.rotation.reset()

        if not self._feature_started:
            self._feature_started = True
            await self._start_voice_verification()
        return True

    async def on_call_end(self) -> bool:
        return await self.finish("call-end")

    async def disconnect(self) -> bool:
        """Explicit user disconnect."""
        return await self.finish("disconnect")

    async def on_error(self, error: str) -> bool:
        """
        Handle an error reported for the call.

        "Meeting has ended" and ejection are normal ends of the meeting. Any
        other error finishes an active call or returns a connecting call to
        inactive.
        """
        if any(marker in error for marker in NORMAL_END_MARKERS):
            return await self.finish("meeting-ended")

        if self.status is CallStatus.CONNECTING:
            return self.startup_failed(error)

        if self.status is CallStatus.ACTIVE:
            logger.error(f"Call {self.call_id} error: {error}")
            return await self.finish("error")

        logger.debug(f"Ignoring error for call {self.call_id} in state {self.status.value}: {error}")
        return False

    def on_transcript(self, role: Optional[str], transcript_type: Optional[str], transcript: Any) -> bool:
        """
        Record a transcript update.

        Only final transcripts count, and a final identical to the previous one
        is ignored. Returns True when the turn scheduled an interviewer rotation.
        """
        if transcript_type != "final" or not isinstance(transcript, str):
            return False

        text = transcript.strip()
        if not text or text == self._last_transcript:
            return False
        self._last_transcript = text

        if role != "assistant" or self.status is not CallStatus.ACTIVE:
            return False
        return self.rotation.on_assistant_turn(text)

    def on_speech_start(self) -> None:
        self.is_speaking = True

    def on_speech_end(self) -> None:
        self.is_speaking = False

    async def finish(self, reason: str) -> bool:
        """
        Tear the session down.

        The first trigger wins: status becomes finished before anything is
        awaited, so concurrent triggers return False and nothing is released
        twice.
        """
        if self._finishing or self.status is CallStatus.FINISHED:
            return False
        self._finishing = True

        self._set_status(CallStatus.FINISHED)
        self.end_reason = reason
        self.ended_at = datetime.utcnow()

        if self.verification is not None:
            self.verification.stop()
        self.buffer.stop()

        try:
            await self._capture.aclose()
            if self._setup_tasks:
                await asyncio.gather(*list(self._setup_tasks), return_exceptions=True)
            await self._handles.aclose()
        finally:
            self.rotation.clear()
            for task in list(self._notifications):
                task.cancel()

            if self.verification_state in (
                VerificationState.PENDING, VerificationState.ENROLLING, VerificationState.VERIFYING
            ):
                self.verification_state = VerificationState.STOPPED

            observability.record_session_finished(reason)
            logger.info(
                f"Call {self.call_id} finished ({reason}): "
                f"{len(self.mismatch_events)} mismatches detected"
            )
        return True

    # Voice verification

    async def _start_voice_verification(self) -> None:
        if not self.config.verification_enabled:
            logger.warning(
                f"PICOVOICE_ACCESS_KEY not configured, voice verification disabled for call {self.call_id}"
            )
            self.verification_state = VerificationState.DISABLED
            return

        source = self._create_source()
        if source is None:
            logger.warning(f"No audio source for call {self.call_id}, voice verification disabled")
            self.verification_state = VerificationState.DISABLED
            return

        self.backend = self._backend_factory(self.config)
        self.enrollment = EnrollmentController(self.buffer, self.backend)
        await self.enrollment.prepare()
        if not await self._own(self._handles, self.enrollment.release):
            return

        self.source = source
        source.clock = self._clock
        if not await self._own(self._capture, source.close):
            return

        try:
            await source.open()
        except AudioCaptureError as e:
            logger.warning(f"Audio capture unavailable for call {self.call_id}, voice verification disabled: {e}")
            if not self._finishing:
                self.verification_state = VerificationState.DISABLED
                await self.enrollment.release()
            return

        if self._finishing:
            return

        source.on_frame(self._handle_frame)
        self.enrollment.start(self._clock())
        self.verification_state = VerificationState.ENROLLING

    def _create_source(self) -> Optional[AudioFrameSource]:
        if self._source_factory is not None:
            return self._source_factory()
        return build_frame_source(self.config, self.listen_url)

    async def _own(self, stack: AsyncExitStack, release: Callable[[], Awaitable[None]]) -> bool:
        """Hand a release callback to an exit stack, or run it now if teardown began."""
        if self._finishing:
            await release()
            return False
        stack.push_async_callback(release)
        return True

    async def _handle_frame(self, frame: AudioFrame) -> None:
        if self.status is not CallStatus.ACTIVE:
            return
        now = frame.received_at if frame.received_at is not None else self._clock()

        if self.buffer.mode is BufferMode.VERIFICATION:
            if self.verification is not None:
                self.verification.handle_frame(frame, now)
            return

        if self.enrollment is not None and self.enrollment.is_enrolling:
            profile = await self.enrollment.handle_frame(frame, now)
            if profile is not None:
                await self._on_enrolled(profile)

    async def _on_enrolled(self, profile: VoiceProfile) -> None:
        if self._profile is not None:
            raise InvalidTransition(f"Call {self.call_id} already has a voice profile")
        self._profile = profile
        observability.record_enrollment_metrics(profile.kind, self.enrollment.failed_enroll_calls)

        if self._finishing:
            return

        # Cancelling the capture pump must not strand a verifier mid-creation
        task = asyncio.create_task(self._prepare_scorer(profile))
        self._setup_tasks.add(task)
        task.add_done_callback(self._setup_tasks.discard)
        scorer = await asyncio.shield(task)
        if scorer is None or self._finishing:
            return

        self.verification = VerificationScheduler(
            self.call_id,
            self.buffer,
            scorer,
            on_mismatch=self._on_mismatch,
            threshold=self.config.match_threshold,
            period=self.config.verification_period,
            sample_timeout=self.config.verification_sample_timeout,
            on_tick=self._on_tick
        )
        self.verification.start()
        self.verification_state = VerificationState.VERIFYING

    async def _prepare_scorer(self, profile: VoiceProfile) -> Optional[SimilarityScorer]:
        """Create the session scorer; finish() waits for this before releasing handles."""
        scorer = await select_scorer(profile, self.backend)
        if not await self._own(self._handles, scorer.release):
            return None
        return scorer

    def _on_tick(self, result: Optional[ScoreResult]) -> None:
        if result is None:
            observability.record_verification_metrics("skipped", None, None)
            return
        outcome = "match" if result.is_match else "mismatch"
        observability.record_verification_metrics(outcome, result.max_score, result.scorer)

    def _on_mismatch(self, event: MismatchEvent) -> None:
        if self._finishing:
            return

        self.mismatch_events.append(event)
        logger.warning(
            f"Voice mismatch detected on call {self.call_id}, possible candidate substitution: "
            f"tick={event.tick}, scores={list(event.scores)}, threshold={event.threshold}, scorer={event.scorer}"
        )
        observability.record_mismatch(event.scorer)

        task = asyncio.create_task(self._notify(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, event: MismatchEvent) -> None:
        try:
            await self._notifier(event)
        except Exception as e:
            logger.warning(f"Mismatch notification failed for call {self.call_id}: {e}")

    async def _announce_mismatch(self, event: MismatchEvent) -> None:
        """Speak the mismatch warning into the call through its control URL."""
        if not self.config.announce_mismatch or not self.control_url:
            return
        try:
            await VAPIControlClient(self.control_url).say(self.config.mismatch_warning_message)
        except VAPIControlError as e:
            logger.warning(f"Could not announce mismatch on call {self.call_id}: {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Current state of the session for the status API."""
        verification = self.verification
        return {
            "call_id": self.call_id,
            "status": self.status.value,
            "verification_state": self.verification_state.value,
            "is_speaking": self.is_speaking,
            "enrollment_progress": self.enrollment.progress if self.enrollment else 0.0,
            "profile_kind": self._profile.kind if self._profile else None,
            "scorer": verification.scorer.name if verification else None,
            "verification_ticks": verification.ticks if verification else 0,
            "skipped_ticks": verification.skipped_ticks if verification else 0,
            "last_max_score": (
                verification.last_result.max_score
                if verification and verification.last_result else None
            ),
            "mismatch_count": len(self.mismatch_events),
            "interviewer_index": self.rotation.index,
            "current_interviewer": self.rotation.current_interviewer,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason,
        }


class SessionManager:
    """Registry of call sessions for this process."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        backend_factory: BackendFactory = select_backend
    ):
        self.config = config or settings
        self._backend_factory = backend_factory
        self._sessions: "OrderedDict[str, CallSession]" = OrderedDict()

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def get_or_create(
        self,
        call_id: str,
        listen_url: Optional[str] = None,
        control_url: Optional[str] = None
    ) -> CallSession:
        """
        Look up a session, creating it on first sight of a call id.

        Monitor URLs often arrive only with later events, so they are filled
        in on existing sessions as they become known.
        """
        session = self._sessions.get(call_id)
        if session is not None:
            if listen_url and not session.listen_url:
                session.listen_url = listen_url
            if control_url and not session.control_url:
                session.control_url = control_url
            return session

        session = CallSession(
            call_id,
            config=self.config,
            listen_url=listen_url,
            control_url=control_url,
            backend_factory=self._backend_factory
        )
        self._sessions[call_id] = session
        logger.info(f"Created session for call {call_id}")
        self._prune()
        return session

    def list(self) -> List[CallSession]:
        return list(self._sessions.values())

    def _prune(self) -> None:
        finished = [s.call_id for s in self._sessions.values() if s.is_finished]
        excess = len(finished) - self.config.session_history_limit
        for call_id in finished[:max(0, excess)]:
            del self._sessions[call_id]

    async def shutdown(self) -> None:
        """Finish every live session."""
        live = [s for s in self._sessions.values() if not s.is_finished]
        if live:
            logger.info(f"Finishing {len(live)} live sessions on shutdown")
        await asyncio.gather(*(s.finish("shutdown") for s in live))


# Global session manager instance
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get the global session manager instance."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager
