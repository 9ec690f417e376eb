"""
Verification scheduler.

Once a voice profile exists, periodically collects a short sample from the
windowing buffer, scores it and reports a mismatch event for every tick that
falls below the match threshold. Ticks run one after another; stopping the
scheduler is synchronous and no event is emitted afterwards.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from voice_integrity.models.internal_models import (
    AudioFrame,
    BackendProfile,
    MismatchEvent,
    ScoreResult,
    VerificationSample,
    VoiceProfile,
)
from voice_integrity.services.biometric import BackendUnavailable, BiometricBackend
from voice_integrity.services.similarity import (
    BackendSimilarityScorer,
    FallbackSimilarityEstimator,
    IndeterminateScorer,
    ScoringIndeterminate,
    SimilarityScorer,
    is_voice_match,
)
from voice_integrity.services.windowing import WindowingBuffer

logger = logging.getLogger(__name__)

MismatchListener = Callable[[MismatchEvent], None]
TickListener = Callable[[Optional[ScoreResult]], None]


async def select_scorer(profile: VoiceProfile, backend: Optional[BiometricBackend]) -> SimilarityScorer:
    """
    Pick the scorer for an enrolled profile, once per session.

    Sample profiles always use the fallback estimator. Backend profiles need
    a verifier; if none can be created every tick will be skipped.
    """
    if not isinstance(profile, BackendProfile):
        return FallbackSimilarityEstimator(profile.reference_frames)

    if backend is None:
        return IndeterminateScorer("No biometric backend for backend profile")

    try:
        verifier = await backend.create_verifier([profile.profile_data])
    except BackendUnavailable as e:
        logger.warning(f"Could not initialize verifier, verification ticks will be skipped: {e}")
        return IndeterminateScorer(f"Verifier unavailable: {e}")

    return BackendSimilarityScorer(verifier)


class VerificationScheduler:
    """Periodic re-sampling and scoring against the enrolled voice profile."""

    def __init__(
        self,
        call_id: str,
        buffer: WindowingBuffer,
        scorer: SimilarityScorer,
        on_mismatch: MismatchListener,
        threshold: float = 0.7,
        period: float = 5.0,
        sample_timeout: float = 10.0,
        on_tick: Optional[TickListener] = None
    ):
        self.call_id = call_id
        self.buffer = buffer
        self.scorer = scorer
        self.threshold = threshold
        self.period = period
        self.sample_timeout = sample_timeout

        self.ticks = 0
        self.skipped_ticks = 0
        self.mismatches = 0
        self.last_result: Optional[ScoreResult] = None

        self._on_mismatch = on_mismatch
        self._on_tick = on_tick
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Future] = None
        self._in_flight = False
        self._cancelled = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._cancelled:
            raise RuntimeError("Verification scheduler was stopped")
        if self._task is not None:
            return
        self.buffer.start_verification()
        self._task = asyncio.create_task(self._run(), name=f"verification-{self.call_id}")
        logger.info(f"Voice verification started for call {self.call_id}, every {self.period}s")

    def stop(self) -> None:
        """Cancel the loop and any pending tick without waiting."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self.buffer.stop()
        logger.info(f"Voice verification stopped for call {self.call_id} after {self.ticks} ticks")

    def handle_frame(self, frame: AudioFrame, now: float) -> None:
        """Route a frame into the armed sample, completing the tick's wait."""
        sample = self.buffer.push(frame, now)
        if sample is not None and self._pending is not None and not self._pending.done():
            self._pending.set_result(sample)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.period
        while not self._cancelled:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            await self.tick()
            # Fixed-rate schedule; a tick that overruns pushes the next one back
            next_tick = max(next_tick + self.period, loop.time())

    async def tick(self) -> Optional[ScoreResult]:
        """Collect one sample and score it."""
        if self._cancelled or self._in_flight:
            return None

        self._in_flight = True
        self.ticks += 1
        try:
            sample = await self._collect_sample()
            if sample is None:
                self._skip("no audio arrived for the verification sample")
                return None
            return await self.score_sample(sample)
        finally:
            self._in_flight = False

    async def _collect_sample(self) -> Optional[VerificationSample]:
        self._pending = asyncio.get_running_loop().create_future()
        self.buffer.arm_sample()
        try:
            return await asyncio.wait_for(self._pending, timeout=self.sample_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._pending = None
            self.buffer.disarm_sample()

    async def score_sample(self, sample: VerificationSample) -> Optional[ScoreResult]:
        """
        Score a completed sample and emit a mismatch event when it fails.

        Returns:
            The score result, or None when the tick was skipped or the
            scheduler was stopped while scoring
        """
        try:
            scores: List[float] = await self.scorer.score(sample)
        except ScoringIndeterminate as e:
            self._skip(str(e))
            return None

        if self._cancelled:
            logger.debug(f"Discarding verification result for call {self.call_id} after stop")
            return None

        result = ScoreResult(
            scores=tuple(scores),
            threshold=self.threshold,
            scorer=self.scorer.name,
            is_match=is_voice_match(scores, self.threshold)
        )
        self.last_result = result
        logger.debug(
            f"Verification tick {self.ticks} for call {self.call_id}: "
            f"scores={list(result.scores)}, threshold={self.threshold}, match={result.is_match}"
        )

        if self._on_tick is not None:
            self._on_tick(result)

        if not result.is_match:
            self.mismatches += 1
            self._on_mismatch(MismatchEvent(
                call_id=self.call_id,
                tick=self.ticks,
                scores=result.scores,
                threshold=self.threshold,
                scorer=result.scorer
            ))
        return result

    def _skip(self, reason: str) -> None:
        self.skipped_ticks += 1
        logger.warning(f"Skipping verification tick {self.ticks} for call {self.call_id}: {reason}")
        if self._on_tick is not None and not self._cancelled:
            self._on_tick(None)
