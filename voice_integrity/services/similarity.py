"""
Similarity scoring for verification ticks.

The fallback estimator compares loudness statistics only. It is not a
biometric check: it exists so verification degrades gracefully when no
backend is available, and it leans towards passing.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

from voice_integrity.models.internal_models import AudioFrame, VerificationSample
from voice_integrity.services.biometric import BackendCallFailure, Verifier
from voice_integrity.utils.audio_utils import loudness

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY = 0.85


class ScoringIndeterminate(Exception):
    """Raised when a sample cannot be compared against the enrolled profile."""
    pass


def fallback_similarity(sample_frames: Sequence[AudioFrame], reference_frames: Sequence[AudioFrame]) -> float:
    """
    Loudness-based similarity between a sample and the enrollment reference.

    Returns DEFAULT_SIMILARITY when either side has no frames or both are
    silent; otherwise ``1 - |a - b| / max(a, b)`` clamped to [0, 1].
    """
    if not sample_frames or not reference_frames:
        return DEFAULT_SIMILARITY

    current = loudness(sample_frames)
    enrolled = loudness(reference_frames)

    max_avg = max(current, enrolled)
    if max_avg <= 0:
        return DEFAULT_SIMILARITY

    similarity = 1.0 - abs(current - enrolled) / max_avg
    return max(0.0, min(1.0, similarity))


def is_voice_match(scores: Sequence[float], threshold: float = 0.7) -> bool:
    """True when the best score reaches the threshold."""
    if not scores:
        return False
    return max(scores) >= threshold


class SimilarityScorer(ABC):
    """Scores verification samples against one enrolled voice profile."""

    name = "scorer"

    @abstractmethod
    async def score(self, sample: VerificationSample) -> List[float]:
        """
        Raises:
            ScoringIndeterminate: If no score can be produced for this sample
        """

    async def release(self) -> None:
        """Free any handle held by the scorer."""


class FallbackSimilarityEstimator(SimilarityScorer):
    """Compares sample loudness with the loudness of the enrollment frames."""

    name = "fallback"

    def __init__(self, reference_frames: Sequence[AudioFrame]):
        self.reference_frames = tuple(reference_frames)

    async def score(self, sample: VerificationSample) -> List[float]:
        return [fallback_similarity(sample.frames, self.reference_frames)]


class BackendSimilarityScorer(SimilarityScorer):
    """Delegates scoring to a biometric verifier."""

    name = "backend"

    def __init__(self, verifier: Verifier):
        self.verifier = verifier

    async def score(self, sample: VerificationSample) -> List[float]:
        try:
            return [float(s) for s in await self.verifier.process(sample.concatenated())]
        except BackendCallFailure as e:
            # A backend profile carries no reference frames to fall back on
            raise ScoringIndeterminate(f"Backend verification failed: {e}")

    async def release(self) -> None:
        await self.verifier.release()


class IndeterminateScorer(SimilarityScorer):
    """Stands in when a backend profile exists but no verifier could be created."""

    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason

    async def score(self, sample: VerificationSample) -> List[float]:
        raise ScoringIndeterminate(self.reason)
