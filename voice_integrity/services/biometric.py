"""
Biometric backend interface and the Picovoice Eagle implementation.

A backend is selected once when a session starts. The engine talks only to
the ``BiometricBackend``/``Profiler``/``Verifier`` interface; every handle is
an owned resource whose native release runs exactly once.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Sequence

import numpy as np
import pveagle

from voice_integrity.models.internal_models import AudioFrame
from voice_integrity.utils.audio_utils import float32_to_pcm16

logger = logging.getLogger(__name__)


class BackendUnavailable(Exception):
    """Raised when a biometric backend cannot be created or initialized."""
    pass


class BackendCallFailure(Exception):
    """Raised when a single enroll, export or verify call fails."""
    pass


class BackendHandle(ABC):
    """
    Native backend resource released at most once.

    Blocking engine calls go through ``_call`` and run in a worker thread
    holding the handle lock. ``release`` takes the same lock, so a handle is
    only freed once no worker thread is inside it, even when the coroutine
    awaiting that thread has already been cancelled.
    """

    def __init__(self):
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await asyncio.to_thread(self._locked_release)
        except Exception as e:
            logger.warning(f"Error releasing {type(self).__name__}: {e}")

    def _ensure_live(self) -> None:
        if self._released:
            raise BackendCallFailure(f"{type(self).__name__} has been released")

    async def _call(self, fn: Callable[..., Any], *args) -> Any:
        """Run a blocking engine call on this handle in a worker thread."""
        def locked():
            with self._lock:
                self._ensure_live()
                return fn(*args)

        return await asyncio.to_thread(locked)

    def _locked_release(self) -> None:
        with self._lock:
            self._release()

    @abstractmethod
    def _release(self) -> None:
        """Free the native resource."""


class Profiler(BackendHandle):
    """Incremental enrollment handle."""

    @abstractmethod
    async def enroll(self, frame: AudioFrame) -> float:
        """Feed one frame; returns enrollment progress in percent."""

    @abstractmethod
    async def export(self) -> bytes:
        """Serialize the enrolled voice profile."""


class Verifier(BackendHandle):
    """Scoring handle created from one or more exported profiles."""

    @abstractmethod
    async def process(self, samples: np.ndarray) -> List[float]:
        """Score a signal against every enrolled profile."""


class BiometricBackend(ABC):
    """Factory for profiler and verifier handles."""

    name = "backend"

    @abstractmethod
    async def create_profiler(self) -> Profiler:
        """Raises BackendUnavailable when the engine cannot be initialized."""

    @abstractmethod
    async def create_verifier(self, profiles: Sequence[bytes]) -> Verifier:
        """Raises BackendUnavailable when the engine cannot be initialized."""


class EagleProfiler(Profiler):
    """Picovoice Eagle profiler fed with int16 PCM."""

    def __init__(self, handle):
        super().__init__()
        self._handle = handle
        self._pending = np.zeros(0, dtype=np.int16)
        self.min_samples = int(handle.min_enroll_samples)
        self.percentage = 0.0

    async def enroll(self, frame: AudioFrame) -> float:
        self._ensure_live()
        self._pending = np.concatenate([self._pending, float32_to_pcm16(frame.samples)])
        # Eagle rejects chunks shorter than min_enroll_samples
        if self._pending.shape[0] < self.min_samples:
            return self.percentage

        chunk, self._pending = self._pending, np.zeros(0, dtype=np.int16)
        try:
            percentage, feedback = await self._call(self._handle.enroll, chunk.tolist())
        except pveagle.EagleError as e:
            raise BackendCallFailure(f"Eagle enroll failed: {e}")

        self.percentage = float(percentage)
        logger.debug(f"Eagle enrollment progress {self.percentage:.1f}% ({feedback})")
        return self.percentage

    async def export(self) -> bytes:
        self._ensure_live()
        try:
            profile = await self._call(self._handle.export)
        except pveagle.EagleError as e:
            raise BackendCallFailure(f"Eagle export failed: {e}")
        return profile.to_bytes()

    def _release(self) -> None:
        self._handle.delete()


class EagleVerifier(Verifier):
    """Picovoice Eagle recognizer scoring fixed-length PCM frames."""

    def __init__(self, handle):
        super().__init__()
        self._handle = handle
        self.frame_length = int(handle.frame_length)

    async def process(self, samples: np.ndarray) -> List[float]:
        self._ensure_live()
        pcm = float32_to_pcm16(samples)
        chunks = pcm.shape[0] // self.frame_length
        if chunks == 0:
            raise BackendCallFailure(
                f"Sample too short for Eagle: {pcm.shape[0]} < {self.frame_length} samples"
            )

        def score_chunks():
            self._handle.reset()
            return [
                self._handle.process(pcm[i * self.frame_length:(i + 1) * self.frame_length].tolist())
                for i in range(chunks)
            ]

        try:
            per_chunk = await self._call(score_chunks)
        except pveagle.EagleError as e:
            raise BackendCallFailure(f"Eagle process failed: {e}")

        # Average each profile's score over the chunks of this sample
        return [float(score) for score in np.mean(np.asarray(per_chunk, dtype=np.float64), axis=0)]

    def _release(self) -> None:
        self._handle.delete()


class EagleBackend(BiometricBackend):
    """Picovoice Eagle speaker recognition."""

    name = "eagle"

    def __init__(self, access_key: str, model_path: Optional[str] = None):
        if not access_key:
            raise BackendUnavailable("Picovoice access key is required")
        self.access_key = access_key
        self.model_path = model_path

    async def create_profiler(self) -> Profiler:
        try:
            handle = await asyncio.to_thread(
                pveagle.create_profiler,
                access_key=self.access_key,
                model_path=self.model_path
            )
        except (pveagle.EagleError, ValueError) as e:
            logger.warning(f"Eagle profiler unavailable: {e}")
            raise BackendUnavailable(f"Eagle profiler initialization failed: {e}")

        logger.info(f"Eagle profiler created (min_enroll_samples={handle.min_enroll_samples})")
        return EagleProfiler(handle)

    async def create_verifier(self, profiles: Sequence[bytes]) -> Verifier:
        try:
            speaker_profiles = [pveagle.EagleProfile.from_bytes(data) for data in profiles]
            handle = await asyncio.to_thread(
                pveagle.create_recognizer,
                access_key=self.access_key,
                speaker_profiles=speaker_profiles,
                model_path=self.model_path
            )
        except (pveagle.EagleError, ValueError) as e:
            logger.warning(f"Eagle recognizer unavailable: {e}")
            raise BackendUnavailable(f"Eagle recognizer initialization failed: {e}")

        logger.info(f"Eagle recognizer created for {len(speaker_profiles)} profile(s)")
        return EagleVerifier(handle)
