"""
Shared fakes for the voice integrity tests.
"""

import asyncio
import threading
import time
from typing import List, Optional, Sequence

import numpy as np
import pytest

from voice_integrity.clients.audio_source import AudioFrameSource
from voice_integrity.config import Settings
from voice_integrity.models.internal_models import AudioFrame
from voice_integrity.services.biometric import (
    BackendCallFailure,
    BackendUnavailable,
    BiometricBackend,
    Profiler,
    Verifier,
)


def make_frame(amplitude: float = 0.1, size: int = 4, received_at: Optional[float] = None) -> AudioFrame:
    """Frame of constant amplitude."""
    return AudioFrame(samples=np.full(size, amplitude, dtype=np.float32), received_at=received_at)


def make_settings(**overrides) -> Settings:
    """Settings with short timings, isolated from the environment file."""
    values = dict(
        picovoice_access_key="test-key",
        biometric_backend="none",
        enrollment_duration=1.0,
        verification_period=0.01,
        verification_sample_frames=2,
        verification_sample_timeout=0.5,
        frame_size=4,
        rotation_delay=0.0,
        announce_mismatch=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFrameSource(AudioFrameSource):
    """Frame source driven directly by the test."""

    def __init__(self, frame_size: int = 4, fail_with: Optional[Exception] = None):
        super().__init__(frame_size=frame_size, sample_rate=16000)
        self.fail_with = fail_with
        self.open_calls = 0
        self.close_calls = 0

    async def _open(self) -> None:
        self.open_calls += 1
        if self.fail_with is not None:
            raise self.fail_with

    async def _close(self) -> None:
        self.close_calls += 1

    async def push(self, frame: AudioFrame) -> None:
        await self._deliver(frame)


class PumpedFrameSource(FakeFrameSource):
    """Frame source delivering from its own pump task, as the capture clients do."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._queue: asyncio.Queue = asyncio.Queue()

    async def _open(self) -> None:
        await super()._open()
        self._pump_task = asyncio.create_task(self._pump())

    def feed(self, frame: AudioFrame) -> None:
        self._queue.put_nowait(frame)

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            await self._deliver(frame)


class FakeProfiler(Profiler):
    def __init__(self, export_data: bytes = b"voice-profile", fail_export: bool = False,
                 fail_enroll: bool = False):
        super().__init__()
        self.export_data = export_data
        self.fail_export = fail_export
        self.fail_enroll = fail_enroll
        self.enrolled_frames = 0
        self.release_calls = 0

    async def enroll(self, frame: AudioFrame) -> float:
        self._ensure_live()
        if self.fail_enroll:
            raise BackendCallFailure("enroll rejected")
        self.enrolled_frames += 1
        return min(100.0, self.enrolled_frames * 25.0)

    async def export(self) -> bytes:
        self._ensure_live()
        if self.fail_export:
            raise BackendCallFailure("export rejected")
        return self.export_data

    def _release(self) -> None:
        self.release_calls += 1


class FakeVerifier(Verifier):
    def __init__(self, scores: Sequence[float] = (0.9,), fail: bool = False):
        super().__init__()
        self.scores = list(scores)
        self.fail = fail
        self.processed = 0
        self.release_calls = 0

    async def process(self, samples: np.ndarray) -> List[float]:
        self._ensure_live()
        self.processed += 1
        if self.fail:
            raise BackendCallFailure("process rejected")
        return list(self.scores)

    def _release(self) -> None:
        self.release_calls += 1


class BlockingCall:
    """Engine call that holds a worker thread for a while."""

    def __init__(self, delay: float):
        self.delay = delay
        self.started = threading.Event()
        self.running = False

    def __call__(self) -> None:
        self.running = True
        self.started.set()
        time.sleep(self.delay)
        self.running = False


class BlockingProfiler(FakeProfiler):
    """Profiler whose enroll call blocks in a worker thread."""

    def __init__(self, delay: float = 0.2):
        super().__init__()
        self.native = BlockingCall(delay)
        self.released_while_running = False

    async def enroll(self, frame: AudioFrame) -> float:
        await self._call(self.native)
        return await super().enroll(frame)

    def _release(self) -> None:
        self.released_while_running = self.native.running
        super()._release()


class BlockingVerifier(FakeVerifier):
    """Verifier whose process call blocks in a worker thread."""

    def __init__(self, delay: float = 0.2):
        super().__init__()
        self.native = BlockingCall(delay)
        self.released_while_running = False

    async def process(self, samples: np.ndarray) -> List[float]:
        await self._call(self.native)
        return await super().process(samples)

    def _release(self) -> None:
        self.released_while_running = self.native.running
        super()._release()


class FakeBackend(BiometricBackend):
    name = "fake"

    def __init__(self, profiler: Optional[FakeProfiler] = None, verifier: Optional[FakeVerifier] = None,
                 profiler_unavailable: bool = False, verifier_unavailable: bool = False,
                 verifier_delay: float = 0.0):
        self.profiler = profiler or FakeProfiler()
        self.verifier = verifier or FakeVerifier()
        self.verifier_delay = verifier_delay
        self.verifier_requested = False
        self.profiler_unavailable = profiler_unavailable
        self.verifier_unavailable = verifier_unavailable
        self.verifier_profiles: List[bytes] = []

    async def create_profiler(self) -> Profiler:
        if self.profiler_unavailable:
            raise BackendUnavailable("profiler engine missing")
        return self.profiler

    async def create_verifier(self, profiles: Sequence[bytes]) -> Verifier:
        if self.verifier_unavailable:
            raise BackendUnavailable("verifier engine missing")
        self.verifier_profiles = list(profiles)
        self.verifier_requested = True
        if self.verifier_delay:
            await asyncio.to_thread(time.sleep, self.verifier_delay)
        return self.verifier


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_backend():
    return FakeBackend()
