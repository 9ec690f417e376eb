"""
Tests for verification scheduling and scorer selection.
"""

import asyncio
from typing import List

import pytest

from conftest import FakeBackend, FakeVerifier, make_frame
from voice_integrity.models.internal_models import BackendProfile, SampleProfile, VerificationSample
from voice_integrity.services.similarity import (
    BackendSimilarityScorer,
    FallbackSimilarityEstimator,
    IndeterminateScorer,
    SimilarityScorer,
)
from voice_integrity.services.verification import VerificationScheduler, select_scorer
from voice_integrity.services.windowing import WindowingBuffer


def verifying_buffer(sample_frames: int = 2) -> WindowingBuffer:
    buffer = WindowingBuffer(enrollment_duration=0.0, sample_frames=sample_frames)
    buffer.start_enrollment(now=0.0)
    buffer.push(make_frame(), 0.0)
    buffer.start_verification()
    return buffer


def sample_of(amplitude: float, count: int = 2) -> VerificationSample:
    return VerificationSample(target_frames=count, frames=[make_frame(amplitude) for _ in range(count)])


class StoppingScorer(SimilarityScorer):
    """Stops the scheduler while a score is being computed."""

    name = "stopping"

    def __init__(self):
        self.scheduler = None

    async def score(self, sample: VerificationSample) -> List[float]:
        self.scheduler.stop()
        return [0.1]


class TestVerificationScheduler:
    """Test cases for VerificationScheduler."""

    @pytest.fixture
    def events(self):
        return []

    @pytest.fixture
    def scheduler(self, events):
        return VerificationScheduler(
            "call-1",
            verifying_buffer(),
            FallbackSimilarityEstimator([make_frame(0.5)]),
            on_mismatch=events.append,
            threshold=0.7,
            period=100.0,
            sample_timeout=0.5
        )

    @pytest.mark.asyncio
    async def test_mismatch_emits_event(self, scheduler, events):
        """Test that a quiet sample against a loud reference is reported."""
        result = await scheduler.score_sample(sample_of(0.01))

        assert not result.is_match
        assert result.max_score == pytest.approx(0.02)
        assert len(events) == 1
        assert events[0].call_id == "call-1"
        assert events[0].scorer == "fallback"
        assert events[0].threshold == 0.7

    @pytest.mark.asyncio
    async def test_match_emits_nothing(self, scheduler, events):
        result = await scheduler.score_sample(sample_of(0.45))

        assert result.is_match
        assert events == []

    @pytest.mark.asyncio
    async def test_tick_collects_frames_from_buffer(self, scheduler, events):
        """Test a full tick: arm, collect the frames, score."""
        tick = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)

        assert scheduler.buffer.sample_armed
        scheduler.handle_frame(make_frame(0.5), 1.0)
        scheduler.handle_frame(make_frame(0.5), 1.1)
        result = await tick

        assert result.is_match
        assert scheduler.ticks == 1
        assert not scheduler.in_flight

    @pytest.mark.asyncio
    async def test_tick_times_out_without_audio(self, events):
        scheduler = VerificationScheduler(
            "call-1", verifying_buffer(), FallbackSimilarityEstimator([make_frame(0.5)]),
            on_mismatch=events.append, sample_timeout=0.01
        )
        ticks = []
        scheduler._on_tick = ticks.append

        assert await scheduler.tick() is None
        assert scheduler.skipped_ticks == 1
        assert not scheduler.buffer.sample_armed
        assert ticks == [None]
        assert events == []

    @pytest.mark.asyncio
    async def test_ticks_do_not_overlap(self, scheduler):
        """Test that a tick requested while one is in flight is skipped."""
        first = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)

        assert scheduler.in_flight
        assert await scheduler.tick() is None
        assert scheduler.ticks == 1

        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_indeterminate_score_skips_tick(self, events):
        scheduler = VerificationScheduler(
            "call-1", verifying_buffer(), IndeterminateScorer("no verifier"), on_mismatch=events.append
        )

        assert await scheduler.score_sample(sample_of(0.01)) is None
        assert scheduler.skipped_ticks == 1
        assert events == []

    @pytest.mark.asyncio
    async def test_no_event_after_stop(self, events):
        """Test that a result finishing after stop is discarded."""
        scorer = StoppingScorer()
        scheduler = VerificationScheduler("call-1", verifying_buffer(), scorer, on_mismatch=events.append)
        scorer.scheduler = scheduler

        assert await scheduler.score_sample(sample_of(0.01)) is None
        assert scheduler.cancelled
        assert events == []

    @pytest.mark.asyncio
    async def test_periodic_loop(self, events):
        """Test that the loop keeps ticking at the configured period."""
        buffer = verifying_buffer(sample_frames=1)
        scheduler = VerificationScheduler(
            "call-1", buffer, FallbackSimilarityEstimator([make_frame(0.5)]),
            on_mismatch=events.append, period=0.01, sample_timeout=0.5
        )
        scheduler.start()

        for _ in range(100):
            scheduler.handle_frame(make_frame(0.01), 0.0)
            await asyncio.sleep(0.002)
            if len(events) >= 2:
                break
        scheduler.stop()
        await asyncio.sleep(0)

        assert len(events) >= 2
        assert len({e.tick for e in events}) == len(events)
        assert scheduler.cancelled

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, scheduler):
        scheduler.start()
        scheduler.stop()
        scheduler.stop()

        assert scheduler.cancelled
        with pytest.raises(RuntimeError):
            scheduler.start()


class TestSelectScorer:
    """Test cases for choosing the scorer once per session."""

    @pytest.mark.asyncio
    async def test_sample_profile_uses_fallback(self, fake_backend):
        scorer = await select_scorer(SampleProfile(reference_frames=(make_frame(),)), fake_backend)

        assert isinstance(scorer, FallbackSimilarityEstimator)

    @pytest.mark.asyncio
    async def test_backend_profile_uses_verifier(self, fake_backend):
        scorer = await select_scorer(BackendProfile(profile_id="p", profile_data=b"data"), fake_backend)

        assert isinstance(scorer, BackendSimilarityScorer)
        assert fake_backend.verifier_profiles == [b"data"]

    @pytest.mark.asyncio
    async def test_backend_profile_without_backend(self):
        scorer = await select_scorer(BackendProfile(profile_id="p", profile_data=b"data"), None)

        assert isinstance(scorer, IndeterminateScorer)

    @pytest.mark.asyncio
    async def test_verifier_unavailable(self):
        """Test that a backend profile is never scored with the fallback estimator."""
        backend = FakeBackend(verifier=FakeVerifier(), verifier_unavailable=True)

        scorer = await select_scorer(BackendProfile(profile_id="p", profile_data=b"data"), backend)

        assert isinstance(scorer, IndeterminateScorer)
