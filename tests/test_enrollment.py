"""
Tests for the enrollment controller.
"""

import pytest

from conftest import FakeBackend, FakeProfiler, make_frame
from voice_integrity.models.internal_models import BackendProfile, SampleProfile
from voice_integrity.services.enrollment import EnrollmentController, EnrollmentError
from voice_integrity.services.windowing import WindowingBuffer


async def run_window(controller, times):
    """Feed one frame per arrival time, returning the last result."""
    result = None
    for now in times:
        result = await controller.handle_frame(make_frame(0.2), now)
    return result


class TestEnrollmentController:
    """Test cases for EnrollmentController."""

    @pytest.mark.asyncio
    async def test_sample_profile_without_backend(self):
        """Test that the window frames become the reference when no backend is set."""
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0))
        assert await controller.prepare() is None
        controller.start(now=0.0)

        profile = await run_window(controller, [0.0, 0.5, 1.0])

        assert isinstance(profile, SampleProfile)
        assert len(profile.reference_frames) == 3
        assert controller.is_complete
        assert not controller.is_enrolling

    @pytest.mark.asyncio
    async def test_profile_only_at_window_close(self):
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0))
        controller.start(now=0.0)

        assert await run_window(controller, [0.0, 0.3, 0.9]) is None
        assert controller.is_enrolling

    @pytest.mark.asyncio
    async def test_backend_profile(self, fake_backend):
        """Test export through the profiler and release of its handle."""
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0), fake_backend)
        await controller.prepare()
        controller.start(now=0.0)

        profile = await run_window(controller, [0.0, 0.5, 1.0])

        assert isinstance(profile, BackendProfile)
        assert profile.profile_data == b"voice-profile"
        assert profile.profile_id.startswith("profile_")
        assert fake_backend.profiler.enrolled_frames == 3
        assert controller.progress == 100.0
        assert fake_backend.profiler.release_calls == 1

    @pytest.mark.asyncio
    async def test_export_failure_falls_back_to_samples(self):
        backend = FakeBackend(profiler=FakeProfiler(fail_export=True))
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0), backend)
        await controller.prepare()
        controller.start(now=0.0)

        profile = await run_window(controller, [0.0, 1.0])

        assert isinstance(profile, SampleProfile)
        assert backend.profiler.release_calls == 1

    @pytest.mark.asyncio
    async def test_failed_enroll_calls_are_counted(self):
        """Test that enroll failures do not stop frame collection."""
        backend = FakeBackend(profiler=FakeProfiler(fail_enroll=True))
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0), backend)
        await controller.prepare()
        controller.start(now=0.0)

        profile = await run_window(controller, [0.0, 0.5, 1.0])

        assert controller.failed_enroll_calls == 3
        assert isinstance(profile, BackendProfile)

    @pytest.mark.asyncio
    async def test_unavailable_backend_enrolls_samples(self):
        backend = FakeBackend(profiler_unavailable=True)
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0), backend)

        assert await controller.prepare() is None
        controller.start(now=0.0)
        profile = await run_window(controller, [0.0, 1.0])

        assert isinstance(profile, SampleProfile)

    @pytest.mark.asyncio
    async def test_start_twice(self):
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0))
        controller.start(now=0.0)

        with pytest.raises(EnrollmentError, match="already started"):
            controller.start(now=0.1)

    @pytest.mark.asyncio
    async def test_restart_after_completion(self):
        """Test that a session produces exactly one profile."""
        controller = EnrollmentController(WindowingBuffer(enrollment_duration=1.0))
        controller.start(now=0.0)
        await run_window(controller, [0.0, 1.0])

        with pytest.raises(EnrollmentError, match="already completed"):
            controller.start(now=2.0)
        assert await controller.handle_frame(make_frame(), 2.5) is None

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, fake_backend):
        controller = EnrollmentController(WindowingBuffer(), fake_backend)
        await controller.prepare()

        await controller.release()
        await controller.release()

        assert fake_backend.profiler.release_calls == 1
