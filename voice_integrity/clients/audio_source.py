"""
Audio frame source contract shared by the capture clients.

A source is opened once, delivers fixed-size frames to a single async
consumer in arrival order, and is closed exactly once no matter how many
times ``close()`` is called.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from voice_integrity.models.internal_models import AudioFrame

logger = logging.getLogger(__name__)

FrameCallback = Callable[[AudioFrame], Awaitable[None]]


class AudioCaptureError(Exception):
    """Raised when an audio capture stream cannot be opened."""
    pass


class PermissionDenied(AudioCaptureError):
    """Raised when access to the capture device is refused."""
    pass


class AudioFrameSource(ABC):
    """Base class for capture streams that emit fixed-size audio frames."""

    def __init__(self, frame_size: int = 4096, sample_rate: int = 16000):
        self.frame_size = frame_size
        self.sample_rate = sample_rate
        self.frames_delivered = 0
        # Consumers that schedule on their own clock replace this before open()
        self.clock: Callable[[], float] = time.monotonic

        self._callback: Optional[FrameCallback] = None
        self._opened = False
        self._closed = False
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def frame_period(self) -> float:
        """Seconds of audio carried by one frame."""
        return self.frame_size / self.sample_rate

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def on_frame(self, callback: FrameCallback) -> None:
        """Register the consumer invoked once per frame."""
        self._callback = callback

    async def open(self) -> None:
        """
        Open the underlying capture stream.

        Raises:
            AudioCaptureError: If the stream is unavailable
        """
        if self._closed:
            raise AudioCaptureError("Audio source already closed")
        if self._opened:
            return
        await self._open()
        self._opened = True

        if self._closed:
            # close() ran while the stream was still opening
            self._closed = False
            await self.close()
            raise AudioCaptureError("Audio source closed while opening")

    async def close(self) -> None:
        """Close the capture stream. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        pump = self._pump_task
        if pump and not pump.done() and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

        try:
            await self._close()
        except Exception as e:
            logger.warning(f"Error closing audio source: {e}")

        logger.info(f"Audio source closed after {self.frames_delivered} frames")

    def stamp(self, frame: AudioFrame, received_at: Optional[float] = None) -> AudioFrame:
        """Return the frame carrying its arrival time on this source's clock."""
        if frame.received_at is not None:
            return frame
        return replace(frame, received_at=self.clock() if received_at is None else received_at)

    async def _deliver(self, frame: AudioFrame) -> None:
        if self._closed or self._callback is None:
            return
        frame = self.stamp(frame)
        self.frames_delivered += 1
        try:
            await self._callback(frame)
        except Exception as e:
            logger.error(f"Frame consumer failed on frame {self.frames_delivered}: {e}")

    @abstractmethod
    async def _open(self) -> None:
        """Acquire the device or connection and start the pump task."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the device or connection."""
