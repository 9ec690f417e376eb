"""Local microphone frame source backed by sounddevice."""

import asyncio
import logging
from typing import Optional

import numpy as np
import sounddevice as sd

from voice_integrity.clients.audio_source import AudioFrameSource, PermissionDenied
from voice_integrity.models.internal_models import AudioFrame

logger = logging.getLogger(__name__)


class MicrophoneFrameSource(AudioFrameSource):
    """
    Captures mono float32 frames from the default input device.

    PortAudio invokes the stream callback on its own thread; frames are
    handed to the event loop with ``call_soon_threadsafe`` and delivered
    in order by a pump task.
    """

    def __init__(self, frame_size: int = 4096, sample_rate: int = 16000,
                 device: Optional[int] = None, max_queued_frames: int = 64):
        super().__init__(frame_size=frame_size, sample_rate=sample_rate)
        self.device = device
        self.dropped_frames = 0

        self._stream: Optional[sd.InputStream] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued_frames)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def _open(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.frame_size,
                device=self.device,
                channels=1,
                dtype="float32",
                callback=self._on_audio,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            logger.error(f"Microphone unavailable: {e}")
            self._stream = None
            raise PermissionDenied(f"Microphone access failed: {e}")

        logger.info(f"Microphone stream opened (sample_rate={self.sample_rate}, frame_size={self.frame_size})")
        self._pump_task = asyncio.create_task(self._pump())

    def _on_audio(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.debug(f"Microphone stream status: {status}")
        frame = AudioFrame(samples=indata[:, 0])
        self._loop.call_soon_threadsafe(self._enqueue, frame)

    def _enqueue(self, frame: AudioFrame) -> None:
        try:
            self._queue.put_nowait(self.stamp(frame))
        except asyncio.QueueFull:
            self.dropped_frames += 1
            logger.warning(f"Microphone frame queue full, dropped {self.dropped_frames} frames")

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            await self._deliver(frame)

    async def _close(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.stop()
            stream.close()
