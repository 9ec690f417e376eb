"""
Audio processing utilities for voice verification.

This module provides functions for:
- Decoding 16-bit PCM payloads into float32 samples
- Re-chunking arbitrary payload sizes into fixed-size audio frames
- Converting float32 samples back to 16-bit PCM for native backends
- Computing the loudness statistic used by the fallback estimator
"""

import logging
from typing import List, Sequence

import numpy as np

from voice_integrity.models.internal_models import AudioFrame

logger = logging.getLogger(__name__)

PCM16_MAX = 32768.0


class AudioProcessingError(Exception):
    """Raised when audio processing operations fail."""
    pass


def pcm16_to_float32(pcm_data: bytes, channels: int = 1, channel_index: int = 0) -> np.ndarray:
    """
    Convert little-endian 16-bit PCM audio to float32 samples in [-1, 1).

    Args:
        pcm_data: Raw PCM audio data
        channels: Number of interleaved channels in the payload
        channel_index: Channel to keep when the payload is interleaved

    Returns:
        1-D float32 array of samples for the selected channel

    Raises:
        AudioProcessingError: If the payload cannot be decoded
    """
    if not 0 <= channel_index < channels:
        raise AudioProcessingError(f"Channel index {channel_index} out of range for {channels} channels")

    frame_width = 2 * channels
    usable = len(pcm_data) - (len(pcm_data) % frame_width)
    if usable != len(pcm_data):
        logger.debug(f"Dropping {len(pcm_data) - usable} trailing bytes of partial PCM frame")

    try:
        samples = np.frombuffer(pcm_data[:usable], dtype="<i2")
    except ValueError as e:
        raise AudioProcessingError(f"Failed to decode PCM data: {e}")

    if channels > 1:
        samples = samples.reshape(-1, channels)[:, channel_index]

    return samples.astype(np.float32) / PCM16_MAX


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Convert float32 samples in [-1, 1] to int16 PCM samples.

    Values outside the range are clipped rather than wrapped.
    """
    scaled = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0) * (PCM16_MAX - 1)
    return scaled.astype(np.int16)


def concatenate_frames(frames: Sequence[AudioFrame]) -> np.ndarray:
    """Join frames into one contiguous float32 signal."""
    if not frames:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate([frame.samples for frame in frames])


def loudness(frames: Sequence[AudioFrame]) -> float:
    """
    Mean of the per-frame mean absolute amplitudes.

    Args:
        frames: Audio frames to summarize

    Returns:
        Loudness statistic, 0.0 for an empty sequence
    """
    if not frames:
        return 0.0
    return float(np.mean([frame.mean_absolute_amplitude() for frame in frames]))


class FrameAssembler:
    """
    Re-chunks a stream of sample arrays into fixed-size audio frames.

    Payloads from the network arrive in whatever size the sender chose;
    downstream consumers expect exactly ``frame_size`` samples per frame.
    """

    def __init__(self, frame_size: int = 4096):
        if frame_size < 1:
            raise ValueError(f"Frame size must be positive, got: {frame_size}")
        self.frame_size = frame_size
        self._pending = np.zeros(0, dtype=np.float32)

    @property
    def pending_samples(self) -> int:
        return int(self._pending.shape[0])

    def feed(self, samples: np.ndarray) -> List[AudioFrame]:
        """
        Add samples and return every complete frame now available.

        Args:
            samples: New float32 samples

        Returns:
            Complete frames in arrival order (possibly empty)
        """
        if samples.size == 0:
            return []

        buffered = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        complete = buffered.shape[0] // self.frame_size
        frames = [
            AudioFrame(samples=buffered[i * self.frame_size:(i + 1) * self.frame_size])
            for i in range(complete)
        ]
        self._pending = buffered[complete * self.frame_size:].copy()
        return frames

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
