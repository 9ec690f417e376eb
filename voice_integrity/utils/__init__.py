# Utilities module

from .audio_utils import (
    AudioProcessingError,
    FrameAssembler,
    concatenate_frames,
    float32_to_pcm16,
    loudness,
    pcm16_to_float32,
)

__all__ = [
    "AudioProcessingError",
    "FrameAssembler",
    "concatenate_frames",
    "float32_to_pcm16",
    "loudness",
    "pcm16_to_float32",
]
