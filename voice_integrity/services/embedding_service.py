"""
Speaker embeddings with the SpeechBrain ECAPA-TDNN model, and a biometric
backend built on them.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import torch
import torchaudio
from speechbrain.inference import EncoderClassifier

from voice_integrity.models.internal_models import AudioFrame
from voice_integrity.services.biometric import (
    BackendCallFailure,
    BackendUnavailable,
    BiometricBackend,
    Profiler,
    Verifier,
)
from voice_integrity.utils.audio_utils import concatenate_frames

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 192
MODEL_SAMPLE_RATE = 16000


class EmbeddingService:
    """Service for generating speaker embeddings using SpeechBrain ECAPA-TDNN model."""

    def __init__(self, model_cache_dir: Optional[str] = None):
        """
        Initialize the embedding service.

        Args:
            model_cache_dir: Directory to cache the model files. If None, uses system temp dir.
        """
        self.model_cache_dir = model_cache_dir or os.path.join(tempfile.gettempdir(), "speechbrain_models")
        self.model: Optional[EncoderClassifier] = None
        self._model_loaded = False

        torch.set_num_threads(1)

        Path(self.model_cache_dir).mkdir(parents=True, exist_ok=True)

    def load_model(self) -> None:
        """Load the SpeechBrain ECAPA-TDNN model on CPU."""
        if self._model_loaded:
            return

        try:
            logger.info("Loading SpeechBrain ECAPA-TDNN model...")

            self.model = EncoderClassifier.from_hparams(
                source="speechbrain/spkrec-ecapa-voxceleb",
                savedir=self.model_cache_dir,
                run_opts={"device": "cpu"}
            )

            self._model_loaded = True
            logger.info("SpeechBrain ECAPA-TDNN model loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load SpeechBrain model: {e}")
            raise RuntimeError(f"Model loading failed: {e}")

    def embed_waveform(self, samples: np.ndarray, sample_rate: int) -> np.ndarray:
        """
        Generate a 192-dimensional speaker embedding from raw samples.

        Args:
            samples: Mono float32 samples in [-1, 1]
            sample_rate: Sample rate of ``samples`` in Hz

        Returns:
            numpy.ndarray: 192-dimensional speaker embedding vector

        Raises:
            ValueError: If the audio is shorter than 0.5 seconds
            RuntimeError: If model loading or inference fails
        """
        if samples.shape[0] < sample_rate * 0.5:
            raise ValueError("Audio too short (minimum 0.5 seconds required)")

        self.load_model()

        try:
            waveform = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32)).unsqueeze(0)

            # ECAPA model expects 16kHz
            if sample_rate != MODEL_SAMPLE_RATE:
                resampler = torchaudio.transforms.Resample(sample_rate, MODEL_SAMPLE_RATE)
                waveform = resampler(waveform)

            with torch.no_grad():
                embeddings = self.model.encode_batch(waveform)
                embedding = embeddings.squeeze().cpu().numpy()

            if embedding.shape[0] != EMBEDDING_DIM:
                raise RuntimeError(f"Unexpected embedding dimension: {embedding.shape[0]}, expected {EMBEDDING_DIM}")

            return embedding.astype(np.float32)

        except RuntimeError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e}")
            raise RuntimeError(f"Embedding generation failed: {e}")

    def compute_cosine_similarity(self, embedding1: np.ndarray, embedding2: np.ndarray) -> float:
        """
        Compute cosine similarity between two embeddings.

        Raises:
            ValueError: If embeddings have different dimensions or zero norm
        """
        if embedding1.shape != embedding2.shape:
            raise ValueError(f"Embedding dimensions don't match: {embedding1.shape} vs {embedding2.shape}")

        norm1 = np.linalg.norm(embedding1)
        norm2 = np.linalg.norm(embedding2)

        if norm1 == 0 or norm2 == 0:
            raise ValueError("Cannot compute similarity with zero-norm embedding")

        similarity = np.dot(embedding1, embedding2) / (norm1 * norm2)
        return float(np.clip(similarity, -1.0, 1.0))

    def validate_embedding(self, embedding: np.ndarray) -> bool:
        """Check shape, finiteness and non-zero content of an embedding."""
        if not isinstance(embedding, np.ndarray):
            return False
        if embedding.ndim != 1 or embedding.shape[0] != EMBEDDING_DIM:
            return False
        if not np.isfinite(embedding).all():
            return False
        return not np.allclose(embedding, 0)


# Global instance for reuse across sessions
_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get the global embedding service instance."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service


class EcapaProfiler(Profiler):
    """Accumulates enrollment audio and exports its ECAPA embedding."""

    def __init__(self, service: EmbeddingService, sample_rate: int, target_seconds: float = 20.0):
        super().__init__()
        self._service = service
        self._sample_rate = sample_rate
        self._target_samples = int(sample_rate * target_seconds)
        self._frames: List[AudioFrame] = []
        self._collected = 0

    async def enroll(self, frame: AudioFrame) -> float:
        self._ensure_live()
        self._frames.append(frame)
        self._collected += frame.sample_count
        return min(100.0, 100.0 * self._collected / self._target_samples)

    async def export(self) -> bytes:
        self._ensure_live()
        if not self._frames:
            raise BackendCallFailure("No enrollment audio collected")

        signal = concatenate_frames(self._frames)
        try:
            embedding = await self._call(self._service.embed_waveform, signal, self._sample_rate)
        except (ValueError, RuntimeError) as e:
            raise BackendCallFailure(f"ECAPA export failed: {e}")

        if not self._service.validate_embedding(embedding):
            raise BackendCallFailure("Generated embedding failed validation")
        return embedding.astype("<f4").tobytes()

    def _release(self) -> None:
        self._frames.clear()


class EcapaVerifier(Verifier):
    """Cosine similarity between a live sample and each enrolled embedding."""

    def __init__(self, service: EmbeddingService, profiles: Sequence[np.ndarray], sample_rate: int):
        super().__init__()
        self._service = service
        self._profiles = list(profiles)
        self._sample_rate = sample_rate

    async def process(self, samples: np.ndarray) -> List[float]:
        self._ensure_live()

        def score():
            embedding = self._service.embed_waveform(samples, self._sample_rate)
            return [self._service.compute_cosine_similarity(profile, embedding) for profile in self._profiles]

        try:
            return await self._call(score)
        except (ValueError, RuntimeError) as e:
            raise BackendCallFailure(f"ECAPA verification failed: {e}")

    def _release(self) -> None:
        self._profiles.clear()


class EcapaBackend(BiometricBackend):
    """Speaker verification with locally computed ECAPA-TDNN embeddings."""

    name = "ecapa"

    def __init__(self, sample_rate: int = 16000, service: Optional[EmbeddingService] = None):
        self.sample_rate = sample_rate
        self.service = service or get_embedding_service()

    def _ensure_model(self) -> None:
        try:
            self.service.load_model()
        except RuntimeError as e:
            raise BackendUnavailable(str(e))

    async def create_profiler(self) -> Profiler:
        await asyncio.to_thread(self._ensure_model)
        return EcapaProfiler(self.service, self.sample_rate)

    async def create_verifier(self, profiles: Sequence[bytes]) -> Verifier:
        await asyncio.to_thread(self._ensure_model)
        embeddings = [np.frombuffer(data, dtype="<f4").astype(np.float32) for data in profiles]
        for embedding in embeddings:
            if not self.service.validate_embedding(embedding):
                raise BackendUnavailable("Stored profile is not a valid ECAPA embedding")
        return EcapaVerifier(self.service, embeddings, self.sample_rate)
