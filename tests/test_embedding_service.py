"""
Tests for the embedding service and the ECAPA backend.
"""

import os
import tempfile
from unittest.mock import Mock, patch

import numpy as np
import pytest
import torch

from conftest import make_frame
from voice_integrity.services.biometric import BackendCallFailure, BackendUnavailable
from voice_integrity.services.embedding_service import (
    EcapaBackend,
    EcapaProfiler,
    EcapaVerifier,
    EmbeddingService,
    get_embedding_service,
)


class TestEmbeddingService:
    """Test cases for EmbeddingService."""

    @pytest.fixture
    def embedding_service(self):
        """Create an embedding service instance for testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            service = EmbeddingService(model_cache_dir=temp_dir)
            yield service

    @pytest.fixture
    def mock_model(self):
        """Create a mock SpeechBrain model."""
        mock_model = Mock()
        mock_model.encode_batch.return_value = torch.randn(1, 1, 192)
        return mock_model

    def test_init(self):
        """Test EmbeddingService initialization."""
        with tempfile.TemporaryDirectory() as temp_dir:
            service = EmbeddingService(model_cache_dir=temp_dir)

            assert service.model_cache_dir == temp_dir
            assert service.model is None
            assert not service._model_loaded
            assert os.path.exists(temp_dir)

    @patch('voice_integrity.services.embedding_service.EncoderClassifier')
    def test_load_model_success(self, mock_encoder_class, embedding_service, mock_model):
        """Test successful model loading."""
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding_service.load_model()
        embedding_service.load_model()

        assert embedding_service._model_loaded
        assert embedding_service.model == mock_model
        mock_encoder_class.from_hparams.assert_called_once_with(
            source="speechbrain/spkrec-ecapa-voxceleb",
            savedir=embedding_service.model_cache_dir,
            run_opts={"device": "cpu"}
        )

    @patch('voice_integrity.services.embedding_service.EncoderClassifier')
    def test_load_model_failure(self, mock_encoder_class, embedding_service):
        """Test model loading failure."""
        mock_encoder_class.from_hparams.side_effect = Exception("download failed")

        with pytest.raises(RuntimeError, match="Model loading failed"):
            embedding_service.load_model()

        assert not embedding_service._model_loaded

    @patch('voice_integrity.services.embedding_service.EncoderClassifier')
    def test_embed_waveform(self, mock_encoder_class, embedding_service, mock_model):
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding = embedding_service.embed_waveform(np.random.randn(16000).astype(np.float32), 16000)

        assert isinstance(embedding, np.ndarray)
        assert embedding.shape == (192,)
        mock_model.encode_batch.assert_called_once()

    @patch('voice_integrity.services.embedding_service.EncoderClassifier')
    def test_embed_waveform_resamples(self, mock_encoder_class, embedding_service, mock_model):
        """Test that non-16kHz audio is resampled before encoding."""
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding_service.embed_waveform(np.random.randn(8000).astype(np.float32), 8000)

        waveform = mock_model.encode_batch.call_args[0][0]
        assert waveform.shape == (1, 16000)

    def test_embed_waveform_too_short(self, embedding_service):
        with pytest.raises(ValueError, match="too short"):
            embedding_service.embed_waveform(np.zeros(1600, dtype=np.float32), 16000)

    def test_compute_cosine_similarity_identical(self, embedding_service):
        embedding = np.random.randn(192)

        assert embedding_service.compute_cosine_similarity(embedding, embedding) == pytest.approx(1.0)

    def test_compute_cosine_similarity_orthogonal(self, embedding_service):
        embedding1 = np.zeros(192)
        embedding1[0] = 1.0
        embedding2 = np.zeros(192)
        embedding2[1] = 1.0

        assert abs(embedding_service.compute_cosine_similarity(embedding1, embedding2)) < 1e-6

    def test_compute_cosine_similarity_dimension_mismatch(self, embedding_service):
        with pytest.raises(ValueError, match="Embedding dimensions don't match"):
            embedding_service.compute_cosine_similarity(np.random.randn(192), np.random.randn(128))

    def test_compute_cosine_similarity_zero_norm(self, embedding_service):
        with pytest.raises(ValueError, match="zero-norm"):
            embedding_service.compute_cosine_similarity(np.zeros(192), np.random.randn(192))

    def test_validate_embedding(self, embedding_service):
        assert embedding_service.validate_embedding(np.random.randn(192))
        assert not embedding_service.validate_embedding([1, 2, 3])
        assert not embedding_service.validate_embedding(np.random.randn(128))
        assert not embedding_service.validate_embedding(np.random.randn(1, 192))
        assert not embedding_service.validate_embedding(np.zeros(192))

    def test_validate_embedding_non_finite(self, embedding_service):
        embedding = np.random.randn(192)
        embedding[0] = np.nan

        assert not embedding_service.validate_embedding(embedding)


class TestGlobalEmbeddingService:
    """Test cases for global embedding service functions."""

    def test_get_embedding_service_singleton(self):
        """Test that get_embedding_service returns the same instance."""
        assert get_embedding_service() is get_embedding_service()

    @patch('voice_integrity.services.embedding_service._embedding_service', None)
    def test_get_embedding_service_creates_new(self):
        assert isinstance(get_embedding_service(), EmbeddingService)


class TestEcapaBackend:
    """Test cases for the ECAPA biometric backend."""

    @pytest.fixture
    def service(self):
        service = Mock(spec=EmbeddingService)
        service.embed_waveform.return_value = np.ones(192, dtype=np.float32)
        service.validate_embedding.return_value = True
        service.compute_cosine_similarity.return_value = 0.93
        return service

    @pytest.mark.asyncio
    async def test_profiler_progress_and_export(self, service):
        profiler = EcapaProfiler(service, sample_rate=16000, target_seconds=0.001)

        progress = await profiler.enroll(make_frame(0.1, size=8))
        data = await profiler.export()

        assert progress == pytest.approx(50.0)
        assert np.frombuffer(data, dtype="<f4").shape == (192,)
        assert service.embed_waveform.call_args[0][0].shape == (8,)

    @pytest.mark.asyncio
    async def test_profiler_export_without_audio(self, service):
        profiler = EcapaProfiler(service, sample_rate=16000)

        with pytest.raises(BackendCallFailure):
            await profiler.export()

    @pytest.mark.asyncio
    async def test_profiler_export_short_audio(self, service):
        service.embed_waveform.side_effect = ValueError("Audio too short")
        profiler = EcapaProfiler(service, sample_rate=16000)
        await profiler.enroll(make_frame())

        with pytest.raises(BackendCallFailure, match="too short"):
            await profiler.export()

    @pytest.mark.asyncio
    async def test_verifier_scores_each_profile(self, service):
        verifier = EcapaVerifier(service, [np.ones(192), np.ones(192)], sample_rate=16000)

        assert await verifier.process(np.zeros(16000, dtype=np.float32)) == [0.93, 0.93]

    @pytest.mark.asyncio
    async def test_backend_model_unavailable(self, service):
        service.load_model.side_effect = RuntimeError("Model loading failed")
        backend = EcapaBackend(service=service)

        with pytest.raises(BackendUnavailable):
            await backend.create_profiler()

    @pytest.mark.asyncio
    async def test_backend_rejects_invalid_profile(self, service):
        service.validate_embedding.return_value = False
        backend = EcapaBackend(service=service)

        with pytest.raises(BackendUnavailable):
            await backend.create_verifier([np.zeros(192, dtype="<f4").tobytes()])

    @pytest.mark.asyncio
    async def test_backend_creates_verifier(self, service):
        backend = EcapaBackend(service=service)

        verifier = await backend.create_verifier([np.ones(192, dtype="<f4").tobytes()])

        assert isinstance(verifier, EcapaVerifier)
