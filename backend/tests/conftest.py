import os
import tempfile

# Point every path setting at a scratch directory BEFORE facesearch is imported,
# so module-level singletons never touch /app.
_SCRATCH = tempfile.mkdtemp(prefix="facesearch-tests-")
os.environ.setdefault("TEMP_DIR", os.path.join(_SCRATCH, "temp"))
os.environ.setdefault("LOG_DIR", os.path.join(_SCRATCH, "logs"))
os.environ.setdefault("MODELS_PATH", os.path.join(_SCRATCH, "models"))
os.environ.setdefault("ENVIRONMENT", "test")

import numpy as np
import pytest

from facesearch.core.config import Settings
from facesearch.core.rate_limit import reset_all_limiters
from facesearch.services.session_store import SessionStore
from facesearch.utils.audit import audit_logger
from tests.mocks import FakeClock, encode_noise_image


# EMBEDDING FIXTURES
# Fixtures defined here are automatically available to all test files in backend/tests/.

@pytest.fixture
def unit_vector_512() -> np.ndarray:
    """
    Returns a reproducible L2-normalized 512D vector.
    Identical calls produce the same vector (seeded RNG).
    Simulates the ArcFace embedding of the uploaded photo.
    """
    rng = np.random.default_rng(seed=42)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def similar_vector_512(unit_vector_512) -> np.ndarray:
    """
    Returns a vector close to unit_vector_512 with small Gaussian noise.
    Simulates the same person in a video thumbnail.
    Expected cosine similarity vs unit_vector_512: ~0.95 - 0.99.
    """
    rng = np.random.default_rng(seed=99)
    noise = rng.standard_normal(512).astype(np.float32) * 0.01
    noisy = unit_vector_512 + noise
    return noisy / np.linalg.norm(noisy)


@pytest.fixture
def different_vector_512() -> np.ndarray:
    """
    Returns a random unit vector seeded differently from unit_vector_512.
    Simulates a different person. Expected cosine ~0.0 +/- 0.1.
    """
    rng = np.random.default_rng(seed=777)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def zero_vector_512() -> np.ndarray:
    """
    Returns a zero vector of 512 dimensions.
    Used to test division-by-zero guards in cosine similarity.
    """
    return np.zeros(512, dtype=np.float32)


# IMAGE FIXTURES

@pytest.fixture
def jpeg_800x600() -> bytes:
    """A valid 800x600 JPEG, the size of a typical uploaded photo."""
    return encode_noise_image(800, 600)


@pytest.fixture
def png_320x240() -> bytes:
    return encode_noise_image(320, 240, ext=".png")


@pytest.fixture
def black_image_640x480() -> np.ndarray:
    """
    Returns a black BGR image of shape (480, 640, 3).
    Used as a minimal valid input for resize and tensor conversion tests.
    """
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def white_image_112x112() -> np.ndarray:
    """
    Returns a white BGR image of shape (112, 112, 3).
    Simulates an already-cropped and aligned face ready for ArcFace.
    """
    return np.full((112, 112, 3), 255, dtype=np.uint8)


# SERVICE FIXTURES

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings whose temp directory is private to the test."""
    return Settings(
        TEMP_DIR=str(tmp_path / "temp"),
        LOG_DIR=str(tmp_path / "logs"),
        MODELS_PATH=str(tmp_path / "models"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(test_settings, clock) -> SessionStore:
    """A fresh session store driven by a controllable clock."""
    return SessionStore(config=test_settings, clock=clock)


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Rate-limit buckets and the audit ring buffer are process-global."""
    reset_all_limiters()
    audit_logger.clear()
    yield
    reset_all_limiters()
    audit_logger.clear()
