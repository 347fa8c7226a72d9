"""
Pytest configuration and shared fixtures
"""
import pytest
from fastapi.testclient import TestClient
from pathlib import Path
import io
import sys
import os

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("STYLIST_MAX_RETRIES", "3")

from main import app  # noqa: E402


def encode_image(size, color, fmt="PNG", mode="RGB"):
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.new(mode, size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory for solid-color StillImages: make_image((w, h), (r, g, b))"""
    from services.still_image import StillImage

    def _make(size=(300, 600), color=(200, 30, 30), fmt="PNG", mode="RGB"):
        mime = "image/png" if fmt == "PNG" else "image/jpeg"
        return StillImage(mime_type=mime, data=encode_image(size, color, fmt=fmt, mode=mode))

    return _make


@pytest.fixture
def sample_image_bytes():
    """Create sample image bytes for testing"""
    return encode_image((512, 512), (255, 255, 255))


@pytest.fixture
def client():
    """Create a test client for the FastAPI app"""
    return TestClient(app)
