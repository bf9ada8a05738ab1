"""
Pytest configuration and shared fixtures for backend tests.
"""
import base64
import sys
from pathlib import Path
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from fastapi.testclient import TestClient

from db.database import MemoryKeyValueStore
from main import create_app
from models.ai_ocr_model import AIOCRClient
from services.analytics_service import AnalyticsHub


# ---------------------------------------------------------------- images ---

def make_card_image(width: int, height: int, low: int = 80, high: int = 180,
                    block: int = 20) -> np.ndarray:
    """Checkerboard BGR image: mid brightness, strong contrast."""
    ys, xs = np.indices((height, width))
    board = ((ys // block + xs // block) % 2).astype(bool)
    gray = np.where(board, high, low).astype(np.uint8)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def make_flat_image(width: int, height: int, value: int) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


def encode(image: np.ndarray, ext: str = ".jpg") -> bytes:
    ok, buf = cv2.imencode(ext, image)
    assert ok
    return buf.tobytes()


def to_data_url(raw: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


@pytest.fixture
def card_jpeg():
    """Encoded JPEG bytes of a synthetic ID-like image."""
    def _make(width=2000, height=1500, **kwargs):
        return encode(make_card_image(width, height, **kwargs), ".jpg")
    return _make


@pytest.fixture
def card_data_url(card_jpeg):
    return to_data_url(card_jpeg(320, 200))


# ----------------------------------------------------------------- clock ---

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ------------------------------------------------------------------- app ---

@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def ocr_client():
    fake = MagicMock(spec=AIOCRClient)
    fake.configured = True
    return fake


@pytest.fixture
def analytics():
    return AnalyticsHub(sink=None)


@pytest.fixture
def client(store, ocr_client, analytics):
    """TestClient over an app wired to in-memory store and a fake OCR client."""
    app = create_app(store=store, ocr_client=ocr_client, analytics=analytics)
    return TestClient(app)
