"""Image helpers shared by quality scoring, OCR retries and image storage.

Images travel through the service as data URLs (``data:image/jpeg;base64,...``)
or raw base64; OpenCV works on BGR ndarrays. Transforms always return a new
buffer and never touch the source.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,(?P<payload>.*)$", re.S)


# ------------------------------------------------------------ data urls ---

def split_data_url(data: str) -> Tuple[Optional[str], str]:
    """Return ``(mime, base64_payload)``; mime is None for raw base64."""
    match = _DATA_URL_RE.match(data or "")
    if match:
        return match.group("mime"), match.group("payload")
    return None, data or ""


def ensure_data_url(data: str, mime: str = "image/jpeg") -> str:
    """Wrap raw base64 as a data URL; data URLs pass through."""
    if data.startswith("data:"):
        return data
    return f"data:{mime};base64,{data}"


def data_url_to_bytes(data: str) -> bytes:
    _, payload = split_data_url(data)
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        return b""


def bytes_to_data_url(raw: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


# ------------------------------------------------------- decode/encode ---

def decode_image(raw: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes to a BGR array, None when undecodable."""
    if not raw:
        return None
    buf = np.frombuffer(raw, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    return image


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def encode_image(image: np.ndarray, mime: str = "image/jpeg", quality: int = 80) -> Tuple[bytes, str]:
    """Encode in the upload's own format where OpenCV supports it, else JPEG.

    Returns ``(bytes, mime)``.
    """
    mime = (mime or "").lower()
    if mime == "image/png":
        ok, buf = cv2.imencode(".png", image)
    elif mime == "image/webp":
        ok, buf = cv2.imencode(".webp", image, [int(cv2.IMWRITE_WEBP_QUALITY), int(quality)])
    else:
        return encode_jpeg(image, quality), "image/jpeg"
    if not ok:
        raise ValueError(f"{mime} encoding failed")
    return buf.tobytes(), mime


def luma(image: np.ndarray) -> np.ndarray:
    """Rec. 601 luma (0.299R + 0.587G + 0.114B) as float32."""
    if image.ndim == 2:
        return image.astype(np.float32)
    b = image[:, :, 0].astype(np.float32)
    g = image[:, :, 1].astype(np.float32)
    r = image[:, :, 2].astype(np.float32)
    return 0.299 * r + 0.587 * g + 0.114 * b


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Scale (width, height) down to fit the box, keeping aspect ratio."""
    if width <= max_width and height <= max_height:
        return width, height
    ratio = min(max_width / width, max_height / height)
    return max(1, int(round(width * ratio))), max(1, int(round(height * ratio)))


# ---------------------------------------------------------- transforms ---

def enhance_contrast(image: np.ndarray, scale: float = 1.2, factor: float = 1.2) -> np.ndarray:
    """Upscale, then stretch contrast around mid-grey: (v - 128) * factor + 128."""
    h, w = image.shape[:2]
    resized = cv2.resize(image, (int(round(w * scale)), int(round(h * scale))),
                         interpolation=cv2.INTER_CUBIC)
    stretched = (resized.astype(np.float32) - 128.0) * factor + 128.0
    return np.clip(stretched, 0, 255).astype(np.uint8)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Luma grayscale, returned as 3-channel BGR so encoders treat it alike."""
    gray = np.clip(luma(image), 0, 255).astype(np.uint8)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def enhance_for_retry(image_data: str) -> str:
    """Enhanced copy of a data URL image (JPEG q90); unchanged if undecodable."""
    image = decode_image(data_url_to_bytes(image_data))
    if image is None:
        logger.warning("[IMAGE] enhance: could not decode image, passing through")
        return image_data
    return bytes_to_data_url(encode_jpeg(enhance_contrast(image), quality=90))


def grayscale_for_retry(image_data: str) -> str:
    """Grayscale copy of a data URL image (JPEG q95); unchanged if undecodable."""
    image = decode_image(data_url_to_bytes(image_data))
    if image is None:
        logger.warning("[IMAGE] grayscale: could not decode image, passing through")
        return image_data
    return bytes_to_data_url(encode_jpeg(to_grayscale(image), quality=95))
