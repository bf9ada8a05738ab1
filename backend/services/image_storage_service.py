"""ID image storage.

Accepted uploads are downscaled to fit 2400x3200 (quality stays high enough
for OCR), re-encoded, and kept in the key-value store as a data URL plus a
JSON metadata record:

    sunshare_onboard_img_<id>     data URL
    sunshare_onboard_meta_<id>    ImageMetadata

On a quota error, images older than seven days are evicted and the write is
retried once.
"""

import json
import logging
import secrets
import string
import time
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

import cv2

from db.database import KeyValueStore, StorageQuotaExceeded
from models.image_quality_model import CandidateFile, format_bytes
from models.image_transforms import bytes_to_data_url, decode_image, encode_image, fit_within

logger = logging.getLogger(__name__)


DAY_MS = 24 * 60 * 60 * 1000
_ID_ALPHABET = string.digits + string.ascii_lowercase


class ImageStorageError(Exception):
    """The image could not be compressed or stored."""


@dataclass
class ImageStorageConfig:
    max_file_size: int = 5 * 1024 * 1024
    compression_quality: int = 80
    max_width: int = 2400
    max_height: int = 3200
    storage_prefix: str = "sunshare_onboard_img_"
    metadata_prefix: str = "sunshare_onboard_meta_"
    max_age_ms: int = 7 * DAY_MS


@dataclass
class ImageMetadata:
    id: str
    file_name: str
    original_size: int
    compressed_size: int
    width: int
    height: int
    mime_type: str
    timestamp: int
    compression_ratio: int


@dataclass
class StoredImage:
    id: str
    data_url: str
    metadata: ImageMetadata

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StorageStats:
    total_images: int = 0
    total_size: int = 0
    average_size: int = 0
    average_compression: int = 0


class ImageStorage:
    def __init__(self, store: KeyValueStore, config: Optional[ImageStorageConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.config = config or ImageStorageConfig()
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _new_id(self) -> str:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        return f"img_{self._now_ms()}_{suffix}"

    def _keys(self, image_id: str):
        return (self.config.storage_prefix + image_id, self.config.metadata_prefix + image_id)

    # ---- compression ----

    def compress_image(self, candidate: CandidateFile):
        """Return ``(data_url, ImageMetadata)`` for an upload."""
        image = decode_image(candidate.data)
        if image is None:
            raise ImageStorageError("Failed to load image")

        h, w = image.shape[:2]
        width, height = fit_within(w, h, self.config.max_width, self.config.max_height)
        if (width, height) != (w, h):
            image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)

        try:
            encoded, mime = encode_image(image, candidate.content_type or "image/jpeg",
                                         self.config.compression_quality)
        except ValueError as e:
            raise ImageStorageError(str(e)) from e

        data_url = bytes_to_data_url(encoded, mime)
        original_size = candidate.size or len(candidate.data)
        compressed_size = len(encoded)
        ratio = round((1 - compressed_size / original_size) * 100) if original_size else 0

        metadata = ImageMetadata(
            id=self._new_id(),
            file_name=candidate.filename,
            original_size=original_size,
            compressed_size=compressed_size,
            width=width,
            height=height,
            mime_type=mime,
            timestamp=self._now_ms(),
            compression_ratio=ratio,
        )
        return data_url, metadata

    # ---- store / fetch ----

    def _write(self, image_key: str, meta_key: str, data_url: str, metadata: ImageMetadata) -> None:
        self.store.set(image_key, data_url)
        self.store.set(meta_key, json.dumps(asdict(metadata)))

    def store_image(self, candidate: CandidateFile) -> StoredImage:
        if candidate.size > self.config.max_file_size:
            raise ImageStorageError(
                f"File size ({format_bytes(candidate.size)}) exceeds maximum allowed "
                f"({format_bytes(self.config.max_file_size)})"
            )

        data_url, metadata = self.compress_image(candidate)
        image_key, meta_key = self._keys(metadata.id)

        try:
            self._write(image_key, meta_key, data_url, metadata)
        except StorageQuotaExceeded:
            cleared = self.clear_old_images()
            logger.warning(f"[IMAGES] Storage quota exceeded, cleared {cleared} old image(s), retrying")
            try:
                self._write(image_key, meta_key, data_url, metadata)
            except StorageQuotaExceeded as e:
                self.store.remove(image_key)
                raise ImageStorageError(f"Failed to store image: {e}") from e

        logger.info(
            f"[IMAGES] Stored {metadata.id} ({metadata.width}x{metadata.height}, "
            f"{format_bytes(metadata.original_size)} -> {format_bytes(metadata.compressed_size)})"
        )
        return StoredImage(id=metadata.id, data_url=data_url, metadata=metadata)

    def get_stored_image(self, image_id: str) -> Optional[StoredImage]:
        image_key, meta_key = self._keys(image_id)
        data_url = self.store.get(image_key)
        meta_raw = self.store.get(meta_key)
        if not data_url or not meta_raw:
            return None
        try:
            metadata = ImageMetadata(**json.loads(meta_raw))
        except (ValueError, TypeError) as e:
            logger.error(f"[IMAGES] Corrupted metadata for {image_id}: {e}")
            return None
        return StoredImage(id=image_id, data_url=data_url, metadata=metadata)

    def remove_stored_image(self, image_id: str) -> None:
        for key in self._keys(image_id):
            self.store.remove(key)

    def _image_ids(self) -> List[str]:
        prefix = self.config.metadata_prefix
        return [k[len(prefix):] for k in self.store.keys() if k.startswith(prefix)]

    def clear_old_images(self) -> int:
        """Remove images older than the max age (and corrupted records)."""
        cutoff = self._now_ms() - self.config.max_age_ms
        cleared = 0
        for image_id in self._image_ids():
            meta_raw = self.store.get(self.config.metadata_prefix + image_id)
            if meta_raw is None:
                continue
            try:
                timestamp = json.loads(meta_raw)["timestamp"]
            except (ValueError, KeyError, TypeError):
                timestamp = None
            if timestamp is None or timestamp < cutoff:
                self.remove_stored_image(image_id)
                cleared += 1
        return cleared

    def get_storage_stats(self) -> StorageStats:
        ids = self._image_ids()
        total_size = 0
        total_original = 0
        for image_id in ids:
            meta_raw = self.store.get(self.config.metadata_prefix + image_id)
            if not meta_raw:
                continue
            try:
                meta = json.loads(meta_raw)
                total_size += int(meta["compressed_size"])
                total_original += int(meta["original_size"])
            except (ValueError, KeyError, TypeError):
                continue

        return StorageStats(
            total_images=len(ids),
            total_size=total_size,
            average_size=round(total_size / len(ids)) if ids else 0,
            average_compression=round((1 - total_size / total_original) * 100) if total_original else 0,
        )

    def process_image_for_ocr(self, candidate: CandidateFile) -> dict:
        stored = self.store_image(candidate)
        return {"data_url": stored.data_url, "image_id": stored.id, "metadata": asdict(stored.metadata)}
