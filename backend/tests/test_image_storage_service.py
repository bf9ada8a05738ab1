"""
Tests for ID image compression and storage.
"""
import json

import pytest

from conftest import encode, make_card_image
from db.database import MemoryKeyValueStore, StorageQuotaExceeded
from models.image_quality_model import MB, CandidateFile
from models.image_transforms import data_url_to_bytes, decode_image
from services.image_storage_service import ImageStorage, ImageStorageError

DAY = 24 * 60 * 60


class FlakyStore(MemoryKeyValueStore):
    """Raises a quota error on the next ``failures`` image writes."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def set(self, key, value):
        if key.startswith("sunshare_onboard_img_") and self.failures > 0:
            self.failures -= 1
            raise StorageQuotaExceeded("quota")
        super().set(key, value)


def _jpeg(width=800, height=600, name="id.jpg"):
    return CandidateFile(name, "image/jpeg", encode(make_card_image(width, height), ".jpg"))


@pytest.fixture
def storage(store, clock):
    return ImageStorage(store, clock=clock)


class TestStoreImage:
    def test_large_image_is_downscaled(self, storage):
        stored = storage.store_image(_jpeg(3000, 4000))
        assert (stored.metadata.width, stored.metadata.height) == (2400, 3200)
        assert stored.data_url.startswith("data:image/jpeg;base64,")
        decoded = decode_image(data_url_to_bytes(stored.data_url))
        assert decoded.shape[:2] == (3200, 2400)

    def test_small_image_keeps_dimensions(self, storage, store):
        stored = storage.store_image(_jpeg(800, 600))
        assert (stored.metadata.width, stored.metadata.height) == (800, 600)
        assert stored.id.startswith("img_")
        assert store.get("sunshare_onboard_img_" + stored.id) == stored.data_url
        meta = json.loads(store.get("sunshare_onboard_meta_" + stored.id))
        assert meta["file_name"] == "id.jpg"

    def test_png_stays_png(self, storage):
        candidate = CandidateFile("id.png", "image/png", encode(make_card_image(400, 300), ".png"))
        stored = storage.store_image(candidate)
        assert stored.metadata.mime_type == "image/png"
        assert stored.data_url.startswith("data:image/png;base64,")

    def test_oversized_upload_is_rejected(self, storage):
        candidate = _jpeg()
        candidate.size = 6 * MB
        with pytest.raises(ImageStorageError, match="exceeds maximum allowed"):
            storage.store_image(candidate)

    def test_undecodable_upload_is_rejected(self, storage):
        with pytest.raises(ImageStorageError, match="Failed to load image"):
            storage.store_image(CandidateFile("id.jpg", "image/jpeg", b"garbage"))

    def test_get_and_remove(self, storage):
        stored = storage.store_image(_jpeg())
        fetched = storage.get_stored_image(stored.id)
        assert fetched.data_url == stored.data_url
        assert fetched.metadata == stored.metadata

        storage.remove_stored_image(stored.id)
        assert storage.get_stored_image(stored.id) is None

    def test_corrupted_metadata_reads_as_missing(self, storage, store):
        stored = storage.store_image(_jpeg())
        store.set("sunshare_onboard_meta_" + stored.id, "{broken")
        assert storage.get_stored_image(stored.id) is None


class TestEviction:
    def test_clear_old_images(self, storage, clock):
        old = storage.store_image(_jpeg())
        clock.advance(8 * DAY)
        fresh = storage.store_image(_jpeg())

        assert storage.clear_old_images() == 1
        assert storage.get_stored_image(old.id) is None
        assert storage.get_stored_image(fresh.id) is not None

    def test_quota_error_evicts_and_retries(self, clock):
        store = FlakyStore(failures=0)
        storage = ImageStorage(store, clock=clock)
        old = storage.store_image(_jpeg())
        clock.advance(8 * DAY)

        store.failures = 1
        fresh = storage.store_image(_jpeg())

        assert storage.get_stored_image(fresh.id) is not None
        assert storage.get_stored_image(old.id) is None

    def test_second_quota_error_raises(self, clock):
        storage = ImageStorage(FlakyStore(failures=2), clock=clock)
        with pytest.raises(ImageStorageError, match="Failed to store image"):
            storage.store_image(_jpeg())


class TestStatsAndOcrHandoff:
    def test_stats(self, storage):
        a = storage.store_image(_jpeg())
        b = storage.store_image(_jpeg(400, 300))
        stats = storage.get_storage_stats()
        assert stats.total_images == 2
        assert stats.total_size == a.metadata.compressed_size + b.metadata.compressed_size
        assert stats.average_size == round(stats.total_size / 2)

    def test_empty_stats(self, storage):
        stats = storage.get_storage_stats()
        assert stats.total_images == 0
        assert stats.average_compression == 0

    def test_process_image_for_ocr(self, storage):
        result = storage.process_image_for_ocr(_jpeg())
        assert set(result) == {"data_url", "image_id", "metadata"}
        assert result["metadata"]["id"] == result["image_id"]
