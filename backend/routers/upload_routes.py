import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from db.database import KeyValueStore
from models.image_quality_model import CandidateFile, validate_image_quality
from routers.dependencies import client_namespace, get_store
from services.image_storage_service import ImageStorage, ImageStorageError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])


async def _read_candidate(file: UploadFile) -> CandidateFile:
    data = await file.read()
    return CandidateFile(
        filename=file.filename or "upload",
        content_type=file.content_type or "",
        data=data,
        size=len(data),
    )


@router.post("/quality")
async def check_upload_quality(file: UploadFile = File(...)):
    """
    Score an ID photo before OCR (size, type, dimensions, aspect ratio, clarity).
    """
    candidate = await _read_candidate(file)
    logger.info(f"[UPLOAD] Quality check: {candidate.filename} ({candidate.size} bytes)")
    return validate_image_quality(candidate).to_dict()


@router.post("/{client_id}/images")
async def store_id_image(client_id: str, file: UploadFile = File(...),
                         store: KeyValueStore = Depends(get_store)):
    """
    Compress and keep an accepted ID photo; returns the data URL for OCR.
    """
    candidate = await _read_candidate(file)
    storage = ImageStorage(client_namespace(store, client_id))
    try:
        return storage.process_image_for_ocr(candidate)
    except ImageStorageError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{client_id}/images/stats")
def image_storage_stats(client_id: str, store: KeyValueStore = Depends(get_store)):
    storage = ImageStorage(client_namespace(store, client_id))
    return asdict(storage.get_storage_stats())


@router.get("/{client_id}/images/{image_id}")
def get_id_image(client_id: str, image_id: str, store: KeyValueStore = Depends(get_store)):
    storage = ImageStorage(client_namespace(store, client_id))
    stored = storage.get_stored_image(image_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return stored.to_dict()


@router.delete("/{client_id}/images/{image_id}")
def delete_id_image(client_id: str, image_id: str, store: KeyValueStore = Depends(get_store)):
    ImageStorage(client_namespace(store, client_id)).remove_stored_image(image_id)
    return {"deleted": image_id}
