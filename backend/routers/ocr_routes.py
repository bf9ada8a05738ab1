import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from models.ai_ocr_model import AIOCRClient, OCRServiceError
from routers.dependencies import get_ocr_client
from schemas.onboarding_schemas import OCRRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ocr"])


@router.post("/ocr")
def ocr_proxy(payload: OCRRequest, client: AIOCRClient = Depends(get_ocr_client)):
    """
    Extract ID fields from a base64 data URL with the AI OCR service.
    """
    image = payload.image
    logger.info(
        f"[OCR] Request: has_image={bool(image)} image_len={len(image or '')} "
        f"prefix={(image or '')[:30]!r} use_ai={payload.use_ai}"
    )

    if not image:
        return JSONResponse(status_code=400, content={"error": "Image data is required"})

    if not image.startswith("data:image/"):
        logger.error(f"[OCR] Invalid image format: {image[:50]!r}")
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid image format. Please provide a base64 encoded image."},
        )

    if payload.use_ai and not client.configured:
        logger.error("[OCR] OpenAI API key not configured")
        return JSONResponse(
            status_code=503,
            content={
                "error": "OpenAI API key not configured",
                "fallback": True,
                "message": "AI OCR not available. Please configure OPENAI_API_KEY environment variable.",
            },
        )

    if not payload.use_ai:
        return JSONResponse(
            status_code=501,
            content={
                "success": False,
                "method": "traditional",
                "error": "Traditional OCR not available. Please use AI OCR.",
                "suggestion": "Switch to AI OCR for better accuracy and reliability",
            },
        )

    start = time.time()
    try:
        result = client.extract_id_info(image)
    except OCRServiceError as e:
        logger.error(f"[OCR] AI OCR failed: {e.message}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "method": "ai",
                "error": e.message,
                "errorType": e.__class__.__name__,
                "fallbackAvailable": True,
            },
        )

    processing_time = int((time.time() - start) * 1000)
    logger.info(
        f"[OCR] Completed in {processing_time}ms: type={result.id_type} "
        f"confidence={result.confidence:.0f} id_number={'found' if result.id_number else 'missing'}"
    )

    return {
        "success": True,
        "method": "ai",
        "processingTime": processing_time,
        "data": result.to_dict(),
    }
