# Philippine ID intake & validation models
# This package contains:
#   - philippine_ids: ID categories, keywords, number formats
#   - id_type_matcher: Selected vs. detected ID type cross-check
#   - name_matching: Legal-name parsing and matching
#   - image_transforms: Data URL codec + OpenCV retry transforms
#   - image_quality_model: Pre-OCR upload quality scoring
#   - ai_ocr_model: Vision-model OCR client and extraction validation
