import io
from typing import Optional

import pytesseract
import structlog
from PIL import Image

from errors import ExternalServiceError
from storage import ObjectStorage

logger = structlog.get_logger(__name__)


class OcrService:
    """Extracts text from receipt images with Tesseract."""

    def __init__(self, storage: ObjectStorage, tesseract_cmd: Optional[str] = None, lang: str = "eng"):
        self._storage = storage
        self._lang = lang
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def image_to_text(self, data: bytes) -> str:
        try:
            with Image.open(io.BytesIO(data)) as image:
                text = pytesseract.image_to_string(image, lang=self._lang)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            raise ExternalServiceError(f"OCR failed: {e}") from e
        return text.strip()

    def extract_text(self, image_url: str) -> str:
        logger.info("ocr_started", image_url=image_url)
        text = self.image_to_text(self._storage.load_file(image_url))
        logger.info("ocr_finished", characters=len(text))
        return text
