"""
OCR service for extracting text from receipt images and PDFs.

Tesseract runs with the Spanish model; preprocessing is a plain
grayscale/contrast/sharpen pass. A failed read returns "" so the engine
sees an empty (garbage) document instead of an exception.
"""

import io
import logging
from typing import Optional

import pytesseract
from PIL import Image, ImageEnhance, ImageFilter
from pdf2image import convert_from_bytes
import PyPDF2

from autofactura.config import settings

logger = logging.getLogger(__name__)

TESSERACT_CONFIG = r'--oem 3 --psm 6'
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.tif', '.tiff')


def is_pdf(mime_type: str, filename: str = "") -> bool:
    return mime_type == 'application/pdf' or filename.lower().endswith('.pdf')


def is_image(mime_type: str, filename: str = "") -> bool:
    return (mime_type or "").startswith('image/') or filename.lower().endswith(IMAGE_EXTENSIONS)


class OCRService:
    """Service for extracting text from receipt files."""

    def __init__(self, language: Optional[str] = None):
        """Initialize OCR service with Tesseract configuration."""
        pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD
        self.language = language or settings.OCR_LANGUAGE

    def extract_text_from_image(self, image_data: bytes) -> str:
        """
        Extract text from an image using Tesseract OCR.

        Args:
            image_data: Raw image bytes (JPEG, PNG, etc.)

        Returns:
            Extracted text
        """
        try:
            image = Image.open(io.BytesIO(image_data))
            image = self._preprocess_image(image)
            text = pytesseract.image_to_string(image, lang=self.language, config=TESSERACT_CONFIG)
            return text.strip()

        except Exception:
            logger.warning("Error extracting text from image", exc_info=True)
            return ""

    def extract_text_from_pdf(self, pdf_data: bytes) -> str:
        """
        Extract text from a PDF file.
        First tries to extract text directly, then falls back to OCR.
        """
        text = self._extract_pdf_text_direct(pdf_data)

        # Little or no text: image-based PDF
        if len(text.strip()) < settings.MIN_TEXT_LENGTH:
            logger.debug("PDF appears to be image-based, using OCR")
            text = self._extract_pdf_text_ocr(pdf_data)

        return text.strip()

    def _extract_pdf_text_direct(self, pdf_data: bytes) -> str:
        try:
            pdf_reader = PyPDF2.PdfReader(io.BytesIO(pdf_data))
            return "\n".join((page.extract_text() or "") for page in pdf_reader.pages)

        except Exception:
            logger.warning("Error in direct PDF text extraction", exc_info=True)
            return ""

    def _extract_pdf_text_ocr(self, pdf_data: bytes) -> str:
        try:
            pages = []
            for image in convert_from_bytes(pdf_data):
                image = self._preprocess_image(image)
                pages.append(pytesseract.image_to_string(image, lang=self.language, config=TESSERACT_CONFIG))
            return "\n".join(pages)

        except Exception:
            logger.warning("Error in OCR-based PDF text extraction", exc_info=True)
            return ""

    def _preprocess_image(self, image: Image.Image) -> Image.Image:
        """
        Grayscale, boost contrast and sharpen. Faded thermal receipts are
        the common case.
        """
        try:
            if image.mode != 'RGB':
                image = image.convert('RGB')
            image = image.convert('L')
            image = ImageEnhance.Contrast(image).enhance(2.0)
            return image.filter(ImageFilter.SHARPEN)

        except Exception:
            logger.warning("Error preprocessing image", exc_info=True)
            return image

    def extract_text_from_file(self, file_data: bytes, mime_type: str, filename: str = "") -> str:
        """
        Extract text from a file (auto-detects format).

        Args:
            file_data: Raw file bytes
            mime_type: MIME type of the file
            filename: Optional filename for extension detection

        Returns:
            Extracted text ("" for unsupported types)
        """
        if is_pdf(mime_type, filename):
            return self.extract_text_from_pdf(file_data)
        if is_image(mime_type, filename):
            return self.extract_text_from_image(file_data)

        logger.warning("Unsupported file type for OCR", extra={
            "mime_type": mime_type,
            "file_name": filename,
        })
        return ""
