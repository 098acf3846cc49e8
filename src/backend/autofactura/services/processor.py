"""
Document processing: file bytes -> OCR text -> extraction outcome.
"""

import hashlib
import logging
from typing import Optional

from autofactura.models.invoice import ExtractionOutcome
from autofactura.services.engine import ExtractionEngine, create_engine
from autofactura.services.ocr import OCRService, is_image

logger = logging.getLogger(__name__)


def compute_file_hash(file_data: bytes) -> str:
    """SHA-256 of the file content; used as the source document id."""
    return hashlib.sha256(file_data).hexdigest()


class DocumentProcessor:
    """Runs OCR on an uploaded receipt and hands the text to the engine."""

    def __init__(self, engine: Optional[ExtractionEngine] = None,
                 ocr_service: Optional[OCRService] = None):
        self.engine = engine or create_engine()
        self.ocr_service = ocr_service or OCRService()

    def process(
        self,
        file_data: bytes,
        mime_type: str,
        filename: str = "",
        source_document_id: Optional[str] = None
    ) -> ExtractionOutcome:
        """
        Orchestration: OCR -> extract (with escalation)

        Args:
            file_data: Raw file bytes
            mime_type: MIME type
            filename: Original filename
            source_document_id: Caller id; defaults to the content hash

        Returns:
            ExtractionOutcome from the engine
        """
        source_document_id = source_document_id or compute_file_hash(file_data)

        logger.debug("Running OCR", extra={"file_name": filename, "mime_type": mime_type})
        text = self.ocr_service.extract_text_from_file(file_data, mime_type, filename)
        if not text:
            logger.warning("No text extracted", extra={"file_name": filename})

        # Vision escalation needs the picture; PDFs only contribute text
        image_bytes = file_data if is_image(mime_type, filename) else None

        outcome = self.engine.extract(
            text,
            image_bytes=image_bytes,
            source_document_id=source_document_id,
        )

        logger.info("Document processed", extra={
            "file_name": filename,
            "source_document_id": source_document_id,
            "accepted": outcome.accepted,
            "overall_confidence": outcome.overall_confidence,
            "method_used": outcome.method_used,
        })
        return outcome
