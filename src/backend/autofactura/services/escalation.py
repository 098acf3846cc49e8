"""
Escalation policy: when to replace the cheap pattern result with a
costlier extractor.

    START -> RAN_CHEAP_EXTRACTION
        garbage text + vision extractor + image  -> ESCALATED_VISION
        vision gave nothing, or not garbage:
            low confidence or critical field missing + text extractor
                                                 -> ESCALATED_TEXT
    -> ACCEPTED | REJECTED

Escalated extractors are black boxes: (raw text) or (image bytes) ->
InvoiceRecord or None. Each call runs on a worker thread with a timeout;
timeouts, exceptions and malformed answers all mean "unavailable" and the
cheap result stands.
"""

import concurrent.futures
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from autofactura.config import settings
from autofactura.models.invoice import FieldId, InvoiceRecord, MONEY_FIELDS
from autofactura.utils.money import parse_amount

logger = logging.getLogger(__name__)

TEXT_ESCALATION_CONFIDENCE = 95.0
VISION_ESCALATION_CONFIDENCE = 98.0

# Short uppercase sequences that show up when Tesseract reads noise
GARBAGE_TOKEN_RES = [
    re.compile(r'\bNN\b'),
    re.compile(r'\bNON\b'),
    re.compile(r'\bANN\b'),
    re.compile(r'\bNANA\b'),
    re.compile(r'\bENE\b'),
    re.compile(r'\bDNS\b'),
    re.compile(r'\bCNA\b'),
    re.compile(r'\bECO\b'),
    re.compile(r'\bRCN\b'),
    re.compile(r'\bNENE\b'),
    re.compile(r'\bONU\b'),
    re.compile(r'[ÓÑÜ]{3,}'),
]

NORMAL_CHAR_RE = re.compile(r'[a-zA-Z0-9\s]')


class EscalationState(str, Enum):
    START = "start"
    RAN_CHEAP_EXTRACTION = "ran_cheap_extraction"
    ESCALATED_VISION = "escalated_vision"
    ESCALATED_TEXT = "escalated_text"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TextQuality:
    length: int
    garbage_tokens: int
    normal_char_ratio: float
    is_garbage: bool


def assess_text_quality(
    text: str,
    token_threshold: Optional[int] = None,
    min_ratio: Optional[float] = None,
    min_length: Optional[int] = None
) -> TextQuality:
    """
    Classify OCR text as garbage or usable.

    Garbage when shorter than min_length, when more than token_threshold
    garbage tokens occur, or when fewer than min_ratio of the characters
    are ASCII letters, digits or whitespace.
    """
    token_threshold = token_threshold if token_threshold is not None else settings.GARBAGE_TOKEN_THRESHOLD
    min_ratio = min_ratio if min_ratio is not None else settings.MIN_NORMAL_CHAR_RATIO
    min_length = min_length if min_length is not None else settings.MIN_TEXT_LENGTH

    text = text or ""
    garbage_tokens = sum(len(r.findall(text)) for r in GARBAGE_TOKEN_RES)
    ratio = len(NORMAL_CHAR_RE.findall(text)) / len(text) if text else 0.0

    is_garbage = (
        len(text) < min_length
        or garbage_tokens > token_threshold
        or ratio < min_ratio
    )
    return TextQuality(
        length=len(text),
        garbage_tokens=garbage_tokens,
        normal_char_ratio=ratio,
        is_garbage=is_garbage,
    )


@dataclass
class EscalationResult:
    """
    Final state and, when an escalated extractor answered, its record.

    record is None when the cheap result stands.
    """
    state: EscalationState
    method_used: str
    quality: TextQuality
    record: Optional[InvoiceRecord] = None
    trail: List[EscalationState] = field(default_factory=list)


TextExtractor = Callable[[str], Optional[InvoiceRecord]]
VisionExtractor = Callable[[bytes], Optional[InvoiceRecord]]


def _is_available(extractor: Any) -> bool:
    if extractor is None:
        return False
    is_enabled = getattr(extractor, "is_enabled", None)
    return is_enabled() if callable(is_enabled) else True


class EscalationPolicy:
    """Decides between the cheap result and the escalated extractors."""

    def __init__(
        self,
        text_extractor: Optional[TextExtractor] = None,
        vision_extractor: Optional[VisionExtractor] = None,
        escalation_threshold: Optional[int] = None,
        critical_fields: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None
    ):
        self.text_extractor = text_extractor
        self.vision_extractor = vision_extractor
        self.escalation_threshold = (
            escalation_threshold if escalation_threshold is not None else settings.ESCALATION_THRESHOLD
        )
        self.critical_fields = [
            FieldId(f) for f in (critical_fields if critical_fields is not None else settings.CRITICAL_FIELDS)
        ]
        self.timeout = timeout if timeout is not None else settings.ESCALATION_TIMEOUT_SECONDS

    def missing_critical_fields(self, values: Mapping[FieldId, str]) -> List[FieldId]:
        """Critical fields that are empty, or zero for amounts."""
        missing = []
        for field_id in self.critical_fields:
            value = values.get(field_id, "")
            if field_id in MONEY_FIELDS:
                if parse_amount(value) == 0:
                    missing.append(field_id)
            elif not value:
                missing.append(field_id)
        return missing

    def resolve(
        self,
        raw_text: str,
        values: Mapping[FieldId, str],
        overall_confidence: int,
        cheap_accepted: bool,
        image_bytes: Optional[bytes] = None
    ) -> EscalationResult:
        """
        Run the state machine for one document after the cheap pipeline.

        Args:
            raw_text: Recognized text
            values: Cheap-pipeline chosen value per field ('' when missing)
            overall_confidence: Cheap-pipeline overall score
            cheap_accepted: Whether the cheap score passed the acceptance threshold
            image_bytes: Original image for the vision extractor, if any
        """
        trail = [EscalationState.START, EscalationState.RAN_CHEAP_EXTRACTION]
        quality = assess_text_quality(raw_text)

        if quality.is_garbage and image_bytes and _is_available(self.vision_extractor):
            logger.info("Garbage OCR text, escalating to vision", extra={
                "garbage_tokens": quality.garbage_tokens,
                "normal_char_ratio": round(quality.normal_char_ratio, 2),
                "text_length": quality.length,
            })
            record = self._call("vision", self.vision_extractor, image_bytes)
            if record is not None:
                trail += [EscalationState.ESCALATED_VISION, EscalationState.ACCEPTED]
                return EscalationResult(
                    state=EscalationState.ACCEPTED,
                    method_used="vision",
                    quality=quality,
                    record=record.model_copy(update={
                        "confidence": VISION_ESCALATION_CONFIDENCE,
                        "method": "vision",
                    }),
                    trail=trail,
                )

        missing = self.missing_critical_fields(values)
        needs_text = overall_confidence < self.escalation_threshold or bool(missing)

        if needs_text and _is_available(self.text_extractor):
            logger.info("Escalating to text extractor", extra={
                "overall_confidence": overall_confidence,
                "missing_fields": [f.value for f in missing],
            })
            record = self._call("text", self.text_extractor, raw_text)
            if record is not None:
                trail += [EscalationState.ESCALATED_TEXT, EscalationState.ACCEPTED]
                return EscalationResult(
                    state=EscalationState.ACCEPTED,
                    method_used="text",
                    quality=quality,
                    record=record.model_copy(update={
                        "confidence": TEXT_ESCALATION_CONFIDENCE,
                        "method": "text",
                    }),
                    trail=trail,
                )

        final = EscalationState.ACCEPTED if cheap_accepted else EscalationState.REJECTED
        trail.append(final)
        return EscalationResult(state=final, method_used="pattern", quality=quality, trail=trail)

    def _call(self, name: str, extractor: Callable[[Any], Any], payload: Any) -> Optional[InvoiceRecord]:
        """Invoke an escalated extractor with a timeout. Never raises."""
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(extractor, payload)
            answer = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Escalated extractor timed out", extra={
                "extractor": name,
                "timeout_seconds": self.timeout,
            })
            return None
        except Exception:
            # Any failure inside a black-box extractor means "unavailable"
            logger.warning("Escalated extractor failed", extra={"extractor": name}, exc_info=True)
            return None
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if answer is None:
            logger.info("Escalated extractor returned nothing", extra={"extractor": name})
            return None

        if isinstance(answer, InvoiceRecord):
            return answer

        try:
            return InvoiceRecord.model_validate(answer)
        except ValidationError:
            logger.warning("Escalated extractor returned malformed output", extra={
                "extractor": name,
            }, exc_info=True)
            return None
