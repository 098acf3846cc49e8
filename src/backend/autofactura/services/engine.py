"""
Extraction engine: the entry point used by document processing and the
correction API.

    extract(raw_text)          cheap pipeline -> escalation -> persist attempt
    record_correction(...)     persist correction -> learner
    confirm_extraction(id)     credit the patterns that produced the values
    reseed_if_needed()         bootstrap default patterns

The cheap pipeline is run_cheap_pipeline(): extract -> validate -> aggregate.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from autofactura.config import settings
from autofactura.models.invoice import (
    EXTRACTABLE_FIELDS,
    Correction,
    ExtractionAttempt,
    ExtractionOutcome,
    ExtractionPattern,
    FieldId,
    FieldValue,
    InvoiceRecord,
)
from autofactura.services.aggregator import ConfidenceAggregator
from autofactura.services.consistency import ConsistencyReport, validate_consistency
from autofactura.services.escalation import EscalationPolicy, EscalationState
from autofactura.services.field_extractor import Document, FieldExtractor
from autofactura.services.learner import CorrectionLearner
from autofactura.services.pattern_store import PatternStore
from autofactura.utils.candidates import FieldCandidate
from autofactura.utils.dates import normalize_date
from autofactura.utils.errors import ExtractionNotFoundError, PatternStoreUnavailableError
from autofactura.utils.money import parse_amount
from autofactura.utils.scoring import values_agree

logger = logging.getLogger(__name__)

RECORD_FIELDS = EXTRACTABLE_FIELDS + (FieldId.ISSUER,)


@dataclass
class CheapResult:
    """Output of the pattern/context/position pipeline for one document."""
    candidates: Dict[FieldId, FieldCandidate]
    considered: Dict[FieldId, List[FieldCandidate]]
    report: ConsistencyReport
    overall: int
    accepted: bool


def run_cheap_pipeline(
    document: Document,
    extractor: FieldExtractor,
    aggregator: ConfidenceAggregator,
    tax_rate: Optional[float] = None,
    tolerance: Optional[float] = None
) -> CheapResult:
    """Extract every field, cross-check the amounts, score the attempt."""
    extractions = extractor.extract_all(document)
    best = {field: extraction.best for field, extraction in extractions.items()}

    adjusted, report = validate_consistency(best, tax_rate=tax_rate, tolerance=tolerance)
    overall = aggregator.overall(adjusted)

    return CheapResult(
        candidates=adjusted,
        considered={field: extraction.candidates for field, extraction in extractions.items()},
        report=report,
        overall=overall,
        accepted=aggregator.is_accepted(overall),
    )


def record_from_candidates(candidates: Dict[FieldId, FieldCandidate], confidence: float) -> InvoiceRecord:
    """Normalize winning raw values into a structured record."""

    def raw(field: FieldId) -> str:
        candidate = candidates.get(field)
        return candidate.value if candidate is not None else ""

    return InvoiceRecord(
        tax_id=raw(FieldId.TAX_ID).upper(),
        date=normalize_date(raw(FieldId.DATE)),
        total=parse_amount(raw(FieldId.TOTAL)),
        tax=parse_amount(raw(FieldId.TAX)),
        subtotal=parse_amount(raw(FieldId.SUBTOTAL)),
        confidence=confidence,
        method="pattern",
    )


class ExtractionEngine:
    """Ties the pattern store, pipeline, escalation policy and learner together."""

    def __init__(
        self,
        pattern_store: PatternStore,
        extraction_repository,
        policy: Optional[EscalationPolicy] = None,
        aggregator: Optional[ConfidenceAggregator] = None,
        extractor: Optional[FieldExtractor] = None,
        learner: Optional[CorrectionLearner] = None,
        tax_rate: Optional[float] = None,
        tolerance: Optional[float] = None
    ):
        self.pattern_store = pattern_store
        self.extraction_repository = extraction_repository
        self.policy = policy or EscalationPolicy()
        self.aggregator = aggregator or ConfidenceAggregator()
        self.extractor = extractor or FieldExtractor(pattern_store)
        self.learner = learner or CorrectionLearner(pattern_store, extraction_repository)
        self.tax_rate = tax_rate if tax_rate is not None else settings.FIXED_TAX_RATE
        self.tolerance = tolerance if tolerance is not None else settings.CONSISTENCY_TOLERANCE

    def extract(
        self,
        raw_text: str,
        image_bytes: Optional[bytes] = None,
        source_document_id: Optional[str] = None
    ) -> ExtractionOutcome:
        """
        Extract invoice fields from recognized text.

        Args:
            raw_text: OCR text of one document
            image_bytes: Original image, enables vision escalation on garbage text
            source_document_id: Caller's id for the document

        Returns:
            ExtractionOutcome. Rejected outcomes carry no field values.
        """
        document = Document.from_text(raw_text)
        cheap = run_cheap_pipeline(
            document, self.extractor, self.aggregator,
            tax_rate=self.tax_rate, tolerance=self.tolerance
        )

        values = {field: candidate.value for field, candidate in cheap.candidates.items()}
        escalation = self.policy.resolve(
            raw_text,
            values,
            cheap.overall,
            cheap.accepted,
            image_bytes=image_bytes,
        )

        if escalation.record is not None:
            record = escalation.record
            overall = int(record.confidence)
            fields = {
                field: FieldValue(value=record.value_for(field), confidence=record.confidence)
                for field in RECORD_FIELDS
                if record.value_for(field)
            }
        elif escalation.state == EscalationState.ACCEPTED:
            overall = cheap.overall
            record = record_from_candidates(cheap.candidates, overall)
            fields = {
                field: FieldValue(value=record.value_for(field), confidence=candidate.confidence)
                for field, candidate in cheap.candidates.items()
                if not candidate.is_empty and record.value_for(field)
            }
        else:
            overall = cheap.overall
            record = None
            fields = {}

        attempt = ExtractionAttempt(
            source_document_id=source_document_id,
            raw_text=raw_text or "",
            candidates_per_field=cheap.candidates,
            chosen_values={field: value.value for field, value in fields.items()},
            overall_confidence=overall,
            method_used=escalation.method_used,
        )

        extraction_id: Optional[str] = attempt.id
        try:
            self.extraction_repository.save_attempt(attempt)
        except PatternStoreUnavailableError:
            logger.warning("Could not persist extraction attempt", extra={
                "source_document_id": source_document_id,
            }, exc_info=True)
            extraction_id = None

        accepted = escalation.state == EscalationState.ACCEPTED
        logger.info("Extraction complete", extra={
            "extraction_id": extraction_id,
            "accepted": accepted,
            "overall_confidence": overall,
            "cheap_confidence": cheap.overall,
            "method_used": escalation.method_used,
            "state_trail": [s.value for s in escalation.trail],
            "sum_consistent": cheap.report.sum_consistent,
        })

        return ExtractionOutcome(
            extraction_id=extraction_id,
            fields=fields,
            overall_confidence=overall,
            accepted=accepted,
            method_used=escalation.method_used,
            state=escalation.state.value,
            record=record,
        )

    def record_correction(
        self,
        extraction_id: str,
        field_name: Union[FieldId, str],
        extracted_value: str,
        corrected_value: str,
        source: str = "manual"
    ) -> Optional[ExtractionPattern]:
        """
        Store a human correction and learn from it.

        Returns:
            The learned pattern, if one was created

        Raises:
            ExtractionNotFoundError: unknown extraction id
            PatternStoreUnavailableError: the correction could not be stored
        """
        if self.extraction_repository.get_attempt(extraction_id) is None:
            raise ExtractionNotFoundError(extraction_id)

        correction = Correction(
            extraction_id=extraction_id,
            field_name=FieldId(field_name),
            extracted_value=extracted_value or "",
            corrected_value=corrected_value,
            source=source,
        )
        self.extraction_repository.save_correction(correction)

        logger.info("Correction recorded", extra={
            "extraction_id": extraction_id,
            "field_name": correction.field_name.value,
            "source": source,
        })
        return self.learner.learn(correction)

    def confirm_extraction(self, extraction_id: str) -> int:
        """
        Mark an extraction as correct: every stored pattern whose candidate
        matches the chosen value gets a success. Returns patterns credited.
        """
        attempt = self.extraction_repository.get_attempt(extraction_id)
        if attempt is None:
            raise ExtractionNotFoundError(extraction_id)

        credited = 0
        for field, candidate in attempt.candidates_per_field.items():
            chosen = attempt.chosen_values.get(field)
            if not candidate.pattern_id or not chosen:
                continue
            if not values_agree(field, candidate.value, chosen):
                continue
            if self.pattern_store.record_pattern_outcome(candidate.pattern_id, success=True):
                credited += 1

        logger.info("Extraction confirmed", extra={
            "extraction_id": extraction_id,
            "patterns_credited": credited,
        })
        return credited

    def reseed_if_needed(self) -> int:
        """Startup bootstrap; PatternStoreUnavailableError propagates."""
        return self.pattern_store.reseed_if_needed()


def create_engine(use_supabase: Optional[bool] = None) -> ExtractionEngine:
    """
    Wire an engine from settings.

    Supabase repositories when SUPABASE_URL is set (or use_supabase=True),
    in-memory otherwise. OpenAI extractors only when OPENAI_ENABLED.
    """
    from autofactura.services.llm_extractor import OpenAITextExtractor, OpenAIVisionExtractor
    from autofactura.services.repositories import (
        InMemoryExtractionRepository,
        InMemoryPatternRepository,
        SupabaseExtractionRepository,
        SupabasePatternRepository,
    )

    if use_supabase is None:
        use_supabase = bool(settings.SUPABASE_URL)

    if use_supabase:
        from autofactura.utils.supabase import get_supabase_client
        client = get_supabase_client()
        pattern_repository = SupabasePatternRepository(client)
        extraction_repository = SupabaseExtractionRepository(client)
    else:
        pattern_repository = InMemoryPatternRepository()
        extraction_repository = InMemoryExtractionRepository()

    store = PatternStore(pattern_repository)
    policy = EscalationPolicy(
        text_extractor=OpenAITextExtractor() if settings.OPENAI_ENABLED else None,
        vision_extractor=OpenAIVisionExtractor() if settings.OPENAI_ENABLED else None,
    )
    return ExtractionEngine(store, extraction_repository, policy=policy)
