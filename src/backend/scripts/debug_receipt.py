"""
Debug script to see what every strategy finds in a receipt's OCR text.
Run with: python scripts/debug_receipt.py receipt.txt
"""

import sys

from autofactura.models.invoice import EXTRACTABLE_FIELDS
from autofactura.services.engine import create_engine, run_cheap_pipeline
from autofactura.services.escalation import assess_text_quality
from autofactura.services.field_extractor import Document
from autofactura.utils.money import format_money


def debug_receipt(path: str) -> None:
    with open(path, encoding="utf-8") as f:
        text = f.read()

    engine = create_engine()
    engine.reseed_if_needed()

    print("=" * 60)
    print(f"Receipt: {path}")
    print("=" * 60)

    quality = assess_text_quality(text)
    print(f"\nText length: {quality.length} characters")
    print(f"Garbage tokens: {quality.garbage_tokens}")
    print(f"Normal char ratio: {quality.normal_char_ratio:.2f}")
    print(f"Garbage: {quality.is_garbage}")

    document = Document.from_text(text)
    cheap = run_cheap_pipeline(document, engine.extractor, engine.aggregator)

    print("\n" + "=" * 60)
    print("CANDIDATES:")
    print("=" * 60)
    for field in EXTRACTABLE_FIELDS:
        best = cheap.candidates[field]
        print(f"\n{field.value}: {best.value!r} ({best.confidence:.1f}, {best.method})")
        for candidate in cheap.considered[field]:
            source = candidate.pattern_id or candidate.position
            print(f"  - {candidate.value!r} {candidate.confidence:.1f} {candidate.method} {source or ''}")

    print(f"\nSum consistent: {cheap.report.sum_consistent}")
    print(f"Tax rate consistent: {cheap.report.tax_rate_consistent}")
    print(f"Overall confidence (cheap): {cheap.overall}")

    outcome = engine.extract(text)
    print("\n" + "=" * 60)
    print("OUTCOME:")
    print("=" * 60)
    print(f"Accepted: {outcome.accepted} ({outcome.state}, {outcome.method_used})")
    print(f"Overall confidence: {outcome.overall_confidence}")
    if outcome.record:
        record = outcome.record
        print(f"RFC: {record.tax_id or '-'}  Emisor: {record.issuer or '-'}  Fecha: {record.date or '-'}")
        print(f"Subtotal: {format_money(record.subtotal)}  IVA: {format_money(record.tax)}  Total: {format_money(record.total)}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/debug_receipt.py <ocr_text_file>")
        sys.exit(2)
    debug_receipt(sys.argv[1])
