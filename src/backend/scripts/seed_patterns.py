"""
Seed the default extraction patterns if the pattern table is too small.
Run at service startup with: python scripts/seed_patterns.py
"""

import logging
import sys

from autofactura.config import settings
from autofactura.services.engine import create_engine
from autofactura.utils.errors import PatternStoreUnavailableError


def seed_patterns() -> int:
    """Returns a process exit code: 0 on success, 1 when the store is unreachable."""
    print("=" * 60)
    print(f"{settings.APP_NAME} pattern bootstrap")
    print("=" * 60)
    print(f"\nSupabase URL: {settings.SUPABASE_URL or '(not set, using in-memory store)'}")
    print(f"Minimum pattern count: {settings.MIN_PATTERN_COUNT}")

    engine = create_engine()
    try:
        inserted = engine.reseed_if_needed()
    except PatternStoreUnavailableError as e:
        print(f"\n✗ Pattern store unavailable: {e}")
        return 1

    total = engine.pattern_store.repository.count()
    print(f"\n✓ Inserted {inserted} default patterns ({total} stored)")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
    sys.exit(seed_patterns())
