from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    # App
    APP_NAME: str = "AutoFactura"
    DEBUG: bool = True

    # Acceptance / escalation (tunable, see DESIGN.md)
    ACCEPTANCE_THRESHOLD: int = 60
    ESCALATION_THRESHOLD: int = 75
    CRITICAL_FIELDS: List[str] = ["taxId", "issuer", "total"]

    # Field weights for the overall score (must sum to 100)
    FIELD_WEIGHTS: Dict[str, int] = {
        "taxId": 30,
        "date": 20,
        "total": 25,
        "tax": 15,
        "subtotal": 10,
    }

    # Arithmetic cross-checks
    FIXED_TAX_RATE: float = 0.16  # IVA
    CONSISTENCY_TOLERANCE: float = 0.01

    # Extraction
    CONTEXT_WINDOW_CHARS: int = 80
    MIN_PATTERN_COUNT: int = 13
    LEARNED_PATTERN_WEIGHT: float = 1.2

    # OCR text quality
    GARBAGE_TOKEN_THRESHOLD: int = 10
    MIN_NORMAL_CHAR_RATIO: float = 0.5
    MIN_TEXT_LENGTH: int = 50

    # Escalated extraction (OpenAI)
    OPENAI_ENABLED: bool = False
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_VISION_MODEL: str = "gpt-4o"
    ESCALATION_TIMEOUT_SECONDS: float = 30.0

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    PATTERNS_TABLE: str = "extraction_patterns"
    EXTRACTIONS_TABLE: str = "ocr_extractions"
    CORRECTIONS_TABLE: str = "ocr_corrections"

    # OCR
    TESSERACT_CMD: str = "/usr/bin/tesseract"
    OCR_LANGUAGE: str = "spa"

    @field_validator("FIELD_WEIGHTS")
    @classmethod
    def weights_sum_to_100(cls, value: Dict[str, int]) -> Dict[str, int]:
        if sum(value.values()) != 100:
            raise ValueError(f"FIELD_WEIGHTS must sum to 100, got {sum(value.values())}")
        return value

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
