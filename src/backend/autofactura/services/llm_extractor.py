"""
Escalated extractors backed by OpenAI chat completions.

- OpenAITextExtractor:   (raw OCR text)  -> InvoiceRecord | None
- OpenAIVisionExtractor: (image bytes)   -> InvoiceRecord | None

Both ask for a JSON object and run the answer through
normalize_llm_answer(). API and JSON failures raise EscalationError, which
the escalation policy turns into "unavailable".
"""

import base64
import io
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from openai import OpenAI
from PIL import Image

from autofactura.config import settings
from autofactura.models.invoice import InvoiceRecord
from autofactura.utils.dates import normalize_date
from autofactura.utils.errors import EscalationError
from autofactura.utils.money import ZERO, amounts_agree, parse_amount
from autofactura.utils.shapes import is_valid_tax_id

logger = logging.getLogger(__name__)

# Issuers whose tax id is public and frequently misread
KNOWN_TAX_IDS: Dict[str, str] = {
    'CFE': 'CFE370814QI0',
    'COMISION FEDERAL DE ELECTRICIDAD': 'CFE370814QI0',
    'OXXO': 'OMA830818IW1',
    'WALMART': 'WNM9709244W4',
    'SORIANA': 'SON040729U82',
    'TELCEL': 'RTC9201074Y1',
    'TELMEX': 'TTE150812JNA',
}

CFE_TAX_ID = 'CFE370814QI0'
# "QI0" read as zero-one-zero and friends
CFE_TAIL_MISREADS = {'010', '0I0', 'Q10', 'OI0', 'O1O', '01O'}

SYSTEM_PROMPT = (
    "Eres un experto en extracción de datos de tickets y facturas mexicanas. "
    "Tu trabajo es extraer información estructurada de tickets de compra. "
    "Siempre respondes en formato JSON válido."
)

RESPONSE_SHAPE = """
Responde SOLO con un objeto JSON con esta estructura exacta:
{
  "rfc": "string o null",
  "emisor": "string o null",
  "fecha": "string en formato YYYY-MM-DD o null",
  "importeTotal": número o 0,
  "iva": número o 0,
  "subtotal": número o 0
}
""".strip()

FIELD_INSTRUCTIONS = """
1. RFC del EMISOR: 3-4 letras + fecha AAMMDD + 3 caracteres alfanuméricos.
   Los 6 dígitos del medio deben ser una fecha válida (mes 01-12, día 01-31).
   Ejemplos: CFE370814QI0, BAZX060710BSA. El OCR confunde Q/0, I/1, O/0, S/5, B/8.
2. Emisor: nombre de la empresa que emite el ticket, no el del cliente.
3. Fecha de emisión en formato YYYY-MM-DD (30-SEP-2025 -> 2025-09-30).
4. Importe total: cerca de TOTAL, GRAN TOTAL, CARGO A TARJETA, TOTAL A PAGAR.
5. IVA: cerca de IVA, I.V.A., IMPUESTO. En México suele ser 16% del subtotal.
6. Subtotal: cerca de SUBTOTAL, ENERGIA, IMPORTE.
Los montos son números decimales positivos, sin símbolos de moneda.
""".strip()


def build_text_prompt(raw_text: str) -> str:
    return (
        "Analiza el siguiente texto extraído de un ticket o factura mexicana. "
        "Si no encuentras algún dato, déjalo como null o 0.\n\n"
        f'TEXTO DEL TICKET:\n"""\n{raw_text}\n"""\n\n'
        f"{FIELD_INSTRUCTIONS}\n\n{RESPONSE_SHAPE}"
    )


def build_vision_prompt() -> str:
    return (
        "Analiza esta imagen de un ticket o factura mexicana y lee con cuidado "
        "todos los números.\n\n"
        f"{FIELD_INSTRUCTIONS}\n\n{RESPONSE_SHAPE}"
    )


def tax_id_for_issuer(issuer: str) -> str:
    """Known tax id by exact, then partial, issuer name match; '' if unknown."""
    if not issuer:
        return ''

    issuer_upper = issuer.upper()
    if issuer_upper in KNOWN_TAX_IDS:
        return KNOWN_TAX_IDS[issuer_upper]

    for name, tax_id in KNOWN_TAX_IDS.items():
        if name in issuer_upper:
            return tax_id
    return ''


def fix_tax_id_misreads(tax_id: str) -> str:
    """
    >>> fix_tax_id_misreads("CFE370814010")
    'CFE370814QI0'
    """
    tax_id = (tax_id or '').strip().upper().replace('-', '').replace(' ', '')
    if tax_id.startswith('CFE370814') and tax_id[9:] in CFE_TAIL_MISREADS:
        return CFE_TAX_ID
    return tax_id


def _amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return ZERO
    return parse_amount(str(value))


def normalize_llm_answer(data: Any) -> Optional[InvoiceRecord]:
    """
    Turn a model's JSON answer into an InvoiceRecord.

    Returns None unless at least one of tax id, total or issuer is present.
    Missing amounts are derived from the other two; a lone total means no
    tax (subtotal = total). Invalid tax ids and sums off by more than 1%
    are logged but kept.
    """
    if not isinstance(data, dict):
        return None

    tax_id = data.get('rfc') or ''
    issuer = (data.get('emisor') or '').strip()
    raw_date = (data.get('fecha') or '').strip()
    total = _amount(data.get('importeTotal'))
    tax = _amount(data.get('iva'))
    subtotal = _amount(data.get('subtotal'))

    if not tax_id and not total and not issuer:
        return None

    tax_id = fix_tax_id_misreads(tax_id) if tax_id else tax_id_for_issuer(issuer)

    if tax_id and not is_valid_tax_id(tax_id):
        logger.warning("Escalated extractor returned invalid tax id", extra={"tax_id": tax_id})

    if total > 0 and subtotal > 0 and tax == 0:
        tax = total - subtotal
    if total > 0 and tax > 0 and subtotal == 0:
        subtotal = total - tax
    if subtotal > 0 and tax > 0 and total == 0:
        total = subtotal + tax
    if total > 0 and subtotal == 0 and tax == 0:
        subtotal = total

    if total > 0 and subtotal > 0 and not amounts_agree(subtotal + tax, total, total * Decimal('0.01')):
        logger.warning("Escalated amounts do not add up", extra={
            "subtotal": str(subtotal),
            "tax": str(tax),
            "total": str(total),
        })

    date_value = normalize_date(raw_date)

    return InvoiceRecord(
        tax_id=tax_id.upper(),
        issuer=issuer,
        date=date_value,
        total=total,
        tax=tax,
        subtotal=subtotal,
    )


class _OpenAIExtractor:
    """Shared client handling for the text and vision extractors."""

    name = "openai"
    confidence = 95.0
    method = "text"

    def __init__(self, client: Optional[OpenAI] = None, api_key: Optional[str] = None,
                 model: Optional[str] = None, enabled: Optional[bool] = None):
        self._client = client
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.enabled = enabled if enabled is not None else settings.OPENAI_ENABLED

    def is_enabled(self) -> bool:
        return bool(self.enabled and (self.api_key or self._client is not None))

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def _complete(self, messages: List[Dict[str, Any]], **kwargs) -> Optional[InvoiceRecord]:
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.1,
                response_format={"type": "json_object"},
                **kwargs
            )
        except Exception as e:
            raise EscalationError(self.name, f"API error: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EscalationError(self.name, "empty response")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise EscalationError(self.name, f"malformed JSON: {e}") from e

        record = normalize_llm_answer(data)
        if record is None:
            logger.info("Escalated answer had no usable fields", extra={"extractor": self.name})
            return None

        return record.model_copy(update={"confidence": self.confidence, "method": self.method})


class OpenAITextExtractor(_OpenAIExtractor):
    """Re-reads the OCR text with a chat model."""

    name = "openai-text"

    def __call__(self, raw_text: str) -> Optional[InvoiceRecord]:
        if not self.is_enabled():
            return None
        return self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_text_prompt(raw_text)},
        ])


def detect_image_mime_type(image_bytes: bytes, default: str = "image/jpeg") -> str:
    """MIME type read from the image header; default when Pillow cannot identify it."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image_format = image.format
    except OSError:
        logger.debug("Unrecognized image bytes, sending as %s", default)
        return default
    return Image.MIME.get(image_format, default)


class OpenAIVisionExtractor(_OpenAIExtractor):
    """Reads the receipt image directly; used when OCR text is garbage."""

    name = "openai-vision"
    confidence = 98.0
    method = "vision"

    def __init__(self, client: Optional[OpenAI] = None, api_key: Optional[str] = None,
                 model: Optional[str] = None, enabled: Optional[bool] = None,
                 mime_type: str = "image/jpeg"):
        super().__init__(client=client, api_key=api_key,
                         model=model or settings.OPENAI_VISION_MODEL, enabled=enabled)
        self.mime_type = mime_type

    def __call__(self, image_bytes: bytes) -> Optional[InvoiceRecord]:
        if not self.is_enabled() or not image_bytes:
            return None

        mime_type = detect_image_mime_type(image_bytes, default=self.mime_type)
        image_b64 = base64.b64encode(image_bytes).decode("ascii")
        return self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_vision_prompt()},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{mime_type};base64,{image_b64}",
                            "detail": "high",
                        },
                    },
                ],
            },
        ], max_tokens=1000)
