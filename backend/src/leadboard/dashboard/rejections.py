"""leadboard.dashboard.rejections

Normalización de motivos de rechazo a categorías legibles.

El campo ``primary_rejection_reason`` del consenso llega en varias formas:

- ``None`` / vacío / ``"N/A"``.
- Un objeto JSON (o un dict ya parseado) con alguna combinación de
  ``failed_fields``, ``check_name``, ``stage``, ``failed_field`` (legacy),
  ``reason``, ``error`` y ``message``.
- Texto libre.

El parseo es un *tagged variant*: :func:`parse_rejection` clasifica el valor
crudo en :class:`StructuredRejection` u :class:`OpaqueRejection` y
:func:`normalize_rejection` decide la categoría según el tipo. El normalizador
nunca lanza excepción: lo que no se puede interpretar degrada a la regla
siguiente.

Notas
-----
- La lista de exclusión (errores de infraestructura como ``LLM Error``) **no**
  se aplica aquí; la aplica el agregador del histograma
  (ver :func:`is_excluded_category`).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union


NOT_AVAILABLE = "N/A"
MAX_CATEGORY_LEN = 40
MAX_REASON_LEN = 50

# ---------------------------------------------------------------------------
# Tablas de mapeo
# ---------------------------------------------------------------------------

FIELD_CATEGORIES: Dict[str, str] = {
    "email": "Invalid Email",
    "website": "Invalid Website",
    "site": "Invalid Website",
    "source_url": "Invalid Source URL",
    "linkedin": "Invalid LinkedIn",
    "region": "Invalid Region",
    "role": "Invalid Role",
    "industry": "Invalid Industry",
    "phone": "Invalid Phone",
    "name": "Invalid Name",
    "first_name": "Invalid Name",
    "last_name": "Invalid Name",
    "company": "Invalid Company",
    "title": "Invalid Title",
    "address": "Invalid Address",
    "exception": "Validation Error",
    "llm_error": "LLM Error",
    "source_type": "Invalid Source Type",
}

CHECK_CATEGORIES: Dict[str, str] = {
    "check_truelist_email": "Invalid Email",
    "check_myemailverifier_email": "Invalid Email",
    "check_email_regex": "Invalid Email",
    "check_mx_record": "Invalid Email",
    "check_linkedin_gse": "Invalid LinkedIn",
    "check_head_request": "Invalid Website",
    "check_domain_age": "Invalid Website",
    "check_dnsbl": "Invalid Website",
    "check_source_provenance": "Invalid Source URL",
    "check_name_email_match": "Name/Email Mismatch",
    "check_free_email_domain": "Free Email Domain",
    "validation_error": "Validation Error",
    "deep_verification": "Deep Verification Failed",
}

UNIFIED_CHECK = "check_stage5_unified"

# Formato legacy: un único ``failed_field``
LEGACY_FIELD_CATEGORIES: Dict[str, str] = {
    "site": "Invalid Website",
    "website": "Invalid Website",
    "email": "Invalid Email",
    "phone": "Invalid Phone",
    "name": "Invalid Name",
    "company": "Invalid Company",
    "title": "Invalid Title",
    "linkedin": "Invalid LinkedIn",
    "address": "Invalid Address",
}

# (subcadenas en stage, categoría); el orden define la prioridad
STAGE_CUES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("Email", "TrueList", "MyEmailVerifier"), "Invalid Email"),
    (("LinkedIn", "GSE"), "Invalid LinkedIn"),
    (("DNS", "Domain", "Hardcoded"), "Invalid Website"),
    (("Source Provenance",), "Invalid Source URL"),
)

# (subcadenas en minúsculas, categoría) para texto libre
KEYWORD_CATEGORIES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("duplicate",), "Duplicate Lead"),
    (("spam",), "Spam Detected"),
    (("disposable",), "Disposable Email"),
    (("catchall", "catch-all"), "Catch-all Email"),
    (("bounce",), "Email Bounced"),
)

# Categorías de infraestructura que el histograma excluye (subcadena, lower)
EXCLUDED_CATEGORY_MARKERS: Tuple[str, ...] = (
    "llm error",
    "llm_error",
    "no_validation",
    "no validation",
    "validation error",
    "validation_error",
    "unknown",
)

_STRIP_CHARS_RE = re.compile(r"[{}\[\]\"':]")
_WS_RE = re.compile(r"\s+")
_WORD_START_RE = re.compile(r"\b\w")


# ---------------------------------------------------------------------------
# Variantes de parseo
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StructuredRejection:
    """Motivo de rechazo con estructura (objeto JSON)."""

    failed_fields: List[str] = field(default_factory=list)
    check_name: Optional[str] = None
    stage: Optional[str] = None
    failed_field: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    raw: str = ""


@dataclass(frozen=True)
class OpaqueRejection:
    """Motivo de rechazo en texto libre (o JSON que no es un objeto)."""

    text: str


ParsedRejection = Union[StructuredRejection, OpaqueRejection]


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _structured_from_dict(obj: Dict[str, Any], raw: str) -> StructuredRejection:
    fields = obj.get("failed_fields")
    if isinstance(fields, str):
        fields = [fields]
    if not isinstance(fields, list):
        fields = []
    return StructuredRejection(
        failed_fields=[str(f) for f in fields if f is not None],
        check_name=_as_text(obj.get("check_name")),
        stage=_as_text(obj.get("stage")),
        failed_field=_as_text(obj.get("failed_field")),
        reason=_as_text(obj.get("reason")),
        error=_as_text(obj.get("error")),
        message=_as_text(obj.get("message")),
        raw=raw,
    )


def parse_rejection(raw: Any) -> Optional[ParsedRejection]:
    """
    Clasifica el motivo crudo.

    Returns
    -------
    None
        Si el valor está ausente, vacío o es ``"N/A"``.
    StructuredRejection
        Si es un dict o un string que parsea a objeto JSON.
    OpaqueRejection
        En cualquier otro caso (texto libre, JSON malformado, listas...).
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return _structured_from_dict(raw, json.dumps(raw))

    text = str(raw)
    if not text.strip() or text.strip() == NOT_AVAILABLE:
        return None

    try:
        obj = json.loads(text)
    except (ValueError, TypeError):
        return OpaqueRejection(text=text)
    if isinstance(obj, dict):
        return _structured_from_dict(obj, text)
    return OpaqueRejection(text=text)


# ---------------------------------------------------------------------------
# Reglas de categorización
# ---------------------------------------------------------------------------

def _title_case(name: str) -> str:
    spaced = name.replace("_", " ")
    return _WORD_START_RE.sub(lambda m: m.group(0).upper(), spaced)


def _category_for_unified(message: Optional[str]) -> str:
    msg = (message or "").lower()
    if "failed" in msg:
        if "region" in msg:
            return "Invalid Region"
        if "role" in msg:
            return "Invalid Role"
        if "industry" in msg:
            return "Invalid Industry"
    return "Role/Region/Industry Failed"


def _category_for_stage(stage: str) -> Optional[str]:
    for cues, category in STAGE_CUES:
        if any(cue in stage for cue in cues):
            return category
    return None


def _categorize_structured(rej: StructuredRejection) -> Optional[str]:
    if rej.failed_fields:
        for name in rej.failed_fields:
            mapped = FIELD_CATEGORIES.get(name.strip().lower())
            if mapped:
                return mapped
        return "Invalid " + _title_case(rej.failed_fields[0].strip())

    if rej.check_name:
        if rej.check_name == UNIFIED_CHECK:
            return _category_for_unified(rej.message)
        if rej.check_name in CHECK_CATEGORIES:
            return CHECK_CATEGORIES[rej.check_name]

    if rej.stage:
        by_stage = _category_for_stage(rej.stage)
        if by_stage:
            return by_stage

    if rej.failed_field:
        return LEGACY_FIELD_CATEGORIES.get(rej.failed_field.lower(), f"Invalid {rej.failed_field}")

    text = rej.reason or rej.error
    if text:
        return text[:MAX_REASON_LEN]
    return None


def _categorize_keywords(text: str) -> Optional[str]:
    lower = text.lower()
    for keywords, category in KEYWORD_CATEGORIES:
        if any(k in lower for k in keywords):
            return category
    return None


def _cleanup(text: str) -> str:
    cleaned = _STRIP_CHARS_RE.sub("", text)
    cleaned = _WS_RE.sub(" ", cleaned).strip()
    if len(cleaned) > MAX_CATEGORY_LEN:
        cleaned = cleaned[:MAX_CATEGORY_LEN] + "..."
    return cleaned


def normalize_rejection(raw: Any) -> str:
    """
    Convierte un motivo crudo en una categoría corta y legible.

    Parameters
    ----------
    raw : Any
        ``primary_rejection_reason`` tal como vino del store (string JSON,
        dict, texto libre o ``None``).

    Returns
    -------
    str
        ``"N/A"`` para ausentes; una categoría del mapa para motivos
        estructurados; una categoría por palabra clave para texto libre; en
        último caso el texto limpio (sin ``{}[]"':``, espacios colapsados,
        truncado a 40 caracteres + ``"..."``).
    """
    parsed = parse_rejection(raw)
    if parsed is None:
        return NOT_AVAILABLE

    if isinstance(parsed, StructuredRejection):
        category = _categorize_structured(parsed)
        if category:
            return category
        text = parsed.raw
    else:
        text = parsed.text

    by_keyword = _categorize_keywords(text)
    if by_keyword:
        return by_keyword

    return _cleanup(text) or NOT_AVAILABLE


def is_excluded_category(category: str) -> bool:
    """``True`` si la categoría es un error de infraestructura y no un rechazo real."""
    lower = (category or "").lower()
    return any(marker in lower for marker in EXCLUDED_CATEGORY_MARKERS)


__all__ = [
    "NOT_AVAILABLE",
    "StructuredRejection",
    "OpaqueRejection",
    "parse_rejection",
    "normalize_rejection",
    "is_excluded_category",
]
