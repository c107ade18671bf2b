"""Fact extraction: deterministic recognizers plus an optional model extractor.

Precedence per field, strongest first:
    channel-supplied phone > model extractor > regex recognizers.
Empty values never enter the result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import ExtractionError
from .utils import mask_facts, normalize_email, normalize_phone

logger = logging.getLogger("shopdesk.facts")

EXTRACTION_FIELDS: Tuple[str, ...] = ("name", "email", "phone", "order_id", "item", "reason", "address")

EMAIL_RE = re.compile(r"\b[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}\b", re.IGNORECASE)
PHONE_RE = re.compile(r"(?<![\w#])(\+?\d[\d\s\-().]{8,}\d)(?!\w)")
ORDER_RE = re.compile(r"\b(?:order|ord)\s*(?:number|no\.?|id)?\s*#?\s*([A-Z0-9\-]{4,})\b", re.IGNORECASE)
HASH_ORDER_RE = re.compile(r"(?<![\w&])#([A-Z0-9\-]{4,})\b", re.IGNORECASE)
NAME_RE = re.compile(r"\bmy name is\s+([^.,!?;:\n]+)", re.IGNORECASE)
MIN_PHONE_DIGITS = 10
MIN_INTL_PHONE_DIGITS = 8
DATE_LIKE_RE = re.compile(r"(?<!\d)(?:\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.]\d{1,2}[/.]\d{2,4})(?!\d)")
MAX_NAME_LENGTH = 60


class FieldExtractor(Protocol):
    def extract_fields(self, text: str, fields: Tuple[str, ...]) -> Dict[str, Optional[str]]:
        ...


@dataclass
class FactExtraction:
    """Facts found in one message, plus the non-fatal extractor failure if any."""
    facts: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


def _find_order_id(text: str) -> Tuple[str, Optional[Tuple[int, int]]]:
    # Order ids must contain a digit so "order status" never becomes an id.
    for pattern in (ORDER_RE, HASH_ORDER_RE):
        for match in pattern.finditer(text):
            candidate = match.group(1).strip("-")
            if len(candidate) >= 4 and any(ch.isdigit() for ch in candidate):
                return candidate, match.span(1)
    return "", None


def _looks_like_date_or_time(text: str, start: int, end: int) -> bool:
    # "2024-01-15", "15.01.2024" and digits glued to "hh:mm" are never phones.
    if DATE_LIKE_RE.search(text[start:end]):
        return True
    return text[end:end + 1] == ":" or text[start - 1:start] == ":"


def _find_phone(text: str, skip_span: Optional[Tuple[int, int]]) -> str:
    for match in PHONE_RE.finditer(text):
        start, end = match.span(1)
        if skip_span and start < skip_span[1] and skip_span[0] < end:
            continue
        if _looks_like_date_or_time(text, start, end):
            continue
        normalized = normalize_phone(match.group(1))
        digits = len(normalized.lstrip("+"))
        if digits >= MIN_PHONE_DIGITS or (normalized.startswith("+") and digits >= MIN_INTL_PHONE_DIGITS):
            return normalized
    return ""


def _find_name(text: str) -> str:
    match = NAME_RE.search(text)
    if not match:
        return ""
    name = " ".join(match.group(1).split())
    if 0 < len(name) < MAX_NAME_LENGTH:
        return name
    return ""


def extract_with_patterns(text: str, channel_phone: Optional[str] = None) -> Dict[str, str]:
    """Purpose: Run the deterministic recognizers over one message.
    Inputs/Outputs: Inputs are raw text and an optional channel-verified phone; output
        is a field -> normalized value mapping.
    Side Effects / State: None; pure function.
    Dependencies: EMAIL_RE, PHONE_RE, ORDER_RE, HASH_ORDER_RE, NAME_RE.
    Failure Modes: Unusual formats are simply not recognized.
    If Removed: Extraction depends entirely on the model and fails closed without it.
    Testing Notes: "my order 12345 is late, email is a@B.com" -> order_id and email only.
    """
    # Seed the channel phone first; recognizers only fill fields still unset.
    facts: Dict[str, str] = {}
    seeded_phone = normalize_phone(channel_phone or "")
    if seeded_phone:
        facts["phone"] = seeded_phone
    text = text or ""

    email_match = EMAIL_RE.search(text)
    if email_match:
        facts["email"] = normalize_email(email_match.group(0))

    order_id, order_span = _find_order_id(text)
    if order_id:
        facts["order_id"] = order_id

    if "phone" not in facts:
        phone = _find_phone(text, order_span)
        if phone:
            facts["phone"] = phone

    name = _find_name(text)
    if name:
        facts["name"] = name
    return facts


def extract_facts(
    text: str,
    channel_phone: Optional[str] = None,
    extractor: Optional[FieldExtractor] = None,
) -> FactExtraction:
    """Purpose: Produce the facts for one turn, tolerating extractor failure.
    Inputs/Outputs: Inputs are raw text, optional channel phone and optional model
        extractor; output is a FactExtraction(facts, error).
    Side Effects / State: At most one outbound extractor call.
    Dependencies: extract_with_patterns, FieldExtractor.extract_fields.
    Failure Modes: Extractor exceptions are caught and reported in .error; the
        deterministic facts are still returned.
    If Removed: Identity matching and slot filling have no inputs.
    Testing Notes: Use an extractor that raises and assert regex facts survive.
    """
    # Deterministic pass first, then overlay the model's non-empty values.
    facts = extract_with_patterns(text, channel_phone)
    result = FactExtraction(facts=facts)
    if extractor is None:
        return result

    try:
        extracted = extractor.extract_fields(text, EXTRACTION_FIELDS)
    except ExtractionError as exc:
        result.error = str(exc)
        logger.warning("fact extraction failed error=%s", exc)
        return result
    except Exception as exc:  # noqa: BLE001
        result.error = f"extractor failed: {exc}"
        logger.warning("fact extraction failed error=%s", exc)
        return result

    channel_seeded = bool(normalize_phone(channel_phone or ""))
    for key, value in (extracted or {}).items():
        if key not in EXTRACTION_FIELDS or value is None:
            continue
        cleaned = str(value).strip()
        if key == "email":
            cleaned = normalize_email(cleaned)
        elif key == "phone":
            if channel_seeded:
                continue
            cleaned = normalize_phone(cleaned)
        if cleaned:
            facts[key] = cleaned
    logger.debug("facts extracted=%s", mask_facts(facts))
    return result


def contact_candidates(facts: Dict[str, str]) -> List[Tuple[str, str]]:
    """Contact-type identity keys in priority order: email, then phone."""
    candidates: List[Tuple[str, str]] = []
    email = normalize_email(facts.get("email", ""))
    if email:
        candidates.append(("email", email))
    phone = normalize_phone(facts.get("phone", ""))
    if phone:
        candidates.append(("phone", phone))
    return candidates
