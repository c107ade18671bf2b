import json
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable keyword matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        diacritics removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the intent classifier.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Keyword groups miss accented or oddly spaced messages.
    Testing Notes: "Where's  my ORDÉR?" should become "where s my order".
    """
    # Lowercase, strip diacritics, then collapse punctuation and whitespace.
    if not text:
        return ""
    lowered = text.lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.@+]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_email(value: str) -> str:
    """Canonical comparable form of an email address."""
    return (value or "").strip().lower()


def normalize_phone(value: str) -> str:
    """Purpose: Reduce a phone number to digits, keeping a leading "+".
    Inputs/Outputs: Input is raw phone text; output is "+4915112345678" style string.
    Side Effects / State: None; pure function.
    Dependencies: None; used by fact extraction and identity key matching.
    Failure Modes: Returns "" for empty input or input without digits.
    If Removed: The same phone typed two ways maps to two identity keys.
    Testing Notes: "+49 (151) 123-45" -> "+4915112345"; "0151 123" -> "0151123".
    """
    # Keep only digits, preserving an international prefix.
    cleaned = (value or "").strip()
    if not cleaned:
        return ""
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    if not digits:
        return ""
    if cleaned.startswith("+"):
        return "+" + digits
    return digits


def unique_preserving_order(values: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def mask_contact_value(value: object) -> str:
    """Purpose: Mask email/phone values for safe logging.
    Inputs/Outputs: Input is any value; output keeps only a short hint of the original.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: Short values collapse to "***".
    If Removed: Logs expose customer contact data.
    Testing Notes: "a@b.com" -> "a***@b.com"; "+4915112345" -> "***345".
    """
    # Emails keep the first character and the domain; phones keep the last digits.
    if value is None:
        return ""
    text = str(value)
    if "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    digits = re.findall(r"\d", text)
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])


def mask_facts(facts: Dict[str, str]) -> Dict[str, str]:
    safe = dict(facts or {})
    for key in ("email", "phone"):
        if safe.get(key):
            safe[key] = mask_contact_value(safe[key])
    return safe


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Model outputs wrapped in prose or code fences cannot be parsed.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a JSON object from a model output string safely.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_json_block and json.loads; called by field extraction.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Extractor parsing crashes on malformed model output.
    Testing Notes: Validate valid JSON parses and malformed JSON returns None.
    """
    # Parse only the extracted JSON block to avoid non-JSON prefixes/suffixes.
    block = extract_json_block(text)
    if not block:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
