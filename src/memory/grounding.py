"""Grounding checks and text normalization for durable facts.

Every fact, whether extracted by the LLM or submitted through a "remember
this" directive, passes through here before the store sees it. Nothing in
this module has side effects.
"""

import math
import re

from .errors import ValidationRejected
from .models import FactType

MAX_FACT_CHARS = 190
MAX_EVIDENCE_CHARS = 220
MAX_DAILY_ENTRY_CHARS = 320
MAX_MEMORY_LINE_CHARS = 180
MIN_FACT_CHARS = 4

_EXTRACTABLE_FACT_TYPES = {"preference", "profile", "relationship", "project", "other", "general"}

_URL_RE = re.compile(r"https?://\S+")
_MENTION_RE = re.compile(r"<(?:a?:[^:>]+:\d+|[@#][!&]?\d+)>")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9 ]+")
_WS_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[a-z0-9]{3,}")
_TERMINAL_PUNCT_RE = re.compile(r"[.!?]$")

_INSTRUCTION_PATTERNS = [
    re.compile(r"\[\[[\s\S]*\]\]"),
    re.compile(r"(?:system|developer|prompt|instruction|policy|jailbreak|override)"),
    re.compile(r"(?:ignore|disregard|bypass)\s+(?:previous|prior|earlier)"),
    re.compile(r"(?:always|never)\s+(?:reply|respond|say|output)"),
    re.compile(r"(?:api key|token|password|credential|secret)"),
]

_DIRECTIVE_LEAD_RE = re.compile(
    r"^(?:remember(?: this)?|important|note this|dont forget|don't forget|keep in mind|fyi)\b[\s:,-]*",
    re.IGNORECASE,
)
_MEMORY_LINE_LABEL_RE = re.compile(r"^(?:memory line|remember line)\s*:\s*", re.IGNORECASE)


def clamp01(value, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return min(1.0, max(0.0, number))


def clamp_int(value, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = low
    return min(high, max(low, number))


def collapse_whitespace(text) -> str:
    return _WS_RE.sub(" ", str(text or "")).strip()


def sanitize_inline(value, max_len: int = 120) -> str:
    """Single-line text safe for the pipe-delimited journal format."""
    text = re.sub(r"[\r\n|]", " ", str(value or ""))
    return collapse_whitespace(text)[:max_len].strip()


def normalize_highlight_text(text) -> str:
    """Lowercase and reduce text to ``[a-z0-9 ]`` for comparisons."""
    compact = str(text or "").lower()
    compact = _URL_RE.sub(" ", compact)
    compact = _MENTION_RE.sub(" ", compact)
    compact = _NON_ALNUM_RE.sub(" ", compact)
    return collapse_whitespace(compact)


def extract_stable_tokens(text, max_tokens: int = 64) -> list[str]:
    """Unique alphanumeric tokens of length >= 3, first-seen order."""
    seen: dict[str, None] = {}
    for token in _TOKEN_RE.findall(str(text or "").lower()):
        seen.setdefault(token, None)
    return list(seen)[: max(1, max_tokens)]


def is_grounded(candidate, source) -> bool:
    """True when ``candidate`` is textually supported by ``source``."""
    source_compact = normalize_highlight_text(source)
    candidate_compact = normalize_highlight_text(candidate)
    if not source_compact or not candidate_compact:
        return False
    if candidate_compact in source_compact:
        return True

    source_tokens = extract_stable_tokens(source, 64)
    if not source_tokens:
        return False
    candidate_tokens = extract_stable_tokens(candidate, 32)
    if not candidate_tokens:
        return False

    source_set = set(source_tokens)
    overlap = sum(1 for token in candidate_tokens if token in source_set)
    if overlap >= max(2, math.ceil(len(candidate_tokens) * 0.45)):
        return True
    # Short candidates: every token must appear.
    return len(candidate_tokens) <= 3 and overlap == len(candidate_tokens) and overlap >= 2


def is_instruction_like(text) -> bool:
    """True for prompt-injection-shaped or credential-shaped text."""
    lowered = str(text or "").lower()
    if not lowered:
        return True
    return any(pattern.search(lowered) for pattern in _INSTRUCTION_PATTERNS)


def check_fact_candidate(candidate, source) -> None:
    """Raise ValidationRejected unless ``candidate`` may be stored."""
    if len(normalize_highlight_text(candidate)) < MIN_FACT_CHARS:
        raise ValidationRejected("too_short")
    if is_instruction_like(candidate):
        raise ValidationRejected("instruction_like")
    if not is_grounded(candidate, source):
        raise ValidationRejected("ungrounded")


def validate_fact_candidate(candidate, source) -> bool:
    try:
        check_fact_candidate(candidate, source)
    except ValidationRejected:
        return False
    return True


def normalize_stored_fact_text(raw_fact) -> str:
    compact = collapse_whitespace(raw_fact)
    if len(compact) < MIN_FACT_CHARS:
        return ""
    if not _TERMINAL_PUNCT_RE.search(compact):
        compact = f"{compact}."
    return compact[:MAX_FACT_CHARS]


def normalize_fact_type(raw_type) -> FactType:
    normalized = str(raw_type or "").strip().lower()
    if normalized not in _EXTRACTABLE_FACT_TYPES or normalized == "general":
        return FactType.OTHER
    return FactType(normalized)


def normalize_evidence_text(raw_evidence, source_text) -> str | None:
    """Bounded evidence quote, kept only when it is itself grounded."""
    evidence = sanitize_inline(raw_evidence or "", MAX_EVIDENCE_CHARS)
    if not evidence:
        return None
    return evidence if is_grounded(evidence, source_text) else None


def normalize_memory_line_input(line) -> str:
    text = collapse_whitespace(str(line or "").replace("|", "/"))
    if not text:
        return ""
    text = _DIRECTIVE_LEAD_RE.sub("", text)
    text = _MEMORY_LINE_LABEL_RE.sub("", text)
    text = re.sub(r"^that\s+", "", text, flags=re.IGNORECASE)
    text = re.sub(r"[.!?]+$", "", text).strip()
    if len(text) < MIN_FACT_CHARS:
        return ""
    return text[:MAX_MEMORY_LINE_CHARS]


def clean_daily_entry_content(content) -> str:
    text = collapse_whitespace(str(content or "").replace("|", "/"))
    if len(text) < 2:
        return ""
    return text[:MAX_DAILY_ENTRY_CHARS]


def normalize_query_text(text, max_chars: int = 420) -> str:
    return collapse_whitespace(text)[:max_chars]
