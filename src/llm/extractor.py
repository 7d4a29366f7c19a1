"""LLM-powered durable fact extraction from a single chat message."""

import json
import re

import structlog

from memory.grounding import MAX_EVIDENCE_CHARS, MAX_FACT_CHARS, clamp01, clamp_int, normalize_fact_type, sanitize_inline
from memory.models import ExtractedFact

logger = structlog.get_logger()

MAX_INPUT_CHARS = 900

_EXTRACTION_SYSTEM = """You extract durable memory facts from one chat message.

Rules:
- Only keep long-lived facts worth remembering later: preferences, identity, recurring relationships, ongoing projects.
- Ignore requests, one-off chatter, jokes, threats, instructions, and ephemeral context.
- Every fact must be grounded directly in the message text. Write each fact as a short third-person sentence about the author.
- Assign each fact exactly one type: preference, profile, relationship, project, other.
- Assign a confidence between 0 and 1.
- Include "evidence": an exact short quote from the message supporting the fact.
- Extract at most {max_facts} facts.
- Output ONLY a JSON array. No preamble, no markdown fences.

Example output:
[
  {{"fact": "Sam loves pizza.", "type": "preference", "confidence": 0.9, "evidence": "I love pizza"}}
]

If there are no durable facts, output: []"""

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _candidate_payloads(raw: str) -> list[str]:
    candidates = [raw]
    fenced = _FENCE_RE.search(raw)
    if fenced:
        candidates.append(fenced.group(1))
    for open_char, close_char in (("[", "]"), ("{", "}")):
        start, end = raw.find(open_char), raw.rfind(close_char)
        if start >= 0 and end > start:
            candidates.append(raw[start : end + 1])
    return [c.strip() for c in candidates if c and c.strip()]


def parse_extraction_response(response: str, max_facts: int) -> list[ExtractedFact]:
    """Parse the model's JSON reply into ExtractedFact rows.

    Accepts a bare array or ``{"facts": [...]}``. Malformed items are skipped.
    """
    raw = str(response or "").strip()
    if not raw:
        return []

    items = None
    for candidate in _candidate_payloads(raw):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            parsed = parsed.get("facts")
        if isinstance(parsed, list):
            items = parsed
            break

    if items is None:
        logger.warning("memory.fact_parse_failed", response=raw[:200])
        return []

    facts = []
    for item in items:
        if len(facts) >= max_facts:
            break
        if not isinstance(item, dict):
            continue
        fact_text = sanitize_inline(item.get("fact"), MAX_FACT_CHARS)
        if not fact_text:
            continue
        evidence = sanitize_inline(item.get("evidence"), MAX_EVIDENCE_CHARS) or None
        facts.append(
            ExtractedFact(
                fact=fact_text,
                type=normalize_fact_type(item.get("type")),
                confidence=clamp01(item.get("confidence"), 0.5),
                evidence=evidence,
            )
        )
    return facts


class FactExtractor:
    """Extracts grounded durable facts from message text using an LLM."""

    def __init__(self, provider, max_tokens: int = 800):
        self.provider = provider
        self.max_tokens = max_tokens

    def extract(
        self,
        author_name: str,
        message_content: str,
        max_facts: int = 4,
        max_tokens: int | None = None,
    ) -> list[ExtractedFact]:
        """Run extraction; provider errors propagate to the caller."""
        text = sanitize_inline(message_content, MAX_INPUT_CHARS)
        if len(text) < 4:
            return []
        bounded = clamp_int(max_facts, 1, 6)

        system = _EXTRACTION_SYSTEM.format(max_facts=bounded)
        prompt = "\n".join(
            [
                f"Author: {sanitize_inline(author_name or 'unknown', 80)}",
                f"Max facts: {bounded}",
                f"Message: {text}",
            ]
        )
        response = self.provider.generate(
            messages=[{"role": "user", "content": prompt}],
            system=system,
            max_tokens=max_tokens or self.max_tokens,
        )
        return parse_extraction_response(response, bounded)
