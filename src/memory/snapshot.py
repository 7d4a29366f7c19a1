"""Operator-facing ``MEMORY.md`` snapshot built from stored facts and the journal."""

import re
from pathlib import Path

import structlog

from .grounding import collapse_whitespace, normalize_highlight_text
from .journal import DailyEntry, DailyJournal
from .models import LORE_SUBJECT, SELF_SUBJECT

logger = structlog.get_logger()

MEMORY_FILE_NAME = "MEMORY.md"
MISSING_SNAPSHOT_TEXT = "# Memory\n\n(no memory file yet)"

FACT_TYPE_LABELS = {
    "preference": "Preference",
    "profile": "Profile",
    "relationship": "Relationship",
    "project": "Project",
    "lore": "Lore",
    "self": "Self",
}

_CHATTER_TAIL_RE = re.compile(r"\s+\b(?:bro|lol|lmao|lmfao|fr|ngl)\b[\s\S]*$", re.IGNORECASE)
_CLAUSE_TAIL_RE = re.compile(r"\s+\b(?:and|but|because)\b[\s\S]*$", re.IGNORECASE)
_URL_ONLY_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


def clean_fact_for_memory(raw_fact) -> str:
    """Trim trailing chatter and run-on clauses; end with punctuation."""
    text = collapse_whitespace(raw_fact)
    if not text:
        return ""
    text = _CHATTER_TAIL_RE.sub(".", text)
    text = _CLAUSE_TAIL_RE.sub(".", text)
    text = collapse_whitespace(text)
    if not re.search(r"[.!?]$", text):
        text += "."
    return text[:190]


def format_typed_fact_for_memory(raw_fact, raw_type) -> str:
    fact = clean_fact_for_memory(raw_fact)
    if not fact:
        return ""
    label = FACT_TYPE_LABELS.get(str(raw_type or "").strip().lower())
    return f"{label}: {fact}" if label else fact


def _normalize_prefixed(raw_fact, aliases: list[str], canonical: str, display: str) -> str:
    text = collapse_whitespace(raw_fact)
    if not text:
        return ""
    for alias in aliases:
        text = re.sub(rf"^{alias}:\s*", f"{canonical}: ", text, flags=re.IGNORECASE)
    if not re.match(rf"^{canonical}:\s*", text, flags=re.IGNORECASE):
        text = f"{display}: {text}"
    return clean_fact_for_memory(text)


def normalize_lore_fact_for_display(raw_fact) -> str:
    return _normalize_prefixed(raw_fact, ["alias mapping", "important tidbit"], "memory line", "Memory line")


def normalize_self_fact_for_display(raw_fact) -> str:
    return _normalize_prefixed(raw_fact, ["bot memory", "identity memory"], "self memory", "Self memory")


def build_highlights_section(entries: list[DailyEntry], max_items: int = 24) -> list[str]:
    """Deduplicated journal highlights, at most 8 per author."""
    per_author: dict[str, int] = {}
    seen: set[str] = set()
    items = []

    for entry in entries:
        if len(items) >= max_items:
            break
        author = str(entry.author or "").strip()
        text = collapse_whitespace(entry.text)[:220]
        if not author or len(text) < 8 or _URL_ONLY_RE.match(text):
            continue
        normalized = normalize_highlight_text(text)
        if not normalized or normalized in seen:
            continue
        if per_author.get(author, 0) >= 8:
            continue

        per_author[author] = per_author.get(author, 0) + 1
        seen.add(normalized)
        items.append(f"- {author}: {text}")

    return items


def _scope_label(guild_id) -> str:
    return f"[guild:{guild_id}] " if guild_id else ""


class MemorySnapshot:
    """Renders and persists the markdown snapshot next to the daily logs."""

    def __init__(self, store, journal: DailyJournal, path: str | Path | None = None):
        self.store = store
        self.journal = journal
        self.path = Path(path) if path else journal.memory_dir / MEMORY_FILE_NAME

    def build_people_section(self, max_subjects: int = 80, per_subject: int = 6) -> list[str]:
        subjects = [
            row
            for row in self.store.get_memory_subjects(max_subjects)
            if row["subject"] not in (LORE_SUBJECT, SELF_SUBJECT)
        ]

        by_guild: dict[str, list[str]] = {}
        for row in subjects:
            guild = str(row.get("guild_id") or "").strip()
            subject = str(row.get("subject") or "").strip()
            if guild and subject and subject not in by_guild.setdefault(guild, []):
                by_guild[guild].append(subject)

        facts_by_subject: dict[tuple[str, str], list] = {}
        for guild, subject_ids in by_guild.items():
            rows = self.store.get_facts_for_subjects_scoped(
                guild,
                subject_ids,
                per_subject_limit=per_subject,
                total_limit=min(1200, max(200, len(subject_ids) * 10)),
            )
            for fact in rows:
                bucket = facts_by_subject.setdefault((fact.guild_id, fact.subject), [])
                if len(bucket) < per_subject:
                    bucket.append(fact)

        lines = []
        for row in subjects:
            facts = facts_by_subject.get((row["guild_id"], row["subject"]), [])
            cleaned = list(
                dict.fromkeys(
                    text
                    for text in (format_typed_fact_for_memory(f.fact, f.fact_type) for f in facts)
                    if text
                )
            )[:per_subject]
            if cleaned:
                lines.append(f"- {_scope_label(row['guild_id'])}{row['subject']}: {' | '.join(cleaned)}")
        return lines

    def _build_subject_section(self, subject: str, normalizer, max_items: int) -> list[str]:
        lines = []
        seen = set()
        for fact in self.store.get_facts_for_subject_scoped(subject, 32, None):
            normalized = normalizer(fact.fact)
            if not normalized:
                continue
            key = f"{fact.guild_id or ''}:{normalized.lower()}"
            if key in seen:
                continue
            seen.add(key)
            lines.append(f"- {_scope_label(fact.guild_id)}{normalized}")
        return lines[: max(1, max_items)]

    def build_self_section(self, max_items: int = 6) -> list[str]:
        return self._build_subject_section(SELF_SUBJECT, normalize_self_fact_for_display, max_items)

    def build_lore_section(self, max_items: int = 6) -> list[str]:
        return self._build_subject_section(LORE_SUBJECT, normalize_lore_fact_for_display, max_items)

    def render(self) -> str:
        people = self.build_people_section()
        self_lines = self.build_self_section(6)
        lore = self.build_lore_section(6)
        highlights = build_highlights_section(self.journal.recent_entries(days=3, max_entries=120), 24)
        daily_files = self.journal.recent_files(5)
        daily_line = ", ".join(p.name for p in daily_files) if daily_files else "(No daily files yet.)"

        return "\n".join(
            [
                "# Durable Memory Snapshot",
                "",
                "_Operator-facing summary. Runtime prompts use indexed durable facts + retrieval, "
                "not this markdown file directly._",
                "",
                "## People (Durable Facts)",
                *(people or ["- (No stable people facts yet.)"]),
                "",
                "## Bot Self Memory",
                *(self_lines or ["- (No durable self-memory lines yet.)"]),
                "",
                "## Ongoing Lore",
                *(lore or ["- (No durable lore lines yet.)"]),
                "",
                "## Recent Journal Highlights",
                *(highlights or ["- (No recent highlights yet.)"]),
                "",
                "## Source Daily Logs",
                "- Daily logs are append-only in `YYYY-MM-DD.md`.",
                f"- Recent files: {daily_line}",
            ]
        )

    def write(self) -> Path:
        markdown = self.render()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(markdown, encoding="utf-8")
        logger.debug("memory.snapshot_written", path=str(self.path))
        return self.path

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return MISSING_SNAPSHOT_TEXT
