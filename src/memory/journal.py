"""Append-only daily chat journal in ``YYYY-MM-DD.md`` files."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from db import parse_iso

from .grounding import sanitize_inline

logger = structlog.get_logger()

DAILY_FILE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}\.md$")
_AUTHOR_ID_SUFFIX_RE = re.compile(r"\s*\([^)]+\)\s*$")


@dataclass(frozen=True)
class DailyEntry:
    timestamp: datetime | None
    author: str
    text: str


def parse_daily_entry_line(line: str) -> DailyEntry | None:
    """Parse one ``- <ts> | <author> (<id>) | <text>`` journal line."""
    line = str(line or "")
    if not line.startswith("- "):
        return None
    parts = line[2:].strip().split(" | ")
    if len(parts) < 3:
        return None

    timestamp_text, author_part, *text_parts = parts
    text = " | ".join(text_parts).strip()
    author = _AUTHOR_ID_SUFFIX_RE.sub("", author_part).strip()
    if not timestamp_text or not author or not text:
        return None
    return DailyEntry(timestamp=parse_iso(timestamp_text), author=author, text=text)


class DailyJournal:
    """Writes and reads the per-day journal files under ``memory_dir``."""

    def __init__(self, memory_dir: str | Path):
        self.memory_dir = Path(memory_dir).expanduser()
        self._initialized_files: set[Path] = set()

    def append_entry(
        self,
        content: str,
        author_id: str,
        author_name: str,
        message_id: str = "",
        guild_id: str = "",
        channel_id: str = "",
        now: datetime | None = None,
    ) -> Path:
        """Append one entry line to today's file, writing the header on creation."""
        now = now or datetime.now(timezone.utc)
        date_key = now.astimezone().strftime("%Y-%m-%d")
        path = self.memory_dir / f"{date_key}.md"

        scope_parts = []
        for label, value in (("guild", guild_id), ("channel", channel_id), ("message", message_id)):
            safe = sanitize_inline(value, 40)
            if safe:
                scope_parts.append(f"{label}:{safe}")
        scope = " ".join(scope_parts)
        scoped_content = f"[{scope}] {content}" if scope else content
        timestamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        line = (
            f"- {timestamp} | {sanitize_inline(author_name or 'unknown', 80)} "
            f"({sanitize_inline(author_id or 'unknown', 40)}) | {scoped_content}"
        )

        self.memory_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_header(path, date_key)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{line}\n")
        return path

    def _ensure_header(self, path: Path, date_key: str):
        if path in self._initialized_files:
            return
        header = "\n".join(
            [
                f"# Daily Memory Log {date_key}",
                "",
                "- Append-only chat journal used to distill `MEMORY.md`.",
                "",
                "## Entries",
                "",
            ]
        )
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(header)
        except FileExistsError:
            pass
        self._initialized_files.add(path)

    def recent_files(self, limit: int = 5) -> list[Path]:
        """Most recent daily files, newest first."""
        if not self.memory_dir.exists():
            return []
        names = sorted(
            (p.name for p in self.memory_dir.iterdir() if DAILY_FILE_PATTERN.match(p.name)),
            reverse=True,
        )
        return [self.memory_dir / name for name in names[: max(1, limit)]]

    def recent_entries(self, days: int = 3, max_entries: int = 120) -> list[DailyEntry]:
        """Parsed entries from the last ``days`` files, newest first."""
        entries = []
        for path in self.recent_files(days):
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("memory.journal_read_failed", path=str(path), error=str(e))
                continue
            for line in text.split("\n"):
                parsed = parse_daily_entry_line(line)
                if parsed:
                    entries.append(parsed)

        entries.sort(key=lambda e: e.timestamp.timestamp() if e.timestamp else 0.0, reverse=True)
        return entries[: max(1, max_entries)]
