"""Persistent storage for durable memory facts: SQLite rows + native vectors."""

import json
import sqlite3
from pathlib import Path

import numpy as np
import structlog

from db import now_iso, parse_iso, wal_connect

from .models import MemoryFact

logger = structlog.get_logger()

_FACT_COLUMNS = (
    "id, created_at, updated_at, guild_id, channel_id, subject, fact, fact_type, "
    "evidence_text, source_message_id, confidence"
)


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, int(value)))


def _unique(values) -> list[str]:
    seen: dict[str, None] = {}
    for value in values or []:
        text = str(value or "").strip()
        if text:
            seen.setdefault(text, None)
    return list(seen)


def _vector_to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _blob_to_vector(blob) -> np.ndarray:
    if not blob:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(blob, dtype=np.float32)


def _normalize_embedding(embedding) -> np.ndarray:
    try:
        vector = np.asarray(list(embedding or []), dtype=np.float32)
    except (TypeError, ValueError):
        return np.zeros(0, dtype=np.float32)
    if vector.ndim != 1 or not np.all(np.isfinite(vector)):
        return np.zeros(0, dtype=np.float32)
    return vector


class FactStore:
    """SQLite persistence for memory facts, their vectors, and message history."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memory_facts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    guild_id TEXT NOT NULL,
                    channel_id TEXT,
                    subject TEXT NOT NULL,
                    fact TEXT NOT NULL,
                    fact_type TEXT NOT NULL DEFAULT 'other',
                    evidence_text TEXT,
                    source_message_id TEXT,
                    confidence REAL NOT NULL DEFAULT 0.5,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    UNIQUE(guild_id, subject, fact)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memory_fact_vectors_native (
                    fact_id INTEGER NOT NULL,
                    model TEXT NOT NULL,
                    dims INTEGER NOT NULL,
                    embedding_blob BLOB NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (fact_id, model)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    guild_id TEXT,
                    channel_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    author_name TEXT NOT NULL,
                    is_bot INTEGER NOT NULL DEFAULT 0,
                    content TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    user_id TEXT,
                    message_id TEXT,
                    content TEXT,
                    metadata TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memory_scope_subject "
                "ON memory_facts(guild_id, subject, updated_at DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memory_scope_active "
                "ON memory_facts(guild_id, is_active, updated_at DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memory_vectors_model_dims "
                "ON memory_fact_vectors_native(model, dims)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_channel "
                "ON messages(channel_id, created_at DESC)"
            )

    # -- facts ---------------------------------------------------------------

    def add_memory_fact(
        self,
        guild_id: str,
        subject: str,
        fact: str,
        fact_type: str = "other",
        channel_id: str | None = None,
        evidence_text: str | None = None,
        source_message_id: str | None = None,
        confidence: float | None = 0.5,
    ) -> bool:
        """Insert a fact, or refresh the existing row for (guild, subject, fact)."""
        guild = str(guild_id or "").strip()
        if not guild:
            return False
        try:
            conf = float(confidence)
        except (TypeError, ValueError):
            conf = 0.5
        conf = min(1.0, max(0.0, conf))
        now = now_iso()

        with wal_connect(self.db_path) as conn:
            cursor = conn.execute(
                """INSERT INTO memory_facts(
                       created_at, updated_at, guild_id, channel_id, subject, fact,
                       fact_type, evidence_text, source_message_id, confidence, is_active
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                   ON CONFLICT(guild_id, subject, fact) DO UPDATE SET
                       updated_at = excluded.updated_at,
                       channel_id = excluded.channel_id,
                       fact_type = excluded.fact_type,
                       evidence_text = excluded.evidence_text,
                       source_message_id = excluded.source_message_id,
                       confidence = MAX(memory_facts.confidence, excluded.confidence),
                       is_active = 1""",
                (
                    now,
                    now,
                    guild,
                    str(channel_id)[:120] if channel_id else None,
                    str(subject),
                    str(fact)[:400],
                    str(fact_type or "other")[:40],
                    str(evidence_text)[:240] if evidence_text else None,
                    str(source_message_id) if source_message_id else None,
                    conf,
                ),
            )
            return cursor.rowcount > 0

    def get_memory_fact_by_subject_and_fact(
        self, guild_id: str, subject: str, fact: str
    ) -> MemoryFact | None:
        guild = str(guild_id or "").strip()
        if not guild:
            return None
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute(
                f"""SELECT {_FACT_COLUMNS} FROM memory_facts
                    WHERE guild_id = ? AND subject = ? AND fact = ? AND is_active = 1
                    LIMIT 1""",
                (guild, str(subject), str(fact)),
            ).fetchone()
        return self._row_to_fact(row) if row else None

    def get_facts_for_subjects(
        self, subjects: list[str], limit: int = 80, guild_id: str | None = None
    ) -> list[MemoryFact]:
        normalized = _unique(subjects)
        if not normalized:
            return []
        where = [f"subject IN ({', '.join('?' for _ in normalized)})", "is_active = 1"]
        params: list = list(normalized)
        if guild_id:
            where.append("guild_id = ?")
            params.append(str(guild_id))
        params.append(_clamp(limit, 1, 500))
        return self._select_facts(where, params)

    def get_facts_for_scope(self, guild_id: str, limit: int = 120) -> list[MemoryFact]:
        guild = str(guild_id or "").strip()
        if not guild:
            return []
        return self._select_facts(
            ["guild_id = ?", "is_active = 1"], [guild, _clamp(limit, 1, 1000)]
        )

    def get_facts_for_subject_scoped(
        self, subject: str, limit: int = 12, guild_id: str | None = None
    ) -> list[MemoryFact]:
        where = ["subject = ?", "is_active = 1"]
        params: list = [str(subject)]
        if guild_id:
            where.append("guild_id = ?")
            params.append(str(guild_id))
        params.append(_clamp(limit, 1, 100))
        return self._select_facts(where, params)

    def get_facts_for_subjects_scoped(
        self,
        guild_id: str,
        subject_ids: list[str],
        per_subject_limit: int = 6,
        total_limit: int = 600,
    ) -> list[MemoryFact]:
        """Newest facts per subject within one guild, capped per subject and overall."""
        guild = str(guild_id or "").strip()
        normalized = _unique(subject_ids)
        if not guild or not normalized:
            return []
        per_subject = _clamp(per_subject_limit, 1, 24)
        total = _clamp(total_limit, per_subject, 1200)
        placeholders = ", ".join("?" for _ in normalized)

        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT {_FACT_COLUMNS} FROM (
                        SELECT {_FACT_COLUMNS},
                               ROW_NUMBER() OVER (
                                   PARTITION BY subject ORDER BY updated_at DESC, id DESC
                               ) AS row_num
                        FROM memory_facts
                        WHERE guild_id = ? AND is_active = 1 AND subject IN ({placeholders})
                    ) AS ranked
                    WHERE row_num <= ?
                    ORDER BY updated_at DESC, id DESC
                    LIMIT ?""",
                (guild, *normalized, per_subject, total),
            ).fetchall()
        return [self._row_to_fact(r) for r in rows]

    def get_memory_subjects(self, limit: int = 80, guild_id: str | None = None) -> list[dict]:
        where = ["is_active = 1"]
        params: list = []
        if guild_id:
            where.append("guild_id = ?")
            params.append(str(guild_id))
        params.append(_clamp(limit, 1, 500))
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT guild_id, subject, MAX(updated_at) AS last_seen_at, COUNT(*) AS fact_count
                    FROM memory_facts
                    WHERE {" AND ".join(where)}
                    GROUP BY guild_id, subject
                    ORDER BY last_seen_at DESC
                    LIMIT ?""",
                params,
            ).fetchall()
        return [dict(r) for r in rows]

    def archive_old_facts_for_subject(
        self,
        guild_id: str,
        subject: str,
        keep: int = 60,
        fact_type: str | None = None,
    ) -> int:
        """Deactivate all but the newest ``keep`` facts. Returns count archived."""
        guild = str(guild_id or "").strip()
        subj = str(subject or "").strip()
        if not guild or not subj:
            return 0
        bounded_keep = _clamp(keep, 1, 400)
        where = ["guild_id = ?", "subject = ?", "is_active = 1"]
        params: list = [guild, subj]
        if fact_type:
            where.append("fact_type = ?")
            params.append(str(fact_type))

        with wal_connect(self.db_path) as conn:
            rows = conn.execute(
                f"""SELECT id FROM memory_facts
                    WHERE {" AND ".join(where)}
                    ORDER BY updated_at DESC, id DESC
                    LIMIT 1000""",
                params,
            ).fetchall()
            stale_ids = [r[0] for r in rows[bounded_keep:]]
            if not stale_ids:
                return 0
            placeholders = ", ".join("?" for _ in stale_ids)
            cursor = conn.execute(
                f"UPDATE memory_facts SET is_active = 0, updated_at = ? WHERE id IN ({placeholders})",
                (now_iso(), *stale_ids),
            )
            archived = cursor.rowcount

        logger.debug("memory.facts_archived", guild_id=guild, subject=subj, archived=archived)
        return archived

    def _select_facts(self, where: list[str], params: list) -> list[MemoryFact]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT {_FACT_COLUMNS} FROM memory_facts
                    WHERE {" AND ".join(where)}
                    ORDER BY updated_at DESC, id DESC
                    LIMIT ?""",
                params,
            ).fetchall()
        return [self._row_to_fact(r) for r in rows]

    # -- vectors -------------------------------------------------------------

    def upsert_memory_fact_vector_native(self, fact_id: int, model: str, embedding) -> bool:
        model_name = str(model or "").strip()[:120]
        vector = _normalize_embedding(embedding)
        if not isinstance(fact_id, int) or fact_id <= 0 or not model_name or not vector.size:
            return False
        with wal_connect(self.db_path) as conn:
            cursor = conn.execute(
                """INSERT INTO memory_fact_vectors_native(fact_id, model, dims, embedding_blob, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(fact_id, model) DO UPDATE SET
                       dims = excluded.dims,
                       embedding_blob = excluded.embedding_blob,
                       updated_at = excluded.updated_at""",
                (fact_id, model_name, int(vector.size), _vector_to_blob(vector), now_iso()),
            )
            return cursor.rowcount > 0

    def get_memory_fact_vector_native(self, fact_id: int, model: str) -> list[float] | None:
        model_name = str(model or "").strip()
        if not isinstance(fact_id, int) or fact_id <= 0 or not model_name:
            return None
        with wal_connect(self.db_path) as conn:
            row = conn.execute(
                """SELECT embedding_blob FROM memory_fact_vectors_native
                   WHERE fact_id = ? AND model = ? LIMIT 1""",
                (fact_id, model_name),
            ).fetchone()
        vector = _blob_to_vector(row[0] if row else None)
        return vector.tolist() if vector.size else None

    def get_memory_fact_vector_native_scores(
        self, fact_ids: list[int], model: str, query_embedding
    ) -> list[dict]:
        """Cosine similarity of stored vectors against the query, per fact id.

        Facts with no vector under ``model`` (or a different dimension) are
        absent from the result.
        """
        ids = sorted({i for i in fact_ids or [] if isinstance(i, int) and i > 0})
        model_name = str(model or "").strip()
        query = _normalize_embedding(query_embedding)
        if not ids or not model_name or not query.size:
            return []
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []

        placeholders = ", ".join("?" for _ in ids)
        with wal_connect(self.db_path) as conn:
            rows = conn.execute(
                f"""SELECT fact_id, embedding_blob FROM memory_fact_vectors_native
                    WHERE model = ? AND dims = ? AND fact_id IN ({placeholders})""",
                (model_name, int(query.size), *ids),
            ).fetchall()

        scores = []
        for fact_id, blob in rows:
            vector = _blob_to_vector(blob)
            norm = float(np.linalg.norm(vector))
            if norm == 0.0:
                score = 0.0
            else:
                score = float(np.dot(vector, query) / (norm * query_norm))
            if np.isfinite(score):
                scores.append({"fact_id": int(fact_id), "score": score})
        return scores

    # -- messages & actions ---------------------------------------------------

    def record_message(
        self,
        message_id: str,
        channel_id: str,
        author_id: str,
        author_name: str,
        content: str,
        guild_id: str | None = None,
        is_bot: bool = False,
    ) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO messages
                   (message_id, created_at, guild_id, channel_id, author_id, author_name, is_bot, content)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(message_id),
                    now_iso(),
                    guild_id,
                    str(channel_id),
                    str(author_id),
                    str(author_name),
                    1 if is_bot else 0,
                    str(content),
                ),
            )

    def search_relevant_messages(self, channel_id: str, query: str, limit: int = 8) -> list[dict]:
        """Recent channel messages sharing words with ``query``; newest first."""
        channel = str(channel_id or "").strip()
        if not channel:
            return []
        terms = [t for t in str(query or "").lower().split() if len(t) >= 3][:8]
        bounded = _clamp(limit, 1, 50)
        sql = (
            "SELECT message_id, created_at, guild_id, channel_id, author_id, author_name, is_bot, content "
            "FROM messages WHERE channel_id = ?"
        )
        params: list = [channel]
        if terms:
            sql += " AND (" + " OR ".join("LOWER(content) LIKE ?" for _ in terms) + ")"
            params.extend(f"%{t}%" for t in terms)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(bounded)

        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def log_action(
        self,
        kind: str,
        content: str = "",
        user_id: str | None = None,
        message_id: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO actions (created_at, kind, user_id, message_id, content, metadata)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    now_iso(),
                    str(kind),
                    user_id,
                    message_id,
                    content,
                    json.dumps(metadata, default=str) if metadata else None,
                ),
            )

    def get_actions(self, kind: str | None = None, limit: int = 100) -> list[dict]:
        sql = "SELECT * FROM actions"
        params: list = []
        if kind:
            sql += " WHERE kind = ?"
            params.append(kind)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(_clamp(limit, 1, 1000))
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(sql, params).fetchall()
        actions = []
        for r in rows:
            d = dict(r)
            d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else None
            actions.append(d)
        return actions

    def get_stats(self) -> dict:
        """Get fact counts by subject kind and fact type."""
        with wal_connect(self.db_path, row_factory=True) as conn:
            by_type = {
                r["fact_type"]: r["cnt"]
                for r in conn.execute(
                    "SELECT fact_type, COUNT(*) AS cnt FROM memory_facts WHERE is_active = 1 GROUP BY fact_type"
                ).fetchall()
            }
            total = conn.execute(
                "SELECT COUNT(*) FROM memory_facts WHERE is_active = 1"
            ).fetchone()[0]
            archived = conn.execute(
                "SELECT COUNT(*) FROM memory_facts WHERE is_active = 0"
            ).fetchone()[0]
            vectors = conn.execute(
                "SELECT COUNT(*) FROM memory_fact_vectors_native"
            ).fetchone()[0]

        return {
            "total_active": total,
            "total_archived": archived,
            "vectors": vectors,
            "by_type": by_type,
        }

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> MemoryFact:
        d = dict(row)
        return MemoryFact(
            id=int(d["id"]),
            guild_id=d["guild_id"],
            channel_id=d.get("channel_id"),
            subject=d["subject"],
            fact=d["fact"],
            fact_type=d.get("fact_type") or "other",
            evidence_text=d.get("evidence_text"),
            source_message_id=d.get("source_message_id"),
            confidence=d.get("confidence"),
            created_at=parse_iso(d.get("created_at")),
            updated_at=parse_iso(d.get("updated_at")),
        )
