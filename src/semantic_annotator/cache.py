"""Classification caches keyed by word and by word + context.

Writes are conditional upserts: a new record replaces the stored one only
when its confidence is at least the stored confidence, so a weaker signal
never overwrites a stronger one. NC is never stored.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

from semantic_annotator import history as _hist
from semantic_annotator.exceptions import ValidationError
from semantic_annotator.lexicon import normalize
from semantic_annotator.models import ClassificationRecord, ClassificationSource

logger = logging.getLogger(__name__)


def context_hash(left: str, right: str) -> str:
    """Stable 16-hex-digit key for a token's surrounding context."""
    text = f"{left.strip()}|{right.strip()}".lower()
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class CachedClassification:
    """A stored record plus the POS and lemma it was classified under."""

    record: ClassificationRecord
    lemma: str | None
    pos: str | None
    hits: int


def _row_to_cached(row: sqlite3.Row, context: str | None = None) -> CachedClassification:
    return CachedClassification(
        record=ClassificationRecord(
            word=row["word"],
            domain_code=row["domain_code"],
            confidence=row["confidence"],
            source=ClassificationSource(row["source"]),
            justification=row["justification"] or "",
            context_hash=context,
        ),
        lemma=row["lemma"],
        pos=row["pos"],
        hits=row["hits"],
    )


class ClassificationCache:
    """Access to ``semantic_lexicon`` and ``disambiguation_cache``."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Word-only records
    # ------------------------------------------------------------------

    def get(self, word: str) -> CachedClassification | None:
        row = self._conn.execute(
            "SELECT * FROM semantic_lexicon WHERE word = ?", (normalize(word),)
        ).fetchone()
        return _row_to_cached(row) if row is not None else None

    def touch(self, word: str, ctx_hash: str | None = None) -> None:
        """Count a cache hit; the caller owns the transaction."""
        if ctx_hash is None:
            self._conn.execute(
                "UPDATE semantic_lexicon SET hits = hits + 1 WHERE word = ?",
                (normalize(word),),
            )
        else:
            self._conn.execute(
                "UPDATE disambiguation_cache SET hits = hits + 1 "
                "WHERE word = ? AND context_hash = ?",
                (normalize(word), ctx_hash),
            )

    def put(
        self,
        record: ClassificationRecord,
        *,
        lemma: str | None = None,
        pos: str | None = None,
        origin: str | None = None,
    ) -> bool:
        """Conditionally upsert a word-only record.

        Returns:
            True if the stored record changed.
        """
        self._check(record)
        word = normalize(record.word)
        old = self._conn.execute(
            "SELECT * FROM semantic_lexicon WHERE word = ?", (word,)
        ).fetchone()
        if not self._should_write(old, record):
            return False
        self._conn.execute(
            "INSERT INTO semantic_lexicon "
            "(word, lemma, pos, domain_code, confidence, source, justification, origin) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (word) DO UPDATE SET "
            "lemma = COALESCE(excluded.lemma, lemma), pos = COALESCE(excluded.pos, pos), "
            "domain_code = excluded.domain_code, confidence = excluded.confidence, "
            "source = excluded.source, justification = excluded.justification, "
            "origin = COALESCE(excluded.origin, origin), "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') "
            "WHERE excluded.confidence >= semantic_lexicon.confidence",
            (
                word, lemma, pos, record.domain_code, record.confidence,
                record.source.value, record.justification, origin,
            ),
        )
        self._record_history("semantic_lexicon", word, old, record)
        return True

    def contains(self, word: str) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM semantic_lexicon WHERE word = ?", (normalize(word),)
        ).fetchone() is not None

    def known_words(self, words: Iterable[str]) -> set[str]:
        """The subset of ``words`` (normalized) already classified word-only."""
        forms = sorted({normalize(w) for w in words})
        found: set[str] = set()
        for i in range(0, len(forms), 500):
            part = forms[i:i + 500]
            marks = ",".join("?" * len(part))
            found.update(
                r[0] for r in self._conn.execute(
                    f"SELECT word FROM semantic_lexicon WHERE word IN ({marks})", part
                )
            )
        return found

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM semantic_lexicon").fetchone()[0]

    # ------------------------------------------------------------------
    # Word + context records
    # ------------------------------------------------------------------

    def get_in_context(self, word: str, ctx_hash: str) -> CachedClassification | None:
        row = self._conn.execute(
            "SELECT * FROM disambiguation_cache WHERE word = ? AND context_hash = ?",
            (normalize(word), ctx_hash),
        ).fetchone()
        return _row_to_cached(row, ctx_hash) if row is not None else None

    def put_in_context(
        self,
        record: ClassificationRecord,
        *,
        lemma: str | None = None,
        pos: str | None = None,
    ) -> bool:
        """Conditionally upsert a disambiguated record (needs ``context_hash``)."""
        self._check(record)
        if not record.context_hash:
            raise ValidationError(f"Record for {record.word!r} has no context hash")
        word = normalize(record.word)
        old = self._conn.execute(
            "SELECT * FROM disambiguation_cache WHERE word = ? AND context_hash = ?",
            (word, record.context_hash),
        ).fetchone()
        if not self._should_write(old, record):
            return False
        self._conn.execute(
            "INSERT INTO disambiguation_cache "
            "(word, context_hash, lemma, pos, domain_code, confidence, source, justification) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (word, context_hash) DO UPDATE SET "
            "lemma = excluded.lemma, pos = excluded.pos, "
            "domain_code = excluded.domain_code, confidence = excluded.confidence, "
            "source = excluded.source, justification = excluded.justification, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') "
            "WHERE excluded.confidence >= disambiguation_cache.confidence",
            (
                word, record.context_hash, lemma, pos, record.domain_code,
                record.confidence, record.source.value, record.justification,
            ),
        )
        self._record_history(
            "disambiguation_cache", f"{word}|{record.context_hash}", old, record,
        )
        return True

    # ------------------------------------------------------------------

    @staticmethod
    def _check(record: ClassificationRecord) -> None:
        if not record.is_classified:
            raise ValidationError(f"Refusing to store NC for {record.word!r}")

    @staticmethod
    def _should_write(old: sqlite3.Row | None, record: ClassificationRecord) -> bool:
        if old is None:
            return True
        if record.confidence < old["confidence"]:
            logger.debug(
                "Kept stored %s (%.2f) over %s (%.2f) for %r",
                old["domain_code"], old["confidence"],
                record.domain_code, record.confidence, record.word,
            )
            return False
        return (
            old["domain_code"] != record.domain_code
            or old["confidence"] != record.confidence
            or old["source"] != record.source.value
            or (old["justification"] or "") != record.justification
        )

    def _record_history(
        self,
        entity_type: str,
        entity_id: str,
        old: sqlite3.Row | None,
        record: ClassificationRecord,
    ) -> None:
        new_value = {
            "domain_code": record.domain_code,
            "confidence": record.confidence,
            "source": record.source.value,
        }
        if old is None:
            _hist.record_create(self._conn, entity_type, entity_id, new_value)
        else:
            _hist.record_update(
                self._conn, entity_type, entity_id, None,
                {
                    "domain_code": old["domain_code"],
                    "confidence": old["confidence"],
                    "source": old["source"],
                },
                new_value,
            )


@dataclass(frozen=True, slots=True)
class CachedPos:
    pos: str
    lemma: str
    pos_detail: str | None
    features: dict | None
    confidence: float


class PosCache:
    """LLM POS results keyed by word and context hash."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, word: str, ctx_hash: str) -> CachedPos | None:
        row = self._conn.execute(
            "SELECT * FROM pos_cache WHERE word = ? AND context_hash = ?",
            (normalize(word), ctx_hash),
        ).fetchone()
        if row is None:
            return None
        return CachedPos(
            pos=row["pos"],
            lemma=row["lemma"],
            pos_detail=row["pos_detail"],
            features=row["features"],
            confidence=row["confidence"],
        )

    def put(
        self,
        word: str,
        ctx_hash: str,
        pos: str,
        lemma: str,
        confidence: float,
        *,
        pos_detail: str | None = None,
        features: dict | None = None,
    ) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO pos_cache "
                "(word, context_hash, lemma, pos, pos_detail, features, confidence) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (word, context_hash) DO UPDATE SET "
                "lemma = excluded.lemma, pos = excluded.pos, "
                "pos_detail = excluded.pos_detail, features = excluded.features, "
                "confidence = excluded.confidence, "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')",
                (normalize(word), ctx_hash, lemma, pos, pos_detail, features or None, confidence),
            )

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM pos_cache").fetchone()[0]
