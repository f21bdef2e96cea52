"""
Persistent queues for the seeding orchestrator.

``CandidateQueue`` holds the words waiting to be seeded, tagged by where they
came from. ``ContinuationQueue`` holds the handoffs a job leaves behind when
it runs out of invocation budget.
"""
from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..exceptions import ValidationError
from ..lexicon import LexiconStore, normalize
from ..models import AnnotatedToken, CLOSED_CLASS_POS, Provenance, SourceTag
from .schema import (
    CandidateSpec,
    ContinuationTask,
    DEFAULT_PRIORITY_ORDER,
    POS_SOURCE_TAGS,
    VALID_SOURCE_TAGS,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Candidate Queue
# =============================================================================

class CandidateQueue:
    """Candidate words keyed by ``(word, source_tag)``."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def add(
        self,
        word: str,
        source_tag: str = SourceTag.GENERAL.value,
        pos: Optional[str] = None,
        lemma: Optional[str] = None,
        frequency: int = 0,
    ) -> bool:
        """Add one candidate; returns False if it was already queued.

        A repeated candidate keeps the larger frequency.

        Raises:
            ValidationError: If the word is empty or the tag unknown
        """
        spec = CandidateSpec(word, _tag_value(source_tag), pos, lemma, frequency)
        with self._conn:
            return self._insert(spec)

    def extend(self, candidates: Iterable[Union[CandidateSpec, Mapping[str, Any]]]) -> int:
        """Add many candidates in one transaction; returns how many were new."""
        added = 0
        with self._conn:
            for item in candidates:
                if not isinstance(item, CandidateSpec):
                    item = CandidateSpec(
                        word=item.get("word", ""),
                        source_tag=item.get("source_tag") or item.get("source") or "general",
                        pos=item.get("pos"),
                        lemma=item.get("lemma"),
                        frequency=int(item.get("frequency") or 0),
                    )
                item.source_tag = _tag_value(item.source_tag)
                added += self._insert(item)
        logger.info("Queued %d new candidates", added)
        return added

    def seed_from_lexicon(
        self,
        lexicon: LexiconStore,
        provenance: Provenance = Provenance.REGIONAL,
        source_tag: str = SourceTag.DIALECTAL.value,
    ) -> int:
        """Queue every headword of one lexicon provenance."""
        return self.extend(
            CandidateSpec(
                word=entry.normalized_form,
                source_tag=source_tag,
                pos=entry.pos_class,
                lemma=entry.normalized_form,
                frequency=entry.frequency,
            )
            for entry in lexicon.iter_entries(provenance)
        )

    def seed_from_tokens(self, tokens: Iterable[AnnotatedToken]) -> int:
        """Queue open-class corpus words, tagged by POS and counted by lemma."""
        counts: Counter = Counter()
        pos_of: Dict[str, str] = {}
        for token in tokens:
            if token.is_unclassified or token.pos in CLOSED_CLASS_POS or token.span > 1:
                continue
            if token.pos == "PUNCT" or token.pos == "NUM":
                continue
            lemma = normalize(token.lemma)
            counts[lemma] += 1
            pos_of.setdefault(lemma, token.pos)
        return self.extend(
            CandidateSpec(
                word=lemma,
                source_tag=POS_SOURCE_TAGS.get(pos_of[lemma], SourceTag.GENERAL.value),
                pos=pos_of[lemma],
                lemma=lemma,
                frequency=count,
            )
            for lemma, count in counts.items()
        )

    def ordered(self, priority: Optional[Sequence[str]] = None) -> List[CandidateSpec]:
        """Candidates in dequeue order.

        Tags listed in ``priority`` come first, in that order, followed by any
        other tags in default order. Within a tag, more frequent words come
        first. A word queued under several tags is dequeued once, under its
        highest-priority tag.
        """
        order = [_tag_value(t) for t in (priority or DEFAULT_PRIORITY_ORDER)]
        order += [t for t in DEFAULT_PRIORITY_ORDER if t not in order]
        rank = {tag: i for i, tag in enumerate(order)}

        rows = self._conn.execute(
            "SELECT word, source_tag, pos, lemma, frequency FROM candidate_words"
        ).fetchall()
        rows.sort(key=lambda r: (rank[r["source_tag"]], -r["frequency"], r["word"]))

        seen = set()
        result = []
        for row in rows:
            if row["word"] in seen:
                continue
            seen.add(row["word"])
            result.append(CandidateSpec(
                word=row["word"],
                source_tag=row["source_tag"],
                pos=row["pos"],
                lemma=row["lemma"],
                frequency=row["frequency"],
            ))
        return result

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM candidate_words").fetchone()[0]

    def _insert(self, spec: CandidateSpec) -> bool:
        word = normalize(spec.word)
        if not word:
            raise ValidationError("Candidate word must not be empty")
        row = self._conn.execute(
            "SELECT frequency FROM candidate_words WHERE word = ? AND source_tag = ?",
            (word, spec.source_tag),
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO candidate_words (word, source_tag, pos, lemma, frequency) "
                "VALUES (?, ?, ?, ?, ?)",
                (word, spec.source_tag, spec.pos, spec.lemma, spec.frequency),
            )
            return True
        if spec.frequency > row["frequency"]:
            self._conn.execute(
                "UPDATE candidate_words SET frequency = ? WHERE word = ? AND source_tag = ?",
                (spec.frequency, word, spec.source_tag),
            )
        return False


def _tag_value(tag: Union[str, SourceTag]) -> str:
    value = tag.value if isinstance(tag, SourceTag) else str(tag)
    if value not in VALID_SOURCE_TAGS:
        raise ValidationError(f"Unknown source tag: {value}")
    return value


# =============================================================================
# Continuation Queue
# =============================================================================

class ContinuationQueue:
    """Handoff records ``(job_id, chunk_index)``; at most one per pair."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def enqueue(self, job_id: str, chunk_index: int) -> bool:
        """Queue a continuation; a duplicate request is a no-op."""
        with self._conn:
            cur = self._conn.execute(
                "INSERT INTO continuation_tasks (job_id, chunk_index) VALUES (?, ?) "
                "ON CONFLICT (job_id, chunk_index) DO NOTHING",
                (job_id, chunk_index),
            )
        return cur.rowcount == 1

    def requeue(self, job_id: str, chunk_index: int) -> None:
        """Queue a continuation even if one for this chunk was already taken."""
        with self._conn:
            self._conn.execute(
                "INSERT INTO continuation_tasks (job_id, chunk_index) VALUES (?, ?) "
                "ON CONFLICT (job_id, chunk_index) DO UPDATE SET state = 'queued'",
                (job_id, chunk_index),
            )

    def claim(self) -> Optional[ContinuationTask]:
        """Take the oldest queued task, or None when the queue is empty."""
        with self._conn:
            row = self._conn.execute(
                "SELECT rowid, job_id, chunk_index FROM continuation_tasks "
                "WHERE state = 'queued' ORDER BY rowid LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            cur = self._conn.execute(
                "UPDATE continuation_tasks SET state = 'claimed' "
                "WHERE rowid = ? AND state = 'queued'",
                (row["rowid"],),
            )
            if cur.rowcount != 1:
                return None
        return ContinuationTask(row["rowid"], row["job_id"], row["chunk_index"], "claimed")

    def complete(self, task: ContinuationTask) -> None:
        self._set_state(task, "done")

    def release(self, task: ContinuationTask) -> None:
        """Put a claimed task back so another worker can pick it up."""
        self._set_state(task, "queued")

    def discard(self, job_id: str) -> int:
        """Mark every open task of a job done; returns how many were open."""
        with self._conn:
            cur = self._conn.execute(
                "UPDATE continuation_tasks SET state = 'done' "
                "WHERE job_id = ? AND state != 'done'",
                (job_id,),
            )
        return cur.rowcount

    def pending(self, job_id: Optional[str] = None) -> List[ContinuationTask]:
        sql = ("SELECT rowid, job_id, chunk_index, state FROM continuation_tasks "
               "WHERE state = 'queued'")
        params: tuple = ()
        if job_id is not None:
            sql += " AND job_id = ?"
            params = (job_id,)
        rows = self._conn.execute(sql + " ORDER BY rowid", params).fetchall()
        return [ContinuationTask(r["rowid"], r["job_id"], r["chunk_index"], r["state"])
                for r in rows]

    def _set_state(self, task: ContinuationTask, state: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE continuation_tasks SET state = ? WHERE rowid = ?",
                (state, task.rowid),
            )
        task.state = state
