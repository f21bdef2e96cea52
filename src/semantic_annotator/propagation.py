"""Synonym graph and domain propagation over it."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from collections.abc import Iterable
from itertools import combinations
from typing import Any

from semantic_annotator import history as _hist
from semantic_annotator.cache import ClassificationCache
from semantic_annotator.exceptions import EntityNotFoundError, ValidationError
from semantic_annotator.graph import weighted_bfs
from semantic_annotator.lexicon import normalize
from semantic_annotator.models import ClassificationRecord, ClassificationSource, SynonymEdge

logger = logging.getLogger(__name__)


class SynonymGraph:
    """Undirected synonym edges stored once per pair (``word_a < word_b``)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, word: str, synonym: str, source: str = "manual") -> bool:
        """Add one edge; returns False if it already existed."""
        a, b = normalize(word), normalize(synonym)
        if not a or not b:
            raise ValidationError("Synonym edge needs two non-empty words")
        if a == b:
            return False
        edge = SynonymEdge.between(a, b, source)
        cur = self._conn.execute(
            "INSERT INTO synonym_edges (word_a, word_b, source) VALUES (?, ?, ?) "
            "ON CONFLICT (word_a, word_b) DO NOTHING",
            (edge.word_a, edge.word_b, edge.source),
        )
        if cur.rowcount == 0:
            return False
        _hist.record_create(
            self._conn, "synonym_edge", f"{edge.word_a}|{edge.word_b}",
            {"source": edge.source},
        )
        return True

    def add_synonyms(self, word: str, synonyms: Iterable[str], source: str = "manual") -> int:
        """Link ``word`` to each synonym; returns the number of new edges."""
        with self._conn:
            return sum(self.add(word, s, source) for s in synonyms)

    def neighbors(self, word: str) -> list[str]:
        word = normalize(word)
        rows = self._conn.execute(
            "SELECT word_b FROM synonym_edges WHERE word_a = ? "
            "UNION SELECT word_a FROM synonym_edges WHERE word_b = ? "
            "ORDER BY 1",
            (word, word),
        ).fetchall()
        return [r[0] for r in rows]

    def edges(self) -> list[SynonymEdge]:
        rows = self._conn.execute(
            "SELECT word_a, word_b, source FROM synonym_edges ORDER BY word_a, word_b"
        ).fetchall()
        return [SynonymEdge(r["word_a"], r["word_b"], r["source"]) for r in rows]

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM synonym_edges").fetchone()[0]

    def import_wordnet_synonyms(
        self,
        lexicon: str = "own-pt",
        *,
        wordnet: Any = None,
        max_synset_size: int = 12,
    ) -> int:
        """Add an edge between every pair of lemmas sharing a WordNet synset.

        Args:
            lexicon: Lexicon specifier understood by ``wn.Wordnet``
            wordnet: Object with a ``synsets()`` method; built from
                ``lexicon`` when omitted
            max_synset_size: Synsets with more lemmas are skipped

        Returns:
            Number of new edges
        """
        if wordnet is None:
            import wn

            try:
                wordnet = wn.Wordnet(lexicon)
            except wn.Error as e:
                raise EntityNotFoundError(f"WordNet lexicon not available: {lexicon}") from e

        added = 0
        skipped = 0
        source = f"wordnet:{lexicon}"
        with self._conn:
            for synset in wordnet.synsets():
                lemmas = sorted({normalize(str(lemma)) for lemma in synset.lemmas()})
                if len(lemmas) > max_synset_size:
                    skipped += 1
                    continue
                for first, second in combinations(lemmas, 2):
                    added += self.add(first, second, source)
        logger.info("Imported %d synonym edges from %s (%d large synsets skipped)",
                    added, lexicon, skipped)
        return added


class PropagationEngine:
    """Forward propagation from a classified seed and reverse inheritance."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        graph: SynonymGraph | None = None,
        cache: ClassificationCache | None = None,
        forward_decay: float = 0.85,
        inherit_decay: float = 0.80,
        floor: float = 0.60,
    ) -> None:
        self._conn = conn
        self.graph = graph or SynonymGraph(conn)
        self.cache = cache or ClassificationCache(conn)
        self.forward_decay = forward_decay
        self.inherit_decay = inherit_decay
        self.floor = floor

    def propagate(
        self,
        seed_word: str,
        *,
        domain_code: str | None = None,
        confidence: float | None = None,
        persist: bool = True,
    ) -> list[ClassificationRecord]:
        """Spread the seed's domain to its synonyms, hop by hop.

        Words already holding a stronger record stop the walk along that
        branch. When ``domain_code`` is omitted the seed's stored record is
        used.

        Raises:
            EntityNotFoundError: If the seed has no stored classification
        """
        seed = normalize(seed_word)
        if domain_code is None:
            stored = self.cache.get(seed)
            if stored is None:
                raise EntityNotFoundError(f"No classification for {seed!r}")
            domain_code = stored.record.domain_code
            if confidence is None:
                confidence = stored.record.confidence
        if confidence is None:
            confidence = 1.0

        def accept(word: str, new_confidence: float) -> bool:
            existing = self.cache.get(word)
            return existing is None or existing.record.confidence <= new_confidence

        reached = weighted_bfs(
            seed, confidence, self.graph.neighbors,
            self.forward_decay, self.floor, accept,
        )
        records = [
            ClassificationRecord(
                word=r.node,
                domain_code=domain_code,
                confidence=round(r.confidence, 6),
                source=ClassificationSource.SYNONYM_PROPAGATION,
                justification=f"synonym of {r.parent!r} (hop {r.depth} from {seed!r})",
            )
            for r in reached
        ]
        if persist and records:
            with self._conn:
                written = sum(self.cache.put(rec, origin="propagation") for rec in records)
            logger.info("Propagated %s from %r to %d words (%d written)",
                        domain_code, seed, len(records), written)
        return records

    def propagate_all(self, min_confidence: float = 0.90) -> int:
        """Propagate from every stored word at or above ``min_confidence``."""
        seeds = [
            r[0] for r in self._conn.execute(
                "SELECT word FROM semantic_lexicon WHERE confidence >= ? "
                "ORDER BY confidence DESC, word",
                (min_confidence,),
            ).fetchall()
        ]
        return sum(len(self.propagate(seed)) for seed in seeds)

    def inherit(self, word: str, *, persist: bool = False) -> ClassificationRecord | None:
        """Domain for an unclassified word from its classified synonyms.

        The most common domain among classified neighbors wins; a tie goes
        to the domain held by the most confident neighbor.
        """
        word = normalize(word)
        votes: dict[str, int] = defaultdict(int)
        best: dict[str, tuple[float, str]] = {}
        for neighbor in self.graph.neighbors(word):
            hit = self.cache.get(neighbor)
            if hit is None:
                continue
            code = hit.record.domain_code
            votes[code] += 1
            if code not in best or hit.record.confidence > best[code][0]:
                best[code] = (hit.record.confidence, neighbor)
        if not votes:
            return None

        code = max(votes, key=lambda c: (votes[c], best[c][0]))
        confidence, source_word = best[code]
        record = ClassificationRecord(
            word=word,
            domain_code=code,
            confidence=round(confidence * self.inherit_decay, 6),
            source=ClassificationSource.SYNONYM_PROPAGATION,
            justification=(
                f"inherited from synonym {source_word!r} "
                f"({votes[code]} of {sum(votes.values())} classified neighbors)"
            ),
        )
        if persist:
            with self._conn:
                self.cache.put(record, origin="inheritance")
        return record
