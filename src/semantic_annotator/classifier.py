"""Semantic domain classifier: a fixed cascade from cheapest to costliest signal.

1. stopwords and closed-class POS
2. disambiguation cache (word + context)
3. semantic lexicon (word only)
4. morphological rules
5. dialectal lexicon
6. batched LLM call

The first level that produces a record wins. Results of levels 4-6 are
written back through the conditional upsert of :mod:`cache`; a miss at every
level yields an explicit NC record that is never stored.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from semantic_annotator.cache import CachedClassification, ClassificationCache, context_hash
from semantic_annotator.grammar import STOPWORDS
from semantic_annotator.lexicon import LexiconStore, normalize
from semantic_annotator.llm import LLMDomainClassifier, WordRequest
from semantic_annotator.models import (
    CLOSED_CLASS_POS,
    NO_DOMAIN,
    NOT_CLASSIFIED,
    ClassificationRecord,
    ClassificationSource,
    Provenance,
)
from semantic_annotator.morphology import RuleEngine

logger = logging.getLogger(__name__)

LLM_EMPTY = "llm_empty"
LLM_ERROR = "llm_error"


@dataclass(frozen=True, slots=True)
class ClassificationRequest:
    """A word to classify, with what the POS resolver knows about it."""

    word: str
    pos: str | None = None
    lemma: str | None = None
    left_context: str = ""
    right_context: str = ""

    @property
    def form(self) -> str:
        return normalize(self.word)

    @property
    def has_context(self) -> bool:
        return bool(self.left_context.strip() or self.right_context.strip())

    @property
    def context_hash(self) -> str | None:
        if not self.has_context:
            return None
        return context_hash(self.left_context, self.right_context)


class Strategy(Protocol):
    name: str

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None: ...


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class StopwordStrategy:
    name = "stopword"

    def __init__(self, stopwords: Iterable[str] = STOPWORDS) -> None:
        self._stopwords = frozenset(stopwords)

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None:
        if request.form in self._stopwords or (request.pos or "").upper() in CLOSED_CLASS_POS:
            return ClassificationRecord(
                word=request.form,
                domain_code=NO_DOMAIN,
                confidence=1.0,
                source=ClassificationSource.STOPWORD,
                justification="closed-class word",
            )
        return None


class DisambiguationCacheStrategy:
    """Consulted only for words whose word-only record is below threshold."""

    name = "cache"

    def __init__(self, cache: ClassificationCache, threshold: float) -> None:
        self._cache = cache
        self.threshold = threshold

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None:
        if not request.has_context:
            return None
        word_only = self._cache.get(request.form)
        if word_only is None or word_only.record.confidence >= self.threshold:
            return None
        hit = self._cache.get_in_context(request.form, request.context_hash)
        if hit is None:
            return None
        return _restamp(hit, ClassificationSource.CACHE, request.context_hash)


class SemanticLexiconStrategy:
    name = "semantic_lexicon"

    def __init__(self, cache: ClassificationCache, threshold: float) -> None:
        self._cache = cache
        self.threshold = threshold

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None:
        hit = self._cache.get(request.form)
        if hit is None:
            return None
        if hit.record.confidence >= self.threshold or not request.has_context:
            return _restamp(hit, ClassificationSource.SEMANTIC_LEXICON, None)
        return None


class MorphologyStrategy:
    name = "morphological_rule"

    def __init__(self, engine: RuleEngine, confidence: float | None = None) -> None:
        self._engine = engine
        self.confidence = confidence

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None:
        match = self._engine.classify(request.form, require_domain=True)
        if match is None:
            return None
        return ClassificationRecord(
            word=request.form,
            domain_code=match.domain_code,
            confidence=min(match.confidence, self.confidence or match.confidence),
            source=ClassificationSource.MORPHOLOGICAL_RULE,
            justification=match.justification,
        )


class DialectalLexiconStrategy:
    name = "dialectal_lexicon"

    def __init__(self, lexicon: LexiconStore) -> None:
        self._lexicon = lexicon

    def try_classify(self, request: ClassificationRequest) -> ClassificationRecord | None:
        for form in dict.fromkeys(f for f in (request.form, request.lemma) if f):
            entry = self._lexicon.lookup(form, request.pos, provenance=Provenance.REGIONAL)
            if entry is not None and entry.domain_code:
                return ClassificationRecord(
                    word=request.form,
                    domain_code=entry.domain_code,
                    confidence=entry.confidence,
                    source=ClassificationSource.DIALECTAL_LEXICON,
                    justification=f"regional lexicon entry {entry.headword!r}",
                )
        return None


def _restamp(
    hit: CachedClassification,
    source: ClassificationSource,
    ctx_hash: str | None,
) -> ClassificationRecord:
    stored = hit.record
    return ClassificationRecord(
        word=stored.word,
        domain_code=stored.domain_code,
        confidence=stored.confidence,
        source=source,
        justification=stored.justification or f"cached {stored.source.value} result",
        context_hash=ctx_hash,
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _Write:
    record: ClassificationRecord
    lemma: str | None
    pos: str | None
    in_context: bool


@dataclass(slots=True)
class ClassificationBatch:
    """Records aligned with the submitted requests, plus pending writes.

    ``failures`` maps each NC word to ``(reason, detail)`` where reason is
    ``llm_empty`` or ``llm_error``.
    """

    records: list[ClassificationRecord] = field(default_factory=list)
    failures: dict[str, tuple[str, str]] = field(default_factory=dict)
    writes: list[_Write] = field(default_factory=list)
    # cache records served, as (word, context_hash or None)
    hits: list[tuple[str, str | None]] = field(default_factory=list)

    @property
    def classified(self) -> int:
        return sum(1 for r in self.records if r.is_classified)


class SemanticDomainClassifier:
    """Runs the strategy cascade and the batched LLM fallback."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        lexicon: LexiconStore | None = None,
        rules: RuleEngine | None = None,
        llm: LLMDomainClassifier | None = None,
        fallback: Callable[[str], ClassificationRecord | None] | None = None,
        threshold: float = 0.90,
        morph_confidence: float = 0.92,
    ) -> None:
        self._conn = conn
        self.cache = ClassificationCache(conn)
        self.lexicon = lexicon or LexiconStore(conn)
        self.llm = llm
        self.fallback = fallback
        self.threshold = threshold
        self.strategies: list[Strategy] = [
            StopwordStrategy(),
            DisambiguationCacheStrategy(self.cache, threshold),
            SemanticLexiconStrategy(self.cache, threshold),
            MorphologyStrategy(rules or RuleEngine(), morph_confidence),
            DialectalLexiconStrategy(self.lexicon),
        ]
        self.stats: Counter[str] = Counter()

    def classify_domain(
        self,
        word: str,
        pos: str | None = None,
        lemma: str | None = None,
        context: tuple[str, str] | None = None,
    ) -> ClassificationRecord:
        """Classify one word and persist the result."""
        left, right = context or ("", "")
        request = ClassificationRequest(word, pos, lemma, left, right)
        return self.classify_many([request]).records[0]

    def classify_many(
        self,
        requests: Sequence[ClassificationRequest],
        *,
        persist: bool = True,
    ) -> ClassificationBatch:
        """Classify several words, sending the misses to the LLM together.

        With ``persist=False`` the caller is responsible for calling
        :meth:`write_back` inside its own transaction.
        """
        batch = ClassificationBatch()
        pending: dict[int, ClassificationRequest] = {}
        slots: list[ClassificationRecord | None] = []

        for i, request in enumerate(requests):
            record, level = self._local(request)
            slots.append(record)
            if record is None:
                pending[i] = request
                continue
            self.stats[level] += 1
            if level in (DisambiguationCacheStrategy.name, SemanticLexiconStrategy.name):
                batch.hits.append((request.form, record.context_hash))
            if level in (MorphologyStrategy.name, DialectalLexiconStrategy.name):
                batch.writes.append(self._write_for(request, record))

        if pending:
            self._resolve_remote(pending, slots, batch)

        batch.records = [r for r in slots if r is not None]
        if persist and (batch.writes or batch.hits):
            with self._conn:
                self.write_back(batch)
        return batch

    def write_back(self, batch: ClassificationBatch) -> int:
        """Apply the pending writes and hit counts of ``batch``.

        Returns:
            How many records changed.
        """
        changed = 0
        for write in batch.writes:
            if write.in_context:
                changed += self.cache.put_in_context(
                    write.record, lemma=write.lemma, pos=write.pos,
                )
            else:
                changed += self.cache.put(
                    write.record, lemma=write.lemma, pos=write.pos,
                    origin=write.record.source.value,
                )
        for word, ctx_hash in batch.hits:
            self.cache.touch(word, ctx_hash)
        return changed

    # ------------------------------------------------------------------

    def _local(
        self,
        request: ClassificationRequest,
    ) -> tuple[ClassificationRecord | None, str | None]:
        for strategy in self.strategies:
            record = strategy.try_classify(request)
            if record is not None:
                return record, strategy.name
        return None, None

    def _write_for(self, request: ClassificationRequest, record: ClassificationRecord) -> _Write:
        word_only = self.cache.get(request.form)
        in_context = (
            request.has_context
            and word_only is not None
            and word_only.record.confidence < self.threshold
        )
        if in_context:
            record = ClassificationRecord(
                word=record.word,
                domain_code=record.domain_code,
                confidence=record.confidence,
                source=record.source,
                justification=record.justification,
                context_hash=request.context_hash,
            )
        return _Write(record, request.lemma, request.pos, in_context)

    def _resolve_remote(
        self,
        pending: dict[int, ClassificationRequest],
        slots: list[ClassificationRecord | None],
        batch: ClassificationBatch,
    ) -> None:
        # one submission per distinct (word, context) pair
        unique: dict[tuple[str, str | None], ClassificationRequest] = {}
        for request in pending.values():
            unique.setdefault((request.form, request.context_hash), request)

        failures: dict[str, tuple[str, str]] = {}
        suggestions = {}
        if self.llm is None:
            for form, _ in unique:
                failures[form] = (LLM_EMPTY, "no LLM classifier configured")
        else:
            outcome = self.llm.classify([
                WordRequest(
                    word=r.form, lemma=r.lemma, pos=r.pos,
                    left_context=r.left_context, right_context=r.right_context,
                )
                for r in unique.values()
            ])
            suggestions = outcome.results
            for word in outcome.missing:
                failures[word] = (LLM_EMPTY, "model returned no usable domain")
            for word, detail in outcome.errors.items():
                failures[word] = (LLM_ERROR, detail)

        for i, request in pending.items():
            suggestion = suggestions.get(request.form)
            if suggestion is not None:
                record = ClassificationRecord(
                    word=request.form,
                    domain_code=suggestion.domain_code,
                    confidence=suggestion.confidence,
                    source=ClassificationSource.LLM,
                    justification=suggestion.justification,
                )
                self.stats[ClassificationSource.LLM.value] += 1
                slots[i] = record
                batch.writes.append(self._write_for(request, record))
                continue

            reason, detail = failures.get(request.form, (LLM_EMPTY, "no result"))
            inherited = self.fallback(request.form) if self.fallback else None
            if inherited is not None and inherited.is_classified:
                self.stats[ClassificationSource.SYNONYM_PROPAGATION.value] += 1
                slots[i] = inherited
                batch.writes.append(self._write_for(request, inherited))
                continue

            if reason == LLM_ERROR:
                logger.warning("Unclassified %r after LLM error: %s", request.form, detail)
            else:
                logger.info("Unclassified %r: %s", request.form, detail)
            self.stats[NOT_CLASSIFIED] += 1
            batch.failures[request.form] = (reason, detail)
            slots[i] = ClassificationRecord(
                word=request.form,
                domain_code=NOT_CLASSIFIED,
                confidence=0.0,
                source=ClassificationSource.LLM,
                justification=f"{reason}: {detail}",
                context_hash=request.context_hash,
            )
