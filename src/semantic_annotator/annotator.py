"""Annotator: main entry point wiring the pipeline over one database."""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from semantic_annotator import db as _db
from semantic_annotator import history as _hist
from semantic_annotator.batch.executor import BatchOrchestrator
from semantic_annotator.batch.worker import ContinuationWorker
from semantic_annotator.classifier import ClassificationRequest, SemanticDomainClassifier
from semantic_annotator.config import PipelineConfig
from semantic_annotator.exceptions import ExternalServiceError
from semantic_annotator.grammar import STOPWORDS, lemmatize
from semantic_annotator.keyness import KeynessResult, compute_keyness, domain_frequencies
from semantic_annotator.lexicon import LexiconStore, normalize
from semantic_annotator.llm import ChatBackend, LLMDomainClassifier, LLMPosAnnotator, OpenAIChat
from semantic_annotator.models import (
    NO_DOMAIN,
    NOT_CLASSIFIED,
    AnnotatedToken,
    ClassificationRecord,
    EditRecord,
    ValidationResult,
)
from semantic_annotator.morphology import RuleEngine
from semantic_annotator.pos import POSResolver, POSResult, tokenize
from semantic_annotator.propagation import PropagationEngine, SynonymGraph
from semantic_annotator.tagger import Tagger
from semantic_annotator.tagset import SemanticTagset
from semantic_annotator.validator import validate_all

logger = logging.getLogger(__name__)

# POS values that never reach the domain classifier
_SKIP_POS = frozenset({"PUNCT", "NUM", "UNCLASSIFIED"})


class Annotator:
    """POS and semantic-domain annotation over one SQLite database.

    ``chat`` is the LLM backend; when omitted an OpenAI backend is built from
    the config if its API key is set, and the LLM layers are skipped
    otherwise.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        config: PipelineConfig | None = None,
        chat: ChatBackend | None = None,
        tagger: Tagger | None = None,
        clock: Any = None,
    ) -> None:
        self.config = config or PipelineConfig()
        path = self.config.db_path if db_path is None else db_path
        self._conn = _db.open_database(path)

        if chat is None:
            try:
                chat = OpenAIChat(
                    self.config.model,
                    api_base=self.config.api_base,
                    api_key_env=self.config.api_key_env,
                )
            except ExternalServiceError as e:
                logger.warning("LLM layers disabled: %s", e)
        llm_options = dict(
            batch_size=self.config.llm_batch_size,
            temperature=self.config.llm_temperature,
            retry_attempts=self.config.retry_attempts,
            retry_backoff=self.config.retry_backoff,
            low_yield_ratio=self.config.low_yield_ratio,
        )

        self.lexicon = LexiconStore(self._conn)
        self.tagset = SemanticTagset(self._conn)
        self.rules = RuleEngine()
        self.synonyms = SynonymGraph(self._conn)
        self.domain_llm = LLMDomainClassifier(chat, self._conn, **llm_options) if chat else None
        self.pos_llm = LLMPosAnnotator(chat, self._conn, **llm_options) if chat else None
        self.propagation = PropagationEngine(
            self._conn,
            graph=self.synonyms,
            forward_decay=self.config.forward_decay,
            inherit_decay=self.config.inherit_decay,
            floor=self.config.propagation_floor,
        )
        self.classifier = SemanticDomainClassifier(
            self._conn,
            lexicon=self.lexicon,
            rules=self.rules,
            llm=self.domain_llm,
            fallback=self.propagation.inherit,
            threshold=self.config.word_only_threshold,
            morph_confidence=self.config.morph_confidence,
        )
        self.pos = POSResolver(
            self._conn,
            lexicon=self.lexicon,
            tagger=tagger,
            llm=self.pos_llm,
            dictionary_confidence=self.config.dictionary_confidence,
            statistical_threshold=self.config.statistical_threshold,
            llm_confidence=self.config.llm_pos_confidence,
            retry_attempts=self.config.retry_attempts,
            retry_backoff=self.config.retry_backoff,
        )
        orchestrator_options: dict[str, Any] = {}
        if clock is not None:
            orchestrator_options["clock"] = clock
        self.orchestrator = BatchOrchestrator(
            self._conn,
            self.classifier,
            chunk_size=self.config.chunk_size,
            budget_seconds=self.config.budget_seconds,
            **orchestrator_options,
        )
        self.worker = ContinuationWorker(self.orchestrator)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Annotator:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Annotation
    # ------------------------------------------------------------------

    def annotate(self, text: str, window: int = 3) -> POSResult:
        """Tokenize ``text`` and resolve POS for every token."""
        return self.pos.resolve(tokenize(text, window))

    def classify_tokens(
        self,
        tokens: Iterable[AnnotatedToken],
        *,
        persist: bool = True,
    ) -> list[tuple[AnnotatedToken, ClassificationRecord]]:
        """Classify the open-class tokens of an annotated sequence in context."""
        selected = [t for t in tokens if t.pos not in _SKIP_POS]
        requests = [
            ClassificationRequest(
                word=t.surface_form,
                pos=t.pos,
                lemma=t.lemma,
                left_context=t.token.left_context,
                right_context=t.token.right_context,
            )
            for t in selected
        ]
        batch = self.classifier.classify_many(requests, persist=persist)
        return list(zip(selected, batch.records))

    def annotate_text(self, text: str) -> list[tuple[AnnotatedToken, ClassificationRecord]]:
        """POS resolution followed by domain classification."""
        return self.classify_tokens(self.annotate(text).tokens)

    def classify_domain(
        self,
        word: str,
        pos: str | None = None,
        lemma: str | None = None,
        context: tuple[str, str] | None = None,
    ) -> ClassificationRecord:
        return self.classifier.classify_domain(word, pos, lemma, context)

    # ------------------------------------------------------------------
    # Keyness
    # ------------------------------------------------------------------

    def domain_profile(self, text: str, level: int = 1) -> Counter[str]:
        """Domain counts of the stored classifications of ``text``'s words.

        Only the cache is read. Stopwords count as MG; an inflected form
        falls back to its noun or verb lemma; anything else without a stored
        record counts as NC.
        """
        pairs = [(t.surface_form, self._stored_domain(t.surface_form)) for t in tokenize(text)]
        return domain_frequencies(pairs, level)

    def _stored_domain(self, word: str) -> str:
        form = normalize(word)
        if form in STOPWORDS:
            return NO_DOMAIN
        for candidate in dict.fromkeys([form, lemmatize(form, "NOUN"), lemmatize(form, "VERB")]):
            hit = self.classifier.cache.get(candidate)
            if hit is not None:
                return hit.record.domain_code
        return NOT_CLASSIFIED

    def keyness(self, study_text: str, reference_text: str, level: int = 1) -> list[KeynessResult]:
        study = self.domain_profile(study_text, level)
        reference = self.domain_profile(reference_text, level)
        study.pop(NOT_CLASSIFIED, None)
        reference.pop(NOT_CLASSIFIED, None)
        return compute_keyness(study, reference)

    # ------------------------------------------------------------------
    # History and validation
    # ------------------------------------------------------------------

    def get_history(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: str | None = None,
        operation: str | None = None,
    ) -> list[EditRecord]:
        return _hist.query_history(
            self._conn,
            entity_type=entity_type,
            entity_id=entity_id,
            since=since,
            operation=operation,
        )

    def validate(self) -> list[ValidationResult]:
        return validate_all(self._conn)
