"""Layered POS resolution: grammar, dictionary, statistical tagger, LLM.

Layers run in that order and the first one that resolves a token wins, so
every annotated token carries exactly one ``pos_source``. Multi-word
expressions are matched before any per-token work and leave the resolver as
a single token spanning their words.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from tenacity import Retrying, stop_after_attempt, wait_exponential

from semantic_annotator.cache import PosCache, context_hash
from semantic_annotator.grammar import (
    DEFAULT_MWES,
    MultiWordExpression,
    MWEMatcher,
    infer_features,
    lemmatize,
    lookup_closed_class,
)
from semantic_annotator.lexicon import LexiconStore, normalize, parse_notation
from semantic_annotator.llm import LLMPosAnnotator
from semantic_annotator.models import (
    UNCLASSIFIED_POS,
    AnnotatedToken,
    PosSource,
    Token,
)
from semantic_annotator.tagger import Tagger

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+(?:[-']\w+)*")


def tokenize(text: str, window: int = 3) -> list[Token]:
    """Split ``text`` into word tokens carrying ``window`` words of context."""
    words = _WORD_RE.findall(text)
    return [
        Token(
            surface_form=word,
            left_context=" ".join(words[max(0, i - window):i]),
            right_context=" ".join(words[i + 1:i + 1 + window]),
            sentence_position=i,
        )
        for i, word in enumerate(words)
    ]


@dataclass(frozen=True, slots=True)
class POSResult:
    tokens: list[AnnotatedToken]
    unresolved_count: int
    layer_counts: dict[str, int] = field(default_factory=dict)


class POSResolver:
    """Annotates token sequences with POS and lemma.

    Only the grammar layer is mandatory; without a lexicon, tagger or LLM
    the corresponding layer is skipped.
    """

    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        *,
        lexicon: LexiconStore | None = None,
        tagger: Tagger | None = None,
        llm: LLMPosAnnotator | None = None,
        mwes: Iterable[MultiWordExpression] = DEFAULT_MWES,
        dictionary_confidence: float = 0.94,
        statistical_threshold: float = 0.90,
        llm_confidence: float = 0.88,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
    ) -> None:
        if lexicon is None and conn is not None:
            lexicon = LexiconStore(conn)
        self.lexicon = lexicon
        self.tagger = tagger
        self.llm = llm
        self.pos_cache = PosCache(conn) if conn is not None else None
        self.matcher = MWEMatcher(mwes)
        self.dictionary_confidence = dictionary_confidence
        self.statistical_threshold = statistical_threshold
        self.llm_confidence = llm_confidence
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def resolve(self, tokens: Sequence[Token]) -> POSResult:
        tokens = list(tokens)
        words = [normalize(t.surface_form) for t in tokens]
        # slot index -> annotation; a slot is the position of its first token
        slots: dict[int, AnnotatedToken] = {}
        covered: set[int] = set()

        for match in self.matcher.find(words):
            slots[match.start] = self._mwe_token(tokens, match.start, match.length,
                                                 match.expression)
            covered.update(range(match.start, match.start + match.length))

        pending = [i for i in range(len(tokens)) if i not in covered]
        pending = self._layer(pending, slots, lambda i: self._grammar(tokens[i], words[i]))
        if pending and self.lexicon is not None:
            pending = self._layer(
                pending, slots, lambda i: self._dictionary(tokens[i], words[i]),
            )
        if pending and self.tagger is not None:
            pending = self._statistical(tokens, pending, slots)
        if pending:
            pending = self._llm_layer(tokens, words, pending, slots)

        for i in pending:
            slots[i] = AnnotatedToken(
                token=tokens[i],
                pos=UNCLASSIFIED_POS,
                pos_detail="unresolved",
                lemma=words[i],
                pos_confidence=0.0,
                pos_source=PosSource.LLM,
            )
        if pending:
            logger.warning("%d tokens left unclassified", len(pending))

        annotated = [slots[i] for i in sorted(slots)]
        counts = Counter(t.pos_source.value for t in annotated if not t.is_unclassified)
        counts["unclassified"] = len(pending)
        return POSResult(annotated, len(pending), dict(counts))

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    @staticmethod
    def _layer(pending, slots, resolve) -> list[int]:
        left = []
        for i in pending:
            result = resolve(i)
            if result is None:
                left.append(i)
            else:
                slots[i] = result
        return left

    @staticmethod
    def _mwe_token(
        tokens: Sequence[Token],
        start: int,
        length: int,
        expression: MultiWordExpression,
    ) -> AnnotatedToken:
        first, last = tokens[start], tokens[start + length - 1]
        merged = Token(
            surface_form=" ".join(t.surface_form for t in tokens[start:start + length]),
            left_context=first.left_context,
            right_context=last.right_context,
            sentence_position=first.sentence_position,
        )
        return AnnotatedToken(
            token=merged,
            pos=expression.pos,
            pos_detail="MWE",
            lemma=expression.lemma or expression.phrase.lower(),
            pos_confidence=1.0,
            pos_source=PosSource.GRAMMAR,
            span=length,
        )

    @staticmethod
    def _grammar(token: Token, word: str) -> AnnotatedToken | None:
        if word and not any(c.isalnum() for c in word):
            return AnnotatedToken(token, "PUNCT", "punctuation", word, 1.0, PosSource.GRAMMAR)
        if word.isdigit():
            return AnnotatedToken(token, "NUM", "numeral", word, 1.0, PosSource.GRAMMAR)
        tag = lookup_closed_class(word)
        if tag is None:
            return None
        return AnnotatedToken(
            token=token,
            pos=tag.pos,
            pos_detail=tag.pos_detail,
            lemma=tag.lemma,
            pos_confidence=1.0,
            pos_source=PosSource.GRAMMAR,
            features=infer_features(word, tag.pos) or None,
        )

    def _dictionary(self, token: Token, word: str) -> AnnotatedToken | None:
        # the word itself first, then inflection-stripped candidate lemmas
        candidates = dict.fromkeys([
            word, lemmatize(word, "NOUN"), lemmatize(word, "VERB"),
        ])
        for form in candidates:
            for entry in self.lexicon.entries_for(form):
                pos = parse_notation(entry.pos_class)
                if pos is None:
                    continue
                return AnnotatedToken(
                    token=token,
                    pos=pos,
                    pos_detail=entry.pos_class,
                    lemma=entry.normalized_form,
                    pos_confidence=self.dictionary_confidence,
                    pos_source=PosSource.DICTIONARY,
                    features=infer_features(word, pos) or None,
                )
        return None

    def _statistical(
        self,
        tokens: list[Token],
        pending: list[int],
        slots: dict[int, AnnotatedToken],
    ) -> list[int]:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=30),
            reraise=True,
        )
        try:
            # the whole sequence is tagged so the model sees real context
            predictions = retrying(self.tagger.tag, tokens)
        except Exception as e:
            logger.warning("Statistical tagger unavailable, skipping layer: %s", e)
            return pending

        left = []
        for i in pending:
            prediction = predictions[i] if i < len(predictions) else None
            if (
                prediction is None
                or prediction.confidence < self.statistical_threshold
                or prediction.pos in ("X", UNCLASSIFIED_POS)
            ):
                left.append(i)
                continue
            slots[i] = AnnotatedToken(
                token=tokens[i],
                pos=prediction.pos,
                pos_detail=prediction.pos,
                lemma=prediction.lemma,
                pos_confidence=prediction.confidence,
                pos_source=PosSource.STATISTICAL_MODEL,
                features=prediction.features,
            )
        return left

    def _llm_layer(
        self,
        tokens: list[Token],
        words: list[str],
        pending: list[int],
        slots: dict[int, AnnotatedToken],
    ) -> list[int]:
        hashes = {i: context_hash(tokens[i].left_context, tokens[i].right_context)
                  for i in pending}
        remaining = []
        for i in pending:
            cached = self.pos_cache.get(words[i], hashes[i]) if self.pos_cache else None
            if cached is None:
                remaining.append(i)
                continue
            slots[i] = AnnotatedToken(
                token=tokens[i],
                pos=cached.pos,
                pos_detail=cached.pos_detail or cached.pos,
                lemma=cached.lemma,
                pos_confidence=cached.confidence,
                pos_source=PosSource.LLM,
                features=cached.features,
            )
        if not remaining or self.llm is None:
            return remaining

        # a token the model skips gets one more pass
        failed: list[int] = []
        for attempt in range(2):
            outcome = self.llm.annotate([tokens[i] for i in remaining])
            left = []
            for offset, i in enumerate(remaining):
                if offset in outcome.errors:
                    failed.append(i)
                    continue
                suggestion = outcome.suggestions.get(offset)
                if suggestion is None:
                    left.append(i)
                    continue
                slots[i] = AnnotatedToken(
                    token=tokens[i],
                    pos=suggestion.pos,
                    pos_detail=suggestion.pos,
                    lemma=suggestion.lemma,
                    pos_confidence=self.llm_confidence,
                    pos_source=PosSource.LLM,
                    features=suggestion.features,
                )
                if self.pos_cache is not None:
                    self.pos_cache.put(
                        words[i], hashes[i], suggestion.pos, suggestion.lemma,
                        self.llm_confidence, pos_detail=suggestion.pos,
                        features=suggestion.features,
                    )
            remaining = left
            if not remaining:
                break
            if attempt == 0:
                logger.info("Retrying %d tokens the model did not annotate", len(remaining))
        if failed:
            logger.error("LLM POS layer failed for %d tokens", len(failed))
        return sorted(failed + remaining)
