"""Statistical tagger adapters for the POS resolver's third layer."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from semantic_annotator.exceptions import ExternalServiceError
from semantic_annotator.models import Token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaggerPrediction:
    pos: str
    lemma: str
    confidence: float
    features: dict[str, str] | None = None


class Tagger(Protocol):
    """Tags a token sequence; ``None`` marks a token it has no opinion on."""

    def tag(self, tokens: Sequence[Token]) -> list[TaggerPrediction | None]: ...


class SpacyTagger:
    """Adapter over a spaCy pipeline (``pip install semantic-annotator[spacy]``).

    spaCy exposes no per-token probability, so confidence is fixed: 0.92 for
    a regular prediction, 0.85 when the model falls back to ``X`` or the word
    is out of vocabulary in a pipeline that has vectors.
    """

    def __init__(
        self,
        model: str = "pt_core_news_sm",
        *,
        confidence: float = 0.92,
        oov_confidence: float = 0.85,
    ) -> None:
        self.model = model
        self.confidence = confidence
        self.oov_confidence = oov_confidence
        self._nlp: Any = None

    def _load(self) -> Any:
        if self._nlp is None:
            try:
                import spacy
            except ImportError as e:
                raise ExternalServiceError(
                    "spaCy is not installed; install the 'spacy' extra"
                ) from e
            try:
                self._nlp = spacy.load(self.model, exclude=["ner"])
            except OSError as e:
                raise ExternalServiceError(f"spaCy model not available: {self.model}") from e
            logger.info("Loaded spaCy pipeline %s", self.model)
        return self._nlp

    def tag(self, tokens: Sequence[Token]) -> list[TaggerPrediction | None]:
        if not tokens:
            return []
        nlp = self._load()
        from spacy.tokens import Doc

        doc = Doc(nlp.vocab, words=[t.surface_form for t in tokens])
        try:
            for _, component in nlp.pipeline:
                doc = component(doc)
        except Exception as e:
            raise ExternalServiceError(f"spaCy tagging failed: {e}") from e

        has_vectors = bool(nlp.vocab.vectors.shape[0])
        predictions: list[TaggerPrediction | None] = []
        for tok in doc:
            if not tok.pos_:
                predictions.append(None)
                continue
            uncertain = tok.pos_ == "X" or (has_vectors and tok.is_oov)
            predictions.append(TaggerPrediction(
                pos=tok.pos_,
                lemma=(tok.lemma_ or tok.text).lower(),
                confidence=self.oov_confidence if uncertain else self.confidence,
                features=tok.morph.to_dict() or None,
            ))
        return predictions
