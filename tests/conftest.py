"""Shared test fixtures for semantic-annotator."""

import json
import re

import pytest

from semantic_annotator.classifier import SemanticDomainClassifier
from semantic_annotator.db import open_database
from semantic_annotator.lexicon import LexiconStore
from semantic_annotator.llm import LLMDomainClassifier, LLMPosAnnotator
from semantic_annotator.tagger import TaggerPrediction

_DOMAIN_LINE = re.compile(
    r'^\d+\. (.+?)(?: \(lemma: [^)]*\))?(?: \[[^\]]*\])?(?: context: ".*")?$'
)
_POS_LINE = re.compile(r'^(\d+)\. (.+?) context: ".*"$')


class FakeChat:
    """Scripted chat backend.

    ``domains`` maps a word to ``(code, confidence)``; ``pos`` maps a word to
    ``(tag, lemma)``. Words missing from the maps are left out of the reply.
    The next ``fail`` calls raise.
    """

    def __init__(self, domains=None, pos=None, fail=0, on_call=None):
        self.domains = dict(domains or {})
        self.pos = dict(pos or {})
        self.fail = fail
        self.on_call = on_call
        self.calls = []

    def complete(self, system_prompt, user_prompt, temperature):
        self.calls.append(user_prompt)
        if self.on_call is not None:
            self.on_call(self)
        if self.fail:
            self.fail -= 1
            raise RuntimeError("service unavailable")
        if user_prompt.startswith("Classify these words"):
            return self._domains(user_prompt)
        return self._tokens(user_prompt)

    def _domains(self, prompt):
        items = []
        for line in prompt.splitlines()[1:]:
            match = _DOMAIN_LINE.match(line)
            if match is None:
                continue
            word = match.group(1)
            if word in self.domains:
                code, confidence = self.domains[word]
                items.append({
                    "word": word,
                    "domain_code": code,
                    "confidence": confidence,
                    "justification": "scripted",
                })
        return "```json\n" + json.dumps({"classifications": items}) + "\n```"

    def _tokens(self, prompt):
        items = []
        for line in prompt.splitlines():
            match = _POS_LINE.match(line)
            if match is None:
                continue
            word = match.group(2).lower()
            if word in self.pos:
                tag, lemma = self.pos[word]
                items.append({"index": int(match.group(1)), "word": word,
                              "lemma": lemma, "pos": tag})
        return json.dumps({"tokens": items})

    @property
    def domain_calls(self):
        return [c for c in self.calls if c.startswith("Classify these words")]


class FakeTagger:
    """Statistical tagger returning fixed predictions by lower-cased word."""

    def __init__(self, predictions=None, fail=0):
        self.predictions = dict(predictions or {})
        self.fail = fail
        self.calls = 0

    def tag(self, tokens):
        self.calls += 1
        if self.fail:
            self.fail -= 1
            from semantic_annotator.exceptions import ExternalServiceError
            raise ExternalServiceError("tagger offline")
        result = []
        for token in tokens:
            hit = self.predictions.get(token.surface_form.lower())
            result.append(TaggerPrediction(*hit) if hit else None)
        return result


class FakeSynset:
    def __init__(self, *lemmas):
        self._lemmas = lemmas

    def lemmas(self):
        return list(self._lemmas)


class FakeWordnet:
    def __init__(self, *synsets):
        self._synsets = synsets

    def synsets(self):
        return list(self._synsets)


LEXICON_ENTRIES = [
    {"headword": "chimarrão", "pos_class": "s.m.", "domain_codes": ["AL"],
     "confidence": 1.0, "provenance": "regional", "frequency": 40},
    {"headword": "bagual", "pos_class": "adj.", "domain_codes": ["NA.FA"],
     "confidence": 0.95, "provenance": "regional", "frequency": 12},
    {"headword": "coxilha", "pos_class": "s.f. e adj.", "domain_codes": ["NA"],
     "confidence": 0.9, "provenance": "regional", "frequency": 7},
    {"headword": "cuia", "pos_class": "s.f.", "domain_codes": ["OA"],
     "confidence": 0.9, "provenance": "formal_dictionary"},
    {"headword": "tomar", "pos_class": "v.t.d.",
     "confidence": 0.9, "provenance": "formal_dictionary"},
]


@pytest.fixture
def conn():
    """In-memory database with the full schema."""
    connection = open_database(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def lexicon(conn):
    """Lexicon store seeded with a few regional and dictionary entries."""
    store = LexiconStore(conn)
    store.load(LEXICON_ENTRIES)
    return store


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def domain_llm(conn, chat):
    return LLMDomainClassifier(chat, conn, retry_backoff=0)


@pytest.fixture
def pos_llm(conn, chat):
    return LLMPosAnnotator(chat, conn, retry_backoff=0)


@pytest.fixture
def classifier(conn, lexicon, domain_llm):
    return SemanticDomainClassifier(conn, lexicon=lexicon, llm=domain_llm)
