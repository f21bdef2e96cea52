"""Batched LLM calls for domain classification and POS annotation.

Both callers share one chat backend. Each batch is retried once with
exponential backoff; a batch that still fails is reported as an error for
every word it carried, which the callers keep separate from words the model
simply did not return.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from semantic_annotator.exceptions import ExternalServiceError
from semantic_annotator.models import NOT_CLASSIFIED, PartOfSpeech, Token

logging.getLogger("openai").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

DOMAIN_CODE_RE = re.compile(r"^[A-Z]{2}(\.[A-Z0-9]{2,3}){0,3}$")


# ---------------------------------------------------------------------------
# Chat backend
# ---------------------------------------------------------------------------

class ChatBackend(Protocol):
    """Anything that turns a system and user prompt into response text."""

    def complete(self, system_prompt: str, user_prompt: str, temperature: float) -> str: ...


class OpenAIChat:
    """Chat-completions backend using the ``openai`` client."""

    def __init__(
        self,
        model: str,
        *,
        api_base: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        timeout: float = 60.0,
        max_tokens: int = 2000,
    ) -> None:
        from openai import OpenAI

        api_key = os.getenv(api_key_env)
        if not api_key:
            raise ExternalServiceError(f"Environment variable {api_key_env} is not set")
        if api_base and not api_base.rstrip("/").endswith("/v1"):
            api_base = f"{api_base.rstrip('/')}/v1"
        self._client = OpenAI(base_url=api_base, api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def complete(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        completion = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=self.max_tokens,
        )
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""


def extract_json(text: str) -> Any:
    """Parse a JSON object out of model output.

    Markdown code fences and any prose around the outermost object are
    ignored.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        cleaned = match.group(0)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output is not valid JSON: {e}") from e


# ---------------------------------------------------------------------------
# Shared batching machinery
# ---------------------------------------------------------------------------

class _BatchCaller:
    purpose = "llm"

    def __init__(
        self,
        chat: ChatBackend,
        conn: sqlite3.Connection | None = None,
        *,
        batch_size: int = 15,
        temperature: float = 0.2,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        low_yield_ratio: float = 0.5,
    ) -> None:
        self._chat = chat
        self._conn = conn
        self.batch_size = batch_size
        self.temperature = temperature
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.low_yield_ratio = low_yield_ratio
        self.calls = 0

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s call failed (attempt %d/%d): %s",
            self.purpose, retry_state.attempt_number, self.retry_attempts, exc,
        )

    def _call(self, system_prompt: str, user_prompt: str) -> Any:
        """One logical call: the request plus its retries."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=30),
            before_sleep=self._log_retry,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self.calls += 1
                text = self._chat.complete(system_prompt, user_prompt, self.temperature)
                if not text.strip():
                    return {}
                return extract_json(text)
        raise AssertionError("unreachable")

    def _audit(
        self,
        submitted: int,
        returned: int,
        error: str | None,
        started: float,
    ) -> None:
        latency_ms = int((time.monotonic() - started) * 1000)
        if error is None and submitted and returned / submitted < self.low_yield_ratio:
            logger.warning(
                "Low yield from %s call: %d of %d words returned",
                self.purpose, returned, submitted,
            )
        if self._conn is None:
            return
        with self._conn:
            self._conn.execute(
                "INSERT INTO llm_calls (purpose, submitted, returned, error, latency_ms) "
                "VALUES (?, ?, ?, ?, ?)",
                (self.purpose, submitted, returned, error, latency_ms),
            )


def _batches(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Domain classification
# ---------------------------------------------------------------------------

DOMAIN_SYSTEM_PROMPT = """\
You are an expert in semantic-domain classification of Brazilian Portuguese,
including regional (gaucho) vocabulary. Assign each word the most specific
domain code you are confident of, using the codes below.

AB Abstractions | AC Actions and processes | AL Food and drink
AP Activities and social practices | CC Culture and knowledge
EL Structures and places | EQ States, qualities and measures
MG Grammatical markers | NA Nature and landscape | OA Objects and artefacts
SB Health and well-being | SE Feelings | SH The individual
SP Society and politics | NC Not classified (only if nothing applies)

Subdomains are dotted, e.g. NA.FA fauna, NA.FL flora, AP.ALI cooking,
AP.TRA.RUR rural work, CC.ART.MUS music, SE.TRI sadness and longing.

Return ONLY valid JSON:
{"classifications": [{"word": "cuia", "domain_code": "AP.ALI",
  "confidence": 0.9, "justification": "gourd used to drink mate"}]}"""


@dataclass(frozen=True, slots=True)
class WordRequest:
    """A word submitted for domain classification."""

    word: str
    lemma: str | None = None
    pos: str | None = None
    left_context: str = ""
    right_context: str = ""


@dataclass(frozen=True, slots=True)
class DomainSuggestion:
    word: str
    domain_code: str
    confidence: float
    justification: str = ""


@dataclass(slots=True)
class DomainOutcome:
    """Per-word outcome of a batched classification.

    ``missing`` holds words the model answered without (or answered with NC
    or an invalid code); ``errors`` maps words whose batch failed after its
    retry to the error text.
    """

    results: dict[str, DomainSuggestion] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def merge(self, other: DomainOutcome) -> None:
        self.results.update(other.results)
        self.missing.extend(other.missing)
        self.errors.update(other.errors)


def _format_word(index: int, req: WordRequest) -> str:
    line = f"{index}. {req.word}"
    if req.lemma and req.lemma != req.word:
        line += f" (lemma: {req.lemma})"
    if req.pos:
        line += f" [{req.pos}]"
    context = " ".join(p for p in (req.left_context, "___", req.right_context) if p)
    if req.left_context or req.right_context:
        line += f' context: "{context}"'
    return line


def _coerce_confidence(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(confidence, 0.0), 1.0)


class LLMDomainClassifier(_BatchCaller):
    """Classifies words into domain codes in batches."""

    purpose = "domain"

    def __init__(
        self,
        chat: ChatBackend,
        conn: sqlite3.Connection | None = None,
        *,
        default_confidence: float = 0.85,
        **kwargs: Any,
    ) -> None:
        super().__init__(chat, conn, **kwargs)
        self.default_confidence = default_confidence

    def classify(self, words: Sequence[WordRequest]) -> DomainOutcome:
        outcome = DomainOutcome()
        for batch in _batches(list(words), self.batch_size):
            outcome.merge(self._classify_batch(batch))
        return outcome

    def _classify_batch(self, batch: Sequence[WordRequest]) -> DomainOutcome:
        outcome = DomainOutcome()
        wanted = {req.word.lower(): req.word for req in batch}
        prompt = "Classify these words:\n" + "\n".join(
            _format_word(i, req) for i, req in enumerate(batch, start=1)
        )
        started = time.monotonic()
        try:
            payload = self._call(DOMAIN_SYSTEM_PROMPT, prompt)
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"
            logger.error("Domain classification call failed for %d words: %s",
                         len(batch), detail)
            self._audit(len(batch), 0, detail, started)
            outcome.errors = {req.word: detail for req in batch}
            return outcome

        items = payload.get("classifications", []) if isinstance(payload, dict) else []
        for item in items:
            if not isinstance(item, dict):
                continue
            word = str(item.get("word") or item.get("palavra") or "").strip()
            original = wanted.get(word.lower())
            if original is None or original in outcome.results:
                continue
            code = str(item.get("domain_code") or item.get("tagset_codigo") or "").strip()
            if code == NOT_CLASSIFIED or not DOMAIN_CODE_RE.match(code):
                continue
            outcome.results[original] = DomainSuggestion(
                word=original,
                domain_code=code,
                confidence=_coerce_confidence(
                    item.get("confidence", item.get("confianca")),
                    self.default_confidence,
                ),
                justification=str(item.get("justification") or ""),
            )

        outcome.missing = [req.word for req in batch if req.word not in outcome.results]
        self._audit(len(batch), len(outcome.results), None, started)
        if outcome.missing:
            logger.info("Model returned no domain for %d of %d words",
                        len(outcome.missing), len(batch))
        return outcome


# ---------------------------------------------------------------------------
# POS annotation
# ---------------------------------------------------------------------------

POS_SYSTEM_PROMPT = """\
You are an expert in morphosyntactic annotation of Brazilian Portuguese.
For every numbered word, use its context to return the Universal
Dependencies POS tag, the lemma and the morphological features.

Example input:
1. estava context: "eu ___ caminhando no campo"
2. aquerenciou context: "o verso ___ a saudade"
Example output:
{"tokens": [
  {"index": 1, "word": "estava", "lemma": "estar", "pos": "AUX",
   "features": {"Tense": "Imp", "Number": "Sing", "Person": "1"}},
  {"index": 2, "word": "aquerenciou", "lemma": "aquerenciar", "pos": "VERB",
   "features": {"Tense": "Past", "Number": "Sing", "Person": "3"}}
]}

Allowed tags: VERB AUX NOUN ADJ ADV PRON DET ADP CCONJ SCONJ NUM PART INTJ
PROPN PUNCT X. Return ONLY the JSON."""

_ALLOWED_POS = frozenset(
    p.value for p in PartOfSpeech
    if p not in (PartOfSpeech.MWE, PartOfSpeech.UNCLASSIFIED)
)


@dataclass(frozen=True, slots=True)
class PosSuggestion:
    pos: str
    lemma: str
    features: dict[str, str] | None = None


@dataclass(slots=True)
class PosOutcome:
    """Per-token outcome of a batched POS annotation.

    ``errors`` maps indices whose batch failed after its retry to the error
    text; tokens in neither mapping were skipped by the model.
    """

    suggestions: dict[int, PosSuggestion] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)


class LLMPosAnnotator(_BatchCaller):
    """Annotates tokens the local layers could not resolve."""

    purpose = "pos"

    def annotate(self, tokens: Sequence[Token]) -> PosOutcome:
        """Suggestions and failures keyed by index into ``tokens``.

        A batch that still fails after its retry only marks its own tokens
        as failed; the other batches keep their suggestions.
        """
        outcome = PosOutcome()
        for offset in range(0, len(tokens), self.batch_size):
            batch = tokens[offset:offset + self.batch_size]
            try:
                suggestions = self._annotate_batch(batch)
            except ExternalServiceError as e:
                logger.error("POS batch at offset %d (%d tokens) failed: %s",
                             offset, len(batch), e)
                for i in range(len(batch)):
                    outcome.errors[offset + i] = str(e)
                continue
            for i, suggestion in suggestions.items():
                outcome.suggestions[offset + i] = suggestion
        return outcome

    def _annotate_batch(self, batch: Sequence[Token]) -> dict[int, PosSuggestion]:
        lines = []
        for i, token in enumerate(batch, start=1):
            context = " ".join(
                p for p in (token.left_context, "___", token.right_context) if p
            )
            lines.append(f'{i}. {token.surface_form} context: "{context}"')
        started = time.monotonic()
        try:
            payload = self._call(POS_SYSTEM_PROMPT, "\n".join(lines))
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"
            self._audit(len(batch), 0, detail, started)
            raise ExternalServiceError(f"POS annotation failed: {detail}") from e

        result: dict[int, PosSuggestion] = {}
        items = payload.get("tokens", []) if isinstance(payload, dict) else []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                index = int(item.get("index")) - 1
            except (TypeError, ValueError):
                continue
            pos = str(item.get("pos") or "").upper()
            if not 0 <= index < len(batch) or pos not in _ALLOWED_POS:
                continue
            features = item.get("features")
            result[index] = PosSuggestion(
                pos=pos,
                lemma=str(item.get("lemma") or batch[index].surface_form.lower()),
                features=features if isinstance(features, dict) else None,
            )
        self._audit(len(batch), len(result), None, started)
        return result
