"""Deterministic affix rules that assign a domain and/or POS class to a word.

Rules are pure functions of the word; the engine does no I/O. Within each
affix kind, longer affixes are tried before shorter ones and the first match
wins, so ``-mente`` is never shadowed by ``-ente``.
"""

from __future__ import annotations

import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class AffixKind(str, Enum):
    SUFFIX = "suffix"
    PREFIX = "prefix"


@dataclass(frozen=True, slots=True)
class MorphRule:
    """One affix rule.

    ``min_stem`` is the number of characters that must remain once the
    affix is removed; it keeps ``ção`` or ``mente`` from matching alone.
    """

    affix: str
    kind: AffixKind
    domain_code: str | None = None
    pos_class: str | None = None
    confidence: float = 0.92
    min_stem: int = 3
    name: str = ""

    def __post_init__(self) -> None:
        if self.domain_code is None and self.pos_class is None:
            raise ValueError(f"Rule {self.affix!r} assigns neither domain nor POS")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Rule {self.affix!r} confidence out of range")

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"-{self.affix}" if self.kind is AffixKind.SUFFIX else f"{self.affix}-"

    def matches(self, word: str) -> bool:
        if len(word) - len(self.affix) < self.min_stem:
            return False
        if self.kind is AffixKind.SUFFIX:
            return word.endswith(self.affix)
        return word.startswith(self.affix)


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """Result of a successful rule application."""

    word: str
    rule: MorphRule
    domain_code: str | None
    pos_class: str | None
    confidence: float

    @property
    def justification(self) -> str:
        return f"morphological rule {self.rule.label}"


def _suffix(
    affix: str,
    domain: str | None = None,
    pos: str | None = None,
    confidence: float = 0.92,
    min_stem: int = 3,
) -> MorphRule:
    return MorphRule(affix, AffixKind.SUFFIX, domain, pos, confidence, min_stem)


def _prefix(
    affix: str,
    domain: str | None = None,
    pos: str | None = None,
    confidence: float = 0.92,
    min_stem: int = 4,
) -> MorphRule:
    return MorphRule(affix, AffixKind.PREFIX, domain, pos, confidence, min_stem)


DEFAULT_RULES: tuple[MorphRule, ...] = (
    # Adverbs of manner
    _suffix("mente", pos="ADV", confidence=0.95),
    # Action and process nouns
    _suffix("ção", domain="AC", pos="NOUN"),
    _suffix("ções", domain="AC", pos="NOUN"),
    _suffix("mento", domain="AC", pos="NOUN"),
    _suffix("mentos", domain="AC", pos="NOUN"),
    # Abstract qualities and doctrines
    _suffix("idade", domain="AB", pos="NOUN"),
    _suffix("dade", domain="AB", pos="NOUN", confidence=0.90),
    _suffix("eza", domain="AB", pos="NOUN", confidence=0.90),
    _suffix("ismo", domain="AB", pos="NOUN"),
    _suffix("ância", domain="AB", pos="NOUN", confidence=0.90),
    _suffix("ência", domain="AB", pos="NOUN", confidence=0.90),
    # Agents and trades
    _suffix("ista", domain="SP", pos="NOUN", confidence=0.90),
    _suffix("eiro", domain="AP", pos="NOUN", confidence=0.90, min_stem=4),
    _suffix("eira", domain="AP", pos="NOUN", confidence=0.90, min_stem=4),
    # Medical conditions
    _suffix("ite", domain="SB", pos="NOUN", confidence=0.90, min_stem=4),
    _suffix("ose", domain="SB", pos="NOUN", confidence=0.90, min_stem=4),
    # Fields of knowledge
    _suffix("logia", domain="CC", pos="NOUN", confidence=0.95),
    _suffix("grafia", domain="CC", pos="NOUN", confidence=0.95),
    # Qualifying adjectives
    _suffix("oso", domain="SE", pos="ADJ", confidence=0.90),
    _suffix("osa", domain="SE", pos="ADJ", confidence=0.90),
    _suffix("ável", pos="ADJ"),
    _suffix("ível", pos="ADJ"),
    # Non-finite verb forms
    _suffix("ando", pos="VERB", confidence=0.90),
    _suffix("endo", pos="VERB", confidence=0.90),
    _suffix("indo", pos="VERB", confidence=0.90),
    # Learned prefixes
    _prefix("hidro", domain="NA"),
    _prefix("bio", domain="CC", confidence=0.90),
    _prefix("psico", domain="SB"),
)


def _normalize(word: str) -> str:
    return unicodedata.normalize("NFC", word).strip().lower()


class RuleEngine:
    """Ordered affix rules; suffixes are tried before prefixes."""

    def __init__(self, rules: Iterable[MorphRule] = DEFAULT_RULES) -> None:
        rules = list(rules)
        suffixes = [r for r in rules if r.kind is AffixKind.SUFFIX]
        prefixes = [r for r in rules if r.kind is AffixKind.PREFIX]
        # sorted() is stable: declaration order breaks ties between equal lengths
        self._rules: tuple[MorphRule, ...] = tuple(
            sorted(suffixes, key=lambda r: -len(r.affix))
            + sorted(prefixes, key=lambda r: -len(r.affix))
        )

    @property
    def rules(self) -> tuple[MorphRule, ...]:
        return self._rules

    def classify(self, word: str, *, require_domain: bool = False) -> RuleMatch | None:
        """Return the first matching rule, or None.

        With ``require_domain``, rules that only assign a POS class are
        skipped.
        """
        form = _normalize(word)
        for rule in self._rules:
            if require_domain and rule.domain_code is None:
                continue
            if rule.matches(form):
                return RuleMatch(
                    word=form,
                    rule=rule,
                    domain_code=rule.domain_code,
                    pos_class=rule.pos_class,
                    confidence=rule.confidence,
                )
        return None

    def has_pattern(self, word: str) -> bool:
        """Cheap check used before routing a word to the rule engine."""
        return self.classify(word) is not None
