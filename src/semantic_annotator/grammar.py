"""Hand-built Portuguese grammar tables and the multi-word expression matcher.

Everything here is static data plus pure functions; the POS resolver's
grammar layer is built on top of it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Irregular verbs
# ---------------------------------------------------------------------------

IRREGULAR_VERBS: dict[str, tuple[str, ...]] = {
    # Auxiliaries
    "ser": ("sou", "és", "é", "somos", "são", "fui", "foi", "foram", "era",
            "eram", "sendo", "sido", "serei"),
    "estar": ("estou", "está", "estão", "estive", "esteve", "estava",
              "estavam", "estando", "estado"),
    "ter": ("tenho", "tens", "tem", "temos", "têm", "tive", "teve", "tinha",
            "tinham", "tendo", "tido"),
    "haver": ("hei", "há", "hão", "houve", "havia", "havendo", "havido"),
    # Movement
    "ir": ("vou", "vai", "vamos", "vão", "ia", "iam", "indo", "ido"),
    "vir": ("venho", "vem", "vêm", "vim", "veio", "vinha", "vinham", "vindo"),
    "sair": ("saio", "sai", "saem", "saí", "saiu", "saindo", "saído"),
    "cair": ("caio", "cai", "caem", "caí", "caiu", "caindo", "caído"),
    "chegar": ("chego", "chega", "chegam", "cheguei", "chegou", "chegando",
               "chegado"),
    "voltar": ("volto", "volta", "voltam", "voltei", "voltou", "voltando",
               "voltado"),
    # Action
    "fazer": ("faço", "faz", "fazem", "fiz", "fez", "fizeram", "fazia",
              "fazendo", "feito"),
    "dizer": ("digo", "diz", "dizem", "disse", "disseram", "dizia", "dizendo",
              "dito"),
    "trazer": ("trago", "traz", "trazem", "trouxe", "trouxeram", "trazia",
               "trazendo", "trazido"),
    "pôr": ("ponho", "põe", "põem", "pus", "pôs", "puseram", "punha", "pondo",
            "posto"),
    "manter": ("mantenho", "mantém", "mantêm", "mantive", "manteve",
               "mantendo", "mantido"),
    # Modals and perception
    "poder": ("posso", "pode", "podem", "pude", "pôde", "podia", "podiam",
              "podendo", "podido"),
    "dever": ("devo", "deve", "devem", "devia", "deviam", "devendo"),
    "querer": ("quero", "quer", "querem", "quis", "quiseram", "queria",
               "querendo", "querido"),
    "ver": ("vejo", "vê", "veem", "vi", "viu", "viram", "via", "viam",
            "vendo", "visto"),
    "dar": ("dou", "dá", "dão", "dei", "deu", "deram", "dava", "davam",
            "dando", "dado"),
    "saber": ("sei", "sabe", "sabem", "soube", "souberam", "sabia", "sabendo",
              "sabido"),
    "ouvir": ("ouço", "ouve", "ouvem", "ouvi", "ouviu", "ouvindo", "ouvido"),
    "sentir": ("sinto", "sente", "sentem", "senti", "sentiu", "sentindo",
               "sentido"),
    "perder": ("perco", "perde", "perdem", "perdi", "perdeu", "perdendo",
               "perdido"),
    "pedir": ("peço", "pede", "pedem", "pedi", "pediu", "pedindo", "pedido"),
    "dormir": ("durmo", "dorme", "dormem", "dormi", "dormiu", "dormindo",
               "dormido"),
    "morrer": ("morro", "morre", "morrem", "morri", "morreu", "morrendo",
               "morto"),
    # Regional verbs
    "campear": ("campeio", "campeia", "campeiam", "campeei", "campeou",
                "campeando", "campeado"),
    "laçar": ("laço", "laça", "laçam", "lacei", "laçou", "laçando", "laçado"),
    "tropear": ("tropeio", "tropeia", "tropeiam", "tropeei", "tropeou",
                "tropeando", "tropeado"),
    "cavalgar": ("cavalgo", "cavalga", "cavalgam", "cavalguei", "cavalgou",
                 "cavalgando", "cavalgado"),
}

AUXILIARY_VERBS = frozenset({
    "ser", "estar", "ter", "haver", "ir", "vir", "poder", "dever", "querer",
})

# First listing wins when two verbs share a form (``foi`` is ser before ir).
CONJUGATED_TO_INFINITIVE: dict[str, str] = {}
for _infinitive, _forms in IRREGULAR_VERBS.items():
    CONJUGATED_TO_INFINITIVE.setdefault(_infinitive, _infinitive)
    for _form in _forms:
        CONJUGATED_TO_INFINITIVE.setdefault(_form, _infinitive)
del _infinitive, _forms, _form

# ---------------------------------------------------------------------------
# Closed classes
# ---------------------------------------------------------------------------

DETERMINERS = frozenset({
    "o", "a", "os", "as", "um", "uma", "uns", "umas",
    # possessives and demonstratives behave as determiners
    "meu", "minha", "teu", "tua", "seu", "sua", "nosso", "nossa", "meus",
    "minhas", "seus", "suas", "este", "esta", "esse", "essa", "aquele",
    "aquela",
})
PRONOUNS = frozenset({
    "eu", "tu", "você", "ele", "ela", "nós", "eles", "elas",
    "me", "te", "lhe", "nos", "vos", "lhes",
    "isto", "isso", "aquilo",
    "algum", "alguma", "nenhum", "nenhuma", "outro", "outra", "alguém",
    "ninguém", "tudo", "nada",
    "quem", "qual", "cujo", "cuja", "onde",
})
PREPOSITIONS = frozenset({
    "de", "em", "para", "por", "com", "sem", "sobre", "até", "desde", "após",
    "ante", "contra", "entre", "perante", "sob",
    # contractions
    "do", "da", "dos", "das", "no", "na", "nos", "nas", "pelo", "pela",
    "ao", "à", "aos", "às", "num", "numa", "dum", "duma",
})
COORDINATING_CONJUNCTIONS = frozenset({
    "e", "ou", "mas", "porém", "contudo", "todavia", "entretanto", "nem",
})
SUBORDINATING_CONJUNCTIONS = frozenset({
    "que", "se", "porque", "quando", "como", "embora", "conquanto", "caso",
})
ADVERBS = frozenset({
    "não", "sim", "nunca", "sempre", "talvez", "aqui", "ali", "lá", "cá",
    "hoje", "ontem", "amanhã", "agora", "já", "ainda", "logo", "cedo",
    "tarde", "bem", "mal", "muito", "pouco", "mais", "menos", "bastante",
    "demais", "longe", "perto", "dentro", "fora", "acima", "abaixo",
})

STOPWORDS = (
    DETERMINERS | PRONOUNS | PREPOSITIONS | COORDINATING_CONJUNCTIONS
    | SUBORDINATING_CONJUNCTIONS
)
"""Function words with no semantic domain."""


@dataclass(frozen=True, slots=True)
class GrammarTag:
    """A deterministic POS assignment from the grammar tables."""

    pos: str
    pos_detail: str
    lemma: str


def lookup_closed_class(word: str) -> GrammarTag | None:
    """Tag a lower-cased word from the closed-class and irregular-verb tables.

    Table order settles overlaps: ``a`` is a determiner, ``que`` a
    subordinating conjunction, ``nos`` a preposition contraction.
    """
    if word in DETERMINERS:
        return GrammarTag("DET", "determiner", word)
    if word in PREPOSITIONS:
        return GrammarTag("ADP", "preposition", word)
    if word in SUBORDINATING_CONJUNCTIONS:
        return GrammarTag("SCONJ", "subordinating", word)
    if word in COORDINATING_CONJUNCTIONS:
        return GrammarTag("CCONJ", "coordinating", word)
    if word in PRONOUNS:
        return GrammarTag("PRON", "pronoun", word)
    if word in ADVERBS:
        return GrammarTag("ADV", "closed adverb", word)
    infinitive = CONJUGATED_TO_INFINITIVE.get(word)
    if infinitive is not None:
        if infinitive in AUXILIARY_VERBS:
            return GrammarTag("AUX", "auxiliary", infinitive)
        return GrammarTag("VERB", "irregular", infinitive)
    return None


# ---------------------------------------------------------------------------
# Lemmatization and features
# ---------------------------------------------------------------------------

_VERB_LEMMA_RULES: tuple[tuple[str, str], ...] = (
    ("ando", "ar"), ("endo", "er"), ("indo", "ir"),
    ("avam", "ar"), ("ado", "ar"), ("ido", "ir"), ("ava", "ar"),
    ("iam", "er"), ("ou", "ar"), ("eu", "er"), ("iu", "ir"),
)
_NOMINAL_LEMMA_RULES: tuple[tuple[str, str], ...] = (
    ("ões", "ão"), ("ães", "ão"), ("ãos", "ão"), ("ais", "al"),
    ("eis", "el"), ("óis", "ol"),
)


def lemmatize(word: str, pos: str) -> str:
    """Best-effort lemma for an open-class word."""
    if pos in ("VERB", "AUX"):
        lemma = CONJUGATED_TO_INFINITIVE.get(word)
        if lemma:
            return lemma
        for ending, replacement in _VERB_LEMMA_RULES:
            if word.endswith(ending) and len(word) > len(ending) + 1:
                return word[: -len(ending)] + replacement
        return word
    if pos in ("NOUN", "ADJ"):
        for ending, replacement in _NOMINAL_LEMMA_RULES:
            if word.endswith(ending):
                return word[: -len(ending)] + replacement
        if word.endswith("es") and len(word) > 4 and word[-3] in "rsz":
            return word[:-2]
        if word.endswith("s") and len(word) > 2:
            return word[:-1]
        return word
    if pos == "ADV" and word.endswith("mente") and len(word) > 6:
        base = word[:-5]
        return base[:-1] + "o" if base.endswith("a") else base
    return word


def infer_features(word: str, pos: str) -> dict[str, str]:
    """Universal Dependencies style features guessed from endings."""
    features: dict[str, str] = {}
    if pos in ("VERB", "AUX"):
        if re.search(r"(ando|endo|indo)$", word):
            features["VerbForm"] = "Ger"
        elif re.search(r"(ado|ido)$", word):
            features["VerbForm"] = "Part"
        elif re.search(r"(rei|rá|rão|remos)$", word):
            features["Tense"] = "Fut"
        elif re.search(r"(ei|ou|aram|eu|iu)$", word):
            features["Tense"] = "Past"
        elif re.search(r"(va|vam|ia|iam)$", word):
            features["Tense"] = "Imp"
        else:
            features["Tense"] = "Pres"
    elif pos in ("NOUN", "ADJ"):
        features["Number"] = "Plur" if word.endswith("s") else "Sing"
        if re.search(r"as?$", word):
            features["Gender"] = "Fem"
        elif re.search(r"os?$", word):
            features["Gender"] = "Masc"
    return features


# ---------------------------------------------------------------------------
# Multi-word expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class MultiWordExpression:
    """A fixed phrase annotated as one lexical unit."""

    phrase: str
    pos: str
    lemma: str | None = None

    @property
    def parts(self) -> tuple[str, ...]:
        return tuple(self.phrase.lower().split())


DEFAULT_MWES: tuple[MultiWordExpression, ...] = (
    MultiWordExpression("mate amargo", "NOUN"),
    MultiWordExpression("erva mate", "NOUN"),
    MultiWordExpression("bomba de chimarrão", "NOUN"),
    MultiWordExpression("cavalo crioulo", "NOUN"),
    MultiWordExpression("china velha", "NOUN"),
    MultiWordExpression("a gente", "PRON"),
    MultiWordExpression("de repente", "ADV"),
    MultiWordExpression("de vez em quando", "ADV"),
    MultiWordExpression("por isso", "ADV"),
    MultiWordExpression("à toa", "ADV"),
)


@dataclass(frozen=True, slots=True)
class MWEMatch:
    start: int
    length: int
    expression: MultiWordExpression


class MWEMatcher:
    """Finds multi-word expressions in a token stream.

    Patterns are stored in a trie keyed by token; the scan visits each start
    position once and keeps the longest pattern ending there, then resumes
    after the match. Overlapping shorter matches inside a longer one are
    never reported.
    """

    def __init__(self, expressions: Iterable[MultiWordExpression] = DEFAULT_MWES) -> None:
        self._root: dict = {}
        self._size = 0
        for expr in expressions:
            self.add(expr)

    def __len__(self) -> int:
        return self._size

    def add(self, expression: MultiWordExpression) -> None:
        parts = expression.parts
        if len(parts) < 2:
            raise ValueError(f"Not a multi-word expression: {expression.phrase!r}")
        node = self._root
        for part in parts:
            node = node.setdefault(part, {})
        if None not in node:
            self._size += 1
        node[None] = expression

    def find(self, words: Sequence[str]) -> list[MWEMatch]:
        """Non-overlapping leftmost-longest matches over lower-cased words."""
        matches: list[MWEMatch] = []
        i = 0
        n = len(words)
        while i < n:
            node = self._root
            best: MWEMatch | None = None
            j = i
            while j < n and words[j] in node:
                node = node[words[j]]
                j += 1
                if None in node:
                    best = MWEMatch(i, j - i, node[None])
            if best is not None:
                matches.append(best)
                i += best.length
            else:
                i += 1
        return matches
