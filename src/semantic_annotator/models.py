"""Domain model dataclasses and enums for semantic-annotator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from semantic_annotator.exceptions import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NOT_CLASSIFIED = "NC"
"""Domain code for a word that no layer could classify."""

NO_DOMAIN = "MG"
"""Domain code for closed-class function words (grammatical markers)."""

UNCLASSIFIED_POS = "UNCLASSIFIED"
"""Sentinel POS for tokens no layer could tag."""

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PartOfSpeech(str, Enum):
    """Canonical (Universal Dependencies) POS tags."""

    NOUN = "NOUN"
    PROPN = "PROPN"
    VERB = "VERB"
    AUX = "AUX"
    ADJ = "ADJ"
    ADV = "ADV"
    PRON = "PRON"
    DET = "DET"
    ADP = "ADP"
    CCONJ = "CCONJ"
    SCONJ = "SCONJ"
    NUM = "NUM"
    PART = "PART"
    INTJ = "INTJ"
    PUNCT = "PUNCT"
    MWE = "MWE"
    X = "X"
    UNCLASSIFIED = UNCLASSIFIED_POS


CLOSED_CLASS_POS = frozenset({"DET", "ADP", "CCONJ", "SCONJ", "PRON", "PART"})


class PosSource(str, Enum):
    """Layer of the POS resolver that produced an annotation."""

    GRAMMAR = "grammar"
    DICTIONARY = "dictionary"
    STATISTICAL_MODEL = "statistical_model"
    LLM = "llm"


class ClassificationSource(str, Enum):
    """Layer of the domain classifier that produced a record."""

    STOPWORD = "stopword"
    CACHE = "cache"
    SEMANTIC_LEXICON = "semantic_lexicon"
    MORPHOLOGICAL_RULE = "morphological_rule"
    DIALECTAL_LEXICON = "dialectal_lexicon"
    LLM = "llm"
    SYNONYM_PROPAGATION = "synonym_propagation"


class Provenance(str, Enum):
    """Origin of a lexicon entry, listed from highest to lowest priority."""

    REGIONAL = "regional"
    FORMAL_DICTIONARY = "formal_dictionary"
    RULE_DERIVED = "rule_derived"
    STATISTICAL = "statistical"

    @property
    def priority(self) -> int:
        """Lower number wins."""
        return PROVENANCE_PRIORITY[self]


PROVENANCE_PRIORITY: dict[Provenance, int] = {
    Provenance.REGIONAL: 0,
    Provenance.FORMAL_DICTIONARY: 1,
    Provenance.RULE_DERIVED: 2,
    Provenance.STATISTICAL: 3,
}


class SourceTag(str, Enum):
    """Candidate-word source tags, in seeding priority order."""

    DIALECTAL = "dialectal"
    GUTENBERG_NOUN = "gutenberg_noun"
    GUTENBERG_VERB = "gutenberg_verb"
    GUTENBERG_ADJ = "gutenberg_adj"
    GENERAL = "general"


DEFAULT_PRIORITY: tuple[SourceTag, ...] = tuple(SourceTag)


class JobStatus(str, Enum):
    """Lifecycle states of a batch job."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class EditOperation(str, Enum):
    """Type of mutation recorded in the edit history."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ValidationSeverity(str, Enum):
    """Severity level for validation results."""

    ERROR = "ERROR"
    WARNING = "WARNING"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Token:
    """A raw corpus token with its surrounding context."""

    surface_form: str
    left_context: str = ""
    right_context: str = ""
    sentence_position: int = 0


@dataclass(frozen=True, slots=True)
class AnnotatedToken:
    """A token with exactly one POS annotation.

    ``span`` is the number of corpus tokens covered; it is greater than one
    when a multi-word expression was annotated as a single unit.
    """

    token: Token
    pos: str
    pos_detail: str
    lemma: str
    pos_confidence: float
    pos_source: PosSource
    span: int = 1
    features: dict[str, str] | None = None

    @property
    def surface_form(self) -> str:
        return self.token.surface_form

    @property
    def sentence_position(self) -> int:
        return self.token.sentence_position

    @property
    def is_unclassified(self) -> bool:
        return self.pos == UNCLASSIFIED_POS


@dataclass(frozen=True, slots=True)
class LexiconEntry:
    """One source's view of a headword."""

    headword: str
    normalized_form: str
    pos_class: str | None
    domain_codes: tuple[str, ...]
    confidence: float
    provenance_source: Provenance
    frequency: int = 0
    definition: str | None = None

    @property
    def domain_code(self) -> str | None:
        """Primary domain code, or None for a POS-only entry."""
        return self.domain_codes[0] if self.domain_codes else None


@dataclass(frozen=True, slots=True)
class SynonymEdge:
    """Undirected synonymy relation, stored with ``word_a < word_b``."""

    word_a: str
    word_b: str
    source: str

    @classmethod
    def between(cls, first: str, second: str, source: str) -> SynonymEdge:
        a, b = sorted((first, second))
        return cls(word_a=a, word_b=b, source=source)


@dataclass(frozen=True, slots=True)
class TagsetNode:
    """A node of the hierarchical semantic taxonomy."""

    code: str
    parent_code: str | None
    depth: int
    name: str | None = None


@dataclass(frozen=True, slots=True)
class ClassificationRecord:
    """A domain assignment for a word, with provenance."""

    word: str
    domain_code: str
    confidence: float
    source: ClassificationSource
    justification: str = ""
    context_hash: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(
                f"Confidence out of range for {self.word!r}: {self.confidence}"
            )

    @property
    def is_classified(self) -> bool:
        return self.domain_code != NOT_CLASSIFIED


@dataclass(frozen=True, slots=True)
class BatchJob:
    """Persistent progress of a seeding job."""

    id: str
    status: JobStatus
    chunk_index: int
    total_chunks: int
    items_processed: int
    items_classified: int
    started_at: str | None
    updated_at: str | None
    chunk_size: int = 50
    priority: tuple[str, ...] = ()
    cancel_requested: bool = False
    last_error: str | None = None
    recovery_attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True, slots=True)
class EditRecord:
    """A single edit-history entry recording one cache or lexicon write."""

    id: int
    entity_type: str
    entity_id: str
    field_name: str | None
    operation: str
    old_value: str | None
    new_value: str | None
    timestamp: str


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """A single validation finding (error or warning)."""

    rule_id: str
    severity: str
    entity_type: str
    entity_id: str
    message: str
    details: dict[str, Any] | None


@dataclass(slots=True)
class LoadReport:
    """Counts from a bulk ingestion."""

    accepted: int = 0
    rejected: int = 0
    errors: list[ValidationResult] = field(default_factory=list)
