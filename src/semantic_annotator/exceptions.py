"""Custom exception hierarchy for semantic-annotator."""


class AnnotatorError(Exception):
    """Base exception for all semantic-annotator errors."""


class ValidationError(AnnotatorError):
    """Invalid data (missing headword, confidence out of range, bad POS)."""


class DataIntegrityError(AnnotatorError):
    """Structural violation (tagset node below depth 1 without a parent)."""


class EntityNotFoundError(AnnotatorError):
    """Entity doesn't exist in the database."""


class DatabaseError(AnnotatorError):
    """Schema version mismatch, connection failure."""


class PersistenceError(AnnotatorError):
    """Results of a chunk could not be written."""


class ExternalServiceError(AnnotatorError):
    """LLM or tagger call failed after its retry."""


class JobStateError(AnnotatorError):
    """Illegal batch job state transition."""


class ParseError(AnnotatorError):
    """Error parsing a config, lexicon or job request file."""

    def __init__(self, message: str, line: int | None = None):
        self.line = line
        super().__init__(message)
