"""
Data classes and constants for the batch seeding system.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import DEFAULT_PRIORITY, SourceTag


# =============================================================================
# Source Tags
# =============================================================================

VALID_SOURCE_TAGS = {tag.value for tag in SourceTag}

DEFAULT_PRIORITY_ORDER: List[str] = [tag.value for tag in DEFAULT_PRIORITY]

# Open-class POS of corpus words mapped to their candidate source tag
POS_SOURCE_TAGS: Dict[str, str] = {
    "NOUN": SourceTag.GUTENBERG_NOUN.value,
    "VERB": SourceTag.GUTENBERG_VERB.value,
    "ADJ": SourceTag.GUTENBERG_ADJ.value,
}


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CHUNK_SIZE = 50
DEFAULT_BUDGET_SECONDS = 50.0
# A processing job with no progress for this long is considered stalled
DEFAULT_STALLED_SECONDS = 900.0
DEFAULT_MAX_RECOVERIES = 3


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CandidateSpec:
    """A word waiting to be classified by a seeding job."""
    word: str
    source_tag: str = SourceTag.GENERAL.value
    pos: Optional[str] = None
    lemma: Optional[str] = None
    frequency: int = 0


@dataclass
class JobRequest:
    """Parsed seeding job request from YAML."""
    priority: List[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_ORDER))
    chunk_size: int = DEFAULT_CHUNK_SIZE
    budget_seconds: Optional[float] = None
    candidates: List[CandidateSpec] = field(default_factory=list)
    source_file: Optional[Path] = None


@dataclass
class ChunkResult:
    """Result of committing one chunk."""
    chunk_index: int
    processed: int
    classified: int
    skipped: int
    failures: int
    duration_seconds: float


@dataclass
class ContinuationTask:
    """A queued request to resume a paused job at a chunk."""
    rowid: int
    job_id: str
    chunk_index: int
    state: str


@dataclass
class JobFailure:
    """A word a job left unclassified."""
    word: str
    chunk_index: int
    reason: str
    detail: Optional[str] = None


@dataclass
class JobReport:
    """Job progress plus its failures, for display."""
    job: Any  # BatchJob
    failures: List[JobFailure] = field(default_factory=list)
    queued_continuations: int = 0

    @property
    def failure_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for failure in self.failures:
            counts[failure.reason] = counts.get(failure.reason, 0) + 1
        return counts
