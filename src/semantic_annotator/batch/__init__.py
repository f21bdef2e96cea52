"""
Batch seeding module for semantic-annotator.

Seeding jobs take candidate words in source-priority order and classify them
chunk by chunk, committing each chunk with the job's progress. A job that
runs out of invocation budget pauses and leaves a continuation task that a
worker picks up later.

Example usage:
    from semantic_annotator.batch import BatchOrchestrator, ContinuationWorker

    orchestrator = BatchOrchestrator(conn, classifier, budget_seconds=50)
    orchestrator.candidates.add("chimarrão", "dialectal")
    job = orchestrator.run(["dialectal", "gutenberg_noun"], chunk_size=50)
    if job.status.value == "paused":
        ContinuationWorker(orchestrator).run()
"""

from .schema import (
    # Constants
    VALID_SOURCE_TAGS as VALID_SOURCE_TAGS,
    DEFAULT_PRIORITY_ORDER as DEFAULT_PRIORITY_ORDER,
    DEFAULT_CHUNK_SIZE as DEFAULT_CHUNK_SIZE,
    DEFAULT_BUDGET_SECONDS as DEFAULT_BUDGET_SECONDS,
    # Data classes
    CandidateSpec as CandidateSpec,
    JobRequest as JobRequest,
    ChunkResult as ChunkResult,
    ContinuationTask as ContinuationTask,
    JobFailure as JobFailure,
    JobReport as JobReport,
)

from .parser import (
    load_job_request as load_job_request,
    load_yaml_file as load_yaml_file,
)

from .queue import (
    CandidateQueue as CandidateQueue,
    ContinuationQueue as ContinuationQueue,
)

from .executor import (
    BatchOrchestrator as BatchOrchestrator,
)

from .worker import (
    ContinuationWorker as ContinuationWorker,
)

__all__ = [
    # Constants
    "VALID_SOURCE_TAGS",
    "DEFAULT_PRIORITY_ORDER",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_BUDGET_SECONDS",
    # Data classes
    "CandidateSpec",
    "JobRequest",
    "ChunkResult",
    "ContinuationTask",
    "JobFailure",
    "JobReport",
    # Functions
    "load_job_request",
    "load_yaml_file",
    # Classes
    "CandidateQueue",
    "ContinuationQueue",
    "BatchOrchestrator",
    "ContinuationWorker",
]
