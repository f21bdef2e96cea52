"""
Executor for seeding jobs.

A job snapshots the candidate queue into fixed-size chunks and classifies
them one chunk at a time. Each chunk's results and the job's progress are
committed together, so a job interrupted at any point resumes at the first
uncommitted chunk. When the invocation budget cannot fit another chunk the
job pauses and leaves a continuation task behind.
"""
from __future__ import annotations

import json
import logging
import math
import sqlite3
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence

from ..classifier import ClassificationRequest, SemanticDomainClassifier
from ..db import get_job_row
from ..exceptions import EntityNotFoundError, JobStateError, PersistenceError
from ..models import BatchJob, JobStatus
from .queue import CandidateQueue, ContinuationQueue
from .schema import (
    ChunkResult,
    DEFAULT_BUDGET_SECONDS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_RECOVERIES,
    DEFAULT_STALLED_SECONDS,
    JobFailure,
    JobReport,
)

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"

# Legal transitions of the job state machine
_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.COMPLETED},
    JobStatus.PROCESSING: {
        JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
    },
    JobStatus.PAUSED: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


class _ChunkTaken(Exception):
    """Another invocation committed the chunk first."""


def _row_to_job(row: sqlite3.Row) -> BatchJob:
    return BatchJob(
        id=row["id"],
        status=JobStatus(row["status"]),
        chunk_index=row["chunk_index"],
        total_chunks=row["total_chunks"],
        items_processed=row["items_processed"],
        items_classified=row["items_classified"],
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        chunk_size=row["chunk_size"],
        priority=tuple(row["priority"] or ()),
        cancel_requested=bool(row["cancel_requested"]),
        last_error=row["last_error"],
        recovery_attempts=row["recovery_attempts"],
    )


class BatchOrchestrator:
    """Runs seeding jobs against a domain classifier."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        classifier: SemanticDomainClassifier,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._conn = conn
        self.classifier = classifier
        self.candidates = CandidateQueue(conn)
        self.continuations = ContinuationQueue(conn)
        self.chunk_size = chunk_size
        self.budget_seconds = budget_seconds
        self.clock = clock

    # =========================================================================
    # Job control
    # =========================================================================

    def run(
        self,
        candidate_source_priority: Optional[Sequence[str]] = None,
        chunk_size: Optional[int] = None,
    ) -> BatchJob:
        """Create a job and process it until it completes or pauses."""
        job = self.start(candidate_source_priority, chunk_size)
        return self.resume(job.id, 0)

    def start(
        self,
        priority_config: Optional[Sequence[str]] = None,
        chunk_size: Optional[int] = None,
    ) -> BatchJob:
        """Create a pending job over a snapshot of the candidate queue.

        Words queued after this call belong to later jobs.
        """
        size = chunk_size or self.chunk_size
        if size < 1:
            raise ValueError("chunk_size must be at least 1")
        items = self.candidates.ordered(priority_config)
        priority = [str(p) for p in (priority_config or ())]
        job_id = f"job-{uuid.uuid4().hex[:12]}"

        with self._conn:
            self._conn.execute(
                "INSERT INTO batch_jobs (id, status, chunk_index, total_chunks, "
                "chunk_size, priority) VALUES (?, ?, 0, ?, ?, ?)",
                (job_id, JobStatus.PENDING.value, math.ceil(len(items) / size),
                 size, json.dumps(priority)),
            )
            self._conn.executemany(
                "INSERT INTO job_items (job_id, position, word, source_tag, pos, lemma) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (job_id, i, item.word, item.source_tag, item.pos, item.lemma)
                    for i, item in enumerate(items)
                ],
            )
        logger.info("Created job %s: %d words in chunks of %d", job_id, len(items), size)
        return self.status(job_id)

    def resume(self, job_id: str, chunk_index: Optional[int] = None) -> BatchJob:
        """Process a job from its first uncommitted chunk.

        ``chunk_index`` is the chunk the caller expects to resume at; chunks
        already committed are never processed again, so a stale or repeated
        continuation is harmless.
        """
        job = self.status(job_id)
        if job.is_terminal:
            logger.info("Job %s is already %s", job_id, job.status.value)
            return job
        if chunk_index is not None and chunk_index < job.chunk_index:
            logger.info("Job %s: chunk %d already committed, resuming at %d",
                        job_id, chunk_index, job.chunk_index)

        if job.total_chunks == 0:
            return self._transition(job, JobStatus.COMPLETED)
        if job.status != JobStatus.PROCESSING:
            job = self._transition(job, JobStatus.PROCESSING)

        started = self.clock()
        slowest = 0.0
        done_here = 0
        index = job.chunk_index
        while index < job.total_chunks:
            job = self.status(job_id)
            if job.is_terminal:
                logger.info("Job %s became %s while running", job_id, job.status.value)
                return job
            if job.cancel_requested:
                return self._transition(job, JobStatus.CANCELLED)
            if job.chunk_index > index:
                index = job.chunk_index
                continue

            remaining = self.budget_seconds - (self.clock() - started)
            if done_here and slowest > remaining:
                self.continuations.enqueue(job_id, index)
                logger.info("Job %s paused before chunk %d (%.1fs left, chunks take %.1fs)",
                            job_id, index, remaining, slowest)
                return self._transition(job, JobStatus.PAUSED)

            try:
                result = self._process_chunk(job, index)
            except _ChunkTaken:
                logger.info("Job %s: chunk %d committed elsewhere", job_id, index)
                return self.status(job_id)
            except PersistenceError as e:
                logger.exception("Job %s failed at chunk %d", job_id, index)
                return self._transition(self.status(job_id), JobStatus.FAILED,
                                        last_error=str(e))
            slowest = max(slowest, result.duration_seconds)
            done_here += 1
            index += 1

        return self._transition(self.status(job_id), JobStatus.COMPLETED)

    def cancel(self, job_id: str, force: bool = False) -> BatchJob:
        """Cancel a job.

        A job that is not running is cancelled at once; a running job stops
        before its next chunk. ``force`` cancels a processing job at once,
        for when the process running it is gone.

        Raises:
            JobStateError: If the job already finished
        """
        job = self.status(job_id)
        if job.is_terminal:
            raise JobStateError(f"Job {job_id} is already {job.status.value}")
        if job.status == JobStatus.PROCESSING and not force:
            with self._conn:
                self._conn.execute(
                    f"UPDATE batch_jobs SET cancel_requested = 1, updated_at = {_NOW} "
                    "WHERE id = ?",
                    (job_id,),
                )
            logger.info("Cancellation requested for job %s", job_id)
            return self.status(job_id)
        self.continuations.discard(job_id)
        return self._transition(job, JobStatus.CANCELLED)

    def recover_stalled(
        self,
        older_than_seconds: float = DEFAULT_STALLED_SECONDS,
        max_attempts: int = DEFAULT_MAX_RECOVERIES,
    ) -> List[BatchJob]:
        """Hand stalled jobs back to the continuation queue.

        A job is stalled when it is processing but has not been updated for
        ``older_than_seconds``. Each recovery queues a continuation at its
        first uncommitted chunk. A job stalled more than ``max_attempts``
        times fails, and a stalled job with a cancellation request is
        cancelled.

        Returns:
            The recovered, failed and cancelled jobs
        """
        rows = self._conn.execute(
            "SELECT * FROM batch_jobs WHERE status = ? "
            "AND updated_at < strftime('%Y-%m-%dT%H:%M:%f', 'now', ?) "
            "ORDER BY updated_at",
            (JobStatus.PROCESSING.value, f"-{float(older_than_seconds)} seconds"),
        ).fetchall()

        handled: List[BatchJob] = []
        for row in rows:
            job = _row_to_job(row)
            if job.cancel_requested:
                logger.warning("Job %s stalled with a cancellation pending", job.id)
                self.continuations.discard(job.id)
                handled.append(self._transition(job, JobStatus.CANCELLED))
                continue
            if job.recovery_attempts >= max_attempts:
                logger.error("Job %s stalled at chunk %d after %d recoveries",
                             job.id, job.chunk_index, job.recovery_attempts)
                self.continuations.discard(job.id)
                handled.append(self._transition(
                    job, JobStatus.FAILED,
                    last_error=f"Stalled at chunk {job.chunk_index} "
                               f"after {job.recovery_attempts} recovery attempts",
                ))
                continue

            with self._conn:
                # a job that moved since it was read is not stalled
                cur = self._conn.execute(
                    "UPDATE batch_jobs SET recovery_attempts = recovery_attempts + 1, "
                    f"updated_at = {_NOW} "
                    "WHERE id = ? AND status = ? AND updated_at = ?",
                    (job.id, JobStatus.PROCESSING.value, job.updated_at),
                )
            if cur.rowcount != 1:
                continue
            self.continuations.requeue(job.id, job.chunk_index)
            logger.warning("Job %s stalled at chunk %d; queued recovery %d of %d",
                           job.id, job.chunk_index, job.recovery_attempts + 1, max_attempts)
            handled.append(self.status(job.id))
        return handled

    def status(self, job_id: str) -> BatchJob:
        """Current state of a job.

        Raises:
            EntityNotFoundError: If no job has this ID
        """
        row = get_job_row(self._conn, job_id)
        if row is None:
            raise EntityNotFoundError(f"Job not found: {job_id}")
        return _row_to_job(row)

    def report(self, job_id: str) -> JobReport:
        """Job state with its failures and open continuations."""
        job = self.status(job_id)
        rows = self._conn.execute(
            "SELECT word, chunk_index, reason, detail FROM job_failures "
            "WHERE job_id = ? ORDER BY chunk_index, word",
            (job_id,),
        ).fetchall()
        return JobReport(
            job=job,
            failures=[JobFailure(r["word"], r["chunk_index"], r["reason"], r["detail"])
                      for r in rows],
            queued_continuations=len(self.continuations.pending(job_id)),
        )

    def jobs(self) -> List[BatchJob]:
        rows = self._conn.execute(
            "SELECT * FROM batch_jobs ORDER BY started_at DESC, id"
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    # =========================================================================
    # Internals
    # =========================================================================

    def _transition(
        self,
        job: BatchJob,
        status: JobStatus,
        last_error: Optional[str] = None,
    ) -> BatchJob:
        if status not in _TRANSITIONS[job.status]:
            raise JobStateError(
                f"Job {job.id} cannot go from {job.status.value} to {status.value}"
            )
        sets = ["status = ?", f"updated_at = {_NOW}"]
        params: list = [status.value]
        if status == JobStatus.PROCESSING and job.started_at is None:
            sets.append(f"started_at = {_NOW}")
        if last_error is not None:
            sets.append("last_error = ?")
            params.append(last_error)
        with self._conn:
            self._conn.execute(
                f"UPDATE batch_jobs SET {', '.join(sets)} WHERE id = ?",
                (*params, job.id),
            )
        logger.info("Job %s: %s -> %s", job.id, job.status.value, status.value)
        return self.status(job.id)

    def _process_chunk(self, job: BatchJob, index: int) -> ChunkResult:
        t0 = self.clock()
        rows = self._conn.execute(
            "SELECT word, pos, lemma FROM job_items WHERE job_id = ? "
            "AND position >= ? AND position < ? ORDER BY position",
            (job.id, index * job.chunk_size, (index + 1) * job.chunk_size),
        ).fetchall()

        known = self.classifier.cache.known_words(r["word"] for r in rows)
        requests = [
            ClassificationRequest(word=r["word"], pos=r["pos"], lemma=r["lemma"])
            for r in rows
            if r["word"] not in known
        ]
        # external calls happen before the chunk transaction opens
        batch = self.classifier.classify_many(requests, persist=False)
        classified = len(known) + batch.classified

        try:
            with self._conn:
                self.classifier.write_back(batch)
                self._conn.executemany(
                    "INSERT INTO job_failures (job_id, word, chunk_index, reason, detail) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT (job_id, word) DO UPDATE SET "
                    "chunk_index = excluded.chunk_index, reason = excluded.reason, "
                    "detail = excluded.detail",
                    [
                        (job.id, word, index, reason, detail)
                        for word, (reason, detail) in batch.failures.items()
                    ],
                )
                cur = self._conn.execute(
                    "UPDATE batch_jobs SET chunk_index = ?, "
                    "items_processed = items_processed + ?, "
                    "items_classified = items_classified + ?, "
                    f"updated_at = {_NOW} "
                    "WHERE id = ? AND chunk_index = ? AND status = ?",
                    (index + 1, len(rows), classified, job.id, index,
                     JobStatus.PROCESSING.value),
                )
                if cur.rowcount != 1:
                    raise _ChunkTaken()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not commit chunk {index}: {e}") from e

        result = ChunkResult(
            chunk_index=index,
            processed=len(rows),
            classified=classified,
            skipped=len(known),
            failures=len(batch.failures),
            duration_seconds=self.clock() - t0,
        )
        logger.info(
            "Job %s chunk %d/%d: %d processed, %d classified, %d skipped, %d failed",
            job.id, index + 1, job.total_chunks, result.processed, result.classified,
            result.skipped, result.failures,
        )
        return result
