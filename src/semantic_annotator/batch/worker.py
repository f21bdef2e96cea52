"""
Worker side of the continuation handoff.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from ..models import BatchJob
from .executor import BatchOrchestrator

logger = logging.getLogger(__name__)


class ContinuationWorker:
    """Claims queued continuation tasks and resumes their jobs."""

    def __init__(self, orchestrator: BatchOrchestrator):
        self.orchestrator = orchestrator
        self.queue = orchestrator.continuations

    def run_once(self) -> Optional[BatchJob]:
        """Resume the job of the oldest queued task; None if there is none."""
        task = self.queue.claim()
        if task is None:
            return None
        logger.info("Resuming job %s at chunk %d", task.job_id, task.chunk_index)
        try:
            job = self.orchestrator.resume(task.job_id, task.chunk_index)
        except Exception:
            self.queue.release(task)
            raise
        self.queue.complete(task)
        return job

    def run(self, max_tasks: Optional[int] = None) -> List[BatchJob]:
        """Drain the queue, including continuations enqueued along the way."""
        handled: List[BatchJob] = []
        while max_tasks is None or len(handled) < max_tasks:
            job = self.run_once()
            if job is None:
                break
            handled.append(job)
        return handled
