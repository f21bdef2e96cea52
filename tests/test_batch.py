"""Tests for the batch seeding module (parser, queues, orchestrator, worker)."""

import sqlite3

import pytest

from semantic_annotator.batch import (
    DEFAULT_PRIORITY_ORDER,
    BatchOrchestrator,
    CandidateQueue,
    CandidateSpec,
    ContinuationQueue,
    ContinuationWorker,
    load_job_request,
)
from semantic_annotator.batch.executor import _ChunkTaken
from semantic_annotator.exceptions import (
    EntityNotFoundError,
    JobStateError,
    ParseError,
    ValidationError,
)
from semantic_annotator.history import count_writes
from semantic_annotator.models import AnnotatedToken, JobStatus, PosSource, Token

WORDS = [f"termo{c}" for c in "abcdefghijklmno"]


class TickClock:
    """Advances by ``step`` every time it is read."""

    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


def age(conn, job_id):
    """Make a job look untouched since long ago."""
    with conn:
        conn.execute(
            "UPDATE batch_jobs SET updated_at = '2020-01-01T00:00:00.000' WHERE id = ?",
            (job_id,),
        )


def stall(conn, orchestrator, chunks_done=0):
    """A processing job whose invocation died after ``chunks_done`` chunks."""
    job = orchestrator._transition(orchestrator.start(), JobStatus.PROCESSING)
    for index in range(chunks_done):
        orchestrator._process_chunk(job, index)
    age(conn, job.id)
    return orchestrator.status(job.id)


@pytest.fixture
def orchestrator(conn, classifier):
    return BatchOrchestrator(conn, classifier, chunk_size=5)


@pytest.fixture
def queue(conn):
    return CandidateQueue(conn)


# =============================================================================
# Parser Tests
# =============================================================================

class TestJobRequestParser:
    """Test YAML job request parsing."""

    def test_defaults(self):
        request = load_job_request({})
        assert request.priority == DEFAULT_PRIORITY_ORDER
        assert request.chunk_size == 50
        assert request.budget_seconds is None
        assert request.candidates == []

    def test_yaml_string(self):
        request = load_job_request("""
priority: [gutenberg_noun, dialectal]
chunk_size: 20
budget_seconds: 30
default_source: gutenberg_verb
candidates:
  - word: chimarrão
    source: dialectal
    pos: NOUN
    frequency: 12
  - campear
""")
        assert request.priority == ["gutenberg_noun", "dialectal"]
        assert request.chunk_size == 20
        assert request.budget_seconds == 30.0
        assert request.candidates[0] == CandidateSpec("chimarrão", "dialectal", "NOUN", None, 12)
        assert request.candidates[1].source_tag == "gutenberg_verb"

    def test_file(self, tmp_path):
        path = tmp_path / "job.yaml"
        path.write_text("chunk_size: 10\ncandidates: [mate, erva]\n", encoding="utf-8")
        request = load_job_request(str(path))
        assert request.source_file == path
        assert [c.word for c in request.candidates] == ["mate", "erva"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_job_request(tmp_path / "nope.yaml")

    @pytest.mark.parametrize("data,message", [
        ({"priorty": ["general"]}, "Unknown fields: priorty"),
        ({"priority": []}, "non-empty list"),
        ({"priority": ["folk"]}, "Unknown source tag in 'priority': folk"),
        ({"priority": ["general", "general"]}, "twice"),
        ({"chunk_size": 0}, "positive integer"),
        ({"chunk_size": True}, "positive integer"),
        ({"budget_seconds": -1}, "positive number"),
        ({"default_source": "folk"}, "default_source"),
        ({"candidates": "mate"}, "must be a list"),
        ({"candidates": [{"source": "general"}]}, "Candidate #1: Missing required field 'word'"),
        ({"candidates": ["mate", {"word": "x", "source": "folk"}]}, "Candidate #2"),
        ({"candidates": [{"word": "x", "frequency": -2}]}, "non-negative"),
        ({"candidates": [3]}, "string or a mapping"),
    ])
    def test_invalid(self, data, message):
        with pytest.raises(ParseError, match=message):
            load_job_request(data)

    def test_empty_yaml(self):
        with pytest.raises(ParseError, match="Empty YAML content"):
            load_job_request("   ")

    def test_root_must_be_mapping(self):
        with pytest.raises(ParseError, match="mapping"):
            load_job_request("- mate\n- erva\n")

    def test_syntax_error_has_line(self):
        with pytest.raises(ParseError) as exc_info:
            load_job_request("priority: [general\nchunk_size: 3\n")
        assert exc_info.value.line is not None


# =============================================================================
# Candidate Queue Tests
# =============================================================================

class TestCandidateQueue:
    """Source-priority ordering of candidate words."""

    def test_add_is_idempotent(self, queue):
        assert queue.add("Mate", "general", frequency=3) is True
        assert queue.add("mate", "general", frequency=7) is False
        assert queue.add("mate", "general", frequency=1) is False
        assert len(queue) == 1
        assert queue.ordered()[0].frequency == 7

    def test_rejects_unknown_tag_and_empty_word(self, queue):
        with pytest.raises(ValidationError):
            queue.add("mate", "folk")
        with pytest.raises(ValidationError):
            queue.add("  ", "general")

    def test_default_order(self, queue):
        queue.add("termoa", "general", frequency=50)
        queue.add("potro", "gutenberg_noun", frequency=1)
        queue.add("bagual", "dialectal", frequency=2)
        queue.add("chimarrão", "dialectal", frequency=9)
        queue.add("laçar", "gutenberg_verb")
        assert [c.word for c in queue.ordered()] == [
            "chimarrão", "bagual", "potro", "laçar", "termoa",
        ]

    def test_custom_priority_then_remaining_defaults(self, queue):
        queue.add("termoa", "general")
        queue.add("potro", "gutenberg_noun")
        queue.add("chimarrão", "dialectal")
        queue.add("gaudério", "gutenberg_adj")
        order = [c.word for c in queue.ordered(["gutenberg_noun", "general"])]
        assert order == ["potro", "termoa", "chimarrão", "gaudério"]

    def test_word_dequeued_once_under_best_tag(self, queue):
        queue.add("pingo", "general", frequency=100)
        queue.add("pingo", "dialectal")
        ordered = queue.ordered()
        assert len(ordered) == 1
        assert ordered[0].source_tag == "dialectal"

    def test_extend_accepts_mappings(self, queue):
        added = queue.extend([
            {"word": "mate", "source": "dialectal"},
            CandidateSpec("erva", "gutenberg_noun"),
            {"word": "mate", "source_tag": "dialectal"},
        ])
        assert added == 2

    def test_seed_from_lexicon(self, queue, lexicon):
        assert queue.seed_from_lexicon(lexicon) == 3
        ordered = queue.ordered()
        assert [c.word for c in ordered] == ["chimarrão", "bagual", "coxilha"]
        assert all(c.source_tag == "dialectal" for c in ordered)

    def test_seed_from_tokens(self, queue):
        def annotated(surface, pos, lemma, span=1):
            return AnnotatedToken(Token(surface), pos, pos, lemma, 0.9,
                                  PosSource.DICTIONARY, span=span)

        added = queue.seed_from_tokens([
            annotated("cavalos", "NOUN", "cavalo"),
            annotated("cavalo", "NOUN", "cavalo"),
            annotated("galopava", "VERB", "galopar"),
            annotated("de", "ADP", "de"),
            annotated("mate amargo", "NOUN", "mate amargo", span=2),
            annotated("xyz", "UNCLASSIFIED", "xyz"),
            annotated("depressa", "ADV", "depressa"),
        ])
        assert added == 3
        ordered = queue.ordered()
        assert [(c.word, c.source_tag) for c in ordered] == [
            ("cavalo", "gutenberg_noun"),
            ("galopar", "gutenberg_verb"),
            ("depressa", "general"),
        ]
        assert ordered[0].frequency == 2


# =============================================================================
# Continuation Queue Tests
# =============================================================================

class TestContinuationQueue:
    @pytest.fixture
    def job_id(self, orchestrator):
        return orchestrator.start().id

    def test_enqueue_is_idempotent(self, conn, job_id):
        continuations = ContinuationQueue(conn)
        assert continuations.enqueue(job_id, 2) is True
        assert continuations.enqueue(job_id, 2) is False
        assert len(continuations.pending(job_id)) == 1

    def test_claim_oldest_first(self, conn, job_id):
        continuations = ContinuationQueue(conn)
        continuations.enqueue(job_id, 1)
        continuations.enqueue(job_id, 2)
        task = continuations.claim()
        assert task.chunk_index == 1
        assert task.state == "claimed"
        assert [t.chunk_index for t in continuations.pending()] == [2]

    def test_release_and_complete(self, conn, job_id):
        continuations = ContinuationQueue(conn)
        continuations.enqueue(job_id, 1)
        task = continuations.claim()
        continuations.release(task)
        assert continuations.claim().rowid == task.rowid
        continuations.complete(task)
        assert continuations.claim() is None

    def test_discard(self, conn, job_id):
        continuations = ContinuationQueue(conn)
        continuations.enqueue(job_id, 1)
        continuations.enqueue(job_id, 2)
        assert continuations.discard(job_id) == 2
        assert continuations.pending() == []

    def test_requeue_reopens_finished_task(self, conn, job_id):
        continuations = ContinuationQueue(conn)
        continuations.enqueue(job_id, 1)
        continuations.complete(continuations.claim())
        continuations.requeue(job_id, 1)
        continuations.requeue(job_id, 1)
        assert [t.chunk_index for t in continuations.pending(job_id)] == [1]


# =============================================================================
# Orchestrator Tests
# =============================================================================

class TestRun:
    """Jobs that run to completion in one invocation."""

    def test_completes_and_counts(self, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        orchestrator.candidates.add("chimarrão", "dialectal")
        orchestrator.candidates.add("plantação", "general")

        job = orchestrator.run()

        assert job.status is JobStatus.COMPLETED
        assert job.total_chunks == 4
        assert job.chunk_index == 4
        assert job.items_processed == 17
        assert job.items_classified == 17
        assert job.started_at is not None
        assert orchestrator.classifier.cache.count() == 17

    def test_thirteen_of_fifteen_recorded_as_failures(self, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS[:13]})
        orchestrator.candidates.extend({"word": w} for w in WORDS)

        job = orchestrator.run(chunk_size=15)

        assert job.status is JobStatus.COMPLETED
        assert job.items_processed == 15
        assert job.items_classified == 13
        report = orchestrator.report(job.id)
        assert [f.word for f in report.failures] == ["termon", "termoo"]
        assert report.failure_counts == {"llm_empty": 2}
        assert orchestrator.classifier.cache.count() == 13

    def test_rerun_makes_no_calls_and_no_writes(self, conn, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        orchestrator.run()
        calls = len(chat.calls)
        writes = count_writes(conn)

        job = orchestrator.run()

        assert job.status is JobStatus.COMPLETED
        assert job.items_classified == 15
        assert len(chat.calls) == calls
        assert count_writes(conn) == writes

    def test_priority_order_is_snapshotted(self, conn, orchestrator):
        orchestrator.candidates.add("termoa", "general", frequency=1)
        orchestrator.candidates.add("chimarrão", "dialectal")
        orchestrator.candidates.add("cavalo", "gutenberg_noun", frequency=5)
        orchestrator.candidates.add("potro", "gutenberg_noun", frequency=9)

        job = orchestrator.start(["gutenberg_noun"])
        orchestrator.candidates.add("bagual", "dialectal")

        rows = conn.execute(
            "SELECT word FROM job_items WHERE job_id = ? ORDER BY position", (job.id,)
        ).fetchall()
        assert [r["word"] for r in rows] == ["potro", "cavalo", "chimarrão", "termoa"]
        assert job.status is JobStatus.PENDING
        assert job.priority == ("gutenberg_noun",)
        assert orchestrator.resume(job.id).items_processed == 4

    def test_empty_queue_completes(self, orchestrator):
        job = orchestrator.run()
        assert job.status is JobStatus.COMPLETED
        assert job.total_chunks == 0

    def test_invalid_chunk_size(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.start(chunk_size=-1)

    def test_status_unknown_job(self, orchestrator):
        with pytest.raises(EntityNotFoundError):
            orchestrator.status("job-missing")

    def test_jobs(self, orchestrator):
        first = orchestrator.start()
        second = orchestrator.start()
        assert {j.id for j in orchestrator.jobs()} == {first.id, second.id}


class TestPauseAndResume:
    """Budget exhaustion, continuations and resumability."""

    def test_pause_then_worker_finishes(self, conn, classifier, chat):
        words = [f"palavra{c}" for c in "abcdefghijklmnopqrst"]
        chat.domains.update({w: ("AB", 0.9) for w in words})
        orchestrator = BatchOrchestrator(conn, classifier, chunk_size=2,
                                         budget_seconds=10, clock=TickClock())
        orchestrator.candidates.extend({"word": w} for w in words)

        job = orchestrator.run()

        assert job.status is JobStatus.PAUSED
        assert 0 < job.chunk_index < job.total_chunks
        pending = orchestrator.continuations.pending(job.id)
        assert [t.chunk_index for t in pending] == [job.chunk_index]

        handled = ContinuationWorker(orchestrator).run()

        final = orchestrator.status(job.id)
        assert handled[-1].status is JobStatus.COMPLETED
        assert final.status is JobStatus.COMPLETED
        assert final.chunk_index == final.total_chunks == 10
        assert final.items_processed == 20
        assert final.items_classified == 20
        # every chunk was sent to the model exactly once
        assert len(chat.calls) == 10
        assert orchestrator.continuations.pending() == []

    def test_every_invocation_makes_progress(self, conn, classifier, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator = BatchOrchestrator(conn, classifier, chunk_size=5,
                                         budget_seconds=0.5, clock=TickClock())
        orchestrator.candidates.extend({"word": w} for w in WORDS)

        job = orchestrator.run()
        assert job.status is JobStatus.PAUSED
        assert job.chunk_index == 1

    def test_stale_continuation_is_harmless(self, conn, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = orchestrator.run()
        orchestrator.continuations.enqueue(job.id, 1)

        handled = ContinuationWorker(orchestrator).run()

        assert [j.status for j in handled] == [JobStatus.COMPLETED]
        assert orchestrator.status(job.id).items_processed == 15

    def test_chunk_commits_at_most_once(self, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        stale = orchestrator.start()
        orchestrator.resume(stale.id)

        with pytest.raises(_ChunkTaken):
            orchestrator._process_chunk(stale, 0)
        assert orchestrator.status(stale.id).items_processed == 15

    def test_worker_releases_task_on_error(self, orchestrator, monkeypatch):
        job = orchestrator.start()
        orchestrator.continuations.enqueue(job.id, 0)

        def boom(job_id, chunk_index=None):
            raise RuntimeError("worker crashed")

        monkeypatch.setattr(orchestrator, "resume", boom)
        worker = ContinuationWorker(orchestrator)
        with pytest.raises(RuntimeError):
            worker.run_once()
        assert len(orchestrator.continuations.pending(job.id)) == 1

    def test_worker_with_empty_queue(self, orchestrator):
        assert ContinuationWorker(orchestrator).run() == []


class TestCancel:
    def test_cancel_running_job_stops_before_next_chunk(self, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = orchestrator.start()
        chat.on_call = lambda _: orchestrator.cancel(job.id)

        result = orchestrator.resume(job.id)

        assert result.status is JobStatus.CANCELLED
        assert result.chunk_index == 1
        assert result.items_processed == 5
        assert len(chat.calls) == 1

    def test_cancel_pending_job(self, orchestrator):
        job = orchestrator.start()
        assert orchestrator.cancel(job.id).status is JobStatus.CANCELLED

    def test_cancel_paused_job_discards_continuations(self, conn, classifier, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator = BatchOrchestrator(conn, classifier, chunk_size=5,
                                         budget_seconds=0.5, clock=TickClock())
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = orchestrator.run()
        assert job.status is JobStatus.PAUSED

        cancelled = orchestrator.cancel(job.id)

        assert cancelled.status is JobStatus.CANCELLED
        assert orchestrator.continuations.pending() == []
        assert ContinuationWorker(orchestrator).run() == []

    def test_cancel_finished_job_raises(self, orchestrator):
        job = orchestrator.run()
        with pytest.raises(JobStateError):
            orchestrator.cancel(job.id)

    def test_resume_terminal_job_is_noop(self, orchestrator):
        job = orchestrator.start()
        orchestrator.cancel(job.id)
        assert orchestrator.resume(job.id).status is JobStatus.CANCELLED

    def test_force_cancel_stalled_job(self, conn, orchestrator):
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator)
        orchestrator.continuations.enqueue(job.id, 0)

        cancelled = orchestrator.cancel(job.id, force=True)

        assert cancelled.status is JobStatus.CANCELLED
        assert orchestrator.continuations.pending() == []

    def test_force_cancel_stops_running_invocation(self, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = orchestrator.start()
        chat.on_call = lambda _: orchestrator.cancel(job.id, force=True)

        result = orchestrator.resume(job.id)

        assert result.status is JobStatus.CANCELLED
        assert result.items_processed == 0
        assert orchestrator.classifier.cache.count() == 0
        assert len(chat.calls) == 1


class TestStalledJobs:
    def test_recent_job_is_left_alone(self, orchestrator):
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        orchestrator._transition(orchestrator.start(), JobStatus.PROCESSING)
        assert orchestrator.recover_stalled(older_than_seconds=900) == []
        assert orchestrator.continuations.pending() == []

    def test_recovery_resumes_at_first_uncommitted_chunk(self, conn, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator, chunks_done=1)

        recovered = orchestrator.recover_stalled()

        assert [j.id for j in recovered] == [job.id]
        assert recovered[0].status is JobStatus.PROCESSING
        assert recovered[0].recovery_attempts == 1
        assert recovered[0].updated_at > job.updated_at
        assert [t.chunk_index for t in orchestrator.continuations.pending(job.id)] == [1]
        # a second sweep right away finds nothing
        assert orchestrator.recover_stalled() == []

        handled = ContinuationWorker(orchestrator).run()

        assert [j.status for j in handled] == [JobStatus.COMPLETED]
        final = orchestrator.status(job.id)
        assert final.items_processed == 15
        assert final.items_classified == 15
        assert len(chat.calls) == 3

    def test_claimed_continuation_is_requeued(self, conn, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator, chunks_done=1)
        orchestrator.continuations.enqueue(job.id, 1)
        assert orchestrator.continuations.claim().chunk_index == 1
        age(conn, job.id)

        orchestrator.recover_stalled()

        assert [t.chunk_index for t in orchestrator.continuations.pending(job.id)] == [1]

    def test_fails_after_max_attempts(self, conn, orchestrator):
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator)
        for attempt in (1, 2):
            assert orchestrator.recover_stalled(max_attempts=2)[0].recovery_attempts == attempt
            age(conn, job.id)

        failed = orchestrator.recover_stalled(max_attempts=2)

        assert failed[0].status is JobStatus.FAILED
        assert "Stalled at chunk 0 after 2 recovery attempts" in failed[0].last_error
        assert orchestrator.continuations.pending() == []

    def test_pending_cancellation_is_applied(self, conn, orchestrator):
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator)
        assert orchestrator.cancel(job.id).cancel_requested
        age(conn, job.id)

        cancelled = orchestrator.recover_stalled()

        assert cancelled[0].status is JobStatus.CANCELLED
        assert orchestrator.continuations.pending() == []

    def test_resume_stalled_job_directly(self, conn, orchestrator, chat):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        job = stall(conn, orchestrator, chunks_done=2)

        result = orchestrator.resume(job.id)

        assert result.status is JobStatus.COMPLETED
        assert result.items_processed == 15
        assert len(chat.calls) == 3


class TestPersistenceFailure:
    def test_failed_chunk_rolls_back_and_fails_job(self, orchestrator, chat, monkeypatch):
        chat.domains.update({w: ("AB", 0.9) for w in WORDS})
        orchestrator.candidates.extend({"word": w} for w in WORDS)
        classifier = orchestrator.classifier
        original = classifier.write_back
        calls = []

        def flaky(batch):
            calls.append(batch)
            if len(calls) == 2:
                raise sqlite3.OperationalError("disk I/O error")
            return original(batch)

        monkeypatch.setattr(classifier, "write_back", flaky)

        job = orchestrator.run()

        assert job.status is JobStatus.FAILED
        assert job.chunk_index == 1
        assert job.items_processed == 5
        assert "chunk 1" in job.last_error
        assert classifier.cache.count() == 5
        assert classifier.cache.known_words(WORDS) == set(WORDS[:5])
