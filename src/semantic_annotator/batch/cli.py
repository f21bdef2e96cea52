"""
Command-line interface for the annotation pipeline.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from ..annotator import Annotator
from ..config import load_config
from ..exceptions import AnnotatorError, ParseError
from ..models import BatchJob, LoadReport
from ..tagger import SpacyTagger
from .parser import load_job_request
from .schema import DEFAULT_MAX_RECOVERIES, DEFAULT_STALLED_SECONDS, JobReport


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the semantic-annotator CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    _configure_logging(args.verbose, args.quiet)
    try:
        config = load_config(args.config)
    except ParseError as e:
        _print_parse_error(e)
        return 1

    tagger = SpacyTagger(args.spacy_model) if getattr(args, "spacy_model", None) else None
    try:
        with Annotator(args.db, config=config, tagger=tagger) as annotator:
            return args.func(annotator, args)
    except ParseError as e:
        _print_parse_error(e)
        return 1
    except (AnnotatorError, FileNotFoundError) as e:
        print(f"\n  [ERROR] {e}")
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="semantic-annotator",
        description="POS and semantic-domain annotation with lexicon seeding",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s (semantic-annotator)",
    )
    parser.add_argument("--db", type=Path, default=None,
                        help="SQLite database (default: db_path from config)")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")

    subparsers = parser.add_subparsers(title="commands", dest="command")

    # init command
    init_parser = subparsers.add_parser("init", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init)

    # load-lexicon command
    lexicon_parser = subparsers.add_parser(
        "load-lexicon",
        help="Load lexicon entries from a YAML/JSON file",
    )
    lexicon_parser.add_argument("file", type=Path, help="File holding a list of entries")
    lexicon_parser.set_defaults(func=cmd_load_lexicon)

    # load-tagset command
    tagset_parser = subparsers.add_parser(
        "load-tagset",
        help="Load semantic tagset nodes from a YAML/JSON file",
    )
    tagset_parser.add_argument("file", type=Path, help="File holding the tagset")
    tagset_parser.set_defaults(func=cmd_load_tagset)

    # add-candidates command
    candidates_parser = subparsers.add_parser(
        "add-candidates",
        help="Queue candidate words from a job request file",
    )
    candidates_parser.add_argument("file", type=Path, help="YAML job request")
    candidates_parser.add_argument(
        "--from-lexicon",
        action="store_true",
        help="Also queue every regional lexicon headword as dialectal",
    )
    candidates_parser.set_defaults(func=cmd_add_candidates)

    # import-synonyms command
    synonyms_parser = subparsers.add_parser(
        "import-synonyms",
        help="Import synonym edges from an installed WordNet",
    )
    synonyms_parser.add_argument("--lexicon", default="own-pt",
                                 help="wn lexicon specifier (default: own-pt)")
    synonyms_parser.add_argument("--max-synset-size", type=int, default=12)
    synonyms_parser.set_defaults(func=cmd_import_synonyms)

    # start command
    start_parser = subparsers.add_parser("start", help="Start a seeding job")
    start_parser.add_argument("--request", type=Path,
                              help="YAML job request (its candidates are queued first)")
    start_parser.add_argument("--priority", nargs="+", help="Source tag priority order")
    start_parser.add_argument("--chunk-size", type=int, help="Words per chunk")
    start_parser.add_argument("--no-run", action="store_true",
                              help="Create the job without processing it")
    start_parser.set_defaults(func=cmd_start)

    # status command
    status_parser = subparsers.add_parser("status", help="Show job progress")
    status_parser.add_argument("job_id", nargs="?", help="Job ID (default: all jobs)")
    status_parser.add_argument("--failures", action="store_true",
                               help="List unclassified words")
    status_parser.set_defaults(func=cmd_status)

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job ID")
    cancel_parser.add_argument("--force", action="store_true",
                               help="Cancel a processing job without waiting for it")
    cancel_parser.set_defaults(func=cmd_cancel)

    # resume command
    resume_parser = subparsers.add_parser("resume", help="Resume a paused or stalled job")
    resume_parser.add_argument("job_id", help="Job ID")
    resume_parser.set_defaults(func=cmd_resume)

    # recover command
    recover_parser = subparsers.add_parser(
        "recover", help="Queue continuations for stalled jobs"
    )
    recover_parser.add_argument("--older-than", type=float, default=DEFAULT_STALLED_SECONDS,
                                help="Seconds without progress before a job is stalled")
    recover_parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_RECOVERIES,
                                help="Recoveries before a stalled job fails")
    recover_parser.set_defaults(func=cmd_recover)

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Process queued continuations")
    worker_parser.add_argument("--max-tasks", type=int, help="Stop after this many tasks")
    worker_parser.set_defaults(func=cmd_worker)

    # classify command
    classify_parser = subparsers.add_parser("classify", help="Classify one word")
    classify_parser.add_argument("word")
    classify_parser.add_argument("--pos")
    classify_parser.add_argument("--lemma")
    classify_parser.add_argument("--left", default="", help="Left context")
    classify_parser.add_argument("--right", default="", help="Right context")
    classify_parser.set_defaults(func=cmd_classify)

    # annotate command
    annotate_parser = subparsers.add_parser("annotate", help="Annotate a text")
    annotate_parser.add_argument("text", help="Text, or @path to read a file")
    annotate_parser.add_argument("--domains", action="store_true",
                                 help="Also classify semantic domains")
    annotate_parser.add_argument("--spacy-model",
                                 help="spaCy pipeline for the statistical layer")
    annotate_parser.set_defaults(func=cmd_annotate)

    # propagate command
    propagate_parser = subparsers.add_parser(
        "propagate",
        help="Propagate a word's domain to its synonyms",
    )
    propagate_parser.add_argument("word", nargs="?", help="Seed word (default: all)")
    propagate_parser.add_argument("--domain", help="Domain code for the seed")
    propagate_parser.add_argument("--confidence", type=float, help="Seed confidence")
    propagate_parser.add_argument("--min-confidence", type=float, default=0.90,
                                  help="Seed threshold when propagating from all words")
    propagate_parser.set_defaults(func=cmd_propagate)

    # keyness command
    keyness_parser = subparsers.add_parser(
        "keyness",
        help="Domain keyness of a study text against a reference text",
    )
    keyness_parser.add_argument("study", type=Path)
    keyness_parser.add_argument("reference", type=Path)
    keyness_parser.add_argument("--level", type=int, default=1, help="Tagset level")
    keyness_parser.set_defaults(func=cmd_keyness)

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Check database integrity")
    validate_parser.set_defaults(func=cmd_validate)

    return parser


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# Commands
# =============================================================================

def cmd_init(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle init command."""
    print("Database ready.")
    return 0


def cmd_load_lexicon(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle load-lexicon command."""
    print(f"\nLoading {args.file}...")
    report = annotator.lexicon.load_file(args.file)
    _print_load_report(report)
    return 0 if report.accepted else 1


def cmd_load_tagset(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle load-tagset command."""
    print(f"\nLoading {args.file}...")
    report = annotator.tagset.load_file(args.file)
    _print_load_report(report)
    return 0 if report.accepted else 1


def cmd_add_candidates(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle add-candidates command."""
    request = load_job_request(args.file)
    queue = annotator.orchestrator.candidates
    added = queue.extend(request.candidates)
    if args.from_lexicon:
        added += queue.seed_from_lexicon(annotator.lexicon)
    print(f"Queued {added} new candidate(s); {len(queue)} in queue.")
    return 0


def cmd_import_synonyms(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle import-synonyms command."""
    added = annotator.synonyms.import_wordnet_synonyms(
        args.lexicon, max_synset_size=args.max_synset_size,
    )
    print(f"Imported {added} synonym edge(s); graph has {len(annotator.synonyms)}.")
    return 0


def cmd_start(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle start command."""
    orchestrator = annotator.orchestrator
    priority = args.priority
    chunk_size = args.chunk_size
    if args.request:
        request = load_job_request(args.request)
        orchestrator.candidates.extend(request.candidates)
        priority = priority or request.priority
        chunk_size = chunk_size or request.chunk_size
        if request.budget_seconds:
            orchestrator.budget_seconds = request.budget_seconds

    job = orchestrator.start(priority, chunk_size)
    if not args.no_run:
        job = orchestrator.resume(job.id, 0)
    _print_job(job)
    if job.status.value == "paused":
        print("\nRun 'semantic-annotator worker' to continue.")
    return 1 if job.status.value == "failed" else 0


def cmd_status(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle status command."""
    orchestrator = annotator.orchestrator
    if not args.job_id:
        jobs = orchestrator.jobs()
        if not jobs:
            print("No jobs found.")
            return 0
        print(f"{'ID':<18} {'Status':<11} {'Chunks':<10} {'Processed':<10} {'Classified'}")
        print("-" * 64)
        for job in jobs:
            chunks = f"{job.chunk_index}/{job.total_chunks}"
            print(f"{job.id:<18} {job.status.value:<11} {chunks:<10} "
                  f"{job.items_processed:<10} {job.items_classified}")
        return 0

    report = orchestrator.report(args.job_id)
    _print_job(report.job)
    _print_failures(report, detailed=args.failures)
    return 0


def cmd_cancel(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle cancel command."""
    job = annotator.orchestrator.cancel(args.job_id, force=args.force)
    if job.cancel_requested and not job.is_terminal:
        print(f"Cancellation requested; job {job.id} stops before its next chunk.")
    else:
        print(f"Job {job.id} cancelled.")
    return 0


def cmd_resume(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle resume command."""
    job = annotator.orchestrator.resume(args.job_id)
    _print_job(job)
    return 1 if job.status.value == "failed" else 0


def cmd_recover(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle recover command."""
    jobs = annotator.orchestrator.recover_stalled(args.older_than, args.max_attempts)
    if not jobs:
        print("No stalled jobs.")
        return 0
    for job in jobs:
        if job.status.value == "processing":
            print(f"Job {job.id}: queued for chunk {job.chunk_index} "
                  f"(recovery {job.recovery_attempts} of {args.max_attempts})")
        else:
            print(f"Job {job.id}: {job.status.value}")
    print("\nRun 'semantic-annotator worker' to continue.")
    return 1 if any(job.status.value == "failed" for job in jobs) else 0


def cmd_worker(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle worker command."""
    jobs = annotator.worker.run(args.max_tasks)
    if not jobs:
        print("No queued continuations.")
        return 0
    for job in jobs:
        _print_job(job)
    return 1 if any(job.status.value == "failed" for job in jobs) else 0


def cmd_classify(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle classify command."""
    record = annotator.classify_domain(
        args.word, args.pos, args.lemma, (args.left, args.right),
    )
    print(f"{record.word}\t{record.domain_code}\t{record.confidence:.2f}\t"
          f"{record.source.value}\t{record.justification}")
    return 0 if record.is_classified else 1


def cmd_annotate(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle annotate command."""
    text = args.text
    if text.startswith("@"):
        text = Path(text[1:]).read_text(encoding="utf-8")

    result = annotator.annotate(text)
    domains = {}
    if args.domains:
        for token, record in annotator.classify_tokens(result.tokens):
            domains[token.sentence_position] = record

    for token in result.tokens:
        line = (f"{token.surface_form}\t{token.pos}\t{token.lemma}\t"
                f"{token.pos_confidence:.2f}\t{token.pos_source.value}")
        record = domains.get(token.sentence_position)
        if record is not None:
            line += f"\t{record.domain_code}\t{record.confidence:.2f}"
        print(line)

    counts = ", ".join(f"{k}={v}" for k, v in sorted(result.layer_counts.items()))
    print(f"\n{len(result.tokens)} tokens ({counts})")
    return 0


def cmd_propagate(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle propagate command."""
    if not args.word:
        reached = annotator.propagation.propagate_all(args.min_confidence)
        print(f"Propagated to {reached} word(s).")
        return 0
    records = annotator.propagation.propagate(
        args.word, domain_code=args.domain, confidence=args.confidence,
    )
    for record in records:
        print(f"{record.word}\t{record.domain_code}\t{record.confidence:.4f}")
    print(f"\nPropagated to {len(records)} word(s).")
    return 0


def cmd_keyness(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle keyness command."""
    results = annotator.keyness(
        args.study.read_text(encoding="utf-8"),
        args.reference.read_text(encoding="utf-8"),
        level=args.level,
    )
    if not results:
        print("No classified words in the study text.")
        return 0
    print(f"{'Domain':<14} {'Study':>7} {'Ref':>7} {'LL':>9} {'MI':>7}  Significance")
    print("-" * 62)
    for r in results:
        print(f"{r.domain_code:<14} {r.study_count:>7} {r.reference_count:>7} "
              f"{r.log_likelihood:>9.2f} {r.mutual_information:>7.3f}  {r.significance.value}")
    return 0


def cmd_validate(annotator: Annotator, args: argparse.Namespace) -> int:
    """Handle validate command."""
    results = annotator.validate()
    errors = [r for r in results if r.severity == "ERROR"]
    for r in results:
        tag = "ERROR" if r.severity == "ERROR" else "WARN "
        print(f"  [{tag}] {r.rule_id} {r.entity_type} {r.entity_id}: {r.message}")
    if not results:
        print("Validation passed!")
        return 0
    print(f"\nFound {len(errors)} error(s), {len(results) - len(errors)} warning(s)")
    return 1 if errors else 0


# =============================================================================
# Output helpers
# =============================================================================

def _print_parse_error(e: ParseError) -> None:
    print(f"\n  [PARSE ERROR] {e}")
    if e.line:
        print(f"               Line: {e.line}")


def _print_load_report(report: LoadReport) -> None:
    print(f"  Accepted: {report.accepted}")
    print(f"  Rejected: {report.rejected}")
    for error in report.errors[:20]:
        print(f"  [{error.rule_id}] {error.entity_id}: {error.message}")
    if len(report.errors) > 20:
        print(f"  ... and {len(report.errors) - 20} more")


def _print_job(job: BatchJob) -> None:
    print(f"\nJob {job.id}")
    print(f"  Status:     {job.status.value}")
    print(f"  Chunks:     {job.chunk_index}/{job.total_chunks} (size {job.chunk_size})")
    print(f"  Processed:  {job.items_processed}")
    print(f"  Classified: {job.items_classified}")
    if job.last_error:
        print(f"  Error:      {job.last_error}")


def _print_failures(report: JobReport, detailed: bool) -> None:
    counts = report.failure_counts
    if counts:
        summary = ", ".join(f"{reason}: {n}" for reason, n in sorted(counts.items()))
        print(f"  Unclassified: {len(report.failures)} ({summary})")
    if report.queued_continuations:
        print(f"  Queued continuations: {report.queued_continuations}")
    if detailed:
        for failure in report.failures:
            print(f"    chunk {failure.chunk_index}: {failure.word} "
                  f"[{failure.reason}] {failure.detail or ''}")


if __name__ == "__main__":
    sys.exit(main())
