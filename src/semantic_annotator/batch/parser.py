"""
YAML parser for seeding job requests.

A request names the source priority, the chunk size and optionally the
candidates to queue::

    priority: [dialectal, gutenberg_noun, general]
    chunk_size: 50
    candidates:
      - word: chimarrão
        source: dialectal
        pos: NOUN
      - bagual
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..exceptions import ParseError
from .schema import (
    CandidateSpec,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PRIORITY_ORDER,
    JobRequest,
    VALID_SOURCE_TAGS,
)

_KNOWN_FIELDS = {"priority", "chunk_size", "budget_seconds", "default_source", "candidates"}


def load_job_request(
    source: Union[str, Path, Dict[str, Any]],
) -> JobRequest:
    """Load a job request from a YAML file, YAML string or dictionary.

    Raises:
        ParseError: If the content cannot be parsed or is invalid
        FileNotFoundError: If the file does not exist
    """
    source_path: Optional[Path] = None

    if isinstance(source, dict):
        data = source
    elif isinstance(source, Path) or (isinstance(source, str) and _is_file_path(source)):
        source_path = Path(source)
        if not source_path.exists():
            raise FileNotFoundError(f"File not found: {source_path}")
        data = load_yaml_file(source_path)
    else:
        data = _load_yaml_string(source)

    return _parse_job_request(data, source_path)


def _is_file_path(s: str) -> bool:
    """Check if a string looks like a file path."""
    if "/" in s or "\\" in s:
        return True
    return s.endswith((".yaml", ".yml"))


def _check_root(data: Any) -> Dict[str, Any]:
    if data is None:
        raise ParseError("Empty YAML content")
    if not isinstance(data, dict):
        raise ParseError("YAML root must be a mapping (dictionary)")
    return data


def _yaml_error(e: yaml.YAMLError) -> ParseError:
    mark = getattr(e, "problem_mark", None)
    return ParseError(f"Invalid YAML: {e}", line=mark.line + 1 if mark else None)


def load_yaml_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML mapping from a file.

    Raises:
        ParseError: If the file cannot be parsed
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise _yaml_error(e) from e
    return _check_root(data)


def _load_yaml_string(s: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(s)
    except yaml.YAMLError as e:
        raise _yaml_error(e) from e
    return _check_root(data)


def _parse_job_request(
    data: Dict[str, Any],
    source_path: Optional[Path] = None,
) -> JobRequest:
    unknown = sorted(set(data) - _KNOWN_FIELDS)
    if unknown:
        raise ParseError(f"Unknown fields: {', '.join(unknown)}")

    priority = data.get("priority", DEFAULT_PRIORITY_ORDER)
    if not isinstance(priority, list) or not priority:
        raise ParseError("Field 'priority' must be a non-empty list")
    for tag in priority:
        if tag not in VALID_SOURCE_TAGS:
            raise ParseError(f"Unknown source tag in 'priority': {tag}")
    if len(set(priority)) != len(priority):
        raise ParseError("Field 'priority' lists a source tag twice")

    chunk_size = data.get("chunk_size", DEFAULT_CHUNK_SIZE)
    if not isinstance(chunk_size, int) or isinstance(chunk_size, bool) or chunk_size < 1:
        raise ParseError("Field 'chunk_size' must be a positive integer")

    budget = data.get("budget_seconds")
    if budget is not None:
        if not isinstance(budget, (int, float)) or isinstance(budget, bool) or budget <= 0:
            raise ParseError("Field 'budget_seconds' must be a positive number")
        budget = float(budget)

    default_source = data.get("default_source", "general")
    if default_source not in VALID_SOURCE_TAGS:
        raise ParseError(f"Unknown source tag in 'default_source': {default_source}")

    candidates_data = data.get("candidates", [])
    if not isinstance(candidates_data, list):
        raise ParseError("Field 'candidates' must be a list")

    return JobRequest(
        priority=list(priority),
        chunk_size=chunk_size,
        budget_seconds=budget,
        candidates=_parse_candidates(candidates_data, default_source),
        source_file=source_path,
    )


def _parse_candidates(items: List[Any], default_source: str) -> List[CandidateSpec]:
    """Parse candidate entries; a bare string is a word under ``default_source``."""
    candidates = []
    for i, item in enumerate(items):
        if isinstance(item, str):
            item = {"word": item}
        if not isinstance(item, dict):
            raise ParseError(f"Candidate #{i + 1} must be a string or a mapping")

        word = item.get("word")
        if not word or not isinstance(word, str):
            raise ParseError(f"Candidate #{i + 1}: Missing required field 'word'")
        source = item.get("source", default_source)
        if source not in VALID_SOURCE_TAGS:
            raise ParseError(f"Candidate #{i + 1}: Unknown source tag '{source}'")
        frequency = item.get("frequency", 0)
        if not isinstance(frequency, int) or frequency < 0:
            raise ParseError(f"Candidate #{i + 1}: 'frequency' must be a non-negative integer")

        candidates.append(CandidateSpec(
            word=word,
            source_tag=source,
            pos=item.get("pos"),
            lemma=item.get("lemma"),
            frequency=frequency,
        ))
    return candidates
