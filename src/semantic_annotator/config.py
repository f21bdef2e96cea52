"""Pipeline configuration: defaults, YAML files and environment overrides."""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from semantic_annotator.exceptions import ParseError

logger = logging.getLogger(__name__)

ENV_PREFIX = "SEMANTIC_ANNOTATOR_"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Tunable constants of the annotation pipeline."""

    db_path: str = "annotator.db"

    # Domain classifier
    word_only_threshold: float = 0.90
    morph_confidence: float = 0.92

    # POS resolver
    dictionary_confidence: float = 0.94
    statistical_threshold: float = 0.90
    llm_pos_confidence: float = 0.88

    # External classifier
    model: str = "gpt-4o-mini"
    api_base: str | None = None
    api_key_env: str = "OPENAI_API_KEY"
    llm_batch_size: int = 15
    llm_temperature: float = 0.2
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    low_yield_ratio: float = 0.5

    # Synonym propagation
    forward_decay: float = 0.85
    inherit_decay: float = 0.80
    propagation_floor: float = 0.60

    # Seeding orchestrator
    chunk_size: int = 50
    budget_seconds: float = 50.0

    def __post_init__(self) -> None:
        for name in (
            "word_only_threshold", "morph_confidence", "dictionary_confidence",
            "statistical_threshold", "llm_pos_confidence", "forward_decay",
            "inherit_decay", "propagation_floor", "low_yield_ratio",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ParseError(f"{name} must be within [0, 1], got {value}")
        for name in ("llm_batch_size", "chunk_size", "retry_attempts"):
            if getattr(self, name) < 1:
                raise ParseError(f"{name} must be at least 1")
        if self.budget_seconds <= 0:
            raise ParseError("budget_seconds must be positive")

    def replace(self, **changes: Any) -> PipelineConfig:
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)


_FIELDS = {f.name: f for f in dataclasses.fields(PipelineConfig)}


def _coerce(name: str, value: Any) -> Any:
    """Convert ``value`` to the type of config field ``name``."""
    default = _FIELDS[name].default
    if value is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> PipelineConfig:
    """Build a config from defaults, an optional YAML file and the environment.

    Args:
        path: YAML file holding a mapping of field names to values
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        PipelineConfig

    Raises:
        ParseError: If the file is malformed or names an unknown field
    """
    values: dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ParseError(f"Config file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            line = None
            if hasattr(e, "problem_mark") and e.problem_mark:
                line = e.problem_mark.line + 1
            raise ParseError(f"YAML syntax error: {e}", line) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError("Config root must be a mapping")
        unknown = sorted(set(data) - set(_FIELDS))
        if unknown:
            raise ParseError(f"Unknown config keys: {', '.join(unknown)}")
        for key, value in data.items():
            values[key] = _coerce(key, value)

    env = os.environ if environ is None else environ
    for name in _FIELDS:
        key = ENV_PREFIX + name.upper()
        if key in env:
            logger.debug("Config %s overridden from environment", name)
            values[name] = _coerce(name, env[key])

    return PipelineConfig(**values)
