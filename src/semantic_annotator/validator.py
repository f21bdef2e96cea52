"""Validation engine for semantic-annotator."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping
from typing import Any

from semantic_annotator.models import (
    NO_DOMAIN,
    NOT_CLASSIFIED,
    Provenance,
    TagsetNode,
    ValidationResult,
)

_PROVENANCES = frozenset(p.value for p in Provenance)


def validate_all(conn: sqlite3.Connection) -> list[ValidationResult]:
    """Run all database-level validation rules."""
    results: list[ValidationResult] = []
    results.extend(_val_tax_006(conn))
    results.extend(_val_sem_001(conn))
    results.extend(_val_sem_002(conn))
    return results


# ------------------------------------------------------------------
# Ingestion-time rules
# ------------------------------------------------------------------

def validate_entry(data: Mapping[str, Any], index: int = 0) -> list[ValidationResult]:
    """Validate one raw lexicon entry mapping before it is stored."""
    results: list[ValidationResult] = []
    headword = data.get("headword")
    entity_id = str(headword) if headword else f"#{index}"

    if not isinstance(headword, str) or not headword.strip():
        results.append(ValidationResult(
            rule_id="VAL-LEX-001",
            severity="ERROR",
            entity_type="lexicon_entry",
            entity_id=entity_id,
            message="Entry has no headword",
            details={"index": index},
        ))

    confidence = data.get("confidence", 1.0)
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or not 0.0 <= confidence <= 1.0
    ):
        results.append(ValidationResult(
            rule_id="VAL-LEX-002",
            severity="ERROR",
            entity_type="lexicon_entry",
            entity_id=entity_id,
            message=f"Confidence must be a number in [0, 1], got {confidence!r}",
            details={"index": index},
        ))

    provenance = data.get("provenance_source", data.get("provenance"))
    if isinstance(provenance, Provenance):
        provenance = provenance.value
    if provenance not in _PROVENANCES:
        results.append(ValidationResult(
            rule_id="VAL-LEX-003",
            severity="ERROR",
            entity_type="lexicon_entry",
            entity_id=entity_id,
            message=f"Unknown provenance: {provenance!r}",
            details={"index": index},
        ))

    if not data.get("pos_class") and not data.get("domain_codes"):
        results.append(ValidationResult(
            rule_id="VAL-LEX-004",
            severity="WARNING",
            entity_type="lexicon_entry",
            entity_id=entity_id,
            message="Entry carries neither a POS class nor a domain code",
            details=None,
        ))

    return results


def validate_tagset_nodes(
    nodes: Iterable[TagsetNode],
    known_codes: Iterable[str] = (),
) -> list[ValidationResult]:
    """Check the structural invariants of a batch of taxonomy nodes.

    ``known_codes`` are codes already stored, usable as parents.
    """
    nodes = list(nodes)
    results: list[ValidationResult] = []
    depths = {n.code: n.depth for n in nodes}
    available = set(known_codes) | set(depths)

    for node in nodes:
        if not 1 <= node.depth <= 4:
            results.append(_tax(
                "VAL-TAX-001", node.code,
                f"Depth {node.depth} outside 1..4",
            ))
            continue
        if node.depth == 1 and node.parent_code is not None:
            results.append(_tax(
                "VAL-TAX-003", node.code,
                f"Depth-1 node has parent {node.parent_code!r}",
            ))
        elif node.depth > 1 and not node.parent_code:
            results.append(_tax(
                "VAL-TAX-002", node.code,
                f"Depth-{node.depth} node has no parent",
            ))
        elif node.depth > 1 and node.parent_code not in available:
            results.append(_tax(
                "VAL-TAX-004", node.code,
                f"Unknown parent {node.parent_code!r}",
            ))
        elif (
            node.depth > 1
            and node.parent_code in depths
            and depths[node.parent_code] != node.depth - 1
        ):
            results.append(_tax(
                "VAL-TAX-005", node.code,
                f"Parent {node.parent_code!r} is not at depth {node.depth - 1}",
            ))
    return results


def _tax(rule_id: str, code: str, message: str) -> ValidationResult:
    return ValidationResult(
        rule_id=rule_id,
        severity="ERROR",
        entity_type="tagset",
        entity_id=code,
        message=message,
        details=None,
    )


# ------------------------------------------------------------------
# Database rules
# ------------------------------------------------------------------

def _val_tax_006(conn: sqlite3.Connection) -> list[ValidationResult]:
    """Stored nodes whose parent is missing (foreign keys disabled on import)."""
    sql = (
        "SELECT t.code, t.parent_code FROM semantic_tagset t "
        "WHERE t.parent_code IS NOT NULL AND NOT EXISTS "
        "(SELECT 1 FROM semantic_tagset p WHERE p.code = t.parent_code)"
    )
    return [
        _tax("VAL-TAX-006", row["code"], f"Parent {row['parent_code']!r} missing")
        for row in conn.execute(sql).fetchall()
    ]


def _val_sem_001(conn: sqlite3.Connection) -> list[ValidationResult]:
    """Semantic lexicon codes absent from a non-empty tagset."""
    if conn.execute("SELECT COUNT(*) FROM semantic_tagset").fetchone()[0] == 0:
        return []
    sql = (
        "SELECT word, domain_code FROM semantic_lexicon s "
        "WHERE domain_code NOT IN (?, ?) AND NOT EXISTS "
        "(SELECT 1 FROM semantic_tagset t WHERE t.code = s.domain_code)"
    )
    return [
        ValidationResult(
            rule_id="VAL-SEM-001",
            severity="WARNING",
            entity_type="semantic_lexicon",
            entity_id=row["word"],
            message=f"Domain code {row['domain_code']!r} is not in the tagset",
            details={"domain_code": row["domain_code"]},
        )
        for row in conn.execute(sql, (NO_DOMAIN, NOT_CLASSIFIED)).fetchall()
    ]


def _val_sem_002(conn: sqlite3.Connection) -> list[ValidationResult]:
    """NC must never be stored as a domain assignment."""
    results = []
    for table in ("semantic_lexicon", "disambiguation_cache"):
        sql = f"SELECT word FROM {table} WHERE domain_code = ?"
        for row in conn.execute(sql, (NOT_CLASSIFIED,)).fetchall():
            results.append(ValidationResult(
                rule_id="VAL-SEM-002",
                severity="ERROR",
                entity_type=table,
                entity_id=row["word"],
                message="Not-classified sentinel stored as a domain",
                details=None,
            ))
    return results
