"""Hierarchical semantic taxonomy (dotted codes, up to four levels)."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from semantic_annotator import db as _db
from semantic_annotator import history as _hist
from semantic_annotator.exceptions import DataIntegrityError, EntityNotFoundError, ParseError
from semantic_annotator.models import LoadReport, TagsetNode, ValidationResult
from semantic_annotator.validator import validate_tagset_nodes

logger = logging.getLogger(__name__)


def level_code(code: str, level: int) -> str:
    """Truncate a dotted code to ``level`` components.

    ``level_code("AP.TRA.RUR", 1)`` is ``"AP"``. Codes shallower than
    ``level`` are returned unchanged.
    """
    if level < 1:
        raise ValueError("level must be at least 1")
    return ".".join(code.split(".")[:level])


def code_depth(code: str) -> int:
    return code.count(".") + 1


def _row_to_node(row: sqlite3.Row) -> TagsetNode:
    return TagsetNode(
        code=row["code"],
        parent_code=row["parent_code"],
        depth=row["depth"],
        name=row["name"],
    )


def _coerce_node(data: TagsetNode | Mapping[str, Any]) -> TagsetNode:
    if isinstance(data, TagsetNode):
        return data
    code = str(data["code"]).strip()
    depth = data.get("depth")
    parent = data.get("parent_code", data.get("parent"))
    if depth is None:
        depth = code_depth(code)
    if parent is None and int(depth) > 1 and "parent_code" not in data:
        parent = level_code(code, int(depth) - 1)
    return TagsetNode(
        code=code,
        parent_code=parent or None,
        depth=int(depth),
        name=data.get("name"),
    )


class SemanticTagset:
    """Taxonomy nodes persisted in ``semantic_tagset``.

    A node at depth 1 has no parent; any deeper node must name an existing
    parent one level up.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, node: TagsetNode | Mapping[str, Any]) -> TagsetNode:
        """Add or update one node.

        Raises:
            DataIntegrityError: If the node breaks the hierarchy rules
        """
        node = _coerce_node(node)
        problems = validate_tagset_nodes([node], known_codes=self._codes())
        if not problems:
            problems = self._check_parent_depth(node)
        if problems:
            raise DataIntegrityError(f"{node.code}: {problems[0].message}")
        with self._conn:
            self._upsert(node)
        return node

    def load(self, nodes: Iterable[TagsetNode | Mapping[str, Any]]) -> LoadReport:
        """Bulk-load nodes, parents before children.

        Nodes that break the hierarchy rules, and their descendants, are
        rejected and counted rather than raised.
        """
        report = LoadReport()
        coerced = sorted(
            (_coerce_node(n) for n in nodes),
            key=lambda n: (n.depth, n.code),
        )
        known = self._codes()
        accepted: list[TagsetNode] = []
        for node in coerced:
            problems = validate_tagset_nodes([node], known_codes=known)
            if not problems:
                problems = self._check_parent_depth(node, {n.code: n for n in accepted})
            if problems:
                report.rejected += 1
                report.errors.extend(problems)
                continue
            accepted.append(node)
            known.add(node.code)
            report.accepted += 1

        with self._conn:
            for node in accepted:
                self._upsert(node)

        if report.rejected:
            logger.warning(
                "Rejected %d tagset nodes (%d accepted)",
                report.rejected, report.accepted,
            )
        return report

    def load_file(self, path: str | Path) -> LoadReport:
        """Load nodes from YAML or JSON.

        The file holds a list of node mappings, a mapping with a ``nodes``
        list, or a flat mapping of code to name.
        """
        path = Path(path)
        if not path.exists():
            raise ParseError(f"File not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            line = None
            if hasattr(e, "problem_mark") and e.problem_mark:
                line = e.problem_mark.line + 1
            raise ParseError(f"Syntax error in {path.name}: {e}", line) from e
        if isinstance(data, dict):
            if "nodes" in data:
                data = data["nodes"]
            else:
                data = [{"code": code, "name": name} for code, name in data.items()]
        if not isinstance(data, list):
            raise ParseError("Tagset file must contain a list of nodes")
        return self.load(data)

    def get(self, code: str) -> TagsetNode:
        row = _db.get_tagset_row(self._conn, code)
        if row is None:
            raise EntityNotFoundError(f"Tagset code not found: {code}")
        return _row_to_node(row)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and _db.get_tagset_row(self._conn, code) is not None

    def __len__(self) -> int:
        return _db.count_rows(self._conn, "semantic_tagset")

    def nodes(self, depth: int | None = None) -> list[TagsetNode]:
        if depth is None:
            rows = self._conn.execute(
                "SELECT * FROM semantic_tagset ORDER BY depth, code"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM semantic_tagset WHERE depth = ? ORDER BY code",
                (depth,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def children(self, code: str) -> list[TagsetNode]:
        rows = self._conn.execute(
            "SELECT * FROM semantic_tagset WHERE parent_code = ? ORDER BY code",
            (code,),
        ).fetchall()
        return [_row_to_node(r) for r in rows]

    def ancestors(self, code: str) -> list[TagsetNode]:
        """Ancestors of ``code`` from its parent up to the root."""
        result: list[TagsetNode] = []
        node = self.get(code)
        seen = {node.code}
        while node.parent_code is not None:
            node = self.get(node.parent_code)
            if node.code in seen:
                raise DataIntegrityError(f"Cycle in tagset at {node.code}")
            seen.add(node.code)
            result.append(node)
        return result

    def level_code(self, code: str, level: int) -> str:
        """Ancestor-or-self of a stored ``code`` at ``level``."""
        node = self.get(code)
        if node.depth <= level:
            return node.code
        for ancestor in self.ancestors(code):
            if ancestor.depth == level:
                return ancestor.code
        return level_code(code, level)

    # ------------------------------------------------------------------

    def _codes(self) -> set[str]:
        return {r[0] for r in self._conn.execute("SELECT code FROM semantic_tagset")}

    def _check_parent_depth(
        self,
        node: TagsetNode,
        pending: Mapping[str, TagsetNode] | None = None,
    ) -> list[ValidationResult]:
        if node.parent_code is None:
            return []
        parent = (pending or {}).get(node.parent_code)
        if parent is None:
            row = _db.get_tagset_row(self._conn, node.parent_code)
            parent = _row_to_node(row) if row is not None else None
        if parent is not None and parent.depth != node.depth - 1:
            return [
                r for r in validate_tagset_nodes([parent, node])
                if r.entity_id == node.code
            ]
        return []

    def _upsert(self, node: TagsetNode) -> None:
        row = _db.get_tagset_row(self._conn, node.code)
        if row is None:
            self._conn.execute(
                "INSERT INTO semantic_tagset (code, parent_code, depth, name) "
                "VALUES (?, ?, ?, ?)",
                (node.code, node.parent_code, node.depth, node.name),
            )
            _hist.record_create(self._conn, "tagset", node.code, {
                "parent_code": node.parent_code, "depth": node.depth, "name": node.name,
            })
            return
        current = _row_to_node(row)
        if current == node:
            return
        self._conn.execute(
            "UPDATE semantic_tagset SET parent_code = ?, depth = ?, name = ? "
            "WHERE code = ?",
            (node.parent_code, node.depth, node.name, node.code),
        )
        _hist.record_update(
            self._conn, "tagset", node.code, "name", current.name, node.name,
        )
