"""Lexicon store: per-source entries with provenance-priority resolution."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import unicodedata
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml

from semantic_annotator import history as _hist
from semantic_annotator.exceptions import ParseError, ValidationError
from semantic_annotator.models import LexiconEntry, LoadReport, Provenance
from semantic_annotator.validator import validate_entry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Normalization and dictionary notation
# ---------------------------------------------------------------------------

def normalize(word: str) -> str:
    """NFC, trimmed, lower-cased form used as the lookup key."""
    return unicodedata.normalize("NFC", word).strip().lower()


_NOTATION_TO_POS: dict[str, str] = {
    "s.m.": "NOUN", "s.f.": "NOUN", "s.2g.": "NOUN", "s.m.pl.": "NOUN",
    "s.f.pl.": "NOUN", "s.": "NOUN", "sm.": "NOUN", "sf.": "NOUN",
    "v.tr.": "VERB", "v.t.d.": "VERB", "v.t.i.": "VERB", "v.int.": "VERB",
    "v.intr.": "VERB", "v.pron.": "VERB", "v.": "VERB", "tr.dir.": "VERB",
    "int.": "VERB", "intr.": "VERB",
    "adj.": "ADJ", "adj.2g.": "ADJ",
    "adv.": "ADV", "loc.adv.": "ADV",
    "interj.": "INTJ", "loc.interj.": "INTJ",
    "prep.": "ADP", "loc.prep.": "ADP",
    "conj.": "CCONJ", "conj.subord.": "SCONJ",
    "pron.": "PRON", "art.": "DET", "num.": "NUM",
}
_UD_TAGS = frozenset(set(_NOTATION_TO_POS.values()) | {"PROPN", "AUX", "PART", "X"})
_NOTATION_SEPARATORS = re.compile(r"\s+e\s+|\s+ou\s+|[,;/]")
_NOTATION_TOKEN = re.compile(r"[a-z0-9]+\.")


def parse_notation(notation: str | None) -> str | None:
    """Map dictionary POS notation to a canonical tag.

    Ambiguous notations resolve to the first listed class, so
    ``"s.m. e adj."`` is a NOUN. Canonical tags pass through unchanged.
    """
    if not notation:
        return None
    text = notation.strip()
    if text.upper() in _UD_TAGS:
        return text.upper()
    text = text.lower().replace("_", "")
    for segment in _NOTATION_SEPARATORS.split(text):
        compact = "".join(_NOTATION_TOKEN.findall(segment.replace(" ", "")))
        # try the longest run of abbreviations first: "v.t.d." before "v."
        while compact:
            if compact in _NOTATION_TO_POS:
                return _NOTATION_TO_POS[compact]
            cut = compact[:-1].rfind(".")
            compact = compact[: cut + 1] if cut >= 0 else ""
    return None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def _row_to_entry(row: sqlite3.Row) -> LexiconEntry:
    return LexiconEntry(
        headword=row["headword"],
        normalized_form=row["normalized_form"],
        pos_class=row["pos_class"],
        domain_codes=tuple(row["domain_codes"] or ()),
        confidence=row["confidence"],
        provenance_source=Provenance(row["provenance"]),
        frequency=row["frequency"],
        definition=row["definition"],
    )


def _entry_to_mapping(entry: LexiconEntry) -> dict[str, Any]:
    return {
        "headword": entry.headword,
        "pos_class": entry.pos_class,
        "domain_codes": list(entry.domain_codes),
        "confidence": entry.confidence,
        "provenance_source": entry.provenance_source.value,
        "frequency": entry.frequency,
        "definition": entry.definition,
    }


def _mapping_to_entry(data: Mapping[str, Any]) -> LexiconEntry:
    codes = data.get("domain_codes")
    if codes is None and data.get("domain_code"):
        codes = [data["domain_code"]]
    if isinstance(codes, str):
        codes = [codes]
    provenance = data.get("provenance_source", data.get("provenance"))
    return LexiconEntry(
        headword=data["headword"].strip(),
        normalized_form=normalize(data["headword"]),
        pos_class=data.get("pos_class") or None,
        domain_codes=tuple(codes or ()),
        confidence=float(data.get("confidence", 1.0)),
        provenance_source=Provenance(provenance),
        frequency=int(data.get("frequency") or 0),
        definition=data.get("definition"),
    )


_ORDER = "ORDER BY priority ASC, confidence DESC, rowid ASC"


class LexiconStore:
    """Entries keyed by ``(normalized_form, provenance)``.

    Every source keeps its own row; disagreements are settled when reading,
    by provenance priority first and confidence second. Confidence values are
    never averaged across sources.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_or_update(self, entry: LexiconEntry | Mapping[str, Any]) -> bool:
        """Store one entry; idempotent on ``(normalized_form, provenance)``.

        Returns:
            True if the stored row changed.

        Raises:
            ValidationError: If the entry is malformed
        """
        entry = self._coerce(entry)
        with self._conn:
            return self._upsert(entry)

    def load(self, entries: Iterable[LexiconEntry | Mapping[str, Any]]) -> LoadReport:
        """Bulk-load entries in one transaction.

        Malformed entries are rejected and counted. When the same headword
        and provenance appear more than once, the highest-confidence
        occurrence is kept.
        """
        report = LoadReport()
        merged: dict[tuple[str, Provenance], LexiconEntry] = {}
        for index, raw in enumerate(entries):
            data = _entry_to_mapping(raw) if isinstance(raw, LexiconEntry) else raw
            if not isinstance(data, Mapping):
                report.rejected += 1
                continue
            problems = [r for r in validate_entry(data, index) if r.severity == "ERROR"]
            if problems:
                report.rejected += 1
                report.errors.extend(problems)
                continue
            entry = _mapping_to_entry(data)
            key = (entry.normalized_form, entry.provenance_source)
            current = merged.get(key)
            if current is None or entry.confidence > current.confidence:
                merged[key] = entry
            report.accepted += 1

        with self._conn:
            for entry in merged.values():
                self._upsert(entry)

        if report.rejected:
            logger.warning(
                "Rejected %d malformed lexicon entries (%d accepted)",
                report.rejected, report.accepted,
            )
        else:
            logger.info("Loaded %d lexicon entries", report.accepted)
        return report

    def load_file(self, path: str | Path) -> LoadReport:
        """Load a YAML or JSON file holding a list of entry mappings."""
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
        if isinstance(data, dict) and "entries" in data:
            data = data["entries"]
        if not isinstance(data, list):
            raise ParseError("Lexicon file must contain a list of entries")
        return self.load(data)

    def _coerce(self, entry: LexiconEntry | Mapping[str, Any]) -> LexiconEntry:
        data = _entry_to_mapping(entry) if isinstance(entry, LexiconEntry) else entry
        problems = [r for r in validate_entry(data) if r.severity == "ERROR"]
        if problems:
            raise ValidationError(problems[0].message)
        return _mapping_to_entry(data)

    def _upsert(self, entry: LexiconEntry) -> bool:
        provenance = entry.provenance_source
        row = self._conn.execute(
            "SELECT * FROM lexicon_entries WHERE normalized_form = ? AND provenance = ?",
            (entry.normalized_form, provenance.value),
        ).fetchone()
        entity_id = f"{entry.normalized_form}|{provenance.value}"
        codes = list(entry.domain_codes)

        if row is None:
            self._conn.execute(
                "INSERT INTO lexicon_entries "
                "(headword, normalized_form, pos_class, domain_codes, confidence, "
                " provenance, priority, frequency, definition) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.headword, entry.normalized_form, entry.pos_class,
                    _dump_codes(codes), entry.confidence, provenance.value,
                    provenance.priority, entry.frequency, entry.definition,
                ),
            )
            _hist.record_create(
                self._conn, "lexicon_entry", entity_id, _entry_to_mapping(entry),
            )
            return True

        current = _row_to_entry(row)
        if current == entry:
            return False
        self._conn.execute(
            "UPDATE lexicon_entries SET headword = ?, pos_class = ?, "
            "domain_codes = ?, confidence = ?, frequency = ?, definition = ? "
            "WHERE rowid = ?",
            (
                entry.headword, entry.pos_class, _dump_codes(codes),
                entry.confidence, entry.frequency, entry.definition, row["rowid"],
            ),
        )
        _hist.record_update(
            self._conn, "lexicon_entry", entity_id, None,
            _entry_to_mapping(current), _entry_to_mapping(entry),
        )
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(
        self,
        word: str,
        pos_hint: str | None = None,
        *,
        provenance: Provenance | None = None,
    ) -> LexiconEntry | None:
        """Best entry for ``word``.

        Entries whose POS matches ``pos_hint`` are preferred when any exist;
        among the candidates the highest-priority provenance wins, then the
        highest confidence.
        """
        entries = self.entries_for(word, provenance=provenance)
        if not entries:
            return None
        if pos_hint:
            hint = parse_notation(pos_hint) or pos_hint.upper()
            matching = [e for e in entries if parse_notation(e.pos_class) == hint]
            if matching:
                return matching[0]
        return entries[0]

    def entries_for(
        self,
        word: str,
        *,
        provenance: Provenance | None = None,
    ) -> list[LexiconEntry]:
        """All entries for ``word`` in resolution order."""
        sql = "SELECT * FROM lexicon_entries WHERE normalized_form = ?"
        params: list[Any] = [normalize(word)]
        if provenance is not None:
            sql += " AND provenance = ?"
            params.append(provenance.value)
        rows = self._conn.execute(f"{sql} {_ORDER}", params).fetchall()
        return [_row_to_entry(r) for r in rows]

    def iter_entries(self, provenance: Provenance | None = None) -> Iterator[LexiconEntry]:
        sql = "SELECT * FROM lexicon_entries"
        params: tuple = ()
        if provenance is not None:
            sql += " WHERE provenance = ?"
            params = (provenance.value,)
        for row in self._conn.execute(f"{sql} ORDER BY normalized_form, priority", params):
            yield _row_to_entry(row)

    def count(self, provenance: Provenance | None = None) -> int:
        if provenance is None:
            return self._conn.execute("SELECT COUNT(*) FROM lexicon_entries").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM lexicon_entries WHERE provenance = ?",
            (provenance.value,),
        ).fetchone()[0]


def _dump_codes(codes: list[str]) -> str | None:
    # the META adapter only covers dicts
    return json.dumps(codes, ensure_ascii=False) if codes else None
