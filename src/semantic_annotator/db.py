"""Database connection, DDL, and low-level helpers for semantic-annotator."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from semantic_annotator.exceptions import DatabaseError

SCHEMA_VERSION = "1.1"

# ---------------------------------------------------------------------------
# META type adapter/converter
# ---------------------------------------------------------------------------

def _adapt_metadata(obj: dict) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _convert_metadata(data: bytes) -> dict | list | None:
    if data is None or data == b"":
        return None
    return json.loads(data)


sqlite3.register_adapter(dict, _adapt_metadata)
sqlite3.register_converter("META", _convert_metadata)


# ---------------------------------------------------------------------------
# DDL statements
# ---------------------------------------------------------------------------

_DDL = """
-- Meta table
CREATE TABLE IF NOT EXISTS meta (
    key TEXT NOT NULL,
    value TEXT,
    UNIQUE (key)
);

-- Lexicon store (one row per headword and source)
CREATE TABLE IF NOT EXISTS lexicon_entries (
    rowid INTEGER PRIMARY KEY,
    headword TEXT NOT NULL,
    normalized_form TEXT NOT NULL,
    pos_class TEXT,
    domain_codes META,
    confidence REAL NOT NULL CHECK( confidence >= 0 AND confidence <= 1 ),
    provenance TEXT NOT NULL CHECK( provenance IN ('regional','formal_dictionary','rule_derived','statistical') ),
    priority INTEGER NOT NULL,
    frequency INTEGER NOT NULL DEFAULT 0,
    definition TEXT,
    UNIQUE (normalized_form, provenance)
);
CREATE INDEX IF NOT EXISTS lexicon_entry_form_index ON lexicon_entries (normalized_form);

-- Synonymy graph
CREATE TABLE IF NOT EXISTS synonym_edges (
    rowid INTEGER PRIMARY KEY,
    word_a TEXT NOT NULL,
    word_b TEXT NOT NULL,
    source TEXT NOT NULL,
    CHECK( word_a < word_b ),
    UNIQUE (word_a, word_b)
);
CREATE INDEX IF NOT EXISTS synonym_edge_a_index ON synonym_edges (word_a);
CREATE INDEX IF NOT EXISTS synonym_edge_b_index ON synonym_edges (word_b);

-- Semantic taxonomy
CREATE TABLE IF NOT EXISTS semantic_tagset (
    code TEXT PRIMARY KEY,
    parent_code TEXT REFERENCES semantic_tagset (code),
    depth INTEGER NOT NULL CHECK( depth BETWEEN 1 AND 4 ),
    name TEXT,
    CHECK( (depth = 1 AND parent_code IS NULL) OR (depth > 1 AND parent_code IS NOT NULL) )
);

-- Word-only classification cache
CREATE TABLE IF NOT EXISTS semantic_lexicon (
    word TEXT PRIMARY KEY,
    lemma TEXT,
    pos TEXT,
    domain_code TEXT NOT NULL,
    confidence REAL NOT NULL CHECK( confidence >= 0 AND confidence <= 1 ),
    source TEXT NOT NULL,
    justification TEXT,
    origin TEXT,
    hits INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

-- Word + context classification cache
CREATE TABLE IF NOT EXISTS disambiguation_cache (
    word TEXT NOT NULL,
    context_hash TEXT NOT NULL,
    lemma TEXT,
    pos TEXT,
    domain_code TEXT NOT NULL,
    confidence REAL NOT NULL CHECK( confidence >= 0 AND confidence <= 1 ),
    source TEXT NOT NULL,
    justification TEXT,
    hits INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    PRIMARY KEY (word, context_hash)
);

-- LLM POS results
CREATE TABLE IF NOT EXISTS pos_cache (
    word TEXT NOT NULL,
    context_hash TEXT NOT NULL,
    lemma TEXT,
    pos TEXT NOT NULL,
    pos_detail TEXT,
    features META,
    confidence REAL NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    PRIMARY KEY (word, context_hash)
);

-- Seeding candidates
CREATE TABLE IF NOT EXISTS candidate_words (
    word TEXT NOT NULL,
    source_tag TEXT NOT NULL CHECK( source_tag IN ('dialectal','gutenberg_noun','gutenberg_verb','gutenberg_adj','general') ),
    pos TEXT,
    lemma TEXT,
    frequency INTEGER NOT NULL DEFAULT 0,
    UNIQUE (word, source_tag)
);

-- Batch jobs
CREATE TABLE IF NOT EXISTS batch_jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL CHECK( status IN ('pending','processing','paused','completed','failed','cancelled') ),
    chunk_index INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL DEFAULT 0,
    chunk_size INTEGER NOT NULL,
    priority META,
    items_processed INTEGER NOT NULL DEFAULT 0,
    items_classified INTEGER NOT NULL DEFAULT 0,
    cancel_requested BOOLEAN CHECK( cancel_requested IN (0, 1) ) DEFAULT 0 NOT NULL,
    recovery_attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    started_at TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS job_items (
    job_id TEXT NOT NULL REFERENCES batch_jobs (id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    word TEXT NOT NULL,
    source_tag TEXT NOT NULL,
    pos TEXT,
    lemma TEXT,
    PRIMARY KEY (job_id, position)
);

CREATE TABLE IF NOT EXISTS job_failures (
    job_id TEXT NOT NULL REFERENCES batch_jobs (id) ON DELETE CASCADE,
    word TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    reason TEXT NOT NULL CHECK( reason IN ('llm_empty', 'llm_error') ),
    detail TEXT,
    PRIMARY KEY (job_id, word)
);

CREATE TABLE IF NOT EXISTS continuation_tasks (
    rowid INTEGER PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES batch_jobs (id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    state TEXT NOT NULL DEFAULT 'queued' CHECK( state IN ('queued', 'claimed', 'done') ),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    UNIQUE (job_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS continuation_state_index ON continuation_tasks (state);

-- Per-call audit of the external classifier
CREATE TABLE IF NOT EXISTS llm_calls (
    rowid INTEGER PRIMARY KEY,
    purpose TEXT NOT NULL,
    submitted INTEGER NOT NULL,
    returned INTEGER NOT NULL,
    error TEXT,
    latency_ms INTEGER,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

-- Edit history
CREATE TABLE IF NOT EXISTS edit_history (
    rowid INTEGER PRIMARY KEY,
    entity_type TEXT NOT NULL CHECK( entity_type IN ('lexicon_entry','semantic_lexicon','disambiguation_cache','synonym_edge','tagset') ),
    entity_id TEXT NOT NULL,
    field_name TEXT,
    operation TEXT NOT NULL CHECK( operation IN ('CREATE', 'UPDATE', 'DELETE') ),
    old_value TEXT,
    new_value TEXT,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS edit_history_entity_index ON edit_history (entity_type, entity_id);
CREATE INDEX IF NOT EXISTS edit_history_timestamp_index ON edit_history (timestamp);
"""


def connect(db_path: str | Path = ":memory:") -> sqlite3.Connection:
    """Open a database connection with annotator PRAGMA settings."""
    db_path_str = str(db_path)
    conn = sqlite3.connect(
        db_path_str,
        detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
    )
    conn.execute("PRAGMA foreign_keys = ON")
    if db_path_str != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize all tables if they don't exist. Set schema version."""
    conn.executescript(_DDL)
    conn.execute(
        "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
        (SCHEMA_VERSION,),
    )
    conn.execute(
        "INSERT OR IGNORE INTO meta (key, value) "
        "VALUES ('created_at', strftime('%Y-%m-%dT%H:%M:%f', 'now'))",
    )
    conn.commit()


def check_schema_version(conn: sqlite3.Connection) -> None:
    """Verify the database schema version is compatible."""
    try:
        row = conn.execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError:
        # meta table doesn't exist - uninitialized DB
        return
    if row is None:
        return
    version = row[0]
    if version != SCHEMA_VERSION:
        raise DatabaseError(
            f"Incompatible schema version: {version} "
            f"(expected {SCHEMA_VERSION})"
        )


def open_database(db_path: str | Path = ":memory:") -> sqlite3.Connection:
    """Connect, check the schema version and create missing tables."""
    conn = connect(db_path)
    check_schema_version(conn)
    init_db(conn)
    return conn


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def count_rows(conn: sqlite3.Connection, table: str) -> int:
    """Row count of a table (table names are internal constants)."""
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def get_job_row(conn: sqlite3.Connection, job_id: str) -> sqlite3.Row | None:
    """Get a full batch job row by ID."""
    return conn.execute(
        "SELECT * FROM batch_jobs WHERE id = ?",
        (job_id,),
    ).fetchone()


def get_tagset_row(conn: sqlite3.Connection, code: str) -> sqlite3.Row | None:
    """Get a tagset node row by code."""
    return conn.execute(
        "SELECT * FROM semantic_tagset WHERE code = ?",
        (code,),
    ).fetchone()
