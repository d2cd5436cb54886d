#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Initialize the PersonaTune database with all required tables.

Creates tables for:
  - Personas (evaluator profiles and their adjustable decision state)
  - Impact Rules (configured signal -> persona transforms)
  - Ingest Jobs (one per processed RFP text, with quality metrics)
  - State Adjustments (append-only audit of every persona field delta)
  - System (audit trail)

Usage:
    python -m personatune.db.init_db [--db-path PATH] [--json]
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))


SCHEMA_SQL = """
-- ============================================================
-- PERSONAS
-- ============================================================

-- Evaluator personas (core fields; bounded numerics are 1-10)
CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    company TEXT,
    department TEXT,
    rank TEXT,
    kpi TEXT,
    evaluation_focus TEXT,
    strategic_priority TEXT,
    communication_style TEXT,
    team_dynamics TEXT,
    budget_authority REAL NOT NULL DEFAULT 5
        CHECK(budget_authority BETWEEN 1 AND 10),
    decision_influence REAL NOT NULL DEFAULT 5
        CHECK(decision_influence BETWEEN 1 AND 10),
    technical_expertise REAL NOT NULL DEFAULT 5
        CHECK(technical_expertise BETWEEN 1 AND 10),
    risk_tolerance REAL NOT NULL DEFAULT 5
        CHECK(risk_tolerance BETWEEN 1 AND 10),
    innovation_openness REAL NOT NULL DEFAULT 5
        CHECK(innovation_openness BETWEEN 1 AND 10),
    industry_experience REAL NOT NULL DEFAULT 15
        CHECK(industry_experience BETWEEN 0 AND 50),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_persona_name ON personas(name);

-- Dynamic decision state (one row per persona, rewritten once per run)
CREATE TABLE IF NOT EXISTS persona_states (
    persona_id TEXT PRIMARY KEY REFERENCES personas(id),
    weights TEXT NOT NULL,
    thresholds TEXT NOT NULL,
    focus_keywords TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    last_document_id TEXT,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ============================================================
-- IMPACT RULES
-- ============================================================

CREATE TABLE IF NOT EXISTS impact_rules (
    id TEXT PRIMARY KEY,
    rule_type TEXT NOT NULL DEFAULT 'seed'
        CHECK(rule_type IN ('seed', 'custom')),
    name TEXT NOT NULL,
    description TEXT,
    target_field TEXT NOT NULL,
    signal_key TEXT NOT NULL,
    match_type TEXT NOT NULL
        CHECK(match_type IN ('exact', 'includes', 'regex', 'threshold', 'semantic')),
    match_pattern TEXT,
    transform_type TEXT NOT NULL
        CHECK(transform_type IN ('set', 'append', 'scale', 'boost_weight', 'set_threshold')),
    transform_payload TEXT NOT NULL DEFAULT '{}',
    impact_strength REAL NOT NULL CHECK(impact_strength BETWEEN 0.0 AND 1.0),
    precedence INTEGER NOT NULL DEFAULT 100,
    source_priority INTEGER NOT NULL DEFAULT 3,
    seq INTEGER NOT NULL DEFAULT 0,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_rule_order ON impact_rules(precedence, source_priority, seq);
CREATE INDEX IF NOT EXISTS idx_rule_signal ON impact_rules(signal_key);

-- ============================================================
-- INGESTION
-- ============================================================

CREATE TABLE IF NOT EXISTS ingest_jobs (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    input_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK(status IN ('queued', 'running', 'done', 'error')),
    page_count INTEGER,
    section_count INTEGER,
    signal_count INTEGER,
    quality_metrics TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_hash ON ingest_jobs(input_hash);
CREATE INDEX IF NOT EXISTS idx_job_document ON ingest_jobs(document_id);

-- ============================================================
-- STATE ADJUSTMENTS (append-only)
-- ============================================================

CREATE TABLE IF NOT EXISTS state_adjustments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    persona_id TEXT NOT NULL REFERENCES personas(id),
    document_id TEXT,
    run_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    field_path TEXT NOT NULL,
    before_value TEXT,
    after_value TEXT,
    reason TEXT NOT NULL,
    rule_id TEXT,
    signal_key TEXT,
    confidence_score REAL NOT NULL CHECK(confidence_score BETWEEN 0.0 AND 1.0),
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_adj_persona ON state_adjustments(persona_id);
CREATE INDEX IF NOT EXISTS idx_adj_document ON state_adjustments(document_id);
CREATE INDEX IF NOT EXISTS idx_adj_run ON state_adjustments(run_id, seq);

-- ============================================================
-- SYSTEM TABLES
-- ============================================================

-- Audit trail (append-only)
CREATE TABLE IF NOT EXISTS audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor TEXT,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_trail(event_type);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_trail(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_trail(created_at);

-- Append-only enforcement
CREATE TRIGGER IF NOT EXISTS trg_adj_no_update
BEFORE UPDATE ON state_adjustments
BEGIN
    SELECT RAISE(ABORT, 'state_adjustments is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_adj_no_delete
BEFORE DELETE ON state_adjustments
BEGIN
    SELECT RAISE(ABORT, 'state_adjustments is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_audit_no_update
BEFORE UPDATE ON audit_trail
BEGIN
    SELECT RAISE(ABORT, 'audit_trail is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_audit_no_delete
BEFORE DELETE ON audit_trail
BEGIN
    SELECT RAISE(ABORT, 'audit_trail is append-only');
END;
"""


def init_db(db_path=None):
    """Initialize the PersonaTune database."""
    path = db_path or str(DB_PATH)
    db_dir = Path(path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.commit()

    # Count tables
    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    table_count = cursor.fetchone()[0]

    # Count indexes
    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    index_count = cursor.fetchone()[0]

    conn.close()

    return {
        "status": "initialized",
        "db_path": str(path),
        "tables": table_count,
        "indexes": index_count,
        "initialized_at": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize PersonaTune database")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--db-path", help="Override database path")
    args = parser.parse_args()

    result = init_db(db_path=args.db_path)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print("PersonaTune database initialized:")
        print(f"  Path:    {result['db_path']}")
        print(f"  Tables:  {result['tables']}")
        print(f"  Indexes: {result['indexes']}")
        print(f"  Time:    {result['initialized_at']}")
