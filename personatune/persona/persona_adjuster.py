#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Persona adjuster -- the single commit point for rule-driven state changes.

One run per persona:

    BEGIN IMMEDIATE
      read current state
      fold signals through the rule engine (in memory)
      normalize weights / thresholds / bounded traits
      write the new state once + append every StateAdjustment
      append an audit_trail entry
    COMMIT

The write lock taken by BEGIN IMMEDIATE serializes concurrent runs against
the same database, so two runs never interleave their working copies. Any
failure (missing persona included) rolls the whole run back.

Usage:
    python -m personatune.persona.persona_adjuster --file rfp.pdf --persona-id ID [--json]
    python -m personatune.persona.persona_adjuster --text "..." --all-personas [--force] [--json]
    python -m personatune.persona.persona_adjuster --history --document-id DOC [--persona-id ID] [--json]
"""

import argparse
import json
import logging
import os
import sqlite3
import sys
import uuid
from pathlib import Path
from typing import Dict, List

from personatune.audit.audit_logger import log_event
from personatune.ingest.patterns import resolve_patterns
from personatune.persona.persona_store import (
    list_personas,
    load_persona_state,
    save_persona_state,
)
from personatune.persona.state_normalizer import normalize_state
from personatune.rules.rules_engine import RuleEngine, StateAdjustment

# --- Path setup ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))

logger = logging.getLogger("personatune.persona")


def _connect(db_path=None):
    """Autocommit connection; transactions are managed explicitly."""
    conn = sqlite3.connect(str(db_path or DB_PATH), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _gen_id(prefix="run"):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def build_engine(rule_set, semantic_clusters=None) -> RuleEngine:
    """Wrap a rule list in a RuleEngine (engines pass through unchanged)."""
    if isinstance(rule_set, RuleEngine):
        return rule_set
    if semantic_clusters is None:
        semantic_clusters = resolve_patterns().get("semantic_clusters", {})
    return RuleEngine(rule_set, semantic_clusters)


def _insert_adjustments(conn, adjustments, document_id, run_id):
    for seq, adj in enumerate(adjustments):
        conn.execute(
            "INSERT INTO state_adjustments "
            "(persona_id, document_id, run_id, seq, field_path, before_value, after_value, "
            "reason, rule_id, signal_key, confidence_score) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                adj.persona_id, document_id, run_id, seq, adj.field_path,
                json.dumps(adj.before_value, ensure_ascii=False),
                json.dumps(adj.after_value, ensure_ascii=False),
                adj.reason, adj.rule_id, adj.signal_key, adj.confidence_score,
            ),
        )


def adjust_persona(persona_id, signals, rule_set, document_id=None, db_path=None,
                   semantic_clusters=None, actor="system") -> List[StateAdjustment]:
    """Apply signals to one persona and commit the result atomically.

    Args:
        persona_id: Target persona.
        signals: Signals of one document, in document order.
        rule_set: list of ImpactRule, or a prepared RuleEngine.
        document_id: Source document tag stored on every adjustment.
        db_path: Optional database path override.
        semantic_clusters: Clusters for semantic rules (default: pattern tables).

    Returns:
        The StateAdjustments recorded by this run, in application order.

    Raises:
        PersonaNotFoundError: persona missing; nothing is written.
        sqlite3.Error: store failures propagate after rollback.
    """
    engine = build_engine(rule_set, semantic_clusters)
    run_id = _gen_id("run")

    conn = _connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            state = load_persona_state(persona_id, conn=conn)
            result = engine.run(persona_id, state, signals)
            final = normalize_state(result.state)

            version = None
            if result.adjustments or final != state:
                version = save_persona_state(conn, persona_id, final, document_id)
                _insert_adjustments(conn, result.adjustments, document_id, run_id)
            log_event(
                "persona.adjust", actor,
                f"Applied {len(result.adjustments)} adjustments from {len(signals)} signals",
                entity_type="persona", entity_id=persona_id,
                details={
                    "run_id": run_id,
                    "document_id": document_id,
                    "state_version": version,
                    "rule_ids": sorted({a.rule_id for a in result.adjustments}),
                },
                conn=conn,
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
    finally:
        conn.close()

    logger.info("Persona %s: committed %d adjustments (run %s, document %s)",
                persona_id, len(result.adjustments), run_id, document_id)
    return result.adjustments


def adjust_all_personas(signals, rule_set, document_id=None, db_path=None,
                        semantic_clusters=None) -> Dict[str, List[StateAdjustment]]:
    """Run ``adjust_persona`` for every stored persona, one transaction each."""
    engine = build_engine(rule_set, semantic_clusters)
    results = {}
    for persona in list_personas(db_path=db_path):
        results[persona["id"]] = adjust_persona(
            persona["id"], signals, engine, document_id=document_id, db_path=db_path)
    return results


def get_adjustment_history(document_id, persona_id=None, db_path=None) -> list:
    """Recorded adjustments for a document, in application order."""
    conn = _connect(db_path)
    try:
        if persona_id:
            rows = conn.execute(
                "SELECT * FROM state_adjustments WHERE document_id = ? AND persona_id = ? "
                "ORDER BY id",
                (document_id, persona_id),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM state_adjustments WHERE document_id = ? ORDER BY id",
                (document_id,),
            ).fetchall()
    finally:
        conn.close()

    history = []
    for row in rows:
        entry = dict(row)
        entry["before_value"] = json.loads(entry["before_value"])
        entry["after_value"] = json.loads(entry["after_value"])
        history.append(entry)
    return history


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_human(output):
    if "history" in output:
        print(f"Adjustments for {output['document_id']}: {len(output['history'])}")
        for h in output["history"]:
            print(f"  [{h['persona_id']}] {h['field_path']:<28} "
                  f"{h['confidence_score']:.2f}  {h['reason']}")
        return
    print(f"Document: {output['document_id']}  signals: {output['signal_count']}")
    for persona_id, adjustments in output["personas"].items():
        print(f"  {persona_id}: {len(adjustments)} adjustments")
        for adj in adjustments:
            print(f"    {adj['field_path']:<28} {adj['confidence_score']:.2f}  {adj['reason']}")


def main():
    """Run a document end-to-end: extract signals, adjust personas, commit."""
    from personatune.ingest.pipeline import process_document
    from personatune.rules.rule_store import load_rule_set

    parser = argparse.ArgumentParser(description="Adjust persona state from an RFP")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    group.add_argument("--text", help="Inline document text")
    group.add_argument("--history", action="store_true", help="Show adjustments for a document")

    parser.add_argument("--persona-id", help="Target persona")
    parser.add_argument("--all-personas", action="store_true", help="Adjust every persona")
    parser.add_argument("--document-id", help="Document identifier")
    parser.add_argument("--force", action="store_true", help="Re-process identical input")
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    db = args.db_path

    try:
        if args.history:
            if not args.document_id:
                parser.error("--history requires --document-id")
            output = {
                "document_id": args.document_id,
                "history": get_adjustment_history(args.document_id, args.persona_id, db_path=db),
            }
        else:
            if not args.persona_id and not args.all_personas:
                parser.error("--persona-id or --all-personas is required")
            if args.file:
                from personatune.ingest.document_reader import read_document_pages
                document = read_document_pages(args.file)
            else:
                document = args.text
            processed = process_document(document, document_id=args.document_id,
                                         db_path=db, force=args.force)
            signals = processed["signals"]
            rules = load_rule_set(db_path=db)
            if args.all_personas:
                results = adjust_all_personas(signals, rules, processed["document_id"], db_path=db)
            else:
                results = {args.persona_id: adjust_persona(
                    args.persona_id, signals, rules, processed["document_id"], db_path=db)}
            output = {
                "document_id": processed["document_id"],
                "signal_count": len(signals),
                "personas": {
                    pid: [a.to_dict() for a in adjustments]
                    for pid, adjustments in results.items()
                },
            }
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    else:
        _print_human(output)


if __name__ == "__main__":
    main()
