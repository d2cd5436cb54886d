#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Persona persistence: evaluator profiles and their decision state.

A persona row holds the core traits (bounded numerics and free text). The
adjustable part of the state (weights, thresholds, focus keywords) lives in
persona_states. A persona without a stored state starts from defaults:

    weights         equal shares (1/6 each)
    thresholds      60, shifted by traits (analytical communication style,
                    technical expertise, decision influence, horizontal team
                    dynamics, innovation openness, industry experience)
    focus_keywords  words from kpi and strategic_priority, plus rank-based
                    terms for CTO/technical and CFO/finance roles

Usage:
    python -m personatune.persona.persona_store --create --name "김철수" \
        --rank CTO --technical-expertise 8 [--json]
    python -m personatune.persona.persona_store --get --persona-id ID [--json]
    python -m personatune.persona.persona_store --list [--json]
    python -m personatune.persona.persona_store --state --persona-id ID [--json]
"""

import argparse
import json
import math
import os
import re
import sqlite3
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from personatune.audit.audit_logger import log_event
from personatune.persona.persona_state import (
    BOUNDED_CORE_FIELDS,
    METRICS,
    TEXT_CORE_FIELDS,
    PersonaState,
    threshold_key,
)

# --- Path setup ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))

# --- Constants ---
BASE_THRESHOLD = 60

DEFAULT_TRAITS = {
    "budget_authority": 5,
    "decision_influence": 5,
    "technical_expertise": 5,
    "risk_tolerance": 5,
    "innovation_openness": 5,
    "industry_experience": 15,
}

PERSONA_COLUMNS = ["company", "department"] + TEXT_CORE_FIELDS + list(BOUNDED_CORE_FIELDS)

RANK_KEYWORDS = [
    (("CTO", "기술"), ["기술", "혁신", "AI", "디지털"], ["단순", "기존방식"]),
    (("CFO", "재무"), ["ROI", "비용", "효율", "수익"], ["고비용", "비효율"]),
]

_WORD_SPLIT_RE = re.compile(r"[,\s]+")


class PersonaNotFoundError(LookupError):
    """Raised when a persona id has no row in the store."""

    def __init__(self, persona_id):
        super().__init__(f"Persona not found: {persona_id}")
        self.persona_id = persona_id


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_db(db_path=None):
    """Open a database connection with WAL mode and foreign keys."""
    conn = sqlite3.connect(str(db_path or DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _now():
    return datetime.now(timezone.utc).isoformat()


def _gen_id(prefix="persona"):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

def default_thresholds(persona) -> dict:
    """Per-metric minimum scores derived from persona traits."""
    traits = {**DEFAULT_TRAITS, **{k: v for k, v in persona.items() if v is not None}}
    return {
        "min_clarity": BASE_THRESHOLD + (5 if traits.get("communication_style") == "분석적" else 0),
        "min_expertise": BASE_THRESHOLD + math.floor((traits["technical_expertise"] - 5) * 2),
        "min_persuasion": BASE_THRESHOLD + math.floor((traits["decision_influence"] - 5) * 2),
        "min_logic": BASE_THRESHOLD + (3 if traits.get("team_dynamics") == "수평적" else 0),
        "min_creativity": BASE_THRESHOLD + math.floor((traits["innovation_openness"] - 5) * 2),
        "min_reliability": BASE_THRESHOLD + math.floor((traits["industry_experience"] - 15) * 0.5),
    }


def default_focus_keywords(persona) -> dict:
    boost, penalty = [], []
    for source in ("kpi", "strategic_priority"):
        text = persona.get(source) or ""
        boost.extend(w for w in _WORD_SPLIT_RE.split(text) if len(w) > 2)

    rank = persona.get("rank") or ""
    for markers, boost_words, penalty_words in RANK_KEYWORDS:
        if any(m in rank for m in markers):
            boost.extend(boost_words)
            penalty.extend(penalty_words)

    # dict.fromkeys keeps first-seen order
    return {
        "boost": list(dict.fromkeys(boost)),
        "penalty": list(dict.fromkeys(penalty)),
    }


def default_state(persona) -> PersonaState:
    """Starting PersonaState for a persona record (dict of traits)."""
    core = {}
    for name in BOUNDED_CORE_FIELDS:
        value = persona.get(name)
        core[name] = float(value if value is not None else DEFAULT_TRAITS[name])
    for name in TEXT_CORE_FIELDS:
        core[name] = persona.get(name)
    thresholds = default_thresholds(persona)
    return PersonaState(
        core=core,
        weights={m: 1.0 / len(METRICS) for m in METRICS},
        thresholds={threshold_key(m): float(thresholds[threshold_key(m)]) for m in METRICS},
        focus_keywords=default_focus_keywords(persona),
    )


# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------

def create_persona(name, db_path=None, persona_id=None, **traits):
    """Create a persona and its initial state.

    Args:
        name: Display name.
        persona_id: Optional explicit id.
        **traits: Any of PERSONA_COLUMNS.

    Returns:
        dict of the stored persona row.

    Raises:
        ValueError: unknown trait or numeric trait out of range.
    """
    unknown = sorted(set(traits) - set(PERSONA_COLUMNS))
    if unknown:
        raise ValueError(f"Unknown persona fields: {unknown}")
    record = {**DEFAULT_TRAITS, **{k: v for k, v in traits.items() if v is not None}}
    for field_name, (low, high) in BOUNDED_CORE_FIELDS.items():
        value = float(record[field_name])
        if not low <= value <= high:
            raise ValueError(f"{field_name}={value} outside [{low:g}, {high:g}]")
        record[field_name] = value

    persona_id = persona_id or _gen_id()
    now = _now()
    columns = ["id", "name"] + PERSONA_COLUMNS + ["created_at", "updated_at"]
    values = [persona_id, name] + [record.get(c) for c in PERSONA_COLUMNS] + [now, now]
    state = default_state(record)

    conn = _get_db(db_path)
    try:
        conn.execute(
            f"INSERT INTO personas ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        _write_state_row(conn, persona_id, state, document_id=None, now=now)
        log_event(
            "persona.create", "system", f"Created persona: {name}",
            entity_type="persona", entity_id=persona_id,
            details={"rank": record.get("rank"), "company": record.get("company")},
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    return get_persona(persona_id, db_path=db_path)


def get_persona(persona_id, db_path=None, conn=None):
    """Return the persona row as a dict, or None."""
    own = conn is None
    conn = conn or _get_db(db_path)
    try:
        row = conn.execute("SELECT * FROM personas WHERE id = ?", (persona_id,)).fetchone()
    finally:
        if own:
            conn.close()
    return dict(row) if row else None


def list_personas(db_path=None):
    conn = _get_db(db_path)
    try:
        rows = conn.execute(
            "SELECT p.*, s.version AS state_version, s.last_document_id "
            "FROM personas p LEFT JOIN persona_states s ON s.persona_id = p.id "
            "ORDER BY p.created_at, p.id"
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

def load_persona_state(persona_id, db_path=None, conn=None) -> PersonaState:
    """Current PersonaState of a persona.

    Raises:
        PersonaNotFoundError: no persona with this id.
    """
    own = conn is None
    conn = conn or _get_db(db_path)
    try:
        persona = conn.execute("SELECT * FROM personas WHERE id = ?", (persona_id,)).fetchone()
        if persona is None:
            raise PersonaNotFoundError(persona_id)
        row = conn.execute(
            "SELECT weights, thresholds, focus_keywords FROM persona_states WHERE persona_id = ?",
            (persona_id,),
        ).fetchone()
    finally:
        if own:
            conn.close()

    state = default_state(dict(persona))
    if row:
        state.weights = {k: float(v) for k, v in json.loads(row["weights"]).items()}
        state.thresholds = {k: float(v) for k, v in json.loads(row["thresholds"]).items()}
        state.focus_keywords = json.loads(row["focus_keywords"])
    return state


def _write_state_row(conn, persona_id, state, document_id, now):
    conn.execute(
        "INSERT INTO persona_states "
        "(persona_id, weights, thresholds, focus_keywords, version, last_document_id, updated_at) "
        "VALUES (?, ?, ?, ?, 1, ?, ?) "
        "ON CONFLICT(persona_id) DO UPDATE SET "
        "weights = excluded.weights, thresholds = excluded.thresholds, "
        "focus_keywords = excluded.focus_keywords, version = persona_states.version + 1, "
        "last_document_id = excluded.last_document_id, updated_at = excluded.updated_at",
        (
            persona_id,
            json.dumps(state.weights),
            json.dumps(state.thresholds),
            json.dumps(state.focus_keywords, ensure_ascii=False),
            document_id,
            now,
        ),
    )


def save_persona_state(conn, persona_id, state, document_id=None):
    """Write core traits and decision state inside the caller's transaction.

    Returns:
        the new state version.
    """
    now = _now()
    fields = list(BOUNDED_CORE_FIELDS) + TEXT_CORE_FIELDS
    cur = conn.execute(
        f"UPDATE personas SET {', '.join(f'{f} = ?' for f in fields)}, updated_at = ? "
        "WHERE id = ?",
        [state.core.get(f) for f in fields] + [now, persona_id],
    )
    if cur.rowcount == 0:
        raise PersonaNotFoundError(persona_id)
    _write_state_row(conn, persona_id, state, document_id, now)
    return conn.execute(
        "SELECT version FROM persona_states WHERE persona_id = ?", (persona_id,)
    ).fetchone()[0]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_human(output):
    if "personas" in output:
        print(f"Personas: {len(output['personas'])}")
        for p in output["personas"]:
            print(f"  {p['id']:<22} {p['name']:<12} {p.get('rank') or '':<8} "
                  f"v{p.get('state_version') or 0}")
    elif "weights" in output:
        print("Weights:")
        for metric, weight in output["weights"].items():
            print(f"  {metric:<12} {weight:.4f}")
        print("Thresholds:")
        for key, value in output["thresholds"].items():
            print(f"  {key:<16} {value:.1f}")
        print(f"Focus: +{output['focus_keywords'].get('boost')} "
              f"-{output['focus_keywords'].get('penalty')}")
    else:
        for key, value in output.items():
            print(f"  {key}: {value}")


def main():
    """CLI entry point for persona management."""
    parser = argparse.ArgumentParser(description="PersonaTune persona store")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--create", action="store_true", help="Create a persona")
    group.add_argument("--get", action="store_true", help="Show a persona")
    group.add_argument("--list", action="store_true", help="List personas")
    group.add_argument("--state", action="store_true", help="Show a persona's decision state")

    parser.add_argument("--persona-id", help="Persona id")
    parser.add_argument("--name", help="Persona name (for --create)")
    for column in PERSONA_COLUMNS:
        kind = float if column in BOUNDED_CORE_FIELDS else str
        parser.add_argument(f"--{column.replace('_', '-')}", type=kind)
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()
    db = args.db_path

    try:
        if args.create:
            if not args.name:
                parser.error("--create requires --name")
            traits = {c: getattr(args, c) for c in PERSONA_COLUMNS}
            output = create_persona(args.name, db_path=db, persona_id=args.persona_id, **traits)
        elif args.list:
            output = {"personas": list_personas(db_path=db)}
        else:
            if not args.persona_id:
                parser.error("--get/--state requires --persona-id")
            if args.get:
                output = get_persona(args.persona_id, db_path=db)
                if output is None:
                    raise PersonaNotFoundError(args.persona_id)
            else:
                output = load_persona_state(args.persona_id, db_path=db).to_dict()
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
