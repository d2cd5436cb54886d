#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Audit Logger — append-only audit trail writer for PersonaTune.

Logs rule loads, ingest jobs and persona adjustments to the audit_trail
table. No UPDATE/DELETE operations (the schema rejects them).

When a connection is passed in, the entry joins the caller's transaction so
it commits or rolls back together with the change it describes.

Usage:
    python -m personatune.audit.audit_logger \
        --event-type "persona.adjust" \
        --actor "analyst" \
        --action "Manual review of persona state" \
        --entity-id "persona-123" \
        --json
    python -m personatune.audit.audit_logger --list [--entity-id ID] [--json]
"""

import argparse
import json
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))


def _now():
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path=None):
    conn = sqlite3.connect(str(db_path or DB_PATH))
    conn.row_factory = sqlite3.Row
    return conn


def log_event(event_type: str, actor: str, action: str,
              entity_type: str = None, entity_id: str = None,
              details: dict = None, conn=None, db_path=None) -> dict:
    """Append an event to the audit trail. Returns the entry."""
    entry = {
        "event_type": event_type,
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": json.dumps(details or {}, ensure_ascii=False, default=str),
        "created_at": _now(),
    }
    sql = (
        "INSERT INTO audit_trail "
        "(event_type, actor, action, entity_type, entity_id, details, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)"
    )
    params = (entry["event_type"], entry["actor"], entry["action"],
              entry["entity_type"], entry["entity_id"], entry["details"],
              entry["created_at"])

    if conn is not None:
        cur = conn.execute(sql, params)
        entry["id"] = cur.lastrowid
        return entry

    own = _connect(db_path)
    try:
        cur = own.execute(sql, params)
        own.commit()
        entry["id"] = cur.lastrowid
    finally:
        own.close()
    return entry


def list_events(event_type: str = None, entity_id: str = None,
                limit: int = 100, db_path=None) -> list:
    """Return audit entries, newest first."""
    clauses, params = [], []
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
    params.append(int(limit))

    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT id, event_type, actor, action, entity_type, entity_id, "
            f"details, created_at FROM audit_trail {where}"
            "ORDER BY id DESC LIMIT ?",
            params,
        ).fetchall()
    finally:
        conn.close()

    events = []
    for row in rows:
        event = dict(row)
        try:
            event["details"] = json.loads(event["details"] or "{}")
        except json.JSONDecodeError:
            pass
        events.append(event)
    return events


def main():
    parser = argparse.ArgumentParser(description="PersonaTune Audit Logger")
    parser.add_argument("--list", action="store_true", help="List audit entries")
    parser.add_argument("--event-type")
    parser.add_argument("--actor", default="cli")
    parser.add_argument("--action")
    parser.add_argument("--entity-type")
    parser.add_argument("--entity-id")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    try:
        if args.list:
            result = list_events(args.event_type, args.entity_id, args.limit, db_path=args.db_path)
        else:
            if not args.event_type or not args.action:
                parser.error("logging an event requires --event-type and --action")
            result = log_event(args.event_type, args.actor, args.action,
                               args.entity_type, args.entity_id, db_path=args.db_path)
    except sqlite3.Error as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    elif args.list:
        for ev in result:
            print(f"  {ev['created_at']}  [{ev['event_type']}] {ev['action']}")
    else:
        print(f"Logged: [{result['event_type']}] {result['action']}")


if __name__ == "__main__":
    main()
