#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Impact rule model and rule store.

Rules are plain data: which signal key they listen to, how they match the
signal, which persona state field they change and how. The shipped default
set lives in args/impact_rules.yaml; ``seed_default_rules`` copies it into
the impact_rules table, where custom rules can be added and any rule can be
disabled.

Callers load a rule set once (``load_rule_set``) and pass it into the rule
engine explicitly.

Usage:
    python -m personatune.rules.rule_store --seed [--json]
    python -m personatune.rules.rule_store --list [--signal-key kpis] [--json]
    python -m personatune.rules.rule_store --show-seed [--json]
    python -m personatune.rules.rule_store --add --rule-json '{"name": ...}' [--json]
    python -m personatune.rules.rule_store --disable --rule-id RULE [--json]
    python -m personatune.rules.rule_store --enable --rule-id RULE [--json]
"""

import argparse
import json
import logging
import os
import sqlite3
import sys
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from personatune.audit.audit_logger import log_event
from personatune.ingest.patterns import SIGNAL_KEYS

# --- Path setup ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))
SEED_RULES_PATH = BASE_DIR / "args" / "impact_rules.yaml"

# --- YAML import (graceful) ---
try:
    import yaml
except ImportError:
    yaml = None

logger = logging.getLogger("personatune.rules")

# --- Constants ---
VALID_MATCH_TYPES = ["exact", "includes", "regex", "threshold", "semantic"]

VALID_TRANSFORM_TYPES = ["set", "append", "scale", "boost_weight", "set_threshold"]

VALID_RULE_TYPES = ["seed", "custom"]


@dataclass(frozen=True)
class ImpactRule:
    """One configured signal -> persona state transform."""
    id: str
    name: str
    target_field: str
    signal_key: str
    match_type: str
    transform_type: str
    impact_strength: float
    match_pattern: str = ""
    transform_payload: Dict[str, Any] = field(default_factory=dict)
    precedence: int = 100
    source_priority: int = 3
    enabled: bool = True
    description: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Rule id is required")
        if not self.target_field:
            raise ValueError(f"Rule {self.id}: target_field is required")
        if self.signal_key not in SIGNAL_KEYS:
            raise ValueError(
                f"Rule {self.id}: invalid signal_key '{self.signal_key}'. "
                f"Must be one of: {SIGNAL_KEYS}"
            )
        if self.match_type not in VALID_MATCH_TYPES:
            raise ValueError(
                f"Rule {self.id}: invalid match_type '{self.match_type}'. "
                f"Must be one of: {VALID_MATCH_TYPES}"
            )
        if self.transform_type not in VALID_TRANSFORM_TYPES:
            raise ValueError(
                f"Rule {self.id}: invalid transform_type '{self.transform_type}'. "
                f"Must be one of: {VALID_TRANSFORM_TYPES}"
            )
        if not 0.0 <= self.impact_strength <= 1.0:
            raise ValueError(
                f"Rule {self.id}: impact_strength {self.impact_strength} outside [0, 1]"
            )

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        payload = data.get("transform_payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        try:
            strength = float(data.get("impact_strength", 0.5))
            precedence = int(data.get("precedence", 100))
            source_priority = int(data.get("source_priority", 3))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Rule {data.get('id')}: bad numeric field: {exc}") from exc
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or data.get("id") or "",
            target_field=data.get("target_field", ""),
            signal_key=data.get("signal_key", ""),
            match_type=data.get("match_type", ""),
            match_pattern=str(data.get("match_pattern") or ""),
            transform_type=data.get("transform_type", ""),
            transform_payload=dict(payload),
            impact_strength=strength,
            precedence=precedence,
            source_priority=source_priority,
            enabled=bool(data.get("enabled", True)),
            description=data.get("description") or "",
        )


def sort_rules(rules):
    """Order rules by (precedence, source_priority); stable for ties."""
    return sorted(rules, key=lambda r: (r.precedence, r.source_priority))


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


def _gen_id(prefix="rule"):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _row_to_rule(row):
    data = dict(row)
    data["enabled"] = bool(data["enabled"])
    return ImpactRule.from_dict(data)


# ---------------------------------------------------------------------------
# Seed rules (YAML)
# ---------------------------------------------------------------------------

def load_seed_rules(path=None) -> List[ImpactRule]:
    """Read the default rule set from YAML, sorted for evaluation.

    Raises:
        ValueError: a rule definition is invalid or ids repeat.
    """
    if yaml is None:
        raise RuntimeError(
            "PyYAML is required for impact rules. Install with: pip install pyyaml"
        )
    rules_path = Path(path) if path else SEED_RULES_PATH
    if not rules_path.exists():
        raise FileNotFoundError(f"Impact rules not found: {rules_path}")

    with open(rules_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    rules = [ImpactRule.from_dict(d) for d in data.get("seed_rules", [])]
    ids = [r.id for r in rules]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"Duplicate rule ids in {rules_path.name}: {duplicates}")
    return sort_rules(rules)


# ---------------------------------------------------------------------------
# Rule store (SQLite)
# ---------------------------------------------------------------------------

def _write_rule(conn, rule, rule_type, seq):
    now = _now()
    existing = conn.execute(
        "SELECT id FROM impact_rules WHERE id = ?", (rule.id,)
    ).fetchone()
    values = (
        rule.name, rule.description, rule.target_field, rule.signal_key,
        rule.match_type, rule.match_pattern, rule.transform_type,
        json.dumps(rule.transform_payload, ensure_ascii=False),
        rule.impact_strength, rule.precedence, rule.source_priority,
        seq, 1 if rule.enabled else 0,
    )
    if existing:
        conn.execute(
            "UPDATE impact_rules SET name = ?, description = ?, target_field = ?, "
            "signal_key = ?, match_type = ?, match_pattern = ?, transform_type = ?, "
            "transform_payload = ?, impact_strength = ?, precedence = ?, "
            "source_priority = ?, seq = ?, enabled = ?, rule_type = ?, updated_at = ? "
            "WHERE id = ?",
            values + (rule_type, now, rule.id),
        )
    else:
        conn.execute(
            "INSERT INTO impact_rules "
            "(name, description, target_field, signal_key, match_type, match_pattern, "
            "transform_type, transform_payload, impact_strength, precedence, "
            "source_priority, seq, enabled, rule_type, id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            values + (rule_type, rule.id, now, now),
        )


def seed_default_rules(db_path=None, path=None):
    """Copy the YAML seed rules into the store (upsert by id).

    Seed rules missing from the file are disabled so the file stays the
    source of truth for the default set. Custom rules are untouched.

    Returns:
        dict with rules_loaded count and list of rule IDs.
    """
    rules = load_seed_rules(path)
    conn = _get_db(db_path)
    try:
        conn.execute(
            "UPDATE impact_rules SET enabled = 0, updated_at = ? WHERE rule_type = 'seed'",
            (_now(),),
        )
        for seq, rule in enumerate(rules):
            _write_rule(conn, rule, "seed", seq)

        rule_ids = [r.id for r in rules]
        log_event(
            "rules.seed", "system",
            f"Loaded {len(rule_ids)} seed rules from impact_rules.yaml",
            entity_type="impact_rules", details={"rule_ids": rule_ids},
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Seeded %d impact rules", len(rules))
    return {
        "rules_loaded": len(rules),
        "rule_ids": rule_ids,
        "loaded_at": _now(),
    }


def get_active_rules(signal_key=None, db_path=None) -> List[ImpactRule]:
    """Return enabled rules in evaluation order.

    Args:
        signal_key: Optional filter.
        db_path: Optional database path override.
    """
    if signal_key and signal_key not in SIGNAL_KEYS:
        raise ValueError(f"Invalid signal_key '{signal_key}'. Must be one of: {SIGNAL_KEYS}")

    conn = _get_db(db_path)
    try:
        if signal_key:
            rows = conn.execute(
                "SELECT * FROM impact_rules WHERE enabled = 1 AND signal_key = ? "
                "ORDER BY precedence, source_priority, seq",
                (signal_key,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM impact_rules WHERE enabled = 1 "
                "ORDER BY precedence, source_priority, seq",
            ).fetchall()
    finally:
        conn.close()
    return [_row_to_rule(row) for row in rows]


def load_rule_set(db_path=None) -> List[ImpactRule]:
    """Active rules from the store; the YAML seed set when the store is empty."""
    conn = _get_db(db_path)
    try:
        total = conn.execute("SELECT COUNT(*) FROM impact_rules").fetchone()[0]
    finally:
        conn.close()
    if total == 0:
        logger.info("Rule store empty; using seed rules from %s", SEED_RULES_PATH.name)
        return load_seed_rules()
    return get_active_rules(db_path=db_path)


def get_rule(rule_id, db_path=None) -> Optional[ImpactRule]:
    conn = _get_db(db_path)
    try:
        row = conn.execute("SELECT * FROM impact_rules WHERE id = ?", (rule_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_rule(row) if row else None


def add_rule(rule_def, db_path=None, actor="admin") -> ImpactRule:
    """Add a custom rule.

    Args:
        rule_def: dict of ImpactRule fields; ``id`` is generated when absent.

    Raises:
        ValueError: invalid definition or id already in use.
    """
    data = dict(rule_def)
    data["id"] = data.get("id") or _gen_id()
    rule = ImpactRule.from_dict(data)

    conn = _get_db(db_path)
    try:
        if conn.execute("SELECT 1 FROM impact_rules WHERE id = ?", (rule.id,)).fetchone():
            raise ValueError(f"Rule id already exists: {rule.id}")
        seq = conn.execute("SELECT COALESCE(MAX(seq), -1) + 1 FROM impact_rules").fetchone()[0]
        _write_rule(conn, rule, "custom", seq)
        log_event(
            "rules.add", actor,
            f"Added custom rule: {rule.name}",
            entity_type="impact_rules", entity_id=rule.id,
            details={
                "signal_key": rule.signal_key,
                "target_field": rule.target_field,
                "match_type": rule.match_type,
                "transform_type": rule.transform_type,
            },
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()
    return rule


def set_rule_enabled(rule_id, enabled, db_path=None, actor="admin"):
    """Enable or disable a stored rule.

    Raises:
        LookupError: no rule with this id.
    """
    conn = _get_db(db_path)
    try:
        cur = conn.execute(
            "UPDATE impact_rules SET enabled = ?, updated_at = ? WHERE id = ?",
            (1 if enabled else 0, _now(), rule_id),
        )
        if cur.rowcount == 0:
            raise LookupError(f"Rule {rule_id} not found")
        log_event(
            "rules.enable" if enabled else "rules.disable", actor,
            f"{'Enabled' if enabled else 'Disabled'} rule {rule_id}",
            entity_type="impact_rules", entity_id=rule_id,
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()
    return {"rule_id": rule_id, "enabled": bool(enabled)}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_human(output):
    if "rules" in output:
        print(f"Rules: {output['rule_count']}")
        for r in output["rules"]:
            flag = "" if r["enabled"] else " (disabled)"
            print(f"  {r['precedence']:>3}/{r['source_priority']}  {r['id']:<28} "
                  f"{r['signal_key']:<22} -> {r['target_field']}{flag}")
            print(f"        {r['match_type']} '{r['match_pattern']}' => "
                  f"{r['transform_type']} {json.dumps(r['transform_payload'], ensure_ascii=False)} "
                  f"@ {r['impact_strength']}")
    elif "rules_loaded" in output:
        print(f"Seeded {output['rules_loaded']} rules")
    else:
        for key, value in output.items():
            print(f"  {key}: {value}")


def main():
    """CLI entry point for the rule store."""
    parser = argparse.ArgumentParser(description="PersonaTune impact rule store")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--seed", action="store_true", help="Load args/impact_rules.yaml into the store")
    group.add_argument("--list", action="store_true", help="List active rules")
    group.add_argument("--show-seed", action="store_true", help="Show the YAML seed rules")
    group.add_argument("--add", action="store_true", help="Add a custom rule")
    group.add_argument("--enable", action="store_true", help="Enable a rule")
    group.add_argument("--disable", action="store_true", help="Disable a rule")

    parser.add_argument("--signal-key", help="Filter by signal key (for --list)")
    parser.add_argument("--rule-json", help="Rule definition as JSON (for --add)")
    parser.add_argument("--rule-id", help="Rule id (for --enable/--disable)")
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    db = args.db_path

    try:
        if args.seed:
            output = seed_default_rules(db_path=db)
            output["status"] = "seeded"
        elif args.list or args.show_seed:
            rules = (get_active_rules(signal_key=args.signal_key, db_path=db)
                     if args.list else load_seed_rules())
            output = {
                "status": "listed",
                "rule_count": len(rules),
                "rules": [r.to_dict() for r in rules],
            }
        elif args.add:
            if not args.rule_json:
                parser.error("--add requires --rule-json")
            rule = add_rule(json.loads(args.rule_json), db_path=db)
            output = {"status": "added", **rule.to_dict()}
        else:
            if not args.rule_id:
                parser.error("--enable/--disable requires --rule-id")
            output = set_rule_enabled(args.rule_id, args.enable, db_path=db)
            output["status"] = "updated"
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
