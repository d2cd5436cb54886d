#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Rule engine -- fold signals through impact rules into a persona state.

For each signal (in document order), every enabled rule listening to the
signal's key is tried in (precedence, source_priority) order. Matching and
transforming are table-driven:

    match_type      exact | includes | regex | threshold | semantic
    transform_type  set | append | scale | boost_weight | set_threshold

A matched rule acts with

    effective_strength = impact_strength x signal.confidence x spw
                         (x 0.5 when signal.confidence < 0.6), <= 1

where spw is the source-priority weight (1 -> 1.0, 2 -> 0.9, 3 -> 0.8,
4 -> 0.7, else 0.6). Strengths under 0.01 are discarded as noise.

Transforms mutate a working copy of the state; later rules see the effects
of earlier ones, so rule order matters. Every field whose value changes
yields one StateAdjustment. Normalization and the commit happen in
personatune.persona.persona_adjuster.

Configuration problems (unknown target field, unparsable threshold pattern,
invalid regex, unknown semantic cluster) skip the rule with a warning.

Usage:
    python -m personatune.rules.rules_engine --text "..." [--json]
    python -m personatune.rules.rules_engine --file rfp.txt --state state.json [--json]
"""

import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from personatune.ingest.patterns import contains_keyword
from personatune.persona.persona_state import (
    BOUNDED_CORE_FIELDS,
    METRICS,
    THRESHOLD_KEYS,
    field_range,
    get_field,
    set_field,
    split_path,
    threshold_key,
)
from personatune.rules.rule_store import sort_rules

logger = logging.getLogger("personatune.rules")

# --- Constants ---
MIN_EFFECTIVE_STRENGTH = 0.01
LOW_CONFIDENCE = 0.6
LOW_CONFIDENCE_PENALTY = 0.5

SOURCE_PRIORITY_WEIGHT = {1: 1.0, 2: 0.9, 3: 0.8, 4: 0.7}
DEFAULT_SOURCE_PRIORITY_WEIGHT = 0.6

_THRESHOLD_RE = re.compile(r"^\s*([^\s<>=!]+)\s*(>=|<=|==|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")

_COMPARATORS = {
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    "==": lambda a, b: a == b,
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StateAdjustment:
    """One recorded persona field change."""
    persona_id: str
    field_path: str
    before_value: Any
    after_value: Any
    reason: str
    confidence_score: float
    rule_id: str
    signal_key: str

    def to_dict(self):
        return {
            "persona_id": self.persona_id,
            "field_path": self.field_path,
            "before_value": self.before_value,
            "after_value": self.after_value,
            "reason": self.reason,
            "confidence_score": self.confidence_score,
            "rule_id": self.rule_id,
            "signal_key": self.signal_key,
        }


@dataclass
class EngineResult:
    state: Any
    adjustments: List[StateAdjustment] = field(default_factory=list)
    matched: int = 0
    discarded: int = 0


# ---------------------------------------------------------------------------
# Strength
# ---------------------------------------------------------------------------

def source_priority_weight(source_priority):
    return SOURCE_PRIORITY_WEIGHT.get(source_priority, DEFAULT_SOURCE_PRIORITY_WEIGHT)


def effective_strength(impact_strength, signal_confidence, source_priority):
    """Magnitude in [0, 1] of one rule firing on one signal."""
    strength = impact_strength * signal_confidence * source_priority_weight(source_priority)
    if signal_confidence < LOW_CONFIDENCE:
        strength *= LOW_CONFIDENCE_PENALTY
    return max(0.0, min(1.0, strength))


def adjustment_confidence(impact_strength, signal_confidence, source_priority):
    """Confidence recorded on a StateAdjustment (no low-confidence penalty)."""
    score = impact_strength * signal_confidence * source_priority_weight(source_priority)
    return max(0.0, min(1.0, score))


def parse_threshold(pattern):
    """Parse ``field OP number``. Raises ValueError on bad syntax."""
    m = _THRESHOLD_RE.match(pattern or "")
    if not m:
        raise ValueError(f"unparsable threshold pattern '{pattern}'")
    return m.group(1), m.group(2), float(m.group(3))


# ---------------------------------------------------------------------------
# Matchers: (rule, signal, clusters) -> bool; ValueError = misconfigured rule
# ---------------------------------------------------------------------------

def _match_exact(rule, signal, clusters):
    return signal.value.strip() == rule.match_pattern.strip()


def _match_includes(rule, signal, clusters):
    text = signal.value.lower()
    alternatives = [a.strip().lower() for a in rule.match_pattern.split("|") if a.strip()]
    return any(a in text for a in alternatives)


def _match_regex(rule, signal, clusters):
    try:
        return re.search(rule.match_pattern, signal.value) is not None
    except re.error as exc:
        raise ValueError(f"invalid regex '{rule.match_pattern}': {exc}") from exc


def _match_threshold(rule, signal, clusters):
    field_name, op, number = parse_threshold(rule.match_pattern)
    payload = signal.normalized_payload
    value = payload.get(field_name)
    # evaluation signals carry {criterion, weight}; "tech>=0.35" reads the weight
    if value is None and payload.get("criterion") == field_name:
        value = payload.get("weight")
    if value is None or isinstance(value, bool):
        return False
    try:
        value = float(value)
    except (TypeError, ValueError):
        return False
    return _COMPARATORS[op](value, number)


def _match_semantic(rule, signal, clusters):
    keywords = clusters.get(rule.match_pattern)
    if keywords is None:
        raise ValueError(f"unknown semantic cluster '{rule.match_pattern}'")
    return any(contains_keyword(signal.value, kw) for kw in keywords)


MATCHERS = {
    "exact": _match_exact,
    "includes": _match_includes,
    "regex": _match_regex,
    "threshold": _match_threshold,
    "semantic": _match_semantic,
}


# ---------------------------------------------------------------------------
# Transforms: (state, path, payload, strength) -> (path, before, after) | None
# ---------------------------------------------------------------------------

def _require(payload, key, transform):
    if key not in payload:
        raise ValueError(f"{transform} requires transform_payload.{key}")
    return payload[key]


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric_value(path, value):
    if not _is_number(value):
        raise ValueError(f"set on {path} needs a number, got {type(value).__name__}")
    low, high = field_range(path)
    return max(low, min(high, float(value)))


def _mapping_value(state, root, value, known, value_range):
    if not isinstance(value, dict):
        raise ValueError(f"set on {root} needs a mapping, got {type(value).__name__}")
    unknown = sorted(set(value) - set(known))
    if unknown:
        raise ValueError(f"set on {root}: unknown keys {unknown}")
    merged = dict(getattr(state, root))
    for key, item in value.items():
        if not _is_number(item):
            raise ValueError(f"set on {root}.{key} needs a number, got {type(item).__name__}")
        merged[key] = max(value_range[0], min(value_range[1], float(item)))
    return merged


def _checked_set_value(state, path, value):
    """Coerce a ``set`` value to the target field's type; ValueError on mismatch."""
    root, key = split_path(path)
    if root == "weights":
        if key is None:
            return _mapping_value(state, root, value, METRICS, (0.0, 1.0))
        return _numeric_value(path, value)
    if root == "thresholds":
        if key is None:
            return _mapping_value(state, root, value, THRESHOLD_KEYS, (0.0, 100.0))
        return _numeric_value(path, value)
    if root == "focus_keywords":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError(f"set on {path} needs a list of strings")
        return list(value)
    if key in BOUNDED_CORE_FIELDS:
        return _numeric_value(path, value)
    if not isinstance(value, str):
        raise ValueError(f"set on {path} needs a string, got {type(value).__name__}")
    return value


def _transform_set(state, path, payload, strength):
    after = _checked_set_value(state, path, _require(payload, "value", "set"))
    before = get_field(state, path)
    set_field(state, path, after)
    return path, before, after


def _transform_append(state, path, payload, strength):
    value = _require(payload, "value", "append")
    before = get_field(state, path)
    if isinstance(before, list):
        items = value if isinstance(value, list) else [value]
        after = list(before)
        for item in items:
            if item not in after:
                after.append(item)
    elif before is None or isinstance(before, str):
        current = before or ""
        if str(value) in current:
            return None
        after = f"{current}, {value}" if current.strip() else str(value)
    else:
        raise ValueError(f"append needs a string or list field, {path} is {type(before).__name__}")
    set_field(state, path, after)
    return path, before, after


def _transform_scale(state, path, payload, strength):
    factor = float(_require(payload, "factor", "scale"))
    before = get_field(state, path)
    if not _is_number(before):
        raise ValueError(f"scale needs a numeric field, {path} is {type(before).__name__}")
    after = before * (1 + (factor - 1) * strength)
    if "min" in payload:
        after = max(after, float(payload["min"]))
    if "max" in payload:
        after = min(after, float(payload["max"]))
    declared = field_range(path)
    if declared:
        after = max(declared[0], min(declared[1], after))
    set_field(state, path, after)
    return path, before, after


def _transform_boost_weight(state, path, payload, strength):
    root, key = split_path(path)
    if root != "weights":
        raise ValueError(f"boost_weight targets weights, not {path}")
    metric = key or _require(payload, "metric", "boost_weight")
    weights = dict(state.weights)
    if metric not in weights:
        raise ValueError(f"no weight named '{metric}'")

    current = weights[metric]
    cap = float(payload.get("cap", 1.0))
    raised = min(current + float(payload.get("delta", 0.0)) * strength, cap)
    others = [k for k in weights if k != metric]
    other_total = sum(weights[k] for k in others)

    if other_total > 0:
        boosted = max(current, raised)
        if boosted == current:
            return None
        for k in others:
            weights[k] = weights[k] * (1.0 - boosted) / other_total
    else:
        # all weight sits on the boosted metric: clamp to cap, share the rest
        boosted = raised
        for k in others:
            weights[k] = (1.0 - boosted) / len(others)
    weights[metric] = boosted

    before = dict(state.weights)
    state.weights = weights
    return "weights", before, dict(weights)


def _transform_set_threshold(state, path, payload, strength):
    root, key = split_path(path)
    if root != "thresholds":
        raise ValueError(f"set_threshold targets thresholds, not {path}")
    if key is None:
        metric = str(_require(payload, "metric", "set_threshold"))
        key = metric if metric.startswith("min_") else threshold_key(metric)
    if key not in THRESHOLD_KEYS:
        raise ValueError(f"unknown threshold '{key}'")
    if key not in state.thresholds:
        raise ValueError(f"persona state has no threshold '{key}'")

    target = float(_require(payload, "value", "set_threshold"))
    before = state.thresholds[key]
    after = max(0.0, min(100.0, before + (target - before) * strength))
    state.thresholds[key] = after
    return f"thresholds.{key}", before, after


TRANSFORMS = {
    "set": _transform_set,
    "append": _transform_append,
    "scale": _transform_scale,
    "boost_weight": _transform_boost_weight,
    "set_threshold": _transform_set_threshold,
}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RuleEngine:
    """Applies one explicit rule set to persona states.

    Args:
        rules: ImpactRules; disabled rules are ignored.
        semantic_clusters: cluster name -> keyword list for semantic rules.
        min_strength: effective strength below which matches are dropped.
    """

    def __init__(self, rules, semantic_clusters=None, min_strength=MIN_EFFECTIVE_STRENGTH):
        self.rules = sort_rules([r for r in rules if r.enabled])
        self.semantic_clusters = dict(semantic_clusters or {})
        self.min_strength = min_strength
        self._rules_by_key: Dict[str, list] = {}
        for rule in self.rules:
            self._rules_by_key.setdefault(rule.signal_key, []).append(rule)
        self._warned = set()

    def _warn(self, rule, message):
        if (rule.id, message) in self._warned:
            return
        self._warned.add((rule.id, message))
        logger.warning("Rule %s skipped: %s", rule.id, message)

    def rules_for(self, signal_key):
        return list(self._rules_by_key.get(signal_key, []))

    def matches(self, rule, signal) -> bool:
        """True when ``rule`` fires on ``signal``; misconfigured rules never fire."""
        if rule.signal_key != signal.signal_key:
            return False
        try:
            return MATCHERS[rule.match_type](rule, signal, self.semantic_clusters)
        except ValueError as exc:
            self._warn(rule, str(exc))
            return False

    def apply(self, rule, state, strength) -> Optional[tuple]:
        """Apply one transform to ``state`` in place; None when nothing changed."""
        if split_path(rule.target_field) is None:
            self._warn(rule, f"unknown target field '{rule.target_field}'")
            return None
        try:
            change = TRANSFORMS[rule.transform_type](
                state, rule.target_field, rule.transform_payload, strength)
        except (ValueError, TypeError) as exc:
            self._warn(rule, str(exc))
            return None
        if change is None or change[1] == change[2]:
            return None
        return change

    def run(self, persona_id, state, signals) -> EngineResult:
        """Left fold of ``signals`` x sorted rules over a copy of ``state``."""
        working = state.copy()
        result = EngineResult(state=working)

        for signal in signals:
            for rule in self._rules_by_key.get(signal.signal_key, []):
                if not self.matches(rule, signal):
                    continue
                strength = effective_strength(
                    rule.impact_strength, signal.confidence, rule.source_priority)
                if strength < self.min_strength:
                    result.discarded += 1
                    logger.debug("Rule %s on %s: strength %.4f below floor",
                                 rule.id, signal.source_reference, strength)
                    continue
                result.matched += 1

                change = self.apply(rule, working, strength)
                if change is None:
                    continue
                path, before, after = change
                logger.debug("Rule %s: %s %r -> %r (s=%.4f)", rule.id, path, before, after, strength)
                result.adjustments.append(StateAdjustment(
                    persona_id=persona_id,
                    field_path=path,
                    before_value=before,
                    after_value=after,
                    reason=f"{rule.name} (signal: {signal.signal_key})",
                    confidence_score=adjustment_confidence(
                        rule.impact_strength, signal.confidence, rule.source_priority),
                    rule_id=rule.id,
                    signal_key=signal.signal_key,
                ))

        logger.info("Persona %s: %d signals, %d matches, %d discarded, %d adjustments",
                    persona_id, len(signals), result.matched, result.discarded,
                    len(result.adjustments))
        return result


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """Dry-run the seed rules against a document and a persona state."""
    from personatune.ingest.patterns import resolve_patterns
    from personatune.ingest.pipeline import extract_signals
    from personatune.persona.persona_state import PersonaState
    from personatune.persona.persona_store import default_state
    from personatune.persona.state_normalizer import normalize_state
    from personatune.rules.rule_store import load_seed_rules

    parser = argparse.ArgumentParser(description="Dry-run impact rules against a document")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    src.add_argument("--text", help="Inline document text")
    parser.add_argument("--state", help="PersonaState JSON file (default: neutral persona)")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        if args.file:
            from personatune.ingest.document_reader import read_document_pages
            document = read_document_pages(args.file)
        else:
            document = args.text
        if args.state:
            with open(args.state, "r", encoding="utf-8") as f:
                state = PersonaState.from_dict(json.load(f))
        else:
            state = default_state({})

        patterns = resolve_patterns()
        _sections, signals = extract_signals(document, patterns)
        engine = RuleEngine(load_seed_rules(), patterns.get("semantic_clusters"))
        result = engine.run("dry-run", state, signals)
        final = normalize_state(result.state)
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps({
            "signals": len(signals),
            "matched": result.matched,
            "discarded": result.discarded,
            "adjustments": [a.to_dict() for a in result.adjustments],
            "state": final.to_dict(),
        }, indent=2, ensure_ascii=False))
        return

    print(f"Signals: {len(signals)}  matched: {result.matched}  discarded: {result.discarded}")
    for adj in result.adjustments:
        print(f"  {adj.field_path:<32} {adj.confidence_score:.2f}  {adj.reason}")
    print("Weights:")
    for metric, weight in final.weights.items():
        print(f"  {metric:<12} {weight:.4f}")


if __name__ == "__main__":
    main()
