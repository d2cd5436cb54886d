#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Bring a persona state back inside its invariants after a rule run.

- negative weights become 0, weights are rescaled to sum to exactly 1.0
  (all-zero weights become equal shares)
- thresholds are clamped to [0, 100]
- bounded core numerics are clamped to their declared ranges

The input state is never modified.
"""

from personatune.persona.persona_state import (
    BOUNDED_CORE_FIELDS,
    METRICS,
    THRESHOLD_RANGE,
)


def clamp(value, low, high):
    return max(low, min(high, value))


def normalize_weights(weights):
    """Return weights with no negatives that sum to exactly 1.0."""
    keys = list(weights) or list(METRICS)
    cleaned = {k: max(0.0, float(weights.get(k, 0.0))) for k in keys}
    total = sum(cleaned.values())
    if total <= 0:
        share = 1.0 / len(keys)
        normalized = {k: share for k in keys}
    else:
        normalized = {k: v / total for k, v in cleaned.items()}
    # push the float residue onto the largest weight so the sum is exact
    residue = 1.0 - sum(normalized.values())
    if residue:
        largest = max(normalized, key=normalized.get)
        normalized[largest] += residue
    return normalized


def normalize_state(state):
    """Return a normalized copy of ``state``."""
    result = state.copy()
    result.weights = normalize_weights(result.weights)

    low, high = THRESHOLD_RANGE
    result.thresholds = {
        k: clamp(float(v), low, high) for k, v in result.thresholds.items()
    }

    for name, (low, high) in BOUNDED_CORE_FIELDS.items():
        value = result.core.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            result.core[name] = clamp(float(value), low, high)
    return result
