#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Persona decision state and dotted-path access into it.

State layout:
    core            bounded numerics (1-10, industry_experience 0-50 years)
                    and free-text traits (kpi, strategic_priority, ...)
    weights         clarity, expertise, persuasion, logic, creativity,
                    reliability (sum to 1.0)
    thresholds      min_<metric>, each in [0, 100]
    focus_keywords  {"boost": [...], "penalty": [...]}

Rule target fields address this layout with dotted paths such as
``core.technical_expertise``, ``weights``, ``thresholds.min_expertise`` or
``focus_keywords.boost``.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

METRICS = ["clarity", "expertise", "persuasion", "logic", "creativity", "reliability"]

BOUNDED_CORE_FIELDS = {
    "budget_authority": (1.0, 10.0),
    "decision_influence": (1.0, 10.0),
    "technical_expertise": (1.0, 10.0),
    "risk_tolerance": (1.0, 10.0),
    "innovation_openness": (1.0, 10.0),
    "industry_experience": (0.0, 50.0),
}

TEXT_CORE_FIELDS = [
    "kpi", "evaluation_focus", "strategic_priority",
    "communication_style", "team_dynamics", "rank",
]

THRESHOLD_RANGE = (0.0, 100.0)

FOCUS_LISTS = ["boost", "penalty"]

STATE_ROOTS = ["core", "weights", "thresholds", "focus_keywords"]


def threshold_key(metric):
    return f"min_{metric}"


THRESHOLD_KEYS = [threshold_key(m) for m in METRICS]


@dataclass
class PersonaState:
    """Mutable decision profile of one persona."""
    core: Dict[str, Any] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)
    thresholds: Dict[str, float] = field(default_factory=dict)
    focus_keywords: Dict[str, List[str]] = field(
        default_factory=lambda: {"boost": [], "penalty": []}
    )

    def copy(self) -> "PersonaState":
        return copy.deepcopy(self)

    def to_dict(self):
        return {
            "core": dict(self.core),
            "weights": dict(self.weights),
            "thresholds": dict(self.thresholds),
            "focus_keywords": {k: list(v) for k, v in self.focus_keywords.items()},
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            core=dict(data.get("core") or {}),
            weights={k: float(v) for k, v in (data.get("weights") or {}).items()},
            thresholds={k: float(v) for k, v in (data.get("thresholds") or {}).items()},
            focus_keywords={
                k: list(v) for k, v in (data.get("focus_keywords") or {}).items()
            } or {"boost": [], "penalty": []},
        )


# ---------------------------------------------------------------------------
# Dotted paths
# ---------------------------------------------------------------------------

def split_path(path) -> Optional[Tuple[str, Optional[str]]]:
    """Validate a target path; returns (root, key) or None when unknown.

    ``weights`` and ``thresholds`` may be addressed as a whole (key None);
    every other root needs a known key.
    """
    if not path:
        return None
    root, _, key = path.partition(".")
    if "." in key:
        return None
    if root == "weights":
        if not key:
            return root, None
        return (root, key) if key in METRICS else None
    if root == "thresholds":
        if not key:
            return root, None
        return (root, key) if key in THRESHOLD_KEYS else None
    if root == "core":
        return (root, key) if key in BOUNDED_CORE_FIELDS or key in TEXT_CORE_FIELDS else None
    if root == "focus_keywords":
        return (root, key) if key in FOCUS_LISTS else None
    return None


def field_range(path) -> Optional[Tuple[float, float]]:
    """Declared numeric range of a path, or None for non-numeric fields."""
    parts = split_path(path)
    if not parts or parts[1] is None:
        return None
    root, key = parts
    if root == "core":
        return BOUNDED_CORE_FIELDS.get(key)
    if root == "thresholds":
        return THRESHOLD_RANGE
    if root == "weights":
        return (0.0, 1.0)
    return None


def get_field(state, path):
    """Read a value by dotted path (copies containers). KeyError if unknown."""
    parts = split_path(path)
    if parts is None:
        raise KeyError(path)
    root, key = parts
    container = getattr(state, root)
    value = container if key is None else container.get(key)
    return copy.deepcopy(value)


def set_field(state, path, value):
    """Write a value by dotted path on ``state`` in place. KeyError if unknown."""
    parts = split_path(path)
    if parts is None:
        raise KeyError(path)
    root, key = parts
    if key is None:
        setattr(state, root, copy.deepcopy(value))
    else:
        getattr(state, root)[key] = copy.deepcopy(value)
