#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Replaceable pattern and keyword tables for RFP signal extraction.

Loads args/extraction_patterns.yaml (section-title keywords, signal keyword
clusters, monetary unit scales, semantic clusters) and provides the small
text helpers shared by the page segmenter, section structurer and signal
extractor.

Every pipeline function accepts a ``patterns`` mapping so a caller can swap
the whole table set (e.g. for an English-only corpus) without code changes.

Usage:
    python -m personatune.ingest.patterns --show [--json]
    python -m personatune.ingest.patterns --money "총 사업비 60억원" [--json]
"""

import argparse
import json
import re
import sys
from functools import lru_cache
from pathlib import Path

# --- Path setup ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent
PATTERNS_PATH = BASE_DIR / "args" / "extraction_patterns.yaml"

# --- YAML import (graceful) ---
try:
    import yaml
except ImportError:
    yaml = None

# --- Closed enums ---
SECTION_PRIORITY = [
    "kpi", "evaluation", "budget", "governance", "technical",
    "strategic", "compliance", "innovation", "intro", "scope", "timeline",
]

SIGNAL_KEYS = [
    "kpis", "evaluation_criteria", "budget_procurement",
    "governance_decision", "technical_requirements", "strategic_themes",
    "risk_compliance", "innovation_poc",
]

# Section type -> signal key whose evidence normally lives there
SECTION_SIGNAL_KEY = {
    "kpi": "kpis",
    "evaluation": "evaluation_criteria",
    "budget": "budget_procurement",
    "governance": "governance_decision",
    "technical": "technical_requirements",
    "strategic": "strategic_themes",
    "compliance": "risk_compliance",
    "innovation": "innovation_poc",
}

_SENTENCE_RE = re.compile(r"[^.!?。\n]+[.!?。]?")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

@lru_cache(maxsize=8)
def _read_yaml(path_str):
    if yaml is None:
        raise RuntimeError(
            "PyYAML is required for extraction patterns. Install with: pip install pyyaml"
        )
    path = Path(path_str)
    if not path.exists():
        raise FileNotFoundError(f"Extraction patterns not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_patterns(path=None):
    """Load the extraction tables.

    Args:
        path: Optional YAML path. Defaults to args/extraction_patterns.yaml.

    Returns:
        dict with keys segmentation, content_kind, sections,
        criterion_aliases, money_units, currency, signal_keywords,
        semantic_clusters and the normalizer keyword lists.
    """
    data = _read_yaml(str(path or PATTERNS_PATH))
    missing = [k for k in ("sections", "signal_keywords", "money_units") if k not in data]
    if missing:
        raise ValueError(f"Extraction patterns missing required keys: {missing}")
    return data


def resolve_patterns(patterns=None):
    """Return ``patterns`` or the default table set."""
    return patterns if patterns is not None else load_patterns()


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=2048)
def _keyword_regex(keyword):
    if keyword.isascii():
        return re.compile(
            r"(?<![A-Za-z0-9])" + re.escape(keyword) + r"(?![A-Za-z0-9])",
            re.IGNORECASE,
        )
    return re.compile(re.escape(keyword))


def contains_keyword(text, keyword):
    """Match ASCII keywords on word boundaries, Hangul keywords as substrings."""
    return bool(_keyword_regex(keyword).search(text))


def find_keywords(text, keywords):
    """Return the keywords (in table order) that occur in ``text``."""
    return [kw for kw in keywords if contains_keyword(text, kw)]


def split_sentences(text):
    """Split text into trimmed sentences (line breaks also end a sentence)."""
    return [s.strip() for s in _SENTENCE_RE.findall(text or "") if s.strip()]


def parse_number(raw):
    return float(raw.replace(",", ""))


_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"
_DOLLAR_AFTER_RE = re.compile(r"\s*달러")


@lru_cache(maxsize=8)
def _compound_regex(scale_units, sub_units):
    sub = "".join(re.escape(u) for u in sub_units)
    parts = [
        rf"(?:{_NUMBER}\s*([{sub}])?\s*{re.escape(unit)}\s*)?"
        for unit in scale_units
    ]
    return re.compile("".join(parts) + r"(원)?")


def _compound_amounts(text, unit):
    """Yield (start, end, amount) for mixed-unit figures like "1조 2천억원".

    Only figures with two or more units, or a 천/백/십 multiplier, count;
    single-unit figures are left to the simple scales.
    """
    scales = unit.get("scales", {})
    sub_scales = unit.get("sub_scales", {})
    regex = _compound_regex(tuple(scales), tuple(sub_scales))
    for m in regex.finditer(text):
        raw = m.group(0).rstrip()
        if not raw:
            continue
        amount = 0.0
        parts = 0
        has_sub = False
        for i, scale in enumerate(scales.values()):
            figure, sub = m.group(2 * i + 1), m.group(2 * i + 2)
            if figure is None:
                continue
            parts += 1
            multiplier = float(scale)
            if sub:
                has_sub = True
                multiplier *= float(sub_scales[sub])
            amount += parse_number(figure) * multiplier
        if parts == 0 or (parts < 2 and not has_sub):
            continue
        end = m.start() + len(raw)
        if not m.group(len(scales) * 2 + 1) and _DOLLAR_AFTER_RE.match(text, end):
            continue
        yield m.start(), end, amount


def _unit_amounts(text, unit):
    """Yield (start, end, amount) for one money_units entry."""
    if unit.get("compound"):
        yield from _compound_amounts(text, unit)
        return
    flags = re.IGNORECASE if unit.get("ignore_case") else 0
    for m in re.finditer(unit["pattern"], text, flags):
        try:
            figure = parse_number(m.group(1))
        except ValueError:
            continue
        yield m.start(), m.end(), figure * float(unit.get("multiplier", 1))


def parse_money(text, patterns=None):
    """Find monetary amounts in ``text``.

    Unit scales are tried in table order; a later scale never re-matches a
    span already claimed by an earlier one.

    Returns:
        list of dicts sorted by position: raw, original_amount, currency,
        budget_amount (converted to the base currency), start, end.
    """
    patterns = resolve_patterns(patterns)
    rates = patterns.get("currency", {}).get("rates", {})
    base = patterns.get("currency", {}).get("base", "KRW")

    claimed = []
    found = []
    for unit in patterns.get("money_units", []):
        currency = unit.get("currency", base)
        rate = float(rates.get(currency, 1)) if currency != base else 1.0
        for start, end, amount in _unit_amounts(text, unit):
            if any(start < c_end and end > c_start for c_start, c_end in claimed):
                continue
            claimed.append((start, end))
            found.append({
                "raw": text[start:end].strip(),
                "original_amount": amount,
                "currency": currency,
                "budget_amount": amount * rate,
                "start": start,
                "end": end,
            })
    found.sort(key=lambda f: f["start"])
    return found


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """CLI entry point for inspecting extraction tables."""
    parser = argparse.ArgumentParser(description="PersonaTune extraction pattern tables")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--show", action="store_true", help="Print the loaded tables")
    group.add_argument("--money", help="Parse monetary amounts from the given text")
    parser.add_argument("--patterns", help="Alternate extraction_patterns.yaml")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    try:
        patterns = load_patterns(args.patterns)
        if args.show:
            output = patterns
        else:
            output = {"text": args.money, "amounts": parse_money(args.money, patterns)}
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(output, indent=2, ensure_ascii=False))
    elif args.show:
        for key, val in output.items():
            print(f"{key}: {val}")
    else:
        for amt in output["amounts"]:
            print(f"  {amt['raw']:<20} {amt['budget_amount']:>20,.0f} ({amt['currency']})")


if __name__ == "__main__":
    main()
