#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Signal extraction -- typed, confidence-scored facts from RFP sections.

Applies the domain pattern library to each section's raw content, in a
fixed order so runs are deterministic:

    1. evaluation criteria  "<criterion> (<NN>%)"         -> evaluation_criteria
    2. monetary amounts     조/억/만 원, 억 달러, $1.2M, ... -> budget_procurement
    3. percentage targets   "NN%" next to KPI vocabulary   -> kpis
    4. keyword clusters     sentence-level, per signal key -> any signal key

Keyword-cluster confidence is content-derived: a sentence carrying two or
more keywords of the same key outranks a single-keyword hit, and evidence
found in the key's home section (e.g. risk_compliance in a compliance
section) gets a bonus.

Multiple matches per section are expected; nothing is deduplicated here.
A section without recognized patterns yields no signals.

Usage:
    python -m personatune.ingest.signal_extractor --file rfp.txt [--json]
    python -m personatune.ingest.signal_extractor --text "..." [--min-confidence 0.8] [--json]
"""

import argparse
import json
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List

from personatune.ingest.page_segmenter import segment_pages
from personatune.ingest.patterns import (
    SECTION_SIGNAL_KEY,
    SIGNAL_KEYS,
    find_keywords,
    parse_money,
    resolve_patterns,
    split_sentences,
)
from personatune.ingest.section_structurer import (
    parse_evaluation_criteria,
    structure_sections,
)

# --- Confidence by matcher ---
EVALUATION_CONFIDENCE = 0.9
EVALUATION_OUTSIDE_CONFIDENCE = 0.8
MONEY_CONFIDENCE = 0.85
MONEY_OUTSIDE_CONFIDENCE = 0.75
KPI_TARGET_CONFIDENCE = 0.8
SINGLE_KEYWORD_CONFIDENCE = 0.7
MULTI_KEYWORD_CONFIDENCE = 0.85
HOME_SECTION_BONUS = 0.05
MAX_KEYWORD_CONFIDENCE = 0.95

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_EVALUATION_WORDS = ["evaluation", "criteria", "평가", "배점"]


@dataclass(frozen=True)
class Signal:
    """A typed fact extracted from document text."""
    signal_key: str
    value: str
    normalized_payload: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.5
    source_reference: str = ""

    def to_dict(self):
        return {
            "signal_key": self.signal_key,
            "value": self.value,
            "normalized_payload": self.normalized_payload,
            "confidence": self.confidence,
            "source_reference": self.source_reference,
        }

    @classmethod
    def from_dict(cls, data):
        key = data.get("signal_key", "")
        if key not in SIGNAL_KEYS:
            raise ValueError(f"Invalid signal_key '{key}'. Must be one of: {SIGNAL_KEYS}")
        return cls(
            signal_key=key,
            value=str(data.get("value", "")),
            normalized_payload=dict(data.get("normalized_payload") or {}),
            confidence=max(0.0, min(1.0, float(data.get("confidence", 0.5)))),
            source_reference=data.get("source_reference", ""),
        )


def _source_reference(section, index):
    first, last = section.page_range
    return f"{section.section_type}#{index} p{first}-{last}"


# ---------------------------------------------------------------------------
# Matchers (each returns a list of Signals, in text order)
# ---------------------------------------------------------------------------

def _evaluation_signals(section, ref, patterns):
    in_section = section.section_type == "evaluation"
    if not in_section and not find_keywords(section.content, _EVALUATION_WORDS):
        return []
    confidence = EVALUATION_CONFIDENCE if in_section else EVALUATION_OUTSIDE_CONFIDENCE
    signals = []
    for label, criterion, weight, _snippet in parse_evaluation_criteria(
            section.content, patterns, allow_colon=in_section):
        signals.append(Signal(
            signal_key="evaluation_criteria",
            value=f"{label}: {weight * 100:g}%",
            normalized_payload={"criterion": criterion, "weight": weight},
            confidence=confidence,
            source_reference=ref,
        ))
    return signals


def _money_signals(section, ref, patterns):
    confidence = MONEY_CONFIDENCE if section.section_type == "budget" else MONEY_OUTSIDE_CONFIDENCE
    signals = []
    for amount in parse_money(section.content, patterns):
        signals.append(Signal(
            signal_key="budget_procurement",
            value=amount["raw"],
            normalized_payload={
                "budget_amount": amount["budget_amount"],
                "original_amount": amount["original_amount"],
                "currency": amount["currency"],
            },
            confidence=confidence,
            source_reference=ref,
        ))
    return signals


def _kpi_target_signals(section, ref, patterns):
    context_words = patterns.get("kpi_context", [])
    signals = []
    for sentence in split_sentences(section.content):
        if not find_keywords(sentence, context_words):
            continue
        for m in _PERCENT_RE.finditer(sentence):
            signals.append(Signal(
                signal_key="kpis",
                value=sentence,
                normalized_payload={
                    "metric": m.group(0).replace(" ", ""),
                    "target": round(float(m.group(1)) / 100.0, 4),
                },
                confidence=KPI_TARGET_CONFIDENCE,
                source_reference=ref,
            ))
    return signals


def _keyword_signals(section, ref, patterns):
    home_key = SECTION_SIGNAL_KEY.get(section.section_type)
    tables = patterns.get("signal_keywords", {})
    sentences = split_sentences(section.content)
    signals = []
    for signal_key in SIGNAL_KEYS:
        keywords = tables.get(signal_key, [])
        if not keywords:
            continue
        for sentence in sentences:
            hits = find_keywords(sentence, keywords)
            if not hits:
                continue
            confidence = MULTI_KEYWORD_CONFIDENCE if len(hits) > 1 else SINGLE_KEYWORD_CONFIDENCE
            if signal_key == home_key:
                confidence += HOME_SECTION_BONUS
            signals.append(Signal(
                signal_key=signal_key,
                value=sentence,
                normalized_payload={"keywords": hits, "keyword_count": len(hits)},
                confidence=round(min(MAX_KEYWORD_CONFIDENCE, confidence), 4),
                source_reference=ref,
            ))
    return signals


MATCHERS = [
    _evaluation_signals,
    _money_signals,
    _kpi_target_signals,
    _keyword_signals,
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_section_signals(section, index=0, patterns=None) -> List[Signal]:
    """Apply the pattern library to one section."""
    patterns = resolve_patterns(patterns)
    if not section.content.strip():
        return []
    ref = _source_reference(section, index)
    signals = []
    for matcher in MATCHERS:
        signals.extend(matcher(section, ref, patterns))
    return signals


def extract_from_sections(sections, patterns=None) -> List[Signal]:
    """Extract signals from every section, in document order."""
    patterns = resolve_patterns(patterns)
    signals = []
    for index, section in enumerate(sections):
        signals.extend(extract_section_signals(section, index, patterns))
    return signals


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """CLI entry point for signal extraction."""
    parser = argparse.ArgumentParser(description="Extract typed signals from RFP text")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    src.add_argument("--text", help="Inline document text")
    parser.add_argument("--min-confidence", type=float, default=0.0,
                        help="Only print signals at or above this confidence")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    try:
        if args.file:
            from personatune.ingest.document_reader import read_document_pages
            document = read_document_pages(args.file)
        else:
            document = args.text
        signals = extract_from_sections(structure_sections(segment_pages(document)))
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    signals = [s for s in signals if s.confidence >= args.min_confidence]
    if args.json:
        print(json.dumps([s.to_dict() for s in signals], indent=2, ensure_ascii=False))
        return

    print(f"Signals: {len(signals)}")
    for s in signals:
        value = s.value if len(s.value) <= 60 else s.value[:57] + "..."
        print(f"  [{s.signal_key:<22}] {s.confidence:.2f}  {value}")


if __name__ == "__main__":
    main()
