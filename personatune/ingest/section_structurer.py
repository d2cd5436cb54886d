#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Group RFP pages into labeled sections and normalize each section.

A heading-shaped line opens a new section when its keywords identify one of
the closed section types. Heading shapes:
  - numbered headings: "1.", "2.3", "I.", "가.", "제1장", "(2)", "Section 4"
  - markdown headings: "# ..."
  - short keyword lines (at most ``sections.max_title_length`` chars)

Bullets and lines carrying percentages or monetary figures are never
headings, so "- 기술 (40%)" stays inside its evaluation section. A line
matching several types takes the first in priority order:

    kpi > evaluation > budget > governance > technical > strategic >
    compliance > innovation > intro > scope > timeline

Lines before the first heading open an initial "intro" section.

Per-type normalizers:
  - evaluation  {criteria: {tech|price|quality|execution|other: weight}}
  - budget      {budget_amount, currency, payment_schedule, ...}
  - technical   {ai_ml, cloud, security, realtime, iot}
  - kpi         {targets: [...]}
  - governance  {roles: [...]}
  - compliance  {standards: [...]}
  - timeline    {years: [...], duration_months}

Usage:
    python -m personatune.ingest.section_structurer --file rfp.txt [--json]
    python -m personatune.ingest.section_structurer --text "..." [--json]
"""

import argparse
import json
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from personatune.ingest.page_segmenter import segment_pages
from personatune.ingest.patterns import (
    SECTION_PRIORITY,
    contains_keyword,
    find_keywords,
    parse_money,
    resolve_patterns,
)

# ---------------------------------------------------------------------------
# Heading patterns
# ---------------------------------------------------------------------------

_NUMBERED_PREFIX_RE = re.compile(
    r"^(?:"
    r"#{1,6}\s*"
    r"|제\s*\d+\s*[장절조항]\.?\s*"
    r"|\d+(?:\.\d+)*[.)]?\s+"
    r"|[IVXLC]+[.)]\s*"
    r"|[가-하][.)]\s*"
    r"|\(\d+\)\s*"
    r"|(?:section|part|chapter|article)\s+\d+[.:)]?\s*"
    r")",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^[-•*·▪○●◦※>]")
_FIGURE_RE = re.compile(r"\d\s*(?:%|억|조|만\s*원|원|달러)|\$\s?\d")
_SENTENCE_END = (".", "。", "!", "?", "다", "함", "됨", "음", "임")

# "<criterion> (<NN>%)" and, inside evaluation sections, "<criterion>: NN%"
_CRITERION_PAREN_RE = re.compile(
    r"^\s*(?:[-•*·▪○●◦]|\d+[.)])?\s*([^()\n%:]+?)\s*\(\s*(\d+(?:\.\d+)?)\s*%\s*\)",
    re.MULTILINE,
)
_CRITERION_COLON_RE = re.compile(
    r"^\s*(?:[-•*·▪○●◦]|\d+[.)])?\s*([^()\n%:]+?)\s*[:：]\s*(\d+(?:\.\d+)?)\s*%",
    re.MULTILINE,
)
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\s*년?")
_MONTHS_RE = re.compile(r"(\d+)\s*(?:개월|months?)", re.IGNORECASE)
_YEARS_SPAN_RE = re.compile(r"(\d+)\s*(?:년간|years?)", re.IGNORECASE)


@dataclass(frozen=True)
class DocumentSection:
    """A labeled, contiguous span of document text."""
    section_type: str
    title: str
    content: str
    page_range: Tuple[int, int] = (1, 1)
    confidence: float = 0.5
    normalized_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        first, last = self.page_range
        return {
            "section_type": self.section_type,
            "title": self.title,
            "page_range": f"{first}-{last}" if first != last else str(first),
            "confidence": round(self.confidence, 4),
            "normalized_payload": self.normalized_payload,
            "content": self.content,
        }


# ---------------------------------------------------------------------------
# Heading detection
# ---------------------------------------------------------------------------

def _heading_body(line, max_len):
    """Return the heading text of a heading-shaped line, or None."""
    line = line.strip()
    if not line or _BULLET_RE.match(line):
        return None
    if _FIGURE_RE.search(line):
        return None

    prefix = _NUMBERED_PREFIX_RE.match(line)
    body = line[prefix.end():] if prefix else line
    body = body.strip().rstrip(":：").strip()
    if not body or len(body) > max_len:
        return None
    if ":" in body or "：" in body:
        return None
    if body.endswith(_SENTENCE_END):
        return None
    return body


def identify_section_type(line, patterns=None) -> Optional[str]:
    """Return the section type a heading-shaped line opens, or None."""
    patterns = resolve_patterns(patterns)
    sec_cfg = patterns.get("sections", {})
    body = _heading_body(line, sec_cfg.get("max_title_length", 40))
    if body is None:
        return None
    titles = sec_cfg.get("titles", {})
    for section_type in SECTION_PRIORITY:
        for keyword in titles.get(section_type, []):
            if contains_keyword(body, keyword):
                return section_type
    return None


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def normalize_criterion(label, patterns=None):
    """Map a criterion label (e.g. "기술평가") to its canonical key."""
    patterns = resolve_patterns(patterns)
    for key, aliases in patterns.get("criterion_aliases", {}).items():
        if find_keywords(label, aliases):
            return key
    return "other"


def parse_evaluation_criteria(content, patterns=None, allow_colon=True):
    """Extract ``(label, criterion, weight, snippet)`` tuples in text order."""
    found = []
    regexes = [_CRITERION_PAREN_RE] + ([_CRITERION_COLON_RE] if allow_colon else [])
    for regex in regexes:
        for m in regex.finditer(content):
            label = m.group(1).strip()
            if not label:
                continue
            weight = round(float(m.group(2)) / 100.0, 4)
            found.append((m.start(), label, normalize_criterion(label, patterns),
                          weight, m.group(0).strip()))
    found.sort(key=lambda f: f[0])
    return [f[1:] for f in found]


def _normalize_evaluation(content, patterns):
    criteria = {}
    for _label, key, weight, _snippet in parse_evaluation_criteria(content, patterns):
        criteria[key] = round(criteria.get(key, 0.0) + weight, 4)
    return {"criteria": criteria} if criteria else {}


def _normalize_budget(content, patterns):
    payload = {}
    amounts = parse_money(content, patterns)
    if amounts:
        largest = max(amounts, key=lambda a: a["budget_amount"])
        payload["budget_amount"] = largest["budget_amount"]
        payload["currency"] = largest["currency"]
        payload["amounts_found"] = len(amounts)
    for schedule, keywords in patterns.get("payment_terms", {}).items():
        if find_keywords(content, keywords):
            payload["payment_schedule"] = schedule
            break
    if find_keywords(content, patterns.get("performance_based", [])):
        payload["performance_based"] = True
    if find_keywords(content, patterns.get("advance_payment", [])):
        payload["advance_payment"] = True
    return payload


def _normalize_technical(content, patterns):
    return {
        flag: bool(find_keywords(content, keywords))
        for flag, keywords in patterns.get("technical_flags", {}).items()
    }


def _normalize_kpi(content, patterns):
    targets = [round(float(m.group(1)) / 100.0, 4) for m in _PERCENT_RE.finditer(content)]
    return {"targets": targets} if targets else {}


def _normalize_governance(content, patterns):
    roles = find_keywords(content, patterns.get("governance_roles", []))
    return {"roles": roles} if roles else {}


def _normalize_compliance(content, patterns):
    standards = find_keywords(content, patterns.get("compliance_standards", []))
    return {"standards": standards} if standards else {}


def _normalize_timeline(content, patterns):
    payload = {}
    years = sorted({int(y) for y in _YEAR_RE.findall(content)})
    if years:
        payload["years"] = years
    months = [int(m) for m in _MONTHS_RE.findall(content)]
    months += [int(y) * 12 for y in _YEARS_SPAN_RE.findall(content)]
    if months:
        payload["duration_months"] = max(months)
    return payload


NORMALIZERS = {
    "evaluation": _normalize_evaluation,
    "budget": _normalize_budget,
    "technical": _normalize_technical,
    "kpi": _normalize_kpi,
    "governance": _normalize_governance,
    "compliance": _normalize_compliance,
    "timeline": _normalize_timeline,
}


def normalize_section(section_type, content, patterns=None):
    """Build the normalized payload for one section."""
    patterns = resolve_patterns(patterns)
    normalizer = NORMALIZERS.get(section_type)
    return normalizer(content, patterns) if normalizer else {}


def section_confidence(section_type, content, payload):
    """Heuristic section confidence in [0, 1]."""
    confidence = 0.5
    if len(content) > 100:
        confidence += 0.2
    if any(payload.values()):
        confidence += 0.2
    if section_type == "evaluation" and payload.get("criteria"):
        confidence += 0.1
    return max(0.0, min(1.0, confidence))


# ---------------------------------------------------------------------------
# Structuring
# ---------------------------------------------------------------------------

def structure_sections(pages, patterns=None) -> List[DocumentSection]:
    """Group page lines into DocumentSections.

    Args:
        pages: list of PageUnit (see page_segmenter).
        patterns: Optional extraction tables.

    Returns:
        Ordered list of DocumentSection; [] when the pages hold no text.
    """
    patterns = resolve_patterns(patterns)
    drafts = []
    current = None

    for page in pages:
        for line in page.lines():
            section_type = identify_section_type(line, patterns)
            if section_type:
                current = {
                    "type": section_type,
                    "title": line,
                    "lines": [],
                    "first": page.page_no,
                    "last": page.page_no,
                }
                drafts.append(current)
                continue
            if current is None:
                current = {
                    "type": "intro",
                    "title": "",
                    "lines": [],
                    "first": page.page_no,
                    "last": page.page_no,
                }
                drafts.append(current)
            current["lines"].append(line)
            current["last"] = page.page_no

    sections = []
    for draft in drafts:
        content = "\n".join(draft["lines"])
        payload = normalize_section(draft["type"], content, patterns)
        sections.append(DocumentSection(
            section_type=draft["type"],
            title=draft["title"],
            content=content,
            page_range=(draft["first"], draft["last"]),
            confidence=section_confidence(draft["type"], content, payload),
            normalized_payload=payload,
        ))
    return sections


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """CLI entry point for section structuring."""
    parser = argparse.ArgumentParser(description="Group RFP text into labeled sections")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    src.add_argument("--text", help="Inline document text")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    try:
        if args.file:
            from personatune.ingest.document_reader import read_document_pages
            document = read_document_pages(args.file)
        else:
            document = args.text
        sections = structure_sections(segment_pages(document))
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps([s.to_dict() for s in sections], indent=2, ensure_ascii=False))
        return

    print(f"Sections: {len(sections)}")
    for s in sections:
        d = s.to_dict()
        print(f"  [{d['section_type']:<10}] p.{d['page_range']:<5} conf={s.confidence:.2f} "
              f"{s.title or '(untitled)'}")
        payload = {k: v for k, v in s.normalized_payload.items() if v}
        if payload:
            print(f"      {json.dumps(payload, ensure_ascii=False)}")


if __name__ == "__main__":
    main()
