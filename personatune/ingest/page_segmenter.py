#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Page segmentation -- split extracted RFP text into page units.

Each page unit carries a provisional content classification and an
extraction-confidence score:

    content_kind
        table   percentage tokens together with scoring vocabulary
        chart   chart / graph / figure vocabulary
        mixed   criteria and requirement vocabulary on the same page
        image   (almost) no textual characters
        text    everything else

    extraction_confidence
        0.5 + 0.3 * target-script ratio
            + 0.1 if structural punctuation is present
            + 0.1 if quantitative tokens are present
        clamped to [0, 1]

True page boundaries are used when available (a list of page texts, or
form feeds in the text). Otherwise non-empty lines are grouped into pages
of ``segmentation.lines_per_page`` lines.

Usage:
    python -m personatune.ingest.page_segmenter --file rfp.txt [--json]
    python -m personatune.ingest.page_segmenter --text "..." [--json]
"""

import argparse
import json
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List

from personatune.ingest.patterns import find_keywords, resolve_patterns

CONTENT_KINDS = ["text", "table", "mixed", "chart", "image"]

_BULLET_TITLE_RE = re.compile(r"^(?:\d+\.\s|[가-힣]+:$)")
_INLINE_TABLE_RE = re.compile(r"([^(]+?)\s*\((\d+(?:\.\d+)?)\s*%\)")


@dataclass(frozen=True)
class PageUnit:
    """One page of extracted text."""
    page_no: int
    text: str
    content_kind: str = "text"
    extraction_confidence: float = 0.5
    layout: Dict[str, Any] = field(default_factory=dict)

    def lines(self) -> List[str]:
        return [ln.strip() for ln in self.text.split("\n") if ln.strip()]

    def to_dict(self):
        return {
            "page_no": self.page_no,
            "content_kind": self.content_kind,
            "extraction_confidence": round(self.extraction_confidence, 4),
            "char_count": len(self.text),
            "layout": self.layout,
            "text": self.text,
        }


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_content_kind(text, patterns=None):
    """Classify a page's content kind from keyword/pattern heuristics."""
    patterns = resolve_patterns(patterns)
    seg = patterns.get("segmentation", {})
    kinds = patterns.get("content_kind", {})

    if len(re.findall(r"\w", text)) < seg.get("min_text_chars", 5):
        return "image"

    percent_re = kinds.get("percent_pattern", r"\d+(?:\.\d+)?\s*%")
    if re.search(percent_re, text) and find_keywords(text, kinds.get("score_tokens", [])):
        return "table"

    if find_keywords(text, kinds.get("chart_tokens", [])):
        return "chart"

    for pair in kinds.get("mixed_pairs", []):
        if len(find_keywords(text, pair)) == len(pair):
            return "mixed"

    return "text"


def extraction_confidence(text, patterns=None):
    """Weighted extraction-confidence heuristic, clamped to [0, 1]."""
    if not text:
        return 0.0
    patterns = resolve_patterns(patterns)
    seg = patterns.get("segmentation", {})

    score = 0.5
    script = seg.get("target_script", "[ㄱ-ㅎㅏ-ㅣ가-힣]")
    score += 0.3 * (len(re.findall(script, text)) / len(text))

    if any(mark in text for mark in seg.get("structural_marks", [":", "•", "-"])):
        score += 0.1

    if any(re.search(p, text) for p in seg.get("quantitative_patterns", [])):
        score += 0.1

    return max(0.0, min(1.0, score))


def detect_layout(text):
    """Detect title/paragraph blocks and inline percentage tables."""
    blocks = []
    tables = []
    current = None
    for i, raw in enumerate(text.split("\n")):
        line = raw.strip()
        if not line:
            continue
        if _BULLET_TITLE_RE.match(line):
            if current:
                blocks.append(current)
            current = {"type": "title", "content": line, "start_line": i, "end_line": i}
        elif current:
            current["content"] += "\n" + line
            current["end_line"] = i
        else:
            current = {"type": "paragraph", "content": line, "start_line": i, "end_line": i}

        m = _INLINE_TABLE_RE.search(line)
        if m:
            tables.append({
                "line": i,
                "label": m.group(1).strip(" -•*·"),
                "weight": round(float(m.group(2)) / 100.0, 4),
            })
    if current:
        blocks.append(current)
    return {"blocks": blocks, "tables": tables}


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------

def _split_raw_pages(document, lines_per_page):
    """Return page texts using true boundaries when the input has them."""
    if isinstance(document, (list, tuple)):
        return [p or "" for p in document]
    if not document or not document.strip():
        return []
    if "\f" in document:
        return document.strip().split("\f")

    lines = [ln for ln in document.split("\n") if ln.strip()]
    per_page = max(1, int(lines_per_page))
    return [
        "\n".join(lines[i:i + per_page])
        for i in range(0, len(lines), per_page)
    ]


def segment_pages(document, patterns=None, lines_per_page=None):
    """Split document text into PageUnits.

    Args:
        document: Extracted text (str) or a list of page texts.
        patterns: Optional extraction tables (defaults to the YAML file).
        lines_per_page: Override for the line-count heuristic.

    Returns:
        list of PageUnit, numbered from 1. Empty input yields [].
    """
    patterns = resolve_patterns(patterns)
    per_page = lines_per_page or patterns.get("segmentation", {}).get("lines_per_page", 40)

    pages = []
    for page_no, raw in enumerate(_split_raw_pages(document, per_page), start=1):
        text = "\n".join(ln.rstrip() for ln in raw.strip().split("\n"))
        if not text.strip():
            # blank page between true boundaries: scanned image or separator
            pages.append(PageUnit(page_no=page_no, text="", content_kind="image",
                                  extraction_confidence=0.0))
            continue
        kind = classify_content_kind(text, patterns)
        pages.append(PageUnit(
            page_no=page_no,
            text=text,
            content_kind=kind,
            extraction_confidence=extraction_confidence(text, patterns),
            layout=detect_layout(text) if kind in ("table", "mixed") else {},
        ))
    return pages


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """CLI entry point for page segmentation."""
    parser = argparse.ArgumentParser(description="Split RFP text into classified pages")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    src.add_argument("--text", help="Inline document text")
    parser.add_argument("--lines-per-page", type=int, help="Override lines per page")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    try:
        if args.file:
            from personatune.ingest.document_reader import read_document_pages
            document = read_document_pages(args.file)
        else:
            document = args.text
        pages = segment_pages(document, lines_per_page=args.lines_per_page)
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps([p.to_dict() for p in pages], indent=2, ensure_ascii=False))
    else:
        print(f"Pages: {len(pages)}")
        for p in pages:
            print(f"  [{p.page_no}] {p.content_kind:<6} conf={p.extraction_confidence:.2f} "
                  f"chars={len(p.text)}")


if __name__ == "__main__":
    main()
