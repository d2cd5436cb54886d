#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Document reader: page-level text from PDF, DOCX and plain-text RFPs.

PDF pages come from pypdf (true page boundaries). DOCX paragraphs are
joined into a single text stream; page boundaries are then estimated by the
page segmenter. Plain text honours form feeds as page breaks.

No layout analysis, OCR or table reconstruction happens here.
"""

import argparse
import hashlib
import json
import sys
from pathlib import Path
from typing import List

# ---------------------------------------------------------------------------
# Optional imports (degrade gracefully)
# ---------------------------------------------------------------------------
try:
    from pypdf import PdfReader  # type: ignore
except ImportError:  # pragma: no cover
    PdfReader = None

try:
    import docx as python_docx  # type: ignore
except ImportError:  # pragma: no cover
    python_docx = None

TEXT_SUFFIXES = (".txt", ".md", ".text", "")


def _read_pdf(path: Path) -> List[str]:
    """One string per PDF page."""
    if PdfReader is None:
        raise ImportError("pypdf is required for PDF parsing. Install with: pip install pypdf")
    reader = PdfReader(str(path))
    return [page.extract_text() or "" for page in reader.pages]


def _read_docx(path: Path) -> List[str]:
    """DOCX has no stable page model; return the body as one stream."""
    if python_docx is None:
        raise ImportError("python-docx is required for Word parsing. Install with: pip install python-docx")
    doc = python_docx.Document(str(path))
    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                paragraphs.append(" ".join(cells))
    return ["\n".join(paragraphs)]


def read_document_pages(file_path) -> List[str]:
    """Read a document into page texts.

    Returns:
        list of page strings for PDFs and form-feed separated text,
        otherwise a single-element list holding the whole text.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".pdf":
        return _read_pdf(path)
    if suffix in (".docx", ".doc"):
        return _read_docx(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    if "\f" in text:
        return text.strip().split("\f")
    return [text]


def read_document_text(file_path) -> str:
    """Read a document as a single string with form feeds between pages."""
    return "\f".join(read_document_pages(file_path))


def text_hash(text: str) -> str:
    """SHA-256 of document text (ingest-job identity)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def main():
    parser = argparse.ArgumentParser(description="Read page-level text from an RFP document")
    parser.add_argument("--file", required=True, help="Path to .pdf/.docx/.txt")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    try:
        pages = read_document_pages(args.file)
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps({
            "file": args.file,
            "page_count": len(pages),
            "hash": text_hash("\f".join(pages)),
            "pages": pages,
        }, indent=2, ensure_ascii=False))
    else:
        print(f"{args.file}: {len(pages)} page(s)")
        for i, page in enumerate(pages, start=1):
            print(f"  [{i}] {len(page)} chars")


if __name__ == "__main__":
    main()
