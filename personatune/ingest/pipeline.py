#!/usr/bin/env python3
# CUI // SP-PROPIN
"""RFP ingestion pipeline: text -> pages -> sections -> signals.

``extract_signals`` is the pure entry point. ``process_document`` wraps it
in an ingest job: the input is keyed by the SHA-256 of its text, an identical
input that is running or completed is refused unless ``force`` is set, and
page/section/signal counts plus quality metrics are stored on the job row.

Quality metrics:
    text_extraction_rate   mean page extraction confidence
    table_detection_rate   share of pages classified table or mixed
    signal_confidence      mean signal confidence
    section_coverage       share of content-bearing section types present

Usage:
    python -m personatune.ingest.pipeline --file rfp.pdf [--document-id ID] [--force] [--json]
    python -m personatune.ingest.pipeline --text "..." --dry-run [--json]
"""

import argparse
import json
import logging
import os
import sqlite3
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from personatune.audit.audit_logger import log_event
from personatune.ingest.document_reader import text_hash
from personatune.ingest.page_segmenter import segment_pages
from personatune.ingest.patterns import SECTION_SIGNAL_KEY, resolve_patterns
from personatune.ingest.section_structurer import structure_sections
from personatune.ingest.signal_extractor import extract_from_sections

# --- Path setup ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "PERSONATUNE_DB_PATH", str(BASE_DIR / "data" / "personatune.db")
))

logger = logging.getLogger("personatune.ingest")

# metric -> minimum acceptable value (None: informational)
METRIC_THRESHOLDS = {
    "text_extraction_rate": 0.8,
    "table_detection_rate": None,
    "signal_confidence": 0.7,
    "section_coverage": 0.5,
}


class DuplicateDocumentError(ValueError):
    """Raised when an identical document already has a running or completed ingest job."""

    def __init__(self, input_hash, job_id):
        super().__init__(
            f"Document already processed (job {job_id}, hash {input_hash[:12]}). "
            "Use force=True to re-process."
        )
        self.input_hash = input_hash
        self.job_id = job_id


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


def _gen_id(prefix="job"):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _document_text(document):
    if isinstance(document, (list, tuple)):
        return "\f".join(document)
    return document or ""


# ---------------------------------------------------------------------------
# Pure pipeline
# ---------------------------------------------------------------------------

def extract_signals(document_text, patterns=None):
    """Run segmenter, structurer and extractor over one document.

    Args:
        document_text: str, or a list of page texts with true boundaries.
        patterns: Optional replacement pattern tables.

    Returns:
        (sections, signals). Empty or unstructurable text gives ([], []).
    """
    patterns = resolve_patterns(patterns)
    pages = segment_pages(document_text, patterns)
    sections = structure_sections(pages, patterns)
    signals = extract_from_sections(sections, patterns)
    return sections, signals


def compute_quality_metrics(pages, sections, signals) -> dict:
    """Score one extraction run. Every value lies in [0, 1]."""
    values = {
        "text_extraction_rate": (
            sum(p.extraction_confidence for p in pages) / len(pages) if pages else 0.0
        ),
        "table_detection_rate": (
            sum(1 for p in pages if p.content_kind in ("table", "mixed")) / len(pages)
            if pages else 0.0
        ),
        "signal_confidence": (
            sum(s.confidence for s in signals) / len(signals) if signals else 0.0
        ),
        "section_coverage": (
            len({s.section_type for s in sections} & set(SECTION_SIGNAL_KEY))
            / len(SECTION_SIGNAL_KEY)
        ),
    }
    metrics = {}
    for name, value in values.items():
        threshold = METRIC_THRESHOLDS[name]
        if threshold is None:
            status = "info"
        else:
            status = "ok" if value >= threshold else "warning"
        metrics[name] = {
            "value": round(value, 4),
            "threshold": threshold,
            "status": status,
        }
    return metrics


# ---------------------------------------------------------------------------
# Ingest jobs
# ---------------------------------------------------------------------------

def process_document(text, document_id=None, db_path=None, force=False, patterns=None):
    """Extract signals from a document and record the ingest job.

    Args:
        text: Document text (str) or list of page texts.
        document_id: Caller's document identifier (defaults to a new id).
        db_path: Optional database path override.
        force: Re-process even when an identical input already completed.
        patterns: Optional replacement pattern tables.

    Returns:
        dict with job_id, document_id, input_hash, sections, signals
        (dataclass instances), counts and quality_metrics.

    Raises:
        DuplicateDocumentError: identical input running or completed and not
            ``force``.
    """
    patterns = resolve_patterns(patterns)
    input_hash = text_hash(_document_text(text))
    document_id = document_id or _gen_id("doc")

    job_id = _gen_id("job")
    conn = _get_db(db_path)
    try:
        # duplicate check and job insert share one write lock
        conn.execute("BEGIN IMMEDIATE")
        if not force:
            existing = conn.execute(
                "SELECT id FROM ingest_jobs WHERE input_hash = ? "
                "AND status IN ('running', 'done') ORDER BY created_at DESC LIMIT 1",
                (input_hash,),
            ).fetchone()
            if existing:
                conn.rollback()
                raise DuplicateDocumentError(input_hash, existing["id"])
        conn.execute(
            "INSERT INTO ingest_jobs (id, document_id, input_hash, status, created_at) "
            "VALUES (?, ?, ?, 'running', ?)",
            (job_id, document_id, input_hash, _now()),
        )
        conn.commit()

        try:
            pages = segment_pages(text, patterns)
            sections = structure_sections(pages, patterns)
            signals = extract_from_sections(sections, patterns)
        except Exception as exc:
            conn.execute(
                "UPDATE ingest_jobs SET status = 'error', error_message = ?, "
                "finished_at = ? WHERE id = ?",
                (str(exc), _now(), job_id),
            )
            conn.commit()
            raise

        metrics = compute_quality_metrics(pages, sections, signals)
        conn.execute(
            "UPDATE ingest_jobs SET status = 'done', page_count = ?, section_count = ?, "
            "signal_count = ?, quality_metrics = ?, finished_at = ? WHERE id = ?",
            (len(pages), len(sections), len(signals), json.dumps(metrics), _now(), job_id),
        )
        log_event(
            "ingest.document", "system",
            f"Extracted {len(signals)} signals from {len(sections)} sections",
            entity_type="document", entity_id=document_id,
            details={"job_id": job_id, "input_hash": input_hash, "forced": force},
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    for name, metric in metrics.items():
        if metric["status"] == "warning":
            logger.warning("Document %s: %s %.2f below %.2f",
                           document_id, name, metric["value"], metric["threshold"])
    logger.info("Document %s: %d pages, %d sections, %d signals",
                document_id, len(pages), len(sections), len(signals))

    return {
        "job_id": job_id,
        "document_id": document_id,
        "input_hash": input_hash,
        "page_count": len(pages),
        "section_count": len(sections),
        "signal_count": len(signals),
        "quality_metrics": metrics,
        "sections": sections,
        "signals": signals,
    }


def get_job(job_id, db_path=None):
    """Return an ingest job row (quality_metrics decoded), or None."""
    conn = _get_db(db_path)
    try:
        row = conn.execute("SELECT * FROM ingest_jobs WHERE id = ?", (job_id,)).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    job = dict(row)
    if job.get("quality_metrics"):
        job["quality_metrics"] = json.loads(job["quality_metrics"])
    return job


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_human(result):
    print(f"Document: {result['document_id']}")
    if result.get("job_id"):
        print(f"  Job:      {result['job_id']}")
    print(f"  Pages:    {result['page_count']}")
    print(f"  Sections: {result['section_count']}")
    print(f"  Signals:  {result['signal_count']}")
    print("  Quality:")
    for name, metric in result["quality_metrics"].items():
        print(f"    {name:<22} {metric['value']:.2f}  [{metric['status']}]")


def main():
    """CLI entry point for the ingestion pipeline."""
    parser = argparse.ArgumentParser(description="Run the RFP signal extraction pipeline")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="Path to a .txt/.pdf/.docx document")
    src.add_argument("--text", help="Inline document text")
    parser.add_argument("--document-id", help="Document identifier")
    parser.add_argument("--force", action="store_true", help="Re-process identical input")
    parser.add_argument("--dry-run", action="store_true", help="Extract without recording a job")
    parser.add_argument("--db-path", help="Override database path")
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

        if args.dry_run:
            patterns = resolve_patterns()
            pages = segment_pages(document, patterns)
            sections = structure_sections(pages, patterns)
            signals = extract_from_sections(sections, patterns)
            result = {
                "job_id": None,
                "document_id": args.document_id or "(dry-run)",
                "page_count": len(pages),
                "section_count": len(sections),
                "signal_count": len(signals),
                "quality_metrics": compute_quality_metrics(pages, sections, signals),
                "sections": sections,
                "signals": signals,
            }
        else:
            result = process_document(document, document_id=args.document_id,
                                      db_path=args.db_path, force=args.force)
    except Exception as exc:
        if args.json:
            print(json.dumps({"status": "error", "error": str(exc)}, indent=2))
        else:
            print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        output = dict(result)
        output["sections"] = [s.to_dict() for s in result["sections"]]
        output["signals"] = [s.to_dict() for s in result["signals"]]
        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    else:
        _print_human(result)


if __name__ == "__main__":
    main()
