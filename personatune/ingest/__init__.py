# CUI // SP-PROPIN
"""RFP ingestion — document text to typed signals.

Modules:
    document_reader     — page-level text from PDF/DOCX/plain text
    patterns            — replaceable keyword/pattern tables, money parsing
    page_segmenter      — split text into classified PageUnits
    section_structurer  — group pages into labeled, normalized sections
    signal_extractor    — confidence-scored Signals per section
    pipeline            — extract_signals entry point, ingest jobs, quality metrics
"""
