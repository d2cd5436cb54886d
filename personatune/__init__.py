# CUI // SP-PROPIN
"""PersonaTune — RFP signal extraction and evaluator persona tuning.

Subpackages:
    ingest   — page segmentation, section structuring, signal extraction
    rules    — impact rule store and rule engine
    persona  — persona store, state normalizer, adjuster (commit point)
    audit    — append-only audit trail
    db       — SQLite schema
"""
