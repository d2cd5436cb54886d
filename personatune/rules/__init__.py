# CUI // SP-PROPIN
"""Impact rules.

Modules:
    rule_store    — ImpactRule model, YAML seed set, SQLite rule store
    rules_engine  — table-driven match/transform fold over persona state
"""
