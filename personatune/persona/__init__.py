# CUI // SP-PROPIN
"""Evaluator personas.

Modules:
    persona_state     — PersonaState model and dotted field paths
    persona_store     — persona and state persistence, trait-derived defaults
    state_normalizer  — weight/threshold/trait invariants
    persona_adjuster  — adjust_persona commit point and adjustment history
"""
