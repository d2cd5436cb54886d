#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Shared test fixtures for PersonaTune test suite."""

import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Add project root to path
BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))


SAMPLE_RFP = "\n".join([
    "1. 사업 개요",
    "본 사업은 제조 공정의 디지털 전환을 추진한다.",
    "2. 평가 기준",
    "- 기술 (40%)",
    "- 가격 (30%)",
    "- 관리 (30%)",
    "3. 예산",
    "총 사업비 60억원을 분기별로 지급한다.",
    "4. 기술 요구사항",
    "AI 및 클라우드 기반 분석 플랫폼을 구축한다.",
    "5. 성과 지표",
    "생산성 20% 향상을 목표로 한다.",
])


def _patch_db_path(db_path):
    """Patch DB_PATH in all modules that cache it at import time."""
    p = Path(db_path)
    modules_to_patch = [
        "personatune.db.init_db",
        "personatune.audit.audit_logger",
        "personatune.ingest.pipeline",
        "personatune.rules.rule_store",
        "personatune.persona.persona_store",
        "personatune.persona.persona_adjuster",
    ]
    for mod_name in modules_to_patch:
        if mod_name in sys.modules:
            mod = sys.modules[mod_name]
            if hasattr(mod, "DB_PATH"):
                mod.DB_PATH = p


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary PersonaTune database with full schema."""
    db_path = tmp_path / "test_personatune.db"

    from personatune.db.init_db import init_db
    init_db(str(db_path))

    # import every store module so the patch reaches them
    import personatune.ingest.pipeline  # noqa: F401
    import personatune.persona.persona_adjuster  # noqa: F401
    import personatune.rules.rule_store  # noqa: F401

    os.environ["PERSONATUNE_DB_PATH"] = str(db_path)
    _patch_db_path(db_path)
    yield db_path
    if "PERSONATUNE_DB_PATH" in os.environ:
        del os.environ["PERSONATUNE_DB_PATH"]


@pytest.fixture
def db_conn(tmp_db):
    """Get a connection to the test database."""
    conn = sqlite3.connect(str(tmp_db))
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


@pytest.fixture
def sample_persona(tmp_db):
    """Create a CTO persona with stored default state and return its ID."""
    from personatune.persona.persona_store import create_persona
    persona = create_persona(
        "김기술",
        persona_id="persona-test-001",
        company="한빛에너지",
        department="기술전략실",
        rank="CTO",
        kpi="R&D 투자 효율, 기술 내재화",
        strategic_priority="디지털 전환 가속",
        communication_style="분석적",
        team_dynamics="수평적",
        technical_expertise=8,
        decision_influence=7,
        innovation_openness=7,
        industry_experience=20,
    )
    return persona["id"]


@pytest.fixture
def sample_rfp():
    """A small Korean RFP with intro, evaluation, budget, technical and KPI sections."""
    return SAMPLE_RFP
