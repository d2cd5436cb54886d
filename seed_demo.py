#!/usr/bin/env python3
# CUI // SP-PROPIN
"""
PersonaTune Demo Seeder
=======================
Seeds the live PersonaTune DB with three evaluator personas, the default
impact rule set, and one Korean smart-factory RFP run through the full
pipeline (segment -> structure -> extract -> adjust -> commit).

  Persona 1 — 김기술 (CTO, 한빛에너지)      technical evaluator
  Persona 2 — 박재무 (CFO, 한빛에너지)      cost / ROI evaluator
  Persona 3 — 이위원 (평가위원장, 산업진흥원) governance evaluator

Re-running is safe: existing personas are kept and an already-processed
RFP is skipped unless --force is given.

Usage:
    python seed_demo.py           # seed everything
    python seed_demo.py --force   # re-run the demo RFP against current state
    python seed_demo.py --no-run  # personas and rules only
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Force UTF-8 output on Windows
if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
if hasattr(sys.stderr, "reconfigure"):
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

BASE_DIR = Path(__file__).resolve().parent
DB_PATH = Path(os.environ.get("PERSONATUNE_DB_PATH",
               str(BASE_DIR / "data" / "personatune.db")))
sys.path.insert(0, str(BASE_DIR))

from personatune.db.init_db import init_db  # noqa: E402
from personatune.ingest.pipeline import DuplicateDocumentError, process_document  # noqa: E402
from personatune.persona.persona_adjuster import adjust_all_personas  # noqa: E402
from personatune.persona.persona_store import create_persona, get_persona  # noqa: E402
from personatune.rules.rule_store import load_rule_set, seed_default_rules  # noqa: E402

DEMO_DOCUMENT_ID = "doc-demo-smartfactory-2026"


# ─────────────────────────────────────────────────────────────────────────────
# Demo data
# ─────────────────────────────────────────────────────────────────────────────

PERSONAS = [
    {
        "persona_id": "persona-demo-cto",
        "name": "김기술",
        "company": "한빛에너지",
        "department": "기술전략실",
        "rank": "CTO",
        "kpi": "R&D 투자 효율, 기술 내재화율",
        "evaluation_focus": "기술 완성도와 확장성",
        "strategic_priority": "디지털 전환 가속",
        "communication_style": "분석적",
        "team_dynamics": "수평적",
        "technical_expertise": 9,
        "decision_influence": 7,
        "innovation_openness": 8,
        "risk_tolerance": 6,
        "budget_authority": 5,
        "industry_experience": 22,
    },
    {
        "persona_id": "persona-demo-cfo",
        "name": "박재무",
        "company": "한빛에너지",
        "department": "재무관리본부",
        "rank": "CFO",
        "kpi": "영업이익률, 투자 회수기간",
        "evaluation_focus": "총소유비용과 ROI",
        "strategic_priority": "원가 구조 개선",
        "communication_style": "직설적",
        "team_dynamics": "수직적",
        "technical_expertise": 4,
        "decision_influence": 8,
        "innovation_openness": 4,
        "risk_tolerance": 3,
        "budget_authority": 9,
        "industry_experience": 18,
    },
    {
        "persona_id": "persona-demo-chair",
        "name": "이위원",
        "company": "산업진흥원",
        "department": "평가위원회",
        "rank": "평가위원장",
        "kpi": "사업 성과 달성도, 공정성",
        "evaluation_focus": "사업 관리 역량과 리스크 대응",
        "strategic_priority": "ESG 경영 확산",
        "communication_style": "분석적",
        "team_dynamics": "위원회 합의",
        "technical_expertise": 6,
        "decision_influence": 9,
        "innovation_openness": 6,
        "risk_tolerance": 4,
        "budget_authority": 7,
        "industry_experience": 28,
    },
]

DEMO_RFP = "\n".join([
    "1. 사업 개요",
    "본 사업은 제조 공정의 디지털 전환과 탄소중립 달성을 지원한다.",
    "2. 평가 기준",
    "- 기술 (45%)",
    "- 가격 (30%)",
    "- 관리 (25%)",
    "3. 예산",
    "총 사업비 80억원이며 분기별로 지급한다.",
    "4. 기술 요구사항",
    "AI 기반 예지보전과 클라우드 데이터 플랫폼을 구축한다.",
    "설비 데이터는 실시간으로 수집하며 보안 인증을 갖추어야 한다.",
    "5. 성과 지표",
    "설비 가동률 15% 향상과 에너지 비용 10% 절감을 목표로 한다.",
    "6. 리스크 관리",
    "개인정보 보호 규제 준수 방안을 제시하여야 한다.",
    "7. 의사결정 체계",
    "운영위원회가 분기별 진척을 승인한다.",
])


# ─────────────────────────────────────────────────────────────────────────────
# Seeders
# ─────────────────────────────────────────────────────────────────────────────

def seed_personas():
    created = 0
    for entry in PERSONAS:
        traits = dict(entry)
        persona_id = traits.pop("persona_id")
        name = traits.pop("name")
        if get_persona(persona_id):
            print(f"  [SKIP] {name} ({persona_id}) already exists")
            continue
        create_persona(name, persona_id=persona_id, **traits)
        created += 1
        print(f"  [OK]   {name} ({traits['rank']}, {traits['company']})")
    return created


def seed_rules():
    result = seed_default_rules()
    print(f"  [OK]   {result['rules_loaded']} seed rules loaded")
    return result


def run_demo_rfp(force=False):
    try:
        processed = process_document(DEMO_RFP, document_id=DEMO_DOCUMENT_ID, force=force)
    except DuplicateDocumentError as exc:
        print(f"  [SKIP] {exc}")
        return None

    print(f"  [OK]   {processed['section_count']} sections, "
          f"{processed['signal_count']} signals (job {processed['job_id']})")
    for name, metric in processed["quality_metrics"].items():
        print(f"         {name:<22} {metric['value']:.2f}  [{metric['status']}]")

    results = adjust_all_personas(processed["signals"], load_rule_set(),
                                  document_id=processed["document_id"])
    for persona_id, adjustments in results.items():
        print(f"  [OK]   {persona_id}: {len(adjustments)} adjustments")
        for adj in adjustments:
            print(f"           {adj.field_path:<28} {adj.confidence_score:.2f}  {adj.reason}")
    return results


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="PersonaTune demo seeder")
    parser.add_argument("--force", action="store_true",
                        help="Re-process the demo RFP even if it already ran")
    parser.add_argument("--no-run", action="store_true",
                        help="Seed personas and rules only")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    print(f"\n{'='*60}")
    print(" PersonaTune Demo Seeder")
    print(f"{'='*60}")
    print(f" DB: {DB_PATH}")
    print(f"{'='*60}\n")

    try:
        init_db(str(DB_PATH))
        print("[1/3] Personas")
        seed_personas()
        print("[2/3] Impact rules")
        seed_rules()
        if not args.no_run:
            print("[3/3] Demo RFP")
            run_demo_rfp(force=args.force)
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"\n{'='*60}")
    print(" DEMO SEEDING COMPLETE")
    print(f"{'='*60}")
    print(f"""
 Inspect the results:
   python -m personatune.persona.persona_store --list
   python -m personatune.persona.persona_store --state --persona-id persona-demo-cto
   python -m personatune.persona.persona_adjuster --history --document-id {DEMO_DOCUMENT_ID}
   python -m personatune.audit.audit_logger --list
""")


if __name__ == "__main__":
    main()
