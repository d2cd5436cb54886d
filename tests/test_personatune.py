#!/usr/bin/env python3
# CUI // SP-PROPIN
"""PersonaTune — test suite.

Tests cover: database schema, pattern tables, page segmentation, section
structuring, signal extraction, the ingestion pipeline, the rule store, the
rule engine, state normalization, persona persistence and the adjuster
commit point.

Usage:
    pytest tests/test_personatune.py -v --tb=short
"""

import json
import logging
import sqlite3
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))


def _rule(**overrides):
    from personatune.rules.rule_store import ImpactRule
    data = {
        "id": "rule-test",
        "name": "test rule",
        "target_field": "core.technical_expertise",
        "signal_key": "technical_requirements",
        "match_type": "includes",
        "match_pattern": "AI",
        "transform_type": "scale",
        "transform_payload": {"factor": 2.0, "max": 10},
        "impact_strength": 1.0,
        "precedence": 10,
        "source_priority": 1,
    }
    data.update(overrides)
    return ImpactRule.from_dict(data)


def _signal(signal_key="technical_requirements", value="AI 기반 플랫폼을 구축한다.",
            payload=None, confidence=1.0):
    from personatune.ingest.signal_extractor import Signal
    return Signal(signal_key=signal_key, value=value,
                  normalized_payload=payload or {}, confidence=confidence,
                  source_reference="technical#0 p1-1")


def _state():
    from personatune.persona.persona_store import default_state
    return default_state({})


# =========================================================================
# DATABASE SCHEMA TESTS
# =========================================================================
class TestDatabaseSchema:
    """Verify database initialization and append-only enforcement."""

    def test_database_creates_all_tables(self, tmp_db):
        conn = sqlite3.connect(str(tmp_db))
        tables = [r[0] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()]
        conn.close()
        for table in ["personas", "persona_states", "impact_rules",
                      "ingest_jobs", "state_adjustments", "audit_trail"]:
            assert table in tables, f"Missing table: {table}"

    def test_database_is_idempotent(self, tmp_db):
        from personatune.db.init_db import init_db
        result = init_db(str(tmp_db))
        assert result["status"] == "initialized"

    def test_audit_trail_is_append_only(self, tmp_db, db_conn):
        from personatune.audit.audit_logger import log_event
        entry = log_event("test.event", "pytest", "Append-only check")
        with pytest.raises(sqlite3.DatabaseError):
            db_conn.execute("UPDATE audit_trail SET action = 'x' WHERE id = ?", (entry["id"],))
        with pytest.raises(sqlite3.DatabaseError):
            db_conn.execute("DELETE FROM audit_trail WHERE id = ?", (entry["id"],))

    def test_list_events_filters_by_entity(self, tmp_db):
        from personatune.audit.audit_logger import list_events, log_event
        log_event("persona.note", "pytest", "first", entity_type="persona", entity_id="p-1",
                  details={"k": 1})
        log_event("persona.note", "pytest", "second", entity_type="persona", entity_id="p-2")
        events = list_events(entity_id="p-1")
        assert len(events) == 1
        assert events[0]["details"] == {"k": 1}


# =========================================================================
# PATTERN TABLE TESTS
# =========================================================================
class TestPatterns:
    """Keyword matching and money parsing."""

    def test_ascii_keywords_match_on_word_boundaries(self):
        from personatune.ingest.patterns import contains_keyword
        assert contains_keyword("AI 기반 분석", "AI")
        assert contains_keyword("ai-driven", "AI")
        assert not contains_keyword("TRAINING", "AI")

    def test_hangul_keywords_match_as_substrings(self):
        from personatune.ingest.patterns import contains_keyword
        assert contains_keyword("기술평가", "기술")

    def test_parse_money_korean_units(self):
        from personatune.ingest.patterns import parse_money
        found = parse_money("총 사업비 60억원, 예비비 500만 원")
        assert [f["budget_amount"] for f in found] == [6_000_000_000, 5_000_000]
        assert all(f["currency"] == "KRW" for f in found)

    def test_parse_money_dollars_converted(self):
        from personatune.ingest.patterns import parse_money
        found = parse_money("Contract ceiling $1.2M")
        assert len(found) == 1
        assert found[0]["currency"] == "USD"
        assert found[0]["original_amount"] == pytest.approx(1_200_000)
        assert found[0]["budget_amount"] == pytest.approx(1_200_000 * 1350)

    def test_parse_money_hundred_million_dollars(self):
        from personatune.ingest.patterns import parse_money
        found = parse_money("투자 규모 3억 달러")
        assert len(found) == 1
        assert found[0]["original_amount"] == pytest.approx(300_000_000)

    def test_parse_money_mixed_units_sum(self):
        from personatune.ingest.patterns import parse_money
        found = parse_money("사업비 1조 2천억원")
        assert len(found) == 1
        assert found[0]["budget_amount"] == pytest.approx(1_200_000_000_000)
        assert found[0]["raw"] == "1조 2천억원"

        found = parse_money("총 사업비 3억 5천만원, 예비비 5천만원")
        assert [f["budget_amount"] for f in found] == [350_000_000, 50_000_000]
        assert found[0]["raw"] == "3억 5천만원"

    def test_load_patterns_rejects_missing_file(self, tmp_path):
        from personatune.ingest.patterns import load_patterns
        with pytest.raises(FileNotFoundError):
            load_patterns(tmp_path / "missing.yaml")


# =========================================================================
# PAGE SEGMENTER TESTS
# =========================================================================
class TestPageSegmenter:
    """Page splitting and content-kind classification."""

    def test_empty_input_gives_no_pages(self):
        from personatune.ingest.page_segmenter import segment_pages
        assert segment_pages("") == []
        assert segment_pages("   \n  ") == []

    def test_form_feeds_are_page_boundaries(self):
        from personatune.ingest.page_segmenter import segment_pages
        pages = segment_pages("첫 페이지 내용입니다.\f두 번째 페이지 내용입니다.")
        assert [p.page_no for p in pages] == [1, 2]
        assert pages[1].text == "두 번째 페이지 내용입니다."

    def test_blank_true_page_is_image(self):
        from personatune.ingest.page_segmenter import segment_pages
        pages = segment_pages(["본문이 있는 페이지입니다.", "", "마지막 페이지입니다."])
        assert len(pages) == 3
        assert pages[1].content_kind == "image"
        assert pages[1].extraction_confidence == 0.0
        assert pages[2].page_no == 3

    def test_line_count_heuristic(self):
        from personatune.ingest.page_segmenter import segment_pages
        text = "\n".join(f"{i}번째 줄입니다." for i in range(5))
        pages = segment_pages(text, lines_per_page=2)
        assert len(pages) == 3

    def test_content_kinds(self):
        from personatune.ingest.page_segmenter import classify_content_kind
        assert classify_content_kind("평가 항목 기술 40%") == "table"
        assert classify_content_kind("연도별 매출 추이 그래프") == "chart"
        assert classify_content_kind("평가 기준 및 요구사항 정리") == "mixed"
        assert classify_content_kind("일반 안내 문구입니다") == "text"
        assert classify_content_kind("· ·") == "image"

    def test_extraction_confidence_bounds(self):
        from personatune.ingest.page_segmenter import extraction_confidence
        assert extraction_confidence("가나다라") == pytest.approx(0.8)
        assert extraction_confidence("평가: 기술 40%") <= 1.0
        assert extraction_confidence("") == 0.0

    def test_table_page_carries_inline_table(self):
        from personatune.ingest.page_segmenter import segment_pages
        pages = segment_pages("평가 기준\n- 기술 (40%)\n- 가격 (60%)")
        assert pages[0].content_kind == "table"
        labels = [t["label"] for t in pages[0].layout["tables"]]
        assert labels == ["기술", "가격"]


# =========================================================================
# SECTION STRUCTURER TESTS
# =========================================================================
class TestSectionStructurer:
    """Heading detection, section priority and normalizers."""

    def test_numbered_heading_opens_section(self):
        from personatune.ingest.section_structurer import identify_section_type
        assert identify_section_type("1. 평가 기준") == "evaluation"
        assert identify_section_type("제3장 예산") == "budget"
        assert identify_section_type("## Technical Requirements") == "technical"

    def test_priority_order_resolves_ambiguity(self):
        from personatune.ingest.section_structurer import identify_section_type
        assert identify_section_type("KPI 평가") == "kpi"

    def test_bullets_and_percent_lines_are_not_headings(self):
        from personatune.ingest.section_structurer import identify_section_type
        assert identify_section_type("- 기술 (40%)") is None
        assert identify_section_type("기술 (40%)") is None
        assert identify_section_type("3. 기타 사항") is None

    def test_sample_rfp_sections(self, sample_rfp):
        from personatune.ingest.page_segmenter import segment_pages
        from personatune.ingest.section_structurer import structure_sections
        sections = structure_sections(segment_pages(sample_rfp))
        assert [s.section_type for s in sections] == [
            "intro", "evaluation", "budget", "technical", "kpi"]
        evaluation = sections[1]
        assert "- 기술 (40%)" in evaluation.content
        assert evaluation.normalized_payload == {
            "criteria": {"tech": 0.4, "price": 0.3, "execution": 0.3}}
        assert evaluation.confidence == pytest.approx(0.8)

    def test_budget_normalizer(self, sample_rfp):
        from personatune.ingest.page_segmenter import segment_pages
        from personatune.ingest.section_structurer import structure_sections
        budget = structure_sections(segment_pages(sample_rfp))[2]
        assert budget.normalized_payload["budget_amount"] == 6_000_000_000
        assert budget.normalized_payload["currency"] == "KRW"
        assert budget.normalized_payload["payment_schedule"] == "quarterly"

    def test_timeline_normalizer(self):
        from personatune.ingest.section_structurer import normalize_section
        payload = normalize_section("timeline", "사업 기간은 2025년 1월부터 2026년 12월까지 24개월이다.")
        assert payload == {"years": [2025, 2026], "duration_months": 24}

    def test_no_headers_gives_single_intro(self):
        from personatune.ingest.page_segmenter import segment_pages
        from personatune.ingest.section_structurer import structure_sections
        text = "이 문서는 일반적인 안내 문서입니다\n추가 내용은 없습니다"
        sections = structure_sections(segment_pages(text))
        assert len(sections) == 1
        assert sections[0].section_type == "intro"
        assert sections[0].title == ""
        assert sections[0].content == text


# =========================================================================
# SIGNAL EXTRACTOR TESTS
# =========================================================================
class TestSignalExtractor:
    """Typed signals and their confidence."""

    def test_evaluation_criterion_signal(self):
        from personatune.ingest.pipeline import extract_signals
        _sections, signals = extract_signals("2. 평가 기준\n- 기술 (40%)\n- 가격 (30%)")
        evaluation = [s for s in signals if s.signal_key == "evaluation_criteria"]
        assert evaluation[0].normalized_payload == {"criterion": "tech", "weight": 0.4}
        assert evaluation[0].value == "기술: 40%"
        assert evaluation[0].source_reference == "evaluation#0 p1-1"
        assert evaluation[1].normalized_payload == {"criterion": "price", "weight": 0.3}

    def test_sample_rfp_signals(self, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        _sections, signals = extract_signals(sample_rfp)
        keys = {s.signal_key for s in signals}
        assert {"evaluation_criteria", "budget_procurement", "kpis",
                "technical_requirements", "strategic_themes"} <= keys

        money = [s for s in signals if s.signal_key == "budget_procurement"]
        assert money[0].normalized_payload["budget_amount"] == 6_000_000_000
        assert money[0].confidence == pytest.approx(0.85)

        targets = [s for s in signals if s.signal_key == "kpis" and "target" in s.normalized_payload]
        assert targets[0].normalized_payload == {"metric": "20%", "target": 0.2}

    def test_budget_signal_sums_mixed_units(self):
        from personatune.ingest.pipeline import extract_signals
        sections, signals = extract_signals("3. 예산\n총 사업비 1조 2천억원 규모")
        money = [s for s in signals if s.signal_key == "budget_procurement"]
        assert len(money) == 1
        assert money[0].normalized_payload["budget_amount"] == pytest.approx(1.2e12)
        assert sections[0].normalized_payload["budget_amount"] == pytest.approx(1.2e12)

    def test_multi_keyword_outranks_single_keyword(self, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        _sections, signals = extract_signals(sample_rfp)
        technical = [s for s in signals if s.signal_key == "technical_requirements"][0]
        strategic = [s for s in signals if s.signal_key == "strategic_themes"][0]
        assert technical.normalized_payload["keywords"] == ["AI", "클라우드"]
        assert technical.confidence == pytest.approx(0.9)
        assert strategic.confidence == pytest.approx(0.7)
        assert technical.confidence > strategic.confidence

    def test_section_without_patterns_yields_nothing(self):
        from personatune.ingest.pipeline import extract_signals
        sections, signals = extract_signals("이 문서는 일반적인 안내 문서입니다\n추가 내용은 없습니다")
        assert len(sections) == 1
        assert signals == []

    def test_empty_text_yields_nothing(self):
        from personatune.ingest.pipeline import extract_signals
        assert extract_signals("") == ([], [])

    def test_signal_from_dict_validates_key(self):
        from personatune.ingest.signal_extractor import Signal
        with pytest.raises(ValueError):
            Signal.from_dict({"signal_key": "weather", "value": "x"})
        sig = Signal.from_dict({"signal_key": "kpis", "value": "x", "confidence": 3})
        assert sig.confidence == 1.0


# =========================================================================
# PIPELINE TESTS
# =========================================================================
class TestPipeline:
    """Ingest jobs, duplicate detection, quality metrics."""

    def test_process_document_records_job(self, tmp_db, sample_rfp):
        from personatune.ingest.pipeline import get_job, process_document
        result = process_document(sample_rfp, document_id="doc-001")
        assert result["section_count"] == 5
        job = get_job(result["job_id"])
        assert job["status"] == "done"
        assert job["signal_count"] == len(result["signals"])
        assert job["quality_metrics"]["section_coverage"]["value"] == pytest.approx(0.5)

    def test_duplicate_document_refused(self, tmp_db, sample_rfp):
        from personatune.ingest.pipeline import DuplicateDocumentError, process_document
        first = process_document(sample_rfp, document_id="doc-001")
        with pytest.raises(DuplicateDocumentError) as exc_info:
            process_document(sample_rfp, document_id="doc-002")
        assert exc_info.value.job_id == first["job_id"]
        forced = process_document(sample_rfp, document_id="doc-002", force=True)
        assert forced["job_id"] != first["job_id"]

    def test_extraction_failure_marks_job_error(self, tmp_db, db_conn, sample_rfp, monkeypatch):
        from personatune.ingest import pipeline

        def failing_extractor(sections, patterns):
            raise RuntimeError("extractor failed")

        monkeypatch.setattr(pipeline, "extract_from_sections", failing_extractor)
        with pytest.raises(RuntimeError, match="extractor failed"):
            pipeline.process_document(sample_rfp, document_id="doc-fail")

        job = db_conn.execute(
            "SELECT status, error_message, finished_at FROM ingest_jobs WHERE document_id = ?",
            ("doc-fail",),
        ).fetchone()
        assert job["status"] == "error"
        assert "extractor failed" in job["error_message"]
        assert job["finished_at"] is not None
        audit = db_conn.execute(
            "SELECT COUNT(*) FROM audit_trail WHERE event_type = 'ingest.document'"
        ).fetchone()[0]
        assert audit == 0

        # a failed job does not block a retry of the same text
        monkeypatch.undo()
        retry = pipeline.process_document(sample_rfp, document_id="doc-fail")
        assert pipeline.get_job(retry["job_id"])["status"] == "done"

    def test_running_job_blocks_identical_input(self, tmp_db, db_conn, sample_rfp):
        from personatune.ingest.document_reader import text_hash
        from personatune.ingest.pipeline import DuplicateDocumentError, process_document
        db_conn.execute(
            "INSERT INTO ingest_jobs (id, document_id, input_hash, status, created_at) "
            "VALUES ('job-inflight', 'doc-001', ?, 'running', '2026-01-01T00:00:00+00:00')",
            (text_hash(sample_rfp),),
        )
        db_conn.commit()
        with pytest.raises(DuplicateDocumentError) as exc_info:
            process_document(sample_rfp, document_id="doc-002")
        assert exc_info.value.job_id == "job-inflight"
        assert process_document(sample_rfp, document_id="doc-002", force=True)["job_id"]

    def test_concurrent_identical_documents_run_once(self, tmp_db, db_conn, sample_rfp):
        import threading

        from personatune.ingest.pipeline import DuplicateDocumentError, process_document
        barrier = threading.Barrier(2)
        outcomes = []

        def run(document_id):
            barrier.wait()
            try:
                outcomes.append(process_document(sample_rfp, document_id=document_id))
            except DuplicateDocumentError as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=run, args=(doc,)) for doc in ("doc-a", "doc-b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(outcomes) == 2
        assert sum(isinstance(o, DuplicateDocumentError) for o in outcomes) == 1
        jobs = db_conn.execute("SELECT COUNT(*) FROM ingest_jobs").fetchone()[0]
        assert jobs == 1

    def test_quality_metrics_empty_run(self):
        from personatune.ingest.pipeline import compute_quality_metrics
        metrics = compute_quality_metrics([], [], [])
        assert set(metrics) == {"text_extraction_rate", "table_detection_rate",
                                "signal_confidence", "section_coverage"}
        assert all(m["value"] == 0.0 for m in metrics.values())
        assert metrics["signal_confidence"]["status"] == "warning"
        assert metrics["table_detection_rate"]["status"] == "info"

    def test_document_reader_plain_text_pages(self, tmp_path):
        from personatune.ingest.document_reader import read_document_pages
        path = tmp_path / "rfp.txt"
        path.write_text("1페이지\f2페이지", encoding="utf-8")
        assert read_document_pages(path) == ["1페이지", "2페이지"]
        with pytest.raises(FileNotFoundError):
            read_document_pages(tmp_path / "missing.txt")


# =========================================================================
# RULE STORE TESTS
# =========================================================================
class TestRuleStore:
    """Seed rules, stored rules, validation."""

    def test_seed_rules_are_valid_and_sorted(self):
        from personatune.rules.rule_store import load_seed_rules
        rules = load_seed_rules()
        assert len(rules) == 15
        keys = [(r.precedence, r.source_priority) for r in rules]
        assert keys == sorted(keys)
        assert rules[0].id == "rule-tech-ai-expertise"

    def test_seed_default_rules_round_trip_order(self, tmp_db):
        from personatune.rules.rule_store import get_active_rules, load_seed_rules, seed_default_rules
        result = seed_default_rules()
        assert result["rules_loaded"] == 15
        assert [r.id for r in get_active_rules()] == [r.id for r in load_seed_rules()]

    def test_seeding_twice_does_not_duplicate(self, tmp_db):
        from personatune.rules.rule_store import get_active_rules, seed_default_rules
        seed_default_rules()
        seed_default_rules()
        assert len(get_active_rules()) == 15

    def test_load_rule_set_falls_back_to_seed(self, tmp_db):
        from personatune.rules.rule_store import load_rule_set
        assert len(load_rule_set()) == 15

    def test_disable_rule(self, tmp_db):
        from personatune.rules.rule_store import get_active_rules, seed_default_rules, set_rule_enabled
        seed_default_rules()
        set_rule_enabled("rule-eval-tech-weight", False)
        ids = [r.id for r in get_active_rules(signal_key="evaluation_criteria")]
        assert "rule-eval-tech-weight" not in ids
        with pytest.raises(LookupError):
            set_rule_enabled("rule-missing", True)

    def test_add_custom_rule(self, tmp_db, db_conn):
        from personatune.rules.rule_store import add_rule, get_active_rules
        rule = add_rule({
            "name": "PoC 과제 시 혁신 개방성 증가",
            "target_field": "core.innovation_openness",
            "signal_key": "innovation_poc",
            "match_type": "includes",
            "match_pattern": "실증|PoC",
            "transform_type": "scale",
            "transform_payload": {"factor": 1.1},
            "impact_strength": 0.5,
        })
        assert rule.id.startswith("rule-")
        assert rule.id in [r.id for r in get_active_rules()]
        row = db_conn.execute("SELECT rule_type FROM impact_rules WHERE id = ?", (rule.id,)).fetchone()
        assert row["rule_type"] == "custom"

    def test_invalid_rule_rejected(self, tmp_db):
        from personatune.rules.rule_store import add_rule
        with pytest.raises(ValueError):
            add_rule({"name": "bad", "target_field": "weights", "signal_key": "kpis",
                      "match_type": "fuzzy", "transform_type": "set", "impact_strength": 0.5})
        with pytest.raises(ValueError):
            _rule(impact_strength=1.5)


# =========================================================================
# RULE ENGINE TESTS
# =========================================================================
class TestRuleEngine:
    """Matching, transforms, strength gating, fold order."""

    def test_source_priority_weights(self):
        from personatune.rules.rules_engine import effective_strength, source_priority_weight
        assert [source_priority_weight(p) for p in (1, 2, 3, 4, 5)] == [1.0, 0.9, 0.8, 0.7, 0.6]
        assert effective_strength(0.1, 0.5, 1) == pytest.approx(0.025)
        assert effective_strength(1.0, 1.0, 1) == 1.0

    def test_parse_threshold(self):
        from personatune.rules.rules_engine import parse_threshold
        assert parse_threshold("budget_amount>=5000000000") == ("budget_amount", ">=", 5e9)
        with pytest.raises(ValueError):
            parse_threshold("tech => 0.35")

    def test_tech_weight_scenario(self):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.state_normalizer import normalize_state
        from personatune.rules.rule_store import load_seed_rules
        from personatune.rules.rules_engine import RuleEngine, effective_strength

        rule = next(r for r in load_seed_rules() if r.id == "rule-eval-tech-weight")
        _sections, signals = extract_signals("2. 평가 기준\n- 기술 (40%)\n- 가격 (30%)")
        state = _state()
        result = RuleEngine([rule]).run("p-1", state, signals)

        strength = effective_strength(0.8, 0.9, 2)
        expected = 1 / 6 + 0.08 * strength
        weights = normalize_state(result.state).weights
        assert weights["expertise"] == pytest.approx(expected)
        for metric in ("clarity", "persuasion", "logic", "creativity", "reliability"):
            assert weights[metric] == pytest.approx((1 - expected) / 5)
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)

        assert len(result.adjustments) == 1
        adj = result.adjustments[0]
        assert adj.field_path == "weights"
        assert adj.reason == f"{rule.name} (signal: evaluation_criteria)"
        assert adj.confidence_score == pytest.approx(0.8 * 0.9 * 0.9)
        # the working copy is separate from the input
        assert state.weights["expertise"] == pytest.approx(1 / 6)

    def test_weight_invariant_over_many_boosts(self):
        from personatune.rules.rules_engine import RuleEngine
        rules = [
            _rule(id=f"boost-{i}-{metric}", target_field="weights", transform_type="boost_weight",
                  transform_payload={"metric": metric, "delta": 0.3, "cap": 0.7},
                  precedence=i)
            for i, metric in enumerate(["expertise", "reliability", "logic", "expertise"])
        ]
        signals = [_signal(confidence=c) for c in (1.0, 0.9, 0.7, 0.55)]
        result = RuleEngine(rules).run("p-1", _state(), signals)
        weights = result.state.weights
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)
        assert all(w >= 0 for w in weights.values())
        assert weights["expertise"] <= 0.7

    def test_boost_never_exceeds_cap(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="weights", transform_type="boost_weight",
                     transform_payload={"metric": "expertise", "delta": 0.9, "cap": 0.3})
        result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.state.weights["expertise"] == pytest.approx(0.3)

    def test_zero_sum_other_weights(self):
        from personatune.rules.rules_engine import RuleEngine
        state = _state()
        state.weights = {m: 0.0 for m in state.weights}
        state.weights["expertise"] = 1.0
        rule = _rule(target_field="weights", transform_type="boost_weight",
                     transform_payload={"metric": "expertise", "delta": 0.1, "cap": 0.45})
        result = RuleEngine([rule]).run("p-1", state, [_signal()])
        weights = result.state.weights
        assert weights["expertise"] == pytest.approx(0.45)
        for metric, weight in weights.items():
            if metric != "expertise":
                assert weight == pytest.approx(0.11)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_idempotent_append(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="core.strategic_priority", signal_key="strategic_themes",
                     match_pattern="ESG", transform_type="append",
                     transform_payload={"value": "ESG 경영 강화"})
        state = _state()
        state.core["strategic_priority"] = "디지털 전환"
        signal = _signal("strategic_themes", "ESG 경영을 강조한다.", confidence=0.8)
        engine = RuleEngine([rule])

        once = engine.run("p-1", state, [signal])
        assert once.state.core["strategic_priority"] == "디지털 전환, ESG 경영 강화"
        twice = engine.run("p-1", state, [signal, signal])
        assert twice.state.core["strategic_priority"] == once.state.core["strategic_priority"]
        assert len(twice.adjustments) == 1
        again = engine.run("p-1", once.state, [signal])
        assert again.adjustments == []

    def test_append_to_keyword_list(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="focus_keywords.boost", transform_type="append",
                     transform_payload={"value": "혁신"})
        result = RuleEngine([rule]).run("p-1", _state(), [_signal(), _signal()])
        assert result.state.focus_keywords["boost"].count("혁신") == 1

    def test_determinism(self, sample_rfp):
        from personatune.ingest.patterns import resolve_patterns
        from personatune.ingest.pipeline import extract_signals
        from personatune.rules.rule_store import load_seed_rules
        from personatune.rules.rules_engine import RuleEngine

        runs = []
        for _ in range(2):
            _sections, signals = extract_signals(sample_rfp)
            engine = RuleEngine(load_seed_rules(), resolve_patterns()["semantic_clusters"])
            result = engine.run("p-1", _state(), signals)
            runs.append(json.dumps({
                "adjustments": [a.to_dict() for a in result.adjustments],
                "state": result.state.to_dict(),
            }, ensure_ascii=False, sort_keys=True))
        assert runs[0] == runs[1]

    def test_order_sensitivity(self):
        from personatune.rules.rules_engine import RuleEngine
        scale = _rule(id="scale", transform_payload={"factor": 2.0, "max": 10})
        reset = _rule(id="reset", transform_type="set", transform_payload={"value": 5.0})

        first = RuleEngine([
            _rule(**{**scale.to_dict(), "precedence": 1}),
            _rule(**{**reset.to_dict(), "precedence": 2}),
        ]).run("p-1", _state(), [_signal()])
        second = RuleEngine([
            _rule(**{**scale.to_dict(), "precedence": 2}),
            _rule(**{**reset.to_dict(), "precedence": 1}),
        ]).run("p-1", _state(), [_signal()])

        assert first.state.core["technical_expertise"] == pytest.approx(5.0)
        assert second.state.core["technical_expertise"] == pytest.approx(10.0)

    def test_confidence_gating(self):
        from personatune.rules.rules_engine import RuleEngine
        weak = _rule(impact_strength=0.1)
        result = RuleEngine([weak]).run("p-1", _state(), [_signal(confidence=0.5)])
        assert len(result.adjustments) == 1
        assert result.state.core["technical_expertise"] == pytest.approx(5.0 * 1.025)
        assert result.adjustments[0].confidence_score == pytest.approx(0.05)

        too_weak = _rule(impact_strength=0.03)
        result = RuleEngine([too_weak]).run("p-1", _state(), [_signal(confidence=0.5)])
        assert result.adjustments == []
        assert result.discarded == 1

    def test_scale_clamps_to_declared_range(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(transform_payload={"factor": 5.0})
        result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.state.core["technical_expertise"] == 10.0

    def test_set_threshold_moves_toward_value(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="thresholds", transform_type="set_threshold",
                     transform_payload={"metric": "expertise", "value": 80},
                     impact_strength=0.5)
        result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.state.thresholds["min_expertise"] == pytest.approx(70.0)
        assert result.adjustments[0].field_path == "thresholds.min_expertise"

    def test_set_with_wrong_value_type_skipped(self, caplog):
        from personatune.rules.rules_engine import RuleEngine
        bad = {
            "thresholds.min_expertise": "high",
            "weights": 0.5,
            "core.technical_expertise": "expert",
            "focus_keywords.boost": "혁신",
            "core.strategic_priority": 5,
        }
        rules = [
            _rule(id=f"bad-set-{i}", target_field=path, transform_type="set",
                  transform_payload={"value": value}, precedence=i)
            for i, (path, value) in enumerate(bad.items())
        ]
        with caplog.at_level(logging.WARNING, logger="personatune.rules"):
            result = RuleEngine(rules).run("p-1", _state(), [_signal()])
        assert result.adjustments == []
        assert result.state == _state()
        for i in range(len(bad)):
            assert f"Rule bad-set-{i} skipped: set on" in caplog.text

    def test_set_numeric_values_clamped_and_merged(self):
        from personatune.rules.rules_engine import RuleEngine
        rules = [
            _rule(id="set-threshold", target_field="thresholds.min_expertise",
                  transform_type="set", transform_payload={"value": 150}, precedence=1),
            _rule(id="set-weights", target_field="weights", transform_type="set",
                  transform_payload={"value": {"expertise": 0.5}}, precedence=2),
        ]
        result = RuleEngine(rules).run("p-1", _state(), [_signal()])
        assert result.state.thresholds["min_expertise"] == 100.0
        assert result.state.weights["expertise"] == 0.5
        assert result.state.weights["clarity"] == pytest.approx(1 / 6)
        assert len(result.adjustments) == 2

    def test_set_weights_rejects_unknown_metric(self, caplog):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="weights", transform_type="set",
                     transform_payload={"value": {"charisma": 0.4}})
        with caplog.at_level(logging.WARNING, logger="personatune.rules"):
            result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.adjustments == []
        assert "unknown keys ['charisma']" in caplog.text

    def test_boost_above_cap_leaves_weights_unchanged(self):
        from personatune.rules.rules_engine import RuleEngine
        state = _state()
        state.weights = {m: 0.1 for m in state.weights}
        state.weights["expertise"] = 0.5
        rule = _rule(target_field="weights", transform_type="boost_weight",
                     transform_payload={"metric": "expertise", "delta": 0.2, "cap": 0.3})
        result = RuleEngine([rule]).run("p-1", state, [_signal()])
        assert result.adjustments == []
        assert result.state.weights == state.weights

    def test_threshold_bad_syntax_skipped_with_warning(self, caplog):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(match_type="threshold", match_pattern="tech => 0.35")
        signal = _signal(payload={"criterion": "tech", "weight": 0.4})
        with caplog.at_level(logging.WARNING, logger="personatune.rules"):
            result = RuleEngine([rule]).run("p-1", _state(), [signal])
        assert result.adjustments == []
        assert "unparsable threshold" in caplog.text

    def test_threshold_absent_field_no_match(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(signal_key="evaluation_criteria", match_type="threshold",
                     match_pattern="budget_amount>=100")
        signal = _signal("evaluation_criteria", "기술: 40%", {"criterion": "tech", "weight": 0.4})
        engine = RuleEngine([rule])
        assert engine.matches(rule, signal) is False

    def test_unknown_target_field_is_noop(self, caplog):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(target_field="core.shoe_size")
        with caplog.at_level(logging.WARNING, logger="personatune.rules"):
            result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.adjustments == []
        assert result.state == _state()
        assert "unknown target field" in caplog.text

    def test_invalid_regex_and_unknown_cluster_skipped(self, caplog):
        from personatune.rules.rules_engine import RuleEngine
        rules = [
            _rule(id="bad-regex", match_type="regex", match_pattern="(["),
            _rule(id="bad-cluster", match_type="semantic", match_pattern="astrology"),
        ]
        with caplog.at_level(logging.WARNING, logger="personatune.rules"):
            result = RuleEngine(rules, {"technology": ["AI"]}).run("p-1", _state(), [_signal()])
        assert result.adjustments == []
        assert "invalid regex" in caplog.text
        assert "unknown semantic cluster" in caplog.text

    def test_semantic_cluster_match(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(match_type="semantic", match_pattern="technology")
        engine = RuleEngine([rule], {"technology": ["인공지능", "AI"]})
        assert engine.matches(rule, _signal(value="AI 기반 분석"))
        assert not engine.matches(rule, _signal(value="예산 집행 계획"))

    def test_disabled_rules_ignored(self):
        from personatune.rules.rules_engine import RuleEngine
        rule = _rule(enabled=False)
        result = RuleEngine([rule]).run("p-1", _state(), [_signal()])
        assert result.adjustments == []


# =========================================================================
# STATE NORMALIZER TESTS
# =========================================================================
class TestStateNormalizer:
    """Weights, thresholds and bounded traits after a run."""

    def test_weights_rescaled_and_negatives_dropped(self):
        from personatune.persona.state_normalizer import normalize_state
        state = _state()
        state.weights = {"clarity": -0.2, "expertise": 2.0, "persuasion": 1.0,
                         "logic": 1.0, "creativity": 0.0, "reliability": 0.0}
        result = normalize_state(state)
        assert result.weights["clarity"] == 0.0
        assert result.weights["expertise"] == pytest.approx(0.5)
        assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-9)
        assert state.weights["clarity"] == -0.2

    def test_all_zero_weights_become_equal(self):
        from personatune.persona.state_normalizer import normalize_state
        state = _state()
        state.weights = {m: 0.0 for m in state.weights}
        result = normalize_state(state)
        assert all(w == pytest.approx(1 / 6) for w in result.weights.values())

    def test_thresholds_and_traits_clamped(self):
        from personatune.persona.state_normalizer import normalize_state
        state = _state()
        state.thresholds["min_expertise"] = 120.0
        state.thresholds["min_logic"] = -5.0
        state.core["technical_expertise"] = 15.0
        state.core["industry_experience"] = 60.0
        result = normalize_state(state)
        assert result.thresholds["min_expertise"] == 100.0
        assert result.thresholds["min_logic"] == 0.0
        assert result.core["technical_expertise"] == 10.0
        assert result.core["industry_experience"] == 50.0


# =========================================================================
# PERSONA STORE TESTS
# =========================================================================
class TestPersonaStore:
    """Persona creation and trait-derived defaults."""

    def test_default_thresholds_from_traits(self, tmp_db, sample_persona):
        from personatune.persona.persona_store import load_persona_state
        state = load_persona_state(sample_persona)
        assert state.thresholds == {
            "min_clarity": 65.0, "min_expertise": 66.0, "min_persuasion": 64.0,
            "min_logic": 63.0, "min_creativity": 64.0, "min_reliability": 62.0,
        }
        assert sum(state.weights.values()) == pytest.approx(1.0)

    def test_default_focus_keywords(self):
        from personatune.persona.persona_store import default_focus_keywords
        keywords = default_focus_keywords({"kpi": "매출 성장률, 원가 절감률", "rank": "CFO"})
        assert keywords["boost"][:2] == ["성장률", "절감률"]
        assert "ROI" in keywords["boost"]
        assert keywords["penalty"] == ["고비용", "비효율"]

    def test_create_persona_validates_range(self, tmp_db):
        from personatune.persona.persona_store import create_persona
        with pytest.raises(ValueError):
            create_persona("범위초과", technical_expertise=11)
        with pytest.raises(ValueError):
            create_persona("알수없음", shoe_size=3)

    def test_missing_persona(self, tmp_db):
        from personatune.persona.persona_store import (
            PersonaNotFoundError, get_persona, load_persona_state)
        assert get_persona("persona-missing") is None
        with pytest.raises(PersonaNotFoundError):
            load_persona_state("persona-missing")

    def test_path_helpers(self):
        from personatune.persona.persona_state import split_path
        assert split_path("weights") == ("weights", None)
        assert split_path("core.technical_expertise") == ("core", "technical_expertise")
        assert split_path("thresholds.min_expertise") == ("thresholds", "min_expertise")
        assert split_path("focus_keywords.boost") == ("focus_keywords", "boost")
        assert split_path("state.weights") is None
        assert split_path("core") is None


# =========================================================================
# PERSONA ADJUSTER TESTS
# =========================================================================
class TestPersonaAdjuster:
    """The commit point: state, adjustments and audit in one transaction."""

    def test_adjust_persona_commits(self, tmp_db, db_conn, sample_persona, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona, get_adjustment_history
        from personatune.persona.persona_store import load_persona_state
        from personatune.rules.rule_store import load_seed_rules

        _sections, signals = extract_signals(sample_rfp)
        adjustments = adjust_persona(sample_persona, signals, load_seed_rules(),
                                     document_id="doc-001")
        assert adjustments

        state = load_persona_state(sample_persona)
        assert sum(state.weights.values()) == pytest.approx(1.0, abs=1e-6)
        assert state.weights["expertise"] > 1 / 6

        history = get_adjustment_history("doc-001", sample_persona)
        assert [h["field_path"] for h in history] == [a.field_path for a in adjustments]
        assert [h["seq"] for h in history] == list(range(len(adjustments)))

        version = db_conn.execute(
            "SELECT version, last_document_id FROM persona_states WHERE persona_id = ?",
            (sample_persona,),
        ).fetchone()
        assert version["version"] == 2
        assert version["last_document_id"] == "doc-001"

        audit = db_conn.execute(
            "SELECT COUNT(*) FROM audit_trail WHERE event_type = 'persona.adjust' "
            "AND entity_id = ?", (sample_persona,),
        ).fetchone()[0]
        assert audit == 1

    def test_adjustments_are_append_only(self, tmp_db, db_conn, sample_persona, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona
        from personatune.rules.rule_store import load_seed_rules

        _sections, signals = extract_signals(sample_rfp)
        adjust_persona(sample_persona, signals, load_seed_rules(), document_id="doc-001")
        with pytest.raises(sqlite3.DatabaseError):
            db_conn.execute("DELETE FROM state_adjustments")

    def test_missing_persona_records_nothing(self, tmp_db, db_conn, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona, get_adjustment_history
        from personatune.persona.persona_store import PersonaNotFoundError
        from personatune.rules.rule_store import load_seed_rules

        _sections, signals = extract_signals(sample_rfp)
        with pytest.raises(PersonaNotFoundError):
            adjust_persona("persona-missing", signals, load_seed_rules(), document_id="doc-x")
        assert get_adjustment_history("doc-x") == []
        count = db_conn.execute(
            "SELECT COUNT(*) FROM audit_trail WHERE event_type = 'persona.adjust'"
        ).fetchone()[0]
        assert count == 0

    def test_no_matching_rules_no_adjustments(self, tmp_db, sample_persona):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona
        from personatune.rules.rule_store import load_seed_rules

        budget_only = [r for r in load_seed_rules() if r.signal_key == "budget_procurement"]
        _sections, signals = extract_signals("클라우드 전환 사업을 안내한다.")
        assert adjust_persona(sample_persona, signals, budget_only, document_id="doc-2") == []

    def test_adjust_all_personas(self, tmp_db, sample_persona, sample_rfp):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_all_personas
        from personatune.persona.persona_store import create_persona
        from personatune.rules.rule_store import load_seed_rules

        other = create_persona("박재무", rank="CFO", budget_authority=9)
        _sections, signals = extract_signals(sample_rfp)
        results = adjust_all_personas(signals, load_seed_rules(), document_id="doc-001")
        assert set(results) == {sample_persona, other["id"]}
        assert all(results.values())

    def test_mistyped_set_rule_does_not_abort_commit(self, tmp_db, sample_persona):
        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona
        from personatune.persona.persona_store import load_persona_state

        before = load_persona_state(sample_persona)
        rules = [
            _rule(id="bad-threshold", target_field="thresholds.min_expertise",
                  transform_type="set", transform_payload={"value": "high"}, precedence=1),
            _rule(id="bad-weights", target_field="weights",
                  transform_type="set", transform_payload={"value": 0.5}, precedence=2),
        ]
        _sections, signals = extract_signals("4. 기술 요구사항\nAI 기반 플랫폼을 구축한다.")
        assert adjust_persona(sample_persona, signals, rules, document_id="doc-bad") == []

        after = load_persona_state(sample_persona)
        assert after.thresholds == before.thresholds
        assert after.weights == pytest.approx(before.weights)
        assert sum(after.weights.values()) == pytest.approx(1.0, abs=1e-6)

    def test_concurrent_runs_are_serialized(self, tmp_db, db_conn, sample_persona, sample_rfp):
        import threading

        from personatune.ingest.pipeline import extract_signals
        from personatune.persona.persona_adjuster import adjust_persona, get_adjustment_history
        from personatune.rules.rule_store import load_seed_rules

        _sections, signals = extract_signals(sample_rfp)
        rules = load_seed_rules()
        barrier = threading.Barrier(2)
        errors = []

        def run(document_id):
            barrier.wait()
            try:
                adjust_persona(sample_persona, signals, rules, document_id=document_id)
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(doc,)) for doc in ("doc-a", "doc-b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

        version = db_conn.execute(
            "SELECT version FROM persona_states WHERE persona_id = ?", (sample_persona,),
        ).fetchone()[0]
        assert version == 3

        first_ids = {
            doc: db_conn.execute(
                "SELECT MIN(id) FROM state_adjustments WHERE document_id = ?", (doc,),
            ).fetchone()[0]
            for doc in ("doc-a", "doc-b")
        }
        first, second = sorted(first_ids, key=first_ids.get)
        first_run = get_adjustment_history(first, sample_persona)
        second_run = get_adjustment_history(second, sample_persona)

        path = "core.technical_expertise"
        first_after = [h["after_value"] for h in first_run if h["field_path"] == path][-1]
        second_before = [h["before_value"] for h in second_run if h["field_path"] == path][0]
        assert first_after == pytest.approx(second_before)
