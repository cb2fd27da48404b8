# -*- coding: utf-8 -*-
"""分类器：规则打分、阈值、风险等级、CLASSIFICATION 阶段"""

import asyncio

from courthub import storage
from courthub.classifier import (
    CaseClassifier,
    Classification,
    classify,
    score_case_types,
    select_case_types,
    should_generate_alert,
)
from courthub.extractor import extract_entities
from courthub.models import Case, CaseType, JobStatus, RiskLevel, Stage


def _case(title, text=""):
    return Case(
        id="c1", guid="g1", title=title, court="ONSC", publish_date=0,
        case_url="https://example.com/1", source="TEST", full_text=text,
    )


def test_power_of_sale_scores():
    scores, total, reasoning = score_case_types("Notice of Power of Sale for 123 Main Street")
    # 关键词 10*0.5 + 正则 10*0.8
    assert scores == {CaseType.POWER_OF_SALE: 13.0}
    assert total == 13.0
    assert 'Found keyword: "power of sale"' in reasoning
    assert "Matched pattern for POWER_OF_SALE" in reasoning


def test_threshold_drops_minor_type():
    scores = {CaseType.POWER_OF_SALE: 10.0, CaseType.LIEN: 2.0}
    # 阈值 max(3, 20*0.15) = 3
    assert select_case_types(scores, 20.0) == [CaseType.POWER_OF_SALE]


def test_threshold_is_inclusive():
    scores = {CaseType.POWER_OF_SALE: 10.0, CaseType.LIEN: 3.0}
    assert select_case_types(scores, 13.0) == [CaseType.POWER_OF_SALE, CaseType.LIEN]


def test_threshold_scales_with_total():
    scores = {CaseType.POWER_OF_SALE: 40.0, CaseType.CONDO: 5.0}
    # 阈值 max(3, 45*0.15) = 6.75
    assert select_case_types(scores, 45.0) == [CaseType.POWER_OF_SALE]


def test_classify_power_of_sale_is_high():
    c = classify(_case("Notice of Power of Sale", "123 Main Street, Toronto ON"))
    assert c.case_types == [CaseType.POWER_OF_SALE]
    assert c.risk_level is RiskLevel.HIGH
    assert c.confidence == 13.0 / 20.0


def test_classify_risk_is_max_of_selected():
    c = classify(_case("Condominium corporation lien", "Claim for common elements and maintenance fees"))
    assert CaseType.CONDO in c.case_types
    assert CaseType.LIEN in c.case_types
    assert c.risk_level is RiskLevel.MEDIUM


def test_classify_nothing_matches():
    c = classify(_case("Weekly court list", "Motions to be heard in courtroom 5"))
    assert c.case_types == []
    assert c.risk_level is RiskLevel.LOW
    assert c.confidence == 0.0
    assert not should_generate_alert(c)


def test_confidence_is_capped():
    text = "power of sale foreclosure proceedings mortgage default notice of sale receivership bankruptcy"
    assert classify(_case("x", text)).confidence == 1.0


def test_should_generate_alert():
    assert should_generate_alert(Classification([CaseType.CONDO], RiskLevel.HIGH))
    assert should_generate_alert(Classification([CaseType.ENVIRONMENTAL], RiskLevel.LOW))
    assert not should_generate_alert(Classification([CaseType.PLANNING], RiskLevel.MEDIUM))


def _seed(db, filing):
    async def _go():
        cid = await storage.insert_case_if_absent(db, filing, court="ONSC", source="TEST")
        case = await storage.get_case(db, cid)
        await storage.update_case_entities(db, cid, extract_entities(case.combined_text()))
        await storage.enqueue_job(db, cid, Stage.CLASSIFICATION)
        return cid
    return _go()


def test_classification_stage(db_path, make_filing):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            cid = await _seed(db, make_filing())
            report = await CaseClassifier(db).process_pending_jobs()
            assert report.completed == 1

            case = await storage.get_case(db, cid)
            assert case.classified
            assert case.case_types == [CaseType.POWER_OF_SALE]
            assert case.risk_level is RiskLevel.HIGH
            meta = case.metadata["classification"]
            assert meta["confidence"] > 0 and meta["reasoning"] and meta["classified_at"]

            [job] = await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION)
            assert job.priority == 8 and job.status is JobStatus.PENDING

            stats = await CaseClassifier(db).get_classification_stats()
            assert stats["total_cases"] == 1 and stats["classified"] == 1
            assert stats["classification_rate"] == 1.0
            assert stats["risk_level_distribution"] == {"HIGH": 1}
            assert stats["case_type_distribution"] == {"POWER_OF_SALE": 1}
        finally:
            await db.close()

    asyncio.run(_run())


def test_already_classified_case_is_not_reclassified(db_path, make_filing):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            cid = await _seed(db, make_filing())
            await CaseClassifier(db).process_pending_jobs()
            before = await storage.get_case(db, cid)

            # 再来一次 CLASSIFICATION：直接完成，不改案件、不再入队提醒
            await storage.enqueue_job(db, cid, Stage.CLASSIFICATION)
            report = await CaseClassifier(db).process_pending_jobs()
            assert report.completed == 1

            after = await storage.get_case(db, cid)
            assert after.metadata == before.metadata
            assert len(await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION)) == 1
        finally:
            await db.close()

    asyncio.run(_run())


def test_low_risk_case_not_queued_for_alerts(db_path, make_filing):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            f = make_filing(
                url="https://example.com/court/filings/olt.pdf",
                title="Site plan review",
                text="Zoning by-law amendment and site plan for 5 Oak Street, Guelph",
            )
            cid = await _seed(db, f)
            await CaseClassifier(db).process_pending_jobs()
            case = await storage.get_case(db, cid)
            assert case.classified and case.risk_level is RiskLevel.LOW
            assert await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION) == []
        finally:
            await db.close()

    asyncio.run(_run())


def test_alert_job_is_requeued_after_failed_enqueue(db_path, make_filing, monkeypatch):
    real_enqueue = storage.enqueue_job
    calls = {"alert": 0}

    async def flaky_enqueue(db, case_id, stage, **kw):
        if stage is Stage.ALERT_GENERATION:
            calls["alert"] += 1
            if calls["alert"] == 1:
                raise RuntimeError("database is locked")
        return await real_enqueue(db, case_id, stage, **kw)

    async def _run():
        db = await storage.init_db(db_path)
        try:
            cid = await _seed(db, make_filing())
            monkeypatch.setattr(storage, "enqueue_job", flaky_enqueue)

            # 第一次：分类已写入，提醒入队失败 -> 任务回到 PENDING
            first = await CaseClassifier(db).process_pending_jobs()
            assert first.retried == 1
            assert (await storage.get_case(db, cid)).classified
            assert await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION) == []

            # 重试：不重新分类，但补上提醒任务
            second = await CaseClassifier(db).process_pending_jobs()
            assert second.completed == 1
            [job] = await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION)
            assert job.priority == 8 and job.status is JobStatus.PENDING
        finally:
            await db.close()

    asyncio.run(_run())


def test_already_classified_low_risk_case_gets_no_alert_job(db_path, make_filing):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            f = make_filing(
                url="https://example.com/court/filings/olt-2.pdf",
                title="Site plan review",
                text="Zoning by-law amendment and site plan for 5 Oak Street, Guelph",
            )
            cid = await _seed(db, f)
            await CaseClassifier(db).process_pending_jobs()
            await storage.enqueue_job(db, cid, Stage.CLASSIFICATION)
            await CaseClassifier(db).process_pending_jobs()
            assert await storage.list_jobs(db, case_id=cid, stage=Stage.ALERT_GENERATION) == []
        finally:
            await db.close()

    asyncio.run(_run())
