# -*- coding: utf-8 -*-
"""公告拉取与入库：解析去重、失败处理、幂等写入"""

import asyncio

import httpx
import pytest

from courthub import storage
from courthub.collector import (
    FetchError,
    fetch_bulletin,
    normalize_link,
    parse_bulletin,
    persist_filings,
    run_bulletin_poll,
)
from courthub.models import JobStatus, Stage
from courthub.parsers.bulletin_html import is_filing_url, parse_bulletin_html
from courthub.parsers.dummy_gen import generate_filings
from courthub.parsers.rss_default import parse_rss
from courthub.utils import DEFAULT_CFG

BASE = "https://www.ontariocourts.ca/scj/civil/"

PAGE = """
<html><body>
  <a href="/files/pos-123-main.pdf">Notice of Power of Sale - 123 Main Street, Toronto ON</a>
  <a href="/files/pos-123-main.pdf?utm_source=mail">Notice of Power of Sale (dup)</a>
  <a href="https://www.ontariocourts.ca/decisions/2024/abc.html">Receivership decision</a>
  <a href="/about/contact">Contact us</a>
  <a href="mailto:clerk@example.com">Email</a>
  <a href="#top">Top</a>
</body></html>
"""

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Decisions</title>
  <item><title>Bank v. Smith</title><link>https://example.com/doc/1</link>
    <description>Power of sale proceedings</description>
    <pubDate>Mon, 04 Mar 2024 10:00:00 GMT</pubDate></item>
  <item><title>Bank v. Smith (again)</title><link>https://example.com/doc/1</link></item>
  <item><title>Re Condo Corp</title><link>https://example.com/doc/2</link></item>
</channel></rss>
"""


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_is_filing_url():
    assert is_filing_url("https://x.ca/a/b.PDF")
    assert is_filing_url("https://x.ca/decisions/2024/1.html")
    assert not is_filing_url("https://x.ca/about/contact")


def test_parse_html_dedupes_by_url():
    filings = parse_bulletin(PAGE, BASE, "text/html")
    assert [f.url for f in filings] == [
        "https://www.ontariocourts.ca/files/pos-123-main.pdf",
        "https://www.ontariocourts.ca/decisions/2024/abc.html",
    ]
    assert filings[0].title == "Notice of Power of Sale - 123 Main Street, Toronto ON"


def test_parse_html_raw_keeps_first_seen_order():
    html = '<a href="b.pdf">B</a><a href="a.pdf">A</a><a href="b.pdf">B2</a>'
    assert [f.title for f in parse_bulletin_html(html, "https://x.ca/")] == ["B", "A"]


def test_parse_rss():
    filings = parse_rss(RSS)
    assert [f.url for f in filings] == ["https://example.com/doc/1", "https://example.com/doc/2"]
    assert filings[0].summary == "Power of sale proceedings"
    assert filings[0].published_ms == 1709546400000


def test_rss_body_is_detected():
    filings = parse_bulletin(RSS, "https://example.com/rss", "application/xml")
    assert len(filings) == 2


def test_normalize_link_drops_tracking():
    assert normalize_link("https://x.ca/a.pdf?utm_source=x&id=3#frag") == "https://x.ca/a.pdf?id=3"


def test_fetch_ok():
    def handler(request):
        assert request.headers["user-agent"] == "court-hub/1.0"
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})

    async def _run():
        async with _client(handler) as client:
            client.headers["User-Agent"] = "court-hub/1.0"
            return await fetch_bulletin(BASE, client=client)

    assert len(asyncio.run(_run())) == 2


def test_fetch_non_2xx_raises():
    async def _run():
        async with _client(lambda r: httpx.Response(503, text="down")) as client:
            await fetch_bulletin(BASE, client=client)

    with pytest.raises(FetchError, match="503"):
        asyncio.run(_run())


def test_fetch_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async def _run():
        async with _client(handler) as client:
            await fetch_bulletin(BASE, timeout_ms=50, client=client)

    with pytest.raises(FetchError, match="timeout"):
        asyncio.run(_run())


def test_persist_is_idempotent(db_path):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            filings = parse_bulletin(PAGE, BASE)
            first = await persist_filings(db, filings, concurrency=2)
            assert len(first.created) == 2 and first.existing == 0

            # 同一 URL 的新标题不会覆盖已有案件
            filings[0].title = "changed"
            second = await persist_filings(db, filings)
            assert second.created == [] and second.existing == 2

            assert await storage.count_cases(db) == 2
            case = await storage.get_case(db, first.created[0])
            assert case.title != "changed"
            assert not case.classified

            jobs = await storage.list_jobs(db, stage=Stage.EXTRACTION)
            assert len(jobs) == 2
            assert all(j.status is JobStatus.PENDING for j in jobs)
        finally:
            await db.close()

    asyncio.run(_run())


def test_persist_requeues_case_whose_enqueue_failed(db_path, make_filing, monkeypatch):
    real_enqueue = storage.enqueue_job
    calls = {"n": 0}

    async def flaky_enqueue(db, case_id, stage, **kw):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database is locked")
        return await real_enqueue(db, case_id, stage, **kw)

    async def _run():
        db = await storage.init_db(db_path)
        try:
            monkeypatch.setattr(storage, "enqueue_job", flaky_enqueue)
            filing = make_filing()
            with pytest.raises(RuntimeError, match="locked"):
                await persist_filings(db, [filing])
            # 案件已写入，但没有任务
            assert await storage.count_cases(db) == 1
            assert await storage.list_jobs(db, stage=Stage.EXTRACTION) == []

            # 下一轮轮询补上入队
            again = await persist_filings(db, [filing])
            assert again.created == [] and again.existing == 1
            assert again.requeued == [storage.case_id_for(filing.url)]
            [job] = await storage.list_jobs(db, stage=Stage.EXTRACTION)
            assert job.status is JobStatus.PENDING

            # 再来一轮：已有任务，不重复入队
            third = await persist_filings(db, [filing])
            assert third.requeued == []
            assert len(await storage.list_jobs(db, stage=Stage.EXTRACTION)) == 1
        finally:
            await db.close()

    asyncio.run(_run())


def test_persist_finishes_other_filings_before_raising(db_path, make_filing, monkeypatch):
    real_insert = storage.insert_case_if_absent

    async def flaky_insert(db, filing, **kw):
        if filing.url.endswith("/bad.pdf"):
            raise RuntimeError("disk I/O error")
        return await real_insert(db, filing, **kw)

    async def _run():
        db = await storage.init_db(db_path)
        try:
            monkeypatch.setattr(storage, "insert_case_if_absent", flaky_insert)
            filings = [
                make_filing(url="https://example.com/court/filings/bad.pdf"),
                make_filing(url="https://example.com/court/filings/a.pdf"),
                make_filing(url="https://example.com/court/filings/b.pdf"),
            ]
            with pytest.raises(RuntimeError, match="disk I/O"):
                await persist_filings(db, filings, concurrency=1)
            assert await storage.count_cases(db) == 2
            assert len(await storage.list_jobs(db, stage=Stage.EXTRACTION)) == 2
        finally:
            await db.close()

    asyncio.run(_run())


def test_poll_failure_persists_nothing(db_path):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            async with _client(lambda r: httpx.Response(500)) as client:
                with pytest.raises(FetchError):
                    await run_bulletin_poll(db, DEFAULT_CFG, client=client)
            assert await storage.count_cases(db) == 0
        finally:
            await db.close()

    asyncio.run(_run())


def test_poll_dummy_source(db_path):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            cfg = {**DEFAULT_CFG, "bulletin": {**DEFAULT_CFG["bulletin"], "type": "dummy"}}
            res = await run_bulletin_poll(db, cfg)
            assert 1 <= len(res.created) <= 3
        finally:
            await db.close()

    asyncio.run(_run())


def test_unknown_source_type(db_path):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            cfg = {**DEFAULT_CFG, "bulletin": {**DEFAULT_CFG["bulletin"], "type": "ftp"}}
            await run_bulletin_poll(db, cfg)
        finally:
            await db.close()

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_dummy_generator_is_deterministic_with_seed():
    a = generate_filings(count=4, seed=7)
    b = generate_filings(count=4, seed=7)
    assert [f.url for f in a] == [f.url for f in b]
    assert len({f.url for f in a}) == 4
