from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiosqlite
import httpx

from courthub import storage
from courthub.models import Filing, Stage
from courthub.parsers.bulletin_html import parse_bulletin_html
from courthub.parsers.dummy_gen import generate_filings
from courthub.parsers.rss_default import parse_rss
from courthub.utils import get_logger

log = get_logger("collector")


class FetchError(Exception):
    """公告拉取失败（超时 / 非 2xx / 网络错误）。可重试：由调用方决定下一轮再来。"""


@dataclass
class PersistResult:
    created: List[str] = field(default_factory=list)  # 新建的 case id
    existing: int = 0
    requeued: List[str] = field(default_factory=list)  # 已存在但缺 EXTRACTION 任务、补入队的


# -------------------- 工具函数 --------------------

def normalize_link(url: Optional[str]) -> Optional[str]:
    """
    规范化链接：去掉 utm_*、ref/ref_src 等统计参数，去掉 fragment。
    让“同文不同链”更容易被识别为同一条。
    """
    if not url:
        return url
    from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode
    u = urlparse(url)
    qs = [
        (k, v)
        for (k, v) in parse_qsl(u.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in {"ref", "ref_src"}
    ]
    return urlunparse((u.scheme, u.netloc, u.path, u.params, urlencode(qs, doseq=True), ""))


def _looks_like_feed(text: str, content_type: str) -> bool:
    head = (text or "")[:500].lstrip().lower()
    if "rss" in content_type or "atom" in content_type:
        return True
    return head.startswith("<?xml") or head.startswith("<rss") or head.startswith("<feed")


def parse_bulletin(text: str, base_url: str, content_type: str = "") -> List[Filing]:
    """按内容选择解析器；RSS/Atom 走 feedparser，其它当 HTML 处理。结果按规范化 URL 去重。"""
    if _looks_like_feed(text, content_type.lower()):
        raw = parse_rss(text)
    else:
        raw = parse_bulletin_html(text, base_url)

    out: List[Filing] = []
    seen = set()
    for f in raw:
        f.url = normalize_link(f.url)
        if f.url in seen:
            continue
        seen.add(f.url)
        out.append(f)
    return out


# -------------------- 拉取 --------------------

async def fetch_bulletin(
    url: str,
    *,
    timeout_ms: int = 10000,
    user_agent: str = "court-hub/1.0",
    client: Optional[httpx.AsyncClient] = None,
) -> List[Filing]:
    """
    单次 GET 公告源并解析。不在内部重试：失败抛 FetchError，整轮放弃。
    """
    timeout = httpx.Timeout(timeout_ms / 1000.0)
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout, headers={"User-Agent": user_agent}, follow_redirects=True)
    try:
        resp = await client.get(url, timeout=timeout)
    except httpx.TimeoutException as e:
        raise FetchError(f"timeout after {timeout_ms}ms fetching {url}") from e
    except httpx.HTTPError as e:
        raise FetchError(f"error fetching {url}: {e!r}") from e
    finally:
        if own_client:
            await client.aclose()

    if not resp.is_success:
        raise FetchError(f"failed to fetch bulletin: {resp.status_code} {resp.reason_phrase}")

    filings = parse_bulletin(resp.text, str(resp.url), resp.headers.get("content-type", ""))
    log.info("fetched %d filings from %s", len(filings), url)
    return filings


# -------------------- 入库 --------------------

async def persist_filings(
    db: aiosqlite.Connection,
    filings: List[Filing],
    *,
    court: str = "ONSC",
    source: str = "ONTARIO_COURT_BULLETINS",
    concurrency: int = 5,
    max_attempts: int = 3,
) -> PersistResult:
    """
    幂等入库：按 URL insert-if-absent；新案件入队 EXTRACTION。
    已存在的案件保持原样；若它还没抽取过、队列里也没有任何 EXTRACTION 任务
    （上次写入成功但入队失败），补一次入队。写入并发受 Semaphore 限制。
    所有写入跑完后才把第一个错误抛出去。
    """
    result = PersistResult()
    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _one(filing: Filing) -> None:
        async with sem:
            case_id = await storage.insert_case_if_absent(db, filing, court=court, source=source)
            if case_id is not None:
                await storage.enqueue_job(db, case_id, Stage.EXTRACTION, max_attempts=max_attempts)
                result.created.append(case_id)
                return
            result.existing += 1
            case_id = storage.case_id_for(filing.url)
            case = await storage.get_case(db, case_id)
            if case is None or case.ner_processed:
                return
            if await storage.list_jobs(db, case_id=case_id, stage=Stage.EXTRACTION):
                return
            log.warning("case %s has no extraction job, enqueueing", case_id)
            await storage.enqueue_job(db, case_id, Stage.EXTRACTION, max_attempts=max_attempts)
            result.requeued.append(case_id)

    outcomes = await asyncio.gather(*(_one(f) for f in filings), return_exceptions=True)
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    log.info(
        "persisted filings: %d new, %d already known, %d requeued, %d errors",
        len(result.created), result.existing, len(result.requeued), len(errors),
    )
    if errors:
        raise errors[0]
    return result


# -------------------- 一轮完整轮询 --------------------

async def run_bulletin_poll(
    db: aiosqlite.Connection,
    cfg: Dict[str, Any],
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> PersistResult:
    """
    fetch + persist。拉取失败直接抛出（不做部分入库），交给调度方记录并等待下一轮。
    """
    b = cfg.get("bulletin", {})
    src_type = (b.get("type") or "html").strip().lower()

    if src_type == "dummy":
        filings = generate_filings()
    elif src_type in ("html", "rss"):
        filings = await fetch_bulletin(
            b["url"],
            timeout_ms=int(b.get("timeout_ms", 10000)),
            user_agent=b.get("user_agent", "court-hub/1.0"),
            client=client,
        )
    else:
        raise ValueError(f"unknown bulletin type: {src_type}")

    return await persist_filings(
        db,
        filings,
        court=b.get("court", "ONSC"),
        source=b.get("source", "ONTARIO_COURT_BULLETINS"),
        concurrency=int(b.get("concurrency", 5)),
        max_attempts=int(cfg.get("pipeline", {}).get("max_attempts", 3)),
    )
