# RSS/Atom 法院判决源解析器（如 CanLII 的 rss_new.xml）
# 标题、链接、摘要、发布时间

import calendar
import time
from typing import List

import feedparser

from courthub.models import Filing
from courthub.utils import get_logger

log = get_logger("rss_parser")


def _published_ms(entry) -> int:
    """
    从 feedparser 的 entry 里取发布时间（struct_time 为 UTC）；没有就用 now。
    """
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return int(calendar.timegm(parsed) * 1000)
    return int(time.time() * 1000)


def parse_rss(text: str) -> List[Filing]:
    """
    解析RSS/Atom内容，返回候选文书列表

    参数:
        text: RSS/Atom XML文本

    返回:
        Filing 列表（title / url / summary / published_ms），按 URL 去重
    """
    feed = feedparser.parse(text)
    if feed.get("bozo") and not feed.get("entries"):
        log.warning("feed could not be parsed: %r", feed.get("bozo_exception"))

    filings: List[Filing] = []
    seen = set()
    for entry in feed.get("entries", []):
        link = (entry.get("link") or entry.get("id") or "").strip()
        if not link or link in seen:
            continue
        seen.add(link)

        title = (entry.get("title") or "").strip()
        summary = (entry.get("summary") or "").strip()
        filings.append(Filing(
            title=title or link,
            url=link,
            summary=summary,
            published_ms=_published_ms(entry),
        ))

    return filings
