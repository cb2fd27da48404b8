# 法院公告 HTML 页面解析器
# 只挑出像文书的链接：.pdf 结尾，或路径里带已知片段（court-lists / decisions / doc）

from __future__ import annotations

import re
from typing import List
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from courthub.models import Filing

DEFAULT_BASE_URL = "https://www.ontariocourts.ca/"

# 已知的文书路径片段
FILING_PATH_SEGMENTS = ("court-lists", "/decisions/", "/doc/")

_PDF_RE = re.compile(r"\.pdf$", re.IGNORECASE)


def is_filing_url(url: str) -> bool:
    path = url.split("?", 1)[0].split("#", 1)[0]
    if _PDF_RE.search(path):
        return True
    return any(seg in url for seg in FILING_PATH_SEGMENTS)


def parse_bulletin_html(html: str, base_url: str = DEFAULT_BASE_URL) -> List[Filing]:
    """
    解析公告页 HTML，返回候选文书列表（title + 绝对 URL）。
    同一轮解析内按 URL 去重，保留首次出现的顺序。
    """
    soup = BeautifulSoup(html or "", "html.parser")
    filings: List[Filing] = []
    seen = set()

    for a in soup.find_all("a", href=True):
        href = (a.get("href") or "").strip()
        if not href or href.startswith(("mailto:", "javascript:", "#")):
            continue
        url = urljoin(base_url, href)
        if url in seen or not is_filing_url(url):
            continue
        seen.add(url)
        title = " ".join(a.get_text(" ", strip=True).split())
        filings.append(Filing(title=title or url, url=url))

    return filings
