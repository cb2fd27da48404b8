# 实体抽取（NER）
# 纯规则、确定性：地址、邮编、市镇、当事人、法规、法院案号
# 不用任何统计模型，方便测试

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

import aiosqlite

from courthub import storage
from courthub.jobqueue import StageReport, run_stage
from courthub.models import QueueItem, Stage
from courthub.utils import dedupe, get_logger

log = get_logger("extractor")

STREET_SUFFIXES = [
    "Street", "St", "Avenue", "Ave", "Road", "Rd", "Drive", "Dr", "Boulevard", "Blvd",
    "Crescent", "Cres", "Court", "Ct", "Lane", "Ln", "Way", "Place", "Pl", "Trail",
    "Parkway", "Pkwy", "Circle", "Cir", "Terrace", "Square", "Gate", "Highway", "Hwy",
]

# 123 Main Street / 45 Queen Street West / 7B Elm Ave
ADDRESS_RE = re.compile(
    r"\b\d{1,6}[A-Za-z]?[ \t]+"
    r"(?:[A-Z][A-Za-z'\-]*\.?[ \t]+){1,4}?"
    r"(?:" + "|".join(STREET_SUFFIXES) + r")\b\.?"
    r"(?:[ \t]+(?:East|West|North|South|E|W|N|S)\b)?"
)

# 加拿大邮编 A1A 1A1
POSTAL_RE = re.compile(r"\b([ABCEGHJ-NPRSTVXY]\d[ABCEGHJ-NPRSTV-Z])[ \-]?(\d[ABCEGHJ-NPRSTV-Z]\d)\b")

# 安省市镇（按名称长度倒序匹配，避免 "Richmond Hill" 被 "Richmond" 抢先）
ONTARIO_MUNICIPALITIES = [
    "Toronto", "Ottawa", "Mississauga", "Brampton", "Hamilton", "London", "Markham",
    "Vaughan", "Kitchener", "Windsor", "Richmond Hill", "Oakville", "Burlington",
    "Oshawa", "Barrie", "St. Catharines", "Cambridge", "Kingston", "Guelph", "Whitby",
    "Ajax", "Pickering", "Milton", "Waterloo", "Sudbury", "Greater Sudbury",
    "Thunder Bay", "Newmarket", "Aurora", "Niagara Falls", "Peterborough",
    "Sault Ste. Marie", "Brantford", "Belleville", "Whitchurch-Stouffville",
    "Caledon", "Clarington", "Halton Hills", "Georgetown", "Scarborough",
    "Etobicoke", "North York", "East Gwillimbury", "Innisfil", "Orillia",
]
_MUNICIPALITY_RE = re.compile(
    r"\b(" + "|".join(re.escape(m) for m in sorted(ONTARIO_MUNICIPALITIES, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_MUNICIPALITY_CANON = {m.lower(): m for m in ONTARIO_MUNICIPALITIES}

PARTY_ROLES = [
    "Plaintiff", "Defendant", "Applicant", "Respondent", "Executor", "Executrix",
    "Trustee", "Receiver", "Mortgagee", "Mortgagor", "Debtor", "Creditor", "Appellant",
]
_ROLE_ALT = "|".join(PARTY_ROLES)
# 名称里的大写词不能是角色词本身，否则 "... Mortgagor: John" 的角色会被上一个名字吃掉
_NAME_TOKEN = r"(?!(?i:" + _ROLE_ALT + r")s?\b)[A-Z][A-Za-z0-9&.'\-]*"
_NAME = _NAME_TOKEN + r"(?:[ \t]+(?:" + _NAME_TOKEN + r"|of|and|de|du|la))*"

# "Plaintiff: John Smith" / "Defendants - ABC Corp."
PARTY_AFTER_ROLE_RE = re.compile(r"\b(?i:" + _ROLE_ALT + r")s?[ \t]*[:\-][ \t]*(" + _NAME + r")")
# "John Smith (Defendant)" / "ABC Bank, Plaintiff"
PARTY_BEFORE_ROLE_RE = re.compile(
    r"(" + _NAME + r")[ \t]*(?:,[ \t]*|\([ \t]*)(?:the[ \t]+)?(?i:" + _ROLE_ALT + r")s?\b"
)
_ROLE_WORDS = {r.lower() for r in PARTY_ROLES} | {r.lower() + "s" for r in PARTY_ROLES}
_NAME_STOP_PREFIX = {"between", "and", "the", "of"}
_NAME_STOP_SUFFIX = {"and", "of", "de", "du", "la"}
# 以句点结尾但属于名称本身的缩写
_NAME_ABBREV = {"inc.", "ltd.", "corp.", "co.", "jr.", "sr.", "ulc.", "llp."}
_HONORIFICS = {"mr.", "mrs.", "ms.", "dr."}

# "Mortgages Act" / "Bankruptcy and Insolvency Act, R.S.C. 1985"
STATUTE_RE = re.compile(
    r"\b((?:[A-Z][a-z]+[ \t]+(?:(?:and|of|the)[ \t]+)?){1,6}Act)\b"
    r"(?:,?[ \t]*((?:R\.S\.O\.|S\.O\.|R\.S\.C\.|S\.C\.)[ \t]*\d{4}(?:,[ \t]*c\.[ \t]*[A-Z0-9.\-]+)?))?"
)
_STATUTE_LEADING = ("The ", "This ", "Said ", "Under ", "Pursuant ")

# CV-24-00012345-0000 / CV-24-12345 / BK-23-... / 31-2987654（破产编号）
FILE_NUMBER_RE = re.compile(
    r"\b((?:CV|BK|FS|CR|CL|SC|DC|CI)-\d{2}-\d{3,8}(?:-[0-9A-Z]{2,6})?|31-\d{6,7})\b"
)
FILE_LABEL_RE = re.compile(r"(?i:court\s+file\s+(?:no\.?|number))\s*:?\s*([A-Z0-9][A-Z0-9\-/]{3,30})")


@dataclass
class Entities:
    addresses: List[str] = field(default_factory=list)
    municipalities: List[str] = field(default_factory=list)
    parties: List[str] = field(default_factory=list)
    statutes: List[str] = field(default_factory=list)
    court_file_numbers: List[str] = field(default_factory=list)
    postal_codes: List[str] = field(default_factory=list)


def extract_addresses(text: str) -> List[str]:
    out = []
    for m in ADDRESS_RE.finditer(text):
        addr = " ".join(m.group(0).split()).rstrip(".,")
        out.append(addr)
    return dedupe(out)


def extract_postal_codes(text: str) -> List[str]:
    return dedupe([f"{a} {b}" for a, b in POSTAL_RE.findall(text)])


def extract_municipalities(text: str) -> List[str]:
    found = [_MUNICIPALITY_CANON[m.group(1).lower()] for m in _MUNICIPALITY_RE.finditer(text)]
    return dedupe(found)


def _sentences(tokens: List[str]) -> List[List[str]]:
    # 名称正则会跨过句点，按句切开
    out, cur = [], []
    for tok in tokens:
        low = tok.lower()
        if not tok.endswith(".") or (low in _HONORIFICS and not cur):
            cur.append(tok)
            continue
        cur.append(tok if low in _NAME_ABBREV else tok.rstrip("."))
        out.append(cur)
        cur = []
    if cur:
        out.append(cur)
    return [s for s in out if s]


def _clean_party(raw: str, keep_last: bool = False) -> str:
    segments = _sentences(raw.split())
    if not segments:
        return ""
    tokens = segments[-1] if keep_last else segments[0]
    # 碰到角色词就截断（"John Smith Defendant" -> "John Smith"）
    for i, tok in enumerate(tokens):
        if tok.strip(".,:;()").lower() in _ROLE_WORDS:
            tokens = tokens[:i]
            break
    while tokens and tokens[0].lower() in _NAME_STOP_PREFIX:
        tokens = tokens[1:]
    while tokens and tokens[-1].lower() in _NAME_STOP_SUFFIX:
        tokens = tokens[:-1]
    return " ".join(tokens).strip(" ,;:")


def extract_parties(text: str) -> List[str]:
    hits = []
    for rx, keep_last in ((PARTY_AFTER_ROLE_RE, False), (PARTY_BEFORE_ROLE_RE, True)):
        for m in rx.finditer(text):
            name = _clean_party(m.group(1), keep_last)
            if len(name) >= 2:
                hits.append((m.start(1), name))
    hits.sort(key=lambda h: h[0])
    return dedupe([name for _, name in hits])


def extract_statutes(text: str) -> List[str]:
    out = []
    for m in STATUTE_RE.finditer(text):
        name = m.group(1)
        for lead in _STATUTE_LEADING:
            if name.startswith(lead):
                name = name[len(lead):]
        if name == "Act" or not name.endswith("Act"):
            continue
        cite = (m.group(2) or "").rstrip(".")
        out.append(f"{name}, {cite}" if cite else name)
    return dedupe(out)


def extract_court_file_numbers(text: str) -> List[str]:
    hits = [(m.start(1), m.group(1)) for m in FILE_NUMBER_RE.finditer(text)]
    hits += [(m.start(1), m.group(1).rstrip("-/")) for m in FILE_LABEL_RE.finditer(text)]
    hits.sort(key=lambda h: h[0])
    return dedupe([v for _, v in hits])


def extract_entities(text: str) -> Entities:
    text = text or ""
    return Entities(
        addresses=extract_addresses(text),
        municipalities=extract_municipalities(text),
        parties=extract_parties(text),
        statutes=extract_statutes(text),
        court_file_numbers=extract_court_file_numbers(text),
        postal_codes=extract_postal_codes(text),
    )


class EntityExtractor:
    """EXTRACTION 阶段：抽取实体写回案件，并把案件排入 CLASSIFICATION"""

    def __init__(self, db: aiosqlite.Connection, *, batch_size: int = 20, max_attempts: int = 3):
        self.db = db
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def process_pending_jobs(self) -> StageReport:
        report = await run_stage(self.db, Stage.EXTRACTION, self._process_job, self.batch_size)
        if report.fetched:
            log.info(
                "extraction batch done: %d completed, %d retry, %d failed",
                report.completed, report.retried, report.failed,
            )
        return report

    async def _process_job(self, job: QueueItem) -> None:
        case = await storage.get_case(self.db, job.case_id)
        if case is None:
            raise LookupError(f"case {job.case_id} not found")
        if case.classified:
            log.info("case %s already classified, skipping extraction", case.id)
            return None

        entities = extract_entities(case.combined_text())
        await storage.update_case_entities(self.db, case.id, entities)
        await storage.enqueue_job(
            self.db, case.id, Stage.CLASSIFICATION, priority=5, max_attempts=self.max_attempts,
        )
        log.debug(
            "case %s: %d addresses, %d municipalities, %d parties",
            case.id, len(entities.addresses), len(entities.municipalities), len(entities.parties),
        )
        return None
