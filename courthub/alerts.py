# 提醒生成：已分类案件 -> 面向用户的机会提醒
# 每个案件最多一条提醒；没地址 / 类型映射不上都算正常完成（不产出）

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from courthub import storage
from courthub.jobqueue import StageReport, run_stage
from courthub.models import (
    Alert,
    AlertType,
    Case,
    CaseType,
    Priority,
    QueueItem,
    RiskLevel,
    Stage,
)
from courthub.utils import get_logger

log = get_logger("alerts")

DEFAULT_MAJOR_CITIES = ["Toronto", "Ottawa", "Mississauga", "Brampton", "Hamilton", "Markham", "Vaughan"]

# 案件类型 -> 提醒类型，按顺序第一个命中的生效
# ENVIRONMENTAL 会入队 ALERT_GENERATION，但没有对应的提醒类型，生成阶段直接空完成
ALERT_TYPE_TABLE: List[Tuple[CaseType, AlertType]] = [
    (CaseType.POWER_OF_SALE, AlertType.POWER_OF_SALE),
    (CaseType.FORECLOSURE, AlertType.POWER_OF_SALE),
    (CaseType.RECEIVERSHIP, AlertType.POWER_OF_SALE),
    (CaseType.BIA_PROCEEDING, AlertType.ESTATE_SALE),
    (CaseType.PLANNING, AlertType.DEVELOPMENT_APPLICATION),
    (CaseType.PLANNING_ACT, AlertType.DEVELOPMENT_APPLICATION),
    (CaseType.OLT_APPEAL, AlertType.DEVELOPMENT_APPLICATION),
]

HIGH_OPPORTUNITY_TYPES = {
    CaseType.POWER_OF_SALE,
    CaseType.FORECLOSURE,
    CaseType.RECEIVERSHIP,
    CaseType.BIA_PROCEEDING,
}

RISK_TO_PRIORITY = {
    RiskLevel.CRITICAL: Priority.URGENT,
    RiskLevel.HIGH: Priority.HIGH,
    RiskLevel.MEDIUM: Priority.MEDIUM,
}

ALERT_TYPE_LABELS = {
    AlertType.POWER_OF_SALE: "Power of Sale",
    AlertType.ESTATE_SALE: "Estate Sale",
    AlertType.DEVELOPMENT_APPLICATION: "Development Application",
    AlertType.MUNICIPAL_PERMIT: "Municipal Permit",
    AlertType.PROBATE_FILING: "Probate Filing",
    AlertType.TAX_SALE: "Tax Sale",
}

# 顺序有意义：semi-detached 要先于 detached
PROPERTY_TYPE_KEYWORDS = [
    (re.compile(r"\bcondo(minium)?s?\b", re.I), "Condominium"),
    (re.compile(r"\btown\s?house", re.I), "Townhouse"),
    (re.compile(r"\bsemi-detached\b", re.I), "Semi-Detached"),
    (re.compile(r"\bdetached\b", re.I), "Detached"),
    (re.compile(r"\bcommercial\b", re.I), "Commercial"),
    (re.compile(r"\bvacant\s+land\b", re.I), "Land"),
]

_MONTHS = "January|February|March|April|May|June|July|August|September|October|November|December"
COURT_DATE_RE = re.compile(
    r"\b(?:hearing|motion|sale|trial|return(?:able)?|scheduled)\b[^.]{0,60}?\b(?:on|for)\s+"
    r"(?:(" + _MONTHS + r")\s+(\d{1,2}),?\s+(\d{4})|(\d{4})-(\d{2})-(\d{2}))",
    re.I,
)


def map_alert_type(case_types: Iterable[CaseType]) -> Optional[AlertType]:
    present = set(case_types)
    for ct, at in ALERT_TYPE_TABLE:
        if ct in present:
            return at
    return None


def opportunity_score(case: Case, major_cities: Sequence[str]) -> int:
    score = 50
    if case.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        score += 30
    elif case.risk_level == RiskLevel.MEDIUM:
        score += 15
    if any(ct in HIGH_OPPORTUNITY_TYPES for ct in case.case_types):
        score += 20
    majors = {c.lower() for c in major_cities}
    if any(m.lower() in majors for m in case.municipalities):
        score += 10
    return max(0, min(100, score))


def infer_property_type(text: str) -> Optional[str]:
    for rx, label in PROPERTY_TYPE_KEYWORDS:
        if rx.search(text or ""):
            return label
    return None


def parse_court_date(text: str) -> Optional[int]:
    """尽力从正文里找开庭 / 拍卖日期，返回当天 UTC 零点毫秒；找不到或日期非法返回 None"""
    m = COURT_DATE_RE.search(text or "")
    if not m:
        return None
    try:
        if m.group(1):
            dt = datetime.strptime(f"{m.group(1)} {m.group(2)} {m.group(3)}", "%B %d %Y")
        else:
            dt = datetime(int(m.group(4)), int(m.group(5)), int(m.group(6)))
    except ValueError:
        return None
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)


def generate_alert(
    case: Case,
    *,
    major_cities: Sequence[str] = DEFAULT_MAJOR_CITIES,
    province: str = "ON",
) -> Optional[Alert]:
    """
    由已分类案件构建提醒（不入库）。

    返回 None 的情况：没有抽取到地址，或案件类型映射不到任何提醒类型。
    """
    if not case.addresses:
        return None
    alert_type = map_alert_type(case.case_types)
    if alert_type is None:
        return None

    address = case.addresses[0]
    city = case.municipalities[0] if case.municipalities else "Unknown"
    text = case.combined_text()
    label = ALERT_TYPE_LABELS[alert_type]

    title = f"{label}: {address}, {city}"
    types = ", ".join(ct.value.replace("_", " ").title() for ct in case.case_types)
    description = (
        f"{case.title or label} ({case.court}). "
        f"Case types: {types}. Risk level: {case.risk_level.value}."
    )

    return Alert(
        id="",
        title=title,
        description=description,
        address=address,
        city=city,
        province=province,
        postal_code=case.postal_codes[0] if case.postal_codes else None,
        alert_type=alert_type,
        priority=RISK_TO_PRIORITY.get(case.risk_level, Priority.LOW),
        opportunity_score=opportunity_score(case, major_cities),
        source=case.source,
        court_case_id=case.id,
        court_file_number=case.court_file_numbers[0] if case.court_file_numbers else None,
        court_date=parse_court_date(text),
        property_type=infer_property_type(text),
    )


class AlertGenerator:
    """ALERT_GENERATION 阶段；report.outputs 为本批新建的 Alert"""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        batch_size: int = 15,
        major_cities: Sequence[str] = DEFAULT_MAJOR_CITIES,
        province: str = "ON",
    ):
        self.db = db
        self.batch_size = batch_size
        self.major_cities = list(major_cities)
        self.province = province

    async def process_pending_jobs(self) -> StageReport:
        report = await run_stage(self.db, Stage.ALERT_GENERATION, self._process_job, self.batch_size)
        if report.fetched:
            log.info(
                "alert batch done: %d alerts from %d jobs (%d retry, %d failed)",
                len(report.outputs), report.fetched, report.retried, report.failed,
            )
        return report

    async def _process_job(self, job: QueueItem) -> Optional[Alert]:
        case = await storage.get_case(self.db, job.case_id)
        if case is None:
            raise LookupError(f"case {job.case_id} not found")
        if not case.classified:
            log.warning("case %s is not classified yet, no alert", case.id)
            return None
        if await storage.get_alerts_for_case(self.db, case.id):
            log.info("case %s already has an alert, skipping", case.id)
            return None

        alert = generate_alert(case, major_cities=self.major_cities, province=self.province)
        if alert is None:
            log.info("case %s: no address or no alert type mapping, no alert", case.id)
            return None

        alert = await storage.insert_alert(self.db, alert)
        log.info(
            "created alert %s for case %s: %s (%s, score %d)",
            alert.id, case.id, alert.alert_type.value, alert.priority.value, alert.opportunity_score,
        )
        return alert
