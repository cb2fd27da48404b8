# -*- coding: utf-8 -*-
"""
courthub/classifier.py
案件分类：加权规则表打分 -> 选出案件类型 -> 取最高风险等级。
- 关键词命中（不区分大小写的子串）：weight * 0.5
- 正则命中：weight * 0.8
- 阈值：max(3, 总分 * 0.15)，得分 >= 阈值的类型入选
- 风险：入选类型里最高的那个；都没入选就是 LOW
规则表固定在代码里，不走配置。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Pattern, Sequence, Tuple

import aiosqlite

from courthub import storage
from courthub.jobqueue import StageReport, run_stage
from courthub.models import Case, CaseType, JobStatus, QueueItem, RiskLevel, Stage, risk_rank
from courthub.utils import get_logger, now_ms

log = get_logger("classifier")

KEYWORD_FACTOR = 0.5
PATTERN_FACTOR = 0.8
MIN_THRESHOLD = 3.0
THRESHOLD_RATIO = 0.15
CONFIDENCE_SCALE = 20.0

ALERT_GENERATION_PRIORITY = 8

# 这些类型无论风险等级都值得生成提醒
ALERTABLE_CASE_TYPES = {
    CaseType.POWER_OF_SALE,
    CaseType.FORECLOSURE,
    CaseType.RECEIVERSHIP,
    CaseType.BIA_PROCEEDING,
    CaseType.ENVIRONMENTAL,
}


@dataclass(frozen=True)
class ClassificationRule:
    case_type: CaseType
    keywords: Tuple[str, ...]
    patterns: Tuple[Pattern, ...]
    weight: float
    risk_level: RiskLevel


@dataclass
class Classification:
    case_types: List[CaseType] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    confidence: float = 0.0
    reasoning: List[str] = field(default_factory=list)


def _rule(case_type, keywords, patterns, weight, risk_level) -> ClassificationRule:
    return ClassificationRule(
        case_type=case_type,
        keywords=tuple(keywords),
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        weight=weight,
        risk_level=risk_level,
    )


CLASSIFICATION_RULES: List[ClassificationRule] = [
    # 抵押权人出售 / 止赎
    _rule(
        CaseType.POWER_OF_SALE,
        ["power of sale", "foreclosure", "mortgage default", "notice of sale", "final order for sale"],
        [r"power\s+of\s+sale", r"foreclosure\s+proceedings?", r"mortgage\s+default", r"notice\s+of\s+sale"],
        10, RiskLevel.HIGH,
    ),
    _rule(
        CaseType.FORECLOSURE,
        ["foreclosure", "mortgage action", "default judgment", "judicial sale"],
        [r"foreclosure\s+action", r"mortgage\s+action", r"judicial\s+sale", r"default\s+judgment"],
        10, RiskLevel.HIGH,
    ),
    # 留置权
    _rule(
        CaseType.CONSTRUCTION_LIEN,
        ["construction lien", "builders lien", "mechanics lien", "construction act"],
        [r"construction\s+(lien|act)", r"builders?\s+lien", r"mechanics?\s+lien", r"holdback"],
        9, RiskLevel.MEDIUM,
    ),
    _rule(
        CaseType.LIEN,
        ["lien", "charge", "encumbrance", "security interest"],
        [r"\blien\b", r"\bcharge\b", r"security\s+interest", r"encumbrance"],
        7, RiskLevel.MEDIUM,
    ),
    # 共管公寓
    _rule(
        CaseType.CONDO,
        ["condominium", "condo", "common elements", "condo corporation", "maintenance fees"],
        [r"condominium", r"\bcondo\b", r"common\s+elements", r"maintenance\s+fees?", r"condo\s+corp"],
        8, RiskLevel.LOW,
    ),
    # 接管
    _rule(
        CaseType.RECEIVERSHIP,
        ["receiver", "receivership", "court appointed receiver", "interim receiver"],
        [r"receiver(ship)?", r"court\s+appointed\s+receiver", r"interim\s+receiver"],
        9, RiskLevel.HIGH,
    ),
    # 规划与开发
    _rule(
        CaseType.PLANNING,
        ["planning act", "zoning", "subdivision", "site plan", "development"],
        [r"planning\s+act", r"zoning\s+(by-?law|appeal)", r"subdivision", r"site\s+plan",
         r"development\s+(application|permit)"],
        6, RiskLevel.LOW,
    ),
    _rule(
        CaseType.OLT_APPEAL,
        ["ontario land tribunal", "olt", "land tribunal", "planning appeal"],
        [r"ontario\s+land\s+tribunal", r"\bolt\b", r"land\s+tribunal", r"planning\s+appeal"],
        8, RiskLevel.MEDIUM,
    ),
    # 环境
    _rule(
        CaseType.ENVIRONMENTAL,
        ["environmental", "contamination", "remediation", "environmental protection act"],
        [r"environmental\s+(protection\s+act|assessment|contamination)", r"soil\s+contamination",
         r"remediation", r"hazardous\s+waste"],
        7, RiskLevel.HIGH,
    ),
    # 破产与无力偿债
    _rule(
        CaseType.BIA_PROCEEDING,
        ["bankruptcy", "insolvency", "bia", "assignment in bankruptcy", "proposal"],
        [r"bankruptcy\s+and\s+insolvency\s+act", r"\bbia\b", r"assignment\s+in\s+bankruptcy",
         r"consumer\s+proposal", r"\bbankruptcy\b"],
        9, RiskLevel.HIGH,
    ),
    # 劳动 / 职业安全定罪
    _rule(
        CaseType.LABOUR_CONVICTION,
        ["employment standards", "labour relations", "workplace safety", "occupational health"],
        [r"employment\s+standards\s+act", r"labour\s+relations\s+act", r"workplace\s+safety",
         r"occupational\s+health", r"ministry\s+of\s+labour"],
        5, RiskLevel.MEDIUM,
    ),
    _rule(
        CaseType.PLANNING_ACT,
        ["planning act", "part lot control", "consent", "severance"],
        [r"planning\s+act", r"part\s+lot\s+control", r"consent\s+(application|to\s+sever)", r"severance"],
        6, RiskLevel.LOW,
    ),
]

_RULE_BY_TYPE = {r.case_type: r for r in CLASSIFICATION_RULES}


def score_case_types(
    text: str,
    rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES,
) -> Tuple[Dict[CaseType, float], float, List[str]]:
    """
    对文本逐条规则打分

    返回:
        (scores, total, reasoning)；scores 只含得分 > 0 的类型，按规则表顺序
    """
    low = (text or "").lower()
    scores: Dict[CaseType, float] = {}
    reasoning: List[str] = []
    total = 0.0

    for rule in rules:
        s = 0.0
        for kw in rule.keywords:
            if kw.lower() in low:
                s += rule.weight * KEYWORD_FACTOR
                reasoning.append(f'Found keyword: "{kw}"')
        for pat in rule.patterns:
            if pat.search(low):
                s += rule.weight * PATTERN_FACTOR
                reasoning.append(f"Matched pattern for {rule.case_type.value}")
        if s > 0:
            scores[rule.case_type] = scores.get(rule.case_type, 0.0) + s
            total += s

    return scores, total, reasoning


def select_case_types(scores: Dict[CaseType, float], total: float) -> List[CaseType]:
    threshold = max(MIN_THRESHOLD, total * THRESHOLD_RATIO)
    return [ct for ct, s in scores.items() if s >= threshold]


def max_risk(case_types: Sequence[CaseType]) -> RiskLevel:
    level = RiskLevel.LOW
    for ct in case_types:
        rule = _RULE_BY_TYPE.get(ct)
        if rule and risk_rank(rule.risk_level) > risk_rank(level):
            level = rule.risk_level
    return level


def classify(case: Case) -> Classification:
    scores, total, reasoning = score_case_types(case.combined_text())
    case_types = select_case_types(scores, total)
    return Classification(
        case_types=case_types,
        risk_level=max_risk(case_types),
        confidence=min(1.0, total / CONFIDENCE_SCALE),
        reasoning=reasoning,
    )


def should_generate_alert(c: Classification) -> bool:
    if c.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        return True
    return any(ct in ALERTABLE_CASE_TYPES for ct in c.case_types)


class CaseClassifier:
    """CLASSIFICATION 阶段"""

    def __init__(self, db: aiosqlite.Connection, *, batch_size: int = 15, max_attempts: int = 3):
        self.db = db
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def process_pending_jobs(self) -> StageReport:
        report = await run_stage(self.db, Stage.CLASSIFICATION, self._process_job, self.batch_size)
        if report.fetched:
            log.info(
                "classification batch done: %d completed, %d retry, %d failed",
                report.completed, report.retried, report.failed,
            )
        return report

    async def _process_job(self, job: QueueItem) -> None:
        case = await storage.get_case(self.db, job.case_id)
        if case is None:
            raise LookupError(f"case {job.case_id} not found")
        if case.classified:
            # 已分类：不重复分类；但上次可能分类写入成功、提醒入队失败，这里补入队
            log.info("case %s already classified, skipping", case.id)
            await self._requeue_alert_if_missing(case)
            return None

        c = classify(case)
        metadata = dict(case.metadata)
        metadata["classification"] = {
            "confidence": c.confidence,
            "reasoning": c.reasoning,
            "classified_at": now_ms(),
        }
        changed = await storage.update_case_classification(
            self.db, case.id, c.case_types, c.risk_level, metadata,
        )
        if not changed:
            log.info("case %s was classified concurrently, skipping", case.id)
            return None

        log.info(
            "classified case %s: %s (%s)",
            case.id, ", ".join(ct.value for ct in c.case_types) or "-", c.risk_level.value,
        )

        if should_generate_alert(c):
            await self._enqueue_alert(case.id)
        return None

    async def _enqueue_alert(self, case_id: str) -> None:
        await storage.enqueue_job(
            self.db, case_id, Stage.ALERT_GENERATION,
            priority=ALERT_GENERATION_PRIORITY, max_attempts=self.max_attempts,
        )

    async def _requeue_alert_if_missing(self, case: Case) -> None:
        stored = Classification(case.case_types, case.risk_level, 0.0, [])
        if not should_generate_alert(stored):
            return
        if await storage.list_jobs(self.db, case_id=case.id, stage=Stage.ALERT_GENERATION):
            return
        log.warning("case %s is classified but has no alert job, enqueueing", case.id)
        await self._enqueue_alert(case.id)


    async def get_classification_stats(self) -> Dict:
        counts = await storage.get_classification_counts(self.db)
        queue = (await storage.get_queue_stats(self.db)).get(Stage.CLASSIFICATION.value, {})
        total = counts["total_cases"]
        return {
            "total_cases": total,
            "classified": counts["classified"],
            "classification_pending": queue.get(JobStatus.PENDING.value, 0),
            "classification_failed": queue.get(JobStatus.FAILED.value, 0),
            "classification_rate": counts["classified"] / max(total, 1),
            "case_type_distribution": counts["case_types"],
            "risk_level_distribution": counts["risk_levels"],
        }
