# -*- coding: utf-8 -*-
"""
models.py
法院公告流水线的数据模型。
- Case：从公告源发现的一条法律文书（案件）
- QueueItem：处理队列中的一个任务（一个案件 × 一个阶段）
- Alert：由已分类案件生成的面向用户的机会提醒
- AlertPreference / User / UserAlert：订阅者画像（外部维护，流水线只读）
- MatchResult：匹配器的临时输出，不入库
时间字段统一为 UTC 毫秒（int），与存储层保持一致。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def risk_rank(level: RiskLevel) -> int:
    return RISK_ORDER.index(RiskLevel(level))


class CaseType(str, Enum):
    FORECLOSURE = "FORECLOSURE"
    POWER_OF_SALE = "POWER_OF_SALE"
    LIEN = "LIEN"
    CONDO = "CONDO"
    RECEIVERSHIP = "RECEIVERSHIP"
    PLANNING = "PLANNING"
    OLT_APPEAL = "OLT_APPEAL"
    ENVIRONMENTAL = "ENVIRONMENTAL"
    LABOUR_CONVICTION = "LABOUR_CONVICTION"
    CONSTRUCTION_LIEN = "CONSTRUCTION_LIEN"
    PLANNING_ACT = "PLANNING_ACT"
    BIA_PROCEEDING = "BIA_PROCEEDING"


class Stage(str, Enum):
    EXTRACTION = "EXTRACTION"
    CLASSIFICATION = "CLASSIFICATION"
    ALERT_GENERATION = "ALERT_GENERATION"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AlertType(str, Enum):
    POWER_OF_SALE = "POWER_OF_SALE"
    ESTATE_SALE = "ESTATE_SALE"
    DEVELOPMENT_APPLICATION = "DEVELOPMENT_APPLICATION"
    MUNICIPAL_PERMIT = "MUNICIPAL_PERMIT"
    PROBATE_FILING = "PROBATE_FILING"
    TAX_SALE = "TAX_SALE"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# 优先级序数：LOW=1 ... URGENT=4
PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


@dataclass
class Filing:
    """公告页解析出的候选文书（尚未入库）"""
    title: str
    url: str
    summary: str = ""
    full_text: str = ""
    published_ms: Optional[int] = None


@dataclass
class Case:
    # 主键：guid 的 sha1；guid 为规范化后的来源 URL（外部稳定引用）
    id: str
    guid: str
    title: str
    court: str
    publish_date: int
    case_url: str
    source: str

    summary: Optional[str] = None
    full_text: Optional[str] = None

    # NER 阶段填充
    addresses: List[str] = field(default_factory=list)
    municipalities: List[str] = field(default_factory=list)
    parties: List[str] = field(default_factory=list)
    statutes: List[str] = field(default_factory=list)
    court_file_numbers: List[str] = field(default_factory=list)
    postal_codes: List[str] = field(default_factory=list)

    # 分类阶段填充
    case_types: List[CaseType] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW

    ner_processed: bool = False
    classified: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    created_at: int = 0

    def combined_text(self) -> str:
        return " ".join(p for p in (self.title, self.summary or "", self.full_text or "") if p)


@dataclass
class QueueItem:
    id: str
    case_id: str
    stage: Stage
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    attempts: int = 0
    max_attempts: int = 3
    error: Optional[str] = None
    scheduled_at: int = 0
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


@dataclass
class Alert:
    id: str
    title: str
    description: str
    address: str
    city: str
    alert_type: AlertType
    priority: Priority
    opportunity_score: int

    province: str = "ON"
    postal_code: Optional[str] = None
    source: str = "ONTARIO_COURT_BULLETINS"
    status: AlertStatus = AlertStatus.ACTIVE
    court_case_id: Optional[str] = None
    court_file_number: Optional[str] = None
    court_date: Optional[int] = None
    property_type: Optional[str] = None
    estimated_value: Optional[int] = None
    bedrooms: Optional[int] = None

    discovered_at: int = 0
    created_at: int = 0


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True


@dataclass
class AlertPreference:
    user_id: str
    alert_types: List[AlertType] = field(default_factory=list)
    cities: List[str] = field(default_factory=list)
    min_priority: Priority = Priority.LOW
    min_opportunity_score: int = 0
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    property_types: List[str] = field(default_factory=list)
    min_bedrooms: Optional[int] = None
    max_bedrooms: Optional[int] = None
    # "HH:MM" 本地时间；任一为空表示关闭免打扰
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    max_alerts_per_day: Optional[int] = 10


@dataclass
class UserAlert:
    user_id: str
    alert_id: str
    is_notified: bool = False
    notified_at: Optional[int] = None
    created_at: int = 0


@dataclass
class MatchResult:
    alert: Alert
    match_score: int
    match_reasons: List[str]
    user: User
