# -*- coding: utf-8 -*-
"""
courthub/matcher.py
提醒匹配：只读计算，不改库。
- find_matching_users：一条新提醒 -> 应通知的订阅者（按匹配分降序）
- get_personalized_alerts：一个订阅者 -> 最合适的在售提醒
- has_reached_daily_limit / is_in_quiet_hours：推送前的节流判断

匹配打分（evaluate_match）：
  三道硬门槛：提醒类型在偏好内(+20)、优先级 >= 最低优先级(+15)、
  机会分 >= 最低机会分(+15)，任何一道不过直接 0 分不匹配；
  之后城市/价格/房型/卧室数/高机会分做加减，最终 score >= 50 即匹配。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, List, Optional, Tuple

import aiosqlite

from courthub import storage
from courthub.models import (
    PRIORITY_RANK,
    Alert,
    AlertPreference,
    MatchResult,
    Priority,
)
from courthub.utils import get_logger, local_midnight_ms, local_now

log = get_logger("matcher")

MATCH_THRESHOLD = 50


@dataclass
class MatchEvaluation:
    is_match: bool
    score: int
    reasons: List[str] = field(default_factory=list)


def _no_match(reason: str) -> MatchEvaluation:
    return MatchEvaluation(is_match=False, score=0, reasons=[reason])


def evaluate_match(alert: Alert, pref: AlertPreference) -> MatchEvaluation:
    score = 0
    reasons: List[str] = []

    # 硬门槛 1：提醒类型
    if alert.alert_type not in pref.alert_types:
        return _no_match("Alert type not in preferences")
    score += 20
    reasons.append(f"Matches preferred alert type: {alert.alert_type.value}")

    # 硬门槛 2：优先级序数
    if PRIORITY_RANK[Priority(alert.priority)] < PRIORITY_RANK[Priority(pref.min_priority)]:
        return _no_match("Priority too low")
    score += 15
    reasons.append(f"Meets minimum priority: {alert.priority.value}")

    # 硬门槛 3：机会分
    if alert.opportunity_score < pref.min_opportunity_score:
        return _no_match("Opportunity score too low")
    score += 15
    reasons.append(
        f"Opportunity score {alert.opportunity_score} meets minimum {pref.min_opportunity_score}"
    )

    # 城市：软信号
    city = (alert.city or "").lower()
    if any(c.lower() in city for c in pref.cities):
        score += 25
        reasons.append(f"Located in preferred city: {alert.city}")
    else:
        score += 5
        reasons.append("Outside preferred cities but within consideration")

    # 价格区间（值为 0 / None 视为未设置）
    value = alert.estimated_value
    if pref.min_value and value and value < pref.min_value:
        score -= 10
        reasons.append("Below minimum value preference")
    elif pref.max_value and value and value > pref.max_value:
        score -= 10
        reasons.append("Above maximum value preference")
    elif value and pref.min_value and pref.max_value:
        score += 10
        reasons.append("Within preferred value range")

    # 房型
    if pref.property_types and alert.property_type:
        ptype = alert.property_type.lower()
        if any(t.lower() in ptype for t in pref.property_types):
            score += 15
            reasons.append(f"Matches preferred property type: {alert.property_type}")
        else:
            score -= 5
            reasons.append(f"Different property type: {alert.property_type}")

    # 卧室数
    beds = alert.bedrooms
    if pref.min_bedrooms and beds and beds < pref.min_bedrooms:
        score -= 5
        reasons.append("Below minimum bedroom requirement")
    elif pref.max_bedrooms and beds and beds > pref.max_bedrooms:
        score -= 5
        reasons.append("Above maximum bedroom preference")
    elif beds and pref.min_bedrooms and pref.max_bedrooms:
        score += 5
        reasons.append("Within preferred bedroom range")

    if alert.opportunity_score >= 80:
        score += 10
        reasons.append(f"Exceptional opportunity score: {alert.opportunity_score}")
    elif alert.opportunity_score >= 60:
        score += 5
        reasons.append(f"Good opportunity score: {alert.opportunity_score}")

    return MatchEvaluation(is_match=score >= MATCH_THRESHOLD, score=score, reasons=reasons)


def parse_time_string(s: Optional[str]) -> int:
    """'HH:MM' -> HHMM 整数（14:30 -> 1430）；格式不对记 warning 并按 00:00 处理"""
    parts = (s or "").split(":")
    if len(parts) != 2:
        log.warning("invalid time string format: %r", s)
        return 0
    try:
        hh, mm = int(parts[0]), int(parts[1])
    except ValueError:
        log.warning("invalid time values in: %r", s)
        return 0
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        log.warning("invalid time values in: %r", s)
        return 0
    return hh * 100 + mm


def is_in_quiet_hours(
    pref: AlertPreference,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> bool:
    """起止任一为空则不生效；start > end 视为跨午夜（22:00-08:00）"""
    if not pref.quiet_hours_start or not pref.quiet_hours_end:
        return False
    now = now or local_now(tz)
    current = now.hour * 100 + now.minute
    start = parse_time_string(pref.quiet_hours_start)
    end = parse_time_string(pref.quiet_hours_end)
    if start > end:
        return current >= start or current <= end
    return start <= current <= end


def priority_filter(min_priority: Priority) -> List[str]:
    floor = PRIORITY_RANK[Priority(min_priority)]
    return [p.value for p, rank in PRIORITY_RANK.items() if rank >= floor]


def _like_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_alert_query(pref: AlertPreference) -> Tuple[str, List[Any]]:
    """偏好 -> (WHERE 子句, 参数)"""
    clauses = ["status='ACTIVE'"]
    params: List[Any] = []

    types = [t.value for t in pref.alert_types]
    if types:
        clauses.append(f"alert_type IN ({','.join('?' * len(types))})")
        params.extend(types)
    else:
        # 没选任何类型就什么都不匹配
        clauses.append("0")

    prios = priority_filter(pref.min_priority)
    clauses.append(f"priority IN ({','.join('?' * len(prios))})")
    params.extend(prios)

    clauses.append("opportunity_score >= ?")
    params.append(int(pref.min_opportunity_score))

    if pref.cities:
        ors = ["LOWER(city) LIKE ? ESCAPE '\\'"] * len(pref.cities)
        clauses.append("(" + " OR ".join(ors) + ")")
        params.extend(f"%{_like_escape(c.lower())}%" for c in pref.cities)

    if pref.min_value:
        clauses.append("estimated_value >= ?")
        params.append(pref.min_value)
    if pref.max_value:
        clauses.append("estimated_value <= ?")
        params.append(pref.max_value)

    if pref.property_types:
        clauses.append(f"property_type IN ({','.join('?' * len(pref.property_types))})")
        params.extend(pref.property_types)

    if pref.min_bedrooms:
        clauses.append("bedrooms >= ?")
        params.append(pref.min_bedrooms)
    if pref.max_bedrooms:
        clauses.append("bedrooms <= ?")
        params.append(pref.max_bedrooms)

    return " AND ".join(clauses), params


class AlertMatcher:
    def __init__(self, db: aiosqlite.Connection, *, tz: Optional[tzinfo] = None, default_limit: int = 20):
        self.db = db
        self.tz = tz
        self.default_limit = default_limit

    async def find_matching_users(self, alert: Alert) -> List[MatchResult]:
        matches: List[MatchResult] = []
        for user, pref in await storage.list_active_users_with_preferences(self.db):
            ev = evaluate_match(alert, pref)
            if not ev.is_match:
                continue
            matches.append(MatchResult(alert=alert, match_score=ev.score, match_reasons=ev.reasons, user=user))

        # sorted 是稳定排序，同分保持用户原始顺序
        matches = sorted(matches, key=lambda m: m.match_score, reverse=True)
        log.info("found %d matching users for alert %s", len(matches), alert.id)
        return matches

    async def get_personalized_alerts(self, user_id: str, limit: Optional[int] = None) -> List[Alert]:
        if limit is None:
            limit = self.default_limit
        pref = await storage.get_preference(self.db, user_id)
        if pref is None:
            # 没有画像的新用户：给 ACTIVE + HIGH 的通用提醒
            return await storage.query_alerts(
                self.db,
                "status='ACTIVE' AND priority='HIGH'",
                [],
                f"{storage.PRIORITY_RANK_SQL} DESC, created_at DESC",
                limit,
            )

        where, params = build_alert_query(pref)
        alerts = await storage.query_alerts(
            self.db,
            where,
            params,
            f"opportunity_score DESC, {storage.PRIORITY_RANK_SQL} DESC, created_at DESC",
            limit,
        )
        log.info("retrieved %d personalized alerts for user %s", len(alerts), user_id)
        return alerts

    async def has_reached_daily_limit(self, user_id: str, now: Optional[datetime] = None) -> bool:
        pref = await storage.get_preference(self.db, user_id)
        if pref is None or pref.max_alerts_per_day is None:
            return False
        since = local_midnight_ms(now, self.tz)
        sent = await storage.count_notified_since(self.db, user_id, since)
        return sent >= pref.max_alerts_per_day

    def is_in_quiet_hours(self, pref: AlertPreference, now: Optional[datetime] = None) -> bool:
        return is_in_quiet_hours(pref, now, self.tz)
