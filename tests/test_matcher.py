# -*- coding: utf-8 -*-
"""匹配器：打分门槛、免打扰、个性化排序、每日上限"""

import asyncio
from datetime import datetime, timedelta, timezone

from courthub import storage
from courthub.matcher import (
    AlertMatcher,
    build_alert_query,
    evaluate_match,
    is_in_quiet_hours,
    parse_time_string,
)
from courthub.models import PRIORITY_RANK, AlertType, Priority
from courthub.utils import to_ms


# -------------------- evaluate_match --------------------

def test_three_gates_only_is_exactly_fifty(make_alert, make_pref):
    alert = make_alert(city="Ottawa", opportunity_score=50, priority=Priority.MEDIUM)
    pref = make_pref(min_priority=Priority.MEDIUM, min_opportunity_score=50, cities=[])
    # 城市不匹配 +5 会让分数超过 50，所以用一个必减 5 的房型抵消
    alert.property_type = "Commercial"
    pref.property_types = ["Detached"]
    ev = evaluate_match(alert, pref)
    assert ev.score == 50
    assert ev.is_match
    assert ev.reasons[0] == "Matches preferred alert type: POWER_OF_SALE"


def test_failing_any_gate_scores_zero(make_alert, make_pref):
    alert = make_alert(opportunity_score=70, priority=Priority.MEDIUM)

    ev = evaluate_match(alert, make_pref(alert_types=[AlertType.TAX_SALE]))
    assert (ev.is_match, ev.score) == (False, 0)

    ev = evaluate_match(alert, make_pref(min_priority=Priority.HIGH))
    assert (ev.is_match, ev.score) == (False, 0)
    assert ev.reasons == ["Priority too low"]

    ev = evaluate_match(alert, make_pref(min_opportunity_score=71))
    assert (ev.is_match, ev.score) == (False, 0)


def test_soft_signals(make_alert, make_pref):
    alert = make_alert(
        city="City of Toronto", opportunity_score=85, estimated_value=600_000,
        property_type="Detached", bedrooms=3,
    )
    pref = make_pref(
        cities=["toronto"], min_value=500_000, max_value=900_000,
        property_types=["detached"], min_bedrooms=2, max_bedrooms=4,
    )
    ev = evaluate_match(alert, pref)
    # 50 + 城市 25 + 价格 10 + 房型 15 + 卧室 5 + 机会分 10
    assert ev.score == 115
    assert ev.is_match


def test_value_and_bedroom_penalties(make_alert, make_pref):
    alert = make_alert(city="Ottawa", opportunity_score=60, estimated_value=100_000, bedrooms=1)
    pref = make_pref(min_value=500_000, min_bedrooms=2)
    ev = evaluate_match(alert, pref)
    # 50 + 5 - 10 - 5 + 5
    assert ev.score == 45
    assert not ev.is_match


# -------------------- quiet hours --------------------

def test_parse_time_string():
    assert parse_time_string("14:30") == 1430
    assert parse_time_string("07:05") == 705
    assert parse_time_string("25:00") == 0
    assert parse_time_string("noon") == 0
    assert parse_time_string("ab:cd") == 0


def test_quiet_hours_across_midnight(make_pref):
    pref = make_pref(quiet_hours_start="22:00", quiet_hours_end="08:00")
    day = datetime(2026, 1, 15)
    assert is_in_quiet_hours(pref, day.replace(hour=23, minute=30))
    assert is_in_quiet_hours(pref, day.replace(hour=6, minute=30))
    assert not is_in_quiet_hours(pref, day.replace(hour=14, minute=30))


def test_quiet_hours_same_day_and_unset(make_pref):
    pref = make_pref(quiet_hours_start="09:00", quiet_hours_end="17:00")
    assert is_in_quiet_hours(pref, datetime(2026, 1, 15, 12, 0))
    assert not is_in_quiet_hours(pref, datetime(2026, 1, 15, 18, 0))
    assert not is_in_quiet_hours(make_pref(quiet_hours_start="22:00"), datetime(2026, 1, 15, 23, 0))


# -------------------- 查询 / 入库相关 --------------------

def test_build_alert_query_priority_cutoff(make_pref):
    where, params = build_alert_query(make_pref(min_priority=Priority.HIGH, cities=["Toronto", "Ottawa"]))
    assert "priority IN (?,?)" in where
    assert "HIGH" in params and "URGENT" in params and "MEDIUM" not in params
    assert "%toronto%" in params and "%ottawa%" in params


def _sort_key(a):
    return (a.opportunity_score, PRIORITY_RANK[a.priority], a.created_at)


def test_personalized_alerts_ordering(db_path, make_alert, make_pref, make_user):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            await storage.upsert_user(db, make_user("u1"))
            await storage.upsert_preference(db, make_pref("u1", min_opportunity_score=40))

            rows = [
                (80, Priority.MEDIUM, 1_000), (80, Priority.HIGH, 2_000), (80, Priority.HIGH, 3_000),
                (95, Priority.LOW, 500), (60, Priority.URGENT, 9_000), (30, Priority.URGENT, 9_500),
            ]
            for score, prio, created in rows:
                await storage.insert_alert(db, make_alert(opportunity_score=score, priority=prio, created_at=created))
            # 类型不对，不该出现
            await storage.insert_alert(db, make_alert(alert_type=AlertType.TAX_SALE, opportunity_score=99))

            alerts = await AlertMatcher(db).get_personalized_alerts("u1", limit=10)
            assert len(alerts) == 5
            keys = [_sort_key(a) for a in alerts]
            assert keys == sorted(keys, reverse=True)
            assert keys[0] == (95, 1, 500)
            assert all(a.alert_type is AlertType.POWER_OF_SALE for a in alerts)

            assert len(await AlertMatcher(db).get_personalized_alerts("u1", limit=2)) == 2
        finally:
            await db.close()

    asyncio.run(_run())


def test_personalized_alerts_explicit_zero_limit(db_path, make_alert, make_pref, make_user):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            await storage.upsert_user(db, make_user("u1"))
            await storage.upsert_preference(db, make_pref("u1"))
            for _ in range(3):
                await storage.insert_alert(db, make_alert())
            m = AlertMatcher(db, default_limit=2)
            return (
                len(await m.get_personalized_alerts("u1", limit=0)),
                len(await m.get_personalized_alerts("u1")),
            )
        finally:
            await db.close()

    assert asyncio.run(_run()) == (0, 2)


def test_personalized_fallback_without_profile(db_path, make_alert):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            await storage.insert_alert(db, make_alert(priority=Priority.HIGH, created_at=1))
            await storage.insert_alert(db, make_alert(priority=Priority.HIGH, created_at=2))
            await storage.insert_alert(db, make_alert(priority=Priority.URGENT, created_at=3))
            await storage.insert_alert(db, make_alert(priority=Priority.MEDIUM, created_at=4))

            alerts = await AlertMatcher(db).get_personalized_alerts("nobody")
            assert [a.created_at for a in alerts] == [2, 1]
        finally:
            await db.close()

    asyncio.run(_run())


def test_find_matching_users_ranked(db_path, make_alert, make_pref, make_user):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            for uid, pref in (
                ("a", make_pref("a")),                                  # 55
                ("b", make_pref("b", cities=["Toronto"])),               # 75
                ("c", make_pref("c", alert_types=[AlertType.TAX_SALE])), # 不匹配
                ("d", make_pref("d")),                                  # 55，排在 a 后面
            ):
                await storage.upsert_user(db, make_user(uid))
                await storage.upsert_preference(db, pref)
            await storage.upsert_user(db, make_user("e", is_active=False))
            await storage.upsert_preference(db, make_pref("e", cities=["Toronto"]))

            alert = await storage.insert_alert(db, make_alert(opportunity_score=50))
            matches = await AlertMatcher(db).find_matching_users(alert)
            assert [(m.user.id, m.match_score) for m in matches] == [("b", 75), ("a", 55), ("d", 55)]
        finally:
            await db.close()

    asyncio.run(_run())


def test_daily_limit(db_path, make_alert, make_pref, make_user):
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    midnight = now.replace(hour=0)

    async def _run(n_today):
        db = await storage.init_db(db_path)
        try:
            await db.execute("DELETE FROM user_alerts;")
            await db.commit()
            await storage.upsert_user(db, make_user("u1"))
            await storage.upsert_preference(db, make_pref("u1", max_alerts_per_day=3))
            for i in range(n_today):
                a = await storage.insert_alert(db, make_alert())
                await storage.record_user_alert(db, "u1", a.id, notified_at=to_ms(midnight + timedelta(hours=i + 1)))
            # 昨天的不算
            old = await storage.insert_alert(db, make_alert())
            await storage.record_user_alert(db, "u1", old.id, notified_at=to_ms(midnight - timedelta(hours=2)))

            return await AlertMatcher(db, tz=timezone.utc).has_reached_daily_limit("u1", now)
        finally:
            await db.close()

    assert asyncio.run(_run(3)) is True
    assert asyncio.run(_run(2)) is False


def test_daily_limit_without_profile(db_path):
    async def _run():
        db = await storage.init_db(db_path)
        try:
            return await AlertMatcher(db).has_reached_daily_limit("ghost")
        finally:
            await db.close()

    assert asyncio.run(_run()) is False
