# -*- coding: utf-8 -*-
"""
tests/conftest.py
公共构造器。每个测试自己在一个 asyncio.run() 里开库、跑完、关库，
避免 aiosqlite 连接跨事件循环。
"""

import pytest

from courthub.models import (
    Alert,
    AlertPreference,
    AlertStatus,
    AlertType,
    Filing,
    Priority,
    User,
)

POS_TEXT = (
    "Notice of Power of Sale under the Mortgages Act. "
    "Property at 123 Main Street, Toronto ON M5V 2T6."
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "court.db"


@pytest.fixture
def make_filing():
    def _make(url="https://example.com/court/filings/1.pdf", title="Notice of Power of Sale", text=POS_TEXT):
        return Filing(title=title, url=url, full_text=text)
    return _make


@pytest.fixture
def make_alert():
    def _make(**kw):
        base = dict(
            id="",
            title="Power of Sale: 123 Main Street, Toronto",
            description="Notice of Power of Sale (ONSC).",
            address="123 Main Street",
            city="Toronto",
            alert_type=AlertType.POWER_OF_SALE,
            priority=Priority.HIGH,
            opportunity_score=50,
            status=AlertStatus.ACTIVE,
        )
        base.update(kw)
        return Alert(**base)
    return _make


@pytest.fixture
def make_pref():
    def _make(user_id="u1", **kw):
        base = dict(
            user_id=user_id,
            alert_types=[AlertType.POWER_OF_SALE],
            cities=[],
            min_priority=Priority.LOW,
            min_opportunity_score=0,
        )
        base.update(kw)
        return AlertPreference(**base)
    return _make


@pytest.fixture
def make_user():
    def _make(user_id="u1", email=None, **kw):
        return User(id=user_id, email=email or f"{user_id}@example.com", **kw)
    return _make
