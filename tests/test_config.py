# -*- coding: utf-8 -*-
"""配置加载：config.yml 合并 + 环境变量覆盖"""

import logging

from courthub.utils import DEFAULT_CFG, dedupe, join_list, load_cfg, resolve_tz, split_list
from courthub.models import CaseType


def test_defaults_when_file_missing(tmp_path):
    cfg = load_cfg(tmp_path / "nope.yml", env={})
    assert cfg == DEFAULT_CFG
    assert cfg is not DEFAULT_CFG


def test_yaml_merges_into_sections(tmp_path):
    p = tmp_path / "config.yml"
    p.write_text("pipeline:\n  batch_extraction: 50\nbulletin:\n  type: rss\n", encoding="utf-8")
    cfg = load_cfg(p, env={})
    assert cfg["pipeline"]["batch_extraction"] == 50
    # 同 section 里没写的键保留默认
    assert cfg["pipeline"]["batch_classification"] == 15
    assert cfg["bulletin"]["type"] == "rss"
    assert cfg["bulletin"]["timeout_ms"] == 10000


def test_env_overrides(tmp_path):
    env = {
        "COURT_BULLETIN_URL": "https://example.com/list",
        "COURT_FETCH_TIMEOUT_MS": "2500",
        "COURT_PERSIST_CONCURRENCY": "9",
        "COURT_DB_PATH": "/tmp/x.db",
        "TELEGRAM_BOT_TOKEN": "abc",
    }
    cfg = load_cfg(tmp_path / "nope.yml", env=env)
    assert cfg["bulletin"]["url"] == "https://example.com/list"
    assert cfg["bulletin"]["timeout_ms"] == 2500
    assert cfg["bulletin"]["concurrency"] == 9
    assert cfg["db_path"] == "/tmp/x.db"
    assert cfg["notifier"]["token"] == "abc"


def test_malformed_env_is_ignored(tmp_path, caplog):
    with caplog.at_level(logging.WARNING, logger="courthub.config"):
        cfg = load_cfg(tmp_path / "nope.yml", env={"COURT_MAX_ATTEMPTS": "three"})
    assert cfg["pipeline"]["max_attempts"] == 3
    assert "COURT_MAX_ATTEMPTS" in caplog.text


def test_bad_timezone_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="courthub.utils"):
        assert resolve_tz("Mars/Olympus") is None
    assert resolve_tz(None) is None


def test_list_helpers():
    assert join_list([CaseType.LIEN, CaseType.CONDO]) == "LIEN;CONDO"
    assert split_list("a;;b") == ["a", "b"]
    assert split_list(None) == []
    assert dedupe(["Toronto", "toronto", "Ottawa"]) == ["Toronto", "Ottawa"]
