# 工具模块
# - 时间工具（UTC 毫秒 / 本地时区）
# - 配置加载：ops/config.yml + 环境变量覆盖
# - 日志工具：统一 "[组件] 消息" 输出格式
# - 文本规范化

from __future__ import annotations

import copy
import logging
import os
import sys
import time
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

ROOT = Path(__file__).resolve().parents[1]

DEFAULT_CFG: Dict[str, Any] = {
    "db_path": "court.db",
    "log_level": "INFO",
    "bulletin": {
        "type": "html",  # html / rss / dummy
        "url": "https://www.ontariocourts.ca/scj/civil/weekly-court-lists/",
        "court": "ONSC",
        "source": "ONTARIO_COURT_BULLETINS",
        "timeout_ms": 10000,
        "concurrency": 5,
        "poll_interval_sec": 86400,
        "user_agent": "court-hub/1.0",
    },
    "pipeline": {
        "interval_sec": 300,
        "batch_extraction": 20,
        "batch_classification": 15,
        "batch_alerts": 15,
        "max_attempts": 3,
        "completed_retention_days": 7,
        "failed_retention_days": 30,
        # 0 表示不回收卡在 IN_PROGRESS 的任务
        "stale_minutes": 30,
    },
    "alerts": {
        "province": "ON",
        "major_cities": [
            "Toronto", "Ottawa", "Mississauga", "Brampton",
            "Hamilton", "Markham", "Vaughan",
        ],
    },
    "matcher": {
        "timezone": "America/Toronto",
        "default_limit": 20,
    },
    "notifier": {
        "enabled": True,
        "notify_channels": ["stdout"],
        "retry": {"max_times": 3, "backoff_sec": 2},
    },
}

# 环境变量 -> (section, key, 类型)；section 为 None 表示顶层
_ENV_OVERRIDES = {
    "COURT_BULLETIN_URL": ("bulletin", "url", str),
    "COURT_BULLETIN_TYPE": ("bulletin", "type", str),
    "COURT_FETCH_TIMEOUT_MS": ("bulletin", "timeout_ms", int),
    "COURT_PERSIST_CONCURRENCY": ("bulletin", "concurrency", int),
    "COURT_BATCH_EXTRACTION": ("pipeline", "batch_extraction", int),
    "COURT_BATCH_CLASSIFICATION": ("pipeline", "batch_classification", int),
    "COURT_BATCH_ALERTS": ("pipeline", "batch_alerts", int),
    "COURT_MAX_ATTEMPTS": ("pipeline", "max_attempts", int),
    "COURT_STALE_MINUTES": ("pipeline", "stale_minutes", int),
    "COURT_TIMEZONE": ("matcher", "timezone", str),
    "COURT_DB_PATH": (None, "db_path", str),
    "COURT_LOG_LEVEL": (None, "log_level", str),
    "TELEGRAM_BOT_TOKEN": ("notifier", "token", str),
    "TELEGRAM_CHAT_ID": ("notifier", "chat_id", str),
}


# -------------------- 时间 --------------------

def now_ms() -> int:
    """当前 UTC 毫秒时间戳"""
    return int(time.time() * 1000)


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def resolve_tz(name: Optional[str]) -> Optional[tzinfo]:
    """时区名 -> tzinfo；无效时返回 None（即使用进程本地时区）"""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        get_logger("utils").warning("unknown timezone %r, falling back to local time", name)
        return None


def local_now(tz: Optional[tzinfo] = None) -> datetime:
    return datetime.now(tz) if tz is not None else datetime.now()


def local_midnight_ms(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> int:
    """本地当天 00:00 对应的 UTC 毫秒"""
    now = now or local_now(tz)
    return to_ms(now.replace(hour=0, minute=0, second=0, microsecond=0))


# -------------------- 日志 --------------------

class _TagFormatter(logging.Formatter):
    """courthub.collector -> [collector]"""

    def format(self, record: logging.LogRecord) -> str:
        record.tag = record.name.rsplit(".", 1)[-1]
        return super().format(record)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_TagFormatter("%(asctime)s [%(tag)s] %(levelname)s %(message)s"))
    root = logging.getLogger("courthub")
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    # 第三方库的噪声日志
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(tag: str) -> logging.Logger:
    return logging.getLogger(f"courthub.{tag}")


# -------------------- 配置 --------------------

def _merge(base: Dict[str, Any], data: Mapping[str, Any]) -> Dict[str, Any]:
    # 只合并到第二层（section 内浅合并），避免过度魔法
    out = copy.deepcopy(base)
    for k, v in (data or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = {**out[k], **v}
        else:
            out[k] = v
    return out


def _apply_env(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    log = get_logger("config")
    for name, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = cast(raw.strip())
        except ValueError:
            log.warning("ignoring malformed %s=%r", name, raw)
            continue
        target = cfg if section is None else cfg.setdefault(section, {})
        target[key] = value


def load_cfg(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    读取 ops/config.yml（可选）并叠加环境变量；文件不存在就用默认。
    """
    cfg_path = Path(path) if path else ROOT / "ops" / "config.yml"
    cfg = copy.deepcopy(DEFAULT_CFG)
    if cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
            cfg = _merge(DEFAULT_CFG, data)
        except yaml.YAMLError as e:
            get_logger("config").warning("failed to read %s, using defaults: %s", cfg_path, e)
    _apply_env(cfg, os.environ if env is None else env)
    return cfg


# -------------------- 文本 --------------------

def join_list(values: List[Any]) -> str:
    """多值字段用分号分隔保存，如 "Toronto;Ottawa" """
    return ";".join(str(getattr(v, "value", v)) for v in values if v not in (None, ""))


def split_list(s: Optional[str]) -> List[str]:
    if not s:
        return []
    return [p for p in s.split(";") if p]


def dedupe(values: List[str]) -> List[str]:
    """保序去重"""
    seen = set()
    out = []
    for v in values:
        key = v.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(v)
    return out
