# -*- coding: utf-8 -*-
"""
courthub/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表
- 案件幂等写入（按 guid insert-if-absent，已存在不覆盖）
- 处理队列：入队 / 取批 / 原子认领 / 完成 / 失败重试 / 清理 / 回收卡死任务
- 提醒写入与查询
- 订阅者与偏好（外部维护；这里只提供流水线和测试需要的最小读写）
多值字段用分号分隔字符串保存；metadata 用 JSON。
"""

from __future__ import annotations

import hashlib
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite

from courthub.models import (
    Alert,
    AlertPreference,
    AlertStatus,
    AlertType,
    Case,
    CaseType,
    Filing,
    JobStatus,
    Priority,
    QueueItem,
    RiskLevel,
    Stage,
    User,
    UserAlert,
)
from courthub.utils import get_logger, join_list, now_ms, split_list

log = get_logger("storage")

DAY_MS = 24 * 3600 * 1000

# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS court_cases (
    id                 TEXT PRIMARY KEY,
    guid               TEXT NOT NULL UNIQUE,
    title              TEXT NOT NULL,
    court              TEXT NOT NULL,
    publish_date       INTEGER NOT NULL,
    case_url           TEXT NOT NULL,
    source             TEXT NOT NULL,
    summary            TEXT,
    full_text          TEXT,
    addresses          TEXT DEFAULT '',
    municipalities     TEXT DEFAULT '',
    parties            TEXT DEFAULT '',
    statutes           TEXT DEFAULT '',
    court_file_numbers TEXT DEFAULT '',
    postal_codes       TEXT DEFAULT '',
    case_types         TEXT DEFAULT '',
    risk_level         TEXT NOT NULL DEFAULT 'LOW',
    ner_processed      INTEGER NOT NULL DEFAULT 0,
    classified         INTEGER NOT NULL DEFAULT 0,
    metadata           TEXT,
    created_at         INTEGER NOT NULL,
    updated_at         INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS processing_queue (
    id           TEXT PRIMARY KEY,
    case_id      TEXT NOT NULL REFERENCES court_cases(id) ON DELETE CASCADE,
    stage        TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'PENDING',
    priority     INTEGER NOT NULL DEFAULT 5,
    attempts     INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    error        TEXT,
    scheduled_at INTEGER NOT NULL,
    started_at   INTEGER,
    completed_at INTEGER
);

CREATE TABLE IF NOT EXISTS alerts (
    id                TEXT PRIMARY KEY,
    title             TEXT NOT NULL,
    description       TEXT NOT NULL,
    address           TEXT NOT NULL,
    city              TEXT NOT NULL,
    province          TEXT NOT NULL DEFAULT 'ON',
    postal_code       TEXT,
    alert_type        TEXT NOT NULL,
    source            TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'ACTIVE',
    priority          TEXT NOT NULL DEFAULT 'MEDIUM',
    opportunity_score INTEGER NOT NULL DEFAULT 0,
    property_type     TEXT,
    estimated_value   INTEGER,
    bedrooms          INTEGER,
    court_case_id     TEXT REFERENCES court_cases(id) ON DELETE SET NULL,
    court_file_number TEXT,
    court_date        INTEGER,
    discovered_at     INTEGER NOT NULL,
    created_at        INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id         TEXT PRIMARY KEY,
    email      TEXT NOT NULL,
    first_name TEXT DEFAULT '',
    last_name  TEXT DEFAULT '',
    is_active  INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS alert_preferences (
    user_id               TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    cities                TEXT DEFAULT '',
    alert_types           TEXT DEFAULT '',
    min_priority          TEXT NOT NULL DEFAULT 'LOW',
    min_opportunity_score INTEGER NOT NULL DEFAULT 0,
    min_value             INTEGER,
    max_value             INTEGER,
    property_types        TEXT DEFAULT '',
    min_bedrooms          INTEGER,
    max_bedrooms          INTEGER,
    max_alerts_per_day    INTEGER DEFAULT 10,
    quiet_hours_start     TEXT,
    quiet_hours_end       TEXT
);

CREATE TABLE IF NOT EXISTS user_alerts (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    alert_id    TEXT NOT NULL REFERENCES alerts(id) ON DELETE CASCADE,
    is_notified INTEGER NOT NULL DEFAULT 0,
    notified_at INTEGER,
    created_at  INTEGER NOT NULL,
    UNIQUE(user_id, alert_id)
);
"""

SCHEMA_IDX = """
CREATE INDEX IF NOT EXISTS idx_cases_court_publish ON court_cases(court, publish_date);
CREATE INDEX IF NOT EXISTS idx_queue_status_priority ON processing_queue(status, priority);
CREATE INDEX IF NOT EXISTS idx_queue_scheduled ON processing_queue(scheduled_at);
CREATE INDEX IF NOT EXISTS idx_queue_case_stage ON processing_queue(case_id, stage);
CREATE INDEX IF NOT EXISTS idx_alerts_case ON alerts(court_case_id);
CREATE INDEX IF NOT EXISTS idx_alerts_score ON alerts(opportunity_score DESC);
CREATE INDEX IF NOT EXISTS idx_user_alerts_notified ON user_alerts(user_id, is_notified, notified_at);
"""

# 优先级按序数排序（TEXT 列直接 ORDER BY 会按字母序）
PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'URGENT' THEN 4 WHEN 'HIGH' THEN 3 "
    "WHEN 'MEDIUM' THEN 2 ELSE 1 END"
)


def case_id_for(guid: str) -> str:
    return hashlib.sha1(guid.encode("utf-8")).hexdigest()


def _new_id() -> str:
    return uuid.uuid4().hex


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """初始化数据库并返回连接（":memory:" 也可以）"""
    if str(db_path) != ":memory:":
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(p)
    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA foreign_keys=ON;")
    await db.executescript(SCHEMA)
    await db.executescript(SCHEMA_IDX)
    await db.commit()
    return db


# --------- 行 -> 模型 ---------
def _load_metadata(raw: Optional[str], case_id: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("malformed metadata on case %s, treating as empty", case_id)
        return {}
    return data if isinstance(data, dict) else {}


def _row_to_case(row: aiosqlite.Row) -> Case:
    return Case(
        id=row["id"],
        guid=row["guid"],
        title=row["title"],
        court=row["court"],
        publish_date=row["publish_date"],
        case_url=row["case_url"],
        source=row["source"],
        summary=row["summary"],
        full_text=row["full_text"],
        addresses=split_list(row["addresses"]),
        municipalities=split_list(row["municipalities"]),
        parties=split_list(row["parties"]),
        statutes=split_list(row["statutes"]),
        court_file_numbers=split_list(row["court_file_numbers"]),
        postal_codes=split_list(row["postal_codes"]),
        case_types=[CaseType(t) for t in split_list(row["case_types"])],
        risk_level=RiskLevel(row["risk_level"]),
        ner_processed=bool(row["ner_processed"]),
        classified=bool(row["classified"]),
        metadata=_load_metadata(row["metadata"], row["id"]),
        created_at=row["created_at"],
    )


def _row_to_job(row: aiosqlite.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        case_id=row["case_id"],
        stage=Stage(row["stage"]),
        status=JobStatus(row["status"]),
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error=row["error"],
        scheduled_at=row["scheduled_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_alert(row: aiosqlite.Row) -> Alert:
    return Alert(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        address=row["address"],
        city=row["city"],
        province=row["province"],
        postal_code=row["postal_code"],
        alert_type=AlertType(row["alert_type"]),
        source=row["source"],
        status=AlertStatus(row["status"]),
        priority=Priority(row["priority"]),
        opportunity_score=row["opportunity_score"],
        property_type=row["property_type"],
        estimated_value=row["estimated_value"],
        bedrooms=row["bedrooms"],
        court_case_id=row["court_case_id"],
        court_file_number=row["court_file_number"],
        court_date=row["court_date"],
        discovered_at=row["discovered_at"],
        created_at=row["created_at"],
    )


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
        is_active=bool(row["is_active"]),
    )


def _row_to_preference(row: aiosqlite.Row) -> AlertPreference:
    return AlertPreference(
        user_id=row["user_id"],
        cities=split_list(row["cities"]),
        alert_types=[AlertType(t) for t in split_list(row["alert_types"])],
        min_priority=Priority(row["min_priority"]),
        min_opportunity_score=row["min_opportunity_score"],
        min_value=row["min_value"],
        max_value=row["max_value"],
        property_types=split_list(row["property_types"]),
        min_bedrooms=row["min_bedrooms"],
        max_bedrooms=row["max_bedrooms"],
        max_alerts_per_day=row["max_alerts_per_day"],
        quiet_hours_start=row["quiet_hours_start"],
        quiet_hours_end=row["quiet_hours_end"],
    )


# --------- 案件 ---------
async def insert_case_if_absent(
    db: aiosqlite.Connection,
    filing: Filing,
    *,
    court: str,
    source: str,
) -> Optional[str]:
    """
    按 guid（规范化 URL）幂等写入。已存在则不动任何字段，返回 None；
    新建返回 case id。
    """
    now = now_ms()
    guid = filing.url
    cid = case_id_for(guid)
    sql = """
    INSERT INTO court_cases(
        id, guid, title, court, publish_date, case_url, source,
        summary, full_text, created_at, updated_at
    ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
    ON CONFLICT(guid) DO NOTHING
    """
    cur = await db.execute(sql, (
        cid, guid, filing.title or guid, court, filing.published_ms or now,
        filing.url, source, filing.summary or None, filing.full_text or None, now, now,
    ))
    inserted = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return cid if inserted else None


async def get_case(db: aiosqlite.Connection, case_id: str) -> Optional[Case]:
    async with db.execute("SELECT * FROM court_cases WHERE id=?;", (case_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_case(row) if row else None


async def count_cases(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT COUNT(*) FROM court_cases;") as cur:
        row = await cur.fetchone()
    return int(row[0])


async def update_case_entities(db: aiosqlite.Connection, case_id: str, entities: Any) -> None:
    """NER 结果写回；已分类的案件不允许改动（WHERE classified=0）"""
    sql = """
    UPDATE court_cases SET
        addresses=?, municipalities=?, parties=?, statutes=?,
        court_file_numbers=?, postal_codes=?, ner_processed=1, updated_at=?
    WHERE id=? AND classified=0
    """
    await db.execute(sql, (
        join_list(entities.addresses),
        join_list(entities.municipalities),
        join_list(entities.parties),
        join_list(entities.statutes),
        join_list(entities.court_file_numbers),
        join_list(entities.postal_codes),
        now_ms(),
        case_id,
    ))
    await db.commit()


async def update_case_classification(
    db: aiosqlite.Connection,
    case_id: str,
    case_types: Sequence[CaseType],
    risk_level: RiskLevel,
    metadata: Dict[str, Any],
) -> bool:
    sql = """
    UPDATE court_cases SET case_types=?, risk_level=?, classified=1, metadata=?, updated_at=?
    WHERE id=? AND classified=0
    """
    cur = await db.execute(sql, (
        join_list(list(case_types)), RiskLevel(risk_level).value,
        json.dumps(metadata, default=str), now_ms(), case_id,
    ))
    changed = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return changed


async def get_classification_counts(db: aiosqlite.Connection) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    async with db.execute(
        "SELECT COUNT(*), COALESCE(SUM(classified), 0) FROM court_cases;"
    ) as cur:
        row = await cur.fetchone()
    out["total_cases"] = int(row[0])
    out["classified"] = int(row[1])

    out["risk_levels"] = {}
    async with db.execute(
        "SELECT risk_level, COUNT(*) FROM court_cases WHERE classified=1 GROUP BY risk_level;"
    ) as cur:
        async for r in cur:
            out["risk_levels"][r[0]] = r[1]

    # case_types 是分号串，按类型展开计数
    out["case_types"] = {}
    async with db.execute("SELECT case_types FROM court_cases WHERE classified=1;") as cur:
        async for r in cur:
            for t in split_list(r[0]):
                out["case_types"][t] = out["case_types"].get(t, 0) + 1
    return out


# --------- 处理队列 ---------
async def enqueue_job(
    db: aiosqlite.Connection,
    case_id: str,
    stage: Stage,
    *,
    priority: int = 5,
    max_attempts: int = 3,
) -> Optional[str]:
    """
    入队；同一 (case, stage) 已有 PENDING/IN_PROGRESS 任务时不重复入队，返回 None。
    """
    now = now_ms()
    jid = _new_id()
    sql = """
    INSERT INTO processing_queue(id, case_id, stage, status, priority, attempts, max_attempts, scheduled_at)
    SELECT ?, ?, ?, 'PENDING', ?, 0, ?, ?
    WHERE NOT EXISTS (
        SELECT 1 FROM processing_queue
         WHERE case_id=? AND stage=? AND status IN ('PENDING', 'IN_PROGRESS')
    )
    """
    stage_v = Stage(stage).value
    cur = await db.execute(sql, (jid, case_id, stage_v, priority, max_attempts, now, case_id, stage_v))
    inserted = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return jid if inserted else None


async def get_job(db: aiosqlite.Connection, job_id: str) -> Optional[QueueItem]:
    async with db.execute("SELECT * FROM processing_queue WHERE id=?;", (job_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_job(row) if row else None


async def list_jobs(
    db: aiosqlite.Connection,
    *,
    case_id: Optional[str] = None,
    stage: Optional[Stage] = None,
) -> List[QueueItem]:
    clauses, params = [], []
    if case_id is not None:
        clauses.append("case_id=?")
        params.append(case_id)
    if stage is not None:
        clauses.append("stage=?")
        params.append(Stage(stage).value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM processing_queue {where} ORDER BY scheduled_at ASC;", params
    ) as cur:
        return [_row_to_job(r) async for r in cur]


async def fetch_pending_jobs(db: aiosqlite.Connection, stage: Stage, limit: int) -> List[QueueItem]:
    """按 priority DESC, scheduled_at ASC 取一批待处理任务"""
    sql = """
    SELECT * FROM processing_queue
     WHERE stage=? AND status='PENDING'
     ORDER BY priority DESC, scheduled_at ASC
     LIMIT ?;
    """
    async with db.execute(sql, (Stage(stage).value, int(limit))) as cur:
        return [_row_to_job(r) async for r in cur]


async def claim_job(db: aiosqlite.Connection, job: QueueItem) -> bool:
    """
    原子认领：仅当仍是 PENDING 时改为 IN_PROGRESS 并 attempts+1。
    多个 worker 并发时只有一个能拿到（rowcount==1）。
    """
    now = now_ms()
    cur = await db.execute(
        """
        UPDATE processing_queue
           SET status='IN_PROGRESS', attempts=attempts+1, started_at=?, error=NULL
         WHERE id=? AND status='PENDING'
        """,
        (now, job.id),
    )
    claimed = cur.rowcount == 1
    await cur.close()
    await db.commit()
    if claimed:
        job.status = JobStatus.IN_PROGRESS
        job.attempts += 1
        job.started_at = now
    return claimed


async def complete_job(db: aiosqlite.Connection, job: QueueItem) -> None:
    now = now_ms()
    await db.execute(
        "UPDATE processing_queue SET status='COMPLETED', completed_at=? WHERE id=?;",
        (now, job.id),
    )
    await db.commit()
    job.status = JobStatus.COMPLETED
    job.completed_at = now


async def fail_job(db: aiosqlite.Connection, job: QueueItem, error: str) -> JobStatus:
    """
    记录错误；attempts < max_attempts 回到 PENDING 等待重试，否则 FAILED（终态）。
    """
    status = JobStatus.PENDING if job.attempts < job.max_attempts else JobStatus.FAILED
    completed_at = now_ms() if status is JobStatus.FAILED else None
    await db.execute(
        "UPDATE processing_queue SET status=?, error=?, completed_at=? WHERE id=?;",
        (status.value, (error or "Unknown error")[:1000], completed_at, job.id),
    )
    await db.commit()
    job.status = status
    job.error = error
    return status


async def cleanup_queue(
    db: aiosqlite.Connection,
    *,
    completed_days: int = 7,
    failed_days: int = 30,
    now: Optional[int] = None,
) -> Tuple[int, int]:
    """删除过期的 COMPLETED / FAILED 任务，返回 (completed删除数, failed删除数)"""
    now = now if now is not None else now_ms()
    cur = await db.execute(
        "DELETE FROM processing_queue WHERE status='COMPLETED' AND completed_at < ?;",
        (now - completed_days * DAY_MS,),
    )
    n_completed = cur.rowcount
    await cur.close()
    cur = await db.execute(
        """
        DELETE FROM processing_queue
         WHERE status='FAILED' AND COALESCE(completed_at, started_at, scheduled_at) < ?;
        """,
        (now - failed_days * DAY_MS,),
    )
    n_failed = cur.rowcount
    await cur.close()
    await db.commit()
    return n_completed, n_failed


async def reset_stale_jobs(
    db: aiosqlite.Connection,
    *,
    stale_minutes: int,
    now: Optional[int] = None,
) -> Tuple[int, int]:
    """
    回收进程崩溃后卡在 IN_PROGRESS 的任务：还有重试次数的回到 PENDING，
    否则置为 FAILED。返回 (reset数, failed数)。
    """
    now = now if now is not None else now_ms()
    cutoff = now - stale_minutes * 60 * 1000
    msg = f"stale: in progress for more than {stale_minutes} minutes"
    cur = await db.execute(
        """
        UPDATE processing_queue SET status='FAILED', error=?, completed_at=?
         WHERE status='IN_PROGRESS' AND started_at < ? AND attempts >= max_attempts
        """,
        (msg, now, cutoff),
    )
    n_failed = cur.rowcount
    await cur.close()
    cur = await db.execute(
        """
        UPDATE processing_queue SET status='PENDING', error=?
         WHERE status='IN_PROGRESS' AND started_at < ?
        """,
        (msg, cutoff),
    )
    n_reset = cur.rowcount
    await cur.close()
    await db.commit()
    return n_reset, n_failed


async def retry_failed_jobs(db: aiosqlite.Connection, stage: Optional[Stage] = None) -> int:
    """把 FAILED 任务重置为 PENDING、attempts 清零（运维手动重试）"""
    sql = "UPDATE processing_queue SET status='PENDING', attempts=0, completed_at=NULL, scheduled_at=? WHERE status='FAILED'"
    params: List[Any] = [now_ms()]
    if stage is not None:
        sql += " AND stage=?"
        params.append(Stage(stage).value)
    cur = await db.execute(sql, params)
    n = cur.rowcount
    await cur.close()
    await db.commit()
    return n


async def get_queue_stats(db: aiosqlite.Connection) -> Dict[str, Dict[str, int]]:
    """{stage: {status: count}}"""
    out: Dict[str, Dict[str, int]] = {}
    async with db.execute(
        "SELECT stage, status, COUNT(*) FROM processing_queue GROUP BY stage, status;"
    ) as cur:
        async for r in cur:
            out.setdefault(r[0], {})[r[1]] = r[2]
    return out


# --------- 提醒 ---------
async def insert_alert(db: aiosqlite.Connection, alert: Alert) -> Alert:
    now = now_ms()
    if not alert.id:
        alert.id = _new_id()
    alert.created_at = alert.created_at or now
    alert.discovered_at = alert.discovered_at or now
    sql = """
    INSERT INTO alerts(
        id, title, description, address, city, province, postal_code, alert_type,
        source, status, priority, opportunity_score, property_type, estimated_value,
        bedrooms, court_case_id, court_file_number, court_date, discovered_at, created_at
    ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
    """
    await db.execute(sql, (
        alert.id, alert.title, alert.description, alert.address, alert.city,
        alert.province, alert.postal_code, AlertType(alert.alert_type).value,
        alert.source, AlertStatus(alert.status).value, Priority(alert.priority).value,
        int(alert.opportunity_score), alert.property_type, alert.estimated_value,
        alert.bedrooms, alert.court_case_id, alert.court_file_number, alert.court_date,
        alert.discovered_at, alert.created_at,
    ))
    await db.commit()
    return alert


async def get_alert(db: aiosqlite.Connection, alert_id: str) -> Optional[Alert]:
    async with db.execute("SELECT * FROM alerts WHERE id=?;", (alert_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_alert(row) if row else None


async def get_alerts_for_case(db: aiosqlite.Connection, case_id: str) -> List[Alert]:
    async with db.execute(
        "SELECT * FROM alerts WHERE court_case_id=? ORDER BY created_at ASC;", (case_id,)
    ) as cur:
        return [_row_to_alert(r) async for r in cur]


async def query_alerts(
    db: aiosqlite.Connection,
    where: str,
    params: Sequence[Any],
    order_by: str,
    limit: int,
) -> List[Alert]:
    sql = f"SELECT * FROM alerts WHERE {where} ORDER BY {order_by} LIMIT ?;"
    async with db.execute(sql, (*params, int(limit))) as cur:
        return [_row_to_alert(r) async for r in cur]


# --------- 订阅者 / 偏好 ---------
async def upsert_user(db: aiosqlite.Connection, user: User) -> None:
    await db.execute(
        """
        INSERT INTO users(id, email, first_name, last_name, is_active) VALUES(?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            email=excluded.email, first_name=excluded.first_name,
            last_name=excluded.last_name, is_active=excluded.is_active
        """,
        (user.id, user.email, user.first_name, user.last_name, int(user.is_active)),
    )
    await db.commit()


async def upsert_preference(db: aiosqlite.Connection, pref: AlertPreference) -> None:
    await db.execute(
        """
        INSERT INTO alert_preferences(
            user_id, cities, alert_types, min_priority, min_opportunity_score,
            min_value, max_value, property_types, min_bedrooms, max_bedrooms,
            max_alerts_per_day, quiet_hours_start, quiet_hours_end
        ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
            cities=excluded.cities, alert_types=excluded.alert_types,
            min_priority=excluded.min_priority,
            min_opportunity_score=excluded.min_opportunity_score,
            min_value=excluded.min_value, max_value=excluded.max_value,
            property_types=excluded.property_types,
            min_bedrooms=excluded.min_bedrooms, max_bedrooms=excluded.max_bedrooms,
            max_alerts_per_day=excluded.max_alerts_per_day,
            quiet_hours_start=excluded.quiet_hours_start,
            quiet_hours_end=excluded.quiet_hours_end
        """,
        (
            pref.user_id, join_list(pref.cities), join_list(pref.alert_types),
            Priority(pref.min_priority).value, int(pref.min_opportunity_score),
            pref.min_value, pref.max_value, join_list(pref.property_types),
            pref.min_bedrooms, pref.max_bedrooms, pref.max_alerts_per_day,
            pref.quiet_hours_start, pref.quiet_hours_end,
        ),
    )
    await db.commit()


async def get_preference(db: aiosqlite.Connection, user_id: str) -> Optional[AlertPreference]:
    async with db.execute("SELECT * FROM alert_preferences WHERE user_id=?;", (user_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_preference(row) if row else None


async def list_active_users_with_preferences(
    db: aiosqlite.Connection,
) -> List[Tuple[User, AlertPreference]]:
    sql = """
    SELECT u.id, u.email, u.first_name, u.last_name, u.is_active, p.*
      FROM users u JOIN alert_preferences p ON p.user_id = u.id
     WHERE u.is_active = 1
     ORDER BY u.rowid ASC;
    """
    out: List[Tuple[User, AlertPreference]] = []
    async with db.execute(sql) as cur:
        async for r in cur:
            out.append((_row_to_user(r), _row_to_preference(r)))
    return out


async def record_user_alert(
    db: aiosqlite.Connection,
    user_id: str,
    alert_id: str,
    *,
    notified: bool = True,
    notified_at: Optional[int] = None,
) -> UserAlert:
    now = now_ms()
    ts = (notified_at or now) if notified else None
    await db.execute(
        """
        INSERT INTO user_alerts(id, user_id, alert_id, is_notified, notified_at, created_at)
        VALUES(?,?,?,?,?,?)
        ON CONFLICT(user_id, alert_id) DO UPDATE SET
            is_notified=MAX(user_alerts.is_notified, excluded.is_notified), -- 已通知不回退
            notified_at=COALESCE(user_alerts.notified_at, excluded.notified_at)
        """,
        (_new_id(), user_id, alert_id, int(notified), ts, now),
    )
    await db.commit()
    return UserAlert(user_id=user_id, alert_id=alert_id, is_notified=notified, notified_at=ts, created_at=now)


async def count_notified_since(db: aiosqlite.Connection, user_id: str, since_ms: int) -> int:
    async with db.execute(
        """
        SELECT COUNT(*) FROM user_alerts
         WHERE user_id=? AND is_notified=1 AND notified_at >= ?;
        """,
        (user_id, int(since_ms)),
    ) as cur:
        row = await cur.fetchone()
    return int(row[0])
