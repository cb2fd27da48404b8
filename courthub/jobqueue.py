# -*- coding: utf-8 -*-
"""
courthub/jobqueue.py
处理队列的阶段执行器：取批 -> 逐条原子认领 -> 处理 -> 完成 / 重试 / 失败。
三个阶段（抽取、分类、生成提醒）共用这一套语义，阶段自身的异常
一律转成队列状态，不会冒泡把整轮调度打断。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import aiosqlite

from courthub import storage
from courthub.models import JobStatus, QueueItem, Stage
from courthub.utils import get_logger

log = get_logger("queue")

# handler 返回值非 None 时收集到 report.outputs（例如新生成的 Alert）
JobHandler = Callable[[QueueItem], Awaitable[Optional[Any]]]


@dataclass
class StageReport:
    stage: Stage
    fetched: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0  # 被其它 worker 抢先认领
    outputs: List[Any] = field(default_factory=list)


async def run_stage(
    db: aiosqlite.Connection,
    stage: Stage,
    handler: JobHandler,
    batch_size: int,
) -> StageReport:
    report = StageReport(stage=stage)
    jobs = await storage.fetch_pending_jobs(db, stage, batch_size)
    report.fetched = len(jobs)
    if jobs:
        log.info("processing %d %s jobs", len(jobs), stage.value)

    for job in jobs:
        # 先认领再处理，绝不先处理后认领
        if not await storage.claim_job(db, job):
            report.skipped += 1
            continue
        try:
            out = await handler(job)
            await storage.complete_job(db, job)
        except Exception as e:  # 阶段错误转成队列状态
            msg = str(e) or repr(e)
            status = await storage.fail_job(db, job, msg)
            if status is JobStatus.FAILED:
                report.failed += 1
                log.error(
                    "max attempts reached for %s job %s (case %s): %s",
                    stage.value, job.id, job.case_id, msg,
                )
            else:
                report.retried += 1
                log.warning(
                    "%s job %s failed (attempt %d/%d), will retry: %s",
                    stage.value, job.id, job.attempts, job.max_attempts, msg,
                )
            continue

        report.completed += 1
        if out is not None:
            report.outputs.append(out)

    return report
