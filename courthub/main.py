# courthub/main.py
# 串起：bulletin poll -> extraction -> classification -> alert generation -> notify -> cleanup
# 两个独立的周期循环：流水线（默认 5 分钟）和公告轮询（默认每天一次）

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from courthub import storage
from courthub.alerts import AlertGenerator
from courthub.classifier import CaseClassifier
from courthub.collector import PersistResult, run_bulletin_poll
from courthub.extractor import EntityExtractor
from courthub.jobqueue import StageReport
from courthub.matcher import AlertMatcher
from courthub.models import Stage
from courthub.notifier import DispatchReport, Notifier
from courthub.utils import get_logger, load_cfg, resolve_tz, setup_logging

log = get_logger("main")


@dataclass
class TickReport:
    skipped: bool = False
    stages: List[StageReport] = field(default_factory=list)
    dispatched: List[DispatchReport] = field(default_factory=list)
    cleaned: Tuple[int, int] = (0, 0)
    stale: Tuple[int, int] = (0, 0)
    errors: List[str] = field(default_factory=list)


class Orchestrator:
    """
    阶段处理器在构造时建好一次，之后每轮复用。
    同一时刻只允许一轮流水线在跑：上一轮没结束时新的一轮直接跳过。
    """

    def __init__(self, db: aiosqlite.Connection, cfg: Dict[str, Any], *, notifier: Optional[Notifier] = None):
        self.db = db
        self.cfg = cfg
        p = cfg.get("pipeline", {})
        a = cfg.get("alerts", {})
        m = cfg.get("matcher", {})
        max_attempts = int(p.get("max_attempts", 3))

        self.extractor = EntityExtractor(
            db, batch_size=int(p.get("batch_extraction", 20)), max_attempts=max_attempts,
        )
        self.classifier = CaseClassifier(
            db, batch_size=int(p.get("batch_classification", 15)), max_attempts=max_attempts,
        )
        self.generator = AlertGenerator(
            db,
            batch_size=int(p.get("batch_alerts", 15)),
            major_cities=a.get("major_cities") or [],
            province=a.get("province", "ON"),
        )
        self.matcher = AlertMatcher(
            db, tz=resolve_tz(m.get("timezone")), default_limit=int(m.get("default_limit", 20)),
        )
        self.notifier = notifier if notifier is not None else Notifier(db, self.matcher, cfg)

        self._pipeline_running = False

    @property
    def is_running(self) -> bool:
        return self._pipeline_running

    async def run_processing_pipeline(self) -> TickReport:
        if self._pipeline_running:
            log.info("pipeline already running, skipping this tick")
            return TickReport(skipped=True)

        self._pipeline_running = True
        report = TickReport()
        try:
            for name, stage in (
                ("extraction", self.extractor),
                ("classification", self.classifier),
                ("alert generation", self.generator),
            ):
                try:
                    report.stages.append(await stage.process_pending_jobs())
                except Exception as e:  # 存储层故障等：记下来，后面的阶段照跑
                    log.error("%s stage error: %r", name, e)
                    report.errors.append(f"{name}: {e!r}")

            new_alerts = [
                a for s in report.stages if s.stage is Stage.ALERT_GENERATION for a in s.outputs
            ]
            if new_alerts:
                try:
                    report.dispatched = await self.notifier.dispatch_all(new_alerts)
                except Exception as e:
                    log.error("notify error: %r", e)
                    report.errors.append(f"notify: {e!r}")

            try:
                report.cleaned, report.stale = await self.run_cleanup()
            except Exception as e:
                log.error("cleanup error: %r", e)
                report.errors.append(f"cleanup: {e!r}")
        finally:
            self._pipeline_running = False
        return report

    async def run_cleanup(self) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        p = self.cfg.get("pipeline", {})
        cleaned = await storage.cleanup_queue(
            self.db,
            completed_days=int(p.get("completed_retention_days", 7)),
            failed_days=int(p.get("failed_retention_days", 30)),
        )
        stale = (0, 0)
        stale_minutes = int(p.get("stale_minutes", 30))
        if stale_minutes > 0:
            stale = await storage.reset_stale_jobs(self.db, stale_minutes=stale_minutes)
            if any(stale):
                log.warning("recovered stale jobs: %d back to pending, %d failed", *stale)
        if any(cleaned):
            log.info("queue cleanup: removed %d completed, %d failed", *cleaned)
        return cleaned, stale

    async def run_bulletin_poll(self) -> PersistResult:
        return await run_bulletin_poll(self.db, self.cfg)

    async def _pipeline_loop(self, every_sec: int):
        log.info("pipeline loop started (every %ss)", every_sec)
        try:
            while True:
                try:
                    await self.run_processing_pipeline()
                except Exception as e:
                    log.error("pipeline tick error: %r", e)
                await asyncio.sleep(every_sec)
        except asyncio.CancelledError:
            log.info("pipeline loop cancelled")
            raise

    async def _poll_loop(self, every_sec: int):
        log.info("bulletin poll loop started (every %ss)", every_sec)
        try:
            while True:
                try:
                    await self.run_bulletin_poll()
                except Exception as e:  # FetchError 等：等下一轮
                    log.error("bulletin poll error: %r", e)
                await asyncio.sleep(every_sec)
        except asyncio.CancelledError:
            log.info("bulletin poll loop cancelled")
            raise

    async def run_forever(self, run_seconds: int = 0):
        """run_seconds <= 0 表示常驻"""
        p = self.cfg.get("pipeline", {})
        b = self.cfg.get("bulletin", {})
        tasks = [
            asyncio.create_task(self._poll_loop(int(b.get("poll_interval_sec", 86400)))),
            asyncio.create_task(self._pipeline_loop(int(p.get("interval_sec", 300)))),
        ]
        try:
            if run_seconds and run_seconds > 0:
                await asyncio.sleep(run_seconds)
            else:
                await asyncio.Event().wait()
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("finished")


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="courthub", description="Court filing ingestion and alert pipeline")
    parser.add_argument("--once", action="store_true", help="run one pipeline tick and exit")
    parser.add_argument("--poll", action="store_true", help="poll the bulletin once before the tick")
    parser.add_argument("--run-seconds", type=int, default=0, help="run the periodic loops for N seconds (0 = forever)")
    parser.add_argument("--db", default=None, help="SQLite path (overrides config)")
    parser.add_argument("--config", default=None, help="path to config.yml")
    args = parser.parse_args(argv)

    cfg = load_cfg(args.config)
    setup_logging(cfg.get("log_level", "INFO"))
    db = await storage.init_db(args.db or cfg.get("db_path", "court.db"))
    orch = Orchestrator(db, cfg)
    try:
        if args.once or args.poll:
            if args.poll:
                res = await orch.run_bulletin_poll()
                log.info("poll: %d new cases, %d known", len(res.created), res.existing)
            if args.once:
                tick = await orch.run_processing_pipeline()
                for s in tick.stages:
                    log.info(
                        "%s: %d fetched, %d completed, %d failed",
                        s.stage.value, s.fetched, s.completed, s.failed,
                    )
            return 0
        await orch.run_forever(run_seconds=args.run_seconds)
        return 0
    finally:
        await orch.notifier.close()
        await db.close()


def run():
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
