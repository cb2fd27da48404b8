"""
courthub/notifier.py
推送胶水：新提醒 -> 匹配到的订阅者 -> 渠道发送（Telegram 或回退到 stdout）
- 免打扰时段内的订阅者跳过
- 达到每日上限的订阅者跳过
- 发送成功记一条已通知的 user_alert（每日上限就是按它计数的）
真正的多渠道投递（邮件 / 短信 / push）不在这里做。
Telegram 渠道只发到配置里的一个 chat_id（运营 / 演示频道），
所有匹配到的订阅者的消息都进同一个会话，不是按订阅者逐个投递。
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite
import httpx

from courthub import storage
from courthub.matcher import AlertMatcher
from courthub.models import Alert, MatchResult
from courthub.utils import get_logger

log = get_logger("notifier")


def _truncate(s: str, limit: int = 3500) -> str:
    if s is None:
        return ""
    return s if len(s) <= limit else s[:limit - 3] + "..."


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class _TelegramAdapter:
    def __init__(
        self,
        token: str,
        chat_id: str,
        retry: Dict[str, int],
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = token
        self._chat_id = chat_id
        self._retry = retry or {}
        self._client = client

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池；trust_env 读取系统代理 / 证书
        if self._client is None:
            timeout = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=30.0)
            self._client = httpx.AsyncClient(timeout=timeout, trust_env=True)
        return self._client

    async def send(self, text: str) -> bool:
        """
        发送 Telegram；尊重 429/5xx；最终失败才记一条 warning。
        """
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }

        max_times = int(self._retry.get("max_times", 3))
        backoff = float(self._retry.get("backoff_sec", 2))
        last_err = None

        for attempt in range(1, max_times + 1):
            try:
                r = await self._client_get().post(url, data=payload)
            except httpx.HTTPError as e:
                last_err = repr(e)
                # 网络抖动：按退避重试
                await asyncio.sleep(min(backoff * (2 ** (attempt - 1)), 20) + random.uniform(0, 0.6))
                continue

            try:
                data = r.json()
            except ValueError:
                data = None

            if r.status_code == 200 and (data is None or data.get("ok", True) is True):
                return True

            # 429/5xx：可重试，优先用服务端给的 retry_after
            if r.status_code == 429 or 500 <= r.status_code < 600:
                retry_after = 0
                if isinstance(data, dict):
                    retry_after = int((data.get("parameters") or {}).get("retry_after", 0) or 0)
                sleep_sec = retry_after or (backoff * (2 ** (attempt - 1)))
                await asyncio.sleep(min(sleep_sec, 30) + random.uniform(0, 0.6))
                last_err = f"http {r.status_code}"
                continue

            # 其他 4xx：直接失败
            last_err = f"http {r.status_code}: {(r.text or '')[:300]}"
            break

        log.warning("telegram send failed after %d attempts: %s", max_times, last_err)
        return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _StdoutAdapter:
    async def send(self, text: str) -> bool:
        print("\n" + text + "\n")
        return True

    async def close(self):
        return


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

@dataclass
class DispatchReport:
    alert_id: str
    matched: int = 0
    sent: int = 0
    quiet: int = 0
    capped: int = 0
    failed: int = 0


class Notifier:
    def __init__(
        self,
        db: aiosqlite.Connection,
        matcher: AlertMatcher,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        adapter: Any = None,
    ):
        raw = cfg or {}
        # 允许传整份 cfg 或 notifier 子配置
        self._cfg = raw.get("notifier", raw)
        self.db = db
        self.matcher = matcher
        self.enabled = bool(self._cfg.get("enabled", True))

        if adapter is not None:
            self._adapter = adapter
            self._channel = "custom"
            return

        token = (self._cfg.get("token") or "").strip()
        chat_id = str(self._cfg.get("chat_id") or "").strip()
        channels = self._cfg.get("notify_channels") or []
        if "telegram" in channels and token and chat_id:
            self._adapter = _TelegramAdapter(token, chat_id, self._cfg.get("retry") or {})
            self._channel = "telegram"
        else:
            self._adapter = _StdoutAdapter()
            self._channel = "stdout"
            if "telegram" in channels:
                log.warning("TELEGRAM_BOT_TOKEN/CHAT_ID missing, falling back to stdout")

    @property
    def channel(self) -> str:
        return self._channel

    async def dispatch(self, alert: Alert, now: Optional[datetime] = None) -> DispatchReport:
        """把一条新提醒推给匹配的订阅者"""
        report = DispatchReport(alert_id=alert.id)
        if not self.enabled:
            return report

        matches = await self.matcher.find_matching_users(alert)
        report.matched = len(matches)
        for m in matches:
            pref = await storage.get_preference(self.db, m.user.id)
            if pref is not None and self.matcher.is_in_quiet_hours(pref, now):
                report.quiet += 1
                continue
            if await self.matcher.has_reached_daily_limit(m.user.id, now):
                report.capped += 1
                continue

            ok = await self._adapter.send(self._format_text(m))
            if not ok:
                report.failed += 1
                continue
            await storage.record_user_alert(self.db, m.user.id, alert.id, notified=True)
            report.sent += 1

        if report.matched:
            log.info(
                "alert %s: %d matched, %d sent, %d quiet hours, %d at daily limit",
                alert.id, report.matched, report.sent, report.quiet, report.capped,
            )
        return report

    async def dispatch_all(self, alerts: List[Alert], now: Optional[datetime] = None) -> List[DispatchReport]:
        out = []
        for a in alerts:
            out.append(await self.dispatch(a, now))
        return out

    def _format_text(self, m: MatchResult) -> str:
        """统一的消息格式"""
        a = m.alert
        level = "🔴" if a.priority.value in ("HIGH", "URGENT") else "🟢"
        name = " ".join(p for p in (m.user.first_name, m.user.last_name) if p) or m.user.email
        text = (
            f"{level} {a.title}\n"
            f"{a.description}\n"
            f"Type: {a.alert_type.value} | Priority: {a.priority.value} | "
            f"Opportunity: {a.opportunity_score}\n"
            f"Address: {a.address}, {a.city} {a.province} {a.postal_code or ''}".rstrip()
        )
        if a.court_file_number:
            text += f"\nCourt File: {a.court_file_number}"
        text += f"\nFor: {name} (match {m.match_score})"
        text += "\nWhy: " + "; ".join(m.match_reasons)
        return _truncate(text, 3500)

    async def close(self):
        await self._adapter.close()
