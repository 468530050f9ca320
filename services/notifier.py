"""
告警通知分发

notify(channel_ids, event) 即发即忘：每个通知器独立投递，失败只记录日志，
不会影响告警状态机。
"""

import asyncio
from typing import Optional

import httpx

from core.logger import get_logger
from models.alert import AlertEvent, AlertEventKind

_logger = get_logger("services.notifier")


class LoggingNotifier:
    """把告警事件写入日志"""

    name = "log"

    def deliver(self, channel_ids: list[str], event: AlertEvent):
        if event.kind == AlertEventKind.FIRING:
            _logger.warning(event.summary())
        else:
            _logger.info(event.summary())


class WebhookNotifier:
    """
    按渠道 ID 把事件 POST 到对应的 Webhook 地址。

    Args:
        webhooks: {channel_id: url}
    """

    name = "webhook"

    def __init__(self, webhooks: Optional[dict[str, str]] = None, timeout: float = 10):
        self._webhooks = dict(webhooks or {})
        self._timeout = timeout
        self._pending: set[asyncio.Task] = set()

    @staticmethod
    def payload(event: AlertEvent) -> dict:
        data = event.model_dump(mode="json")
        data["summary"] = event.summary()
        return data

    def deliver(self, channel_ids: list[str], event: AlertEvent):
        urls = [self._webhooks[c] for c in channel_ids if c in self._webhooks]
        if not urls:
            return
        body = self.payload(event)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for url in urls:
            if loop is not None:
                task = loop.create_task(self._post(url, body))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                self._post_sync(url, body)

    async def _post(self, url: str, body: dict):
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body)
                resp.raise_for_status()
            _logger.debug(f"Webhook 通知已发送: {url}")
        except httpx.HTTPError as e:
            _logger.error(f"Webhook 通知发送失败 {url}: {e}")

    def _post_sync(self, url: str, body: dict):
        try:
            resp = httpx.post(url, json=body, timeout=self._timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            _logger.error(f"Webhook 通知发送失败 {url}: {e}")

    async def drain(self):
        """等待在途的通知发送完成"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class NotificationDispatcher:
    """按顺序调用所有通知器"""

    def __init__(self, notifiers: Optional[list] = None):
        self._notifiers = list(notifiers) if notifiers is not None else [LoggingNotifier()]

    @classmethod
    def from_config(cls, config) -> "NotificationDispatcher":
        notifiers = [LoggingNotifier()]
        webhooks = config.get("notifications.webhooks", {}) or {}
        if webhooks:
            notifiers.append(WebhookNotifier(webhooks, timeout=config.get("notifications.timeout", 10)))
        return cls(notifiers)

    def notify(self, channel_ids: list[str], event: AlertEvent):
        for notifier in self._notifiers:
            try:
                notifier.deliver(channel_ids, event)
            except Exception as e:
                _logger.error(f"通知器 {getattr(notifier, 'name', notifier)} 投递失败: {e}")

    async def close(self):
        for notifier in self._notifiers:
            drain = getattr(notifier, "drain", None)
            if drain is not None:
                await drain()
