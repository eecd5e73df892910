#!/usr/bin/env python3
import asyncio
import html
import logging
from collections import deque
from typing import Any, Optional

import aiohttp
from telegram.error import TelegramError

import constants
from alerts.models import AlertTrigger, NotificationRequest
from work_queue import RetryTask, TopicQueues, WorkerPool

logger = logging.getLogger(__name__)

PRIORITY_RANK = {'critical': 3, 'high': 2, 'medium': 1}


def format_telegram_message(request: NotificationRequest) -> str:
    return (
        f"<b>🚨 {request.alert_type.value} alert</b> ({request.priority})\n"
        f"User: <code>{html.escape(request.user_id)}</code>\n"
        f"{html.escape(request.message)}"
    )


class NotificationDispatcher:
    """
    Delivers queued NotificationRequests.

    Telegram goes through the bot, Slack and webhooks are POSTed with the
    shared aiohttp session, email is only logged. Every request is retried
    through a WorkerPool.
    """

    def __init__(
        self,
        queues: TopicQueues,
        session: Optional[aiohttp.ClientSession] = None,
        bot: Any = None,
        default_chat_id: Optional[str] = None,
        slack_webhook_url: Optional[str] = None,
        max_attempts: int = constants.DEFAULT_MAX_RETRIES + 1,
        retry_delay: float = constants.DEFAULT_RETRY_DELAY_MS / 1000,
        concurrency: int = 2,
        history_size: int = 50,
    ):
        self.queues = queues
        self.session = session
        self.bot = bot
        self.default_chat_id = default_chat_id
        self.slack_webhook_url = slack_webhook_url
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.pool: WorkerPool[NotificationRequest] = WorkerPool(self.deliver, concurrency=concurrency, timeout=30)
        self.recent_triggers: deque[AlertTrigger] = deque(maxlen=history_size)
        self.delivered = 0
        self.failed = 0

    async def deliver(self, request: NotificationRequest) -> None:
        if request.channel == 'telegram':
            chat_id = request.destination or self.default_chat_id
            if self.bot is None or not chat_id:
                raise RuntimeError("Telegram delivery is not configured")
            try:
                await self.bot.send_message(chat_id=chat_id, text=format_telegram_message(request), parse_mode='HTML')
            except TelegramError as exc:
                raise RuntimeError(f"Telegram send failed: {exc}") from exc
        elif request.channel in ('slack', 'webhook'):
            url = request.destination or (self.slack_webhook_url if request.channel == 'slack' else None)
            if self.session is None or not url:
                raise RuntimeError(f"No {request.channel} URL configured for alert {request.alert_id}")
            if request.channel == 'slack':
                payload = {'text': f"*{request.alert_type.value} alert* ({request.priority}): {request.message}"}
            else:
                payload = {
                    'alertId': request.alert_id,
                    'type': request.alert_type.value,
                    'userId': request.user_id,
                    'priority': request.priority,
                    'message': request.message,
                }
            async with self.session.post(url, json=payload, timeout=15) as response:
                response.raise_for_status()
        elif request.channel == 'email':
            logger.info("Email notification for %s (%s): %s",
                        request.destination or request.user_id, request.alert_type.value, request.message)
        else:
            raise ValueError(f"Unknown notification channel: {request.channel}")

    async def dispatch_pending(self) -> int:
        """Drains both alert topics once. Returns the number of notifications delivered."""
        self.recent_triggers.extend(self.queues.drain(constants.QUEUE_ALERTS))
        requests = self.queues.drain(constants.QUEUE_NOTIFICATIONS)
        if not requests:
            return 0
        tasks = [
            RetryTask(payload=request, max_attempts=self.max_attempts, delay=self.retry_delay,
                      priority=PRIORITY_RANK.get(request.priority, 0))
            for request in requests
        ]
        outcomes = await self.pool.run(tasks)
        delivered = 0
        for outcome in outcomes:
            if outcome.success:
                delivered += 1
            else:
                request = outcome.task.payload
                print(f"{constants.C_RED}Could not deliver {request.channel} notification for alert "
                      f"{request.alert_id}: {outcome.error}{constants.C_RESET}")
        self.delivered += delivered
        self.failed += len(outcomes) - delivered
        return delivered

    async def run_forever(self, interval: float = 5.0) -> None:
        while True:
            try:
                await self.dispatch_pending()
            except Exception as exc:
                logger.error("Notification dispatch failed: %s", exc)
            await asyncio.sleep(interval)
