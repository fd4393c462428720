"""Notification sinks for admin alerts.

Every sink implements `notify(title, content) -> bool` and never raises:
delivery problems are logged and reported as False.
"""

import asyncio
from typing import Optional, Protocol, Sequence

import httpx
import structlog

from analysis_ops.config import Settings

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Delivers a human-readable message to an operator channel."""

    async def notify(self, title: str, content: str) -> bool:
        ...


class TelegramNotifier:
    """
    Sends admin alerts to Telegram.

    Features:
    - HTML parse mode with escaped content
    - One retry on transient errors (429, 5xx, transport errors)
    - Message truncation for the Telegram limit
    - Deep link to the admin UI when base_url is configured
    """

    TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"
    MAX_MESSAGE_LENGTH = 4000  # Telegram limit is ~4096

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        enabled: bool = True,
        retry_delay: float = 1.0,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.enabled = enabled
        self.retry_delay = retry_delay

    async def notify(self, title: str, content: str) -> bool:
        if not self.enabled:
            logger.debug("telegram_disabled", title=title)
            return False

        message = self._format_message(title, content)
        if len(message) > self.MAX_MESSAGE_LENGTH:
            message = (
                message[: self.MAX_MESSAGE_LENGTH - 50] + "\n\n<i>(truncated...)</i>"
            )
        return await self._send(message, title)

    def _format_message(self, title: str, content: str) -> str:
        lines = [f"<b>{self._escape_html(title)}</b>", "━" * 20, self._escape_html(content)]
        if self.base_url:
            lines.append("")
            lines.append(f'<a href="{self.base_url}/admin/operations">Open admin</a>')
        return "\n".join(lines)

    def _escape_html(self, text: str) -> str:
        """Escape HTML special characters."""
        return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

    async def _send(self, message: str, title: str) -> bool:
        """Send message to Telegram with retry."""
        payload = {
            "chat_id": self.chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        url = self.TELEGRAM_API.format(token=self.bot_token)

        for attempt in range(2):  # Retry once
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload)

                if resp.status_code == 200:
                    logger.info("telegram_sent", title=title)
                    return True

                if resp.status_code == 400:
                    # Bad request - don't retry
                    logger.warning(
                        "telegram_bad_request",
                        title=title,
                        response=resp.text[:200],
                    )
                    return False

                # 429 or 5xx - retry
                logger.warning(
                    "telegram_error",
                    title=title,
                    status=resp.status_code,
                    attempt=attempt,
                )

            except httpx.HTTPError as e:
                logger.warning(
                    "telegram_exception",
                    title=title,
                    error=str(e),
                    attempt=attempt,
                )

            if attempt == 0:
                await asyncio.sleep(self.retry_delay)

        logger.error("telegram_failed", title=title)
        return False


class WebhookNotifier:
    """Posts alerts to a Slack-compatible incoming webhook with retry."""

    def __init__(
        self,
        webhook_url: str,
        max_retries: int = 3,
        timeout: float = 10.0,
        backoff_base: float = 1.0,
    ):
        self.webhook_url = webhook_url
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_base = backoff_base

    def _format_payload(self, title: str, content: str) -> dict:
        return {"text": f"*{title}*\n{content}"}

    async def notify(self, title: str, content: str) -> bool:
        payload = self._format_payload(title, content)

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
                    response.raise_for_status()

                logger.info("webhook_alert_delivered", title=title, attempt=attempt + 1)
                return True

            except httpx.TimeoutException as e:
                logger.warning(
                    "webhook_alert_timeout",
                    title=title,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error=str(e),
                )

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                logger.warning(
                    "webhook_alert_http_error",
                    title=title,
                    attempt=attempt + 1,
                    status_code=status_code,
                )
                # Client errors other than rate limiting will not improve on retry
                if 400 <= status_code < 500 and status_code != 429:
                    return False

            except httpx.HTTPError as e:
                logger.warning(
                    "webhook_alert_transport_error",
                    title=title,
                    attempt=attempt + 1,
                    error=str(e),
                )

            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.backoff_base * (2**attempt))

        logger.error("webhook_alert_failed", title=title, attempts=self.max_retries)
        return False


class LogNotifier:
    """Writes alerts to the log; the fallback when no channel is configured."""

    async def notify(self, title: str, content: str) -> bool:
        logger.warning("admin_alert", title=title, content=content)
        return True


class CompositeNotifier:
    """Fans out to several sinks; succeeds if any sink succeeds."""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    async def notify(self, title: str, content: str) -> bool:
        if not self.notifiers:
            return False
        results = await asyncio.gather(
            *(n.notify(title, content) for n in self.notifiers),
            return_exceptions=True,
        )
        delivered = False
        for notifier, result in zip(self.notifiers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "notifier_raised",
                    notifier=type(notifier).__name__,
                    error=str(result),
                )
            elif result:
                delivered = True
        return delivered


def build_notifier(settings: Settings) -> Notifier:
    """Select sinks from configuration; falls back to LogNotifier."""
    sinks: list[Notifier] = []

    if settings.telegram_bot_token and settings.telegram_chat_id:
        sinks.append(
            TelegramNotifier(
                bot_token=settings.telegram_bot_token,
                chat_id=settings.telegram_chat_id,
                base_url=settings.admin_base_url,
                timeout=settings.telegram_timeout_s,
                enabled=settings.telegram_enabled,
            )
        )

    if settings.alert_webhook_url:
        sinks.append(WebhookNotifier(settings.alert_webhook_url))

    if not sinks:
        logger.info("alert_sinks_not_configured", fallback="log")
        return LogNotifier()
    if len(sinks) == 1:
        return sinks[0]
    return CompositeNotifier(sinks)
