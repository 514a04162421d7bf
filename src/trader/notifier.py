from __future__ import annotations

import html
import logging
from concurrent.futures import ThreadPoolExecutor

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class NullNotifier:
    def notify(self, text: str) -> None:
        return


class TelegramNotifier:
    """
    Fire-and-forget operator notifications through the Telegram Bot API.

    `notify()` hands the message to a single background thread and returns immediately;
    delivery errors are logged and dropped.
    """

    def __init__(self, token: str, chat_id: str, *, timeout: float = 5.0, client: httpx.Client | None = None):
        self.token = token
        self.chat_id = chat_id
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")

    def notify(self, text: str) -> None:
        try:
            self._executor.submit(self._send, text)
        except RuntimeError:
            # Executor already shut down (process exiting).
            logger.debug("Notifier closed; dropping message")

    def _send(self, text: str) -> None:
        try:
            resp = self._client.post(
                f"{TELEGRAM_API}/bot{self.token}/sendMessage",
                json={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_notification": True,
                },
            )
            if resp.status_code != 200:
                logger.warning("Telegram send failed: %s %s", resp.status_code, resp.text[:200])
        except Exception as e:
            logger.warning("Telegram send failed: %s: %s", type(e).__name__, e)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._client.close()


def escape(value: object) -> str:
    return html.escape(str(value), quote=False)
