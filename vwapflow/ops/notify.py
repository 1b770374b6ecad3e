from __future__ import annotations

import logging
import threading

import requests

log = logging.getLogger("vwapflow.notify")


class TelegramNotifier:
    """Fire-and-forget Telegram alerts. Delivery failures are ignored."""

    def __init__(self, token: str, chat_id: str, *, testnet: bool = False, timeout_s: float = 10.0):
        self.token = token
        self.chat_id = chat_id
        self.testnet = testnet
        self.timeout_s = timeout_s
        self.enabled = bool(token and chat_id)
        self.base_url = f"https://api.telegram.org/bot{token}"

    @classmethod
    def from_settings(cls, s) -> "TelegramNotifier":
        return cls(s.TG_TOKEN, s.TG_CHAT_ID, testnet=s.is_testnet)

    def format(self, text: str) -> str:
        prefix = "⚠️[TEST]" if self.testnet else "🚀[REAL]"
        return f"{prefix} {text}"

    def __call__(self, text: str) -> None:
        self.send(text)

    def send(self, text: str) -> None:
        if not self.enabled:
            log.debug("telegram disabled, dropped: %s", text)
            return
        threading.Thread(
            target=self._post, args=(self.format(text),), name="telegram", daemon=True
        ).start()

    def _post(self, text: str) -> None:
        try:
            requests.post(
                f"{self.base_url}/sendMessage",
                json={"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            log.debug("telegram send failed: %s", e)
