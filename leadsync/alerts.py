from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable

import httpx

from leadsync.observability import incr_metric, log_event


TELEGRAM_API_BASE = "https://api.telegram.org"


class AlertChannel:
    """Telegram notifier with a cooldown per alert type. Never raises."""

    def __init__(
        self,
        bot_token: str | None,
        chat_id: str | None,
        *,
        cooldown_seconds: float = 1800.0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._cooldown = cooldown_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._lock = Lock()
        self._last_sent: dict[str, float] = {}

    @property
    def configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def _claim_slot(self, alert_type: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(alert_type)
            if last is not None and now - last < self._cooldown:
                return False
            self._last_sent[alert_type] = now
            return True

    def send(self, alert_type: str, message: str) -> bool:
        if not self.configured:
            log_event("alert_skipped_unconfigured", level=logging.WARNING, alert_type=alert_type, message=message)
            return False
        if not self._claim_slot(alert_type):
            incr_metric("alerts.suppressed", alert_type=alert_type)
            return False
        url = f"{TELEGRAM_API_BASE}/bot{self._bot_token}/sendMessage"
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(
                    url,
                    json={"chat_id": self._chat_id, "text": f"[{alert_type}] {message}"},
                )
        except httpx.HTTPError as exc:
            incr_metric("alerts.failed", alert_type=alert_type)
            log_event("alert_send_failed", level=logging.WARNING, alert_type=alert_type, error=str(exc))
            return False
        if response.status_code >= 400:
            incr_metric("alerts.failed", alert_type=alert_type)
            log_event(
                "alert_send_failed",
                level=logging.WARNING,
                alert_type=alert_type,
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            return False
        incr_metric("alerts.sent", alert_type=alert_type)
        log_event("alert_sent", alert_type=alert_type)
        return True
