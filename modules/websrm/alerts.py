"""
WEB-SRM Operator Alerts
=========================
Raised when an entry lands in failed_permanent or a device circuit opens.
Always logged; also POSTed to WEBSRM_ALERT_WEBHOOK_URL when configured.
The queue hands alerts to its caller to fire once the outcome is committed.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config.settings import WEBSRM_ALERT_WEBHOOK_URL

logger = logging.getLogger("fiscal.websrm.alerts")

ALERT_TIMEOUT = 5  # seconds


@dataclass(frozen=True)
class AlertSubject:
    """Detached copy of the entry fields an alert reports."""
    id: int
    kind: str
    id_trans: str
    operation: str
    device_id: str
    attempt_count: int

    @classmethod
    def of(cls, entry) -> "AlertSubject":
        return cls(entry.id, entry.kind, entry.id_trans, entry.operation,
                   entry.device_id, entry.attempt_count)


class AlertService:

    def __init__(self, webhook_url: Optional[str] = None, http: Optional[httpx.Client] = None):
        self.webhook_url = WEBSRM_ALERT_WEBHOOK_URL if webhook_url is None else webhook_url
        self._http = http

    def _post(self, payload: dict) -> bool:
        if not self.webhook_url:
            return False
        try:
            if self._http is not None:
                resp = self._http.post(self.webhook_url, json=payload, timeout=ALERT_TIMEOUT)
            else:
                resp = httpx.post(self.webhook_url, json=payload, timeout=ALERT_TIMEOUT)
            if resp.status_code >= 400:
                logger.error(f"Alert webhook: HTTP {resp.status_code}")
                return False
            return True
        except httpx.TimeoutException:
            logger.error("Alert webhook: timeout")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook error: {e}")
            return False

    def permanent_failure(self, entry, error: Optional[dict]) -> bool:
        error = error or {}
        logger.error(
            f"WEB-SRM entry #{entry.id} ({entry.kind} {entry.id_trans} {entry.operation}) failed permanently "
            f"after {entry.attempt_count} attempt(s): {error.get('code')} {error.get('message') or ''}"
        )
        return self._post({
            "event": "websrm.failed_permanent",
            "entry_id": entry.id,
            "kind": entry.kind,
            "id_trans": entry.id_trans,
            "operation": entry.operation,
            "device_id": entry.device_id,
            "attempt_count": entry.attempt_count,
            "error": error,
        })

    def circuit_opened(self, device_id: str, cooldown: int) -> bool:
        logger.warning(f"WEB-SRM circuit open for device {device_id}, pausing {cooldown}s")
        return self._post({
            "event": "websrm.circuit_open",
            "device_id": device_id,
            "cooldown_seconds": cooldown,
        })


alert_service = AlertService()
