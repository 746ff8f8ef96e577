"""
WEB-SRM Circuit Breaker
=========================
Per-device breaker persisted in fiscal_circuit_breakers.
After `threshold` consecutive transient failures the device is skipped for
`cooldown` seconds; any success closes it again.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Set

from sqlalchemy.orm import Session

from common.helpers import as_utc, now_utc
from modules.websrm.models import CircuitBreakerState

logger = logging.getLogger("fiscal.websrm.breaker")


class CircuitBreaker:

    def __init__(self, threshold: int = 5, cooldown: int = 60):
        self.threshold = threshold
        self.cooldown = cooldown

    def _state(self, db: Session, device_id: str) -> CircuitBreakerState:
        state = db.get(CircuitBreakerState, device_id)
        if state is None:
            state = CircuitBreakerState(device_id=device_id, consecutive_failures=0)
            db.add(state)
            db.flush()
        return state

    def is_open(self, db: Session, device_id: str, now: Optional[datetime] = None) -> bool:
        state = db.get(CircuitBreakerState, device_id)
        if state is None or state.open_until is None:
            return False
        return as_utc(state.open_until) > (now or now_utc())

    def open_devices(self, db: Session, now: Optional[datetime] = None) -> Set[str]:
        now = now or now_utc()
        rows = db.query(CircuitBreakerState).filter(CircuitBreakerState.open_until.isnot(None)).all()
        return {r.device_id for r in rows if as_utc(r.open_until) > now}

    def record_success(self, db: Session, device_id: str):
        state = db.get(CircuitBreakerState, device_id)
        if state is None:
            return
        if state.open_until is not None or state.consecutive_failures:
            logger.info(f"Circuit closed for device {device_id}")
        state.consecutive_failures = 0
        state.opened_at = None
        state.open_until = None

    def record_failure(self, db: Session, device_id: str, now: Optional[datetime] = None) -> bool:
        """Count one transient failure. Returns True when this call opened the circuit."""
        now = now or now_utc()
        state = self._state(db, device_id)
        state.consecutive_failures = (state.consecutive_failures or 0) + 1
        if state.consecutive_failures >= self.threshold:
            already_open = state.open_until is not None and as_utc(state.open_until) > now
            state.opened_at = now
            state.open_until = now + timedelta(seconds=self.cooldown)
            if not already_open:
                logger.warning(
                    f"Circuit opened for device {device_id} after "
                    f"{state.consecutive_failures} consecutive failures ({self.cooldown}s)"
                )
                return True
        return False
