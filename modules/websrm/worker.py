"""
WEB-SRM Dispatch Worker
=========================
One dispatch pass: recover expired leases, claim due entries, send them over
a bounded thread pool (one in-flight request per device), settle results.
Driven by the APScheduler job in main.py and by POST /admin/websrm/queue/run.
"""

import logging
import os
import socket
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from config.database import SessionLocal
from config.settings import WEBSRM_DISPATCH_BATCH, WEBSRM_DISPATCH_WORKERS
from modules.websrm.client import SrmClient, SrmResponse
from modules.websrm.enums import TRANSPORT_NETWORK_ERROR, Outcome, QueueStatus
from modules.websrm.models import FiscalQueueEntry
from modules.websrm.queue_service import QueueService, get_queue_service

logger = logging.getLogger("fiscal.websrm.worker")


class DeviceLimiter:
    """At most one concurrent submission per device within this process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, device_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = self._locks[device_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, device_id: str):
        lock = self._lock_for(device_id)
        with lock:
            yield


def _fire(alerts):
    """Operator alerts collected while settling, fired once the session committed."""
    for alert in alerts:
        alert()


@dataclass(frozen=True)
class _Job:
    entry_id: int
    kind: str
    device_id: str
    payload: str
    signature: str
    idempotency_key: str


class QueueWorker:

    def __init__(self, service: QueueService, client: Optional[SrmClient] = None,
                 session_factory: Callable[[], Session] = SessionLocal,
                 max_workers: int = WEBSRM_DISPATCH_WORKERS,
                 batch_size: int = WEBSRM_DISPATCH_BATCH):
        self.service = service
        self.client = client or SrmClient(service.profile)
        self.session_factory = session_factory
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.limiter = DeviceLimiter()
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}"

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Single dispatch pass. Returns counters for logging and the admin API."""
        summary = Counter()
        owner = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"

        alerts = []
        db = self.session_factory()
        try:
            summary["recovered"] = self.service.recover_expired_leases(db, now, deferred_alerts=alerts)
            if not self.service.profile.network_enabled:
                db.commit()
                _fire(alerts)
                logger.debug("WEB-SRM network disabled, dispatch skipped")
                summary["skipped"] = 1
                return dict(summary)
            claimed = self.service.claim_due(db, owner, limit=self.batch_size, now=now)
            jobs = [
                _Job(e.id, e.kind, e.device_id, e.payload, e.signature, e.idempotency_key)
                for e in claimed
            ]
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        _fire(alerts)

        summary["claimed"] = len(jobs)
        if not jobs:
            return dict(summary)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="websrm") as pool:
            for outcome in pool.map(lambda job: self._deliver(job, owner, now), jobs):
                summary[outcome] += 1

        logger.info(f"Dispatch {owner}: {dict(summary)}")
        return dict(summary)

    def _deliver(self, job: _Job, owner: str, now: Optional[datetime] = None) -> str:
        with self.limiter.hold(job.device_id):
            try:
                response = self.client.submit(job.kind, job.payload, job.signature, job.idempotency_key)
            except Exception as e:
                # Unexpected client errors settle as NETWORK_ERROR
                logger.exception(f"Entry #{job.entry_id}: submit failed: {e}")
                response = SrmResponse(
                    transport_error=TRANSPORT_NETWORK_ERROR,
                    message=f"{type(e).__name__}: {e}",
                )

        alerts = []
        db = self.session_factory()
        try:
            entry = db.get(FiscalQueueEntry, job.entry_id)
            result = self.service.record_outcome(
                db, entry, response, owner=owner, now=now, deferred_alerts=alerts,
            )
            status = entry.status
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"Entry #{job.entry_id}: failed to record outcome: {e}")
            return "error"
        finally:
            db.close()
        _fire(alerts)

        if result is None:
            return "lease_lost"
        if result.outcome == Outcome.SUCCESS:
            return "sent"
        return "retry" if status == QueueStatus.FAILED.value else "failed_permanent"


_worker: Optional[QueueWorker] = None


def get_worker() -> QueueWorker:
    global _worker
    if _worker is None:
        _worker = QueueWorker(get_queue_service())
    return _worker
