"""
WEB-SRM Queue Service
=======================
Durable, at-least-once delivery of signed WEB-SRM submissions.

State machine:

    pending ──claim──► sending ──success──────────► sent
       │                  │
       │                  ├─transient──► failed ──claim──► sending
       │                  │      (attempt_count >= max_attempts → failed_permanent)
       │                  └─permanent──► failed_permanent ──requeue──► pending
       └──cancel──► cancelled

Every transition appends a FiscalQueueEvent; the entry row only holds the
current projection. Callers own the transaction (commit/rollback).
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import Session, aliased

from common.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from common.helpers import as_utc, now_utc
from modules.websrm.alerts import AlertService, AlertSubject, alert_service
from modules.websrm.canonical import canonicalize, payload_hash
from modules.websrm.circuit_breaker import CircuitBreaker
from modules.websrm.client import SrmResponse, generate_idempotency_key
from modules.websrm.enums import TRANSPORT_TIMEOUT, Outcome, QueueKind, QueueStatus
from modules.websrm.error_mapper import Classification, classify
from modules.websrm.field_mapper import map_closing, map_order, validate_transaction
from modules.websrm.models import FiscalQueueEntry, FiscalQueueEvent, FiscalReceipt
from modules.websrm.profile import ComplianceProfile, get_profile

logger = logging.getLogger("fiscal.websrm.queue")

ALLOWED_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.SENDING, QueueStatus.CANCELLED},
    QueueStatus.FAILED: {QueueStatus.SENDING},
    QueueStatus.SENDING: {QueueStatus.SENT, QueueStatus.FAILED, QueueStatus.FAILED_PERMANENT},
    QueueStatus.FAILED_PERMANENT: {QueueStatus.PENDING},
    QueueStatus.SENT: set(),
    QueueStatus.CANCELLED: set(),
}

CLAIMABLE = (QueueStatus.PENDING.value, QueueStatus.FAILED.value)


def compute_backoff(attempt_count: int, base: int = 60, cap: int = 3600,
                    jitter: float = 0.0, rng=random.random) -> float:
    """
    Delay in seconds before the next attempt: min(base * 2^attempt_count, cap).
    `attempt_count` is the count after the failure being scheduled.
    With jitter > 0 the delay moves by up to ±jitter of itself, still capped.
    """
    delay = min(base * (2 ** max(attempt_count, 0)), cap)
    if jitter:
        delay = delay + delay * jitter * (rng() * 2 - 1)
        delay = max(0.0, min(delay, cap))
    return delay


@dataclass
class EnqueueResult:
    entry: FiscalQueueEntry
    created: bool
    warnings: List[Any] = field(default_factory=list)


class QueueService:
    """Enqueue, claim, and settle WEB-SRM submissions for one compliance profile."""

    def __init__(self, profile: ComplianceProfile, breaker: Optional[CircuitBreaker] = None,
                 alerts: Optional[AlertService] = None):
        self.profile = profile
        self.breaker = breaker or CircuitBreaker(profile.breaker_threshold, profile.breaker_cooldown)
        self.alerts = alerts or alert_service

    # ------------------------------------------
    # Internals
    # ------------------------------------------

    def _append_event(self, db: Session, entry: FiscalQueueEntry, from_status, to_status,
                      actor: str = "system", classification: Optional[Classification] = None,
                      duration_ms: Optional[int] = None) -> FiscalQueueEvent:
        ev = FiscalQueueEvent(
            entry_id=entry.id,
            from_status=from_status.value if isinstance(from_status, QueueStatus) else from_status,
            to_status=to_status.value if isinstance(to_status, QueueStatus) else to_status,
            attempt_count=entry.attempt_count,
            actor=actor,
            duration_ms=duration_ms,
        )
        if classification is not None:
            ev.response_code = classification.raw_code
            ev.http_status = classification.http_status or None
            if classification.outcome != Outcome.SUCCESS:
                ev.error_code = classification.category
                ev.error_message = classification.message
        db.add(ev)
        return ev

    def _transition(self, db: Session, entry: FiscalQueueEntry, target: QueueStatus,
                    actor: str = "system", classification: Optional[Classification] = None,
                    duration_ms: Optional[int] = None):
        current = QueueStatus(entry.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        entry.status = target.value
        self._append_event(db, entry, current, target, actor, classification, duration_ms)

    # ------------------------------------------
    # Enqueue
    # ------------------------------------------

    def enqueue(self, db: Session, record, actor: str = "api",
                branch_id: Optional[str] = None) -> Tuple[FiscalQueueEntry, bool]:
        """
        Sign `record` and persist it as a pending entry.
        Idempotent per logical submission (device, kind, record id, operation):
        a repeat returns the existing entry. A refund of a sent sale is a new entry.
        """
        profile = self.profile
        kind = QueueKind(record.kind).value

        existing = (
            db.query(FiscalQueueEntry)
            .filter(
                FiscalQueueEntry.device_id == profile.device_id,
                FiscalQueueEntry.kind == kind,
                FiscalQueueEntry.id_trans == record.record_id,
                FiscalQueueEntry.operation == record.operation,
            )
            .first()
        )
        if existing:
            logger.info(
                f"Enqueue {kind} {record.record_id} ({record.operation}): "
                f"already queued as #{existing.id} ({existing.status})"
            )
            return existing, False

        signer = profile.signer
        unsigned = canonicalize(record.to_payload(include_signature=False))
        signed = record.with_signature(signer.sign(unsigned))
        body = canonicalize(signed.to_payload())

        entry = FiscalQueueEntry(
            kind=kind,
            id_trans=signed.record_id,
            operation=signed.operation,
            device_id=profile.device_id,
            branch_id=branch_id or profile.branch_id or None,
            payload=body,
            signature=signed.signature,
            algorithm=signer.algorithm.value,
            payload_hash=payload_hash(body),
            idempotency_key=generate_idempotency_key(
                profile.environment, profile.device_id, signed.record_id,
                signed.timestamp, signed.amount, signed.operation,
            ),
            status=QueueStatus.PENDING.value,
            attempt_count=0,
            max_attempts=profile.max_attempts,
            next_attempt_at=now_utc(),
        )
        db.add(entry)
        db.flush()
        self._append_event(db, entry, None, QueueStatus.PENDING, actor)
        db.flush()

        logger.info(f"Enqueued {kind} {entry.id_trans} ({entry.operation}) as #{entry.id} (device {entry.device_id})")
        return entry, True

    def enqueue_order(self, db: Session, order, actor: str = "api") -> EnqueueResult:
        """Map, validate, sign, persist. Validation errors propagate and nothing is stored."""
        result = map_order(order, self.profile.utc_offset_hours)
        errors = validate_transaction(result.record)
        if errors:
            raise ValidationError("; ".join(errors))
        branch_id = order.get("branch_id") if isinstance(order, dict) else getattr(order, "branch_id", None)
        entry, created = self.enqueue(db, result.record, actor=actor, branch_id=branch_id)
        return EnqueueResult(entry=entry, created=created, warnings=result.warnings)

    def enqueue_closing(self, db: Session, closing, actor: str = "api") -> EnqueueResult:
        result = map_closing(closing)
        entry, created = self.enqueue(db, result.record, actor=actor, branch_id=result.record.branch_ref)
        return EnqueueResult(entry=entry, created=created, warnings=result.warnings)

    # ------------------------------------------
    # Claim (lease)
    # ------------------------------------------

    def claim_due(self, db: Session, owner: str, limit: int = 20,
                  now: Optional[datetime] = None) -> List[FiscalQueueEntry]:
        """
        Move due pending/failed entries to sending under a lease held by `owner`.
        At most one sending entry per device; devices with an open circuit are skipped.
        """
        now = now or now_utc()
        lease_until = now + timedelta(seconds=self.profile.lease_seconds)
        skip_devices = self.breaker.open_devices(db, now)
        busy = {
            row[0] for row in
            db.query(FiscalQueueEntry.device_id)
            .filter(FiscalQueueEntry.status == QueueStatus.SENDING.value)
            .distinct()
            .all()
        }
        skip_devices |= busy

        candidates = (
            db.query(FiscalQueueEntry)
            .filter(
                FiscalQueueEntry.status.in_(CLAIMABLE),
                or_(FiscalQueueEntry.next_attempt_at.is_(None), FiscalQueueEntry.next_attempt_at <= now),
            )
            .order_by(FiscalQueueEntry.next_attempt_at, FiscalQueueEntry.id)
            .limit(limit * 5)
            .all()
        )

        in_flight = aliased(FiscalQueueEntry)
        claimed = []
        for entry in candidates:
            if len(claimed) >= limit:
                break
            if entry.device_id in skip_devices:
                continue

            observed = entry.status
            rows = (
                db.query(FiscalQueueEntry)
                .filter(
                    FiscalQueueEntry.id == entry.id,
                    FiscalQueueEntry.status == observed,
                    ~exists().where(and_(
                        in_flight.device_id == entry.device_id,
                        in_flight.status == QueueStatus.SENDING.value,
                    )),
                )
                .update(
                    {
                        FiscalQueueEntry.status: QueueStatus.SENDING.value,
                        FiscalQueueEntry.lease_owner: owner,
                        FiscalQueueEntry.lease_expires_at: lease_until,
                    },
                    synchronize_session=False,
                )
            )
            if rows != 1:
                continue

            db.refresh(entry)
            self._append_event(db, entry, observed, QueueStatus.SENDING, actor=owner)
            skip_devices.add(entry.device_id)
            claimed.append(entry)

        db.flush()
        if claimed:
            logger.info(f"Claimed {len(claimed)} entr{'y' if len(claimed) == 1 else 'ies'} for {owner}")
        return claimed

    # ------------------------------------------
    # Settle
    # ------------------------------------------

    def record_outcome(self, db: Session, entry: FiscalQueueEntry, response: SrmResponse,
                       owner: Optional[str] = None,
                       now: Optional[datetime] = None,
                       deferred_alerts: Optional[List[Callable[[], Any]]] = None) -> Optional[Classification]:
        """
        Apply one submission result to a sending entry.
        Returns None when the lease is no longer held by `owner` (result discarded).

        Operator alerts fire immediately unless `deferred_alerts` is given, in
        which case they are appended to it for the caller to fire after commit.
        """
        now = now or now_utc()
        if entry.status != QueueStatus.SENDING.value:
            raise InvalidTransitionError(entry.status, "settled")
        if owner is not None and entry.lease_owner != owner:
            logger.warning(f"Entry #{entry.id}: lease lost by {owner}, result discarded")
            return None

        result = classify(response)
        actor = owner or entry.lease_owner or "system"
        entry.lease_owner = None
        entry.lease_expires_at = None

        if result.outcome == Outcome.SUCCESS:
            entry.sent_at = now
            entry.last_error = None
            entry.next_attempt_at = None
            self._transition(db, entry, QueueStatus.SENT, actor, result, response.duration_ms)
            self._store_receipt(db, entry, response)
            self.breaker.record_success(db, entry.device_id)
            logger.info(f"Entry #{entry.id} ({entry.id_trans}) sent")
            return result

        entry.attempt_count = (entry.attempt_count or 0) + 1
        entry.last_error = result.as_error()
        alerts = []

        if result.outcome == Outcome.TRANSIENT and entry.attempt_count < entry.max_attempts:
            delay = compute_backoff(
                entry.attempt_count, self.profile.retry_base_delay,
                self.profile.retry_max_delay, self.profile.retry_jitter,
            )
            entry.next_attempt_at = now + timedelta(seconds=delay)
            self._transition(db, entry, QueueStatus.FAILED, actor, result, response.duration_ms)
            logger.warning(
                f"Entry #{entry.id} ({entry.id_trans}) transient failure {result.raw_code or result.category}, "
                f"attempt {entry.attempt_count}/{entry.max_attempts}, retry in {int(delay)}s"
            )
        else:
            entry.next_attempt_at = None
            self._transition(db, entry, QueueStatus.FAILED_PERMANENT, actor, result, response.duration_ms)
            alerts.append(partial(self.alerts.permanent_failure, AlertSubject.of(entry), dict(entry.last_error)))

        if result.outcome == Outcome.TRANSIENT:
            if self.breaker.record_failure(db, entry.device_id, now):
                alerts.append(partial(self.alerts.circuit_opened, entry.device_id, self.breaker.cooldown))

        if deferred_alerts is None:
            for alert in alerts:
                alert()
        else:
            deferred_alerts.extend(alerts)
        return result

    def _store_receipt(self, db: Session, entry: FiscalQueueEntry, response: SrmResponse):
        conf = response.confirmation or {}
        db.add(FiscalReceipt(
            entry_id=entry.id,
            id_trans=conf.get("idTrans") or entry.id_trans,
            id_trans_srm=conf.get("idTransSrm"),
            code_qr=conf.get("codeQR"),
            receipt_url=conf.get("urlRecu"),
            confirmed_at=conf.get("dtConfirmation"),
            response_code=response.code,
            response_body=response.body if isinstance(response.body, dict) else None,
        ))

    def recover_expired_leases(self, db: Session, now: Optional[datetime] = None,
                               deferred_alerts: Optional[List[Callable[[], Any]]] = None) -> int:
        """Sending entries whose lease ran out are settled as a transient timeout."""
        now = now or now_utc()
        stale = (
            db.query(FiscalQueueEntry)
            .filter(
                FiscalQueueEntry.status == QueueStatus.SENDING.value,
                FiscalQueueEntry.lease_expires_at < now,
            )
            .all()
        )
        for entry in stale:
            logger.warning(f"Entry #{entry.id}: lease of {entry.lease_owner} expired, treating as timeout")
            self.record_outcome(
                db, entry,
                SrmResponse(transport_error=TRANSPORT_TIMEOUT, message="Lease expired before a response was recorded"),
                now=now, deferred_alerts=deferred_alerts,
            )
        db.flush()
        return len(stale)

    # ------------------------------------------
    # Operator actions
    # ------------------------------------------

    def get_entry(self, db: Session, entry_id: int) -> FiscalQueueEntry:
        entry = db.get(FiscalQueueEntry, entry_id)
        if not entry:
            raise NotFoundError(f"Queue entry #{entry_id} not found")
        return entry

    def cancel(self, db: Session, entry_id: int, actor: str = "admin") -> FiscalQueueEntry:
        """Only a pending entry (never attempted) can be cancelled."""
        entry = self.get_entry(db, entry_id)
        entry.next_attempt_at = None
        self._transition(db, entry, QueueStatus.CANCELLED, actor)
        db.flush()
        logger.info(f"Entry #{entry.id} cancelled by {actor}")
        return entry

    def requeue(self, db: Session, entry_id: int, actor: str = "admin") -> FiscalQueueEntry:
        """The only way out of failed_permanent: back to pending with a fresh attempt budget."""
        entry = self.get_entry(db, entry_id)
        if entry.status != QueueStatus.FAILED_PERMANENT.value:
            raise InvalidTransitionError(entry.status, QueueStatus.PENDING.value)
        entry.attempt_count = 0
        entry.last_error = None
        entry.next_attempt_at = now_utc()
        self._transition(db, entry, QueueStatus.PENDING, actor)
        db.flush()
        logger.info(f"Entry #{entry.id} requeued by {actor}")
        return entry

    # ------------------------------------------
    # Reporting
    # ------------------------------------------

    def get_stats(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or now_utc()
        counts = dict(
            db.query(FiscalQueueEntry.status, func.count(FiscalQueueEntry.id))
            .group_by(FiscalQueueEntry.status)
            .all()
        )
        stats = {s.value: counts.get(s.value, 0) for s in QueueStatus}
        stats["total"] = sum(counts.values())
        stats["due"] = (
            db.query(func.count(FiscalQueueEntry.id))
            .filter(
                FiscalQueueEntry.status.in_(CLAIMABLE),
                or_(FiscalQueueEntry.next_attempt_at.is_(None), FiscalQueueEntry.next_attempt_at <= now),
            )
            .scalar()
        )
        oldest = (
            db.query(func.min(FiscalQueueEntry.created_at))
            .filter(FiscalQueueEntry.status.in_(CLAIMABLE))
            .scalar()
        )
        stats["oldest_unsent_age_seconds"] = int((now - as_utc(oldest)).total_seconds()) if oldest else None
        return stats

    def history(self, db: Session, entry_id: int) -> List[FiscalQueueEvent]:
        self.get_entry(db, entry_id)
        return (
            db.query(FiscalQueueEvent)
            .filter(FiscalQueueEvent.entry_id == entry_id)
            .order_by(FiscalQueueEvent.id)
            .all()
        )

    def replay(self, db: Session, entry_id: int) -> Dict[str, Any]:
        """
        Rebuild status and attempt count from the event log alone and compare
        with the entry row.
        """
        entry = self.get_entry(db, entry_id)
        status = None
        attempts = 0
        for ev in self.history(db, entry_id):
            if status is not None and ev.from_status != status:
                return {"status": status, "attempt_count": attempts, "consistent": False}
            status = ev.to_status
            attempts = ev.attempt_count
        return {
            "status": status,
            "attempt_count": attempts,
            "consistent": status == entry.status and attempts == entry.attempt_count,
        }


_queue_service: Optional[QueueService] = None


def get_queue_service() -> QueueService:
    """Process-wide service bound to the settings profile. FastAPI dependency."""
    global _queue_service
    if _queue_service is None:
        _queue_service = QueueService(get_profile())
    return _queue_service
