"""Tests for the durable WEB-SRM queue: enqueue, claim, settle, operator actions."""

import json
from datetime import timedelta

import pytest

from common.exceptions import (
    ImmutableRecordError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from common.helpers import as_utc, now_utc
from modules.websrm.canonical import canonicalize, payload_hash
from modules.websrm.circuit_breaker import CircuitBreaker
from modules.websrm.client import SrmResponse
from modules.websrm.enums import Outcome, QueueStatus
from modules.websrm.models import CircuitBreakerState, FiscalQueueEntry, FiscalQueueEvent, FiscalReceipt
from modules.websrm.queue_service import QueueService, compute_backoff

OWNER = "worker-1"


def _success(id_trans="ord-7f3a9c21-0001") -> SrmResponse:
    body = {
        "codRetour": "00",
        "idTrans": id_trans,
        "idTransSrm": f"SRM-{id_trans}",
        "dtConfirmation": "20250106093001",
    }
    return SrmResponse(
        http_status=200, code="00", body=body,
        confirmation={k: v for k, v in body.items() if k != "codRetour"},
    )


def _timeout() -> SrmResponse:
    return SrmResponse(transport_error="TIMEOUT", message="Request timeout after 10.0s")


def _rejected(code="JW00B") -> SrmResponse:
    return SrmResponse(http_status=400, code=code, message="Certification invalide")


def _enqueue(service, db, order):
    result = service.enqueue_order(db, order)
    db.commit()
    return result.entry


def _attempt(service, db, response, now, owner=OWNER):
    claimed = service.claim_due(db, owner, now=now)
    assert len(claimed) == 1
    entry = claimed[0]
    result = service.record_outcome(db, entry, response, owner=owner, now=now)
    db.commit()
    return entry, result


class TestBackoff:
    """min(base * 2^n, cap)."""

    def test_doubles_until_cap(self) -> None:
        delays = [compute_backoff(n, base=60, cap=3600) for n in range(8)]
        assert delays == [60, 120, 240, 480, 960, 1920, 3600, 3600]

    def test_strictly_increasing_below_cap(self) -> None:
        delays = [compute_backoff(n, base=10, cap=10_000) for n in range(1, 10)]
        assert all(a < b for a, b in zip(delays, delays[1:]))

    def test_jitter_bounds(self) -> None:
        assert compute_backoff(1, base=60, cap=3600, jitter=0.25, rng=lambda: 1.0) == 150
        assert compute_backoff(1, base=60, cap=3600, jitter=0.25, rng=lambda: 0.0) == 90
        assert compute_backoff(10, base=60, cap=3600, jitter=0.25, rng=lambda: 1.0) == 3600


class TestEnqueue:
    """Map, sign, persist."""

    def test_creates_pending_entry(self, service, db, sample_order) -> None:
        result = service.enqueue_order(db, sample_order)
        db.commit()
        entry = result.entry

        assert result.created
        assert result.warnings == []
        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempt_count == 0
        assert entry.kind == "transaction"
        assert entry.id_trans == "ord-7f3a9c21-0001"
        assert entry.branch_id == "branch-001"
        assert entry.algorithm == "HMAC-SHA256"
        assert entry.max_attempts == 5
        assert len(entry.idempotency_key) == 64
        assert entry.payload_hash == payload_hash(entry.payload)

    def test_payload_is_canonical_and_signed(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        body = json.loads(entry.payload)

        assert canonicalize(body) == entry.payload
        assert body["signature"] == entry.signature
        assert body["montTot"] == 2300
        unsigned = {k: v for k, v in body.items() if k != "signature"}
        assert service.profile.signer.verify(canonicalize(unsigned), entry.signature)

    def test_enqueue_event(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        events = service.history(db, entry.id)
        assert len(events) == 1
        assert events[0].from_status is None
        assert events[0].to_status == "pending"
        assert events[0].actor == "api"

    def test_repeat_returns_existing(self, service, db, sample_order) -> None:
        first = _enqueue(service, db, sample_order)
        again = service.enqueue_order(db, sample_order)
        db.commit()

        assert not again.created
        assert again.entry.id == first.id
        assert db.query(FiscalQueueEntry).count() == 1
        assert db.query(FiscalQueueEvent).count() == 1

    def test_mapping_warnings_returned(self, service, db, sample_order) -> None:
        sample_order["order_status"] = "weird"
        result = service.enqueue_order(db, sample_order)
        assert len(result.warnings) == 1
        assert json.loads(result.entry.payload)["acti"] == "ENR"

    def test_invalid_order_not_stored(self, service, db, sample_order) -> None:
        sample_order["total_amount"] = 99.00
        with pytest.raises(ValidationError):
            service.enqueue_order(db, sample_order)
        assert db.query(FiscalQueueEntry).count() == 0

    def test_closing(self, service, db, sample_closing) -> None:
        result = service.enqueue_closing(db, sample_closing)
        db.commit()
        body = json.loads(result.entry.payload)

        assert result.entry.kind == "closing"
        assert result.entry.id_trans == "fer-2025-01-06"
        assert body["acti"] == "FER"
        assert body["dtFer"] == "20250106"

    def test_same_id_different_kind_allowed(self, service, db, sample_order, sample_closing) -> None:
        sample_closing["id"] = sample_order["id"]
        _enqueue(service, db, sample_order)
        assert service.enqueue_closing(db, sample_closing).created

    def test_refund_after_sale_is_new_entry(self, service, db, sample_order) -> None:
        sale = _enqueue(service, db, sample_order)
        _attempt(service, db, _success(), now_utc())
        assert sale.status == QueueStatus.SENT.value

        sample_order["order_status"] = "refunded"
        refund = service.enqueue_order(db, sample_order)
        db.commit()

        assert refund.created
        assert refund.entry.id != sale.id
        assert refund.entry.id_trans == sale.id_trans
        assert (sale.operation, refund.entry.operation) == ("ENR/VEN", "ANN/REM")
        assert refund.entry.idempotency_key != sale.idempotency_key
        assert refund.entry.status == QueueStatus.PENDING.value
        body = json.loads(refund.entry.payload)
        assert (body["idTrans"], body["acti"], body["typTrans"]) == (sale.id_trans, "ANN", "REM")

        again = service.enqueue_order(db, sample_order)
        assert not again.created
        assert again.entry.id == refund.entry.id
        assert db.query(FiscalQueueEntry).count() == 2

    def test_cancel_and_refund_are_separate_submissions(self, service, db, sample_order) -> None:
        sample_order["order_status"] = "cancelled"
        cancelled = _enqueue(service, db, sample_order)
        sample_order["order_status"] = "refunded"
        refunded = _enqueue(service, db, sample_order)
        assert (cancelled.operation, refunded.operation) == ("ANN/VEN", "ANN/REM")

    def test_negative_line_item_not_stored(self, service, db, sample_order) -> None:
        sample_order["items"][0].update(menu_item_price=-12.00, item_total=-12.00)
        with pytest.raises(ValidationError) as exc:
            service.enqueue_order(db, sample_order)
        assert "desc[0].prixUnit" in exc.value.message
        assert db.query(FiscalQueueEntry).count() == 0

    def test_negative_closing_not_stored(self, service, db, sample_closing) -> None:
        sample_closing["net_sales"] = -5.00
        with pytest.raises(ValidationError):
            service.enqueue_closing(db, sample_closing)
        assert db.query(FiscalQueueEntry).count() == 0


class TestClaim:
    """Leases, due times and one in-flight entry per device."""

    def test_claim_sets_lease(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        claimed = service.claim_due(db, OWNER, now=now)
        db.commit()

        assert len(claimed) == 1
        entry = claimed[0]
        assert entry.status == QueueStatus.SENDING.value
        assert entry.lease_owner == OWNER
        assert as_utc(entry.lease_expires_at) == now + timedelta(seconds=60)

    def test_one_in_flight_per_device(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        sample_order["id"] = "ord-7f3a9c21-0002"
        _enqueue(service, db, sample_order)

        assert len(service.claim_due(db, OWNER)) == 1
        db.commit()
        assert service.claim_due(db, "worker-2") == []

    def test_not_due_yet(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        _attempt(service, db, _timeout(), now)

        assert service.claim_due(db, OWNER, now=now) == []
        assert len(service.claim_due(db, OWNER, now=now + timedelta(minutes=5))) == 1

    def test_open_circuit_skips_device(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        for _ in range(service.breaker.threshold):
            service.breaker.record_failure(db, service.profile.device_id, now)
        db.commit()

        assert service.claim_due(db, OWNER, now=now) == []
        assert len(service.claim_due(db, OWNER, now=now + timedelta(seconds=61))) == 1

    def test_terminal_entries_never_claimed(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        service.cancel(db, entry.id)
        db.commit()
        assert service.claim_due(db, OWNER, now=now_utc() + timedelta(days=1)) == []


class TestRecordOutcome:
    """Settling a sending entry."""

    def test_success(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        entry, result = _attempt(service, db, _success(), now_utc())

        assert result.outcome == Outcome.SUCCESS
        assert entry.status == QueueStatus.SENT.value
        assert entry.attempt_count == 0
        assert entry.sent_at is not None
        assert entry.lease_owner is None
        assert entry.last_error is None

        receipt = db.query(FiscalReceipt).filter_by(entry_id=entry.id).one()
        assert receipt.id_trans_srm == "SRM-ord-7f3a9c21-0001"
        assert receipt.confirmation()["dtConfirmation"] == "20250106093001"

    def test_transient_schedules_retry(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        entry, result = _attempt(service, db, _timeout(), now)

        assert result.outcome == Outcome.TRANSIENT
        assert entry.status == QueueStatus.FAILED.value
        assert entry.attempt_count == 1
        assert entry.last_error["code"] == "TIMEOUT"
        assert as_utc(entry.next_attempt_at) == now + timedelta(seconds=120)

    def test_timeout_then_success(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        _attempt(service, db, _timeout(), now)
        entry, _ = _attempt(service, db, _success(), now + timedelta(hours=1))

        assert entry.status == QueueStatus.SENT.value
        assert entry.attempt_count == 1

    def test_transient_until_exhausted(self, service, db, alerts, sample_order) -> None:
        original = _enqueue(service, db, sample_order)
        payload, key = original.payload, original.idempotency_key
        now = now_utc()
        delays = []

        for i in range(5):
            at = now + timedelta(hours=2 * i)
            entry, _ = _attempt(service, db, SrmResponse(http_status=503, message="down"), at)
            if entry.status == QueueStatus.FAILED.value:
                delays.append((as_utc(entry.next_attempt_at) - at).total_seconds())

        assert entry.status == QueueStatus.FAILED_PERMANENT.value
        assert entry.attempt_count == 5
        assert entry.next_attempt_at is None
        assert delays == [120, 240, 480, 960]
        assert entry.payload == payload
        assert entry.idempotency_key == key
        assert alerts.permanent == [(entry.id, entry.last_error)]

    def test_permanent_on_first_attempt(self, service, db, alerts, sample_order) -> None:
        _enqueue(service, db, sample_order)
        entry, result = _attempt(service, db, _rejected("JW00B"), now_utc())

        assert result.outcome == Outcome.PERMANENT
        assert entry.status == QueueStatus.FAILED_PERMANENT.value
        assert entry.attempt_count == 1
        assert entry.id_trans == "ord-7f3a9c21-0001"
        assert json.loads(entry.payload)["idTrans"] == "ord-7f3a9c21-0001"
        assert entry.last_error["code"] == "JW00B"
        assert entry.last_error["category"] == "INVALID_CERTIFICATION"
        assert len(alerts.permanent) == 1
        assert db.get(CircuitBreakerState, entry.device_id) is None

    def test_deferred_alerts_wait_for_caller(self, service, db, alerts, sample_order) -> None:
        _enqueue(service, db, sample_order)
        [entry] = service.claim_due(db, OWNER, now=now_utc())
        pending = []
        service.record_outcome(db, entry, _rejected("JW00C"), owner=OWNER, deferred_alerts=pending)

        assert entry.status == QueueStatus.FAILED_PERMANENT.value
        assert alerts.permanent == []
        assert len(pending) == 1
        entry_id, error = entry.id, dict(entry.last_error)

        db.commit()
        db.close()
        pending[0]()
        assert alerts.permanent == [(entry_id, error)]

    def test_lease_lost_discards_result(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        entry = service.claim_due(db, OWNER)[0]
        db.commit()

        assert service.record_outcome(db, entry, _success(), owner="worker-2") is None
        db.commit()
        assert entry.status == QueueStatus.SENDING.value
        assert db.query(FiscalReceipt).count() == 0

    def test_only_sending_entries_settle(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        with pytest.raises(InvalidTransitionError):
            service.record_outcome(db, entry, _success())

    def test_events_carry_response_details(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        _attempt(service, db, _rejected("JW00B"), now_utc())
        last = service.history(db, entry.id)[-1]

        assert (last.from_status, last.to_status) == ("sending", "failed_permanent")
        assert last.response_code == "JW00B"
        assert last.http_status == 400
        assert last.error_code == "INVALID_CERTIFICATION"
        assert last.attempt_count == 1
        assert last.actor == OWNER


class TestCircuitBreaker:
    """Consecutive transient failures per device."""

    def test_opens_after_threshold(self, db, profile, alerts, sample_order) -> None:
        service = QueueService(profile, breaker=CircuitBreaker(threshold=2, cooldown=300), alerts=alerts)
        _enqueue(service, db, sample_order)
        now = now_utc()

        _attempt(service, db, _timeout(), now)
        assert alerts.circuits == []
        _attempt(service, db, _timeout(), now + timedelta(hours=1))
        assert alerts.circuits == [profile.device_id]
        assert service.breaker.is_open(db, profile.device_id, now + timedelta(hours=1, seconds=10))

    def test_permanent_failures_do_not_count(self, db, profile, alerts, sample_order) -> None:
        service = QueueService(profile, breaker=CircuitBreaker(threshold=1, cooldown=300), alerts=alerts)
        _enqueue(service, db, sample_order)
        _attempt(service, db, _rejected("02"), now_utc())
        assert alerts.circuits == []

    def test_success_resets(self, db, profile, alerts, sample_order) -> None:
        service = QueueService(profile, breaker=CircuitBreaker(threshold=3, cooldown=300), alerts=alerts)
        _enqueue(service, db, sample_order)
        now = now_utc()
        _attempt(service, db, _timeout(), now)
        _attempt(service, db, _success(), now + timedelta(hours=1))

        state = db.get(CircuitBreakerState, profile.device_id)
        assert state.consecutive_failures == 0
        assert state.open_until is None


class TestLeaseRecovery:
    """Expired leases settle as a transient timeout."""

    def test_expired_lease(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        service.claim_due(db, OWNER, now=now)
        db.commit()

        assert service.recover_expired_leases(db, now + timedelta(seconds=30)) == 0
        assert service.recover_expired_leases(db, now + timedelta(seconds=61)) == 1
        db.commit()

        entry = db.query(FiscalQueueEntry).one()
        assert entry.status == QueueStatus.FAILED.value
        assert entry.attempt_count == 1
        assert entry.last_error["code"] == "TIMEOUT"
        assert entry.lease_owner is None

    def test_late_result_after_recovery_rejected(self, service, db, sample_order) -> None:
        _enqueue(service, db, sample_order)
        now = now_utc()
        entry = service.claim_due(db, OWNER, now=now)[0]
        service.recover_expired_leases(db, now + timedelta(minutes=5))
        db.commit()

        with pytest.raises(InvalidTransitionError):
            service.record_outcome(db, entry, _success(), owner=OWNER)


class TestOperatorActions:
    """cancel / requeue / get_entry."""

    def test_cancel_pending(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        service.cancel(db, entry.id, actor="ops")
        db.commit()

        assert entry.status == QueueStatus.CANCELLED.value
        assert service.history(db, entry.id)[-1].actor == "ops"
        with pytest.raises(InvalidTransitionError):
            service.cancel(db, entry.id)

    def test_cancel_after_attempt_rejected(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        _attempt(service, db, _timeout(), now_utc())
        with pytest.raises(InvalidTransitionError) as exc:
            service.cancel(db, entry.id)
        assert exc.value.current == "failed"

    def test_requeue_failed_permanent(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        _attempt(service, db, _rejected(), now_utc())
        service.requeue(db, entry.id)
        db.commit()

        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempt_count == 0
        assert entry.last_error is None
        assert len(service.claim_due(db, OWNER)) == 1

    def test_requeue_only_from_failed_permanent(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        with pytest.raises(InvalidTransitionError):
            service.requeue(db, entry.id)

    def test_sent_is_terminal(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        _attempt(service, db, _success(), now_utc())
        for action in (service.cancel, service.requeue):
            with pytest.raises(InvalidTransitionError):
                action(db, entry.id)

    def test_missing_entry(self, service, db) -> None:
        with pytest.raises(NotFoundError):
            service.get_entry(db, 404)


class TestAppendOnly:
    """Events and signed payloads never change."""

    def test_event_update_rejected(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        event = service.history(db, entry.id)[0]
        event.actor = "someone-else"
        with pytest.raises(ImmutableRecordError):
            db.flush()

    def test_event_delete_rejected(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        db.delete(service.history(db, entry.id)[0])
        with pytest.raises(ImmutableRecordError):
            db.flush()

    def test_entry_delete_rejected(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        db.delete(entry)
        with pytest.raises(ImmutableRecordError):
            db.flush()

    @pytest.mark.parametrize("column,value", [
        ("payload", "{}"),
        ("signature", "forged"),
        ("id_trans", "ord-other"),
        ("idempotency_key", "0" * 64),
        ("operation", "ANN/REM"),
    ])
    def test_signed_columns_immutable(self, service, db, sample_order, column, value) -> None:
        entry = _enqueue(service, db, sample_order)
        setattr(entry, column, value)
        with pytest.raises(ImmutableRecordError):
            db.flush()


class TestReporting:
    """Stats, history and replay."""

    def test_stats(self, service, db, sample_order) -> None:
        first = _enqueue(service, db, sample_order)
        sample_order["id"] = "ord-7f3a9c21-0002"
        _enqueue(service, db, sample_order)
        service.cancel(db, first.id)
        db.commit()

        stats = service.get_stats(db)
        assert stats["pending"] == 1
        assert stats["cancelled"] == 1
        assert stats["sent"] == 0
        assert stats["total"] == 2
        assert stats["due"] == 1
        assert stats["oldest_unsent_age_seconds"] is not None

    def test_empty_stats(self, service, db) -> None:
        stats = service.get_stats(db)
        assert stats["total"] == 0
        assert stats["oldest_unsent_age_seconds"] is None

    def test_replay_matches_projection(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        now = now_utc()
        _attempt(service, db, _timeout(), now)
        _attempt(service, db, _success(), now + timedelta(hours=1))

        statuses = [e.to_status for e in service.history(db, entry.id)]
        assert statuses == ["pending", "sending", "failed", "sending", "sent"]
        assert service.replay(db, entry.id) == {"status": "sent", "attempt_count": 1, "consistent": True}

    def test_replay_after_requeue(self, service, db, sample_order) -> None:
        entry = _enqueue(service, db, sample_order)
        _attempt(service, db, _rejected(), now_utc())
        service.requeue(db, entry.id)
        db.commit()
        assert service.replay(db, entry.id) == {"status": "pending", "attempt_count": 0, "consistent": True}
