"""
WEB-SRM Module - Admin Routes
===============================
Operator view of the delivery queue: stats, history, requeue, cancel,
receipt references, manual dispatch. Auth: X-API-Key header.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from config.database import get_db
from common.exceptions import (
    IncompleteResponseError, InvalidTransitionError, NotFoundError, UnsupportedFormatError, raise_http,
)
from modules.websrm.deps import get_dispatch_worker, get_service, require_api_key
from modules.websrm.enums import QueueStatus, ReceiptFormat
from modules.websrm.models import FiscalQueueEntry, FiscalQueueEvent
from modules.websrm.queue_service import QueueService
from modules.websrm.receipt import build_receipt_reference
from modules.websrm.worker import QueueWorker

logger = logging.getLogger("fiscal.websrm.admin")

router = APIRouter(prefix="/admin/websrm", tags=["admin-websrm"], dependencies=[Depends(require_api_key)])


def _iso(dt):
    return dt.isoformat() if dt else None


def _entry_dict(entry: FiscalQueueEntry) -> dict:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "id_trans": entry.id_trans,
        "operation": entry.operation,
        "device_id": entry.device_id,
        "branch_id": entry.branch_id,
        "status": entry.status,
        "attempt_count": entry.attempt_count,
        "max_attempts": entry.max_attempts,
        "next_attempt_at": _iso(entry.next_attempt_at),
        "last_error": entry.last_error,
        "payload_hash": entry.payload_hash,
        "created_at": _iso(entry.created_at),
        "sent_at": _iso(entry.sent_at),
    }


def _event_dict(ev: FiscalQueueEvent) -> dict:
    return {
        "id": ev.id,
        "from_status": ev.from_status,
        "to_status": ev.to_status,
        "attempt_count": ev.attempt_count,
        "response_code": ev.response_code,
        "http_status": ev.http_status,
        "error_code": ev.error_code,
        "error_message": ev.error_message,
        "duration_ms": ev.duration_ms,
        "actor": ev.actor,
        "created_at": _iso(ev.created_at),
    }


def _get_or_404(service: QueueService, db: Session, entry_id: int) -> FiscalQueueEntry:
    try:
        return service.get_entry(db, entry_id)
    except NotFoundError as e:
        raise_http(e, 404)


# ==========================================
# Stats & manual dispatch
# ==========================================

@router.get("/queue/stats")
async def queue_stats(
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    return {"success": True, "stats": service.get_stats(db)}


@router.post("/queue/run")
def queue_run(worker: QueueWorker = Depends(get_dispatch_worker)):
    """Run one dispatch pass now (same as the scheduled job)."""
    summary = worker.run_once()
    return {"success": True, "summary": summary}


# ==========================================
# Single entry
# ==========================================

@router.get("/queue/{entry_id}")
async def queue_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    entry = _get_or_404(service, db, entry_id)
    return {
        "success": True,
        "entry": _entry_dict(entry),
        "events": [_event_dict(ev) for ev in service.history(db, entry_id)],
        "replay": service.replay(db, entry_id),
    }


@router.post("/queue/{entry_id}/requeue")
async def queue_requeue(
    entry_id: int,
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    _get_or_404(service, db, entry_id)
    try:
        entry = service.requeue(db, entry_id, actor="admin")
        db.commit()
    except InvalidTransitionError as e:
        db.rollback()
        raise_http(e, 409)
    return {"success": True, "entry": _entry_dict(entry)}


@router.post("/queue/{entry_id}/cancel")
async def queue_cancel(
    entry_id: int,
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    _get_or_404(service, db, entry_id)
    try:
        entry = service.cancel(db, entry_id, actor="admin")
        db.commit()
    except InvalidTransitionError as e:
        db.rollback()
        raise_http(e, 409)
    return {"success": True, "entry": _entry_dict(entry)}


@router.get("/queue/{entry_id}/receipt")
async def queue_receipt(
    entry_id: int,
    fmt: str = Query(ReceiptFormat.URL.value),
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    """Receipt reference for a sent entry (url / json / compact)."""
    entry = _get_or_404(service, db, entry_id)
    if entry.status != QueueStatus.SENT.value or entry.receipt is None:
        raise HTTPException(409, {"success": False, "error": "Entry has no confirmed receipt"})
    try:
        reference = build_receipt_reference(
            entry.receipt.confirmation(), fmt, base_url=service.profile.receipt_base_url or None,
        )
    except UnsupportedFormatError as e:
        raise_http(e, 400)
    except IncompleteResponseError as e:
        raise_http(e, 409)
    return {"success": True, "format": fmt, "reference": reference}
