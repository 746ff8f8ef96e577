"""
WEB-SRM Module - API Routes (Order Events)
============================================
JSON API used by the order service to hand over finished orders and daily
closings. Enqueue is synchronous; delivery happens in the background.
Auth: X-API-Key header.

Endpoints:
  POST /api/websrm/orders     - Map, sign and enqueue one order
  POST /api/websrm/closings   - Map, sign and enqueue one daily closing
"""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from config.database import get_db
from common.exceptions import CanonicalizationError, ConfigurationError, ValidationError, raise_http
from modules.websrm.deps import get_service, require_api_key
from modules.websrm.queue_service import EnqueueResult, QueueService
from modules.websrm.schemas import ClosingPayload, OrderPayload

logger = logging.getLogger("fiscal.websrm.api")

router = APIRouter(prefix="/api/websrm", tags=["websrm"], dependencies=[Depends(require_api_key)])


def _enqueue_response(result: EnqueueResult, response: Response) -> dict:
    response.status_code = 201 if result.created else 200
    entry = result.entry
    return {
        "success": True,
        "entry_id": entry.id,
        "id_trans": entry.id_trans,
        "status": entry.status,
        "created": result.created,
        "warnings": [str(w) for w in result.warnings],
    }


def _run_enqueue(db: Session, action):
    try:
        result = action()
        db.commit()
        return result
    except ValidationError as e:
        db.rollback()
        raise_http(e, 422)
    except (ConfigurationError, CanonicalizationError) as e:
        db.rollback()
        logger.error(f"Enqueue failed: {e.message}")
        raise_http(e, 503)
    except Exception:
        db.rollback()
        raise


# ==========================================
# POST /api/websrm/orders
# ==========================================

@router.post("/orders", status_code=201)
async def enqueue_order(
    body: OrderPayload,
    response: Response,
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    """Queue one completed/cancelled/refunded order for WEB-SRM."""
    result = _run_enqueue(db, lambda: service.enqueue_order(db, body, actor="api"))
    return _enqueue_response(result, response)


# ==========================================
# POST /api/websrm/closings
# ==========================================

@router.post("/closings", status_code=201)
async def enqueue_closing(
    body: ClosingPayload,
    response: Response,
    db: Session = Depends(get_db),
    service: QueueService = Depends(get_service),
):
    """Queue one daily closing (FER) for WEB-SRM."""
    result = _run_enqueue(db, lambda: service.enqueue_closing(db, body, actor="api"))
    return _enqueue_response(result, response)
