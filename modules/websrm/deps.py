"""
WEB-SRM Route Dependencies
============================
X-API-Key authentication and the configured queue service / worker.
"""

import hmac

from fastapi import Depends, Header, HTTPException

from config.settings import ADMIN_API_KEY
from common.exceptions import ConfigurationError, raise_http
from modules.websrm.queue_service import QueueService, get_queue_service
from modules.websrm.worker import QueueWorker, get_worker


def require_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> str:
    """Authenticate callers via X-API-Key header. Disabled (401) while ADMIN_API_KEY is empty."""
    if not ADMIN_API_KEY or not hmac.compare_digest(x_api_key.encode(), ADMIN_API_KEY.encode()):
        raise HTTPException(
            status_code=401,
            detail={"success": False, "error": "Invalid API key"},
        )
    return "api-key"


def get_service() -> QueueService:
    try:
        return get_queue_service()
    except ConfigurationError as e:
        raise_http(e, 503)


def get_dispatch_worker(service: QueueService = Depends(get_service)) -> QueueWorker:
    try:
        return get_worker()
    except ConfigurationError as e:
        raise_http(e, 503)
