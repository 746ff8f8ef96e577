"""
WEB-SRM HTTP Client
=====================
POSTs a stored canonical body to WEB-SRM and returns a parsed SrmResponse.
Never raises for transport problems: timeouts and connection errors come back
as a response with transport_error set, so the queue can classify them.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from modules.websrm.enums import TRANSPORT_NETWORK_ERROR, TRANSPORT_TIMEOUT
from modules.websrm.headers import build_headers, generate_request_id
from modules.websrm.profile import ComplianceProfile

logger = logging.getLogger("fiscal.websrm.client")

CONFIRMATION_FIELDS = ("idTrans", "idTransSrm", "codeQR", "urlRecu", "dtConfirmation")


@dataclass
class SrmResponse:
    """Result of one WEB-SRM call."""
    http_status: int = 0
    code: Optional[str] = None                      # codRetour
    body: Any = None
    confirmation: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    transport_error: Optional[str] = None           # TIMEOUT / NETWORK_ERROR
    message: Optional[str] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.transport_error is None and 200 <= self.http_status < 300


def parse_response(http_status: int, raw_body: str) -> SrmResponse:
    """Turn an HTTP status and body text into an SrmResponse."""
    resp = SrmResponse(http_status=http_status)
    try:
        body = json.loads(raw_body) if raw_body else None
    except ValueError:
        body = raw_body
    resp.body = body

    if not isinstance(body, dict):
        if isinstance(body, str):
            resp.message = body[:200]
        return resp

    code = body.get("codRetour") or body.get("code") or body.get("errorCode") or body.get("error_code")
    resp.code = str(code) if code is not None else None
    resp.message = body.get("message") or body.get("errorMessage") or body.get("description")

    data = body.get("data") if isinstance(body.get("data"), dict) else body
    resp.confirmation = {k: data[k] for k in CONFIRMATION_FIELDS if data.get(k) is not None}

    errors = body.get("erreurs") or body.get("erreur") or []
    if isinstance(errors, dict):
        errors = [errors]
    resp.errors = [
        {"code": e.get("code"), "message": e.get("message"), "champ": e.get("champ")}
        for e in errors if isinstance(e, dict)
    ]
    if not resp.message and resp.errors:
        resp.message = resp.errors[0].get("message")
    return resp


def generate_idempotency_key(environment: str, device_id: str, record_id: str,
                             timestamp: str, amount: int, operation: str = "") -> str:
    """Stable per logical submission, fixed once at enqueue."""
    raw = f"{environment}|{device_id}|{record_id}|{timestamp}|{amount}"
    if operation:
        raw += f"|{operation}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SrmClient:
    """Thin httpx wrapper bound to one compliance profile."""

    def __init__(self, profile: ComplianceProfile, http: Optional[httpx.Client] = None):
        self.profile = profile
        self._http = http or httpx.Client(timeout=profile.request_timeout)

    def close(self):
        self._http.close()

    def submit(self, kind: str, body: str, signature: str,
               idempotency_key: Optional[str] = None) -> SrmResponse:
        """POST one canonical body. `body` is sent byte-for-byte as stored."""
        url = self.profile.endpoint_url(kind)
        request_id = generate_request_id()
        headers = build_headers(
            certification_code=self.profile.certification_code,
            device_id=self.profile.device_id,
            software_version=self.profile.software_version,
            signature=signature,
            request_id=request_id,
        )
        headers["Content-Type"] = "application/json; charset=utf-8"
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        started = time.monotonic()
        try:
            resp = self._http.post(
                url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self.profile.request_timeout,
            )
            result = parse_response(resp.status_code, resp.text)
        except httpx.TimeoutException:
            logger.warning(f"WEB-SRM {kind} {request_id}: timeout after {self.profile.request_timeout}s")
            result = SrmResponse(
                transport_error=TRANSPORT_TIMEOUT,
                message=f"Request timeout after {self.profile.request_timeout}s",
            )
        except httpx.RequestError as e:
            logger.warning(f"WEB-SRM {kind} {request_id}: network error {type(e).__name__}")
            result = SrmResponse(
                transport_error=TRANSPORT_NETWORK_ERROR,
                message=str(e) or "Network request failed",
            )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"WEB-SRM {kind} {request_id}: HTTP {result.http_status} "
            f"code={result.code or result.transport_error} in {result.duration_ms}ms"
        )
        return result
