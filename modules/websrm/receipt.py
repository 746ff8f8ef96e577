"""
WEB-SRM Receipt References
============================
Customer-facing reference (usually rendered as a QR code) built from a
confirmed WEB-SRM response.

    url     → https://websrm.revenuquebec.ca/verify/<idTransSrm>
    json    → {"type":"websrm-receipt","version":"1.0",...}
    compact → SRM|<idTrans>|<idTransSrm>|<dtConfirmation>
"""

import json
from typing import Mapping, Optional
from urllib.parse import urlparse

from config.settings import WEBSRM_RECEIPT_BASE_URL
from common.exceptions import IncompleteResponseError, UnsupportedFormatError
from common.helpers import truncate
from modules.websrm.enums import MAX_QR_LENGTH, ReceiptFormat


def build_receipt_reference(
    confirmation: Mapping,
    fmt=ReceiptFormat.URL,
    base_url: Optional[str] = None,
    include_metadata: bool = False,
) -> str:
    """
    `confirmation` carries the response fields (idTrans, idTransSrm, codeQR,
    dtConfirmation). Raises IncompleteResponseError without idTrans and
    UnsupportedFormatError for an unknown `fmt`.
    """
    if not confirmation or not confirmation.get("idTrans"):
        raise IncompleteResponseError("Invalid WEB-SRM response: missing idTrans")

    try:
        fmt = ReceiptFormat(fmt)
    except ValueError:
        raise UnsupportedFormatError(f"Unsupported receipt format: {fmt}")

    id_trans = confirmation.get("idTrans")
    id_trans_srm = confirmation.get("idTransSrm")
    code_qr = confirmation.get("codeQR")
    confirmed_at = confirmation.get("dtConfirmation")

    if fmt == ReceiptFormat.URL:
        if isinstance(code_qr, str) and code_qr.startswith("http"):
            return code_qr
        base = (base_url or WEBSRM_RECEIPT_BASE_URL).rstrip("/")
        return f"{base}/{id_trans_srm or id_trans}"

    if fmt == ReceiptFormat.JSON:
        descriptor = {
            "type": "websrm-receipt",
            "version": "1.0",
            "transactionId": id_trans,
            "srmId": id_trans_srm,
            "timestamp": confirmed_at,
        }
        descriptor = {k: v for k, v in descriptor.items() if v is not None}
        if include_metadata:
            descriptor["metadata"] = {"source": "fiscal_bridge", "format": "json"}
        return json.dumps(descriptor, separators=(",", ":"))

    return f"SRM|{id_trans}|{id_trans_srm or ''}|{confirmed_at or ''}"


def validate_qr_data(qr_data, max_length: int = MAX_QR_LENGTH) -> bool:
    return isinstance(qr_data, str) and 0 < len(qr_data) <= max_length


def extract_transaction_id(qr_data) -> Optional[str]:
    """Inverse of build_receipt_reference for the three formats. None if unrecognised."""
    if not qr_data or not isinstance(qr_data, str):
        return None

    if qr_data.startswith("http"):
        path = urlparse(qr_data).path
        return path.rstrip("/").split("/")[-1] or None

    if qr_data.startswith("{"):
        try:
            parsed = json.loads(qr_data)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed.get("transactionId") or parsed.get("id")

    if qr_data.startswith("SRM|"):
        parts = qr_data.split("|")
        return parts[1] if len(parts) > 1 and parts[1] else None

    return None


def format_qr_for_display(qr_data, max_length: int = 50) -> str:
    if not qr_data or not isinstance(qr_data, str):
        return ""
    if len(qr_data) <= max_length:
        return qr_data
    return truncate(qr_data, max_length - 3)
