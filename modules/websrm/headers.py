"""
WEB-SRM Request Headers
=========================
Authentication and identification headers for every WEB-SRM call.
"""

import secrets
import time
from typing import Dict, Optional

from common.exceptions import ConfigurationError
from modules.websrm.formatters import validate_software_version


def _require(value, name: str):
    if not value or not isinstance(value, str):
        raise ConfigurationError(f"{name} is required and must be a non-empty string")


def build_headers(
    certification_code: str,
    device_id: str,
    software_version: str,
    signature: str,
    request_id: Optional[str] = None,
) -> Dict[str, str]:
    """Raises ConfigurationError for a missing field or a non X.Y.Z version."""
    _require(certification_code, "certification_code")
    _require(device_id, "device_id")
    if not validate_software_version(software_version):
        raise ConfigurationError(
            f"Invalid software_version: {software_version!r}. Must be semver format (X.Y.Z)"
        )
    _require(signature, "signature")

    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Authorization": f"Bearer {certification_code}",
        "X-Device-ID": device_id,
        "X-Software-Version": software_version,
        "X-Signature": signature,
    }
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


def build_certification_request(certification_code: str, device_id: str, software_version: str) -> dict:
    """Body of the device certification call."""
    _require(certification_code, "certification_code")
    _require(device_id, "device_id")
    if not validate_software_version(software_version):
        raise ConfigurationError(f"Invalid software_version: {software_version!r}")
    return {
        "certif": certification_code,
        "idDisp": device_id,
        "versLog": software_version,
    }


def generate_request_id() -> str:
    """req-<epoch ms>-<6 hex chars>"""
    return f"req-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
