"""
WEB-SRM Compliance Profile
============================
Everything needed to talk to WEB-SRM as one device: endpoint, certification,
signing keys, retry policy. Built from config.settings by load_profile() and
validated on first use, so a misconfigured deployment fails loudly instead of
queueing unsigned work.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from config import settings
from common.exceptions import ConfigurationError
from modules.websrm.enums import (
    CLOSING_PATH, DEFAULT_BASE_URLS, TRANSACTION_PATH, Environment, QueueKind,
)
from modules.websrm.formatters import validate_software_version
from modules.websrm.signer import BaseSigner, get_signer

logger = logging.getLogger("fiscal.websrm.profile")


@dataclass
class ComplianceProfile:
    device_id: str
    certification_code: str
    signing_algorithm: str
    environment: str = Environment.DEV.value
    base_url: str = ""
    branch_id: str = ""
    software_version: str = "1.0.0"
    shared_secret: str = ""
    private_key_pem: str = ""
    network_enabled: bool = False
    request_timeout: float = 10.0

    max_attempts: int = 5
    retry_base_delay: int = 60          # seconds
    retry_max_delay: int = 3600         # seconds
    retry_jitter: float = 0.0           # fraction of the delay, 0 = deterministic
    lease_seconds: int = 60

    breaker_threshold: int = 5
    breaker_cooldown: int = 60          # seconds

    utc_offset_hours: int = -5
    receipt_base_url: str = ""

    _signer: Optional[BaseSigner] = field(default=None, init=False, repr=False, compare=False)

    def validate(self) -> "ComplianceProfile":
        """Raises ConfigurationError on the first problem found."""
        try:
            Environment(self.environment)
        except ValueError:
            raise ConfigurationError(f"Unknown WEB-SRM environment: {self.environment!r}")
        if not self.device_id:
            raise ConfigurationError("WEBSRM_DEVICE_ID is not configured")
        if not self.certification_code:
            raise ConfigurationError("WEBSRM_CERTIFICATION_CODE is not configured")
        if not validate_software_version(self.software_version):
            raise ConfigurationError(
                f"Invalid software version {self.software_version!r}, expected X.Y.Z"
            )
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.retry_base_delay <= 0 or self.retry_max_delay < self.retry_base_delay:
            raise ConfigurationError("Retry delays must satisfy 0 < base <= max")
        if not 0 <= self.retry_jitter < 1:
            raise ConfigurationError("retry_jitter must be in [0, 1)")
        self.signer  # builds and checks key material
        return self

    @property
    def signer(self) -> BaseSigner:
        if self._signer is None:
            self._signer = get_signer(
                self.signing_algorithm,
                secret=self.shared_secret,
                private_key=self.private_key_pem,
            )
        return self._signer

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return DEFAULT_BASE_URLS[Environment(self.environment)]

    def endpoint_url(self, kind) -> str:
        path = CLOSING_PATH if QueueKind(kind) == QueueKind.CLOSING else TRANSACTION_PATH
        return f"{self.resolved_base_url}{path}"


def _read_private_key() -> str:
    if settings.WEBSRM_PRIVATE_KEY_PEM:
        # .env files usually carry the PEM on one line with literal \n
        return settings.WEBSRM_PRIVATE_KEY_PEM.replace("\\n", "\n")
    path = settings.WEBSRM_PRIVATE_KEY_PATH
    if not path:
        return ""
    if not os.path.exists(path):
        raise ConfigurationError(f"Private key file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def load_profile() -> ComplianceProfile:
    """Build and validate the profile from environment settings."""
    profile = ComplianceProfile(
        device_id=settings.WEBSRM_DEVICE_ID,
        certification_code=settings.WEBSRM_CERTIFICATION_CODE,
        signing_algorithm=settings.WEBSRM_SIGNING_ALGORITHM,
        environment=settings.WEBSRM_ENV,
        base_url=settings.WEBSRM_BASE_URL,
        branch_id=settings.WEBSRM_BRANCH_ID,
        software_version=settings.WEBSRM_SOFTWARE_VERSION,
        shared_secret=settings.WEBSRM_SHARED_SECRET,
        private_key_pem=_read_private_key(),
        network_enabled=settings.WEBSRM_NETWORK_ENABLED,
        request_timeout=settings.WEBSRM_REQUEST_TIMEOUT,
        max_attempts=settings.WEBSRM_MAX_ATTEMPTS,
        retry_base_delay=settings.WEBSRM_RETRY_BASE_DELAY,
        retry_max_delay=settings.WEBSRM_RETRY_MAX_DELAY,
        retry_jitter=settings.WEBSRM_RETRY_JITTER,
        lease_seconds=settings.WEBSRM_LEASE_SECONDS,
        breaker_threshold=settings.WEBSRM_BREAKER_THRESHOLD,
        breaker_cooldown=settings.WEBSRM_BREAKER_COOLDOWN,
        utc_offset_hours=settings.WEBSRM_UTC_OFFSET_HOURS,
        receipt_base_url=settings.WEBSRM_RECEIPT_BASE_URL,
    )
    profile.validate()
    logger.info(
        f"WEB-SRM profile loaded: env={profile.environment} device={profile.device_id} "
        f"algo={profile.signing_algorithm} network={'on' if profile.network_enabled else 'off'}"
    )
    return profile


_profile: Optional[ComplianceProfile] = None


def get_profile() -> ComplianceProfile:
    """Process-wide profile, loaded lazily. FastAPI dependency."""
    global _profile
    if _profile is None:
        _profile = load_profile()
    return _profile
