"""
WEB-SRM Signers
=================
Each signer implements sign() and verify() over the canonical payload text.
Registry pattern for signer lookup by algorithm.

HMAC-SHA256 : shared secret, hex digest
ECDSA       : P-256 + SHA-256 (ES256), raw r||s, base64 (88 chars)
"""

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Type

from jose import jwk
from jose.exceptions import JWKError

from common.exceptions import ConfigurationError
from modules.websrm.canonical import canonicalize
from modules.websrm.enums import SignatureAlgorithm

logger = logging.getLogger("fiscal.websrm.signer")


class BaseSigner:
    """Abstract signer interface."""
    algorithm: SignatureAlgorithm

    def sign(self, canonical: str) -> str:
        raise NotImplementedError

    def verify(self, canonical: str, signature: str) -> bool:
        raise NotImplementedError


class HmacSha256Signer(BaseSigner):
    algorithm = SignatureAlgorithm.HMAC_SHA256

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("HMAC-SHA256 signing requires a shared secret")
        self._secret = secret.encode("utf-8")

    def sign(self, canonical: str) -> str:
        return hmac.new(self._secret, canonical.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, canonical: str, signature: str) -> bool:
        if not isinstance(signature, str):
            return False
        return hmac.compare_digest(self.sign(canonical), signature)


class EcdsaP256Signer(BaseSigner):
    """
    ES256 signer backed by python-jose.

    The private key is a PEM string (SEC1 or PKCS#8, curve P-256).
    Signatures are the raw 64-byte r||s form, base64 encoded.
    """
    algorithm = SignatureAlgorithm.ECDSA

    def __init__(self, private_key_pem: str):
        if not private_key_pem:
            raise ConfigurationError("ECDSA signing requires a P-256 private key")
        try:
            self._key = jwk.construct(private_key_pem, algorithm="ES256")
        except (JWKError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid ECDSA private key: {e}") from e
        if not self._key.is_public():
            self._public = self._key.public_key()
        else:
            raise ConfigurationError("ECDSA signing requires a private key, got a public key")

    def sign(self, canonical: str) -> str:
        raw = self._key.sign(canonical.encode("utf-8"))
        return base64.b64encode(raw).decode("ascii")

    def verify(self, canonical: str, signature: str) -> bool:
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError, TypeError):
            return False
        return bool(self._public.verify(canonical.encode("utf-8"), raw))

    def public_key_pem(self) -> str:
        pem = self._public.to_pem()
        return pem.decode("ascii") if isinstance(pem, bytes) else pem


# ── Registry ──

_SIGNERS: Dict[SignatureAlgorithm, Type[BaseSigner]] = {
    SignatureAlgorithm.HMAC_SHA256: HmacSha256Signer,
    SignatureAlgorithm.ECDSA: EcdsaP256Signer,
}


def get_signer(
    algorithm,
    secret: Optional[str] = None,
    private_key: Optional[str] = None,
) -> BaseSigner:
    """
    Build the signer for `algorithm` with its key material.
    Raises ConfigurationError when the algorithm is unset or unknown,
    or when its key material is missing.
    """
    if not algorithm:
        raise ConfigurationError("Signing algorithm is not configured")
    try:
        algo = SignatureAlgorithm(algorithm)
    except ValueError:
        raise ConfigurationError(f"Unsupported signing algorithm: {algorithm}")

    signer_cls = _SIGNERS[algo]
    if algo == SignatureAlgorithm.HMAC_SHA256:
        return signer_cls(secret or "")
    return signer_cls(private_key or "")


def sign_payload(payload: Any, signer: BaseSigner) -> tuple:
    """Canonicalize then sign. Returns (canonical, signature)."""
    canonical = canonicalize(payload)
    signature = signer.sign(canonical)
    logger.debug(f"Signed payload with {signer.algorithm.value} ({len(canonical)} bytes)")
    return canonical, signature
