"""
Tamper evidence for persisted audit records.

Records are signed over their canonical JSON (sorted keys, compact
separators, ``signature`` excluded). Ed25519 signatures are stored as
``ed25519:<key id>:<hex>``; the checksum fallback as ``sha256:<hex>``.
"""

import base64
import binascii
import hashlib
import json
from typing import Any, Dict, Optional, Protocol

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .exceptions import SigningError

logger = structlog.get_logger(__name__)


def canonical_json(record: Dict[str, Any]) -> bytes:
    """Stable byte form of a record for hashing and signing."""
    body = {key: value for key, value in record.items() if key != "signature"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def content_hash(record: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(record)).hexdigest()


def checksum_signature(record: Dict[str, Any]) -> str:
    return f"sha256:{content_hash(record)}"


class Signer(Protocol):
    key_id: str

    def sign(self, record: Dict[str, Any]) -> str:
        ...

    def verify(self, record: Dict[str, Any], signature: str) -> bool:
        ...


class Ed25519Signer:
    """Ed25519 signer for audit record integrity."""

    def __init__(self, private_key_b64: str = "", key_id: str = "audit-local") -> None:
        self.key_id = key_id
        self._private_key: Optional[Ed25519PrivateKey] = None
        self._public_key: Optional[Ed25519PublicKey] = None
        self._initialize_keys(private_key_b64)

    def _initialize_keys(self, private_key_b64: str) -> None:
        if private_key_b64:
            try:
                private_key_bytes = base64.b64decode(private_key_b64)
                key = serialization.load_pem_private_key(private_key_bytes, password=None)
            except (ValueError, TypeError, binascii.Error) as e:
                raise SigningError("Failed to load signing key", details={"error": str(e)}) from e
            if not isinstance(key, Ed25519PrivateKey):
                raise SigningError("Configured key is not Ed25519")
            self._private_key = key
        else:
            # Ephemeral keypair; signatures only verify within this process
            self._private_key = Ed25519PrivateKey.generate()
            logger.warning("No signing key configured, using ephemeral Ed25519 key", key_id=self.key_id)
        self._public_key = self._private_key.public_key()

    def get_public_key_pem(self) -> str:
        if not self._public_key:
            raise SigningError("Public key not available")
        pem_bytes = self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return pem_bytes.decode("utf-8")

    def sign(self, record: Dict[str, Any]) -> str:
        if not self._private_key:
            raise SigningError("Private key not available for signing")
        try:
            digest = binascii.unhexlify(content_hash(record))
            signature = self._private_key.sign(digest)
        except (TypeError, ValueError) as e:
            raise SigningError("Failed to sign record", details={"error": str(e)}) from e
        return f"ed25519:{self.key_id}:{binascii.hexlify(signature).decode('ascii')}"

    def verify(self, record: Dict[str, Any], signature: str) -> bool:
        """Check an Ed25519 or checksum signature against ``record``."""
        if signature.startswith("sha256:"):
            return signature == checksum_signature(record)

        try:
            scheme, key_id, signature_hex = signature.split(":", 2)
        except ValueError:
            return False
        if scheme != "ed25519" or key_id != self.key_id or not self._public_key:
            return False

        try:
            self._public_key.verify(
                binascii.unhexlify(signature_hex),
                binascii.unhexlify(content_hash(record)),
            )
            return True
        except (InvalidSignature, binascii.Error, ValueError):
            return False
