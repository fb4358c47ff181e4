"""
Tests for record signing.
"""

import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from auditpipe.core.exceptions import SigningError
from auditpipe.core.signing import Ed25519Signer, canonical_json, checksum_signature


def pem_b64(key) -> str:
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(pem).decode("ascii")


RECORD = {"id": "r1", "eventId": "e1", "entityName": "cidadao", "riskLevel": "CRITICAL"}


class TestCanonicalJson:
    def test_ignores_key_order_and_signature(self) -> None:
        reordered = {"riskLevel": "CRITICAL", "entityName": "cidadao", "eventId": "e1", "id": "r1"}

        assert canonical_json(RECORD) == canonical_json({**reordered, "signature": "x"})

    def test_checksum_signature_format(self) -> None:
        signature = checksum_signature(RECORD)

        assert signature.startswith("sha256:")
        assert len(signature) == len("sha256:") + 64


class TestEd25519Signer:
    """Test signing and verification."""

    def test_sign_and_verify(self) -> None:
        signer = Ed25519Signer(key_id="k1")

        signature = signer.sign(RECORD)

        assert signature.startswith("ed25519:k1:")
        assert signer.verify({**RECORD, "signature": signature}, signature)
        assert not signer.verify({**RECORD, "entityName": "outro"}, signature)

    def test_configured_key_signatures_verify_across_instances(self) -> None:
        key = pem_b64(Ed25519PrivateKey.generate())

        signature = Ed25519Signer(key, "prod").sign(RECORD)

        assert Ed25519Signer(key, "prod").verify(RECORD, signature)
        assert "BEGIN PUBLIC KEY" in Ed25519Signer(key, "prod").get_public_key_pem()

    def test_other_key_id_does_not_verify(self) -> None:
        key = pem_b64(Ed25519PrivateKey.generate())

        signature = Ed25519Signer(key, "prod").sign(RECORD)

        assert not Ed25519Signer(key, "staging").verify(RECORD, signature)
        assert not Ed25519Signer(key, "prod").verify(RECORD, "garbage")

    def test_checksum_signatures_verify(self) -> None:
        signer = Ed25519Signer()

        assert signer.verify(RECORD, checksum_signature(RECORD))
        assert not signer.verify({**RECORD, "id": "r2"}, checksum_signature(RECORD))

    def test_invalid_keys_are_rejected(self) -> None:
        with pytest.raises(SigningError):
            Ed25519Signer(base64.b64encode(b"not a pem").decode("ascii"))

        rsa_key = pem_b64(generate_private_key(public_exponent=65537, key_size=2048))
        with pytest.raises(SigningError):
            Ed25519Signer(rsa_key)
