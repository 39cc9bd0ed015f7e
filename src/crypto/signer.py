"""
Event Signing

Journal entries are signed with Ed25519 so an exported journal can be checked
against the service's published public key.
"""

import base64
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import structlog

logger = structlog.get_logger()


class SignatureAlgorithm(Enum):
    """Supported signature algorithms."""
    ED25519 = "Ed25519"


@dataclass
class SignatureResult:
    """Result of a signing operation."""
    signature: bytes
    signature_b64: str
    algorithm: SignatureAlgorithm
    key_id: str


@dataclass
class VerificationResult:
    """Result of a verification operation."""
    valid: bool
    algorithm: SignatureAlgorithm
    key_id: str
    error: Optional[str] = None


class CryptoSigner(ABC):
    """Abstract base class for cryptographic signers."""

    @property
    @abstractmethod
    def algorithm(self) -> SignatureAlgorithm:
        pass

    @property
    @abstractmethod
    def key_id(self) -> str:
        """Short hash of the public key."""
        pass

    @abstractmethod
    def sign(self, data: bytes) -> SignatureResult:
        pass

    @abstractmethod
    def verify(self, data: bytes, signature: bytes) -> VerificationResult:
        pass

    @abstractmethod
    def get_public_key(self) -> bytes:
        pass

    @abstractmethod
    def get_private_key(self) -> bytes:
        pass

    def verify_b64(self, data: bytes, signature_b64: str) -> VerificationResult:
        """Verify a base64-encoded signature."""
        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except ValueError as e:
            return VerificationResult(
                valid=False,
                algorithm=self.algorithm,
                key_id=self.key_id,
                error=f"Failed to decode signature: {e}",
            )
        return self.verify(data, signature)

    @abstractmethod
    def get_public_key_pem(self) -> str:
        pass


class Ed25519Signer(CryptoSigner):
    """Ed25519 signature implementation using the cryptography library."""

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        from cryptography.hazmat.primitives.asymmetric import ed25519
        from cryptography.hazmat.primitives import serialization

        if private_key_bytes:
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        else:
            self._private_key = ed25519.Ed25519PrivateKey.generate()

        self._public_key = self._private_key.public_key()

        public_bytes = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._key_id = hashlib.sha256(public_bytes).hexdigest()[:16]

    @property
    def algorithm(self) -> SignatureAlgorithm:
        return SignatureAlgorithm.ED25519

    @property
    def key_id(self) -> str:
        return self._key_id

    def sign(self, data: bytes) -> SignatureResult:
        signature = self._private_key.sign(data)
        return SignatureResult(
            signature=signature,
            signature_b64=base64.b64encode(signature).decode("utf-8"),
            algorithm=self.algorithm,
            key_id=self._key_id,
        )

    def verify(self, data: bytes, signature: bytes) -> VerificationResult:
        from cryptography.exceptions import InvalidSignature

        try:
            self._public_key.verify(signature, data)
        except InvalidSignature:
            return VerificationResult(
                valid=False,
                algorithm=self.algorithm,
                key_id=self._key_id,
                error="Invalid signature",
            )
        return VerificationResult(
            valid=True,
            algorithm=self.algorithm,
            key_id=self._key_id,
        )

    def get_public_key(self) -> bytes:
        from cryptography.hazmat.primitives import serialization
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def get_public_key_pem(self) -> str:
        from cryptography.hazmat.primitives import serialization
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    def get_private_key(self) -> bytes:
        from cryptography.hazmat.primitives import serialization
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )


def get_signer(
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519,
    private_key_b64: Optional[str] = None,
) -> CryptoSigner:
    """
    Build a signer, restoring the key from base64 when one is supplied.

    Without a key a fresh one is generated; signatures from a previous process
    then no longer verify, which is logged.
    """
    if algorithm != SignatureAlgorithm.ED25519:
        raise ValueError(f"Unknown algorithm: {algorithm}")

    if private_key_b64:
        return Ed25519Signer(base64.b64decode(private_key_b64))

    logger.warning("ephemeral_signing_key", message="No SIGNING_KEY_B64 set; generated a fresh key")
    return Ed25519Signer()
