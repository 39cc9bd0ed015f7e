"""
Cryptographic Primitives for ServiceHub

Ed25519 signatures over journal entries.
"""

from .signer import (
    SignatureAlgorithm,
    CryptoSigner,
    Ed25519Signer,
    get_signer,
)

__all__ = [
    "SignatureAlgorithm",
    "CryptoSigner",
    "Ed25519Signer",
    "get_signer",
]
