"""
Message Signature Module

Sign and verify protocol fragments with RSA (SHA-256, PKCS#1 v1.5).
Outbound messages are signed with the bridge's private key; inbound
messages are verified against the portal's public key or certificate.
Signatures travel base64-encoded.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger("ess_bridge.signature")


class SignatureProvider(ABC):
    """Abstract signing boundary"""

    @abstractmethod
    def sign(self, fragment: bytes) -> str:
        """Return the base64 signature of a fragment"""
        pass

    @abstractmethod
    def verify(self, fragment: bytes, signature: str) -> bool:
        """Check a base64 signature against a fragment"""
        pass


def _load_public_key(pem: bytes):
    """Accept either an X.509 certificate or a bare public key in PEM"""
    if b"BEGIN CERTIFICATE" in pem:
        return x509.load_pem_x509_certificate(pem).public_key()
    return serialization.load_pem_public_key(pem)


class RSASignatureProvider(SignatureProvider):
    """SHA256withRSA signatures using the cryptography library"""

    def __init__(self, private_key: Optional[rsa.RSAPrivateKey] = None,
                 peer_public_key: Optional[rsa.RSAPublicKey] = None):
        self._private_key = private_key
        self._peer_public_key = peer_public_key

    @classmethod
    def from_pem(cls, private_key_pem: Optional[bytes] = None,
                 peer_public_pem: Optional[bytes] = None,
                 password: Optional[bytes] = None) -> 'RSASignatureProvider':
        private_key = None
        if private_key_pem:
            private_key = serialization.load_pem_private_key(private_key_pem, password=password)
        peer_key = _load_public_key(peer_public_pem) if peer_public_pem else None
        return cls(private_key, peer_key)

    @classmethod
    def from_files(cls, private_key_path: Optional[Union[str, Path]],
                   peer_certificate_path: Optional[Union[str, Path]]) -> 'RSASignatureProvider':
        private_pem = Path(private_key_path).read_bytes() if private_key_path else None
        peer_pem = Path(peer_certificate_path).read_bytes() if peer_certificate_path else None
        return cls.from_pem(private_pem, peer_pem)

    def sign(self, fragment: bytes) -> str:
        if self._private_key is None:
            raise RuntimeError("No private key configured for signing")
        signature = self._private_key.sign(fragment, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode('ascii')

    def verify(self, fragment: bytes, signature: str) -> bool:
        if self._peer_public_key is None:
            logger.error("No portal public key configured; rejecting signature")
            return False
        try:
            raw = base64.b64decode("".join(signature.split()), validate=True)
        except (binascii.Error, ValueError):
            return False
        try:
            self._peer_public_key.verify(raw, fragment, padding.PKCS1v15(), hashes.SHA256())
            return True
        except InvalidSignature:
            return False
