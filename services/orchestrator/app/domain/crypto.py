"""Validator and account key material.

Two signature schemes are supported, mirroring what the node software accepts:

* Ed25519, public key tag ``01``, secret key stored as PKCS#8 ``PRIVATE KEY`` PEM;
* secp256k1, public key tag ``02`` (compressed SEC1 point), secret key stored as SEC1
  ``EC PRIVATE KEY`` PEM.

Keys come either from the operating system CSPRNG or, for reproducible runs, from an
explicit seed expanded with BLAKE2b per key label.
"""
from __future__ import annotations

import enum
import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature

_SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey]


class KeyScheme(enum.Enum):
    ed25519 = "ed25519"
    secp256k1 = "secp256k1"

    @property
    def tag(self) -> str:
        return "01" if self is KeyScheme.ed25519 else "02"


@dataclass(frozen=True, eq=False)
class KeyPair:
    """An asymmetric signing key bound to one node or account identity."""

    owner: str
    scheme: KeyScheme
    _private: PrivateKey = field(repr=False)

    @property
    def public_key_bytes(self) -> bytes:
        public = self._private.public_key()
        if self.scheme is KeyScheme.ed25519:
            return public.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        return public.public_bytes(serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint)

    @property
    def public_key_hex(self) -> str:
        return self.scheme.tag + self.public_key_bytes.hex()

    def secret_key_pem(self) -> str:
        if self.scheme is KeyScheme.ed25519:
            private_format = serialization.PrivateFormat.PKCS8
        else:
            private_format = serialization.PrivateFormat.TraditionalOpenSSL
        return self._private.private_bytes(
            serialization.Encoding.PEM,
            private_format,
            serialization.NoEncryption(),
        ).decode("ascii")

    def sign(self, message: bytes) -> str:
        """Return the tagged hex signature of ``message``."""
        if self.scheme is KeyScheme.ed25519:
            raw = self._private.sign(message)
        else:
            der = self._private.sign(message, ec.ECDSA(hashes.SHA256()))
            r, s = decode_dss_signature(der)
            raw = r.to_bytes(32, "big") + s.to_bytes(32, "big")
        return self.scheme.tag + raw.hex()

    def verify(self, message: bytes, signature_hex: str) -> bool:
        if not signature_hex.startswith(self.scheme.tag):
            return False
        raw = bytes.fromhex(signature_hex[2:])
        public = self._private.public_key()
        try:
            if self.scheme is KeyScheme.ed25519:
                public.verify(raw, message)
            else:
                r = int.from_bytes(raw[:32], "big")
                s = int.from_bytes(raw[32:], "big")
                public.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyPair):
            return NotImplemented
        return self.public_key_hex == other.public_key_hex

    def __hash__(self) -> int:
        return hash(self.public_key_hex)


class KeySource:
    """Entropy for key generation: OS CSPRNG, or a seed expanded per label."""

    def __init__(self, seed: int | None = None) -> None:
        self._seed = seed

    @property
    def deterministic(self) -> bool:
        return self._seed is not None

    def secret_bytes(self, label: str) -> bytes:
        if self._seed is None:
            return secrets.token_bytes(32)
        digest = hashlib.blake2b(f"{self._seed}:{label}".encode("utf-8"), digest_size=32, person=b"testnet-keys")
        return digest.digest()

    def pick_scheme(self, label: str) -> KeyScheme:
        if self._seed is None:
            bit = secrets.randbits(1)
        else:
            bit = hashlib.blake2b(f"{self._seed}:{label}:scheme".encode("utf-8"), digest_size=1).digest()[0] & 1
        return KeyScheme.ed25519 if bit else KeyScheme.secp256k1


def generate_keypair(owner: str, source: KeySource, scheme: KeyScheme | None = None) -> KeyPair:
    """Generate the keypair for ``owner``; ``scheme=None`` lets the source choose one."""
    chosen = scheme or source.pick_scheme(owner)
    material = source.secret_bytes(owner)
    if chosen is KeyScheme.ed25519:
        private: PrivateKey = ed25519.Ed25519PrivateKey.from_private_bytes(material)
    else:
        scalar = int.from_bytes(material, "big") % (_SECP256K1_ORDER - 1) + 1
        private = ec.derive_private_key(scalar, ec.SECP256K1())
    return KeyPair(owner=owner, scheme=chosen, _private=private)


def load_keypair(owner: str, pem: str) -> KeyPair:
    private = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    if isinstance(private, ed25519.Ed25519PrivateKey):
        return KeyPair(owner=owner, scheme=KeyScheme.ed25519, _private=private)
    if isinstance(private, ec.EllipticCurvePrivateKey) and isinstance(private.curve, ec.SECP256K1):
        return KeyPair(owner=owner, scheme=KeyScheme.secp256k1, _private=private)
    raise ValueError(f"Unsupported key type for {owner}: {type(private).__name__}")


def blake2b_hex(payload: bytes) -> str:
    return hashlib.blake2b(payload, digest_size=32).hexdigest()


__all__ = ["KeyPair", "KeyScheme", "KeySource", "generate_keypair", "load_keypair", "blake2b_hex"]
