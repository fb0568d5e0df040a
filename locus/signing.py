"""Ed25519 signing for presence proofs and object drafts.

Profile / invariants:
- one scheme only: Ed25519 (32-byte seeds, 32-byte public keys, 64-byte
  signatures)
- the signed message is the 32-byte SHA-256 digest of the canonical payload,
  never the payload itself and never its hex text
- key material and signatures travel as standard base64; URL-safe input and
  missing padding are tolerated on decode
- public keys are accepted either raw (32 bytes) or wrapped as SPKI DER; the
  distinction is resolved once, in ``decode_public_key``
- verification never raises on malformed input, it returns False
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from locus.observability import LocusLayer, get_logger

ALGORITHM = "ed25519"

ED25519_KEY_LENGTH = 32
ED25519_SIGNATURE_LENGTH = 64

# DER prefix of an Ed25519 SubjectPublicKeyInfo; the raw key follows it.
ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")

logger = get_logger("signing", LocusLayer.SIGNING)


# ---------------------------------------------------------------------------
# Base64
# ---------------------------------------------------------------------------


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding."""
    if not isinstance(value, str):
        raise ValueError(f"Expected base64 string, got {type(value).__name__}")
    normalized = value.replace("-", "+").replace("_", "/")
    pad = "=" * ((4 - len(normalized) % 4) % 4)
    try:
        return base64.b64decode((normalized + pad).encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as ex:
        raise ValueError(f"Invalid base64: {ex}") from ex


# ---------------------------------------------------------------------------
# Key decoding
# ---------------------------------------------------------------------------


class KeyEncoding(Enum):
    """How a public key arrived on the wire."""
    RAW = "raw"
    SPKI = "spki"


@dataclass(frozen=True)
class DecodedPublicKey:
    """A public key after base64 decoding, tagged with its encoding."""
    encoding: KeyEncoding
    data: bytes

    def to_spki(self) -> bytes:
        if self.encoding == KeyEncoding.RAW:
            return ED25519_SPKI_PREFIX + self.data
        return self.data

    def load(self) -> Ed25519PublicKey:
        key = serialization.load_der_public_key(self.to_spki())
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError(f"Not an Ed25519 public key: {type(key).__name__}")
        return key


def decode_public_key(value: str) -> DecodedPublicKey:
    """Decode a base64 public key; 32 bytes means raw, anything else is SPKI DER."""
    data = b64decode(value)
    if len(data) == ED25519_KEY_LENGTH:
        return DecodedPublicKey(KeyEncoding.RAW, data)
    return DecodedPublicKey(KeyEncoding.SPKI, data)


def load_public_key(value: str) -> Ed25519PublicKey:
    return decode_public_key(value).load()


def load_private_key(value: Union[str, Ed25519PrivateKey]) -> Ed25519PrivateKey:
    """Load a private key from base64 PKCS#8 DER or a base64 raw 32-byte seed."""
    if isinstance(value, Ed25519PrivateKey):
        return value
    data = b64decode(value)
    if len(data) == ED25519_KEY_LENGTH:
        return Ed25519PrivateKey.from_private_bytes(data)
    key = serialization.load_der_private_key(data, password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError(f"Not an Ed25519 private key: {type(key).__name__}")
    return key


# ---------------------------------------------------------------------------
# Key generation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str

    def to_dict(self) -> dict:
        return {"public_key": self.public_key, "private_key": self.private_key}


def generate_keypair() -> KeyPair:
    """Generate a new Ed25519 key pair (base64 SPKI DER / base64 PKCS#8 DER)."""
    priv = Ed25519PrivateKey.generate()
    priv_der = priv.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_der = priv.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(public_key=b64encode(pub_der), private_key=b64encode(priv_der))


def raw_public_key(public_key: str) -> str:
    """Return the base64 raw 32-byte form of a public key in either encoding."""
    key = load_public_key(public_key)
    raw = key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return b64encode(raw)


# ---------------------------------------------------------------------------
# Sign / verify
# ---------------------------------------------------------------------------


def sign_digest(digest: bytes, private_key: Union[str, Ed25519PrivateKey]) -> str:
    """Sign digest bytes; returns a base64 signature."""
    return b64encode(load_private_key(private_key).sign(digest))


def verify_digest(digest: bytes, signature: str, public_key: str) -> bool:
    """Verify a base64 signature over digest bytes. Never raises."""
    try:
        sig = b64decode(signature)
        if len(sig) != ED25519_SIGNATURE_LENGTH:
            logger.debug("signature has wrong length", length=len(sig))
            return False
        load_public_key(public_key).verify(sig, digest)
        return True
    except InvalidSignature:
        return False
    except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
        logger.debug("malformed key material", error=str(ex))
        return False


def sign_payload_hash(payload_hash: str, private_key: Union[str, Ed25519PrivateKey]) -> str:
    """Sign the digest bytes behind a hex payload hash."""
    return sign_digest(bytes.fromhex(payload_hash), private_key)


def verify_payload_hash(payload_hash: str, signature: str, public_key: str) -> bool:
    """Verify a signature over the digest bytes behind a hex payload hash. Never raises."""
    try:
        digest = bytes.fromhex(payload_hash)
    except (ValueError, TypeError):
        return False
    return verify_digest(digest, signature, public_key)


def public_key_from_private(private_key: Union[str, Ed25519PrivateKey]) -> str:
    """Base64 SPKI DER public key matching a private key."""
    pub_der = load_private_key(private_key).public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64encode(pub_der)
