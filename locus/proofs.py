"""Presence proofs and object drafts.

A presence proof is self-certifying: the signer's public key travels inside
the proof and is itself part of the hashed payload. Verification of either
object recomputes the content hash from the fields, so a client-sent hash is
never trusted on its own:

    presence:  payload_hash == H({lat, lng, accuracy_m, timestamp_ms, nonce, signer_public_key})
               signature    verifies over payload_hash with signer_public_key
    draft:     creator_signature verifies over
               H({schema_id, radius_m, payload, creator_public_key}) with creator_public_key

where H is SHA-256 over the canonical JSON encoding. The verifiers return a
result instead of raising, whatever the input looks like.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from locus.canonical import content_hash
from locus.hardening import secure_compare_str
from locus.observability import LocusLayer, get_logger
from locus.schema import OBJECT_DRAFT, PRESENCE_PROOF, require_valid
from locus.signing import (
    ALGORITHM,
    public_key_from_private,
    sign_payload_hash,
    verify_payload_hash,
)

logger = get_logger("proofs", LocusLayer.PROOFS)

PRESENCE_PAYLOAD_FIELDS = ("lat", "lng", "accuracy_m", "timestamp_ms", "nonce", "signer_public_key")
DRAFT_PAYLOAD_FIELDS = ("schema_id", "radius_m", "payload", "creator_public_key")

PrivateKeyLike = Union[str, Ed25519PrivateKey]


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PresenceProof:
    algorithm: str
    signer_public_key: str
    payload_hash: str
    signature: str
    lat: float
    lng: float
    accuracy_m: float
    timestamp_ms: int
    nonce: str

    @classmethod
    def from_dict(cls, data: Any) -> "PresenceProof":
        """Build from wire JSON; raises ``ValidationErrors`` for malformed input."""
        require_valid(data, PRESENCE_PROOF)
        return cls(**{name: data[name] for name in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def signable_payload(self) -> Dict[str, Any]:
        return presence_payload(self.to_dict())


@dataclass(frozen=True)
class ObjectDraft:
    schema_id: str
    radius_m: float
    payload: Any
    creator_public_key: str
    creator_signature: str

    @classmethod
    def from_dict(cls, data: Any) -> "ObjectDraft":
        """Build from wire JSON; raises ``ValidationErrors`` for malformed input."""
        require_valid(data, OBJECT_DRAFT)
        return cls(
            schema_id=data["schema_id"],
            radius_m=data["radius_m"],
            payload=data.get("payload"),
            creator_public_key=data["creator_public_key"],
            creator_signature=data["creator_signature"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def signable_payload(self) -> Dict[str, Any]:
        return draft_payload(self.to_dict())

    def content_hash(self) -> str:
        return object_draft_hash(self.signable_payload())


@dataclass(frozen=True)
class ProofCheck:
    """Outcome of verifying one proof or draft."""
    subject: str
    ok: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.ok


# ---------------------------------------------------------------------------
# Content hashes
# ---------------------------------------------------------------------------


def presence_payload(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """The signable part of a presence proof; absent fields become null."""
    return {name: fields.get(name) for name in PRESENCE_PAYLOAD_FIELDS}


def draft_payload(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """The signable part of an object draft; absent fields become null."""
    return {name: fields.get(name) for name in DRAFT_PAYLOAD_FIELDS}


def presence_payload_hash(fields: Mapping[str, Any]) -> str:
    return content_hash(presence_payload(fields))


def object_draft_hash(fields: Mapping[str, Any]) -> str:
    return content_hash(draft_payload(fields))


def _as_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, (PresenceProof, ObjectDraft)):
        return value.to_dict()
    if isinstance(value, Mapping):
        return value
    return None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def check_presence_proof(proof: Union[PresenceProof, Mapping[str, Any]]) -> ProofCheck:
    """Verify a presence proof end to end: algorithm, recomputed hash, signature."""
    fields = _as_mapping(proof)
    if fields is None:
        return ProofCheck("presence", False, "presence proof must be an object")

    algorithm = fields.get("algorithm")
    if not isinstance(algorithm, str) or not secure_compare_str(algorithm, ALGORITHM):
        return ProofCheck("presence", False, f"Unsupported algorithm: {algorithm!r} (expected {ALGORITHM})")

    try:
        recomputed = presence_payload_hash(fields)
    except (ValueError, RecursionError) as ex:
        return ProofCheck("presence", False, f"payload cannot be canonicalized: {ex}")

    claimed = fields.get("payload_hash")
    if not isinstance(claimed, str) or not secure_compare_str(recomputed, claimed):
        return ProofCheck("presence", False, "payload_hash does not match the proof fields")

    if not verify_payload_hash(claimed, fields.get("signature"), fields.get("signer_public_key")):
        return ProofCheck("presence", False, "signature does not verify against signer_public_key")

    return ProofCheck("presence", True)


def verify_presence_proof(proof: Union[PresenceProof, Mapping[str, Any]]) -> bool:
    result = check_presence_proof(proof)
    if not result.ok:
        logger.debug("presence proof rejected", reason=result.reason)
    return result.ok


def check_object_draft(draft: Union[ObjectDraft, Mapping[str, Any]]) -> ProofCheck:
    """Verify an object draft: the hash is always recomputed, then the signature checked."""
    fields = _as_mapping(draft)
    if fields is None:
        return ProofCheck("objectDraft", False, "object draft must be an object")

    try:
        payload_hash = object_draft_hash(fields)
    except (ValueError, RecursionError) as ex:
        return ProofCheck("objectDraft", False, f"draft cannot be canonicalized: {ex}")

    if not verify_payload_hash(payload_hash, fields.get("creator_signature"), fields.get("creator_public_key")):
        return ProofCheck("objectDraft", False, "creator_signature does not verify against creator_public_key")

    return ProofCheck("objectDraft", True)


def verify_object_draft(draft: Union[ObjectDraft, Mapping[str, Any]]) -> bool:
    result = check_object_draft(draft)
    if not result.ok:
        logger.debug("object draft rejected", reason=result.reason)
    return result.ok


# ---------------------------------------------------------------------------
# Client-side construction
# ---------------------------------------------------------------------------


def new_nonce() -> str:
    return secrets.token_hex(16)


def build_presence_proof(
    lat: float,
    lng: float,
    accuracy_m: float,
    private_key: PrivateKeyLike,
    public_key: Optional[str] = None,
    timestamp_ms: Optional[int] = None,
    nonce: Optional[str] = None,
) -> PresenceProof:
    """Create a signed presence proof.

    ``public_key`` defaults to the SPKI encoding derived from ``private_key``;
    pass it explicitly to embed a raw 32-byte key instead. ``timestamp_ms``
    defaults to now and ``nonce`` to 32 random hex characters.
    """
    signer = public_key or public_key_from_private(private_key)
    fields = {
        "lat": lat,
        "lng": lng,
        "accuracy_m": accuracy_m,
        "timestamp_ms": int(time.time() * 1000) if timestamp_ms is None else timestamp_ms,
        "nonce": new_nonce() if nonce is None else nonce,
        "signer_public_key": signer,
    }
    payload_hash = presence_payload_hash(fields)
    return PresenceProof(
        algorithm=ALGORITHM,
        payload_hash=payload_hash,
        signature=sign_payload_hash(payload_hash, private_key),
        **fields,
    )


def build_object_draft(
    schema_id: str,
    radius_m: float,
    payload: Any,
    private_key: PrivateKeyLike,
    public_key: Optional[str] = None,
) -> ObjectDraft:
    """Create a creator-signed object draft."""
    creator = public_key or public_key_from_private(private_key)
    fields = {
        "schema_id": schema_id,
        "radius_m": radius_m,
        "payload": payload,
        "creator_public_key": creator,
    }
    return ObjectDraft(
        creator_signature=sign_payload_hash(object_draft_hash(fields), private_key),
        **fields,
    )
