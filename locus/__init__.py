"""
Locus: Presence Proofs and Cell-Anchored Objects

A client proves "I was at location L at time T" with a self-signed presence
proof, and attaches creator-signed, content-addressed objects to the
geographic cell that proof falls in. Objects are append-only; a correction
is a new object that supersedes the old one.

Architecture
────────────

    ┌────────────────────────────────────────────────────────────────┐
    │  service.py      scope, credential liveness, rate limit,       │
    │                  error -> (status, body) mapping               │
    ├────────────────────────────────────────────────────────────────┤
    │  ledger.py       anchor / supersede / resolve over ObjectStore │
    │  ratelimit.py    fixed-window counters per project+endpoint    │
    ├────────────────────────────────────────────────────────────────┤
    │  proofs.py       presence proof + object draft verification    │
    │  cells.py        deterministic lat/lng -> cell id              │
    │  schema.py       JSON Schema gate in front of the crypto       │
    ├────────────────────────────────────────────────────────────────┤
    │  signing.py      Ed25519 over SHA-256 digests                  │
    │  canonical.py    canonical JSON bytes + content hashes         │
    └────────────────────────────────────────────────────────────────┘

    Cross-cutting: hardening.py (errors, validators), config.py,
    observability.py (structured logs, audit chain), cli.py.

Usage
─────

    from locus import (
        InMemoryObjectStore, ResolverLedger, build_object_draft,
        build_presence_proof, generate_keypair,
    )

    keys = generate_keypair()
    presence = build_presence_proof(37.7749, -122.4194, 5.0, keys.private_key)
    draft = build_object_draft("note/v1", 25.0, {"text": "hi"}, keys.private_key)

    ledger = ResolverLedger(InMemoryObjectStore())
    row = ledger.anchor("project-1", presence, draft)
    ledger.resolve("project-1", presence).objects   # (row,)
"""

__version__ = "0.3.0"

from locus.canonical import canonical_json_bytes, content_hash, sha256_hex
from locus.cells import cell_id_from_lat_lng
from locus.hardening import (
    AuthenticationError,
    LocusError,
    ObjectNotFoundError,
    RateLimitExceeded,
    ScopeError,
    StorageError,
    ValidationErrors,
    VerificationError,
)
from locus.ledger import (
    InMemoryObjectStore,
    ObjectStore,
    PendingObject,
    ResolveResult,
    ResolverLedger,
    ResolverObject,
)
from locus.proofs import (
    ObjectDraft,
    PresenceProof,
    ProofCheck,
    build_object_draft,
    build_presence_proof,
    check_object_draft,
    check_presence_proof,
    object_draft_hash,
    presence_payload_hash,
    verify_object_draft,
    verify_presence_proof,
)
from locus.signing import KeyPair, generate_keypair, sign_digest, verify_digest

__all__ = [
    "__version__",
    # canonical
    "canonical_json_bytes",
    "content_hash",
    "sha256_hex",
    # cells
    "cell_id_from_lat_lng",
    # errors
    "AuthenticationError",
    "LocusError",
    "ObjectNotFoundError",
    "RateLimitExceeded",
    "ScopeError",
    "StorageError",
    "ValidationErrors",
    "VerificationError",
    # ledger
    "InMemoryObjectStore",
    "ObjectStore",
    "PendingObject",
    "ResolveResult",
    "ResolverLedger",
    "ResolverObject",
    # proofs
    "ObjectDraft",
    "PresenceProof",
    "ProofCheck",
    "build_object_draft",
    "build_presence_proof",
    "check_object_draft",
    "check_presence_proof",
    "object_draft_hash",
    "presence_payload_hash",
    "verify_object_draft",
    "verify_presence_proof",
    # signing
    "KeyPair",
    "generate_keypair",
    "sign_digest",
    "verify_digest",
]
