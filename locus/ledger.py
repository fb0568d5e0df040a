"""
Locus Anchor/Supersede Ledger

Append-only store of resolver objects, bucketed by cell.

    anchor     verified presence + verified draft  ->  new root row
    supersede  ... + existing object_id            ->  new row pointing at it
    resolve    verified presence                   ->  newest rows in its cell

Rows are never updated or deleted; a correction is a new row whose
``supersedes_object_id`` names the row it replaces. Every operation
re-verifies its own inputs, so nothing unverified can reach storage even if a
caller skips the verifiers.

Storage is a collaborator behind the ``ObjectStore`` protocol. Its exceptions
propagate unchanged; the ledger never retries.
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from locus.cells import DEFAULT_RESOLUTION, cell_id_from_lat_lng
from locus.hardening import ObjectNotFoundError, VerificationError, Validators
from locus.observability import AuditLogger, LocusLayer, get_logger, timed_operation
from locus.proofs import (
    ObjectDraft,
    PresenceProof,
    check_object_draft,
    check_presence_proof,
)

logger = get_logger("ledger", LocusLayer.LEDGER)

DEFAULT_RESOLVE_LIMIT = 25
DEFAULT_HISTORY_LIMIT = 100

PUBLIC_FIELDS = (
    "object_id",
    "schema_id",
    "radius_m",
    "payload",
    "cell_id",
    "created_at",
    "parent_object_id",
    "supersedes_object_id",
)


# =============================================================================
# ROWS
# =============================================================================

@dataclass(frozen=True)
class PendingObject:
    """A fully built row, minus the timestamp the store assigns."""
    object_id: str
    project_id: str
    schema_id: str
    radius_m: float
    payload: Any
    payload_hash: str
    creator_public_key: str
    creator_signature: str
    presence: Dict[str, Any]
    cell_id: str
    lat: float
    lng: float
    parent_object_id: Optional[str] = None
    supersedes_object_id: Optional[str] = None


@dataclass(frozen=True)
class ResolverObject:
    """A stored, immutable ledger row."""
    object_id: str
    project_id: str
    schema_id: str
    radius_m: float
    payload: Any
    payload_hash: str
    creator_public_key: str
    creator_signature: str
    presence: Dict[str, Any]
    cell_id: str
    lat: float
    lng: float
    parent_object_id: Optional[str]
    supersedes_object_id: Optional[str]
    created_at: str

    @classmethod
    def from_pending(cls, pending: PendingObject, created_at: str) -> "ResolverObject":
        values = {f.name: getattr(pending, f.name) for f in fields(PendingObject)}
        return cls(created_at=created_at, **values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_public_dict(self) -> Dict[str, Any]:
        """The view returned to API clients."""
        return {name: copy.deepcopy(getattr(self, name)) for name in PUBLIC_FIELDS}


@dataclass(frozen=True)
class ResolveResult:
    cell_id: str
    objects: Tuple[ResolverObject, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": {"cell_id": self.cell_id},
            "objects": [obj.to_public_dict() for obj in self.objects],
        }


# =============================================================================
# STORAGE CONTRACT
# =============================================================================

class ObjectStore(Protocol):
    """
    Storage collaborator for the ledger.

    Implementations assign ``created_at`` on append and must keep it strictly
    increasing, so that "newest first" is well defined. Lookups are always
    scoped to a project: an object in another project does not exist.
    """

    def append(self, pending: PendingObject) -> ResolverObject:
        ...

    def exists(self, project_id: str, object_id: str) -> bool:
        ...

    def query_cell(self, project_id: str, cell_id: str, limit: int) -> List[ResolverObject]:
        """Rows of one cell, ``created_at`` descending, at most ``limit``."""
        ...

    def get(self, project_id: str, object_id: str) -> Optional[ResolverObject]:
        ...


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 UTC with microseconds, e.g. ``2024-05-01T12:00:00.000001Z``."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryObjectStore:
    """
    Thread-safe in-memory object store.

    Used by tests and the CLI. Timestamps come from ``clock`` but are bumped
    by a microsecond whenever the clock has not moved, so two appends never
    share a ``created_at``.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._rows: List[ResolverObject] = []
        self._by_id: Dict[Tuple[str, str], ResolverObject] = {}
        self._last_created: Optional[datetime] = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def append(self, pending: PendingObject) -> ResolverObject:
        with self._lock:
            key = (pending.project_id, pending.object_id)
            if key in self._by_id:
                raise ValueError(f"object_id already stored: {pending.object_id}")
            moment = self._clock()
            if self._last_created is not None and moment <= self._last_created:
                moment = self._last_created + timedelta(microseconds=1)
            self._last_created = moment

            row = ResolverObject.from_pending(pending, format_timestamp(moment))
            self._rows.append(row)
            self._by_id[key] = row
            return row

    def exists(self, project_id: str, object_id: str) -> bool:
        with self._lock:
            return (project_id, object_id) in self._by_id

    def query_cell(self, project_id: str, cell_id: str, limit: int) -> List[ResolverObject]:
        with self._lock:
            matches = [
                row for row in reversed(self._rows)
                if row.project_id == project_id and row.cell_id == cell_id
            ]
        return matches[:limit]

    def get(self, project_id: str, object_id: str) -> Optional[ResolverObject]:
        with self._lock:
            return self._by_id.get((project_id, object_id))


# =============================================================================
# LEDGER
# =============================================================================

PresenceInput = Union[PresenceProof, Mapping[str, Any]]
DraftInput = Union[ObjectDraft, Mapping[str, Any]]


class ResolverLedger:
    """
    Anchor, supersede and resolve over an ``ObjectStore``.

    Wire mappings are schema-validated first (``ValidationErrors``), then
    cryptographically verified (``VerificationError``).
    """

    def __init__(
        self,
        store: ObjectStore,
        resolution: int = DEFAULT_RESOLUTION,
        default_limit: int = DEFAULT_RESOLVE_LIMIT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        audit: Optional[AuditLogger] = None,
    ):
        if default_limit <= 0:
            raise ValueError("default_limit must be positive")
        if history_limit <= default_limit:
            raise ValueError("history_limit must be greater than default_limit")
        self.store = store
        self.resolution = resolution
        self.default_limit = default_limit
        self.history_limit = history_limit
        self.audit = audit or AuditLogger()

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def _verified_presence(self, project_id: str, action: str, presence: PresenceInput) -> PresenceProof:
        proof = presence if isinstance(presence, PresenceProof) else PresenceProof.from_dict(presence)
        result = check_presence_proof(proof)
        if not result.ok:
            self.audit.log(project_id, action, "presence", proof.payload_hash, "rejected", reason=result.reason)
            raise VerificationError("Invalid presence proof", reason=result.reason)
        return proof

    def _verified_draft(self, project_id: str, action: str, draft: DraftInput) -> ObjectDraft:
        obj = draft if isinstance(draft, ObjectDraft) else ObjectDraft.from_dict(draft)
        result = check_object_draft(obj)
        if not result.ok:
            self.audit.log(project_id, action, "draft", obj.schema_id, "rejected", reason=result.reason)
            raise VerificationError("Invalid object draft signature", reason=result.reason)
        return obj

    def cell_for(self, proof: PresenceProof) -> str:
        return cell_id_from_lat_lng(proof.lat, proof.lng, self.resolution)

    def _pending(
        self,
        project_id: str,
        proof: PresenceProof,
        draft: ObjectDraft,
        supersedes: Optional[str] = None,
    ) -> PendingObject:
        return PendingObject(
            object_id=str(uuid.uuid4()),
            project_id=project_id,
            schema_id=draft.schema_id,
            radius_m=draft.radius_m,
            payload=copy.deepcopy(draft.payload),
            payload_hash=draft.content_hash(),
            creator_public_key=draft.creator_public_key,
            creator_signature=draft.creator_signature,
            presence=proof.to_dict(),
            cell_id=self.cell_for(proof),
            lat=proof.lat,
            lng=proof.lng,
            parent_object_id=supersedes,
            supersedes_object_id=supersedes,
        )

    def _append(self, project_id: str, action: str, pending: PendingObject) -> ResolverObject:
        row = self.store.append(pending)
        self.audit.log(
            project_id, action, "object", row.object_id, "success",
            cell_id=row.cell_id,
            payload_hash=row.payload_hash,
            supersedes_object_id=row.supersedes_object_id,
        )
        logger.info(
            f"{action} stored {row.object_id}",
            operation=action,
            project_id=project_id,
            cell_id=row.cell_id,
        )
        return row

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @timed_operation(logger, "anchor")
    def anchor(self, project_id: str, presence: PresenceInput, draft: DraftInput) -> ResolverObject:
        """Store a new root object in the presence proof's cell."""
        proof = self._verified_presence(project_id, "anchor", presence)
        obj = self._verified_draft(project_id, "anchor", draft)
        return self._append(project_id, "anchor", self._pending(project_id, proof, obj))

    @timed_operation(logger, "supersede")
    def supersede(
        self,
        project_id: str,
        presence: PresenceInput,
        target_object_id: str,
        draft: DraftInput,
    ) -> ResolverObject:
        """Store a new object that replaces ``target_object_id``.

        The target is left untouched. It must exist within ``project_id``,
        otherwise ``ObjectNotFoundError`` is raised and nothing is written.
        """
        target = Validators.validate_uuid(target_object_id, "supersedes_object_id")
        target.raise_if_invalid()
        proof = self._verified_presence(project_id, "supersede", presence)
        obj = self._verified_draft(project_id, "supersede", draft)

        target_id = target.sanitized_value
        if not self.store.exists(project_id, target_id):
            self.audit.log(project_id, "supersede", "object", target_id, "not_found")
            raise ObjectNotFoundError(target_id, "supersedes_object_id")

        return self._append(project_id, "supersede", self._pending(project_id, proof, obj, target_id))

    @timed_operation(logger, "resolve")
    def resolve(self, project_id: str, presence: PresenceInput, include_history: bool = False) -> ResolveResult:
        """Objects in the presence proof's cell, newest first."""
        proof = self._verified_presence(project_id, "resolve", presence)
        cell_id = self.cell_for(proof)
        limit = self.history_limit if include_history else self.default_limit
        rows = self.store.query_cell(project_id, cell_id, limit)
        logger.debug("resolved cell", cell_id=cell_id, count=len(rows), limit=limit)
        return ResolveResult(cell_id=cell_id, objects=tuple(rows))

    def lineage(self, project_id: str, object_id: str) -> List[ResolverObject]:
        """Follow supersedes links from ``object_id`` back to its root, newest first."""
        chain: List[ResolverObject] = []
        seen = set()
        current: Optional[str] = object_id
        while current is not None:
            if current in seen:
                raise ValueError(f"supersedes cycle at {current}")
            seen.add(current)
            row = self.store.get(project_id, current)
            if row is None:
                raise ObjectNotFoundError(current)
            chain.append(row)
            current = row.supersedes_object_id
        return chain
