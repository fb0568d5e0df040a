"""
Request handling: access checks in order, then verification, then storage,
with every failure mapped to a status code and an ``{"error": ...}`` body.
"""
import uuid

import pytest

from locus.hardening import StorageError
from locus.ledger import InMemoryObjectStore, ResolverLedger
from locus.ratelimit import FixedWindowRateLimiter, RateLimitConfig
from locus.service import AccessContext, ResolverService


class Keys:
    """Credential checker backed by a set of revoked key ids."""

    def __init__(self):
        self.revoked = set()

    def is_active(self, project_id, key_id):
        return key_id not in self.revoked


class ExplodingStore(InMemoryObjectStore):
    def query_cell(self, project_id, cell_id, limit):
        raise RuntimeError("connection reset")


class BrokenStore(InMemoryObjectStore):
    def append(self, pending):
        raise StorageError("write failed: relation resolver_objects does not exist")


@pytest.fixture
def keys():
    return Keys()


@pytest.fixture
def service(keys):
    return ResolverService(ResolverLedger(InMemoryObjectStore()), credentials=keys)


@pytest.fixture
def ctx():
    return AccessContext.create("proj-a", key_id="key-1")


def _anchor_body(presence, draft):
    return {"presence": presence.to_dict(), "objectDraft": draft.to_dict()}


def test_anchor_then_resolve(service, ctx, presence, draft):
    status, body = service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    assert status == 201
    obj = body["object"]
    assert obj["schema_id"] == "note/v1"
    assert obj["payload"] == {"text": "hello"}
    assert "presence" not in obj

    status, body = service.dispatch("resolve", ctx, {"presence": presence.to_dict()})
    assert status == 200
    assert body["query"]["cell_id"] == obj["cell_id"]
    assert [o["object_id"] for o in body["objects"]] == [obj["object_id"]]


def test_supersede_flow(service, ctx, presence, draft):
    _, first = service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    first_id = first["object"]["object_id"]
    status, body = service.dispatch(
        "supersede", ctx,
        {"presence": presence.to_dict(), "objectDraft": draft.to_dict(), "supersedes_object_id": first_id},
    )
    assert status == 201
    assert body["object"]["supersedes_object_id"] == first_id
    assert body["object"]["parent_object_id"] == first_id

    _, resolved = service.dispatch("resolve", ctx, {"presence": presence.to_dict(), "includeHistory": True})
    assert [o["object_id"] for o in resolved["objects"]] == [body["object"]["object_id"], first_id]


def test_supersede_missing_target(service, ctx, presence, draft):
    status, body = service.dispatch(
        "supersede", ctx,
        {"presence": presence.to_dict(), "objectDraft": draft.to_dict(), "supersedes_object_id": str(uuid.uuid4())},
    )
    assert status == 404
    assert body == {"error": "supersedes_object_id not found"}


def test_missing_scope(service, presence, draft):
    ctx = AccessContext.create("proj-a", scopes=["resolve"], key_id="key-1")
    status, body = service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    assert (status, body) == (403, {"error": "Insufficient scope"})


def test_revoked_key_refused_even_with_valid_scope(service, keys, ctx, presence):
    keys.revoked.add("key-1")
    status, body = service.dispatch("resolve", ctx, {"presence": presence.to_dict()})
    assert (status, body) == (401, {"error": "Key revoked"})


def test_rate_limited(keys, ctx, presence):
    limiter = FixedWindowRateLimiter(config=RateLimitConfig(limits={"resolve": 2, "anchor": 1, "supersede": 1}))
    service = ResolverService(ResolverLedger(InMemoryObjectStore()), rate_limiter=limiter, credentials=keys)
    body = {"presence": presence.to_dict()}
    assert service.dispatch("resolve", ctx, body)[0] == 200
    assert service.dispatch("resolve", ctx, body)[0] == 200
    assert service.dispatch("resolve", ctx, body) == (429, {"error": "Rate limit exceeded"})


def test_invalid_presence(service, ctx, presence, draft):
    wire = presence.to_dict()
    wire["lat"] = 0.5
    status, body = service.dispatch("anchor", ctx, {"presence": wire, "objectDraft": draft.to_dict()})
    assert (status, body) == (400, {"error": "Invalid presence proof"})


def test_invalid_draft_signature(service, ctx, presence, draft):
    wire = draft.to_dict()
    wire["radius_m"] = 999
    status, body = service.dispatch("anchor", ctx, {"presence": presence.to_dict(), "objectDraft": wire})
    assert (status, body) == (400, {"error": "Invalid object draft signature"})


def test_malformed_body(service, ctx):
    status, body = service.dispatch("anchor", ctx, {"presence": {"lat": 1}})
    assert status == 400
    assert body["error"].startswith("Validation failed")


def test_non_finite_number_is_malformed(service, ctx, presence):
    wire = presence.to_dict()
    wire["lat"] = float("nan")
    status, body = service.dispatch("resolve", ctx, {"presence": wire})
    assert status == 400
    assert "finite" in body["error"]


def test_unknown_endpoint(service, ctx):
    assert service.dispatch("delete", ctx, {})[0] == 404


def test_unexpected_error_is_internal(keys, ctx, presence):
    service = ResolverService(ResolverLedger(ExplodingStore()), credentials=keys)
    status, body = service.dispatch("resolve", ctx, {"presence": presence.to_dict()})
    assert (status, body) == (500, {"error": "Internal server error"})


def test_storage_error_details_not_leaked(keys, ctx, presence, draft):
    service = ResolverService(ResolverLedger(BrokenStore()), credentials=keys)
    status, body = service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    assert (status, body) == (500, {"error": "Internal server error"})


def test_projects_are_isolated(service, presence, draft):
    a = AccessContext.create("proj-a", key_id="k")
    b = AccessContext.create("proj-b", key_id="k")
    service.dispatch("anchor", a, _anchor_body(presence, draft))
    _, body = service.dispatch("resolve", b, {"presence": presence.to_dict()})
    assert body["objects"] == []


def test_direct_calls_raise(service, ctx):
    from locus.hardening import ValidationErrors

    with pytest.raises(ValidationErrors):
        service.resolve(ctx, {})


def test_unencodable_presence_strings_are_rejected_not_internal(service, ctx, presence, draft):
    wire = presence.to_dict()
    wire["payload_hash"] = "\ud800"
    status, body = service.dispatch("anchor", ctx, {"presence": wire, "objectDraft": draft.to_dict()})
    assert (status, body) == (400, {"error": "Invalid presence proof"})

    wire = presence.to_dict()
    wire["algorithm"] = "\ud800"
    status, body = service.dispatch("anchor", ctx, {"presence": wire, "objectDraft": draft.to_dict()})
    assert status == 400
    assert body["error"].startswith("Validation failed")


def test_deeply_nested_payload_is_malformed(service, ctx, presence, draft):
    nested = []
    for _ in range(5000):
        nested = [nested]
    wire = draft.to_dict()
    wire["payload"] = nested
    status, body = service.dispatch("anchor", ctx, {"presence": presence.to_dict(), "objectDraft": wire})
    assert status == 400
    assert "Nesting" in body["error"]


def test_from_config_applies_rate_limits(monkeypatch, keys, ctx, presence, draft):
    monkeypatch.setenv("LOCUS_RATE_ANCHOR", "1")
    service = ResolverService.from_config(InMemoryObjectStore(), credentials=keys)
    assert service.dispatch("anchor", ctx, _anchor_body(presence, draft))[0] == 201
    assert service.dispatch("anchor", ctx, _anchor_body(presence, draft)) == (429, {"error": "Rate limit exceeded"})


def test_from_config_applies_ledger_settings(monkeypatch, ctx, presence, draft):
    monkeypatch.setenv("LOCUS_CELL_RESOLUTION", "2")
    monkeypatch.setenv("LOCUS_RESOLVE_LIMIT", "1")
    service = ResolverService.from_config(InMemoryObjectStore())
    assert service.ledger.resolution == 2
    assert service.ledger.default_limit == 1

    service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    service.dispatch("anchor", ctx, _anchor_body(presence, draft))
    _, body = service.dispatch("resolve", ctx, {"presence": presence.to_dict()})
    assert body["query"]["cell_id"] == "cell_2_37.770000_-122.420000"
    assert len(body["objects"]) == 1


def test_from_config_rejects_invalid_configuration():
    from locus.config import ConfigValidationError, LocusConfig

    config = LocusConfig()
    config.resolve.default_limit.set(50)
    config.resolve.history_limit.set(40)
    with pytest.raises(ConfigValidationError):
        ResolverService.from_config(InMemoryObjectStore(), config)
