"""
Request-level facade over the ledger.

Everything an HTTP handler would do between "token decoded" and "row
stored", in the order the checks must run:

    scope -> credential still active -> rate limit
          -> schema -> presence proof -> object draft -> target exists -> store

``dispatch`` turns the error taxonomy into ``(status, body)`` pairs so an
outer web framework only has to serialize them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Tuple

from locus.hardening import (
    AuthenticationError,
    LocusError,
    ScopeError,
    ValidationError,
    ValidationErrors,
)
from locus.config import ConfigValidationError, LocusConfig, get_config_manager
from locus.ledger import ObjectStore, ResolverLedger
from locus.observability import (
    LocusLayer,
    get_logger,
    reset_correlation_id,
    generate_correlation_id,
    set_correlation_id,
)
from locus.ratelimit import FixedWindowRateLimiter
from locus.schema import ANCHOR_REQUEST, RESOLVE_REQUEST, SUPERSEDE_REQUEST, require_valid

logger = get_logger("service", LocusLayer.SERVICE)

SCOPES = ("resolve", "anchor", "supersede")


@dataclass(frozen=True)
class AccessContext:
    """Identity established by the outer auth layer."""
    project_id: str
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    key_id: str = ""

    @classmethod
    def create(cls, project_id: str, scopes: Iterable[str] = SCOPES, key_id: str = "") -> "AccessContext":
        return cls(project_id=project_id, scopes=frozenset(scopes), key_id=key_id)


class CredentialChecker(Protocol):
    def is_active(self, project_id: str, key_id: str) -> bool:
        ...


class ResolverService:
    """Resolve, anchor and supersede with access control and rate limiting."""

    def __init__(
        self,
        ledger: ResolverLedger,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        credentials: Optional[CredentialChecker] = None,
    ):
        self.ledger = ledger
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.credentials = credentials

    @classmethod
    def from_config(
        cls,
        store: ObjectStore,
        config: Optional[LocusConfig] = None,
        credentials: Optional[CredentialChecker] = None,
    ) -> "ResolverService":
        """Build the ledger and rate limiter from configuration (the global one by default)."""
        if config is None:
            config = get_config_manager().require_valid()
        else:
            errors = config.validate()
            if errors:
                raise ConfigValidationError("; ".join(errors))
        ledger = ResolverLedger(store, **config.ledger_settings())
        limiter = FixedWindowRateLimiter(config=config.rate_limit.to_rate_limit_config())
        return cls(ledger, rate_limiter=limiter, credentials=credentials)

    def _admit(self, ctx: AccessContext, endpoint: str) -> None:
        if endpoint not in ctx.scopes:
            self.ledger.audit.log(ctx.project_id, endpoint, "request", ctx.key_id, "denied", reason="scope")
            raise ScopeError("Insufficient scope")
        if self.credentials is not None and not self.credentials.is_active(ctx.project_id, ctx.key_id):
            self.ledger.audit.log(ctx.project_id, endpoint, "request", ctx.key_id, "denied", reason="revoked")
            raise AuthenticationError("Key revoked")
        self.rate_limiter.check(ctx.project_id, endpoint)

    def resolve(self, ctx: AccessContext, body: Any) -> Dict[str, Any]:
        self._admit(ctx, "resolve")
        require_valid(body, RESOLVE_REQUEST)
        result = self.ledger.resolve(ctx.project_id, body["presence"], bool(body.get("includeHistory", False)))
        return result.to_dict()

    def anchor(self, ctx: AccessContext, body: Any) -> Dict[str, Any]:
        self._admit(ctx, "anchor")
        require_valid(body, ANCHOR_REQUEST)
        row = self.ledger.anchor(ctx.project_id, body["presence"], body["objectDraft"])
        return {"object": row.to_public_dict()}

    def supersede(self, ctx: AccessContext, body: Any) -> Dict[str, Any]:
        self._admit(ctx, "supersede")
        require_valid(body, SUPERSEDE_REQUEST)
        row = self.ledger.supersede(
            ctx.project_id,
            body["presence"],
            body["supersedes_object_id"],
            body["objectDraft"],
        )
        return {"object": row.to_public_dict()}

    def _handlers(self) -> Mapping[str, Tuple[Callable[[AccessContext, Any], Dict[str, Any]], int]]:
        return {
            "resolve": (self.resolve, 200),
            "anchor": (self.anchor, 201),
            "supersede": (self.supersede, 201),
        }

    def dispatch(self, endpoint: str, ctx: AccessContext, body: Any) -> Tuple[int, Dict[str, Any]]:
        """Run one request and map the outcome to ``(status, payload)``."""
        handlers = self._handlers()
        if endpoint not in handlers:
            return 404, {"error": f"Unknown endpoint: {endpoint}"}
        handler, success_status = handlers[endpoint]

        token = set_correlation_id(generate_correlation_id())
        try:
            return success_status, handler(ctx, body)
        except (ValidationErrors, ValidationError) as ex:
            logger.info("request rejected", endpoint=endpoint, error_code=ex.error_code, detail=str(ex))
            return ex.http_status, {"error": ex.public_message}
        except LocusError as ex:
            logger.warning(
                ex.public_message,
                endpoint=endpoint,
                project_id=ctx.project_id,
                reason=getattr(ex, "reason", ""),
            )
            return ex.http_status, {"error": ex.public_message}
        except Exception:
            logger.error("unhandled error", error_code="internal_error", exc_info=True, endpoint=endpoint)
            return 500, {"error": "Internal server error"}
        finally:
            reset_correlation_id(token)
