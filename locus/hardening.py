"""
Locus Validation and Error Taxonomy

Every request that reaches the resolver core is untrusted. This module holds
the exception hierarchy the core raises and the small validators used to
reject malformed values before any cryptography runs.

Error classes and the status an outer surface should map them to:

    ValidationErrors      400  structurally invalid proof / draft / request
    VerificationError     400  hash or signature mismatch
    AuthenticationError   401  credential revoked since the token was minted
    ScopeError            403  credential lacks the endpoint's scope
    ObjectNotFoundError   404  supersede target unknown or in another project
    RateLimitExceeded     429  fixed-window counter exhausted
    StorageError          500  the storage collaborator failed
"""

from __future__ import annotations

import hmac
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

# Deepest array/object nesting accepted in wire values; keeps the recursive
# canonical encoder well inside the interpreter's recursion limit.
MAX_JSON_DEPTH = 64

# =============================================================================
# ERROR TYPES
# =============================================================================

class LocusError(Exception):
    """Base class for errors raised by the resolver core."""
    http_status = 500
    error_code = "internal_error"

    @property
    def public_message(self) -> str:
        return str(self)


class ValidationError(LocusError):
    """A single field failed validation."""
    http_status = 400
    error_code = "malformed_input"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(LocusError):
    """Collection of validation errors; the input never reached verification."""
    http_status = 400
    error_code = "malformed_input"

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class VerificationError(LocusError):
    """A presence proof or object draft is not authentic."""
    http_status = 400
    error_code = "verification_failed"

    def __init__(self, message: str, reason: str = ""):
        self.reason = reason
        super().__init__(message)


class AuthenticationError(LocusError):
    http_status = 401
    error_code = "unauthenticated"


class ScopeError(LocusError):
    http_status = 403
    error_code = "insufficient_scope"


class ObjectNotFoundError(LocusError):
    """A referenced object does not exist within the caller's project."""
    http_status = 404
    error_code = "not_found"

    def __init__(self, object_id: str, field_name: str = "object_id"):
        self.object_id = object_id
        self.field_name = field_name
        super().__init__(f"{field_name} not found")


class RateLimitExceeded(LocusError):
    http_status = 429
    error_code = "rate_limited"

    def __init__(self, key: str):
        self.key = key
        super().__init__("Rate limit exceeded")


class StorageError(LocusError):
    """Raised by storage implementations; the core never retries it."""
    http_status = 500
    error_code = "storage_failure"

    @property
    def public_message(self) -> str:
        return "Internal server error"


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Field validators that JSON Schema cannot express on its own."""

    UUID_PATTERN = re.compile(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    )

    @classmethod
    def validate_uuid(cls, value: Any, field_name: str = "object_id") -> ValidationResult:
        if not isinstance(value, str) or not cls.UUID_PATTERN.fullmatch(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be a UUID", value)
            ])
        return ValidationResult.success(value.lower())

    @staticmethod
    def exceeds_depth(value: Any, max_depth: int = MAX_JSON_DEPTH) -> bool:
        """True if arrays/objects nest deeper than ``max_depth``. Iterative."""
        stack = [(value, 1)]
        while stack:
            current, depth = stack.pop()
            if isinstance(current, dict):
                children = current.values()
            elif isinstance(current, (list, tuple)):
                children = current
            else:
                continue
            if depth > max_depth:
                return True
            stack.extend((child, depth + 1) for child in children)
        return False

    @classmethod
    def find_non_finite(cls, value: Any, path: str = "$") -> Optional[str]:
        """Return the path of the first NaN/Infinity inside a JSON value, if any."""
        if isinstance(value, float) and not math.isfinite(value):
            return path
        if isinstance(value, dict):
            for k, v in value.items():
                found = cls.find_non_finite(v, f"{path}.{k}")
                if found:
                    return found
        if isinstance(value, (list, tuple)):
            for i, v in enumerate(value):
                found = cls.find_non_finite(v, f"{path}[{i}]")
                if found:
                    return found
        return None


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison; works for any text, not only ASCII.

    Strings that cannot be encoded as UTF-8 (lone surrogates) never compare
    equal.
    """
    try:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
    except UnicodeEncodeError:
        return False
