"""JSON Schema validation for wire objects.

Provides:
- a registry of the bundled schemas so request schemas can ``$ref`` the
  presence-proof and object-draft schemas
- cached validators
- ``require_valid`` which turns schema violations (and non-finite numbers or
  excessive nesting, which JSON Schema cannot see) into ``ValidationErrors``
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from locus.hardening import MAX_JSON_DEPTH, ValidationError, ValidationErrors, Validators

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SCHEMA_BASE_URI = "https://schemas.locus-resolver.org/"

PRESENCE_PROOF = "presence-proof"
OBJECT_DRAFT = "object-draft"
RESOLVE_REQUEST = "resolve-request"
ANCHOR_REQUEST = "anchor-request"
SUPERSEDE_REQUEST = "supersede-request"


def _load_schema(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of every bundled schema, keyed by its ``$id``."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = _load_schema(schema_path)
        schema_id = schema.get("$id") or SCHEMA_BASE_URI + schema_path.name
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Return a validator for a bundled schema by short name (e.g. ``presence-proof``)."""
    schema_path = SCHEMAS_DIR / f"{name}.schema.json"
    if not schema_path.is_file():
        raise KeyError(f"Unknown schema: {name}")
    schema = _load_schema(schema_path)
    return Draft202012Validator(schema, registry=_schema_registry())


def schema_errors(obj: Any, name: str) -> List[ValidationError]:
    """Collect every violation of schema ``name`` in ``obj``."""
    if Validators.exceeds_depth(obj):
        return [ValidationError("$", f"Nesting deeper than {MAX_JSON_DEPTH} levels")]
    validator = schema_validator(name)
    errors = [
        ValidationError(error.json_path, error.message, error.instance)
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
    non_finite = Validators.find_non_finite(obj)
    if non_finite:
        errors.append(ValidationError(non_finite, "Must be a finite number"))
    return errors


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validate an object; returns error messages (empty if valid)."""
    return [f"{e.field}: {e.message}" for e in schema_errors(obj, name)]


def require_valid(obj: Any, name: str) -> None:
    """Raise ``ValidationErrors`` unless ``obj`` satisfies schema ``name``."""
    errors = schema_errors(obj, name)
    if errors:
        raise ValidationErrors(errors)
