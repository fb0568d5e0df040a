"""Command-line interface for Locus.

    locus keygen [--out FILE]
    locus hash FILE|-
    locus cell-id --lat LAT --lng LNG [--resolution N]
    locus presence sign --lat LAT --lng LNG --accuracy M (--key-file FILE | --private-key B64)
    locus presence verify FILE|-
    locus draft sign --schema-id ID --radius M [--payload FILE|-] (--key-file FILE | --private-key B64)
    locus draft verify FILE|-
    locus config show [--config FILE]
    locus config schema

Exit codes: 0 success, 1 verification failed, 2 usage or input error.
"""

from __future__ import annotations

import argparse
import json
import math
import pathlib
import sys
from typing import Any, List, Optional, Tuple

import yaml

from locus import __version__
from locus.canonical import canonical_json_text, content_hash, loads_strict
from locus.cells import cell_id_from_lat_lng
from locus.config import LOG_FORMATS, LOG_LEVELS, ConfigError, get_config, get_config_manager
from locus.observability import LocusLayer, configure_logging, get_logger
from locus.proofs import (
    build_object_draft,
    build_presence_proof,
    check_object_draft,
    check_presence_proof,
)
from locus.signing import generate_keypair

logger = get_logger("cli", LocusLayer.CLI)

EXIT_OK = 0
EXIT_VERIFY_FAILED = 1
EXIT_USAGE = 2


class InputError(Exception):
    """Unreadable or malformed command-line input."""


def read_json(source: str) -> Any:
    """Read a JSON document from a path, or stdin when ``source`` is ``-``."""
    try:
        if source == "-":
            text = sys.stdin.read()
        else:
            text = pathlib.Path(source).read_text(encoding="utf-8")
    except OSError as ex:
        raise InputError(f"cannot read {source}: {ex}") from ex
    try:
        return loads_strict(text)
    except ValueError as ex:
        raise InputError(f"{source} is not valid JSON: {ex}") from ex


def emit(args: argparse.Namespace, value: Any) -> None:
    if getattr(args, "format", "json") == "yaml":
        sys.stdout.write(yaml.safe_dump(value, default_flow_style=False, sort_keys=True))
    else:
        sys.stdout.write(json.dumps(value, indent=2, ensure_ascii=False) + "\n")


def signing_keys(args: argparse.Namespace) -> Tuple[str, Optional[str]]:
    """(private_key, public_key or None) from --key-file or --private-key/--public-key."""
    if args.key_file:
        data = read_json(args.key_file)
        if not isinstance(data, dict) or not isinstance(data.get("private_key"), str):
            raise InputError(f"{args.key_file} has no private_key")
        return data["private_key"], data.get("public_key")
    if args.private_key:
        return args.private_key, args.public_key
    raise InputError("one of --key-file or --private-key is required")


def cmd_keygen(args: argparse.Namespace) -> int:
    pair = generate_keypair().to_dict()
    if args.out:
        out_path = pathlib.Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(pair, indent=2) + "\n", encoding="utf-8")
        emit(args, {"public_key": pair["public_key"], "written": str(out_path)})
    else:
        emit(args, pair)
    return EXIT_OK


def cmd_hash(args: argparse.Namespace) -> int:
    value = read_json(args.source)
    try:
        digest = content_hash(value)
    except ValueError as ex:
        raise InputError(str(ex)) from ex
    if args.show_canonical:
        sys.stdout.write(canonical_json_text(value) + "\n")
    print(digest)
    return EXIT_OK


def cmd_cell_id(args: argparse.Namespace) -> int:
    for name in ("lat", "lng"):
        if not math.isfinite(getattr(args, name)):
            raise InputError(f"--{name} must be a finite number")
    print(cell_id_from_lat_lng(args.lat, args.lng, args.resolution))
    return EXIT_OK


def cmd_presence_sign(args: argparse.Namespace) -> int:
    private_key, public_key = signing_keys(args)
    try:
        proof = build_presence_proof(
            args.lat,
            args.lng,
            args.accuracy,
            private_key,
            public_key=public_key,
            timestamp_ms=args.timestamp_ms,
            nonce=args.nonce,
        )
    except ValueError as ex:
        raise InputError(f"cannot sign presence proof: {ex}") from ex
    emit(args, proof.to_dict())
    return EXIT_OK


def cmd_presence_verify(args: argparse.Namespace) -> int:
    result = check_presence_proof(read_json(args.source))
    if result.ok:
        print("OK   presence proof")
        return EXIT_OK
    print("FAIL presence proof -", result.reason)
    return EXIT_VERIFY_FAILED


def cmd_draft_sign(args: argparse.Namespace) -> int:
    private_key, public_key = signing_keys(args)
    payload = read_json(args.payload) if args.payload else None
    try:
        draft = build_object_draft(args.schema_id, args.radius, payload, private_key, public_key=public_key)
    except ValueError as ex:
        raise InputError(f"cannot sign object draft: {ex}") from ex
    emit(args, draft.to_dict())
    return EXIT_OK


def cmd_draft_verify(args: argparse.Namespace) -> int:
    result = check_object_draft(read_json(args.source))
    if result.ok:
        print("OK   object draft")
        return EXIT_OK
    print("FAIL object draft -", result.reason)
    return EXIT_VERIFY_FAILED


def cmd_config_show(args: argparse.Namespace) -> int:
    manager = get_config_manager()
    if args.config:
        manager.load_from_file(args.config)
    else:
        manager.load_defaults()
    errors = manager.validate()
    if errors:
        for error in errors:
            print("ERROR", error, file=sys.stderr)
        return EXIT_USAGE
    emit(args, manager.config.to_dict())
    return EXIT_OK


def cmd_config_schema(args: argparse.Namespace) -> int:
    emit(args, get_config_manager().export_schema())
    return EXIT_OK


def _add_key_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--key-file", default="", help="JSON file written by `locus keygen --out`")
    p.add_argument("--private-key", default="", help="base64 PKCS#8 DER or raw 32-byte seed")
    p.add_argument("--public-key", default=None, help="embed this public key instead of the derived SPKI key")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="locus", description="Presence proofs and signed cell objects")
    ap.add_argument("--version", action="version", version=f"locus {__version__}")
    ap.add_argument("--format", choices=("json", "yaml"), default="json")
    ap.add_argument("--log-level", choices=LOG_LEVELS, default=None, help="defaults to observability.log_level")
    ap.add_argument("--log-format", choices=LOG_FORMATS, default=None, help="defaults to observability.log_format")
    sub = ap.add_subparsers(dest="cmd", required=True)

    k = sub.add_parser("keygen", help="Generate an Ed25519 key pair")
    k.add_argument("--out", default="")
    k.set_defaults(func=cmd_keygen)

    h = sub.add_parser("hash", help="Content hash of a JSON document")
    h.add_argument("source")
    h.add_argument("--show-canonical", action="store_true")
    h.set_defaults(func=cmd_hash)

    c = sub.add_parser("cell-id", help="Cell id for a coordinate")
    c.add_argument("--lat", type=float, required=True)
    c.add_argument("--lng", type=float, required=True)
    c.add_argument("--resolution", type=float, default=None)
    c.set_defaults(func=cmd_cell_id)

    presence = sub.add_parser("presence", help="Presence proofs")
    psub = presence.add_subparsers(dest="presence_cmd", required=True)
    ps = psub.add_parser("sign")
    ps.add_argument("--lat", type=float, required=True)
    ps.add_argument("--lng", type=float, required=True)
    ps.add_argument("--accuracy", type=float, required=True)
    ps.add_argument("--timestamp-ms", type=int, default=None)
    ps.add_argument("--nonce", default=None)
    _add_key_args(ps)
    ps.set_defaults(func=cmd_presence_sign)
    pv = psub.add_parser("verify")
    pv.add_argument("source")
    pv.set_defaults(func=cmd_presence_verify)

    draft = sub.add_parser("draft", help="Object drafts")
    dsub = draft.add_subparsers(dest="draft_cmd", required=True)
    ds = dsub.add_parser("sign")
    ds.add_argument("--schema-id", required=True)
    ds.add_argument("--radius", type=float, required=True)
    ds.add_argument("--payload", default="", help="JSON file, or - for stdin")
    _add_key_args(ds)
    ds.set_defaults(func=cmd_draft_sign)
    dv = dsub.add_parser("verify")
    dv.add_argument("source")
    dv.set_defaults(func=cmd_draft_verify)

    cfg = sub.add_parser("config", help="Configuration")
    csub = cfg.add_subparsers(dest="config_cmd", required=True)
    cs = csub.add_parser("show")
    cs.add_argument("--config", default="", help="YAML file to load instead of the default locations")
    cs.set_defaults(func=cmd_config_show)
    csc = csub.add_parser("schema", help="Describe every setting with its default and environment variable")
    csc.set_defaults(func=cmd_config_schema)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    try:
        observability = get_config().observability
        configure_logging(
            level=args.log_level or observability.log_level.get(),
            fmt=args.log_format or observability.log_format.get(),
        )
        return args.func(args)
    except (InputError, ConfigError) as ex:
        logger.debug("command failed", cmd=args.cmd, error=str(ex))
        print(f"ERROR: {ex}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
