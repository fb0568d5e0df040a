import hashlib
import io
import json
import logging

import pytest
import yaml

from locus.cli import main
from locus.proofs import verify_object_draft, verify_presence_proof


def _run(capsys, *argv):
    rc = main(list(argv))
    out, err = capsys.readouterr()
    return rc, out, err


@pytest.fixture
def key_file(tmp_path, capsys):
    path = tmp_path / "keys.json"
    rc, out, _ = _run(capsys, "keygen", "--out", str(path))
    assert rc == 0
    assert json.loads(out)["written"] == str(path)
    return path


def test_keygen_prints_pair(capsys):
    rc, out, _ = _run(capsys, "keygen")
    assert rc == 0
    assert set(json.loads(out)) == {"public_key", "private_key"}


def test_keygen_yaml_format(capsys):
    rc, out, _ = _run(capsys, "--format", "yaml", "keygen")
    assert rc == 0
    assert set(yaml.safe_load(out)) == {"public_key", "private_key"}


def test_hash(tmp_path, capsys):
    doc = tmp_path / "doc.json"
    doc.write_text('{"b": 80.0, "a": "x"}', encoding="utf-8")
    rc, out, _ = _run(capsys, "hash", "--show-canonical", str(doc))
    assert rc == 0
    canonical, digest = out.splitlines()
    assert canonical == '{"a":"x","b":80}'
    assert digest == hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def test_hash_from_stdin(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("[1, 2]"))
    rc, out, _ = _run(capsys, "hash", "-")
    assert rc == 0
    assert out.strip() == hashlib.sha256(b"[1,2]").hexdigest()


def test_hash_rejects_bad_json(tmp_path, capsys):
    doc = tmp_path / "doc.json"
    doc.write_text('{"a": NaN}', encoding="utf-8")
    rc, _, err = _run(capsys, "hash", str(doc))
    assert rc == 2
    assert "ERROR" in err


def test_hash_missing_file(tmp_path, capsys):
    rc, _, err = _run(capsys, "hash", str(tmp_path / "missing.json"))
    assert rc == 2


def test_cell_id(capsys):
    rc, out, _ = _run(capsys, "cell-id", "--lat", "37.7749", "--lng", "-122.4194", "--resolution", "99")
    assert rc == 0
    assert out.strip() == "cell_15_37.774900_-122.419400"


def test_presence_sign_and_verify(key_file, tmp_path, capsys):
    rc, out, _ = _run(
        capsys, "presence", "sign",
        "--lat", "37.7749", "--lng", "-122.4194", "--accuracy", "5",
        "--timestamp-ms", "1714564800000", "--nonce", "abc",
        "--key-file", str(key_file),
    )
    assert rc == 0
    proof = json.loads(out)
    assert proof["timestamp_ms"] == 1714564800000
    assert proof["signer_public_key"] == json.loads(key_file.read_text())["public_key"]
    assert verify_presence_proof(proof)

    path = tmp_path / "proof.json"
    path.write_text(json.dumps(proof), encoding="utf-8")
    rc, out, _ = _run(capsys, "presence", "verify", str(path))
    assert rc == 0
    assert out.startswith("OK")

    proof["lat"] = 0
    path.write_text(json.dumps(proof), encoding="utf-8")
    rc, out, _ = _run(capsys, "presence", "verify", str(path))
    assert rc == 1
    assert out.startswith("FAIL")


def test_draft_sign_and_verify(key_file, tmp_path, capsys):
    payload = tmp_path / "payload.json"
    payload.write_text('{"text": "hello"}', encoding="utf-8")
    rc, out, _ = _run(
        capsys, "draft", "sign",
        "--schema-id", "note/v1", "--radius", "25", "--payload", str(payload),
        "--key-file", str(key_file),
    )
    assert rc == 0
    draft = json.loads(out)
    assert draft["payload"] == {"text": "hello"}
    assert verify_object_draft(draft)

    path = tmp_path / "draft.json"
    draft["schema_id"] = "note/v2"
    path.write_text(json.dumps(draft), encoding="utf-8")
    rc, out, _ = _run(capsys, "draft", "verify", str(path))
    assert rc == 1


def test_sign_with_inline_private_key(key_file, capsys):
    keys = json.loads(key_file.read_text())
    rc, out, _ = _run(
        capsys, "draft", "sign", "--schema-id", "marker/v1", "--radius", "3",
        "--private-key", keys["private_key"],
    )
    assert rc == 0
    draft = json.loads(out)
    assert draft["payload"] is None
    assert draft["creator_public_key"] == keys["public_key"]


def test_sign_requires_key(capsys):
    rc, _, err = _run(capsys, "presence", "sign", "--lat", "1", "--lng", "2", "--accuracy", "3")
    assert rc == 2
    assert "--key-file" in err


def test_sign_rejects_bad_key(capsys):
    rc, _, err = _run(
        capsys, "presence", "sign", "--lat", "1", "--lng", "2", "--accuracy", "3",
        "--private-key", "%%%",
    )
    assert rc == 2


def test_usage_error_exit_code(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["cell-id", "--lat", "1"])
    assert exc.value.code == 2


def test_config_show(tmp_path, capsys, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    rc, out, _ = _run(capsys, "config", "show")
    assert rc == 0
    assert json.loads(out)["cells"]["resolution"] == 10


def test_config_show_with_file(tmp_path, capsys):
    path = tmp_path / "custom.yaml"
    path.write_text("resolve:\n  default_limit: 10\n  history_limit: 5\n", encoding="utf-8")
    rc, _, err = _run(capsys, "config", "show", "--config", str(path))
    assert rc == 2
    assert "history_limit" in err


@pytest.mark.parametrize("lat, lng", [("nan", "0"), ("0", "inf"), ("-inf", "1")])
def test_cell_id_rejects_non_finite(capsys, lat, lng):
    rc, out, err = _run(capsys, "cell-id", "--lat", lat, "--lng", lng)
    assert rc == 2
    assert out == ""
    assert "finite" in err


def test_logging_follows_configuration(monkeypatch, capsys):
    monkeypatch.setenv("LOCUS_LOG_LEVEL", "debug")
    monkeypatch.setenv("LOCUS_LOG_FORMAT", "text")
    main(["keygen"])
    capsys.readouterr()
    assert logging.getLogger("locus").level == logging.DEBUG

    monkeypatch.setenv("LOCUS_LOG_LEVEL", "error")
    main(["--log-level", "warning", "keygen"])
    capsys.readouterr()
    assert logging.getLogger("locus").level == logging.WARNING


def test_invalid_log_configuration_is_usage_error(monkeypatch, capsys):
    monkeypatch.setenv("LOCUS_LOG_LEVEL", "chatty")
    rc, _, err = _run(capsys, "keygen")
    assert rc == 2
    assert "ERROR" in err


def test_config_schema(capsys):
    rc, out, _ = _run(capsys, "config", "schema")
    assert rc == 0
    props = json.loads(out)["properties"]
    assert props["rate_limit"]["anchor_per_window"]["env_var"] == "LOCUS_RATE_ANCHOR"
    assert props["observability"]["log_format"]["default"] == "json"
