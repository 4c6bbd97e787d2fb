"""
Tests for the management CLI and the offline export verifier.
"""

import json
import logging

import pytest

from tools import manage, verify


@pytest.fixture(autouse=True)
def restore_root_logger():
    """manage.main() reconfigures the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def db_env(monkeypatch, tmp_path):
    for name in ("BLOCKSTORE_DRIVER", "DATABASE_URL", "DATABASE_HOST", "HASHSTACK_DIFFICULTY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HASHSTACK_DB_PATH", str(tmp_path / "hashstack.db"))
    monkeypatch.setenv("HASHSTACK_LOG_LEVEL", "WARNING")
    return tmp_path


@pytest.fixture
def export_file(db_env):
    assert manage.main(["set", "owner", '"alice"']) == 0
    assert manage.main(["set", "limits", '{"daily": 10}']) == 0
    assert manage.main(["delete", "owner"]) == 0

    path = db_env / "chain.json"
    assert manage.main(["export-blocks", "-o", str(path)]) == 0
    return path


class TestManage:
    """Test the management commands against a SQLite store."""

    def test_no_command_prints_help(self, capsys):
        assert manage.main([]) == 1
        assert "verify-chain" in capsys.readouterr().out

    def test_set_and_state(self, db_env, capsys):
        assert manage.main(["set", "owner", '"alice"']) == 0
        assert manage.main(["set", "note", "plain text"]) == 0
        capsys.readouterr()

        assert manage.main(["state"]) == 0
        state = json.loads(capsys.readouterr().out)
        assert state == {"note": "plain text", "owner": "alice"}

    def test_delete_missing_key(self, db_env, capsys):
        assert manage.main(["delete", "ghost"]) == 1
        assert "not set" in capsys.readouterr().out

    def test_verify_chain(self, export_file, capsys):
        assert manage.main(["verify-chain"]) == 0
        assert "[OK] Chain integrity verified" in capsys.readouterr().out

    def test_verify_chain_detects_edit(self, export_file, db_env, capsys):
        import sqlite3

        conn = sqlite3.connect(db_env / "hashstack.db")
        with conn:
            conn.execute("UPDATE blockchain SET data = '[]' WHERE id = 1")
        conn.close()

        assert manage.main(["verify-chain"]) == 1
        assert "Block 1 is invalid!" in capsys.readouterr().out

    def test_show_chain(self, export_file, capsys):
        capsys.readouterr()
        assert manage.main(["show-chain"]) == 0
        lines = capsys.readouterr().out.splitlines()

        assert len(lines) == 3
        assert lines[0].startswith("Block #0 [previous_hash: None")

    def test_show_chain_canonical(self, export_file, capsys):
        capsys.readouterr()
        assert manage.main(["show-chain", "--canonical"]) == 0
        first = capsys.readouterr().out.splitlines()[0]

        assert first.startswith("0")
        assert "undefined" in first

    def test_health_check(self, export_file, capsys):
        assert manage.main(["health-check"]) == 0
        out = capsys.readouterr().out
        assert "Store driver: sqlite" in out
        assert "chain_integrity: [OK]" in out


class TestVerify:
    """Test offline verification of an exported chain."""

    def test_export_verifies(self, export_file, capsys):
        assert verify.main([str(export_file), "--check-difficulty"]) == 0
        assert "[VERIFIED]" in capsys.readouterr().out

    def test_json_output(self, export_file, capsys):
        capsys.readouterr()
        assert verify.main([str(export_file), "--json"]) == 0
        report = json.loads(capsys.readouterr().out)

        assert report["result"] == "VERIFIED"
        assert report["block_count"] == 3
        assert report["details"]["difficulty"] == 1

    @pytest.mark.parametrize("field,value", [
        ("data", "[]"),
        ("nonce", 999999),
        ("previous_hash", "0" * 64),
    ])
    def test_tampered_export(self, export_file, field, value):
        export = json.loads(export_file.read_text())
        export["blocks"][1][field] = value
        export_file.write_text(json.dumps(export))

        assert verify.main([str(export_file)]) == 1

    def test_rehashed_block_breaks_linkage(self, export_file, capsys):
        """Recomputing a forged block's hash still breaks its successor."""
        export = json.loads(export_file.read_text())
        forged = export["blocks"][1]
        forged["data"] = "[]"
        forged["hash"] = verify.compute_block_hash(forged)
        export_file.write_text(json.dumps(export))

        assert verify.main([str(export_file)]) == 1
        assert "previous_hash does not match block 1" in capsys.readouterr().out

    def test_difficulty_enforced(self, export_file):
        export = json.loads(export_file.read_text())
        export["difficulty"] = 64
        export_file.write_text(json.dumps(export))

        assert verify.main([str(export_file)]) == 0
        assert verify.main([str(export_file), "--check-difficulty"]) == 1

    def test_empty_export(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"difficulty": 1, "blocks": []}))

        assert verify.main([str(path)]) == 0

    @pytest.mark.parametrize("content", [
        "not json",
        "[]",
        '{"blocks": "nope"}',
        '{"difficulty": -1, "blocks": []}',
        '{"blocks": [{"index": 0}]}',
    ])
    def test_invalid_format(self, tmp_path, content):
        path = tmp_path / "bad.json"
        path.write_text(content)

        assert verify.main([str(path)]) == 3

    def test_missing_file(self, tmp_path):
        assert verify.main([str(tmp_path / "nope.json")]) == 3
