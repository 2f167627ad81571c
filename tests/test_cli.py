"""
Operator CLI tests. Each command builds its service from the environment.
"""
import json

import pytest

from computegrid import cli


@pytest.fixture
def grid_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("MANIFEST_SECRET", "cli-secret")
    monkeypatch.setattr("computegrid.config.configure_logging", lambda *args, **kwargs: None)
    assert cli.main(["init-db"]) == 0


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "init-db" in capsys.readouterr().out

    def test_top_up_then_stats(self, grid_env, capsys):
        assert cli.main(["top-up", "--min", "2", "--canaries", "1"]) == 0
        assert "Created 4 tasks and 2 canaries" in capsys.readouterr().out

        assert cli.main(["stats", "--json"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert sum(row["count"] for row in stats["tasks"]) == 4
        assert stats["canaries"] == {"matrix_mult": 1, "hash_compute": 1}

    def test_trust_json(self, grid_env, capsys):
        assert cli.main(["trust", "ghost", "--json"]) == 0
        info = json.loads(capsys.readouterr().out)
        assert info["is_new"] is True

    def test_trust_table(self, grid_env, capsys):
        assert cli.main(["trust", "ghost"]) == 0
        assert "no history yet" in capsys.readouterr().out

    def test_anomalies(self, grid_env, capsys):
        assert cli.main(["anomalies", "ghost", "--json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["anomalies"] == []
        assert report["suspicious"] is False
        assert report["confidence"] == "low"

    def test_integrity_check(self, grid_env, capsys):
        assert cli.main(["integrity-check"]) == 0
        assert "Checked 0 nodes, flagged 0" in capsys.readouterr().out

    def test_reap(self, grid_env, capsys):
        assert cli.main(["reap"]) == 0
        assert "Timed out 0 stale assignments, expired 0 tasks." in capsys.readouterr().out

    def test_anomalies_table_without_history(self, grid_env, capsys):
        assert cli.main(["anomalies", "ghost"]) == 0
        out = capsys.readouterr().out
        assert "confidence: low" in out
        assert "  none" in out
