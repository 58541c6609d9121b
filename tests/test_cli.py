"""
Tests for MnemoGraph CLI
"""

import json
import sys
from datetime import timedelta

import pytest
from click.testing import CliRunner
from loguru import logger

from mnemograph.cli.main import cli
from mnemograph.core.graph_database import GraphDatabase
from mnemograph.core.models import utc_now


@pytest.fixture
def runner(monkeypatch):
    """CLI test runner with logging kept off stdout."""
    monkeypatch.setenv("MNEMOGRAPH_LOG_LEVEL", "ERROR")
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logger():
    """The CLI rebinds loguru to the runner's stderr; put the default sink back."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "graph.db"


@pytest.fixture
def seeded(db_path):
    """Database with two related incident notes and one unrelated note."""
    database = GraphDatabase(db_path)
    database.initialize()
    try:
        nodes = {
            "outage": database.create_node({
                "content": "Payment service outage in production",
                "last_accessed": utc_now() - timedelta(hours=3),
            }),
            "resolved": database.create_node({"content": "Production payment service outage resolved"}),
            "lunch": database.create_node({"content": "Team lunch at the Italian place"}),
        }
    finally:
        database.close()
    return nodes


def invoke(runner, db_path, *args):
    result = runner.invoke(cli, ["--db", str(db_path), *args], obj={})
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestCLIInit:

    def test_init_creates_database(self, runner, db_path):
        data = invoke(runner, db_path, "init")
        assert data == {"initialized": str(db_path)}
        assert db_path.exists()


class TestCLIStats:

    def test_stats(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "stats")
        assert set(data) == {"graph", "decay"}
        assert data["decay"]["total_nodes"] == 3

    def test_stats_refresh(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "stats", "--refresh")
        assert data["graph"]["total_nodes"] == 3
        assert data["graph"]["active_nodes"] == 3
        assert data["graph"]["last_updated"] is not None


class TestCLIMaintenance:

    def test_decay(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "decay")
        assert data["nodes_decayed"] == 1
        assert data["errors"] == []

    def test_prune(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "prune")
        assert {"nodes_pruned", "edges_pruned", "edges_orphaned", "errors"} <= set(data)

    def test_vacuum(self, runner, db_path, seeded):
        assert invoke(runner, db_path, "vacuum") == {"vacuumed": str(db_path)}

    def test_backup(self, runner, db_path, seeded, tmp_path):
        dest = tmp_path / "copy.db"
        data = invoke(runner, db_path, "backup", str(dest))
        assert data["backup"] == str(dest)
        assert dest.exists()

        copy = GraphDatabase(dest)
        copy.initialize()
        try:
            assert copy.get_node(seeded["outage"].id) is not None
        finally:
            copy.close()


class TestCLISemantic:

    def test_reindex(self, runner, db_path, seeded):
        assert invoke(runner, db_path, "reindex") == {"documents_indexed": 3}

    def test_link(self, runner, db_path, seeded):
        node_id = seeded["outage"].id
        data = invoke(runner, db_path, "link", node_id)
        assert data == {"node_id": node_id, "edges_created": 1}

    def test_link_missing_node(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "link", "ghost")
        assert data["edges_created"] == 0

    def test_search(self, runner, db_path, seeded):
        data = invoke(runner, db_path, "search", "payment outage", "-k", "5")
        assert {hit["id"] for hit in data} == {seeded["outage"].id, seeded["resolved"].id}
        assert all(0 < hit["score"] <= 1 for hit in data)
        assert data[0]["type"] == "activity"


class TestCLIErrors:

    def test_invalid_config_reports_error(self, runner, db_path, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("mnemograph:\n  decay:\n    decay_rate: 5.0\n")
        result = runner.invoke(cli, ["--config", str(config_path), "--db", str(db_path), "decay"], obj={})
        assert result.exit_code == 1
        assert "decay_rate" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "init"])
        assert result.exit_code != 0
