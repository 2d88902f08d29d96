"""CLI tests using click's CliRunner against a temporary SQLite database.

Run with: pytest tests/integration/test_cli.py -v
"""

import json
import logging

import pytest
from click.testing import CliRunner

from labmap.cli import main
from labmap.config import get_settings
from labmap.store import review as review_store

pytestmark = pytest.mark.integration


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a fresh SQLite file with no semantic backend."""
    monkeypatch.setenv("LABMAP_DATABASE_DSN", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("LABMAP_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("LABMAP_OPENAI_API_KEY", "")
    monkeypatch.setenv("LABMAP_LLM_PROVIDER", "openai")
    monkeypatch.setattr(review_store, "_queue", None)
    get_settings.cache_clear()

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield CliRunner()
    root.handlers, root.level = handlers, level
    get_settings.cache_clear()


def invoke(runner, *args):
    return runner.invoke(main, list(args), catch_exceptions=False)


@pytest.fixture
def seeded_cli(cli_env):
    assert invoke(cli_env, "db", "init").exit_code == 0
    assert invoke(cli_env, "db", "seed", "--vocabulary", "analyte").exit_code == 0
    assert invoke(cli_env, "db", "seed", "--vocabulary", "unit").exit_code == 0
    return cli_env


class TestDbCommands:
    """Tests for db init and seed."""

    def test_init_and_seed(self, cli_env):
        """Test creating the schema and loading the built-in seed."""
        init = invoke(cli_env, "db", "init")
        seed = invoke(cli_env, "db", "seed", "--vocabulary", "unit")
        again = invoke(cli_env, "db", "seed", "--vocabulary", "unit")

        assert init.exit_code == 0
        assert "Schema created." in init.output
        assert seed.exit_code == 0
        assert "Entries created: 27" in seed.output
        assert "Entries created: 0" in again.output

    def test_seed_from_file(self, cli_env, tmp_path):
        """Test loading a custom seed file."""
        path = tmp_path / "extra.json"
        path.write_text(
            json.dumps([{"code": "LPA", "name": "Lipoprotein(a)", "aliases": ["Lp(a)"]}]),
            encoding="utf-8",
        )
        invoke(cli_env, "db", "init")

        result = invoke(cli_env, "db", "seed", "--vocabulary", "analyte", "--file", str(path))

        assert result.exit_code == 0
        assert "Entries created: 1" in result.output


class TestResolveCommand:
    """Tests for the resolve command."""

    def test_resolve_text(self, seeded_cli):
        """Test human-readable output for an exact match."""
        result = invoke(seeded_cli, "resolve", "--vocabulary", "analyte", "Гемоглобин")

        assert result.exit_code == 0
        assert "EXACT_MATCH" in result.output
        assert "Code: HGB" in result.output

    def test_resolve_json(self, seeded_cli):
        """Test JSON output for a unit batch."""
        result = invoke(
            seeded_cli, "resolve", "--vocabulary", "unit", "--json", "--no-semantic",
            "ммоль/л", "furlongs",
        )

        assert result.exit_code == 0
        data = json.loads(result.output)
        decisions = data["decisions"]
        assert [d["decision"] for d in decisions] == ["EXACT_MATCH", "UNRESOLVED"]
        assert decisions[0]["chosen_code"] == "mmol/L"
        assert data["summary"]["total"] == 2

    def test_resolve_dry_run_queues_nothing(self, seeded_cli):
        """Test that --dry-run reports the review issue but leaves the queue empty."""
        result = invoke(seeded_cli, "resolve", "--no-semantic", "--dry-run", "ферр")

        assert result.exit_code == 0
        assert "Would queue:" in result.output
        assert "Queued for review" not in result.output

        listing = invoke(seeded_cli, "review", "list")
        assert "No review items found" in listing.output

    def test_resolve_dry_run_json(self, seeded_cli):
        """Test that the JSON output marks the batch as a dry run."""
        result = invoke(
            seeded_cli, "resolve", "--no-semantic", "--dry-run", "--json", "furlongs",
        )

        data = json.loads(result.output)
        assert data["dry_run"] is True
        assert data["summary"]["would_queue"] == 1
        assert data["decisions"][0]["review_item_id"] is None


class TestReviewCommands:
    """Tests for the review command group."""

    def test_review_workflow(self, seeded_cli):
        """Test listing, showing, approving and stats from the CLI."""
        invoke(seeded_cli, "resolve", "--vocabulary", "analyte", "--no-semantic", "ферр")

        listing = invoke(seeded_cli, "review", "list")
        assert listing.exit_code == 0
        assert "'ферр'" in listing.output
        item_id = next(
            line.split()[0] for line in listing.output.splitlines() if "ферр" in line
        )

        shown = invoke(seeded_cli, "review", "show", item_id)
        assert shown.exit_code == 0
        assert "low_confidence" in shown.output or "unresolved" in shown.output

        approved = invoke(seeded_cli, "review", "approve", item_id, "--code", "FER")
        assert approved.exit_code == 0
        assert "approved" in approved.output

        stats = invoke(seeded_cli, "review", "stats")
        assert "Approved: 1" in stats.output

        resolved = invoke(seeded_cli, "resolve", "--no-semantic", "ферр")
        assert "EXACT_MATCH" in resolved.output

    def test_invalid_id(self, seeded_cli):
        """Test that a malformed id fails cleanly."""
        result = invoke(seeded_cli, "review", "show", "not-a-uuid")

        assert result.exit_code == 1

    def test_missing_item(self, seeded_cli):
        """Test that an unknown id reports the error and exits non-zero."""
        result = invoke(seeded_cli, "review", "reject", "00000000-0000-0000-0000-000000000000")

        assert result.exit_code == 1
        assert "not found" in result.output
