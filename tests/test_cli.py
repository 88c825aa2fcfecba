"""
Tests for the administration CLI.
"""

import pytest

from retention.cli import build_parser, main


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main(["--database-url", url, "init-db"]) == 0
    return url


class TestCli:
    """Command dispatch against a temporary database."""

    def test_subcommand_required(self):
        """Running without a command is a usage error."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_seed_list_activate(self, db_url, capsys):
        """Seeded templates can be listed and activated."""
        assert main(["--database-url", db_url, "seed-templates"]) == 0
        assert main(["--database-url", db_url, "activate", "1"]) == 0
        capsys.readouterr()

        assert main(["--database-url", db_url, "list-flows", "--language", "en"]) == 0
        out = capsys.readouterr().out

        assert "Standard Retention Flow" in out
        assert "score=1" in out
        assert out.count("inactive") == 2

    def test_validate_reports(self, db_url, capsys):
        """Validation prints the verdict."""
        main(["--database-url", db_url, "seed-templates"])
        capsys.readouterr()

        assert main(["--database-url", db_url, "validate", "2"]) == 0
        assert "VALID" in capsys.readouterr().out

    def test_metrics_and_weights(self, db_url, capsys):
        """Weights set from the CLI show up in metrics."""
        assert main(["--database-url", db_url, "set-weight", "history_weight", "0.25"]) == 0
        capsys.readouterr()

        assert main(["--database-url", db_url, "metrics"]) == 0
        out = capsys.readouterr().out

        assert "Offers shown:    0" in out
        assert "history_weight" in out
        assert "0.25" in out

    def test_unknown_ids_fail_cleanly(self, db_url, capsys):
        """Domain errors exit 1 with a message instead of a traceback."""
        assert main(["--database-url", db_url, "score", "999"]) == 1
        assert main(["--database-url", db_url, "activate", "999"]) == 1
        assert "ERROR" in capsys.readouterr().err

    def test_config_file(self, db_url, tmp_path, capsys):
        """A YAML config is loaded for the run."""
        config_path = tmp_path / "engine.yaml"
        config_path.write_text("default_language: en\nacceptance_weight: 0.5\nrevenue_weight: 0.5\n")

        assert main(["--config", str(config_path), "--database-url", db_url, "list-flows"]) == 0
        assert "No flows found." in capsys.readouterr().out
