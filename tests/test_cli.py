"""Tests for the click CLI."""

import pytest
from click.testing import CliRunner

from subgate.cli import cli


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.delenv("SUBGATE_DATABASE_URL", raising=False)
    monkeypatch.chdir(tmp_path)  # no stray .env
    return CliRunner()


def test_help_lists_commands(runner):
    result = runner.invoke(cli, [])
    assert result.exit_code == 0
    assert "subscriber expire-sweep" in result.output
    assert "db init" in result.output


def test_version(runner):
    from subgate import __version__
    result = runner.invoke(cli, ["--version"])
    assert __version__ in result.output


@pytest.mark.parametrize("args", [
    ["subscriber", "list"],
    ["subscriber", "add", "201000000001", "--days", "30"],
    ["subscriber", "expire-sweep"],
    ["db", "init"],
])
def test_database_required(runner, args):
    result = runner.invoke(cli, args)
    assert result.exit_code == 1
    assert "SUBGATE_DATABASE_URL is not set" in result.output


def test_add_rejects_days_and_until(runner):
    result = runner.invoke(cli, ["subscriber", "add", "201000000001", "--days", "3", "--until", "2030-01-01"])
    assert result.exit_code == 2
    assert "either --days or --until" in result.output
