"""CLI commands that work against the local database."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from yield_reconciler.cli import cli

from tests.factories import LOAN_POOL_ADDRESS


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("RECONCILER_DB_PATH", str(tmp_path / "state.db"))
    monkeypatch.setenv("RECONCILER_LOAN_POOL_ADDRESS", LOAN_POOL_ADDRESS)
    monkeypatch.delenv("RECONCILER_CRON_SECRET", raising=False)
    return tmp_path


def test_status(env):
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0, result.output
    assert "yield_distribution" in result.output
    assert "(not set)" in result.output


def test_add_loan_then_records(env):
    runner = CliRunner()
    result = runner.invoke(cli, ["add-loan", "loan-1", "pool-1", "--contract-pool-id", "0x" + "11" * 32])
    assert result.exit_code == 0, result.output
    assert "on-chain id 0x" in result.output

    result = runner.invoke(cli, ["records"])
    assert result.exit_code == 0
    assert "No distribution records." in result.output


def test_reset_cursor(env):
    runner = CliRunner()
    result = runner.invoke(cli, ["reset-cursor", "yield_distribution", "500", "--yes"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["status"])
    assert "cursor=500" in result.output


def test_reset_cursor_unknown_stream(env):
    result = CliRunner().invoke(cli, ["reset-cursor", "nope", "5", "--yes"])
    assert result.exit_code == 1


def test_run_refuses_invalid_config(env):
    result = CliRunner().invoke(cli, ["run", "yield_distribution"])
    assert result.exit_code == 1
    assert "cron_secret" in result.output


def test_trigger_requires_secret(env):
    result = CliRunner().invoke(cli, ["trigger", "yield_distribution"])
    assert result.exit_code == 1


def test_purge_keys(env):
    result = CliRunner().invoke(cli, ["purge-keys"])
    assert result.exit_code == 0, result.output
    assert "Purged 0 expired idempotency keys" in result.output


def test_staking_stats_of_empty_pool(env):
    result = CliRunner().invoke(cli, ["staking-stats", "0x" + "11" * 32])
    assert result.exit_code == 0, result.output
    assert "Stake events:   0" in result.output
    assert "Unique stakers: 0" in result.output
