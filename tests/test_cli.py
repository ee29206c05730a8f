"""Tests for the operator CLI."""

import json
from uuid import uuid4

import pytest

from billing_engine.cli import BillingCli

from .conftest import make_settings


@pytest.fixture
def cli(tmp_path):
    """CLI bound to a throwaway SQLite file."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    return BillingCli(settings=make_settings(database_url=url, log_level="WARNING"))


def output(capsys):
    return json.loads(capsys.readouterr().out)


class TestBillingCli:
    def test_no_command_prints_help(self, cli):
        assert cli.run([]) == 1

    def test_periods(self, cli, capsys):
        assert cli.run(["periods", "--count", "3"]) == 0

        periods = output(capsys)
        assert len(periods) == 3
        assert periods[0]["start"] > periods[1]["start"] > periods[2]["start"]

    def test_sweeps_against_fresh_database(self, cli, capsys):
        assert cli.run(["init-db"]) == 0
        assert "payment_schedule" in output(capsys)["created_tables"]

        assert cli.run(["cleanup-schedules"]) == 0
        assert output(capsys)["expired"] == 0

        assert cli.run(["process-payments"]) == 0
        result = output(capsys)
        assert result["processed"] == 0
        assert result["commission"]["created"] == 0

        assert cli.run(["resolve-duplicates"]) == 0
        assert output(capsys)["groups"] == 0

    def test_create_payroll_run(self, cli, capsys):
        cli.run(["init-db"])
        capsys.readouterr()

        code = cli.run(
            ["create-payroll-run", "--period-start", "2025-01-13", "--created-by", str(uuid4())]
        )

        assert code == 0
        run = output(capsys)
        assert run["status"] == "draft"
        assert run["payout_date"] == "2025-01-31"
        assert run["transaction_count"] == 0

    def test_domain_error_exits_nonzero(self, cli, capsys):
        cli.run(["init-db"])
        args = ["create-payroll-run", "--period-start", "2025-01-13", "--created-by", str(uuid4())]
        cli.run(args)
        capsys.readouterr()

        assert cli.run(args) == 1
        assert "ERROR" in capsys.readouterr().err
