"""Unit tests for the licsync command line.

Commands run through click's ``CliRunner`` against a coordinator backed by
in-memory stores and the fake license API. The commands drive their own
event loop, so these tests are synchronous.

Run with: pytest backend/tests/unit/test_cli.py -v
"""

import asyncio
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from licsync.cli import main
from licsync.models import SyncOperation
from licsync.reconciliation import SyncCoordinator, set_coordinator
from licsync.stores import create_memory_stores


@pytest.fixture
def ledger(make_internal):
    return {
        "master": make_internal("LIC-1", dba="Acme Coffee", email="hi@acme.com", zip="10001"),
        "duplicate": make_internal("LIC-2", dba="Acme Coffee LLC", zip="10001"),
    }


@pytest.fixture
def stores(ledger):
    return create_memory_stores(ledger.values())


@pytest.fixture
def invoke(stores, settings, make_client):
    """Run a CLI command with a fresh coordinator over the shared stores."""
    runner = CliRunner()

    def run(*args: str):
        set_coordinator(SyncCoordinator(stores, make_client(), settings=settings.sync))
        try:
            with patch("licsync.cli.setup_logging"):
                return runner.invoke(main, list(args))
        finally:
            set_coordinator(None)

    return run


class TestSyncCommands:
    """Tests for ``licsync sync``."""

    def test_run(self, invoke, license_api, make_payload, stores):
        """Test that a run prints its totals and writes the ledger."""
        license_api.licenses = [make_payload("A1", dba="Biz LLC")]

        result = invoke("sync", "run")

        assert result.exit_code == 0, result.output
        assert "Created: 1" in result.output
        assert stores.internal.write_count == 1

    def test_dry_run(self, invoke, license_api, make_payload, stores):
        """Test that --dry-run leaves the ledger untouched."""
        license_api.licenses = [make_payload("A1")]

        result = invoke("sync", "run", "--dry-run")

        assert result.exit_code == 0, result.output
        assert "Dry run" in result.output
        assert stores.internal.write_count == 0

    def test_failed_run_exits_nonzero(self, invoke, license_api):
        """Test that an aborted sync exits with status 1."""
        license_api.fail_next(401)

        result = invoke("sync", "run")

        assert result.exit_code == 1
        assert "AuthError" in result.output

    def test_run_while_running(self, invoke, stores):
        """Test that a running operation makes the command exit with status 2."""
        running = SyncOperation()
        asyncio.run(stores.operations.try_start(running))

        result = invoke("sync", "run")

        assert result.exit_code == 2
        assert str(running.id) in result.output

    def test_single(self, invoke, license_api, make_payload):
        """Test syncing one license by appId."""
        license_api.licenses = [make_payload("A1")]

        result = invoke("sync", "single", "A1")

        assert result.exit_code == 0, result.output
        assert "Created: 1" in result.output

    def test_history(self, invoke, license_api, make_payload):
        """Test that history lists past runs."""
        assert "No sync runs recorded." in invoke("sync", "history").output

        license_api.licenses = [make_payload("A1")]
        invoke("sync", "run")
        result = invoke("sync", "history")

        assert result.exit_code == 0, result.output
        assert "Sync History (1 runs)" in result.output
        assert "success" in result.output


class TestDuplicateCommands:
    """Tests for ``licsync duplicates`` and ``licsync review``."""

    def test_check_requires_dba_or_email(self, invoke):
        """Test that a probe without dba or email is refused."""
        result = invoke("duplicates", "check", "--zip", "10001")

        assert result.exit_code == 1

    def test_check(self, invoke):
        """Test that matches are listed with their license key."""
        result = invoke("duplicates", "check", "--dba", "Acme Coffee", "--zip", "10001")

        assert result.exit_code == 0, result.output
        assert "LIC-1" in result.output

    def test_consolidate(self, invoke, stores, ledger):
        """Test folding a duplicate into a master license."""
        master, duplicate = ledger["master"], ledger["duplicate"]

        result = invoke("duplicates", "consolidate", str(master.id), str(duplicate.id))

        assert result.exit_code == 0, result.output
        assert "Consolidation applied" in result.output
        folded = asyncio.run(stores.internal.find_by_id(duplicate.id))
        assert folded.consolidated_into_id == master.id

    def test_consolidate_into_itself(self, invoke, ledger):
        """Test that an invalid consolidation exits with status 1."""
        master_id = str(ledger["master"].id)

        result = invoke("duplicates", "consolidate", master_id, master_id)

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_empty_review_queue(self, invoke):
        """Test the message for an empty queue."""
        result = invoke("review", "list")

        assert result.exit_code == 0
        assert "No review items found" in result.output
