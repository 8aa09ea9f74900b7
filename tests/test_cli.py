"""Tests for the replctl command line: output and exit codes."""
import json

import pytest

from replctl import cli
from replctl.state import OperationLock


@pytest.fixture
def run(runbook, monkeypatch, capsys):
    """Run the CLI against the in-memory pair; returns (exit code, stdout, stderr)."""
    monkeypatch.setattr(cli, "load_runbook", lambda path, state_dir=None: runbook)

    def _run(*argv):
        code = cli.main(list(argv))
        out, err = capsys.readouterr()
        return code, out, err

    return _run


class TestInit:
    def test_writes_configuration(self, tmp_path, capsys):
        path = tmp_path / "config" / "topology.json"
        code = cli.main(["--config", str(path), "init", "--base-dir", str(tmp_path), "--replica-port", "3317"])
        assert code == cli.EXIT_OK
        data = json.loads(path.read_text())
        assert data["replica"]["port"] == 3317
        assert "replctl provision" in capsys.readouterr().out

    def test_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / "topology.json"
        assert cli.main(["--config", str(path), "init", "--base-dir", str(tmp_path)]) == cli.EXIT_OK
        assert cli.main(["--config", str(path), "init", "--base-dir", str(tmp_path)]) == cli.EXIT_INVALID
        assert cli.main(["--config", str(path), "init", "--base-dir", str(tmp_path), "--force"]) == cli.EXIT_OK

    def test_missing_configuration(self, tmp_path, capsys):
        code = cli.main(["--config", str(tmp_path / "nope.json"), "status"])
        assert code == cli.EXIT_INVALID
        assert "not found" in capsys.readouterr().err


class TestArguments:
    def test_no_command(self, capsys):
        assert cli.main([]) == cli.EXIT_INVALID

    def test_refresh_needs_dump(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["refresh", "shop"])
        assert exc_info.value.code == 2

    def test_invalid_database_name(self, run):
        code, _, err = run("add-database", "mysql")
        assert code == cli.EXIT_INVALID
        assert "system database" in err


class TestOperations:
    def test_provision(self, run):
        code, out, _ = run("provision")
        assert code == cli.EXIT_OK
        assert "✓ provision" in out
        assert "Replica link: streaming from mysql-primary:3306" in out

    def test_provision_json(self, run):
        code, out, _ = run("provision", "--json")
        data = json.loads(out)
        assert code == cli.EXIT_OK
        assert data["success"]
        assert data["operation"]["state"] == "completed"
        assert data["before"]["replica"]["link"] is None
        assert data["after"]["replica"]["link"]["state"] == "streaming"

    def test_verification_timeout_exit_code(self, run, fake_admin):
        fake_admin.reject_replication = True
        code, _, err = run("provision")
        assert code == cli.EXIT_TIMEOUT
        assert "failed step:    verifying" in err
        assert "last completed: arming-replication" in err
        assert "VerificationTimeout" in err

    def test_step_failure_exit_code(self, run, fake_admin):
        from replctl.errors import AuthError
        fake_admin.failures["dump"] = AuthError("primary", "ERROR 1045 (28000): Access denied")
        code, _, err = run("provision", "--json")
        data = json.loads(err)
        assert code == cli.EXIT_FAILED
        assert data["step"] == "snapshotting"
        assert data["last_completed"] == "configuring-admin-ui"
        assert data["cause"] == "AuthError"

    def test_operation_in_progress(self, run, config):
        with OperationLock(config.state_dir, "replica", "refresh"):
            code, _, err = run("provision")
        assert code == cli.EXIT_FAILED
        assert "already running" in err

    def test_verify_then_rollback(self, run, fake_admin):
        fake_admin.reject_replication = True
        assert run("provision")[0] == cli.EXIT_TIMEOUT
        fake_admin.reject_replication = False

        assert run("verify")[0] == cli.EXIT_OK
        code, out, _ = run("rollback")
        assert code == cli.EXIT_OK
        assert "rolled-back" in out

    def test_recover_timeout(self, run, fake_admin):
        fake_admin.arm_directly()
        fake_admin.reject_replication = True
        code, _, err = run("recover")
        assert code == cli.EXIT_FAILED
        assert "RecoveryTimeout" not in err
        assert "did not resume streaming" in err

    def test_refresh_missing_dump(self, run, fake_admin, tmp_path):
        fake_admin.arm_directly()
        code, _, _ = run("refresh", "app", "--dump", str(tmp_path / "missing.sql"))
        assert code == cli.EXIT_INVALID

    def test_add_and_remove_database(self, run, fake_admin):
        fake_admin.arm_directly()
        assert run("add-database", "crm")[0] == cli.EXIT_OK
        assert run("remove-database", "crm")[0] == cli.EXIT_OK
        assert "crm" not in fake_admin.replica.databases


class TestReads:
    def test_status_json(self, run, fake_admin):
        fake_admin.arm_directly()
        code, out, _ = run("status", "--json")
        data = json.loads(out)
        assert code == cli.EXIT_OK
        assert data["primary"]["databases"] == ["app"]
        assert data["replica"]["read_only"] is True
        assert data["replica"]["link"]["state"] == "streaming"

    def test_status_text_with_unreachable_replica(self, run, fake_admin):
        fake_admin.down["replica"] = -1
        code, out, _ = run("status")
        assert code == cli.EXIT_OK
        assert "Reachable: ✗" in out
        assert "no replication link" in out

    def test_operations(self, run):
        run("provision")
        code, out, _ = run("operations", "--json")
        data = json.loads(out)
        assert code == cli.EXIT_OK
        assert [op["kind"] for op in data["operations"]] == ["provision"]

    def test_snapshots_list_and_purge(self, run, runbook):
        run("provision")
        snapshot_id = runbook.list_snapshots()[0].snapshot_id

        code, out, _ = run("snapshots", "list")
        assert code == cli.EXIT_OK
        assert snapshot_id in out

        assert run("snapshots", "purge", snapshot_id)[0] == cli.EXIT_OK
        assert runbook.list_snapshots() == []
        assert run("snapshots", "purge", snapshot_id)[0] == cli.EXIT_INVALID

    def test_cancel_without_operation(self, run):
        code, out, _ = run("cancel")
        assert code == cli.EXIT_FAILED
        assert "No operation running" in out

    def test_cancel_running_operation(self, run, config):
        with OperationLock(config.state_dir, "replica", "refresh"):
            code, out, _ = run("cancel")
        assert code == cli.EXIT_OK
        assert "refresh" in out
        assert (config.state_dir / "cancel" / "replica").exists()

    def test_compose(self, run, config):
        code, out, _ = run("compose")
        assert code == cli.EXIT_OK
        assert config.compose_file.exists()
