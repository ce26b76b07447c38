"""Tests for CLI commands.

These tests verify that all CLI commands are properly registered and that
main() routes them against a config rooted in a temp directory.
"""

import json

import pytest
import yaml

from paygate_ledger.runner.main import create_cli, main


@pytest.fixture
def config_file(tmp_path):
    """Config file pointing every path into tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "data_dir": str(tmp_path / "data"),
                "state_db_path": str(tmp_path / "data" / "ledger.db"),
                "backup": {
                    "backup_dir": str(tmp_path / "database_backups"),
                    "corruption_backup_dir": str(tmp_path / "corruption_backups"),
                },
                "watcher": {"enabled": False},
                "io": {"retry_wait_seconds": 0.001, "lock_timeout_seconds": 2},
            }
        )
    )
    return path


@pytest.fixture
def seeded_config(config_file, tmp_path, sample_keys, sample_merchant, sample_processor):
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    (data_dir / "keys.json").write_text(json.dumps(sample_keys))
    (data_dir / "merchant_transactions.json").write_text(json.dumps(sample_merchant))
    (data_dir / "processor_payments.json").write_text(json.dumps(sample_processor))
    return config_file


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    @pytest.mark.parametrize(
        "command",
        ["status", "backup", "list", "cleanup", "repair", "startup", "watch", "init-config"],
    )
    def test_command_registered(self, command):
        args = create_cli().parse_args([command])
        assert args.command == command

    def test_backup_defaults_to_manual(self):
        args = create_cli().parse_args(["backup"])
        assert args.reason == "manual"
        assert args.cleanup is False

    def test_cleanup_dry_run_defaults_to_config(self):
        """Without --dry-run the config decides."""
        parser = create_cli()
        assert parser.parse_args(["cleanup"]).dry_run is None
        assert parser.parse_args(["cleanup", "--dry-run"]).dry_run is True

    def test_restore_options(self):
        args = create_cli().parse_args(["restore", "keys.json", "--auto", "--no-backup"])
        assert args.target == "keys.json"
        assert args.auto is True
        assert args.no_backup is True
        assert args.force is False

    def test_sync_requires_direction(self):
        parser = create_cli()
        assert parser.parse_args(["sync", "ingest"]).direction == "ingest"
        with pytest.raises(SystemExit):
            parser.parse_args(["sync", "sideways"])


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_init_config(self, tmp_path):
        path = tmp_path / "new" / "config.yaml"
        assert main(["-c", str(path), "init-config"]) == 0
        assert yaml.safe_load(path.read_text())["data_dir"] == "data"
        # Refuses to overwrite
        assert main(["-c", str(path), "init-config"]) == 1

    def test_invalid_config_is_rejected(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"io": {"max_retries": 0}}))
        assert main(["-c", str(path), "status"]) == 1
        assert "io.max_retries" in capsys.readouterr().out

    def test_startup_then_status(self, seeded_config, tmp_path, capsys):
        assert main(["-c", str(seeded_config), "startup"]) == 0
        assert (tmp_path / "data" / "ledger.db").exists()

        capsys.readouterr()

        assert main(["-c", str(seeded_config), "status", "--json"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["isHealthy"] is True

    def test_backup_list_verify(self, seeded_config, tmp_path, capsys):
        assert main(["-c", str(seeded_config), "backup"]) == 0
        backups = sorted((tmp_path / "database_backups").glob("*.bak"))
        assert len(backups) == 3

        assert main(["-c", str(seeded_config), "list", "--verify"]) == 0
        assert "3 backup(s)" in capsys.readouterr().out

        assert main(["-c", str(seeded_config), "verify", backups[0].name]) == 0
        assert main(["-c", str(seeded_config), "verify", "nope.bak"]) == 1

    def test_restore_auto(self, seeded_config, tmp_path):
        main(["-c", str(seeded_config), "backup"])
        keys_path = tmp_path / "data" / "keys.json"
        keys_path.write_text("corrupt")

        assert main(["-c", str(seeded_config), "restore", "keys.json", "--auto"]) == 0
        assert json.loads(keys_path.read_text())["mnemonic"] == "encrypted:abc123"

    def test_status_reports_corruption(self, seeded_config, tmp_path):
        (tmp_path / "data" / "processor_payments.json").write_text("{")
        assert main(["-c", str(seeded_config), "status"]) == 1

    def test_repair(self, seeded_config, tmp_path, capsys, sample_address):
        (tmp_path / "data" / "merchant_transactions.json").write_text("")
        assert main(["-c", str(seeded_config), "repair"]) == 0
        assert "Reset merchant_transactions.json" in capsys.readouterr().out
        # Re-projection must not wipe documents the store had not seen yet
        keys = json.loads((tmp_path / "data" / "keys.json").read_text())
        assert sample_address in keys["activeAddresses"]

    def test_sync_round_trip(self, seeded_config, tmp_path):
        assert main(["-c", str(seeded_config), "sync", "ingest"]) == 0
        assert main(["-c", str(seeded_config), "sync", "project"]) == 0
        merchant = json.loads((tmp_path / "data" / "merchant_transactions.json").read_text())
        assert merchant[0]["txId"] == "tx_1709287200000_abc1234"

    def test_cleanup_dry_run(self, seeded_config, capsys):
        main(["-c", str(seeded_config), "backup"])
        assert main(["-c", str(seeded_config), "cleanup", "--dry-run"]) == 0
        assert "0 deleted" in capsys.readouterr().out
