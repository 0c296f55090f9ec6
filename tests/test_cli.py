# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for CLI wiring and argument parsing."""

from unittest.mock import MagicMock, patch

import pytest
import yaml

from periscope.cli import main as cli
from periscope.core.config import config_from_dict
from periscope.core.errors import ConfigurationError
from periscope.core.models import Endpoint
from periscope.core.remote import SSHRunner


class TestParser:
    """periscope [connect] | init | cancel."""

    def test_default_is_connect(self):
        args = cli.build_parser().parse_args([])
        assert args.func is cli.cmd_connect
        assert args.skip_checks is False
        assert args.timeout is None

    def test_connect_flags(self):
        args = cli.build_parser().parse_args(["connect", "--skip-checks", "--no-editor", "--timeout", "120"])
        assert args.func is cli.cmd_connect
        assert args.skip_checks and args.no_editor
        assert args.timeout == 120.0

    def test_global_options_survive_subcommand(self):
        args = cli.build_parser().parse_args(["--config", "/tmp/p.yaml", "-v", "cancel"])
        assert args.func is cli.cmd_cancel
        assert args.config == "/tmp/p.yaml"
        assert args.verbose is True

    def test_options_after_subcommand(self):
        args = cli.build_parser().parse_args(["init", "--config", "/tmp/p.yaml"])
        assert args.func is cli.cmd_init
        assert args.config == "/tmp/p.yaml"


class TestWiring:
    """Runners and manager built from the config."""

    def test_login_runner(self, config_dict):
        config = config_from_dict(config_dict)
        login = cli.build_login_runner(config)
        assert login.destination == "bsmith@login01.example.edu"
        assert login.batch_mode

    def test_node_runner_hops_through_login(self, config_dict):
        config = config_from_dict(config_dict)
        login = cli.build_login_runner(config)
        sweeper = cli.build_sweeper(config, login)

        node = sweeper.node_runner("gpu03")

        assert isinstance(node, SSHRunner)
        assert node.via is login
        assert node.identity_file == "/users/bsmith/.ssh/cluster_key"
        assert not node.strict_host_key_checking
        assert sweeper.home_runner is login

    def test_manager_job_spec(self, config_dict):
        data = dict(config_dict, lifecycle={"signal_margin": 120, "shutdown_grace": 45})
        config = config_from_dict(data)
        manager = cli.build_manager(config, cli.build_login_runner(config))

        spec = manager.job_spec_factory(config.to_session())

        assert spec.signal_margin == 120
        assert "--grace" in spec.command
        assert spec.command[spec.command.index("--grace") + 1] == "45.0"
        assert manager.cancel_settle_timeout == 30.0


class TestCommands:
    """Command handlers with the manager mocked out."""

    @pytest.fixture
    def config_file(self, tmp_path, config_dict):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(config_dict))
        return path

    @patch("periscope.cli.main.launch_editor")
    @patch("periscope.cli.main.build_manager")
    def test_connect_skip_checks_no_editor(self, mock_build, mock_launch, config_file):
        manager = MagicMock()
        manager.establish.return_value = Endpoint(node="gpu07", port=4582, job_id="77", host_alias="alias")
        mock_build.return_value = manager

        args = cli.build_parser().parse_args(["--config", str(config_file), "--skip-checks", "--no-editor"])
        assert cli.cmd_connect(args) == 0

        manager.establish.assert_called_once()
        mock_launch.assert_not_called()

    @patch("periscope.cli.main.build_manager")
    def test_cancel(self, mock_build, config_file):
        manager = MagicMock()
        manager.preempt.return_value = ["101"]
        mock_build.return_value = manager

        args = cli.build_parser().parse_args(["cancel", "--config", str(config_file)])
        assert cli.cmd_cancel(args) == 0
        manager.preempt.assert_called_once()
        manager.establish.assert_not_called()

    @patch("periscope.cli.main.setup_logging")
    @patch("periscope.cli.main.interactive.run_init", return_value=1)
    def test_errors_become_exit_code(self, mock_init, mock_logging, tmp_path):
        """A PeriscopeError is reported and exits with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(tmp_path / "missing.yaml"), "--skip-checks"])
        assert exc_info.value.code == 1
        mock_init.assert_called_once()


class TestSyncSSHConfig:
    @patch("periscope.cli.main.interactive.confirm", return_value=True)
    def test_writes_missing_block(self, mock_confirm, tmp_path, config_dict):
        path = tmp_path / "config"
        cli.sync_ssh_config(config_from_dict(config_dict), path)
        assert "Host periscope-vscode-tunnel" in path.read_text()

    @patch("periscope.cli.main.interactive.confirm", return_value=False)
    def test_declined(self, mock_confirm, tmp_path, config_dict):
        with pytest.raises(ConfigurationError, match="not updated"):
            cli.sync_ssh_config(config_from_dict(config_dict), tmp_path / "config")

