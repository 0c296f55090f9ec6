# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for the managed ~/.ssh/config block."""

import pytest

from periscope.core.config import config_from_dict
from periscope.core.errors import ConfigurationError
from periscope.core.ssh_config import (
    END_MARKER,
    START_MARKER,
    BlockStatus,
    apply_block,
    check_ssh_config,
    has_unmanaged_conflict,
    remove_block,
    render_block,
    render_block_for,
)

UNRELATED = "Host github.com\n    User git\n"


@pytest.fixture
def block() -> str:
    return render_block(
        host_alias="periscope-vscode-tunnel",
        user="bsmith",
        login_node="login01.example.edu",
        job_name="vscode-tunnel-job",
        port=4582,
        identity_file="/home/bsmith/.ssh/id_rsa",
    )


class TestRenderBlock:
    def test_markers(self, block):
        lines = block.splitlines()
        assert lines[0] == START_MARKER
        assert lines[-1] == END_MARKER

    def test_proxy_command(self, block):
        """The node is resolved on the login node at connect time."""
        assert (
            'ProxyCommand ssh bsmith@login01.example.edu "nc \\$(squeue --me --name=vscode-tunnel-job '
            '--states=R -h -O NodeList) 4582"'
        ) in block

    def test_host_options(self, block):
        assert "Host periscope-vscode-tunnel\n" in block
        assert "    IdentityFile /home/bsmith/.ssh/id_rsa\n" in block
        assert "    IdentitiesOnly yes\n" in block
        assert "    IgnoreUnknown UseKeychain\n" in block

    def test_from_config(self, config_dict):
        config = config_from_dict(config_dict)
        rendered = render_block_for(config)
        assert "bsmith@login01.example.edu" in rendered
        assert "--name=vscode-tunnel-job" in rendered


class TestBlockStatus:
    """Comparing the file against the desired block."""

    def test_missing_file(self, tmp_path, block):
        assert check_ssh_config(tmp_path / "config", block, "periscope-vscode-tunnel") == BlockStatus.MISSING

    def test_up_to_date(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(UNRELATED + "\n" + block + "\n")
        assert check_ssh_config(path, block, "periscope-vscode-tunnel") == BlockStatus.UP_TO_DATE

    def test_whitespace_differences_ignored(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(block.replace("    ", "\t") + "\n\n")
        assert check_ssh_config(path, block, "periscope-vscode-tunnel") == BlockStatus.UP_TO_DATE

    def test_outdated(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(block.replace("4582", "4000") + "\n")
        assert check_ssh_config(path, block, "periscope-vscode-tunnel") == BlockStatus.OUTDATED

    def test_unmanaged_conflict(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text("Host periscope-vscode-tunnel\n    HostName somewhere\n")
        with pytest.raises(ConfigurationError, match="conflicting"):
            check_ssh_config(path, block, "periscope-vscode-tunnel")


class TestConflictDetection:
    def test_managed_host_is_not_a_conflict(self, block):
        assert not has_unmanaged_conflict(block, "periscope-vscode-tunnel")

    def test_prefix_is_not_a_conflict(self):
        assert not has_unmanaged_conflict("Host periscope-vscode-tunnel-old\n", "periscope-vscode-tunnel")


class TestApplyBlock:
    """Rewriting the file."""

    def test_append_to_new_file(self, tmp_path, block):
        path = tmp_path / ".ssh" / "config"
        apply_block(path, block)
        assert path.read_text() == block + "\n"
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_preserves_other_entries(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(UNRELATED)
        apply_block(path, block)
        text = path.read_text()
        assert text.startswith(UNRELATED)
        assert text.endswith(block + "\n")

    def test_replaces_outdated_block(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(UNRELATED + "\n" + block.replace("4582", "4000") + "\n" + "Host other\n    User x\n")
        apply_block(path, block)
        text = path.read_text()
        assert text.count(START_MARKER) == 1
        assert "4000" not in text
        assert "Host other" in text
        assert "Host github.com" in text

    def test_idempotent(self, tmp_path, block):
        path = tmp_path / "config"
        path.write_text(UNRELATED)
        apply_block(path, block)
        first = path.read_text()
        apply_block(path, block)
        assert path.read_text() == first

    def test_no_temp_files_left(self, tmp_path, block):
        path = tmp_path / "config"
        apply_block(path, block)
        assert [p.name for p in tmp_path.iterdir()] == ["config"]


def test_remove_block_without_block():
    assert remove_block(UNRELATED) == UNRELATED
