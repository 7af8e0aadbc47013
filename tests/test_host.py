"""Tests for reconciler.host module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from reconciler.constants import DEFAULT_COMMAND_TIMEOUT
from reconciler.exceptions import Fatal, TransientExternal
from reconciler.host import HostContext, SubprocessRunner


def _completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestSubprocessRunner:
    def test_default_timeout_applied(self):
        with patch("reconciler.host.subprocess.run", return_value=_completed(stdout="ok\n")) as mock_run:
            result = SubprocessRunner().run(["limine-update"])
        assert result.ok
        assert result.stdout == "ok\n"
        assert mock_run.call_args.kwargs["timeout"] == DEFAULT_COMMAND_TIMEOUT

    def test_per_call_timeout_overrides(self):
        with patch("reconciler.host.subprocess.run", return_value=_completed()) as mock_run:
            SubprocessRunner(timeout=60).run(["dig", "+short", "CNAME", "ssh.example.com"], timeout=5)
        assert mock_run.call_args.kwargs["timeout"] == 5

    def test_timeout_is_transient(self):
        expired = subprocess.TimeoutExpired(["paru", "-S", "i915-sriov-dkms"], 30)
        with patch("reconciler.host.subprocess.run", side_effect=expired):
            with pytest.raises(TransientExternal, match="timed out after 30s"):
                SubprocessRunner(timeout=30).run(["paru", "-S", "i915-sriov-dkms"])

    def test_timeout_message_hides_secret(self):
        expired = subprocess.TimeoutExpired(["cloudflared"], 10)
        with patch("reconciler.host.subprocess.run", side_effect=expired):
            with pytest.raises(TransientExternal) as exc:
                SubprocessRunner(timeout=10).run(["cloudflared", "tunnel", "token-abc"], secret=True)
        assert "token-abc" not in str(exc.value)

    def test_missing_binary_is_fatal(self):
        with patch("reconciler.host.subprocess.run", side_effect=FileNotFoundError("paru")):
            with pytest.raises(Fatal, match="'paru' is not installed"):
                SubprocessRunner().run(["paru", "-S", "x"])

    def test_check_raises_on_failure(self):
        with patch("reconciler.host.subprocess.run", return_value=_completed(1, stderr="boom\n")):
            with pytest.raises(Fatal, match="failed \\(1\\): boom"):
                SubprocessRunner().run(["mkinitcpio", "-P"], check=True)

    def test_as_user_wraps_sudo(self):
        with patch("reconciler.host.subprocess.run", return_value=_completed()) as mock_run:
            SubprocessRunner().run(["cloudflared", "tunnel", "list"], as_user="alice")
        assert mock_run.call_args[0][0][:5] == ["sudo", "-u", "alice", "-H", "--"]


class TestHostContext:
    def test_paths_rooted(self, tmp_path):
        ctx = HostContext(root=tmp_path)
        assert ctx.path("/etc/default/grub") == tmp_path / "etc/default/grub"
        assert ctx.path(Path("relative/file")) == tmp_path / "relative/file"

    def test_require_missing_tool(self, tmp_path, runner):
        ctx = HostContext(root=tmp_path, runner=runner)
        with pytest.raises(Fatal, match="bootctl"):
            ctx.require("bootctl")
        runner.on("bootctl")
        ctx.require("bootctl")
