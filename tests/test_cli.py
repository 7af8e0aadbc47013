"""Tests for reconciler.cli module."""

from __future__ import annotations

import argparse
from unittest.mock import MagicMock, patch

import pytest

from reconciler import cli
from reconciler.exceptions import ConfigError, ManagerError
from reconciler.models import (
    Delta,
    Outcome,
    PlannedAction,
    Route,
    RunReport,
    Settings,
    Status,
    SystemFacts,
    TargetSpec,
    Tunnel,
    TunnelTarget,
)


@pytest.fixture
def engine():
    eng = MagicMock()
    eng.probe.return_value = SystemFacts()
    eng.plan.return_value = Delta()
    return eng


@pytest.fixture
def run_main(tmp_path, engine):
    """Call cli.main with settings, target and Engine replaced."""

    def _run(*argv):
        with patch("reconciler.cli.load_settings", return_value=Settings(host_root=tmp_path)), patch(
            "reconciler.cli.load_target", return_value=TargetSpec()
        ), patch("reconciler.cli.Engine", return_value=engine) as engine_cls:
            code = cli.main(list(argv))
        return code, engine_cls

    return _run


class TestParser:
    def test_only_accepts_components(self):
        args = cli.build_parser().parse_args(["--only", "tunnel", "dns", "plan"])
        assert args.only == ["tunnel", "dns"]
        assert args.command == "plan"

    def test_only_rejects_unknown(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--only", "firewall", "plan"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_deploy_remote_needs_host(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["deploy-remote", "--user", "ubuntu"])


class TestMain:
    def test_config_error(self):
        with patch("reconciler.cli.load_settings", side_effect=ConfigError("CLOUDFLARED_DIR must be absolute")), patch(
            "reconciler.cli.log"
        ) as mock_log:
            assert cli.main(["plan"]) == 1
        mock_log.assert_called_once_with("ERROR", "CLOUDFLARED_DIR must be absolute")

    def test_missing_target(self, tmp_path):
        with patch("reconciler.cli.load_settings", return_value=Settings(host_root=tmp_path)):
            assert cli.main(["--target", str(tmp_path / "none.yaml"), "plan"]) == 1

    def test_only_passed_to_engine(self, run_main):
        _, engine_cls = run_main("--only", "domain", "plan")
        assert engine_cls.call_args.kwargs["only"] == ["domain"]

    def test_runner_uses_command_timeout(self, tmp_path, engine):
        settings = Settings(host_root=tmp_path, command_timeout=42.0)
        with patch("reconciler.cli.load_settings", return_value=settings), patch(
            "reconciler.cli.load_target", return_value=TargetSpec()
        ), patch("reconciler.cli.Engine", return_value=engine) as engine_cls:
            cli.main(["plan"])
        ctx = engine_cls.call_args[0][0]
        assert ctx.root == tmp_path
        assert ctx.runner.timeout == 42.0

    def test_probe_prints_facts(self, run_main, engine, capsys):
        engine.probe.return_value = SystemFacts(kernel="6.8.1-arch1-1")
        code, _ = run_main("probe")
        out = capsys.readouterr().out
        assert code == 0
        assert "kernel: 6.8.1-arch1-1" in out
        assert "os_family: unknown" in out
        engine.plan.assert_not_called()

    def test_plan_empty(self, run_main, engine):
        code, _ = run_main("plan")
        assert code == 0
        engine.apply.assert_not_called()

    def test_plan_with_changes(self, run_main, engine, capsys):
        engine.plan.return_value = Delta([PlannedAction("cmdline", "kernel cmdline differs", ["iommu=pt"])])
        code, _ = run_main("plan")
        assert code == 2
        assert "cmdline  kernel cmdline differs: iommu=pt" in capsys.readouterr().out
        engine.apply.assert_not_called()

    def test_apply_nothing_to_do(self, run_main, engine):
        code, _ = run_main("apply")
        assert code == 0
        engine.apply.assert_not_called()

    def test_apply_returns_report_code(self, run_main, engine, capsys):
        engine.plan.return_value = Delta([PlannedAction("dns", "records missing", ["ssh.example.com"])])
        engine.apply.return_value = RunReport(
            [Outcome("dns", Status.CONFLICT, "ssh.example.com", detail="conflict-wrong-target")]
        )
        code, _ = run_main("apply")
        assert code == 2
        out = capsys.readouterr().out
        assert "- dns: ssh.example.com [conflict-wrong-target]" in out
        engine.close.assert_called_once()

    def test_apply_success(self, run_main, engine):
        engine.plan.return_value = Delta([PlannedAction("tunnel", "tunnel absent", ["t1"])])
        engine.apply.return_value = RunReport([Outcome("tunnel", Status.CHANGED)])
        code, _ = run_main("apply")
        assert code == 0
        facts = engine.probe.return_value
        engine.apply.assert_called_once_with(engine.plan.return_value, facts)

    def test_manager_error(self, run_main, engine):
        engine.probe.side_effect = ManagerError("Failed to open libvirt connection")
        code, _ = run_main("probe")
        assert code == 1
        engine.close.assert_called_once()

    def test_unexpected_error(self, run_main, engine, capsys):
        engine.plan.side_effect = KeyError("boom")
        code, _ = run_main("plan")
        assert code == 1
        assert "Traceback" in capsys.readouterr().err


class TestShowSettings:
    def test_token_masked(self, capsys):
        cli.show_settings(Settings(api_token="cf-token-0123456789abcdef", account_domain="example.com"))
        out = capsys.readouterr().out
        assert "0123456789" not in out
        assert "api_token: cf-t" in out
        assert "account_domain: example.com" in out

    def test_unset_values(self, capsys):
        cli.show_settings(Settings())
        assert "api_token: -" in capsys.readouterr().out


class TestConflictBanner:
    def test_silent_without_conflicts(self, capsys):
        cli.print_conflict_banner(RunReport([Outcome("dns", Status.CHANGED, "a.example.com")]))
        assert capsys.readouterr().out == ""

    def test_banner_border_fits_lines(self, capsys):
        cli.print_conflict_banner(RunReport([Outcome("dns", Status.CONFLICT, "a.example.com")]))
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 4
        assert lines[0] == lines[-1]
        assert "=" * 10 in lines[0]


class TestDeployRemote:
    TARGET = TargetSpec(tunnel=TunnelTarget("t1", (Route("ssh.example.com", "ssh://localhost:22"),)))

    @pytest.fixture
    def deploy_engine(self):
        eng = MagicMock()
        eng.target = self.TARGET
        eng.tunnels.find_tunnel.return_value = Tunnel("t1", "6ff42ae2-765d-4adf-8112-31c55c1551ef")
        return eng

    def _args(self, **overrides):
        values = dict(host="192.168.122.50", user="ubuntu", port=22, key=None, remote_dir=None)
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_ships_config(self, deploy_engine):
        settings = Settings(poll_attempts=3, poll_interval=0.1)
        with patch("reconciler.cli.ParamikoExecutor") as executor_cls, patch(
            "reconciler.cli.wait_until_reachable", return_value=True
        ) as wait:
            assert cli.deploy_remote(deploy_engine, settings, self._args(key="/root/.ssh/id_ed25519")) == 0
        executor = executor_cls.return_value
        wait.assert_called_once_with(executor, 3, 0.1)
        tunnel = deploy_engine.tunnels.find_tunnel.return_value
        deploy_engine.tunnels.deploy_remote.assert_called_once_with(executor, tunnel, self.TARGET.tunnel.routes, None)
        executor.close.assert_called_once()

    def test_unreachable_guest(self, deploy_engine):
        with patch("reconciler.cli.ParamikoExecutor") as executor_cls, patch(
            "reconciler.cli.wait_until_reachable", return_value=False
        ):
            assert cli.deploy_remote(deploy_engine, Settings(), self._args()) == 1
        deploy_engine.tunnels.deploy_remote.assert_not_called()
        executor_cls.return_value.close.assert_called_once()

    def test_tunnel_not_created_yet(self, deploy_engine):
        deploy_engine.tunnels.find_tunnel.return_value = None
        with patch("reconciler.cli.ParamikoExecutor") as executor_cls:
            assert cli.deploy_remote(deploy_engine, Settings(), self._args()) == 1
        executor_cls.assert_not_called()

    def test_needs_tunnel_section(self):
        eng = MagicMock()
        eng.target = TargetSpec()
        with pytest.raises(ConfigError, match="tunnel"):
            cli.deploy_remote(eng, Settings(), self._args())
