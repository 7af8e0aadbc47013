"""CLI entry points for homelab-reconciler."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from reconciler.config import load_settings, load_target, resolve_target_path
from reconciler.engine import Engine
from reconciler.exceptions import ConfigError, ManagerError
from reconciler.host import HostContext, SubprocessRunner
from reconciler.models import COMPONENTS, Delta, RunReport, Settings, SystemFacts
from reconciler.remote import ParamikoExecutor, wait_until_reachable
from reconciler.utils import log, mask_secret


def show_settings(settings: Settings) -> None:
    """Print resolved settings with the API token masked."""
    for field in dataclasses.fields(settings):
        value = getattr(settings, field.name)
        if field.name == "api_token" and value:
            value = mask_secret(value)
        print(f"  {field.name}: {value if value is not None else '-'}")


def show_facts(facts: SystemFacts) -> None:
    """Print every observed fact; unknown facts print as ``unknown``."""
    for field in dataclasses.fields(facts):
        value = getattr(facts, field.name)
        if value is None:
            print(f"  {field.name}: unknown")
        elif isinstance(value, (frozenset, set)):
            print(f"  {field.name}: {' '.join(sorted(str(v) for v in value)) or '-'}")
        elif isinstance(value, dict):
            print(f"  {field.name}:")
            for key in sorted(value):
                print(f"    {key}: {value[key] if value[key] is not None else 'unknown'}")
        elif isinstance(value, tuple):
            print(f"  {field.name}:")
            for item in value:
                print(f"    - {item}")
        else:
            print(f"  {field.name}: {getattr(value, 'value', value)}")


def show_plan(delta: Delta) -> None:
    if delta.empty:
        log("SUCCESS", "Host matches target; nothing to apply")
        return
    for action in delta.actions:
        items = f": {', '.join(action.items)}" if action.items else ""
        print(f"  {action.component:<8} {action.reason}{items}")


def print_conflict_banner(report: RunReport) -> None:
    """Print conflicts that need a human decision in a visually distinct block."""
    if not report.conflicts:
        return
    lines: List[str] = ["  Conflicts left untouched (resolve manually):"]
    for outcome in report.conflicts:
        detail = f" [{outcome.detail}]" if outcome.detail else ""
        lines.append(f"  - {outcome.component}: {outcome.message}{detail}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[1;33m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def deploy_remote(engine: Engine, settings: Settings, args: argparse.Namespace) -> int:
    target = engine.target.tunnel
    if target is None or engine.tunnels is None:
        raise ConfigError("deploy-remote needs a 'tunnel' section in the target file")
    tunnel = engine.tunnels.find_tunnel(target.name)
    if tunnel is None:
        log("ERROR", f"Tunnel '{target.name}' does not exist yet; run 'apply' first")
        return 1

    executor = ParamikoExecutor(
        args.host,
        args.user,
        port=args.port,
        key_path=Path(args.key) if args.key else None,
    )
    try:
        if not wait_until_reachable(executor, settings.poll_attempts, settings.poll_interval):
            log("ERROR", f"Guest {args.host} did not become reachable over SSH")
            return 1
        remote_dir = Path(args.remote_dir) if args.remote_dir else None
        engine.tunnels.deploy_remote(executor, tunnel, target.routes, remote_dir)
    finally:
        executor.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Idempotent homelab host reconciler")
    parser.add_argument("--target", metavar="PATH", help="Target YAML file (default: $RECONCILE_TARGET)")
    parser.add_argument(
        "--only",
        nargs="+",
        choices=COMPONENTS,
        metavar="COMPONENT",
        help=f"Restrict to components: {', '.join(COMPONENTS)}",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("probe", help="Print observed host facts")
    sub.add_parser("plan", help="Show what apply would change")
    sub.add_parser("apply", help="Apply only what differs from the target")

    deploy = sub.add_parser("deploy-remote", help="Ship tunnel ingress and credentials to a guest")
    deploy.add_argument("--host", required=True, help="Guest address")
    deploy.add_argument("--user", required=True, help="SSH login user")
    deploy.add_argument("--port", type=int, default=22, help="SSH port (default: 22)")
    deploy.add_argument("--key", help="Private key file")
    deploy.add_argument("--remote-dir", help="Directory on the guest (default: /etc/cloudflared-<name>)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
        target = load_target(resolve_target_path(args.target))
    except ConfigError as exc:
        log("ERROR", str(exc))
        return 1

    ctx = HostContext(root=settings.host_root, runner=SubprocessRunner(timeout=settings.command_timeout))
    engine = Engine(ctx, target, settings=settings, only=args.only)
    try:
        if args.command == "deploy-remote":
            return deploy_remote(engine, settings, args)

        facts = engine.probe()
        if args.command == "probe":
            print("Settings:")
            show_settings(settings)
            print("Facts:")
            show_facts(facts)
            return 0

        delta = engine.plan(facts)
        if args.command == "plan":
            show_plan(delta)
            return 0 if delta.empty else 2

        if delta.empty:
            log("SUCCESS", "Nothing to do: host matches target")
            return 0
        report = engine.apply(delta, facts)
        print_conflict_banner(report)
        if report.exit_code == 0:
            log("SUCCESS", "Host reconciled")
        return report.exit_code
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        engine.close()
