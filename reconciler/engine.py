"""Probe, plan and apply: the reconciliation loop over every component."""

from __future__ import annotations

from typing import Iterable, List, Optional

from reconciler.bootloader import BootloaderAdapter, get_adapter
from reconciler.cloudflare import CloudflareClient
from reconciler.domain import DomainReconciler, contains_sequence
from reconciler.exceptions import ManagerError
from reconciler.host import HostContext
from reconciler.models import (
    COMPONENTS,
    Delta,
    Outcome,
    PlannedAction,
    RunReport,
    Settings,
    Status,
    SystemFacts,
    TargetSpec,
)
from reconciler.modules import ModuleReconciler
from reconciler.packages import PackageInstaller
from reconciler.probe import StateProbe
from reconciler.tunnel import TunnelReconciler, render_ingress
from reconciler.utils import log, user_home


class Engine:
    """Drive every reconciler whose part of the target differs from the facts.

    Components run in a fixed order (cmdline, module, tunnel, dns, domain);
    a ``fatal`` outcome stops the run, every other outcome is collected.
    """

    def __init__(
        self,
        ctx: HostContext,
        target: TargetSpec,
        settings: Optional[Settings] = None,
        only: Optional[Iterable[str]] = None,
        bootloader: Optional[BootloaderAdapter] = None,
        installer: Optional[PackageInstaller] = None,
        tunnels: Optional[TunnelReconciler] = None,
        domains: Optional[DomainReconciler] = None,
    ) -> None:
        self.ctx = ctx
        self.target = target
        self.settings = settings or Settings(host_root=ctx.root)
        self.only = frozenset(only) if only else frozenset(COMPONENTS)
        unknown = self.only - set(COMPONENTS)
        if unknown:
            raise ValueError(f"Unknown component(s): {', '.join(sorted(unknown))}")
        self._bootloader = bootloader
        self.installer = installer or PackageInstaller(ctx, user=self.settings.user)
        self.tunnels = tunnels
        if self.tunnels is None and target.tunnel is not None:
            self.tunnels = self._build_tunnels()
        self.domains = domains
        if self.domains is None and target.domain is not None:
            self.domains = DomainReconciler(ctx, self.settings.libvirt_uri)

    def _build_tunnels(self) -> TunnelReconciler:
        settings = self.settings
        api = CloudflareClient(settings.api_token) if settings.api_token else None
        cloudflared_dir = settings.cloudflared_dir or user_home(settings.user) / ".cloudflared"
        zone = (self.target.tunnel.domain if self.target.tunnel else None) or settings.account_domain
        return TunnelReconciler(self.ctx, settings.user, cloudflared_dir, api=api, zone_domain=zone)

    @property
    def bootloader(self) -> BootloaderAdapter:
        if self._bootloader is None:
            self._bootloader = get_adapter(self.ctx)
        return self._bootloader

    def close(self) -> None:
        if self.domains is not None:
            self.domains.close()

    # -- probe ---------------------------------------------------------------

    def probe(self) -> SystemFacts:
        facts = StateProbe(self.ctx, self.target, self.tunnels, self.domains).observe()
        for message in facts.probe_errors:
            log("DEBUG", f"Unknown fact: {message}")
        return facts

    # -- plan ----------------------------------------------------------------

    def _plan_cmdline(self, facts: SystemFacts) -> Optional[PlannedAction]:
        tokens, remove = self.target.cmdline_tokens, self.target.remove_tokens
        if not tokens and not remove:
            return None
        configured = facts.configured_cmdline_tokens
        if configured is None:
            return PlannedAction("cmdline", "configured cmdline unknown", sorted(tokens))
        missing = sorted(t for t in tokens if t not in configured)
        present = sorted(f"-{t}" for t in remove if t in configured)
        if missing or present:
            return PlannedAction("cmdline", "kernel cmdline differs", missing + present)
        return None

    def _plan_module(self, facts: SystemFacts) -> Optional[PlannedAction]:
        module = self.target.module
        if module is None:
            return None
        if not facts.module_installed:
            reason = "module state unknown" if facts.module_installed is None else "module not installed"
            return PlannedAction("module", reason, [module.name])
        if facts.kernel is None or facts.kernel not in (facts.module_kernels or ()):
            return PlannedAction("module", "module not built for running kernel", [module.name])
        return None

    def _plan_tunnel(self, facts: SystemFacts) -> Optional[PlannedAction]:
        tunnel = self.target.tunnel
        if tunnel is None or self.tunnels is None:
            return None
        if facts.tunnels is None:
            return PlannedAction("tunnel", "tunnel list unknown", [tunnel.name])
        tunnel_id = facts.tunnels.get(tunnel.name)
        if tunnel_id is None:
            return PlannedAction("tunnel", "tunnel absent", [tunnel.name])
        items = []
        expected = render_ingress(tunnel_id, str(self.tunnels.credentials_path(tunnel_id)), tunnel.routes)
        if facts.ingress_config != expected:
            items.append("ingress")
        if not facts.tunnel_service:
            items.append("service")
        if items:
            return PlannedAction("tunnel", "tunnel config differs", items)
        return None

    def _plan_dns(self, facts: SystemFacts) -> Optional[PlannedAction]:
        tunnel = self.target.tunnel
        if tunnel is None or self.tunnels is None:
            return None
        tunnel_id = (facts.tunnels or {}).get(tunnel.name)
        expected = f"{tunnel_id}.{self.tunnels.routing_domain}" if tunnel_id else None
        stale = [
            r.hostname
            for r in tunnel.routes
            if r.hostname and (expected is None or facts.dns_targets.get(r.hostname) != expected)
        ]
        if stale:
            return PlannedAction("dns", "records missing or not pointing at the tunnel", stale)
        return None

    def _plan_domain(self, facts: SystemFacts) -> Optional[PlannedAction]:
        spec = self.target.domain
        if spec is None:
            return None
        if not facts.domain_defined:
            reason = "domain state unknown" if facts.domain_defined is None else "domain undefined"
            return PlannedAction("domain", reason, [spec.name])
        items = []
        present = facts.domain_devices
        for device in spec.devices:
            key = device.key  # type: ignore[attr-defined]
            if present is None or key not in present:
                items.append(f"{key[0]}:{key[1]}")
        if facts.domain_autostart is None or facts.domain_autostart != spec.autostart:
            items.append("autostart")
        if spec.qemu_args and not contains_sequence(facts.domain_qemu_args or (), spec.qemu_args):
            items.append("qemu-args")
        if items:
            return PlannedAction("domain", "domain definition differs", items)
        return None

    def plan(self, facts: SystemFacts) -> Delta:
        """Compare facts to the target; an unknown fact always plans a change."""
        planners = {
            "cmdline": self._plan_cmdline,
            "module": self._plan_module,
            "tunnel": self._plan_tunnel,
            "dns": self._plan_dns,
            "domain": self._plan_domain,
        }
        delta = Delta()
        for component in COMPONENTS:
            if component not in self.only:
                continue
            action = planners[component](facts)
            if action is not None:
                delta.actions.append(action)
        return delta

    # -- apply ---------------------------------------------------------------

    def _apply_component(self, component: str, facts: SystemFacts) -> List[Outcome]:
        target = self.target
        if component == "cmdline":
            try:
                change = self.bootloader.ensure_cmdline_tokens(target.cmdline_tokens, target.remove_tokens)
            except ManagerError as exc:
                return [Outcome.from_error(component, exc)]
            return [Outcome.from_change(component, change, " ".join(sorted(target.cmdline_tokens)))]
        if component == "module" and target.module is not None:
            modules = ModuleReconciler(self.ctx, self.bootloader, self.installer, facts.os_family)
            return [modules.reconcile(target.module, facts.kernel)]
        if component == "tunnel" and target.tunnel is not None and self.tunnels is not None:
            return [self.tunnels.reconcile(target.tunnel)]
        if component == "dns" and target.tunnel is not None and self.tunnels is not None:
            return self.tunnels.reconcile_all_dns(target.tunnel)
        if component == "domain" and target.domain is not None and self.domains is not None:
            return [self.domains.reconcile(target.domain)]
        if component in COMPONENTS:
            return [Outcome(component, Status.FAILED, f"'{component}' is not part of the target")]
        raise ValueError(f"Unknown component: {component}")

    def apply(self, delta: Delta, facts: Optional[SystemFacts] = None) -> RunReport:
        if facts is None:
            facts = self.probe()
        report = RunReport()
        planned = set(delta.components)
        for component in COMPONENTS:
            if component not in planned:
                continue
            log("INFO", f"Reconciling {component}")
            for outcome in self._apply_component(component, facts):
                report.outcomes.append(outcome)
                if outcome.status == Status.FATAL:
                    log("ERROR", f"{component}: {outcome.message}")
                    report.halted = True
            if report.halted:
                log("ERROR", "Run halted; remaining components were not reconciled")
                break
        self._summarise(report)
        return report

    def reconcile(self) -> RunReport:
        facts = self.probe()
        delta = self.plan(facts)
        if delta.empty:
            log("SUCCESS", "Nothing to do: host matches target")
            return RunReport()
        return self.apply(delta, facts)

    def _summarise(self, report: RunReport) -> None:
        for outcome in report.outcomes:
            if outcome.satisfied:
                level = "SUCCESS" if outcome.status == Status.CHANGED else "INFO"
            else:
                level = "WARN"
            suffix = f" ({outcome.message})" if outcome.message else ""
            log(level, f"{outcome.component}: {outcome.status.value}{suffix}")
