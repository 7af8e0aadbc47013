"""Read-only inspection of the live host."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from reconciler.bootloader import detect_bootloader, get_adapter
from reconciler.constants import (
    OS_FAMILIES,
    OS_RELEASE,
    PROC_CMDLINE,
    PROC_OSRELEASE,
    SYS_EFI,
    SYS_IOMMU,
    SYS_NET,
)
from reconciler.domain import DomainReconciler, device_keys, qemu_args
from reconciler.exceptions import ManagerError
from reconciler.host import HostContext
from reconciler.models import BootloaderKind, SystemFacts, TargetSpec
from reconciler.modules import ModuleReconciler
from reconciler.packages import PackageInstaller
from reconciler.tunnel import TunnelReconciler
from reconciler.utils import log, read_text

T = TypeVar("T")


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep or key.startswith("#"):
            continue
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def os_family(os_id: str) -> str:
    os_id = os_id.lower()
    if os_id.startswith("proxmox"):
        return "proxmox"
    return OS_FAMILIES.get(os_id, "unknown")


class StateProbe:
    """Build a SystemFacts snapshot.

    Each probe runs under its own guard: a failing probe records a message in
    ``probe_errors`` and leaves its fact as None (unknown) instead of failing
    the run.
    """

    def __init__(
        self,
        ctx: HostContext,
        target: Optional[TargetSpec] = None,
        tunnels: Optional[TunnelReconciler] = None,
        domains: Optional[DomainReconciler] = None,
    ) -> None:
        self.ctx = ctx
        self.target = target or TargetSpec()
        self.tunnels = tunnels
        self.domains = domains
        self._errors: List[str] = []

    def _guard(self, label: str, fn: Callable[[], T]) -> Optional[T]:
        try:
            return fn()
        except (ManagerError, OSError, ValueError) as exc:
            message = f"{label}: {exc}"
            log("WARN", f"Probe failed: {message}")
            self._errors.append(message)
            return None

    def _os(self) -> Tuple[str, str]:
        release = parse_os_release(read_text(self.ctx.path(OS_RELEASE)) or "")
        return os_family(release.get("ID", "")), release.get("PRETTY_NAME") or release.get("NAME", "")

    def _kernel(self) -> str:
        text = read_text(self.ctx.path(PROC_OSRELEASE))
        if text and text.strip():
            return text.strip()
        result = self.ctx.run(["uname", "-r"])
        if not result.ok:
            raise ManagerError("uname -r failed")
        return result.stdout.strip()

    def _cmdline(self) -> frozenset:
        text = read_text(self.ctx.path(PROC_CMDLINE))
        if text is None:
            raise ManagerError(f"{PROC_CMDLINE} not readable")
        return frozenset(text.split())

    def _iommu(self) -> bool:
        path = self.ctx.path(SYS_IOMMU)
        return path.is_dir() and any(path.iterdir())

    def _disks(self) -> Tuple[str, ...]:
        result = self.ctx.run(["lsblk", "-d", "-n", "-o", "NAME,SIZE"])
        if not result.ok:
            raise ManagerError(f"lsblk failed: {result.stderr.strip()}")
        disks = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts and not parts[0].startswith("loop"):
                disks.append(" ".join(parts))
        return tuple(disks)

    def _interfaces(self) -> Tuple[str, ...]:
        path = self.ctx.path(SYS_NET)
        if not path.is_dir():
            return ()
        return tuple(sorted(p.name for p in path.iterdir() if p.name != "lo"))

    def observe(self) -> SystemFacts:
        self._errors = []
        os_info = self._guard("os-release", self._os)
        family, os_name = os_info if os_info else (None, None)
        kernel = self._guard("kernel", self._kernel)
        bootloader = self._guard("bootloader", lambda: detect_bootloader(self.ctx)) or BootloaderKind.UNKNOWN
        adapter = get_adapter(self.ctx, bootloader)
        configured = self._guard("boot cmdline", adapter.configured_tokens)

        module_installed = module_kernels = None
        if self.target.module is not None:
            modules = ModuleReconciler(self.ctx, adapter, PackageInstaller(self.ctx), family)
            observed = self._guard("module", lambda: modules.observe(self.target.module))
            if observed is not None:
                module_installed, kernels = observed
                module_kernels = tuple(kernels)

        tunnels = ingress = service = None
        dns_targets: Dict[str, Optional[str]] = {}
        if self.target.tunnel is not None and self.tunnels is not None:
            tunnels = self._guard("tunnels", self.tunnels.list_tunnels)
            ingress = self._guard(
                "ingress",
                lambda: read_text(self.ctx.path(self.tunnels.config_path(self.target.tunnel.name))),
            )
            service = self._guard(
                "tunnel service",
                lambda: self.tunnels.service_installed(self.target.tunnel.name),
            )
            for route in self.target.tunnel.routes:
                if route.hostname:
                    dns_targets[route.hostname] = self._guard(
                        f"dns {route.hostname}", lambda h=route.hostname: self.tunnels.current_target(h)
                    )

        domain_defined = domain_devices = domain_autostart = domain_qemu = None
        if self.target.domain is not None and self.domains is not None:
            name = self.target.domain.name
            dom = self._guard("libvirt", lambda: self.domains.lookup(name))
            if not any(e.startswith("libvirt") for e in self._errors):
                domain_defined = dom is not None
            if dom is not None:
                domain_devices = self._guard("domain devices", lambda: device_keys(self.domains.persistent_xml(name)))
                domain_autostart = self._guard("domain autostart", lambda: bool(dom.autostart()))
                domain_qemu = self._guard(
                    "domain qemu args", lambda: tuple(qemu_args(self.domains.persistent_xml(name)))
                )

        return SystemFacts(
            os_family=family,
            os_name=os_name,
            kernel=kernel,
            cmdline_tokens=self._guard("cmdline", self._cmdline),
            configured_cmdline_tokens=configured,
            bootloader=bootloader,
            iommu_active=self._guard("iommu", self._iommu),
            uefi=self._guard("efi", lambda: self.ctx.path(SYS_EFI).is_dir()),
            module_installed=module_installed,
            module_kernels=module_kernels,
            disks=self._guard("disks", self._disks),
            interfaces=self._guard("interfaces", self._interfaces),
            tunnels=tunnels,
            ingress_config=ingress,
            tunnel_service=service,
            dns_targets=dns_targets,
            domain_defined=domain_defined,
            domain_devices=domain_devices,
            domain_autostart=domain_autostart,
            domain_qemu_args=domain_qemu,
            probe_errors=tuple(self._errors),
        )
