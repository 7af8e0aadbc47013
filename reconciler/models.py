"""Data models for homelab-reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Tuple


class BootloaderKind(str, Enum):
    LIMINE = "limine"
    GRUB = "grub"
    SYSTEMD_BOOT = "systemd-boot"
    UNKNOWN = "unknown"


class PackageManagerKind(str, Enum):
    PACMAN = "pacman"
    APT = "apt"
    DNF = "dnf"
    UNKNOWN = "unknown"


class Change(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not-found"


class ModuleState(str, Enum):
    NOT_INSTALLED = "not-installed"
    INSTALLED_WRONG_KERNEL = "installed-wrong-kernel"
    INSTALLED_MATCHING_KERNEL = "installed-matching-kernel"


class DnsOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ALREADY_CORRECT = "already-correct"
    CONFLICT_WRONG_TARGET = "conflict-wrong-target"
    UNKNOWN = "unknown"


class Status(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"
    CONFLICT = "conflict"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"
    FATAL = "fatal"


COMPONENTS = ("cmdline", "module", "tunnel", "dns", "domain")


class Route(NamedTuple):
    hostname: Optional[str]
    service: str
    origin_host_header: Optional[str] = None
    dns_overwrite: bool = False

    @property
    def is_catch_all(self) -> bool:
        return not self.hostname


@dataclass(frozen=True)
class Tunnel:
    name: str
    id: str

    def dns_target(self, routing_domain: str) -> str:
        return f"{self.id}.{routing_domain}"


@dataclass(frozen=True)
class DNSRecord:
    id: str
    hostname: str
    target: str
    type: str = "CNAME"


@dataclass(frozen=True)
class BootEntry:
    index: int
    title: str
    kernel_version: Optional[str] = None
    path: Optional[str] = None

    @property
    def identity(self) -> str:
        return self.path or self.title


@dataclass(frozen=True)
class FilesystemShare:
    source: Path
    target: str
    driver: str = "virtiofs"
    accessmode: str = "passthrough"
    readonly: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return ("filesystem", self.target)


@dataclass(frozen=True)
class PciPassthrough:
    address: str  # 0000:00:02.1
    rom_file: Optional[str] = None
    guest_address: Optional[str] = None
    alias: Optional[str] = None
    managed: bool = True

    @property
    def key(self) -> Tuple[str, str]:
        return ("hostdev", self.address.lower())


@dataclass(frozen=True)
class ModuleTarget:
    name: str
    min_kernel: Optional[str] = None
    packages: Tuple[Tuple[str, str], ...] = ()  # (os family, package name)
    copr: Optional[str] = None
    deb_repo: Optional[str] = None

    def package_for(self, os_family: Optional[str]) -> str:
        for family, package in self.packages:
            if family == os_family:
                return package
        return self.name


@dataclass(frozen=True)
class TunnelTarget:
    name: str
    routes: Tuple[Route, ...]
    domain: Optional[str] = None


@dataclass(frozen=True)
class DomainSpec:
    name: str
    memory_mb: int = 4096
    vcpus: int = 2
    disk_path: Optional[Path] = None
    disk_size_gb: int = 40
    iso_path: Optional[Path] = None
    network: str = "default"
    machine: str = "pc"
    uefi: bool = True
    autostart: bool = True
    devices: Tuple[object, ...] = ()
    qemu_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TargetSpec:
    cmdline_tokens: FrozenSet[str] = frozenset()
    remove_tokens: FrozenSet[str] = frozenset()
    module: Optional[ModuleTarget] = None
    tunnel: Optional[TunnelTarget] = None
    domain: Optional[DomainSpec] = None


@dataclass(frozen=True)
class SystemFacts:
    os_family: Optional[str] = None
    os_name: Optional[str] = None
    kernel: Optional[str] = None
    cmdline_tokens: Optional[FrozenSet[str]] = None
    configured_cmdline_tokens: Optional[FrozenSet[str]] = None
    bootloader: BootloaderKind = BootloaderKind.UNKNOWN
    iommu_active: Optional[bool] = None
    uefi: Optional[bool] = None
    module_installed: Optional[bool] = None
    module_kernels: Optional[Tuple[str, ...]] = None
    disks: Optional[Tuple[str, ...]] = None
    interfaces: Optional[Tuple[str, ...]] = None
    tunnels: Optional[Dict[str, str]] = None
    ingress_config: Optional[str] = None
    tunnel_service: Optional[bool] = None
    dns_targets: Dict[str, Optional[str]] = field(default_factory=dict)
    domain_defined: Optional[bool] = None
    domain_devices: Optional[FrozenSet[Tuple[str, str]]] = None
    domain_autostart: Optional[bool] = None
    domain_qemu_args: Optional[Tuple[str, ...]] = None
    probe_errors: Tuple[str, ...] = ()


@dataclass
class Outcome:
    component: str
    status: Status
    message: str = ""
    detail: Optional[str] = None

    @property
    def satisfied(self) -> bool:
        return self.status in (Status.CHANGED, Status.UNCHANGED)

    @classmethod
    def from_change(cls, component: str, change: Change, message: str = "") -> "Outcome":
        return cls(component, Status(change.value), message)

    @classmethod
    def from_error(cls, component: str, exc: Exception) -> "Outcome":
        return cls(component, Status(getattr(exc, "status", "failed")), str(exc))


@dataclass
class PlannedAction:
    component: str
    reason: str
    items: List[str] = field(default_factory=list)


@dataclass
class Delta:
    actions: List[PlannedAction] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.actions

    @property
    def components(self) -> List[str]:
        return [action.component for action in self.actions]


@dataclass
class RunReport:
    outcomes: List[Outcome] = field(default_factory=list)
    halted: bool = False

    @property
    def conflicts(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == Status.CONFLICT]

    @property
    def changed(self) -> bool:
        return any(o.status == Status.CHANGED for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        if self.halted or any(o.status == Status.FATAL for o in self.outcomes):
            return 1
        if all(o.satisfied for o in self.outcomes):
            return 0
        return 2


@dataclass
class Settings:
    host_root: Path = Path("/")
    libvirt_uri: str = "qemu:///system"
    cloudflared_dir: Optional[Path] = None
    api_token: Optional[str] = field(default=None, repr=False)
    account_domain: Optional[str] = None
    user: str = "root"
    poll_attempts: int = 24
    poll_interval: float = 5.0
    command_timeout: float = 1800.0
