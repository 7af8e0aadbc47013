"""Kernel module reconciliation (DKMS / akmods builds against the booted kernel)."""

from __future__ import annotations

import re
from typing import List, NamedTuple, Optional, Tuple

from reconciler.bootloader import BootloaderAdapter
from reconciler.exceptions import Fatal, ManagerError
from reconciler.host import HostContext
from reconciler.models import Change, ModuleState, ModuleTarget, Outcome, PackageManagerKind, Status
from reconciler.packages import PackageInstaller, package_manager_for
from reconciler.utils import kernel_at_least, log, newest_kernel


class DkmsEntry(NamedTuple):
    name: str
    version: str
    kernel: Optional[str]
    state: str


def _normalise(name: str) -> str:
    name = name.lower().replace("_", "-")
    for affix in ("akmod-", "kmod-"):
        if name.startswith(affix):
            name = name[len(affix):]
    if name.endswith("-dkms"):
        name = name[: -len("-dkms")]
    return name


def parse_dkms_status(output: str) -> List[DkmsEntry]:
    """Parse ``dkms status`` in both the ``name/version, kernel, arch: state``
    form and the legacy ``name, version, kernel, arch: state`` form."""
    entries: List[DkmsEntry] = []
    for line in output.splitlines():
        line = line.strip()
        if ":" not in line:
            continue
        head, _, state = line.rpartition(":")
        parts = [p.strip() for p in head.split(",") if p.strip()]
        if not parts:
            continue
        if "/" in parts[0]:
            name, version = parts[0].split("/", 1)
            rest = parts[1:]
        elif len(parts) >= 2:
            name, version = parts[0], parts[1]
            rest = parts[2:]
        else:
            continue
        kernel = rest[0] if rest else None
        entries.append(DkmsEntry(name, version, kernel, state.strip()))
    return entries


def built_kernels(entries: List[DkmsEntry], module_name: str) -> List[str]:
    wanted = _normalise(module_name)
    kernels: List[str] = []
    for entry in entries:
        if not _normalise(entry.name).startswith(wanted) or not entry.kernel:
            continue
        if re.search(r"installed|built", entry.state) and entry.kernel not in kernels:
            kernels.append(entry.kernel)
    return kernels


def classify(installed: bool, kernels: List[str], running_kernel: Optional[str]) -> ModuleState:
    if not installed and not kernels:
        return ModuleState.NOT_INSTALLED
    if running_kernel and running_kernel in kernels:
        return ModuleState.INSTALLED_MATCHING_KERNEL
    return ModuleState.INSTALLED_WRONG_KERNEL


class ModuleReconciler:
    """Install the module package and keep the default boot entry on a kernel it was built for.

    A build for a different kernel than the running one is handled by pinning
    that kernel as the boot default; rebuilding is left to the package's own
    tooling.
    """

    component = "module"

    def __init__(
        self,
        ctx: HostContext,
        bootloader: BootloaderAdapter,
        installer: PackageInstaller,
        os_family: Optional[str],
    ) -> None:
        self.ctx = ctx
        self.bootloader = bootloader
        self.installer = installer
        self.os_family = os_family

    @property
    def manager(self) -> PackageManagerKind:
        return package_manager_for(self.os_family)

    def _kmod_kernels(self, module: ModuleTarget) -> List[str]:
        """Kernels carrying an akmods-built copy under /lib/modules/<kernel>/extra."""
        root = self.ctx.path("/lib/modules")
        if not root.is_dir():
            return []
        wanted = _normalise(module.name)
        kernels = []
        for kernel_dir in sorted(root.iterdir()):
            extra = kernel_dir / "extra"
            if extra.is_dir() and any(_normalise(p.name).startswith(wanted) for p in extra.iterdir()):
                kernels.append(kernel_dir.name)
        return kernels

    def observe(self, module: ModuleTarget) -> Tuple[bool, List[str]]:
        if self.ctx.has("dkms"):
            result = self.ctx.run(["dkms", "status"])
            kernels = built_kernels(parse_dkms_status(result.stdout), module.name) if result.ok else []
        else:
            kernels = self._kmod_kernels(module)
        installed = bool(kernels) or self.installer.is_installed(
            self.manager, module.package_for(self.os_family)
        )
        return installed, kernels

    def state(self, module: ModuleTarget, running_kernel: Optional[str]) -> ModuleState:
        installed, kernels = self.observe(module)
        return classify(installed, kernels, running_kernel)

    def reconcile(self, module: ModuleTarget, running_kernel: Optional[str]) -> Outcome:
        try:
            return self._reconcile(module, running_kernel)
        except ManagerError as exc:
            if not isinstance(exc, Fatal):
                log("WARN", f"{module.name}: {exc}")
            return Outcome.from_error(self.component, exc)

    def _reconcile(self, module: ModuleTarget, running_kernel: Optional[str]) -> Outcome:
        if running_kernel and not kernel_at_least(running_kernel, module.min_kernel):
            log("WARN", f"Running kernel {running_kernel} is older than {module.min_kernel} required by {module.name}")

        installed, kernels = self.observe(module)
        state = classify(installed, kernels, running_kernel)
        installed_now = False
        if state == ModuleState.NOT_INSTALLED:
            self.installer.install(self.manager, module, self.os_family)
            installed_now = True
            installed, kernels = self.observe(module)
            state = classify(installed, kernels, running_kernel)
            if state == ModuleState.NOT_INSTALLED:
                return Outcome(self.component, Status.FAILED, f"{module.name} still not installed after install attempt")

        if state == ModuleState.INSTALLED_MATCHING_KERNEL:
            log("SUCCESS", f"{module.name} built for running kernel ({running_kernel})")
            change = Change.CHANGED if installed_now else Change.UNCHANGED
            return Outcome.from_change(self.component, change, f"{module.name} matches {running_kernel}")

        target = newest_kernel(kernels, module.min_kernel)
        if target is None:
            message = (
                f"{module.name} is installed but not built for any kernel"
                + (f" >= {module.min_kernel}" if module.min_kernel else "")
                + "; check 'dkms status' after reboot"
            )
            log("WARN", message)
            return Outcome(self.component, Status.NOT_FOUND, message)

        log("WARN", f"{module.name} not built for running kernel ({running_kernel}); pinning {target} as boot default")
        change = self.bootloader.set_default_kernel(target)
        if change == Change.NOT_FOUND:
            return Outcome(self.component, Status.NOT_FOUND, f"No boot entry for {target}; set the default kernel manually")
        if installed_now:
            change = Change.CHANGED
        return Outcome.from_change(self.component, change, f"default boot kernel pinned to {target}; reboot to load {module.name}")
