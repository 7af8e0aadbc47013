"""Bootloader adapters, dispatched on BootloaderKind."""

from __future__ import annotations

from typing import Optional

from reconciler.bootloader.base import BootloaderAdapter, UnknownAdapter
from reconciler.bootloader.grub import GrubAdapter
from reconciler.bootloader.limine import LimineAdapter
from reconciler.bootloader.systemd_boot import SystemdBootAdapter
from reconciler.host import HostContext
from reconciler.models import BootloaderKind

# Detection order: first present config path wins.
ADAPTERS = (LimineAdapter, GrubAdapter, SystemdBootAdapter)

_BY_KIND = {cls.kind: cls for cls in ADAPTERS}


def detect_bootloader(ctx: HostContext) -> BootloaderKind:
    for cls in ADAPTERS:
        if cls.present(ctx):
            return cls.kind
    return BootloaderKind.UNKNOWN


def get_adapter(ctx: HostContext, kind: Optional[BootloaderKind] = None) -> BootloaderAdapter:
    if kind is None:
        kind = detect_bootloader(ctx)
    return _BY_KIND.get(kind, UnknownAdapter)(ctx)


__all__ = [
    "ADAPTERS",
    "BootloaderAdapter",
    "GrubAdapter",
    "LimineAdapter",
    "SystemdBootAdapter",
    "UnknownAdapter",
    "detect_bootloader",
    "get_adapter",
]
