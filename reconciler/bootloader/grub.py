"""GRUB support through /etc/default/grub and the distro's mkconfig wrapper."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from reconciler.bootloader.base import (
    BootloaderAdapter,
    apply_tokens,
    unquote,
    upsert_assignment,
)
from reconciler.constants import GRUB2_CFG, GRUB_CFG, GRUB_DEFAULTS
from reconciler.exceptions import Fatal
from reconciler.host import HostContext
from reconciler.models import BootEntry, BootloaderKind, Change
from reconciler.utils import log, write_if_changed

CMDLINE_KEY = "GRUB_CMDLINE_LINUX_DEFAULT"
_CMDLINE_RE = re.compile(rf"^(?P<lead>\s*{CMDLINE_KEY}=)(?P<value>.*)$")
_TITLE_RE = re.compile(r"""(['"])(?P<title>[^'"]*)\1""")
_VERSION_IN_TITLE_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?[-\w.+]*)")


def parse_menu(cfg: str) -> List[BootEntry]:
    """List menuentries in grub.cfg order; nested ones are titled ``submenu>entry``."""
    entries: List[BootEntry] = []
    submenu: Optional[str] = None
    for line in cfg.splitlines():
        if line.startswith("submenu "):
            match = _TITLE_RE.search(line)
            submenu = match.group("title") if match else None
            continue
        if line.startswith("}") and submenu is not None:
            submenu = None
            continue
        if not line.lstrip().startswith("menuentry "):
            continue
        match = _TITLE_RE.search(line)
        if not match:
            continue
        title = match.group("title")
        version = _VERSION_IN_TITLE_RE.search(title)
        path = f"{submenu}>{title}" if submenu else title
        entries.append(
            BootEntry(
                index=len(entries),
                title=title,
                kernel_version=version.group(1) if version else None,
                path=path,
            )
        )
    return entries


def find_entry(cfg: str, kernel_version: str) -> Optional[BootEntry]:
    for entry in parse_menu(cfg):
        lowered = entry.title.lower()
        if "recovery" in lowered or "rescue" in lowered:
            continue
        if kernel_version in entry.title:
            return entry
    return None


class GrubAdapter(BootloaderAdapter):
    kind = BootloaderKind.GRUB

    @classmethod
    def present(cls, ctx: HostContext) -> bool:
        return ctx.path(GRUB_DEFAULTS).is_file()

    def read_cmdlines(self) -> Dict[str, str]:
        for line in self._read(GRUB_DEFAULTS).splitlines():
            match = _CMDLINE_RE.match(line)
            if match:
                return {"default": unquote(match.group("value"))[1]}
        return {}

    def _rewrite_cmdlines(self, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        content = self._read(GRUB_DEFAULTS)
        out: List[str] = []
        found = False
        for line in content.splitlines():
            match = _CMDLINE_RE.match(line)
            if match and not found:
                found = True
                quote, body = unquote(match.group("value"))
                quote = quote or '"'
                line = f"{match.group('lead')}{quote}{apply_tokens(body, tokens, remove)}{quote}"
            out.append(line)
        if not found:
            out.append(f'{CMDLINE_KEY}="{apply_tokens("", tokens, remove)}"')
        return write_if_changed(self.ctx.path(GRUB_DEFAULTS), "\n".join(out) + "\n")

    def _cfg_path(self) -> Path:
        if self.ctx.path(GRUB2_CFG).is_file() or (
            not self.ctx.has("update-grub") and self.ctx.has("grub2-mkconfig")
        ):
            return GRUB2_CFG
        return GRUB_CFG

    def regenerate(self) -> None:
        if self.ctx.has("update-grub"):
            self.ctx.run(["update-grub"], check=True)
        elif self.ctx.has("grub2-mkconfig"):
            self.ctx.run(["grub2-mkconfig", "-o", str(GRUB2_CFG)], check=True)
        elif self.ctx.has("grub-mkconfig"):
            self.ctx.run(["grub-mkconfig", "-o", str(GRUB_CFG)], check=True)
        else:
            raise Fatal("No GRUB configuration tool found (update-grub, grub2-mkconfig, grub-mkconfig)")

    def entries(self) -> List[BootEntry]:
        return parse_menu(self._read(self._cfg_path()))

    def set_default_kernel(self, kernel_version: str) -> Change:
        entry = find_entry(self._read(self._cfg_path()), kernel_version)
        if entry is None:
            # grub.cfg may predate the kernel install
            self.regenerate()
            entry = find_entry(self._read(self._cfg_path()), kernel_version)
        if entry is None:
            log("WARN", f"No GRUB entry for {kernel_version}; set GRUB_DEFAULT manually in {GRUB_DEFAULTS}")
            return Change.NOT_FOUND
        content = self._read(GRUB_DEFAULTS)
        content = upsert_assignment(content, "GRUB_DEFAULT", entry.identity)
        content = upsert_assignment(content, "GRUB_SAVEDEFAULT", "false", quote="")
        if not write_if_changed(self.ctx.path(GRUB_DEFAULTS), content):
            return Change.UNCHANGED
        self.regenerate()
        log("SUCCESS", f'GRUB default boot -> "{entry.identity}"')
        return Change.CHANGED
