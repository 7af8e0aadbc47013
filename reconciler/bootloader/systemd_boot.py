"""systemd-boot support: loader entries, /etc/kernel/cmdline and loader.conf."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from reconciler.bootloader.base import BootloaderAdapter, apply_tokens
from reconciler.constants import KERNEL_CMDLINE_FILE, SYSTEMD_BOOT_LOADER_CONFS
from reconciler.host import HostContext
from reconciler.models import BootEntry, BootloaderKind, Change
from reconciler.utils import log, read_text, write_if_changed

_OPTIONS_RE = re.compile(r"^(?P<lead>\s*options\s+)(?P<value>.*)$")
_DEFAULT_RE = re.compile(r"^\s*default\s+.*$", re.MULTILINE)


def parse_entry(text: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition(" ")
        fields.setdefault(key, value.strip())
    return fields


def set_loader_default(conf: str, entry_id: str) -> str:
    """Replace any ``default`` line (``@saved`` included) with ``entry_id``."""
    line = f"default {entry_id}"
    if _DEFAULT_RE.search(conf):
        return _DEFAULT_RE.sub(line, conf, count=1)
    if conf and not conf.endswith("\n"):
        conf += "\n"
    return conf + line + "\n"


class SystemdBootAdapter(BootloaderAdapter):
    kind = BootloaderKind.SYSTEMD_BOOT

    @classmethod
    def loader_conf(cls, ctx: HostContext) -> Optional[Path]:
        for candidate in SYSTEMD_BOOT_LOADER_CONFS:
            if ctx.path(candidate).is_file():
                return candidate
        return None

    @classmethod
    def present(cls, ctx: HostContext) -> bool:
        return cls.loader_conf(ctx) is not None

    def _entry_files(self) -> List[Path]:
        conf = self.loader_conf(self.ctx)
        if conf is None:
            return []
        entries_dir = self.ctx.path(conf.parent / "entries")
        if not entries_dir.is_dir():
            return []
        return sorted(entries_dir.glob("*.conf"))

    def read_cmdlines(self) -> Dict[str, str]:
        cmdlines: Dict[str, str] = {}
        for path in self._entry_files():
            fields = parse_entry(read_text(path) or "")
            cmdlines[path.name] = fields.get("options", "")
        kernel_cmdline = read_text(self.ctx.path(KERNEL_CMDLINE_FILE))
        if kernel_cmdline is not None:
            cmdlines[str(KERNEL_CMDLINE_FILE)] = kernel_cmdline.strip()
        return cmdlines

    def _rewrite_entry(self, path: Path, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        out: List[str] = []
        found = False
        for line in (read_text(path) or "").splitlines():
            match = _OPTIONS_RE.match(line)
            if match and not found:
                found = True
                line = f"{match.group('lead')}{apply_tokens(match.group('value'), tokens, remove)}"
            out.append(line)
        if not found:
            out.append(f"options {apply_tokens('', tokens, remove)}")
        return write_if_changed(path, "\n".join(out) + "\n")

    def _rewrite_cmdlines(self, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        changed = False
        for path in self._entry_files():
            changed = self._rewrite_entry(path, tokens, remove) or changed
        kernel_cmdline = self.ctx.path(KERNEL_CMDLINE_FILE)
        current = read_text(kernel_cmdline)
        if current is not None:
            updated = apply_tokens(current.strip(), tokens, remove) + "\n"
            changed = write_if_changed(kernel_cmdline, updated) or changed
        return changed

    def regenerate(self) -> None:
        self.ctx.require("bootctl")
        self.ctx.run(["bootctl", "update", "--graceful"], check=True)

    def entries(self) -> List[BootEntry]:
        result: List[BootEntry] = []
        for index, path in enumerate(self._entry_files()):
            fields = parse_entry(read_text(path) or "")
            version = fields.get("version")
            result.append(
                BootEntry(
                    index=index,
                    title=fields.get("title", path.stem),
                    kernel_version=version,
                    path=path.name,
                )
            )
        return result

    def _entry_for(self, kernel_version: str) -> Optional[str]:
        for path in self._entry_files():
            fields = parse_entry(read_text(path) or "")
            haystack = " ".join(fields.get(k, "") for k in ("linux", "version", "title"))
            if kernel_version in haystack:
                return path.name
        return None

    def set_default_kernel(self, kernel_version: str) -> Change:
        entry_id = self._entry_for(kernel_version)
        conf = self.loader_conf(self.ctx)
        if entry_id is None or conf is None:
            log("WARN", f"No systemd-boot entry for {kernel_version}; set 'default' in loader.conf manually")
            return Change.NOT_FOUND
        path = self.ctx.path(conf)
        if not write_if_changed(path, set_loader_default(read_text(path) or "", entry_id)):
            return Change.UNCHANGED
        self.regenerate()
        log("SUCCESS", f"systemd-boot default -> {entry_id}")
        return Change.CHANGED
