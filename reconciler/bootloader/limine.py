"""Limine support through /etc/default/limine and limine-update."""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, List, Optional

from reconciler.bootloader.base import (
    BootloaderAdapter,
    apply_tokens,
    token_key,
    unquote,
    upsert_assignment,
)
from reconciler.constants import LIMINE_CONF, LIMINE_DEFAULTS
from reconciler.host import HostContext
from reconciler.models import BootEntry, BootloaderKind, Change
from reconciler.utils import kernel_flavor, log, write_if_changed

_CMDLINE_RE = re.compile(r"^(?P<lead>\s*KERNEL_CMDLINE\[(?P<name>[^\]]*)\]\+?=)(?P<value>.*)$")
_DEFAULT_ENTRY_RE = re.compile(r"^\s*DEFAULT_ENTRY=(?P<value>.*)$", re.MULTILINE)


def entry_name_for(kernel_version: str) -> str:
    flavor = kernel_flavor(kernel_version)
    return f"linux-{flavor}" if flavor else "linux"


def default_entry_pattern(kernel_version: str) -> str:
    return "*" + (kernel_flavor(kernel_version) or "linux")


def entry_number(conf: str, entry: str) -> Optional[int]:
    """1-based position of ``//<entry>`` counting every entry line, group headers included."""
    count = 0
    for line in conf.splitlines():
        stripped = line.strip()
        if not stripped.startswith("/"):
            continue
        count += 1
        if stripped.startswith("//") and stripped.lstrip("/+").strip() == entry:
            return count
    return None


def pin_default_entry(conf: str, number: int) -> str:
    """Point ``default_entry`` at ``number`` and switch off ``remember_last_entry``."""
    lines = conf.splitlines()
    out: List[str] = []
    seen_default = seen_remember = False
    for line in lines:
        if re.match(r"^\s*remember_last_entry\s*:", line):
            out.append("remember_last_entry: no")
            seen_remember = True
        elif re.match(r"^\s*default_entry\s*:", line):
            out.append(f"default_entry: {number}")
            seen_default = True
        else:
            out.append(line)
    header = []
    if not seen_default:
        header.append(f"default_entry: {number}")
    if not seen_remember:
        header.append("remember_last_entry: no")
    return "\n".join(header + out) + "\n"


class LimineAdapter(BootloaderAdapter):
    kind = BootloaderKind.LIMINE

    @classmethod
    def present(cls, ctx: HostContext) -> bool:
        return ctx.path(LIMINE_DEFAULTS).is_file()

    def read_cmdlines(self) -> Dict[str, str]:
        """Cmdline per entry name; ``+=`` lines for the same name are concatenated."""
        cmdlines: Dict[str, str] = {}
        for line in self._read(LIMINE_DEFAULTS).splitlines():
            match = _CMDLINE_RE.match(line)
            if not match:
                continue
            name = match.group("name") or "default"
            body = unquote(match.group("value"))[1]
            cmdlines[name] = f"{cmdlines[name]} {body}".strip() if name in cmdlines else body
        return cmdlines

    def _rewrite_cmdlines(self, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        content = self._read(LIMINE_DEFAULTS)
        lines = content.splitlines()
        matches = [(i, _CMDLINE_RE.match(line)) for i, line in enumerate(lines)]
        matches = [(i, m) for i, m in matches if m]
        if not matches:
            lines.append(f'KERNEL_CMDLINE[default]+="{apply_tokens("", tokens, remove)}"')
            return write_if_changed(self.ctx.path(LIMINE_DEFAULTS), "\n".join(lines) + "\n")

        bodies: Dict[int, List[str]] = {}
        last_for: Dict[str, int] = {}
        for i, match in matches:
            line_tokens = unquote(match.group("value"))[1].split()
            keys = {token_key(t) for t in line_tokens if "=" in t}
            # key=value tokens are replaced on the line that already carries the key
            in_place = [t for t in tokens if "=" in t and token_key(t) in keys]
            bodies[i] = apply_tokens(" ".join(line_tokens), in_place, remove).split()
            last_for[match.group("name") or "default"] = i
        for name, last in last_for.items():
            present = set()
            for i, match in matches:
                if (match.group("name") or "default") == name:
                    present.update(bodies[i])
            missing = [t for t in tokens if t not in present]
            if missing:
                bodies[last] = apply_tokens(" ".join(bodies[last]), missing).split()

        for i, match in matches:
            quote = unquote(match.group("value"))[0] or '"'
            lines[i] = f"{match.group('lead')}{quote}{' '.join(bodies[i])}{quote}"
        return write_if_changed(self.ctx.path(LIMINE_DEFAULTS), "\n".join(lines) + "\n")

    def regenerate(self) -> None:
        self.ctx.require("limine-update")
        self.ctx.run(["limine-update"], check=True)
        pinned = self._pinned_entry()
        if pinned:
            self._patch_conf(pinned)

    def _pinned_entry(self) -> Optional[str]:
        match = _DEFAULT_ENTRY_RE.search(self._read(LIMINE_DEFAULTS))
        if not match:
            return None
        value = unquote(match.group("value"))[1]
        if not value.startswith("*"):
            return None
        return f"linux-{value[1:]}" if value[1:] != "linux" else "linux"

    def _patch_conf(self, entry: str) -> Optional[bool]:
        """Apply the default entry to limine.conf; None when the entry is missing."""
        path = self.ctx.path(LIMINE_CONF)
        conf = self._read(LIMINE_CONF)
        number = entry_number(conf, entry)
        if number is None:
            return None
        return write_if_changed(path, pin_default_entry(conf, number))

    def set_default_kernel(self, kernel_version: str) -> Change:
        entry = entry_name_for(kernel_version)
        if entry_number(self._read(LIMINE_CONF), entry) is None:
            log("WARN", f"Limine has no entry '{entry}' for {kernel_version}; set default_entry manually")
            return Change.NOT_FOUND
        defaults = self._read(LIMINE_DEFAULTS)
        updated = upsert_assignment(defaults, "DEFAULT_ENTRY", default_entry_pattern(kernel_version))
        changed = write_if_changed(self.ctx.path(LIMINE_DEFAULTS), updated)
        if changed:
            # limine-update rewrites limine.conf, so the pin is applied after it.
            self.regenerate()
        patched = self._patch_conf(entry)
        if patched is None:
            log("WARN", f"Limine entry '{entry}' vanished after regeneration")
            return Change.NOT_FOUND
        if changed or patched:
            log("SUCCESS", f"Limine default boot -> {entry} ({kernel_version})")
            return Change.CHANGED
        return Change.UNCHANGED

    def entries(self) -> List[BootEntry]:
        result: List[BootEntry] = []
        count = 0
        for line in self._read(LIMINE_CONF).splitlines():
            stripped = line.strip()
            if not stripped.startswith("/"):
                continue
            count += 1
            if stripped.startswith("//"):
                title = stripped.lstrip("/+").strip()
                result.append(BootEntry(index=count, title=title, path=title))
        return result
