"""Common bootloader interface and kernel command-line token handling."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from reconciler.exceptions import UnsupportedBackend
from reconciler.host import HostContext
from reconciler.models import BootEntry, BootloaderKind, Change
from reconciler.utils import log, read_text

_QUOTED_VALUE_RE = re.compile(r"^(?P<quote>[\"']?)(?P<body>.*?)(?P=quote)\s*$")


def token_key(token: str) -> str:
    return token.split("=", 1)[0]


def split_tokens(cmdline: str) -> List[str]:
    return cmdline.split()


def apply_tokens(cmdline: str, tokens: Iterable[str], remove: Iterable[str] = ()) -> str:
    """Merge ``tokens`` into ``cmdline`` without disturbing unrelated tokens.

    A ``key=value`` token replaces any existing token with the same key in
    place; a bare token is appended once. Tokens in ``remove`` are dropped,
    matched exactly or by key.
    """
    current = split_tokens(cmdline)
    drop = set(remove)
    current = [t for t in current if t not in drop and token_key(t) not in drop]
    for token in sorted(set(tokens)):
        if "=" in token:
            key = token_key(token)
            positions = [i for i, t in enumerate(current) if "=" in t and token_key(t) == key]
            if positions:
                current[positions[0]] = token
                for i in reversed(positions[1:]):
                    del current[i]
                continue
        if token not in current:
            current.append(token)
    return " ".join(current)


def tokens_satisfied(cmdline: str, tokens: Iterable[str], remove: Iterable[str] = ()) -> bool:
    present = split_tokens(cmdline)
    if not set(tokens).issubset(present):
        return False
    for token in tokens:
        if "=" in token and sum(1 for t in present if token_key(t) == token_key(token)) > 1:
            return False
    drop = set(remove)
    return not any(t in drop or token_key(t) in drop for t in present)


def unquote(value: str) -> Tuple[str, str]:
    """Split a shell-style assignment value into (quote, body)."""
    match = _QUOTED_VALUE_RE.match(value)
    if not match:
        return "", value.strip()
    return match.group("quote"), match.group("body")


def upsert_assignment(content: str, key: str, value: str, quote: str = '"') -> str:
    """Set ``KEY=value`` in a shell-style defaults file, appending when absent."""
    line = f"{key}={quote}{value}{quote}"
    pattern = re.compile(rf"^\s*{re.escape(key)}=.*$", re.MULTILINE)
    if pattern.search(content):
        return pattern.sub(lambda _m: line, content, count=1)
    if content and not content.endswith("\n"):
        content += "\n"
    return content + line + "\n"


class BootloaderAdapter(ABC):
    """One implementation per bootloader family, all driven through a HostContext."""

    kind: BootloaderKind = BootloaderKind.UNKNOWN

    def __init__(self, ctx: HostContext) -> None:
        self.ctx = ctx

    @classmethod
    def present(cls, ctx: HostContext) -> bool:
        return False

    def detect(self) -> BootloaderKind:
        return self.kind

    @abstractmethod
    def read_cmdlines(self) -> Dict[str, str]:
        """Return the configured cmdline of every kernel entry, keyed by entry name."""

    @abstractmethod
    def _rewrite_cmdlines(self, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        """Rewrite every entry's cmdline on disk; return True if a file changed."""

    @abstractmethod
    def set_default_kernel(self, kernel_version: str) -> Change:
        ...

    @abstractmethod
    def regenerate(self) -> None:
        ...

    def entries(self) -> List[BootEntry]:
        return []

    def configured_tokens(self) -> Optional[FrozenSet[str]]:
        """Tokens present on every kernel entry, or None when nothing is configured."""
        cmdlines = self.read_cmdlines()
        if not cmdlines:
            return None
        sets = [frozenset(split_tokens(c)) for c in cmdlines.values()]
        common = sets[0]
        for item in sets[1:]:
            common = common & item
        return common

    def ensure_cmdline_tokens(
        self,
        tokens: Iterable[str],
        remove: Iterable[str] = (),
    ) -> Change:
        tokens = frozenset(tokens)
        remove = frozenset(remove)
        cmdlines = self.read_cmdlines()
        if cmdlines and all(tokens_satisfied(c, tokens, remove) for c in cmdlines.values()):
            log("INFO", f"{self.kind.value}: kernel cmdline already carries {' '.join(sorted(tokens))}")
            return Change.UNCHANGED
        if not self._rewrite_cmdlines(tokens, remove):
            return Change.UNCHANGED
        self.regenerate()
        log("SUCCESS", f"{self.kind.value}: kernel cmdline updated with {' '.join(sorted(tokens))}")
        return Change.CHANGED

    def _read(self, path: Path) -> str:
        return read_text(self.ctx.path(path)) or ""


class UnknownAdapter(BootloaderAdapter):
    kind = BootloaderKind.UNKNOWN

    def read_cmdlines(self) -> Dict[str, str]:
        return {}

    def _rewrite_cmdlines(self, tokens: FrozenSet[str], remove: FrozenSet[str]) -> bool:
        raise UnsupportedBackend(
            f"Unrecognized bootloader: add '{' '.join(sorted(tokens))}' to the kernel cmdline manually"
        )

    def set_default_kernel(self, kernel_version: str) -> Change:
        raise UnsupportedBackend(
            f"Unrecognized bootloader: set the default kernel to {kernel_version} manually"
        )

    def regenerate(self) -> None:
        raise UnsupportedBackend("Unrecognized bootloader: regenerate the boot configuration manually")
