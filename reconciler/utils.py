"""Utility functions for homelab-reconciler."""

from __future__ import annotations

import functools
import os
import pwd
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from reconciler.constants import (
    _LOG_VERBOSE,
    KERNEL_FLAVOR_RE,
    KERNEL_VERSION_RE,
)
from reconciler.exceptions import ConfigError, Fatal, TransientExternal


def log(level: str, message: str) -> None:
    """Lightweight structured logging with per-level colour."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got '{raw}')")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0 (got {value})")
    return value


def resolve_user() -> str:
    """Return the non-root account that owns the tunnel credentials."""
    for name in ("TUNNEL_USER", "SUDO_USER", "USER"):
        value = (get_env(name) or "").strip()
        if value:
            return value
    return "root"


def user_home(user: str) -> Path:
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        return Path.home()


def ensure_directory(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise Fatal(f"Cannot create directory {path}: {exc}") from exc


def read_text(path: Path) -> Optional[str]:
    """Read a file, returning None when it does not exist."""
    try:
        return path.read_text()
    except FileNotFoundError:
        return None


def write_if_changed(path: Path, content: str, mode: Optional[int] = None) -> bool:
    """Atomically replace ``path`` with ``content``; return False when already identical."""
    if read_text(path) == content:
        return False
    ensure_directory(path.parent)
    try:
        with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
            tmp.write(content)
            tmp_path = Path(tmp.name)
        if mode is not None:
            os.chmod(tmp_path, mode)
        tmp_path.replace(path)
    except OSError as exc:
        raise Fatal(f"Cannot write {path}: {exc}") from exc
    return True


def parse_kernel_version(version: str) -> Tuple[int, int, int]:
    match = KERNEL_VERSION_RE.match(version.strip())
    if not match:
        raise ValueError(f"Not a kernel version: '{version}'")
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def kernel_at_least(version: str, minimum: Optional[str]) -> bool:
    if not minimum:
        return True
    try:
        return parse_kernel_version(version) >= parse_kernel_version(minimum)
    except ValueError:
        return False


def kernel_flavor(version: str) -> str:
    """``6.6.52-1-cachyos-lts`` -> ``cachyos-lts``; a bare version has no flavor."""
    flavor = KERNEL_FLAVOR_RE.sub("", version.strip(), count=1)
    return "" if flavor == version.strip() else flavor


def newest_kernel(versions: List[str], minimum: Optional[str] = None) -> Optional[str]:
    candidates = [v for v in versions if kernel_at_least(v, minimum)]
    if not candidates:
        return None

    def _key(v: str):
        try:
            return parse_kernel_version(v)
        except ValueError:
            return (0, 0, 0)

    return max(candidates, key=_key)


def wait_until(
    predicate: Callable[[], bool],
    attempts: int,
    interval: float,
    label: str = "condition",
) -> bool:
    """Poll ``predicate`` at a fixed interval, at most ``attempts`` times."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        if predicate():
            return True
        log("DEBUG", f"Waiting for {label} ({attempt}/{attempts})")
        if attempt < attempts:
            time.sleep(interval)
    return False


def retry(
    *,
    attempts: int,
    delay: float,
    retry_on: Tuple[type, ...] = (TransientExternal,),
):
    """Re-run a transient operation with fixed backoff and an attempt cap."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    if attempt == attempts:
                        raise
                    log("WARN", f"{fn.__name__} failed ({exc}); retry {attempt}/{attempts - 1}")
                    time.sleep(delay)

        return wrapper

    return decorator


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "********"
    return f"{value[:4]}…{value[-4:]}"
