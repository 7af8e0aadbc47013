"""Custom exceptions for homelab-reconciler.

Each class carries the outcome status a reconciler reports when it catches
the error at its own boundary.
"""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    status = "failed"


class ConfigError(ManagerError):
    """Invalid target file or environment."""

    status = "fatal"


class TransientExternal(ManagerError):
    """Remote API or network failure that is worth retrying."""


class ConfigConflict(ManagerError):
    """Existing state contradicts the target and must be resolved by a human."""

    status = "conflict"


class UnsupportedBackend(ManagerError):
    """Unknown bootloader or package manager."""

    status = "unsupported"


class Fatal(ManagerError):
    """Unwritable required path or missing required external tool."""

    status = "fatal"
