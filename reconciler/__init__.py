"""homelab-reconciler package."""

__all__ = [
    "bootloader",
    "cli",
    "cloudflare",
    "config",
    "constants",
    "domain",
    "engine",
    "exceptions",
    "host",
    "models",
    "modules",
    "packages",
    "probe",
    "remote",
    "tunnel",
    "utils",
]
