"""Global constants and path configuration for homelab-reconciler."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_TARGET_PATH = Path("/etc/homelab-reconciler/target.yaml")
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Host paths, always resolved relative to HostContext.root
OS_RELEASE = Path("/etc/os-release")
PROC_CMDLINE = Path("/proc/cmdline")
PROC_OSRELEASE = Path("/proc/sys/kernel/osrelease")
SYS_IOMMU = Path("/sys/class/iommu")
SYS_EFI = Path("/sys/firmware/efi")
SYS_NET = Path("/sys/class/net")

LIMINE_DEFAULTS = Path("/etc/default/limine")
LIMINE_CONF = Path("/boot/limine.conf")
GRUB_DEFAULTS = Path("/etc/default/grub")
GRUB_CFG = Path("/boot/grub/grub.cfg")
GRUB2_CFG = Path("/boot/grub2/grub.cfg")
SYSTEMD_BOOT_LOADER_CONFS = (
    Path("/boot/loader/loader.conf"),
    Path("/boot/efi/loader/loader.conf"),
    Path("/efi/loader/loader.conf"),
)
KERNEL_CMDLINE_FILE = Path("/etc/kernel/cmdline")
SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")

OS_FAMILIES = {
    "cachyos": "arch",
    "arch": "arch",
    "endeavouros": "arch",
    "manjaro": "arch",
    "ubuntu": "ubuntu",
    "debian": "ubuntu",
    "pop": "ubuntu",
    "linuxmint": "ubuntu",
    "fedora": "fedora",
    "rhel": "fedora",
    "centos": "fedora",
    "rocky": "fedora",
    "almalinux": "fedora",
}

INITRAMFS_COMMANDS = {
    "arch": ["mkinitcpio", "-P"],
    "ubuntu": ["update-initramfs", "-u"],
    "proxmox": ["update-initramfs", "-u"],
    "fedora": ["dracut", "--force"],
}

KERNEL_VERSION_RE = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?")
KERNEL_FLAVOR_RE = re.compile(r"^[0-9.]+-[0-9]+-")
UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
PCI_ADDRESS_RE = re.compile(r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$")

# Cloudflare
CF_API_BASE = "https://api.cloudflare.com/client/v4"
CF_ROUTING_DOMAIN = "cfargotunnel.com"
CF_CATCH_ALL_SERVICE = "http_status:404"
CF_API_TOKEN_FILE_NAME = "api-token"

# SR-IOV module defaults
DEFAULT_MODULE_PACKAGES = {
    "arch": "i915-sriov-dkms",
    "ubuntu": "i915-sriov-dkms",
    "proxmox": "i915-sriov-dkms",
    "fedora": "akmod-i915-sriov",
}
DEFAULT_COPR = "matte23/akmods"
DEFAULT_DEB_RELEASES_REPO = "strongtz/i915-sriov-dkms"
GITHUB_API_BASE = "https://api.github.com"

DEFAULT_POLL_ATTEMPTS = 24
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_COMMAND_TIMEOUT = 1800.0
HTTP_TIMEOUT = 30
