"""Native package installation: AUR via paru, COPR akmods, GitHub-released .debs."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional

import requests

from reconciler.constants import (
    DEFAULT_COPR,
    DEFAULT_DEB_RELEASES_REPO,
    GITHUB_API_BASE,
    HTTP_TIMEOUT,
    INITRAMFS_COMMANDS,
)
from reconciler.exceptions import Fatal, ManagerError, TransientExternal, UnsupportedBackend
from reconciler.host import HostContext
from reconciler.models import ModuleTarget, PackageManagerKind
from reconciler.utils import log, retry

_FAMILY_MANAGERS = {
    "arch": PackageManagerKind.PACMAN,
    "ubuntu": PackageManagerKind.APT,
    "proxmox": PackageManagerKind.APT,
    "fedora": PackageManagerKind.DNF,
}


def package_manager_for(os_family: Optional[str]) -> PackageManagerKind:
    return _FAMILY_MANAGERS.get(os_family or "", PackageManagerKind.UNKNOWN)


@retry(attempts=3, delay=2.0)
def latest_release_asset(session: requests.Session, repo: str, suffix: str = "_amd64.deb") -> str:
    """Return the download URL of the newest release asset ending in ``suffix``."""
    url = f"{GITHUB_API_BASE}/repos/{repo}/releases/latest"
    try:
        response = session.get(url, timeout=HTTP_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise TransientExternal(f"GitHub release lookup for {repo} failed: {exc}") from exc
    for asset in response.json().get("assets", []):
        if asset.get("name", "").endswith(suffix):
            return asset["browser_download_url"]
    raise ManagerError(f"No '*{suffix}' asset in the latest {repo} release")


@retry(attempts=3, delay=2.0)
def download(session: requests.Session, url: str, destination: Path) -> None:
    log("INFO", f"Downloading {url}")
    try:
        with session.get(url, stream=True, timeout=HTTP_TIMEOUT) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=1 << 20):
                    handle.write(chunk)
    except requests.RequestException as exc:
        raise TransientExternal(f"Download of {url} failed: {exc}") from exc


class PackageInstaller:
    def __init__(
        self,
        ctx: HostContext,
        user: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.ctx = ctx
        self.user = user
        self.session = session or requests.Session()

    def is_installed(self, kind: PackageManagerKind, package: str) -> bool:
        if kind == PackageManagerKind.PACMAN:
            argv = ["pacman", "-Q", package]
        elif kind == PackageManagerKind.APT:
            argv = ["dpkg", "-s", package]
        elif kind == PackageManagerKind.DNF:
            argv = ["rpm", "-q", package]
        else:
            return False
        return self.ctx.run(argv).ok

    def install(self, kind: PackageManagerKind, module: ModuleTarget, os_family: Optional[str]) -> None:
        package = module.package_for(os_family)
        log("INFO", f"Installing {package} via {kind.value}")
        if kind == PackageManagerKind.PACMAN:
            self._install_aur(package)
        elif kind == PackageManagerKind.DNF:
            self._install_copr(package, module.copr or DEFAULT_COPR)
        elif kind == PackageManagerKind.APT:
            self._install_deb(package, module.deb_repo or DEFAULT_DEB_RELEASES_REPO)
        else:
            raise UnsupportedBackend(f"No package manager known for OS family '{os_family}'; install {package} manually")
        self.rebuild_initramfs(os_family)

    def _install_aur(self, package: str) -> None:
        if not self.ctx.has("paru"):
            raise Fatal(f"paru not found; install {package} from the AUR manually")
        # paru refuses to run as root
        result = self.ctx.run(["paru", "-S", "--noconfirm", "--needed", package], as_user=self.user)
        if not result.ok:
            raise ManagerError(f"AUR install of {package} failed: {result.stderr.strip()}")

    def _install_copr(self, package: str, copr: str) -> None:
        result = self.ctx.run(["dnf", "-y", "copr", "enable", copr])
        if not result.ok:
            log("WARN", f"Could not enable COPR {copr}: {result.stderr.strip()}")
        result = self.ctx.run(["dnf", "install", "-y", package])
        if not result.ok:
            raise ManagerError(f"dnf install of {package} failed: {result.stderr.strip()}")
        for argv in (["akmods", "--force"], ["depmod", "-a"]):
            if not self.ctx.run(argv).ok:
                log("WARN", f"{' '.join(argv)} reported an error")

    def _install_deb(self, package: str, repo: str) -> None:
        url = latest_release_asset(self.session, repo)
        with tempfile.TemporaryDirectory(prefix="reconciler-") as tmp:
            deb = Path(tmp) / f"{package}_latest_amd64.deb"
            download(self.session, url, deb)
            if self.ctx.run(["dpkg", "-i", str(deb)]).ok:
                return
            log("WARN", "dpkg -i failed; resolving dependencies with apt-get")
            result = self.ctx.run(["apt-get", "install", "-f", "-y"])
            if not result.ok:
                raise ManagerError(f"Installing {package} from {url} failed: {result.stderr.strip()}")

    def rebuild_initramfs(self, os_family: Optional[str]) -> None:
        argv = INITRAMFS_COMMANDS.get(os_family or "")
        if not argv:
            log("WARN", f"Unknown initramfs tool for '{os_family}'; rebuild it manually")
            return
        if not self.ctx.run(argv).ok:
            log("WARN", f"{' '.join(argv)} reported an error")
