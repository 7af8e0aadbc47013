"""Cloudflare tunnel reconciliation: tunnel identity, ingress file, service unit, DNS."""

from __future__ import annotations

import base64
import json
import os
import pwd
import shlex
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from reconciler.cloudflare import CloudflareClient
from reconciler.constants import (
    CF_CATCH_ALL_SERVICE,
    CF_ROUTING_DOMAIN,
    SYSTEMD_UNIT_DIR,
    UUID_RE,
)
from reconciler.exceptions import ManagerError
from reconciler.host import HostContext
from reconciler.models import (
    Change,
    DnsOutcome,
    Outcome,
    Route,
    Status,
    Tunnel,
    TunnelTarget,
)
from reconciler.remote import RemoteCommand, RemoteExecutor
from reconciler.utils import log, read_text, write_if_changed

_DNS_STATUS = {
    DnsOutcome.CREATED: Status.CHANGED,
    DnsOutcome.UPDATED: Status.CHANGED,
    DnsOutcome.ALREADY_CORRECT: Status.UNCHANGED,
    DnsOutcome.CONFLICT_WRONG_TARGET: Status.CONFLICT,
    DnsOutcome.UNKNOWN: Status.UNKNOWN,
}


class CredentialsBlob:
    """Base64 tunnel credentials that never render themselves."""

    __slots__ = ("_encoded",)

    def __init__(self, encoded: str) -> None:
        self._encoded = encoded

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CredentialsBlob":
        return cls(base64.b64encode(raw).decode("ascii"))

    def reveal(self) -> str:
        return self._encoded

    def decode(self) -> bytes:
        return base64.b64decode(self._encoded)

    def __repr__(self) -> str:
        return "CredentialsBlob(***)"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CredentialsBlob) and other._encoded == self._encoded

    def __hash__(self) -> int:
        return hash(self._encoded)


def order_routes(routes: Sequence[Route]) -> List[Route]:
    """Hostname routes in the given order (first claim wins), catch-all last."""
    ordered: List[Route] = []
    seen = set()
    catch_all: Optional[Route] = None
    for route in routes:
        if route.is_catch_all:
            catch_all = route
            continue
        if route.hostname in seen:
            log("WARN", f"Duplicate ingress hostname '{route.hostname}' ignored")
            continue
        seen.add(route.hostname)
        ordered.append(route)
    ordered.append(catch_all or Route(None, CF_CATCH_ALL_SERVICE))
    return ordered


def render_ingress(tunnel_id: str, credentials_file: str, routes: Sequence[Route]) -> str:
    rules = []
    for route in order_routes(routes):
        rule: Dict[str, object] = {}
        if route.hostname:
            rule["hostname"] = route.hostname
        rule["service"] = route.service
        if route.origin_host_header:
            rule["originRequest"] = {"httpHostHeader": route.origin_host_header}
        rules.append(rule)
    document = {
        "tunnel": tunnel_id,
        "credentials-file": credentials_file,
        "ingress": rules,
    }
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def parse_ingress(text: str) -> Tuple[Optional[str], List[Route]]:
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ManagerError("Ingress config is not a mapping")
    routes = []
    for rule in data.get("ingress") or []:
        origin = rule.get("originRequest") or {}
        routes.append(Route(rule.get("hostname"), rule.get("service", ""), origin.get("httpHostHeader")))
    return data.get("tunnel"), routes


def render_service_unit(name: str, user: str, cloudflared: str, config: Path) -> str:
    return (
        "[Unit]\n"
        f"Description=Cloudflare Tunnel - {name}\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        "TimeoutStartSec=15\n"
        "Type=notify\n"
        f"User={user}\n"
        f"ExecStart={cloudflared} --no-autoupdate --config {config} tunnel run\n"
        "Restart=on-failure\n"
        "RestartSec=5s\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


class TunnelReconciler:
    """Reconcile one named tunnel and the DNS records of its routes.

    ``cloudflared_dir`` is the host path (before HostContext rooting) holding
    credentials and ingress files, normally ``~user/.cloudflared``.
    """

    component = "tunnel"

    def __init__(
        self,
        ctx: HostContext,
        user: str,
        cloudflared_dir: Path,
        api: Optional[CloudflareClient] = None,
        routing_domain: str = CF_ROUTING_DOMAIN,
        zone_domain: Optional[str] = None,
    ) -> None:
        self.ctx = ctx
        self.user = user
        self.cloudflared_dir = Path(cloudflared_dir)
        self.api = api
        self.routing_domain = routing_domain
        self.zone_domain = zone_domain

    # -- cloudflared CLI -------------------------------------------------

    def _cloudflared(self, *args: str):
        self.ctx.require("cloudflared")
        return self.ctx.run(["cloudflared", *args], as_user=self.user)

    def list_tunnels(self) -> Dict[str, str]:
        result = self._cloudflared("tunnel", "list", "--output", "json")
        if not result.ok:
            raise ManagerError(f"cloudflared tunnel list failed: {result.stderr.strip()}")
        try:
            items = json.loads(result.stdout or "[]") or []
        except ValueError as exc:
            raise ManagerError(f"Unparseable cloudflared tunnel list output: {exc}") from exc
        tunnels: Dict[str, str] = {}
        for item in items:
            if item.get("deleted_at") and not str(item["deleted_at"]).startswith("0001-"):
                continue
            name, tunnel_id = item.get("name"), item.get("id")
            if name in tunnels and tunnels[name] != tunnel_id:
                log("WARN", f"Several tunnels named '{name}'; using {tunnels[name]}")
                continue
            tunnels[name] = tunnel_id
        return tunnels

    def find_tunnel(self, name: str) -> Optional[Tunnel]:
        tunnel_id = self.list_tunnels().get(name)
        return Tunnel(name, tunnel_id) if tunnel_id else None

    def ensure_tunnel(self, name: str) -> Tunnel:
        existing = self.find_tunnel(name)
        if existing:
            log("INFO", f"Tunnel '{name}' already exists ({existing.id})")
            return existing
        result = self._cloudflared("tunnel", "create", name)
        if not result.ok:
            raise ManagerError(f"cloudflared tunnel create {name} failed: {result.stderr.strip()}")
        match = UUID_RE.search(result.stdout + "\n" + result.stderr)
        if match:
            tunnel = Tunnel(name, match.group(0))
        else:
            tunnel = self.find_tunnel(name)
            if tunnel is None:
                raise ManagerError(f"Could not determine the ID of new tunnel '{name}'")
        log("SUCCESS", f"Created tunnel: {name} ({tunnel.id})")
        return tunnel

    # -- files -------------------------------------------------------------

    def config_path(self, name: str) -> Path:
        return self.cloudflared_dir / f"config-{name}.yml"

    def credentials_path(self, tunnel_id: str) -> Path:
        return self.cloudflared_dir / f"{tunnel_id}.json"

    def unit_path(self, name: str) -> Path:
        return SYSTEMD_UNIT_DIR / f"cloudflared-{name}.service"

    def _chown(self, path: Path) -> None:
        if os.geteuid() != 0:
            return
        try:
            pwd.getpwnam(self.user)
        except KeyError:
            return
        shutil.chown(path, user=self.user)

    def write_ingress(self, tunnel: Tunnel, routes: Sequence[Route]) -> Change:
        """Write ``config-<name>.yml`` for ``tunnel``; unchanged content is left alone."""
        content = render_ingress(tunnel.id, str(self.credentials_path(tunnel.id)), routes)
        path = self.ctx.path(self.config_path(tunnel.name))
        if not write_if_changed(path, content):
            log("INFO", f"Ingress config {self.config_path(tunnel.name)} already up to date")
            return Change.UNCHANGED
        self._chown(path)
        log("SUCCESS", f"Ingress config written: {self.config_path(tunnel.name)}")
        return Change.CHANGED

    def read_routes(self, name: str) -> Tuple[Optional[str], List[Route]]:
        text = read_text(self.ctx.path(self.config_path(name)))
        if text is None:
            return None, []
        return parse_ingress(text)

    def add_routes(self, name: str, routes: Sequence[Route]) -> Change:
        """Merge ``routes`` into the existing ingress ahead of the catch-all."""
        tunnel_id, existing = self.read_routes(name)
        tunnel = Tunnel(name, tunnel_id) if tunnel_id else self.ensure_tunnel(name)
        merged = [r for r in existing if not r.is_catch_all]
        hostnames = {r.hostname for r in merged}
        services = {r.service for r in merged}
        for route in routes:
            if route.is_catch_all or route.hostname in hostnames or route.service in services:
                continue
            merged.append(route)
            hostnames.add(route.hostname)
            services.add(route.service)
        merged.extend(r for r in existing if r.is_catch_all)
        return self.write_ingress(tunnel, merged)

    def credentials_blob(self, tunnel_id: str) -> CredentialsBlob:
        path = self.ctx.path(self.credentials_path(tunnel_id))
        try:
            raw = path.read_bytes()
        except FileNotFoundError as exc:
            raise ManagerError(f"Credentials not found: {self.credentials_path(tunnel_id)}") from exc
        return CredentialsBlob.from_bytes(raw)

    # -- systemd -------------------------------------------------------------

    def _systemctl(self, *args: str) -> None:
        self.ctx.run(["systemctl", *args], check=True)

    def service_installed(self, name: str) -> bool:
        unit = self.unit_path(name)
        if not self.ctx.path(unit).is_file():
            return False
        return self.ctx.run(["systemctl", "is-active", "--quiet", unit.name]).ok

    def ensure_service(self, tunnel: Tunnel, restart: bool = False) -> Change:
        cloudflared = self.ctx.runner.which("cloudflared") or "/usr/bin/cloudflared"
        unit = render_service_unit(tunnel.name, self.user, cloudflared, self.config_path(tunnel.name))
        service = self.unit_path(tunnel.name).name
        if write_if_changed(self.ctx.path(self.unit_path(tunnel.name)), unit):
            self._systemctl("daemon-reload")
            self._systemctl("enable", "--now", service)
            if restart:
                self._systemctl("restart", service)
            log("SUCCESS", f"{service} installed and running")
            return Change.CHANGED
        if restart:
            self._systemctl("restart", service)
            log("INFO", f"{service} restarted for new ingress")
            return Change.CHANGED
        if not self.ctx.run(["systemctl", "is-active", "--quiet", service]).ok:
            self._systemctl("enable", "--now", service)
            return Change.CHANGED
        return Change.UNCHANGED

    def reconcile(self, target: TunnelTarget) -> Outcome:
        try:
            tunnel = self.ensure_tunnel(target.name)
            ingress = self.write_ingress(tunnel, target.routes)
            service = self.ensure_service(tunnel, restart=ingress == Change.CHANGED)
        except ManagerError as exc:
            return Outcome.from_error(self.component, exc)
        changed = Change.CHANGED in (ingress, service)
        return Outcome(
            self.component,
            Status.CHANGED if changed else Status.UNCHANGED,
            f"tunnel {tunnel.name} ({tunnel.id})",
        )

    # -- DNS -----------------------------------------------------------------

    def lookup_cname(self, hostname: str) -> Optional[str]:
        """Current public CNAME target of ``hostname``, or None when none is visible."""
        if not self.ctx.has("dig"):
            return None
        result = self.ctx.run(["dig", "+short", "CNAME", hostname])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            line = line.strip()
            if line:
                return line.rstrip(".")
        return None

    def current_target(self, hostname: str) -> Optional[str]:
        """Where ``hostname`` points now: the zone record with an API token, else the public CNAME."""
        if self.api is None:
            return self.lookup_cname(hostname)
        zone = self.api.zone_id(self.zone_domain or hostname)
        if zone is None:
            return None
        record = self.api.find_record(zone, hostname)
        return record.target.rstrip(".") if record is not None else None

    def _conflict(self, hostname: str, current: str, expected: str) -> DnsOutcome:
        log("WARN", f"DNS '{hostname}' points to the wrong tunnel: current {current}, expected {expected}")
        log("WARN", "Update this CNAME in the Cloudflare dashboard if it is safe to take over")
        return DnsOutcome.CONFLICT_WRONG_TARGET

    def _reconcile_dns_api(
        self, api: CloudflareClient, hostname: str, expected: str, overwrite: bool
    ) -> DnsOutcome:
        zone = api.zone_id(self.zone_domain or hostname)
        if zone is None:
            log("WARN", f"No Cloudflare zone found for {hostname}")
            return DnsOutcome.UNKNOWN
        record = api.find_record(zone, hostname)
        if record is None:
            api.create_record(zone, hostname, expected)
            log("SUCCESS", f"CNAME created: {hostname} -> {expected}")
            return DnsOutcome.CREATED
        current = record.target.rstrip(".")
        if current == expected:
            return DnsOutcome.ALREADY_CORRECT
        if overwrite:
            api.update_record(zone, record.id, hostname, expected)
            log("SUCCESS", f"CNAME updated: {hostname} -> {expected} (was {current})")
            return DnsOutcome.UPDATED
        return self._conflict(hostname, current, expected)

    def _reconcile_dns_cli(self, tunnel: Tunnel, hostname: str, expected: str) -> DnsOutcome:
        result = self._cloudflared("tunnel", "route", "dns", tunnel.name, hostname)
        if result.ok:
            output = f"{result.stdout}\n{result.stderr}".lower()
            if "already configured" in output:
                return DnsOutcome.ALREADY_CORRECT
            log("SUCCESS", f"DNS routed: {hostname}")
            return DnsOutcome.CREATED
        current = self.lookup_cname(hostname)
        if current is None:
            log("WARN", f"DNS for {hostname} could not be routed and is not visible yet")
            return DnsOutcome.UNKNOWN
        if current == expected:
            return DnsOutcome.ALREADY_CORRECT
        return self._conflict(hostname, current, expected)

    def reconcile_dns(self, tunnel: Tunnel, route: Route) -> DnsOutcome:
        """Point ``route.hostname`` at the tunnel, never silently taking over another target."""
        hostname = route.hostname
        if not hostname:
            return DnsOutcome.ALREADY_CORRECT
        expected = tunnel.dns_target(self.routing_domain)
        if self.api is not None:
            return self._reconcile_dns_api(self.api, hostname, expected, route.dns_overwrite)
        return self._reconcile_dns_cli(tunnel, hostname, expected)

    def reconcile_all_dns(self, target: TunnelTarget) -> List[Outcome]:
        try:
            tunnel = self.find_tunnel(target.name)
        except ManagerError as exc:
            return [Outcome.from_error("dns", exc)]
        if tunnel is None:
            return [Outcome("dns", Status.FAILED, f"tunnel '{target.name}' does not exist")]
        outcomes = []
        for route in target.routes:
            if route.is_catch_all:
                continue
            try:
                result = self.reconcile_dns(tunnel, route)
            except ManagerError as exc:
                outcomes.append(Outcome.from_error("dns", exc))
                continue
            outcomes.append(Outcome("dns", _DNS_STATUS[result], route.hostname or "", detail=result.value))
        return outcomes

    # -- remote guests ---------------------------------------------------------

    def deploy_remote(
        self,
        executor: RemoteExecutor,
        tunnel: Tunnel,
        routes: Sequence[Route],
        remote_dir: Optional[Path] = None,
    ) -> Change:
        """Ship ingress and credentials to a guest; credentials travel on stdin."""
        remote_dir = remote_dir or Path(f"/etc/cloudflared-{tunnel.name}")
        creds = remote_dir / "creds.json"
        config = remote_dir / "config.yml"
        content = render_ingress(tunnel.id, str(creds), routes)

        current = executor.execute(RemoteCommand(["cat", str(config)], sudo=True))
        has_creds = executor.execute(RemoteCommand(["test", "-s", str(creds)], sudo=True)).ok
        if current.ok and current.stdout == content and has_creds:
            log("INFO", f"Remote tunnel config {config} already up to date")
            return Change.UNCHANGED

        blob = self.credentials_blob(tunnel.id)
        quoted = shlex.quote(str(creds))
        steps = [
            RemoteCommand(["mkdir", "-p", str(remote_dir)], sudo=True),
            RemoteCommand(["sh", "-c", f"base64 -d > {quoted} && chmod 600 {quoted}"], stdin=blob.reveal(), sudo=True),
            RemoteCommand(["tee", str(config)], stdin=content, sudo=True),
        ]
        for step in steps:
            result = executor.execute(step)
            if not result.ok:
                raise ManagerError(f"Remote step '{step.describe()}' failed: {result.stderr.strip()}")
        log("SUCCESS", f"Tunnel {tunnel.name} config deployed to {remote_dir}")
        return Change.CHANGED

