"""Shared test fixtures and libvirt stub injection for CI environments."""

from __future__ import annotations

import json
import sys
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import MagicMock
from xml.etree.ElementTree import fromstring, tostring


def _install_libvirt_stub():
    """Inject a minimal libvirt stub into sys.modules if the real library is not available."""
    if "libvirt" in sys.modules:
        return

    try:
        import libvirt  # noqa: F401

        return  # real library available
    except (ImportError, SystemExit):
        pass

    stub = types.ModuleType("libvirt")

    class libvirtError(Exception):
        def get_error_message(self):
            return str(self)

    stub.libvirtError = libvirtError
    stub.open = MagicMock(return_value=MagicMock())
    stub.VIR_DOMAIN_AFFECT_LIVE = 1
    stub.VIR_DOMAIN_AFFECT_CONFIG = 2
    stub.VIR_DOMAIN_XML_INACTIVE = 2

    # virConnect / virDomain stubs
    stub.virConnect = MagicMock
    stub.virDomain = MagicMock

    sys.modules["libvirt"] = stub


_install_libvirt_stub()

import libvirt  # noqa: E402
import pytest  # noqa: E402

from reconciler.config import parse_module  # noqa: E402
from reconciler.exceptions import Fatal  # noqa: E402
from reconciler.host import CommandResult, CommandRunner, HostContext  # noqa: E402
from reconciler.models import Route, TargetSpec, TunnelTarget  # noqa: E402

Handler = Union[CommandResult, Callable[[List[str]], CommandResult]]


@dataclass
class FakeCall:
    argv: List[str]
    input: Optional[str] = None
    as_user: Optional[str] = None
    secret: bool = False


class FakeRunner(CommandRunner):
    """Records every command and answers from handlers keyed by argv prefix.

    The longest matching prefix wins; unmatched commands succeed silently.
    Registering a handler also makes its executable visible to ``which``.
    """

    def __init__(self, tools=()) -> None:
        self.tools = set(tools)
        self.handlers: Dict[Tuple[str, ...], Handler] = {}
        self.calls: List[FakeCall] = []

    def on(self, *prefix: str, stdout: str = "", stderr: str = "", returncode: int = 0, handler=None):
        self.handlers[tuple(prefix)] = handler or CommandResult(returncode, stdout, stderr)
        self.tools.add(prefix[0])
        return self

    def run(self, argv, check=False, input=None, as_user=None, secret=False, timeout=None) -> CommandResult:
        argv = list(argv)
        self.calls.append(FakeCall(argv, input, as_user, secret))
        best: Optional[Tuple[str, ...]] = None
        for prefix in self.handlers:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            result = CommandResult(0)
        else:
            handler = self.handlers[best]
            result = handler(argv) if callable(handler) else handler
        if check and not result.ok:
            raise Fatal(f"{' '.join(argv)} failed ({result.returncode})")
        return result

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None

    def commands(self) -> List[str]:
        return [" ".join(call.argv) for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call.argv[: len(prefix)]) == prefix for call in self.calls)


class FakeDomain:
    """In-memory virDomain keeping only the persistent definition."""

    def __init__(self, xml: str) -> None:
        self.xml = xml
        self._autostart = 0
        self.attach_calls: List[Tuple[str, int]] = []

    def name(self) -> str:
        return fromstring(self.xml).findtext("name")

    def XMLDesc(self, flags=0) -> str:
        return self.xml

    def attachDeviceFlags(self, device_xml: str, flags: int) -> int:
        self.attach_calls.append((device_xml, flags))
        if flags & libvirt.VIR_DOMAIN_AFFECT_CONFIG:
            root = fromstring(self.xml)
            root.find("devices").append(fromstring(device_xml))
            self.xml = tostring(root, encoding="unicode")
        return 0

    def autostart(self) -> int:
        return self._autostart

    def setAutostart(self, flag: int) -> int:
        self._autostart = flag
        return 0


class FakeConn:
    def __init__(self) -> None:
        self.domains: Dict[str, FakeDomain] = {}
        self.defined: List[str] = []
        self.closed = False

    def lookupByName(self, name: str) -> FakeDomain:
        if name not in self.domains:
            raise libvirt.libvirtError(f"Domain not found: no domain with matching name '{name}'")
        return self.domains[name]

    def defineXML(self, xml: str) -> FakeDomain:
        self.defined.append(xml)
        name = fromstring(xml).findtext("name")
        dom = self.domains.get(name)
        if dom is None:
            dom = self.domains[name] = FakeDomain(xml)
        else:
            dom.xml = xml
        return dom

    def close(self) -> int:
        self.closed = True
        return 0


class FakeCloudflared:
    """Stateful stand-in for the cloudflared CLI, dig and systemctl."""

    def __init__(self, runner) -> None:
        self.tunnels: Dict[str, str] = {}
        self.dns: Dict[str, str] = {}
        self.active = set()
        self.created = []
        self.route_fails = False
        runner.on("cloudflared", "tunnel", "list", handler=self._list)
        runner.on("cloudflared", "tunnel", "create", handler=self._create)
        runner.on("cloudflared", "tunnel", "route", "dns", handler=self._route)
        runner.on("dig", handler=self._dig)
        runner.on("systemctl", "is-active", handler=self._is_active)
        runner.on("systemctl", "enable", handler=self._enable)

    def _list(self, argv):
        items = [
            {"id": tid, "name": name, "deleted_at": "0001-01-01T00:00:00Z", "connections": []}
            for name, tid in self.tunnels.items()
        ]
        return CommandResult(0, json.dumps(items))

    def _create(self, argv):
        name = argv[3]
        tunnel_id = f"a1b2c3d4-0000-4000-8000-{len(self.created) + 1:012d}"
        self.tunnels[name] = tunnel_id
        self.created.append(name)
        return CommandResult(
            0,
            f"Tunnel credentials written to /home/homelab-test/.cloudflared/{tunnel_id}.json.\n"
            f"Created tunnel {name} with id {tunnel_id}\n",
        )

    def _route(self, argv):
        name, host = argv[4], argv[5]
        expected = f"{self.tunnels[name]}.cfargotunnel.com"
        if self.route_fails:
            return CommandResult(1, "", "Failed to add route: code: 1000, reason: API unavailable")
        if host in self.dns:
            if self.dns[host] == expected:
                return CommandResult(0, "", f"INF {host} is already configured to route to your tunnel")
            return CommandResult(
                1, "", "Failed to add route: code: 1003, reason: An A, AAAA, or CNAME record with that host already exists."
            )
        self.dns[host] = expected
        return CommandResult(0, "", f"INF Added CNAME {host} which will route to this tunnel")

    def _dig(self, argv):
        target = self.dns.get(argv[-1])
        return CommandResult(0, f"{target}.\n" if target else "")

    def _is_active(self, argv):
        return CommandResult(0 if argv[-1] in self.active else 3)

    def _enable(self, argv):
        self.active.add(argv[-1])
        return CommandResult(0)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Retries and polling never wait in tests."""
    monkeypatch.setattr("reconciler.utils.time.sleep", lambda _seconds: None)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def host_root(tmp_path) -> Path:
    root = tmp_path / "host"
    root.mkdir()
    return root


@pytest.fixture
def ctx(host_root, runner) -> HostContext:
    return HostContext(root=host_root, runner=runner)


@pytest.fixture
def write_host_file(host_root):
    """Write ``content`` at an absolute host path under the test root."""

    def _write(path: str, content: str) -> Path:
        target = host_root / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return target

    return _write


@pytest.fixture
def fake_conn() -> FakeConn:
    return FakeConn()


@pytest.fixture
def sample_target() -> TargetSpec:
    return TargetSpec(
        cmdline_tokens=frozenset({"intel_iommu=on", "iommu=pt"}),
        module=parse_module("sriov@6.8"),
        tunnel=TunnelTarget(name="t1", routes=(Route("ssh.example.com", "ssh://localhost:22"),)),
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable load_settings() reads.
_SETTINGS_ENV_VARS = [
    "HOST_ROOT",
    "LIBVIRT_URI",
    "CLOUDFLARED_DIR",
    "CF_API_TOKEN",
    "CF_ACCOUNT_DOMAIN",
    "TUNNEL_USER",
    "SUDO_USER",
    "USER",
    "RECONCILE_TARGET",
    "RECONCILE_POLL_ATTEMPTS",
    "RECONCILE_POLL_INTERVAL",
    "RECONCILE_COMMAND_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every variable load_settings() reads."""
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def cloudflared(runner) -> FakeCloudflared:
    return FakeCloudflared(runner)
