"""Target file loading and environment variable parsing for homelab-reconciler."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from reconciler.constants import (
    CF_API_TOKEN_FILE_NAME,
    DEFAULT_MODULE_PACKAGES,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TARGET_PATH,
    LIBVIRT_URI,
)
from reconciler.domain import parse_pci_address, vf_address
from reconciler.exceptions import ConfigError
from reconciler.models import (
    DomainSpec,
    FilesystemShare,
    ModuleTarget,
    PciPassthrough,
    Route,
    Settings,
    TargetSpec,
    TunnelTarget,
)
from reconciler.utils import (
    get_env,
    log,
    parse_float_env,
    parse_int_env,
    read_text,
    resolve_user,
    user_home,
)


def _mapping(value: Any, key: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if not isinstance(value, list) or not all(isinstance(v, (str, int, float)) for v in value):
        raise ConfigError(f"'{key}' must be a list of strings")
    return [str(v) for v in value]


def _required(data: Dict[str, Any], field: str, key: str) -> str:
    value = data.get(field)
    if value is None or str(value).strip() == "":
        raise ConfigError(f"'{key}.{field}' is required")
    return str(value).strip()


def _int(data: Dict[str, Any], field: str, key: str, default: int, min_val: int = 1) -> int:
    raw = data.get(field, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}.{field}' must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"'{key}.{field}' must be >= {min_val} (got {value})")
    return value


def parse_module(value: Any) -> Optional[ModuleTarget]:
    """Accept ``"name@minkernel"`` or a mapping with name/min_kernel/packages."""
    if value is None:
        return None
    if isinstance(value, str):
        name, _, min_kernel = value.partition("@")
        data: Dict[str, Any] = {"name": name, "min_kernel": min_kernel or None}
    else:
        data = _mapping(value, "module")
    name = _required(data, "name", "module")
    packages = _mapping(data.get("packages"), "module.packages")
    if not packages and name == "i915-sriov-dkms":
        packages = dict(DEFAULT_MODULE_PACKAGES)
    min_kernel = data.get("min_kernel")
    return ModuleTarget(
        name=name,
        min_kernel=str(min_kernel) if min_kernel else None,
        packages=tuple(sorted((str(k), str(v)) for k, v in packages.items())),
        copr=data.get("copr"),
        deb_repo=data.get("deb_repo"),
    )


def parse_route(value: Any, index: int) -> Route:
    key = f"tunnel.routes[{index}]"
    data = _mapping(value, key)
    service = _required(data, "service", key)
    hostname = data.get("hostname")
    return Route(
        hostname=str(hostname).strip() if hostname else None,
        service=service,
        origin_host_header=data.get("origin_host_header"),
        dns_overwrite=bool(data.get("dns_overwrite", False)),
    )


def parse_tunnel(value: Any) -> Optional[TunnelTarget]:
    if value is None:
        return None
    data = _mapping(value, "tunnel")
    routes = data.get("routes") or []
    if not isinstance(routes, list):
        raise ConfigError("'tunnel.routes' must be a list")
    return TunnelTarget(
        name=_required(data, "name", "tunnel"),
        routes=tuple(parse_route(r, i) for i, r in enumerate(routes)),
        domain=data.get("domain"),
    )


def _parse_share(value: Any, index: int) -> FilesystemShare:
    key = f"domain.shares[{index}]"
    data = _mapping(value, key)
    driver = str(data.get("driver", "virtiofs"))
    if driver not in ("virtiofs", "9p"):
        raise ConfigError(f"'{key}.driver' must be virtiofs or 9p (got '{driver}')")
    return FilesystemShare(
        source=Path(_required(data, "source", key)),
        target=_required(data, "target", key),
        driver=driver,
        accessmode=str(data.get("accessmode", "passthrough")),
        readonly=bool(data.get("readonly", False)),
    )


def _parse_passthrough(value: Any, index: int) -> PciPassthrough:
    key = f"domain.passthrough[{index}]"
    data = _mapping(value, key)
    if data.get("address"):
        address = str(data["address"])
    elif data.get("pf"):
        address = vf_address(str(data["pf"]), _int(data, "function", key, 1, min_val=0))
    else:
        raise ConfigError(f"'{key}' needs 'address' or 'pf'")
    domain, bus, slot, function = parse_pci_address(address)
    guest = data.get("guest_address")
    if guest:
        parse_pci_address(str(guest))
    return PciPassthrough(
        address=f"{domain}:{bus}:{slot}.{function}",
        rom_file=data.get("rom_file"),
        guest_address=str(guest) if guest else None,
        alias=data.get("alias"),
        managed=bool(data.get("managed", True)),
    )


def parse_domain(value: Any) -> Optional[DomainSpec]:
    if value is None:
        return None
    data = _mapping(value, "domain")
    shares = data.get("shares") or []
    passthrough = data.get("passthrough") or []
    if not isinstance(shares, list) or not isinstance(passthrough, list):
        raise ConfigError("'domain.shares' and 'domain.passthrough' must be lists")
    devices = tuple(_parse_share(s, i) for i, s in enumerate(shares)) + tuple(
        _parse_passthrough(p, i) for i, p in enumerate(passthrough)
    )
    disk_path = data.get("disk_path")
    iso_path = data.get("iso_path")
    return DomainSpec(
        name=_required(data, "name", "domain"),
        memory_mb=_int(data, "memory_mb", "domain", 4096, min_val=128),
        vcpus=_int(data, "vcpus", "domain", 2),
        disk_path=Path(disk_path) if disk_path else None,
        disk_size_gb=_int(data, "disk_size_gb", "domain", 40),
        iso_path=Path(iso_path) if iso_path else None,
        network=str(data.get("network", "default")),
        machine=str(data.get("machine", "pc")),
        uefi=bool(data.get("uefi", True)),
        autostart=bool(data.get("autostart", True)),
        devices=devices,
        qemu_args=tuple(_string_list(data.get("qemu_args"), "domain.qemu_args")),
    )


def parse_target(data: Any) -> TargetSpec:
    data = _mapping(data, "target")
    cmdline = data.get("cmdline")
    if isinstance(cmdline, dict):
        tokens = _string_list(cmdline.get("tokens"), "cmdline.tokens")
        remove = _string_list(cmdline.get("remove"), "cmdline.remove")
    else:
        tokens = _string_list(cmdline, "cmdline")
        remove = []
    return TargetSpec(
        cmdline_tokens=frozenset(tokens),
        remove_tokens=frozenset(remove),
        module=parse_module(data.get("module")),
        tunnel=parse_tunnel(data.get("tunnel")),
        domain=parse_domain(data.get("domain")),
    )


def resolve_target_path(cli_value: Optional[str] = None) -> Path:
    if cli_value:
        return Path(cli_value)
    return Path(get_env("RECONCILE_TARGET") or str(DEFAULT_TARGET_PATH))


def load_target(path: Path) -> TargetSpec:
    if not path.exists():
        raise ConfigError(f"Target file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Target file {path} is not valid YAML: {exc}") from exc
    target = parse_target(data or {})
    log("DEBUG", f"Loaded target from {path}")
    return target


def load_settings() -> Settings:
    user = resolve_user()
    host_root = Path(get_env("HOST_ROOT") or "/")
    cf_dir_raw = get_env("CLOUDFLARED_DIR")
    cloudflared_dir = Path(cf_dir_raw) if cf_dir_raw else user_home(user) / ".cloudflared"
    if not cloudflared_dir.is_absolute():
        raise ConfigError(f"CLOUDFLARED_DIR must be an absolute path (got '{cloudflared_dir}')")

    token = (get_env("CF_API_TOKEN") or "").strip()
    if not token:
        token_file = host_root / cloudflared_dir.relative_to("/") / CF_API_TOKEN_FILE_NAME
        token = (read_text(token_file) or "").strip()

    command_timeout = parse_float_env("RECONCILE_COMMAND_TIMEOUT", str(DEFAULT_COMMAND_TIMEOUT))
    if command_timeout <= 0:
        raise ConfigError(f"RECONCILE_COMMAND_TIMEOUT must be > 0 (got {command_timeout})")

    return Settings(
        host_root=host_root,
        libvirt_uri=get_env("LIBVIRT_URI") or LIBVIRT_URI,
        cloudflared_dir=cloudflared_dir,
        api_token=token or None,
        account_domain=get_env("CF_ACCOUNT_DOMAIN"),
        user=user,
        poll_attempts=parse_int_env("RECONCILE_POLL_ATTEMPTS", str(DEFAULT_POLL_ATTEMPTS)),
        poll_interval=parse_float_env("RECONCILE_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL)),
        command_timeout=command_timeout,
    )
