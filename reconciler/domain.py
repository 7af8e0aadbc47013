"""Libvirt domain reconciliation against the persistent definition."""

from __future__ import annotations

from typing import FrozenSet, List, Optional, Sequence, Tuple, Union
from xml.etree.ElementTree import Element, SubElement, fromstring, register_namespace, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from reconciler.constants import LIBVIRT_URI, PCI_ADDRESS_RE
from reconciler.exceptions import ConfigError, ManagerError
from reconciler.host import HostContext
from reconciler.models import (
    Change,
    DomainSpec,
    FilesystemShare,
    Outcome,
    PciPassthrough,
    Status,
)
from reconciler.utils import ensure_directory, log

QEMU_NS = "http://libvirt.org/schemas/domain/qemu/1.0"

Device = Union[FilesystemShare, PciPassthrough]


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def parse_pci_address(address: str) -> Tuple[str, str, str, str]:
    match = PCI_ADDRESS_RE.match(address.strip())
    if not match:
        raise ConfigError(f"Invalid PCI address '{address}' (expected DDDD:BB:SS.F)")
    domain, bus, slot, function = match.groups()
    return domain.lower(), bus.lower(), slot.lower(), function


def vf_address(pf_address: str, function: int = 1) -> str:
    """Derive a virtual-function address from its physical function: 0000:00:02.0 -> 0000:00:02.1."""
    if not 0 <= function <= 7:
        raise ConfigError(f"PCI function must be 0-7 (got {function})")
    domain, bus, slot, _ = parse_pci_address(pf_address)
    return f"{domain}:{bus}:{slot}.{function}"


def _address_element(parent: Element, address: str, **extra: str) -> Element:
    domain, bus, slot, function = parse_pci_address(address)
    return SubElement(
        parent,
        "address",
        **extra,
        domain=f"0x{domain}",
        bus=f"0x{bus}",
        slot=f"0x{slot}",
        function=f"0x{function}",
    )


def _device_element(device: Device) -> Element:
    if isinstance(device, FilesystemShare):
        fs_el = Element("filesystem", type="mount", accessmode=device.accessmode)
        SubElement(fs_el, "driver", type="virtiofs" if device.driver == "virtiofs" else "path")
        SubElement(fs_el, "source", dir=str(device.source))
        SubElement(fs_el, "target", dir=device.target)
        if device.readonly:
            SubElement(fs_el, "readonly")
        return fs_el
    if isinstance(device, PciPassthrough):
        hostdev = Element("hostdev", mode="subsystem", type="pci", managed="yes" if device.managed else "no")
        source = SubElement(hostdev, "source")
        _address_element(source, device.address)
        if device.rom_file:
            SubElement(hostdev, "rom", file=device.rom_file)
        if device.alias:
            SubElement(hostdev, "alias", name=device.alias)
        if device.guest_address:
            _address_element(hostdev, device.guest_address, type="pci")
        return hostdev
    raise ManagerError(f"Unsupported device descriptor: {device!r}")


def render_device_xml(device: Device) -> str:
    return _element_to_str(_device_element(device))


def _hex(value: Optional[str], width: int) -> str:
    return format(int(value or "0", 16), f"0{width}x")


def device_keys(domain_xml: str) -> FrozenSet[Tuple[str, str]]:
    """Identity of every shared filesystem and PCI hostdev in a domain definition."""
    root = fromstring(domain_xml)
    keys = set()
    for fs_el in root.iter("filesystem"):
        target = fs_el.find("target")
        if target is not None and target.get("dir"):
            keys.add(("filesystem", target.get("dir")))
    for hostdev in root.iter("hostdev"):
        if hostdev.get("type") != "pci":
            continue
        addr = hostdev.find("source/address")
        if addr is None:
            continue
        address = "{}:{}:{}.{}".format(
            _hex(addr.get("domain"), 4),
            _hex(addr.get("bus"), 2),
            _hex(addr.get("slot"), 2),
            int(addr.get("function") or "0", 16),
        )
        keys.add(("hostdev", address))
    return frozenset(keys)


def qemu_args(domain_xml: str) -> List[str]:
    root = fromstring(domain_xml)
    return [arg.get("value", "") for arg in root.iter(f"{{{QEMU_NS}}}arg")]


def contains_sequence(haystack: Sequence[str], needle: Sequence[str]) -> bool:
    n = len(needle)
    return any(list(haystack[i:i + n]) == list(needle) for i in range(len(haystack) - n + 1))


def trailing_overlap(haystack: Sequence[str], needle: Sequence[str]) -> int:
    """Length of the longest prefix of ``needle`` that ends ``haystack``."""
    for k in range(min(len(haystack), len(needle)), 0, -1):
        if list(haystack[-k:]) == list(needle[:k]):
            return k
    return 0


def _needs_shared_memory(devices: Sequence[object]) -> bool:
    return any(isinstance(d, FilesystemShare) and d.driver == "virtiofs" for d in devices)


def _add_shared_memory(domain: Element) -> None:
    mb = SubElement(domain, "memoryBacking")
    SubElement(mb, "source", type="memfd")
    SubElement(mb, "access", mode="shared")


def render_domain_xml(spec: DomainSpec) -> str:
    register_namespace("qemu", QEMU_NS)

    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = spec.name
    SubElement(domain, "memory", unit="MiB").text = str(spec.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(spec.vcpus)

    os_attrs = {"firmware": "efi"} if spec.uefi else {}
    os_el = SubElement(domain, "os", **os_attrs)
    SubElement(os_el, "type", arch="x86_64", machine=spec.machine).text = "hvm"
    SubElement(os_el, "boot", dev="hd")
    if spec.iso_path:
        SubElement(os_el, "boot", dev="cdrom")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")

    # virtiofs needs shared guest memory
    if _needs_shared_memory(spec.devices):
        _add_shared_memory(domain)

    SubElement(domain, "cpu", mode="host-passthrough")

    devices = SubElement(domain, "devices")
    if spec.disk_path:
        disk = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk, "driver", name="qemu", type="qcow2")
        SubElement(disk, "source", file=str(spec.disk_path))
        SubElement(disk, "target", dev="vda", bus="virtio")
    if spec.iso_path:
        cdrom = SubElement(devices, "disk", type="file", device="cdrom")
        SubElement(cdrom, "driver", name="qemu", type="raw")
        SubElement(cdrom, "source", file=str(spec.iso_path))
        SubElement(cdrom, "target", dev="sda", bus="sata")
        SubElement(cdrom, "readonly")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=spec.network)
    SubElement(iface, "model", type="virtio")

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    for device in spec.devices:
        devices.append(_device_element(device))  # type: ignore[arg-type]

    if spec.qemu_args:
        qemu_cl = SubElement(domain, f"{{{QEMU_NS}}}commandline")
        for arg in spec.qemu_args:
            SubElement(qemu_cl, f"{{{QEMU_NS}}}arg", value=arg)

    return _element_to_str(domain)


class DomainReconciler:
    """Define a domain and keep its persistent definition carrying the wanted devices.

    Every change goes to the persistent config (``VIR_DOMAIN_AFFECT_CONFIG``)
    so it survives a domain restart; the running instance is left alone.
    """

    component = "domain"

    def __init__(self, ctx: HostContext, uri: str = LIBVIRT_URI, conn=None) -> None:
        self.ctx = ctx
        self.uri = uri
        self.conn = conn

    def connect(self):
        if self.conn is None:
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as exc:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}: {exc}") from exc
            if self.conn is None:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}")
        return self.conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def lookup(self, name: str):
        try:
            return self.connect().lookupByName(name)
        except libvirt.libvirtError:
            return None

    def _domain(self, name: str):
        dom = self.lookup(name)
        if dom is None:
            raise ManagerError(f"Domain {name} is not defined")
        return dom

    def persistent_xml(self, name: str) -> str:
        return self._domain(name).XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)

    def ensure_disk(self, spec: DomainSpec) -> Change:
        if not spec.disk_path:
            return Change.UNCHANGED
        disk = self.ctx.path(spec.disk_path)
        if disk.exists():
            return Change.UNCHANGED
        ensure_directory(disk.parent)
        self.ctx.require("qemu-img")
        self.ctx.run(["qemu-img", "create", "-f", "qcow2", str(disk), f"{spec.disk_size_gb}G"], check=True)
        log("SUCCESS", f"Created disk {spec.disk_path} ({spec.disk_size_gb}G)")
        return Change.CHANGED

    def ensure_domain_defined(self, spec: DomainSpec) -> Change:
        if self.lookup(spec.name) is not None:
            log("INFO", f"Domain {spec.name} already defined")
            return Change.UNCHANGED
        dom = self.connect().defineXML(render_domain_xml(spec))
        if dom is None:
            raise ManagerError(f"Failed to define libvirt domain {spec.name}")
        log("SUCCESS", f"Defined domain {spec.name}")
        return Change.CHANGED

    def _redefine(self, root: Element) -> None:
        register_namespace("qemu", QEMU_NS)
        if self.connect().defineXML(tostring(root, encoding="unicode")) is None:
            raise ManagerError(f"Failed to redefine domain {root.findtext('name')}")

    def ensure_shared_memory(self, name: str) -> Change:
        root = fromstring(self.persistent_xml(name))
        backing = root.find("memoryBacking")
        if backing is not None and backing.find("access[@mode='shared']") is not None:
            return Change.UNCHANGED
        if backing is not None:
            root.remove(backing)
        _add_shared_memory(root)
        self._redefine(root)
        log("INFO", f"Domain {name}: shared memory backing enabled for virtiofs")
        return Change.CHANGED

    def attach_if_absent(self, name: str, device: Device) -> Change:
        dom = self._domain(name)
        if device.key in device_keys(dom.XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)):
            log("INFO", f"Domain {name}: {device.key[0]} {device.key[1]} already attached")
            return Change.UNCHANGED
        try:
            dom.attachDeviceFlags(render_device_xml(device), libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Could not attach {device.key[0]} {device.key[1]} to {name}: {exc}") from exc
        log("SUCCESS", f"Domain {name}: attached {device.key[0]} {device.key[1]} (persistent)")
        return Change.CHANGED

    def ensure_qemu_commandline(self, name: str, args: Sequence[str]) -> Change:
        if not args:
            return Change.UNCHANGED
        xml = self.persistent_xml(name)
        present = qemu_args(xml)
        if contains_sequence(present, args):
            return Change.UNCHANGED
        # a partially written block is completed, not repeated
        missing = list(args)[trailing_overlap(present, args):]
        root = fromstring(xml)
        qemu_cl = root.find(f"{{{QEMU_NS}}}commandline")
        if qemu_cl is None:
            qemu_cl = SubElement(root, f"{{{QEMU_NS}}}commandline")
        for arg in missing:
            SubElement(qemu_cl, f"{{{QEMU_NS}}}arg", value=arg)
        self._redefine(root)
        log("SUCCESS", f"Domain {name}: qemu args {' '.join(missing)} added")
        return Change.CHANGED

    def ensure_autostart(self, name: str, enable: bool = True) -> Change:
        dom = self._domain(name)
        if bool(dom.autostart()) == enable:
            return Change.UNCHANGED
        dom.setAutostart(1 if enable else 0)
        log("SUCCESS", f"Domain {name}: autostart {'enabled' if enable else 'disabled'}")
        return Change.CHANGED

    def reconcile(self, spec: DomainSpec) -> Outcome:
        try:
            changes = [self.ensure_disk(spec), self.ensure_domain_defined(spec)]
            if _needs_shared_memory(spec.devices):
                changes.append(self.ensure_shared_memory(spec.name))
            for device in spec.devices:
                changes.append(self.attach_if_absent(spec.name, device))  # type: ignore[arg-type]
            changes.append(self.ensure_qemu_commandline(spec.name, spec.qemu_args))
            changes.append(self.ensure_autostart(spec.name, spec.autostart))
        except libvirt.libvirtError as exc:
            return Outcome(self.component, Status.FAILED, f"libvirt: {exc}")
        except ManagerError as exc:
            return Outcome.from_error(self.component, exc)
        status = Status.CHANGED if Change.CHANGED in changes else Status.UNCHANGED
        return Outcome(self.component, status, f"domain {spec.name}")
