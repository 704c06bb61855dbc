"""Static guest network configuration in the dialects cloud-init understands."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.constants import DEFAULT_NET_DIALECT, NET_DIALECT_ALIASES, NET_DIALECTS
from cloudvm.exceptions import ConfigurationError
from cloudvm.models import DistroSpec, StaticNetwork

ENI_DIR = "/etc/network/interfaces.d"
DHCLIENT_CONF = "/etc/dhcp/dhclient.conf"
SSHD_IFUP_HOOK = "/etc/network/if-up.d/openssh-server"
DISABLE_NETWORK_CONFIG = "/etc/cloud/cloud.cfg.d/99-disable-network-config.cfg"


@dataclass
class NetworkRendering:
    dialect: str
    # Separate ``network-config`` document (v1/v2 only).
    network_config: Optional[str] = None
    # ENI stanza carried inline in meta-data as ``network-interfaces``.
    interfaces: Optional[str] = None
    write_files: List[Dict[str, str]] = field(default_factory=list)
    bootcmd: List[List[str]] = field(default_factory=list)
    runcmd: List[List[str]] = field(default_factory=list)


def select_dialect(requested: Optional[str], spec: DistroSpec) -> str:
    if requested:
        dialect = NET_DIALECT_ALIASES.get(requested.strip().lower())
        if dialect is None:
            raise ConfigurationError(
                f"Unsupported NET_CONFIG_TYPE '{requested}'. Supported: {', '.join(NET_DIALECTS)}"
            )
        return dialect
    return spec.default_net_dialect or DEFAULT_NET_DIALECT


def _interface(net: StaticNetwork):
    try:
        if "/" in net.address:
            return ipaddress.ip_interface(net.address)
        if net.netmask:
            return ipaddress.ip_interface(f"{net.address}/{net.netmask}")
        return None
    except ValueError as exc:
        raise ConfigurationError(f"Invalid static address '{net.address}': {exc}")


def host_address(net: StaticNetwork) -> str:
    return net.address.split("/", 1)[0]


def cidr_address(net: StaticNetwork) -> Optional[str]:
    iface = _interface(net)
    return iface.with_prefixlen if iface is not None else None


def subnet_mask(net: StaticNetwork) -> Optional[str]:
    if net.netmask:
        return net.netmask
    iface = _interface(net)
    return str(iface.netmask) if iface is not None else None


def render_eni(net: StaticNetwork) -> str:
    lines = [
        f"auto {net.interface}",
        f"iface {net.interface} inet static",
        f"    address {net.address}",
    ]
    if net.netmask:
        lines.append(f"    netmask {net.netmask}")
    if net.network:
        lines.append(f"    network {net.network}")
    if net.broadcast:
        lines.append(f"    broadcast {net.broadcast}")
    if net.gateway:
        lines.append(f"    gateway {net.gateway}")
    if net.mac_address:
        lines.append(f"    hwaddress ether {net.mac_address}")
    if net.nameservers:
        lines.append(f"    dns-nameservers {' '.join(net.nameservers)}")
    if net.search_domain:
        lines.append(f"    dns-search {net.search_domain}")
    return "\n".join(lines) + "\n"


def _v1_line(pad: str, key: str, value: Optional[str]) -> str:
    if not value:
        return f"{pad}# {key}: not set"
    return f"{pad}{key}: {json.dumps(value)}"


def render_v1(net: StaticNetwork) -> str:
    lines = [
        "version: 1",
        "config:",
        "  - type: physical",
        f"    name: {json.dumps(net.interface)}",
        _v1_line("    ", "mac_address", net.mac_address),
        "    subnets:",
        "      - type: static",
        f"        address: {json.dumps(net.address)}",
        _v1_line("        ", "netmask", net.netmask),
        _v1_line("        ", "network", net.network),
        _v1_line("        ", "broadcast", net.broadcast),
        _v1_line("        ", "gateway", net.gateway),
    ]
    if net.nameservers or net.search_domain:
        lines.append("  - type: nameserver")
        if net.nameservers:
            lines.append("    address:")
            lines.extend(f"      - {json.dumps(ns)}" for ns in net.nameservers)
        if net.search_domain:
            lines.append("    search:")
            lines.append(f"      - {json.dumps(net.search_domain)}")
    return "\n".join(lines) + "\n"


def render_v2(net: StaticNetwork) -> str:
    # bare address without a netmask is passed through as given
    address = cidr_address(net) or net.address
    ethernet: Dict[str, object] = {}
    if net.mac_address:
        ethernet["match"] = {"macaddress": net.mac_address}
        ethernet["set-name"] = net.interface
    ethernet["dhcp4"] = False
    ethernet["addresses"] = [address]
    if net.gateway:
        ethernet["routes"] = [{"to": "default", "via": net.gateway}]
    nameservers: Dict[str, List[str]] = {}
    if net.nameservers:
        nameservers["addresses"] = list(net.nameservers)
    if net.search_domain:
        nameservers["search"] = [net.search_domain]
    if nameservers:
        ethernet["nameservers"] = nameservers
    document = {"version": 2, "ethernets": {net.interface: ethernet}}
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_dhclient(net: StaticNetwork) -> str:
    lines = [
        f"# Static lease for {net.interface}",
        "lease {",
        f'  interface "{net.interface}";',
        f"  fixed-address {host_address(net)};",
    ]
    mask = subnet_mask(net)
    if mask:
        lines.append(f"  option subnet-mask {mask};")
    if net.broadcast:
        lines.append(f"  option broadcast-address {net.broadcast};")
    if net.gateway:
        lines.append(f"  option routers {net.gateway};")
    if net.nameservers:
        lines.append(f"  option domain-name-servers {', '.join(net.nameservers)};")
    if net.search_domain:
        lines.append(f'  option domain-search "{net.search_domain}";')
    lines += ["  renew never;", "  rebind never;", "  expire never;", "}"]
    return "\n".join(lines) + "\n"


def render_network(net: StaticNetwork, dialect: str) -> NetworkRendering:
    if dialect == "v1":
        return NetworkRendering(dialect, network_config=render_v1(net))
    if dialect == "v2":
        return NetworkRendering(dialect, network_config=render_v2(net))
    if dialect == "ENI-inline":
        return NetworkRendering(dialect, interfaces=render_eni(net))
    if dialect == "ENI-file":
        return NetworkRendering(
            dialect,
            write_files=[
                {"path": f"{ENI_DIR}/{net.interface}", "content": render_eni(net), "permissions": "0644"},
                {"path": DISABLE_NETWORK_CONFIG, "content": "network: {config: disabled}\n"},
            ],
            runcmd=[
                [
                    "sh",
                    "-c",
                    f"for f in {ENI_DIR}/50-cloud-init {ENI_DIR}/50-cloud-init.cfg; do"
                    " [ -f \"$f\" ] && sed -i -e '/^#/! s/^/# /' \"$f\"; done; true",
                ],
            ],
        )
    if dialect == "dhclient":
        return NetworkRendering(
            dialect,
            write_files=[{"path": DHCLIENT_CONF, "content": render_dhclient(net)}],
            bootcmd=[["sh", "-c", f"[ -x {SSHD_IFUP_HOOK} ] && chmod -x {SSHD_IFUP_HOOK} || true"]],
            runcmd=[["sh", "-c", f"[ -f {SSHD_IFUP_HOOK} ] && chmod +x {SSHD_IFUP_HOOK} || true"]],
        )
    raise ConfigurationError(f"Unsupported network dialect: {dialect}")
