"""Turn a CNI result into the network configuration a VM should apply internally.

The result is expected to hold a tap device interface, plus a pseudo-interface
with the same name whose sandbox is the VM id (the CNI "containerID"). That
pseudo-interface, and the single IP attached to it, describe how the VM's own
network device should be configured.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .cniutil import interface_ips, vm_tap_pair
from .cnitypes import IPConfig, Result, Route
from .errors import PluginError
from .netlink import DefaultNetlinkOps, NetlinkOps
from .netns import get_ns
from .versions import CURRENT_VERSION


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass
class StaticNetworkConf:
    """Configuration needed to set up a VM's networking.

    Fields starting with ``vm_`` describe what must exist inside the VM once
    it has started.
    """

    tap_name: str = ""
    netns_path: str = ""
    vm_if_name: str = ""
    vm_mac_addr: str = ""
    vm_mtu: int = 0
    vm_ip_config: IPConfig | None = None
    vm_routes: list[Route] = field(default_factory=list)
    vm_nameservers: list[str] = field(default_factory=list)
    vm_domain: str = ""
    vm_search_domains: list[str] = field(default_factory=list)
    vm_resolver_options: list[str] = field(default_factory=list)

    def ip_boot_param(self) -> str:
        """Return the value for the kernel's ``ip=`` boot parameter.

        Only the address, gateway, netmask, device name and the first two
        nameservers can be expressed; MAC, MTU, routes, domain, search domains
        and resolver options are left out.
        """
        if self.vm_ip_config is None:
            raise PluginError("no IP configuration to build a boot parameter from")

        address = self.vm_ip_config.address
        client_ip = str(address.ip)
        server_ip = ""
        gateway = self.vm_ip_config.gateway
        default_gateway = "" if gateway is None else str(gateway)
        subnet_mask = ".".join(str(b) for b in address.netmask.packed[:4])
        dhcp_hostname = ""
        device = self.vm_if_name
        autoconfiguration = "off"
        nameservers = (list(self.vm_nameservers[:2]) + ["", ""])[:2]
        ntp_server = ""

        return ":".join(
            [
                client_ip,
                server_ip,
                default_gateway,
                subnet_mask,
                dhcp_hostname,
                device,
                autoconfiguration,
                nameservers[0],
                nameservers[1],
                ntp_server,
            ]
        )


def _as_current_result(result: Result | Mapping[str, Any]) -> Result:
    try:
        if isinstance(result, Result):
            if result.cni_version == CURRENT_VERSION:
                return result
            return Result.from_dict(result.to_dict())
        return Result.from_dict(result)
    except PluginError as exc:
        raise PluginError(f"failed to parse cni result: {exc}") from exc


def static_network_conf_from(
    result: Result | Mapping[str, Any], container_id: str
) -> StaticNetworkConf:
    """Build a StaticNetworkConf from a CNI result and the VM id it was invoked with."""
    current = _as_current_result(result)

    vm_iface, tap_iface = vm_tap_pair(current, container_id)

    vm_ips = interface_ips(current, vm_iface.name, vm_iface.sandbox)
    if len(vm_ips) != 1:
        raise PluginError(
            f"expected to find 1 IP for vm interface {_quote(vm_iface.name)}, "
            f"but instead found {vm_ips!r}"
        )

    try:
        net_ns = get_ns(tap_iface.sandbox)
    except PluginError as exc:
        raise PluginError(
            f"failed to find netns at path {_quote(tap_iface.sandbox)}: {exc}"
        ) from exc

    with net_ns:
        tap_mtu = mtu_of(tap_iface.name, net_ns, DefaultNetlinkOps())

    return StaticNetworkConf(
        tap_name=tap_iface.name,
        netns_path=tap_iface.sandbox,
        vm_mac_addr=vm_iface.mac,
        vm_mtu=tap_mtu,
        vm_ip_config=vm_ips[0],
        vm_routes=list(current.routes),
        vm_nameservers=list(current.dns.nameservers),
        vm_domain=current.dns.domain,
        vm_search_domains=list(current.dns.search),
        vm_resolver_options=list(current.dns.options),
    )


def mtu_of(iface_name: str, net_ns: Any, netlink_ops: NetlinkOps) -> int:
    """Return the MTU of the named device inside the given namespace."""

    def lookup(_host: Any) -> int:
        try:
            link = netlink_ops.get_link(iface_name)
        except (PluginError, OSError) as exc:
            raise PluginError(
                f"failed to find device {_quote(iface_name)} in netns "
                f"{_quote(net_ns.path)}: {exc}"
            ) from exc
        return link.mtu

    try:
        return net_ns.do(lookup)
    except (PluginError, OSError) as exc:
        raise PluginError(f"failed to find MTU: {exc}") from exc