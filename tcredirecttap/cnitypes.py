"""CNI result types and their JSON form."""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import PluginError
from .versions import ALL_VERSIONS, CURRENT_VERSION, LEGACY_VERSIONS

IPInterface = ipaddress.IPv4Interface | ipaddress.IPv6Interface
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

_PRE_1_0_VERSIONS = frozenset({"0.3.0", "0.3.1", "0.4.0"})


def _parse_cidr(text: Any) -> IPInterface:
    try:
        return ipaddress.ip_interface(text)
    except (ValueError, TypeError) as exc:
        raise PluginError(f"invalid CIDR address {text!r}") from exc


def _parse_ip(text: Any) -> IPAddress | None:
    if not text:
        return None
    try:
        return ipaddress.ip_address(text)
    except (ValueError, TypeError) as exc:
        raise PluginError(f"invalid IP address {text!r}") from exc


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise PluginError(f"expected a JSON object for {what}, got {data!r}")
    return data


@dataclass
class Interface:
    """A network interface reported in a CNI result."""

    name: str = ""
    mac: str = ""
    sandbox: str = ""
    mtu: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.mac:
            data["mac"] = self.mac
        if self.mtu:
            data["mtu"] = self.mtu
        if self.sandbox:
            data["sandbox"] = self.sandbox
        return data

    @classmethod
    def _from_dict(cls, data: Any) -> Interface:
        data = _mapping(data, "interface")
        return cls(
            name=data.get("name") or "",
            mac=data.get("mac") or "",
            sandbox=data.get("sandbox") or "",
            mtu=int(data.get("mtu") or 0),
        )


@dataclass
class IPConfig:
    """An address assigned to an interface, optionally with a gateway."""

    address: IPInterface
    gateway: IPAddress | None = None
    interface: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.interface is not None:
            data["interface"] = self.interface
        data["address"] = str(self.address)
        if self.gateway is not None:
            data["gateway"] = str(self.gateway)
        return data

    @classmethod
    def _from_dict(cls, data: Any) -> IPConfig:
        data = _mapping(data, "ip configuration")
        interface = data.get("interface")
        return cls(
            address=_parse_cidr(data.get("address")),
            gateway=_parse_ip(data.get("gateway")),
            interface=None if interface is None else int(interface),
        )


@dataclass
class Route:
    """A route: destination network and optional gateway."""

    dst: IPInterface
    gw: IPAddress | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"dst": str(self.dst)}
        if self.gw is not None:
            data["gw"] = str(self.gw)
        return data

    @classmethod
    def _from_dict(cls, data: Any) -> Route:
        data = _mapping(data, "route")
        return cls(dst=_parse_cidr(data.get("dst")), gw=_parse_ip(data.get("gw")))


@dataclass
class DNS:
    """Resolver settings."""

    nameservers: list[str] = field(default_factory=list)
    domain: str = ""
    search: list[str] = field(default_factory=list)
    options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.nameservers:
            data["nameservers"] = list(self.nameservers)
        if self.domain:
            data["domain"] = self.domain
        if self.search:
            data["search"] = list(self.search)
        if self.options:
            data["options"] = list(self.options)
        return data

    @classmethod
    def _from_dict(cls, data: Any) -> DNS:
        if data is None:
            return cls()
        data = _mapping(data, "dns")
        return cls(
            nameservers=list(data.get("nameservers") or []),
            domain=data.get("domain") or "",
            search=list(data.get("search") or []),
            options=list(data.get("options") or []),
        )


@dataclass
class Result:
    """The result of a CNI invocation, in the current specification's shape."""

    cni_version: str = CURRENT_VERSION
    interfaces: list[Interface] = field(default_factory=list)
    ips: list[IPConfig] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    dns: DNS = field(default_factory=DNS)

    @classmethod
    def from_dict(cls, data: Any) -> Result:
        """Parse a result of any known version, converting it to the current version."""
        data = _mapping(data, "result")
        version = data.get("cniVersion") or "0.1.0"
        if version not in ALL_VERSIONS:
            raise PluginError(f'unsupported CNI result version "{version}"')

        if version in LEGACY_VERSIONS:
            return cls._from_legacy(data)

        return cls(
            cni_version=CURRENT_VERSION,
            interfaces=[Interface._from_dict(i) for i in data.get("interfaces") or []],
            ips=[IPConfig._from_dict(i) for i in data.get("ips") or []],
            routes=[Route._from_dict(r) for r in data.get("routes") or []],
            dns=DNS._from_dict(data.get("dns")),
        )

    @classmethod
    def _from_legacy(cls, data: Mapping[str, Any]) -> Result:
        ips: list[IPConfig] = []
        routes: list[Route] = []
        for key in ("ip4", "ip6"):
            entry = data.get(key)
            if not entry:
                continue
            entry = _mapping(entry, key)
            ips.append(
                IPConfig(
                    address=_parse_cidr(entry.get("ip")),
                    gateway=_parse_ip(entry.get("gateway")),
                )
            )
            routes.extend(Route._from_dict(r) for r in entry.get("routes") or [])
        return cls(
            cni_version=CURRENT_VERSION,
            ips=ips,
            routes=routes,
            dns=DNS._from_dict(data.get("dns")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Render the result as JSON data in the shape its cni_version defines."""
        if self.cni_version not in ALL_VERSIONS:
            raise PluginError(f'unsupported CNI result version "{self.cni_version}"')
        if self.cni_version in LEGACY_VERSIONS:
            return self._legacy_dict()

        data: dict[str, Any] = {"cniVersion": self.cni_version}
        if self.interfaces:
            data["interfaces"] = [i.to_dict() for i in self.interfaces]
        if self.ips:
            ips = []
            for ip in self.ips:
                entry = ip.to_dict()
                if self.cni_version in _PRE_1_0_VERSIONS:
                    entry = {"version": str(ip.address.version), **entry}
                ips.append(entry)
            data["ips"] = ips
        if self.routes:
            data["routes"] = [r.to_dict() for r in self.routes]
        data["dns"] = self.dns.to_dict()
        return data

    def _legacy_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"cniVersion": self.cni_version}
        for key, family in (("ip4", 4), ("ip6", 6)):
            config = next((ip for ip in self.ips if ip.address.version == family), None)
            if config is None:
                continue
            entry: dict[str, Any] = {"ip": str(config.address)}
            if config.gateway is not None:
                entry["gateway"] = str(config.gateway)
            family_routes = [r.to_dict() for r in self.routes if r.dst.version == family]
            if family_routes:
                entry["routes"] = family_routes
            data[key] = entry
        data["dns"] = self.dns.to_dict()
        return data