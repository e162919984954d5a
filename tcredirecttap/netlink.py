"""Tap device, ingress qdisc and u32 redirect filter management over rtnetlink."""

from __future__ import annotations

import errno
import fcntl
import json
import os
import socket
import struct
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass

from .errors import (
    FilterNotFoundError,
    LinkNotFoundError,
    PluginError,
    QdiscNotFoundError,
)

# Netlink message framing.
_NETLINK_ROUTE = 0
_NLM_F_REQUEST = 0x1
_NLM_F_MULTI = 0x2
_NLM_F_ACK = 0x4
_NLM_F_DUMP = 0x300
_NLM_F_EXCL = 0x200
_NLM_F_CREATE = 0x400
_NLMSG_ERROR = 2
_NLMSG_DONE = 3
_NLA_TYPE_MASK = 0x3FFF

# Message types.
_RTM_NEWLINK = 16
_RTM_DELLINK = 17
_RTM_GETLINK = 18
_RTM_SETLINK = 19
_RTM_NEWQDISC = 36
_RTM_DELQDISC = 37
_RTM_GETQDISC = 38
_RTM_NEWTFILTER = 44
_RTM_GETTFILTER = 46

# Link attributes.
_IFLA_ADDRESS = 1
_IFLA_IFNAME = 3
_IFLA_MTU = 4
_IFF_UP = 0x1

# Traffic control attributes and values.
_TCA_KIND = 1
_TCA_OPTIONS = 2
_TCA_U32_SEL = 5
_TCA_U32_ACT = 7
_TCA_ACT_KIND = 1
_TCA_ACT_OPTIONS = 2
_TCA_MIRRED_PARMS = 2
_TC_U32_TERMINAL = 1
_TC_ACT_STOLEN = 4
_TCA_EGRESS_REDIR = 1
_ETH_P_ALL = 0x0003

HANDLE_INGRESS = 0xFFFFFFF1
_INGRESS_QDISC_HANDLE = 0xFFFF0000

# Tun/tap ioctls.
_TUN_DEVICE = "/dev/net/tun"
_TUNSETIFF = 0x400454CA
_TUNSETPERSIST = 0x400454CB
_TUNSETOWNER = 0x400454CC
_TUNSETGROUP = 0x400454CE
_IFF_TAP = 0x0002
_IFF_ONE_QUEUE = 0x2000
_IFF_VNET_HDR = 0x4000
_IFNAMSIZ = 16

_NLMSG_HDR = struct.Struct("=IHHII")
_RTA_HDR = struct.Struct("=HH")
_IFINFOMSG = struct.Struct("=BxHiII")
_TCMSG = struct.Struct("=BxxxiIII")
_U32_SEL = struct.Struct("=BBBxHHhhI")
_U32_KEY = struct.Struct("=IIii")
_TC_MIRRED = struct.Struct("=IIiiiiI")
_IFREQ = struct.Struct("16sH22x")


def _make_handle(major: int, minor: int) -> int:
    return ((major & 0xFFFF) << 16) | (minor & 0xFFFF)


def root_filter_handle() -> int:
    """Return the u32 filter handle of the root of a qdisc."""
    return _make_handle(0xFFFF, 0)


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass
class Link:
    """A network device as seen through netlink."""

    name: str = ""
    index: int = 0
    mtu: int = 0
    hardware_addr: str = ""


@dataclass
class Qdisc:
    """A queueing discipline attached to a device."""

    link_index: int
    handle: int
    parent: int
    kind: str = ""


@dataclass
class RedirectFilter:
    """A u32 filter that redirects packets to another device's egress."""

    link_index: int
    handle: int
    parent: int
    priority: int
    protocol: int
    redir_index: int


class NetlinkError(PluginError):
    """The kernel rejected a netlink request."""

    def __init__(self, code: int) -> None:
        self.errno = code
        super().__init__(os.strerror(code))


def _align(length: int) -> int:
    return (length + 3) & ~3


def _attr(kind: int, payload: bytes) -> bytes:
    length = _RTA_HDR.size + len(payload)
    return _RTA_HDR.pack(length, kind) + payload + b"\0" * (_align(length) - length)


def _attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _RTA_HDR.size <= len(data):
        length, kind = _RTA_HDR.unpack_from(data, offset)
        if length < _RTA_HDR.size:
            return
        yield kind & _NLA_TYPE_MASK, data[offset + _RTA_HDR.size : offset + length]
        offset += _align(length)


def _cstr(payload: bytes) -> str:
    return payload.split(b"\0", 1)[0].decode(errors="replace")


class _RouteSocket:
    """A short-lived rtnetlink socket that sends requests and gathers replies."""

    def __init__(self) -> None:
        try:
            self._sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, _NETLINK_ROUTE)
            self._sock.bind((0, 0))
        except OSError as exc:
            raise NetlinkError(exc.errno or errno.EIO) from exc
        self._seq = 0

    def __enter__(self) -> _RouteSocket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._sock.close()

    def request(self, msg_type: int, flags: int, body: bytes) -> list[tuple[int, bytes]]:
        self._seq += 1
        seq = self._seq
        header = _NLMSG_HDR.pack(
            _NLMSG_HDR.size + len(body), msg_type, flags | _NLM_F_REQUEST, seq, 0
        )
        try:
            self._sock.send(header + body)
        except OSError as exc:
            raise NetlinkError(exc.errno or errno.EIO) from exc

        replies: list[tuple[int, bytes]] = []
        while True:
            try:
                data = self._sock.recv(1 << 18)
            except OSError as exc:
                raise NetlinkError(exc.errno or errno.EIO) from exc
            offset = 0
            while offset + _NLMSG_HDR.size <= len(data):
                length, mtype, mflags, mseq, _ = _NLMSG_HDR.unpack_from(data, offset)
                if length < _NLMSG_HDR.size:
                    raise NetlinkError(errno.EIO)
                payload = data[offset + _NLMSG_HDR.size : offset + length]
                offset += _align(length)
                if mseq != seq:
                    continue
                if mtype in (_NLMSG_ERROR, _NLMSG_DONE):
                    code = struct.unpack_from("=i", payload)[0] if len(payload) >= 4 else 0
                    if code < 0:
                        raise NetlinkError(-code)
                    return replies
                replies.append((mtype, payload))
                if not mflags & _NLM_F_MULTI and not flags & _NLM_F_ACK:
                    return replies


def _parse_link(payload: bytes) -> Link:
    _, _, index, _, _ = _IFINFOMSG.unpack_from(payload)
    attrs = dict(_attrs(payload[_IFINFOMSG.size :]))
    mtu_raw = attrs.get(_IFLA_MTU)
    return Link(
        name=_cstr(attrs.get(_IFLA_IFNAME, b"")),
        index=index,
        mtu=struct.unpack_from("=I", mtu_raw)[0] if mtu_raw else 0,
        hardware_addr=":".join(f"{b:02x}" for b in attrs.get(_IFLA_ADDRESS, b"")),
    )


def _parse_redirect_index(actions: bytes) -> int:
    redir_index = 0
    for _, action in _attrs(actions):
        fields = dict(_attrs(action))
        if _cstr(fields.get(_TCA_ACT_KIND, b"")) != "mirred":
            continue
        params = dict(_attrs(fields.get(_TCA_ACT_OPTIONS, b""))).get(_TCA_MIRRED_PARMS)
        if params is None or len(params) < _TC_MIRRED.size:
            continue
        *_, eaction, ifindex = _TC_MIRRED.unpack_from(params)
        if eaction == _TCA_EGRESS_REDIR:
            redir_index = ifindex
    return redir_index


class NetlinkOps(ABC):
    """The low-level operations needed to pair a tap device with another device."""

    @abstractmethod
    def create_tap(self, name: str, mtu: int, owner_uid: int, owner_gid: int) -> Link:
        """Create a single-queue tap device with vnet headers, set its MTU and bring it up."""

    @abstractmethod
    def add_ingress_qdisc(self, link: Link) -> None:
        """Attach an ingress qdisc to the device."""

    @abstractmethod
    def get_ingress_qdisc(self, link: Link) -> Qdisc | None:
        """Return the device's ingress qdisc or raise QdiscNotFoundError."""

    @abstractmethod
    def remove_ingress_qdisc(self, link: Link) -> None:
        """Remove the device's ingress qdisc or raise QdiscNotFoundError."""

    @abstractmethod
    def add_redirect_filter(self, source_link: Link, target_link: Link) -> None:
        """Redirect the source's ingress traffic to the target's egress with a u32 filter."""

    @abstractmethod
    def get_redirect_filter(
        self, source_link: Link, target_link: Link
    ) -> RedirectFilter | None:
        """Return the redirect filter from source to target or raise FilterNotFoundError."""

    @abstractmethod
    def get_link(self, name: str) -> Link:
        """Return the device with the name or raise LinkNotFoundError."""

    @abstractmethod
    def remove_link(self, name: str) -> None:
        """Delete the device with the name or raise LinkNotFoundError."""


class DefaultNetlinkOps(NetlinkOps):
    """NetlinkOps carried out with rtnetlink requests and tun/tap ioctls."""

    def create_tap(self, name: str, mtu: int, owner_uid: int, owner_gid: int) -> Link:
        encoded = name.encode()
        if len(encoded) >= _IFNAMSIZ:
            raise PluginError(
                f"failed to create tap device: interface name {_quote(name)} is too long"
            )
        try:
            fd = os.open(_TUN_DEVICE, os.O_RDWR | os.O_CLOEXEC)
        except OSError as exc:
            raise PluginError(f"failed to create tap device: {exc}") from exc
        try:
            ifreq = _IFREQ.pack(encoded, _IFF_TAP | _IFF_ONE_QUEUE | _IFF_VNET_HDR)
            try:
                tap_name = _cstr(fcntl.ioctl(fd, _TUNSETIFF, ifreq)[:_IFNAMSIZ])
            except OSError as exc:
                raise PluginError(f"failed to create tap device: {exc}") from exc
            try:
                fcntl.ioctl(fd, _TUNSETOWNER, owner_uid)
            except OSError as exc:
                raise PluginError(
                    f"failed to set tap {name} owner to uid {owner_uid}: {exc}"
                ) from exc
            try:
                fcntl.ioctl(fd, _TUNSETGROUP, owner_gid)
            except OSError as exc:
                raise PluginError(
                    f"failed to set tap {name} group to gid {owner_gid}: {exc}"
                ) from exc
            try:
                fcntl.ioctl(fd, _TUNSETPERSIST, 1)
            except OSError as exc:
                raise PluginError(f"failed to create tap device: {exc}") from exc
        finally:
            os.close(fd)

        tap = self.get_link(tap_name)
        with _RouteSocket() as nl:
            try:
                nl.request(
                    _RTM_SETLINK,
                    _NLM_F_ACK,
                    _IFINFOMSG.pack(socket.AF_UNSPEC, 0, tap.index, 0, 0)
                    + _attr(_IFLA_MTU, struct.pack("=I", mtu)),
                )
            except NetlinkError as exc:
                raise PluginError(f"failed to set tap device MTU to {mtu}: {exc}") from exc
            try:
                nl.request(
                    _RTM_SETLINK,
                    _NLM_F_ACK,
                    _IFINFOMSG.pack(socket.AF_UNSPEC, 0, tap.index, _IFF_UP, _IFF_UP),
                )
            except NetlinkError as exc:
                raise PluginError("failed to set tap up") from exc
        return self.get_link(tap_name)

    def add_ingress_qdisc(self, link: Link) -> None:
        body = _TCMSG.pack(
            socket.AF_UNSPEC, link.index, _INGRESS_QDISC_HANDLE, HANDLE_INGRESS, 0
        ) + _attr(_TCA_KIND, b"ingress\0")
        try:
            with _RouteSocket() as nl:
                nl.request(_RTM_NEWQDISC, _NLM_F_CREATE | _NLM_F_EXCL | _NLM_F_ACK, body)
        except NetlinkError as exc:
            raise PluginError(
                f"failed to add ingress qdisc to device {_quote(link.name)}: {exc}"
            ) from exc

    def _list_qdiscs(self, link: Link) -> list[Qdisc]:
        with _RouteSocket() as nl:
            replies = nl.request(
                _RTM_GETQDISC, _NLM_F_DUMP, _TCMSG.pack(socket.AF_UNSPEC, link.index, 0, 0, 0)
            )
        qdiscs = []
        for mtype, payload in replies:
            if mtype != _RTM_NEWQDISC:
                continue
            _, ifindex, handle, parent, _ = _TCMSG.unpack_from(payload)
            if ifindex != link.index:
                continue
            attrs = dict(_attrs(payload[_TCMSG.size :]))
            qdiscs.append(Qdisc(ifindex, handle, parent, _cstr(attrs.get(_TCA_KIND, b""))))
        return qdiscs

    def get_ingress_qdisc(self, link: Link) -> Qdisc:
        try:
            qdiscs = self._list_qdiscs(link)
        except NetlinkError as exc:
            raise PluginError(
                f"failed to list qdiscs for link {_quote(link.name)}: {exc}"
            ) from exc
        for qdisc in qdiscs:
            if qdisc.parent == HANDLE_INGRESS:
                return qdisc
        raise QdiscNotFoundError(link.name)

    def remove_ingress_qdisc(self, link: Link) -> None:
        qdisc = self.get_ingress_qdisc(link)
        body = _TCMSG.pack(
            socket.AF_UNSPEC, qdisc.link_index, qdisc.handle, qdisc.parent, 0
        ) + _attr(_TCA_KIND, qdisc.kind.encode() + b"\0")
        try:
            with _RouteSocket() as nl:
                nl.request(_RTM_DELQDISC, _NLM_F_ACK, body)
        except NetlinkError as exc:
            raise PluginError(
                f"failed to remove ingress qdisc from device {_quote(link.name)}: {exc}"
            ) from exc

    def add_redirect_filter(self, source_link: Link, target_link: Link) -> None:
        selector = _U32_SEL.pack(_TC_U32_TERMINAL, 0, 1, 0, 0, 0, 0, 0) + _U32_KEY.pack(
            0, 0, 0, 0
        )
        mirred = _TC_MIRRED.pack(0, 0, _TC_ACT_STOLEN, 0, 0, _TCA_EGRESS_REDIR, target_link.index)
        action = _attr(
            1,
            _attr(_TCA_ACT_KIND, b"mirred\0")
            + _attr(_TCA_ACT_OPTIONS, _attr(_TCA_MIRRED_PARMS, mirred)),
        )
        options = _attr(_TCA_U32_SEL, selector) + _attr(_TCA_U32_ACT, action)
        info = socket.htons(_ETH_P_ALL)
        body = (
            _TCMSG.pack(socket.AF_UNSPEC, source_link.index, 0, root_filter_handle(), info)
            + _attr(_TCA_KIND, b"u32\0")
            + _attr(_TCA_OPTIONS, options)
        )
        try:
            with _RouteSocket() as nl:
                nl.request(_RTM_NEWTFILTER, _NLM_F_CREATE | _NLM_F_EXCL | _NLM_F_ACK, body)
        except NetlinkError as exc:
            raise PluginError(
                f"failed to add u32 filter redirecting from device {_quote(source_link.name)} "
                f"to device {_quote(target_link.name)}, does {_quote(source_link.name)} "
                "exist and have a qdisc attached to its ingress?"
            ) from exc

    def get_redirect_filter(self, source_link: Link, target_link: Link) -> RedirectFilter:
        body = _TCMSG.pack(socket.AF_UNSPEC, source_link.index, 0, root_filter_handle(), 0)
        try:
            with _RouteSocket() as nl:
                replies = nl.request(_RTM_GETTFILTER, _NLM_F_DUMP, body)
        except NetlinkError as exc:
            raise PluginError(
                f"failed to list filters for device {_quote(source_link.name)}: {exc}"
            ) from exc

        for mtype, payload in replies:
            _, ifindex, handle, parent, info = _TCMSG.unpack_from(payload)
            attrs = dict(_attrs(payload[_TCMSG.size :]))
            if _cstr(attrs.get(_TCA_KIND, b"")) != "u32":
                continue
            options = dict(_attrs(attrs.get(_TCA_OPTIONS, b"")))
            found = RedirectFilter(
                link_index=ifindex,
                handle=handle,
                parent=parent,
                priority=info >> 16,
                protocol=socket.ntohs(info & 0xFFFF),
                redir_index=_parse_redirect_index(options.get(_TCA_U32_ACT, b"")),
            )
            if found.redir_index == target_link.index:
                return found
        raise FilterNotFoundError(source_link.name)

    def get_link(self, name: str) -> Link:
        body = _IFINFOMSG.pack(socket.AF_UNSPEC, 0, 0, 0, 0) + _attr(
            _IFLA_IFNAME, name.encode() + b"\0"
        )
        try:
            with _RouteSocket() as nl:
                replies = nl.request(_RTM_GETLINK, 0, body)
        except NetlinkError as exc:
            if exc.errno == errno.ENODEV:
                raise LinkNotFoundError(name) from exc
            raise
        for mtype, payload in replies:
            if mtype == _RTM_NEWLINK:
                return _parse_link(payload)
        raise LinkNotFoundError(name)

    def remove_link(self, name: str) -> None:
        link = self.get_link(name)
        try:
            with _RouteSocket() as nl:
                nl.request(
                    _RTM_DELLINK,
                    _NLM_F_ACK,
                    _IFINFOMSG.pack(socket.AF_UNSPEC, 0, link.index, 0, 0),
                )
        except NetlinkError as exc:
            if exc.errno == errno.ENODEV:
                raise LinkNotFoundError(link.name) from exc
            raise