"""In-memory stand-ins for netlink operations and network namespaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import LinkNotFoundError
from .netlink import Link, NetlinkOps, Qdisc, RedirectFilter


@dataclass
class MockNetlinkOps(NetlinkOps):
    """NetlinkOps that touches no system state.

    Each operation raises its configured error if one is set. get_link and
    remove_link know only created_tap and redirect_iface.
    """

    created_tap: Link | None = None
    redirect_iface: Link | None = None

    add_ingress_qdisc_err: Exception | None = None
    get_ingress_qdisc_err: Exception | None = None
    remove_ingress_qdisc_err: Exception | None = None
    remove_ingress_qdisc_calls: list[Link] = field(default_factory=list)

    add_redirect_filter_err: Exception | None = None
    get_redirect_filter_err: Exception | None = None

    create_tap_err: Exception | None = None

    remove_link_err: Exception | None = None
    remove_link_calls: list[str] = field(default_factory=list)

    get_link_err: Exception | None = None

    def _known(self, name: str) -> Link | None:
        for link in (self.redirect_iface, self.created_tap):
            if link is not None and link.name == name:
                return link
        return None

    def create_tap(self, name: str, mtu: int, owner_uid: int, owner_gid: int) -> Link | None:
        if self.create_tap_err is not None:
            raise self.create_tap_err
        return self.created_tap

    def add_ingress_qdisc(self, link: Link) -> None:
        if self.add_ingress_qdisc_err is not None:
            raise self.add_ingress_qdisc_err

    def get_ingress_qdisc(self, link: Link) -> Qdisc | None:
        if self.get_ingress_qdisc_err is not None:
            raise self.get_ingress_qdisc_err
        return None

    def remove_ingress_qdisc(self, link: Link) -> None:
        self.remove_ingress_qdisc_calls.append(link)
        if self.remove_ingress_qdisc_err is not None:
            raise self.remove_ingress_qdisc_err

    def add_redirect_filter(self, source_link: Link, target_link: Link) -> None:
        if self.add_redirect_filter_err is not None:
            raise self.add_redirect_filter_err

    def get_redirect_filter(
        self, source_link: Link, target_link: Link
    ) -> RedirectFilter | None:
        if self.get_redirect_filter_err is not None:
            raise self.get_redirect_filter_err
        return None

    def get_link(self, name: str) -> Link:
        if self.get_link_err is not None:
            raise self.get_link_err
        link = self._known(name)
        if link is None:
            raise LinkNotFoundError()
        return link

    def remove_link(self, name: str) -> None:
        if self.remove_link_err is not None:
            raise self.remove_link_err
        self.remove_link_calls.append(name)
        if self._known(name) is None:
            raise LinkNotFoundError()


@dataclass
class MockNetNS:
    """A namespace whose do() runs the callback in place, without switching."""

    mock_path: str = ""

    @property
    def path(self) -> str:
        return self.mock_path

    def do(self, func: Callable[[Any], Any]) -> Any:
        return func(None)

    def close(self) -> None:
        """Nothing to release."""