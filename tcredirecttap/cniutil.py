"""Helpers for finding interfaces and addresses in a CNI result."""

from __future__ import annotations

from .cnitypes import Interface, IPConfig, Result
from .errors import LinkNotFoundError, PluginError


def interface_ips(result: Result, iface_name: str, sandbox: str) -> list[IPConfig]:
    """Return the IPs of the interface with the given name and sandbox."""
    found = []
    for ipconfig in result.ips:
        if ipconfig.interface is None:
            continue
        iface = result.interfaces[ipconfig.interface]
        if iface.name == iface_name and iface.sandbox == sandbox:
            found.append(ipconfig)
    return found


def filter_by_sandbox(
    sandbox: str, *args: Interface
) -> tuple[list[Interface], list[Interface]]:
    """Split the interfaces into those in the sandbox and all the others."""
    inside: list[Interface] = []
    outside: list[Interface] = []
    for iface in args:
        (inside if iface.sandbox == sandbox else outside).append(iface)
    return inside, outside


def ifaces_with_name(name: str, *args: Interface) -> list[Interface]:
    """Return the interfaces with the given name."""
    return [iface for iface in args if iface.name == name]


def vm_tap_pair(result: Result, vm_id: str) -> tuple[Interface, Interface]:
    """Return the VM's pseudo-interface and the matching tap interface.

    The VM interface is the only one whose sandbox is the VM id; the tap is
    the only other interface sharing its name.
    """
    vm_ifaces, other_ifaces = filter_by_sandbox(vm_id, *result.interfaces)
    if len(vm_ifaces) > 1:
        raise PluginError(
            f'expected to find at most 1 interface in sandbox "{vm_id}", '
            f"but instead found {len(vm_ifaces)}"
        )
    if not vm_ifaces:
        raise LinkNotFoundError(f"pseudo-device for {vm_id}")

    vm_iface = vm_ifaces[0]
    tap_name = vm_iface.name

    tap_ifaces = ifaces_with_name(tap_name, *other_ifaces)
    if len(tap_ifaces) > 1:
        raise PluginError(
            f'expected to find at most 1 interface with name "{tap_name}", '
            f"but instead found {len(tap_ifaces)}"
        )
    if not tap_ifaces:
        raise LinkNotFoundError(tap_name)

    return vm_iface, tap_ifaces[0]