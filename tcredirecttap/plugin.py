"""The CNI plugin: pair a new tap device with an existing device via u32 redirects."""

from __future__ import annotations

import dataclasses
import json
import os
import re
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .cnitypes import Interface, IPConfig, Result
from .cniutil import interface_ips, vm_tap_pair
from .errors import (
    LinkNotFoundError,
    NoPreviousResultError,
    NSPathNotExistError,
    PluginError,
    QdiscNotFoundError,
)
from .netlink import DefaultNetlinkOps, NetlinkOps
from .netns import get_ns
from .versions import CURRENT_VERSION, supported_versions

TC_REDIRECT_TAP_NAME = "TC_REDIRECT_TAP_NAME"
TC_REDIRECT_TAP_UID = "TC_REDIRECT_TAP_UID"
TC_REDIRECT_TAP_GID = "TC_REDIRECT_TAP_GID"

_ABOUT = "tc-redirect-tap"

_ERR_INCOMPATIBLE_VERSION = 1
_ERR_INVALID_ENV = 4
_ERR_DECODING = 6
_ERR_UNKNOWN = 999

_OPS_ERRORS = (PluginError, OSError)
_INTEGER = re.compile(r"[+-]?[0-9]+")


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _combined_error(messages: list[str]) -> PluginError:
    head = "1 error occurred:" if len(messages) == 1 else f"{len(messages)} errors occurred:"
    body = "\n".join(f"\t* {message}" for message in messages)
    return PluginError(f"{head}\n{body}\n\n")


@dataclass
class CmdArgs:
    """The arguments a CNI runtime passes to a plugin invocation."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes | str = b""


@dataclass
class Plugin:
    """State for one invocation of the plugin.

    vm_id is the CNI "containerID", used as the sandbox of the VM's internal
    pseudo-interface. An empty tap_name lets the kernel choose the name.
    """

    netlink_ops: NetlinkOps
    vm_id: str = ""
    tap_name: str = ""
    tap_uid: int = 0
    tap_gid: int = 0
    redirect_interface_name: str = ""
    net_ns: Any = None
    current_result: Result | None = None
    conf_cni_version: str = ""

    def add(self) -> None:
        """Create the tap, redirect traffic both ways and record it in the result."""
        self.net_ns.do(self._add_in_ns)

    def _add_in_ns(self, _host: Any) -> None:
        ops = self.netlink_ops
        result = self.current_result
        try:
            redirect_link = ops.get_link(self.redirect_interface_name)
        except _OPS_ERRORS as exc:
            raise PluginError(
                f"failed to find redirect interface {_quote(self.redirect_interface_name)}: {exc}"
            ) from exc

        redirect_ips = interface_ips(result, redirect_link.name, self.net_ns.path)

        tap_link = ops.create_tap(
            self.tap_name, redirect_link.mtu, self.tap_uid, self.tap_gid
        )
        ops.add_ingress_qdisc(tap_link)
        ops.add_ingress_qdisc(redirect_link)
        ops.add_redirect_filter(tap_link, redirect_link)
        ops.add_redirect_filter(redirect_link, tap_link)

        result.interfaces.append(
            Interface(
                name=tap_link.name,
                sandbox=self.net_ns.path,
                mac=tap_link.hardware_addr,
            )
        )
        # The VM's pseudo-interface shares the tap's name but lives in the VM's
        # sandbox; it carries the configuration to apply inside the VM.
        result.interfaces.append(
            Interface(
                name=tap_link.name,
                sandbox=self.vm_id,
                mac=redirect_link.hardware_addr,
            )
        )
        vm_iface_index = len(result.interfaces) - 1

        result.ips.extend(
            IPConfig(address=ip.address, gateway=ip.gateway, interface=vm_iface_index)
            for ip in redirect_ips
        )

    def delete(self) -> None:
        """Remove the redirect qdisc and the tap, ignoring what is already gone."""
        self.net_ns.do(self._delete_in_ns)

    def _delete_in_ns(self, _host: Any) -> None:
        ops = self.netlink_ops
        problems: list[str] = []

        try:
            redirect_link = ops.get_link(self.redirect_interface_name)
        except LinkNotFoundError:
            pass
        except _OPS_ERRORS as exc:
            problems.append(
                f"failure finding device {_quote(self.redirect_interface_name)}: {exc}"
            )
        else:
            try:
                ops.remove_ingress_qdisc(redirect_link)
            except QdiscNotFoundError:
                pass
            except _OPS_ERRORS as exc:
                problems.append(
                    f"failed to remove ingres qdisc from {_quote(redirect_link.name)}: {exc}"
                )

        if self.current_result is not None:
            try:
                _, tap_iface = vm_tap_pair(self.current_result, self.vm_id)
            except LinkNotFoundError:
                pass
            except PluginError as exc:
                problems.append(str(exc))
            else:
                try:
                    ops.remove_link(tap_iface.name)
                except LinkNotFoundError:
                    pass
                except _OPS_ERRORS as exc:
                    problems.append(
                        f"failure removing device {_quote(tap_iface.name)}: {exc}"
                    )

        if problems:
            raise _combined_error(problems)

    def check(self) -> None:
        """Raise unless the tap, both qdiscs and both redirect filters are in place."""
        self.net_ns.do(self._check_in_ns)

    def _check_in_ns(self, _host: Any) -> None:
        ops = self.netlink_ops
        _, tap_iface = vm_tap_pair(self.current_result, self.vm_id)
        tap_link = ops.get_link(tap_iface.name)
        redirect_link = ops.get_link(self.redirect_interface_name)
        ops.get_ingress_qdisc(tap_link)
        ops.get_ingress_qdisc(redirect_link)
        ops.get_redirect_filter(tap_link, redirect_link)
        ops.get_redirect_filter(redirect_link, tap_link)


def _load_conf(stdin_data: bytes | str) -> Mapping[str, Any]:
    conf = json.loads(stdin_data)
    if not isinstance(conf, Mapping):
        raise ValueError(f"expected a JSON object, got {conf!r}")
    return conf


def get_current_result(cmd_args: CmdArgs) -> tuple[Result, str]:
    """Return the previous plugin's result, converted to the current version, and the
    CNI version named by the configuration."""
    try:
        conf = _load_conf(cmd_args.stdin_data)
    except (ValueError, TypeError) as exc:
        raise PluginError(f"failure checking for previous result output: {exc}") from exc

    conf_version = conf.get("cniVersion") or ""
    raw_prev = conf.get("prevResult")
    if raw_prev is None:
        raise NoPreviousResultError()

    if conf_version and isinstance(raw_prev, Mapping):
        raw_prev = {**raw_prev, "cniVersion": conf_version}
    try:
        result = Result.from_dict(raw_prev)
    except PluginError as exc:
        raise PluginError(f"failed to parse previous CNI result: {exc}") from exc

    return result, conf_version


def _owner_id(conf: Mapping[str, Any], key: str) -> int | None:
    value = conf.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise PluginError(f"failed to unmarshal plugin config: {key} must be an integer")
    return value


def _parse_id(value: str, what: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise PluginError(
            f"{what} should be numeric convertible, got {_quote(value)}: invalid syntax"
        )
    return int(value)


def new_plugin(cmd_args: CmdArgs) -> Plugin:
    """Build a Plugin from the invocation's arguments and configuration.

    A missing network namespace or previous result is left as None for the
    commands to judge.
    """
    if not cmd_args.if_name:
        raise PluginError("no device to redirect with was found, was IfName specified?")

    try:
        net_ns = get_ns(cmd_args.netns)
    except NSPathNotExistError:
        net_ns = None
    except PluginError as exc:
        raise PluginError(
            f"failed to open netns at path {_quote(cmd_args.netns)}: {exc}"
        ) from exc

    try:
        current_result, conf_version = get_current_result(cmd_args)
    except NoPreviousResultError:
        current_result, conf_version = None, ""
    except PluginError as exc:
        raise PluginError(f"failure parsing previous CNI result: {exc}") from exc

    try:
        conf = _load_conf(cmd_args.stdin_data)
    except (ValueError, TypeError) as exc:
        raise PluginError(f"failed to unmarshal plugin config: {exc}") from exc

    plugin = Plugin(
        netlink_ops=DefaultNetlinkOps(),
        tap_uid=os.geteuid(),
        tap_gid=os.getegid(),
        vm_id=cmd_args.container_id,
        redirect_interface_name=cmd_args.if_name,
        net_ns=net_ns,
        current_result=current_result,
        conf_cni_version=conf_version,
    )

    owner_uid = _owner_id(conf, "ownerUID")
    if owner_uid is not None:
        plugin.tap_uid = owner_uid
    owner_gid = _owner_id(conf, "ownerGID")
    if owner_gid is not None:
        plugin.tap_gid = owner_gid

    parsed = extract_args(cmd_args.args)
    if TC_REDIRECT_TAP_NAME in parsed:
        plugin.tap_name = parsed[TC_REDIRECT_TAP_NAME]
    if TC_REDIRECT_TAP_UID in parsed:
        plugin.tap_uid = _parse_id(parsed[TC_REDIRECT_TAP_UID], "tapUID")
    if TC_REDIRECT_TAP_GID in parsed:
        plugin.tap_gid = _parse_id(parsed[TC_REDIRECT_TAP_GID], "tapGID")

    return plugin


def extract_args(args: str) -> dict[str, str]:
    """Parse "key1=val1;key2=val2" into a dict."""
    result: dict[str, str] = {}
    if not args:
        return result
    for pair in args.split(";"):
        key, sep, value = pair.partition("=")
        if not sep:
            raise PluginError(f"Invalid cni arguments format, {_quote(pair)}")
        result[key] = value
    return result


def _close(plugin: Plugin) -> None:
    if plugin.net_ns is not None:
        plugin.net_ns.close()


def _emit(data: Mapping[str, Any]) -> None:
    sys.stdout.write(json.dumps(data, indent=4) + "\n")
    sys.stdout.flush()


def cmd_add(cmd_args: CmdArgs) -> dict[str, Any]:
    """Handle ADD: set up the tap and print (and return) the extended result."""
    plugin = new_plugin(cmd_args)
    try:
        if plugin.net_ns is None:
            raise PluginError(f"netns path {_quote(cmd_args.netns)} does not exist")
        if plugin.current_result is None:
            raise NoPreviousResultError()
        plugin.add()
        output = dataclasses.replace(
            plugin.current_result, cni_version=plugin.conf_cni_version
        ).to_dict()
    finally:
        _close(plugin)
    _emit(output)
    return output


def cmd_del(cmd_args: CmdArgs) -> None:
    """Handle DEL: tear down what ADD created; a vanished netns means nothing to do."""
    plugin = new_plugin(cmd_args)
    if plugin.net_ns is None:
        return
    try:
        plugin.delete()
    finally:
        _close(plugin)


def cmd_check(cmd_args: CmdArgs) -> None:
    """Handle CHECK: raise unless everything ADD created is still in place."""
    plugin = new_plugin(cmd_args)
    try:
        if plugin.net_ns is None:
            raise PluginError(f"netns path {_quote(cmd_args.netns)} does not exist")
        if plugin.current_result is None:
            raise NoPreviousResultError()
        plugin.check()
    finally:
        _close(plugin)


_ADD_ENV = ("CNI_CONTAINERID", "CNI_NETNS", "CNI_IFNAME", "CNI_PATH")
_DEL_ENV = ("CNI_CONTAINERID", "CNI_IFNAME", "CNI_PATH")

_HANDLERS: dict[str, tuple[Callable[[CmdArgs], Any], tuple[str, ...]]] = {
    "ADD": (cmd_add, _ADD_ENV),
    "DEL": (cmd_del, _DEL_ENV),
    "CHECK": (cmd_check, _ADD_ENV),
}


def _fail(version: str, code: int, message: str) -> int:
    _emit({"cniVersion": version, "code": code, "msg": message})
    return 1


def main(argv: list[str] | None = None) -> int:
    """Run one CNI command as described by the CNI_* environment and stdin.

    Command-line arguments are not used; CNI passes everything through the
    environment and the configuration on stdin.
    """
    env = os.environ
    command = env.get("CNI_COMMAND", "")

    if command == "VERSION":
        _emit({"cniVersion": CURRENT_VERSION, "supportedVersions": supported_versions()})
        return 0

    if command not in _HANDLERS:
        if not command:
            print(_ABOUT, file=sys.stderr)
            return _fail(
                CURRENT_VERSION,
                _ERR_INVALID_ENV,
                "required env variables [CNI_COMMAND] missing",
            )
        return _fail(CURRENT_VERSION, _ERR_INVALID_ENV, f"unknown CNI_COMMAND: {command}")

    handler, required = _HANDLERS[command]
    missing = [name for name in required if not env.get(name)]
    if missing:
        return _fail(
            CURRENT_VERSION,
            _ERR_INVALID_ENV,
            f"required env variables [{' '.join(missing)}] missing",
        )

    stdin_data = sys.stdin.read()
    try:
        conf_version = _load_conf(stdin_data).get("cniVersion") or "0.1.0"
    except (ValueError, TypeError) as exc:
        return _fail(
            CURRENT_VERSION, _ERR_DECODING, f"decoding version from network config: {exc}"
        )

    supported = supported_versions()
    if conf_version not in supported:
        return _fail(
            CURRENT_VERSION,
            _ERR_INCOMPATIBLE_VERSION,
            f"incompatible CNI versions; config is {_quote(conf_version)}, "
            f"plugin supports {supported}",
        )

    cmd_args = CmdArgs(
        container_id=env.get("CNI_CONTAINERID", ""),
        netns=env.get("CNI_NETNS", ""),
        if_name=env.get("CNI_IFNAME", ""),
        args=env.get("CNI_ARGS", ""),
        path=env.get("CNI_PATH", ""),
        stdin_data=stdin_data,
    )
    try:
        handler(cmd_args)
    except _OPS_ERRORS as exc:
        return _fail(conf_version, _ERR_UNKNOWN, str(exc))
    return 0