import io
import ipaddress
import json

import pytest

from tcredirecttap.cnitypes import DNS, Interface, IPConfig, Result
from tcredirecttap.errors import NoPreviousResultError, PluginError
from tcredirecttap.mocks import MockNetlinkOps, MockNetNS
from tcredirecttap.netlink import Link
from tcredirecttap.plugin import (
    CmdArgs,
    Plugin,
    cmd_add,
    cmd_check,
    extract_args,
    get_current_result,
    main,
    new_plugin,
)
from tcredirecttap.versions import CURRENT_VERSION

VM_ID = "this-is-not-a-machine"
REDIRECT_NAME = "veth0"
REDIRECT_MTU = 1337
REDIRECT_MAC = "22:33:44:55:66:77"
TAP_NAME = "tap0"
TAP_UID = 123
TAP_GID = 456
TAP_MAC = "11:22:33:44:55:66"
NET_NS = MockNetNS(mock_path="/my/lil/netns")


def default_result():
    return Result(
        cni_version=CURRENT_VERSION,
        interfaces=[Interface(name="veth0", sandbox=NET_NS.path, mac=REDIRECT_MAC)],
        ips=[
            IPConfig(
                address=ipaddress.ip_interface("10.0.0.2/24"),
                gateway=ipaddress.ip_address("10.0.0.1"),
                interface=0,
            )
        ],
        routes=[],
        dns=DNS(
            nameservers=["1.1.1.1", "8.8.8.8"],
            domain="example.com",
            search=["look", "here"],
            options=["choice", "is", "an", "illusion"],
        ),
    )


def default_plugin():
    ops = MockNetlinkOps(
        created_tap=Link(name=TAP_NAME, hardware_addr=TAP_MAC),
        redirect_iface=Link(name=REDIRECT_NAME, hardware_addr=REDIRECT_MAC, mtu=REDIRECT_MTU),
    )
    return Plugin(
        netlink_ops=ops,
        vm_id=VM_ID,
        tap_name=TAP_NAME,
        tap_uid=TAP_UID,
        tap_gid=TAP_GID,
        redirect_interface_name=REDIRECT_NAME,
        net_ns=NET_NS,
        current_result=default_result(),
    )


def prev_result_conf(version="0.3.1"):
    return {
        "cniVersion": version,
        "name": "my-lil-network",
        "type": "my-lil-plugin",
        "prevResult": {
            "cniVersion": version,
            "interfaces": [{"name": "veth0", "mac": REDIRECT_MAC, "sandbox": NET_NS.path}],
            "ips": [{"interface": 0, "address": "10.0.0.2/24", "gateway": "10.0.0.1"}],
            "routes": [],
            "dns": {
                "nameservers": ["1.1.1.1", "8.8.8.8"],
                "domain": "example.com",
                "search": ["look", "here"],
                "options": ["choice", "is", "an", "illusion"],
            },
        },
    }


def test_add():
    plugin = default_plugin()
    orig_iface = plugin.current_result.interfaces[0]
    orig_ip = plugin.current_result.ips[0]

    plugin.add()
    result = plugin.current_result

    assert len(result.interfaces) == 3
    assert result.interfaces[0] == orig_iface

    tap_iface = result.interfaces[1]
    assert tap_iface.name == TAP_NAME
    assert tap_iface.sandbox == NET_NS.path
    assert tap_iface.mac == TAP_MAC

    vm_iface = result.interfaces[2]
    assert vm_iface.name == TAP_NAME
    assert vm_iface.sandbox == VM_ID
    assert vm_iface.mac == REDIRECT_MAC

    assert len(result.ips) == 2
    assert result.ips[0] == orig_ip


def test_add_gives_vm_iface_the_redirect_ip():
    plugin = default_plugin()
    plugin.add()
    vm_ip = plugin.current_result.ips[1]
    assert vm_ip.interface == 2
    assert str(vm_ip.address) == "10.0.0.2/24"
    assert str(vm_ip.gateway) == "10.0.0.1"


@pytest.mark.parametrize(
    "attribute, message",
    [
        ("add_ingress_qdisc_err", "a terrible mistake"),
        ("add_redirect_filter_err", "a grave error"),
        ("create_tap_err", "a bit of a snafu"),
    ],
)
def test_add_fails(attribute, message):
    plugin = default_plugin()
    setattr(plugin.netlink_ops, attribute, PluginError(message))
    with pytest.raises(PluginError, match=message):
        plugin.add()
    assert len(plugin.current_result.interfaces) == 1


def test_get_current_result():
    args = CmdArgs(stdin_data=json.dumps(prev_result_conf()).encode())
    result, version = get_current_result(args)
    assert result == default_result()
    assert version == "0.3.1"


def test_get_current_result_without_prev_result():
    conf = {"cniVersion": "0.3.1", "name": "n", "type": "t"}
    with pytest.raises(NoPreviousResultError):
        get_current_result(CmdArgs(stdin_data=json.dumps(conf)))


def test_get_current_result_invalid_json():
    with pytest.raises(PluginError, match="failure checking for previous result output"):
        get_current_result(CmdArgs(stdin_data=b"{not json"))


def test_del():
    plugin = default_plugin()
    ops = plugin.netlink_ops
    plugin.add()
    plugin.delete()
    assert ops.remove_ingress_qdisc_calls == [ops.redirect_iface]
    assert ops.remove_link_calls == [TAP_NAME]


def test_del_links_gone():
    ops = MockNetlinkOps(
        created_tap=Link(name="random-name"),
        redirect_iface=Link(name="another-random-name"),
    )
    plugin = Plugin(
        netlink_ops=ops,
        vm_id=VM_ID,
        tap_name=TAP_NAME,
        redirect_interface_name=REDIRECT_NAME,
        net_ns=NET_NS,
        current_result=Result(
            interfaces=[
                Interface(name=REDIRECT_NAME, sandbox=NET_NS.path, mac=REDIRECT_MAC),
                Interface(name=TAP_NAME, sandbox=NET_NS.path, mac=TAP_MAC),
                Interface(name=TAP_NAME, sandbox=VM_ID, mac=REDIRECT_MAC),
            ]
        ),
    )
    plugin.delete()
    assert ops.remove_link_calls == [TAP_NAME]
    assert ops.remove_ingress_qdisc_calls == []


@pytest.mark.parametrize(
    "attribute, message",
    [
        ("remove_ingress_qdisc_err", "a terrible mistake"),
        ("remove_link_err", "a grave error"),
        ("get_link_err", "a bit of a snafu"),
    ],
)
def test_del_fails(attribute, message):
    plugin = default_plugin()
    plugin.add()
    setattr(plugin.netlink_ops, attribute, PluginError(message))
    with pytest.raises(PluginError, match=message):
        plugin.delete()


def test_del_collects_several_errors():
    plugin = default_plugin()
    plugin.add()
    plugin.netlink_ops.remove_ingress_qdisc_err = PluginError("first")
    plugin.netlink_ops.remove_link_err = PluginError("second")
    with pytest.raises(PluginError) as info:
        plugin.delete()
    text = str(info.value)
    assert text.startswith("2 errors occurred:")
    assert "first" in text and "second" in text


def test_check_after_add_then_missing_filter():
    plugin = default_plugin()
    plugin.add()
    plugin.check()
    plugin.netlink_ops.get_redirect_filter_err = PluginError("no filter here")
    with pytest.raises(PluginError, match="no filter here"):
        plugin.check()


def test_check_fails():
    plugin = default_plugin()
    with pytest.raises(PluginError):
        plugin.check()


def test_new_plugin(tmp_path):
    args = CmdArgs(
        container_id="continer-id",
        netns=str(tmp_path / "IDoNotExist"),
        if_name="test-name",
        args="TC_REDIRECT_TAP_NAME=tap_name;TC_REDIRECT_TAP_UID=123;TC_REDIRECT_TAP_GID=321",
        stdin_data=json.dumps(prev_result_conf()).encode(),
    )
    plugin = new_plugin(args)
    assert plugin.tap_name == "tap_name"
    assert plugin.tap_gid == 321
    assert plugin.tap_uid == 123
    assert plugin.net_ns is None
    assert plugin.vm_id == "continer-id"
    assert plugin.redirect_interface_name == "test-name"
    assert plugin.conf_cni_version == "0.3.1"
    assert plugin.current_result == default_result()


def test_new_plugin_owner_from_config(tmp_path):
    conf = {**prev_result_conf(), "ownerUID": 7, "ownerGID": 8}
    args = CmdArgs(
        netns=str(tmp_path / "missing"), if_name="eth0", stdin_data=json.dumps(conf)
    )
    plugin = new_plugin(args)
    assert (plugin.tap_uid, plugin.tap_gid) == (7, 8)


def test_new_plugin_args_override_config_owner(tmp_path):
    conf = {**prev_result_conf(), "ownerUID": 7, "ownerGID": 8}
    args = CmdArgs(
        netns=str(tmp_path / "missing"),
        if_name="eth0",
        args="TC_REDIRECT_TAP_UID=9",
        stdin_data=json.dumps(conf),
    )
    plugin = new_plugin(args)
    assert (plugin.tap_uid, plugin.tap_gid) == (9, 8)


def test_new_plugin_without_prev_result(tmp_path):
    conf = {"cniVersion": "1.0.0", "name": "n", "type": "t"}
    args = CmdArgs(netns=str(tmp_path / "missing"), if_name="eth0", stdin_data=json.dumps(conf))
    plugin = new_plugin(args)
    assert plugin.current_result is None
    assert plugin.conf_cni_version == ""


def test_new_plugin_requires_if_name():
    with pytest.raises(PluginError, match="was IfName specified"):
        new_plugin(CmdArgs(stdin_data=json.dumps(prev_result_conf())))


def test_new_plugin_rejects_non_numeric_uid(tmp_path):
    args = CmdArgs(
        netns=str(tmp_path / "missing"),
        if_name="eth0",
        args="TC_REDIRECT_TAP_UID=abc",
        stdin_data=json.dumps(prev_result_conf()),
    )
    with pytest.raises(PluginError, match="tapUID should be numeric convertible"):
        new_plugin(args)


def test_extract_args():
    parsed = extract_args("key1=val1;key2=val2")
    assert parsed["key2"] == "val2"
    assert parsed == {"key1": "val1", "key2": "val2"}


def test_extract_args_keeps_later_equals_signs():
    assert extract_args("a=b=c") == {"a": "b=c"}


def test_extract_args_empty():
    assert extract_args("") == {}


def test_extract_args_invalid():
    with pytest.raises(PluginError, match="Invalid cni arguments format"):
        extract_args("key1=val1;broken")


def test_cmd_add_missing_netns(tmp_path):
    path = str(tmp_path / "missing")
    args = CmdArgs(netns=path, if_name="eth0", stdin_data=json.dumps(prev_result_conf()))
    with pytest.raises(PluginError, match="does not exist"):
        cmd_add(args)


def test_cmd_check_missing_netns(tmp_path):
    path = str(tmp_path / "missing")
    args = CmdArgs(netns=path, if_name="eth0", stdin_data=json.dumps(prev_result_conf()))
    with pytest.raises(PluginError, match="does not exist"):
        cmd_check(args)


def _set_env(monkeypatch, **values):
    for name in ("CNI_COMMAND", "CNI_CONTAINERID", "CNI_NETNS", "CNI_IFNAME", "CNI_ARGS", "CNI_PATH"):
        monkeypatch.delenv(name, raising=False)
    for name, value in values.items():
        monkeypatch.setenv(name, value)


def test_main_version(monkeypatch, capsys):
    _set_env(monkeypatch, CNI_COMMAND="VERSION")
    assert main([]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["supportedVersions"] == ["0.3.0", "0.3.1", "0.4.0", "1.0.0", "1.1.0"]


def test_main_missing_command(monkeypatch, capsys):
    _set_env(monkeypatch)
    assert main([]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["code"] == 4


def test_main_missing_env(monkeypatch, capsys):
    _set_env(monkeypatch, CNI_COMMAND="ADD", CNI_CONTAINERID="vm", CNI_IFNAME="eth0", CNI_PATH="/bin")
    assert main([]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["msg"] == "required env variables [CNI_NETNS] missing"


def test_main_del_with_missing_netns(monkeypatch, capsys, tmp_path):
    _set_env(
        monkeypatch,
        CNI_COMMAND="DEL",
        CNI_CONTAINERID="vm",
        CNI_NETNS=str(tmp_path / "missing"),
        CNI_IFNAME="eth0",
        CNI_PATH="/opt/cni/bin",
    )
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(prev_result_conf())))
    assert main([]) == 0
    assert capsys.readouterr().out == ""


def test_main_add_with_missing_netns(monkeypatch, capsys, tmp_path):
    _set_env(
        monkeypatch,
        CNI_COMMAND="ADD",
        CNI_CONTAINERID="vm",
        CNI_NETNS=str(tmp_path / "missing"),
        CNI_IFNAME="eth0",
        CNI_PATH="/opt/cni/bin",
    )
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(prev_result_conf())))
    assert main([]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["code"] == 999
    assert output["cniVersion"] == "0.3.1"
    assert "does not exist" in output["msg"]


def test_main_rejects_unsupported_version(monkeypatch, capsys, tmp_path):
    _set_env(
        monkeypatch,
        CNI_COMMAND="ADD",
        CNI_CONTAINERID="vm",
        CNI_NETNS=str(tmp_path / "missing"),
        CNI_IFNAME="eth0",
        CNI_PATH="/opt/cni/bin",
    )
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(prev_result_conf("0.2.0"))))
    assert main([]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["code"] == 1