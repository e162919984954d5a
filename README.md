# tcredirecttap

A chained CNI plugin for running virtual machines inside a network namespace.
It takes the result of a previous plugin (for example one that created a veth
device), creates a tap device in the same network namespace as the named
interface, and connects the two with tc u32 redirect filters, so that every
packet arriving on one leaves through the other. The CNI result it emits gains
two interfaces:

* the tap device, with the network namespace path as its sandbox, and
* a pseudo-interface with the same name but with the container ID (the "VM ID")
  as its sandbox. It carries the MAC address of the redirected interface and
  a copy of that interface's IP configuration, which the VM should use
  internally.

Linux only, Python 3.12 or later, no third-party dependencies. Creating tap
devices, qdiscs and filters and entering network namespaces needs the
appropriate privileges.

## Installation

```
pip install .
```

This installs the `tc-redirect-tap` command.

## Using it as a CNI plugin

Place `tc-redirect-tap` in your CNI plugin directory and chain it after a plugin
that produces an interface:

```json
{
  "cniVersion": "1.0.0",
  "name": "vm-net",
  "plugins": [
    {"type": "ptp", "ipam": {"type": "host-local", "subnet": "192.168.1.0/24"}},
    {"type": "tc-redirect-tap"}
  ]
}
```

The command reads everything from the CNI environment (`CNI_COMMAND`,
`CNI_CONTAINERID`, `CNI_NETNS`, `CNI_IFNAME`, `CNI_ARGS`, `CNI_PATH`) and the
network configuration on standard input; it takes no command-line arguments.

* `ADD` creates the tap, attaches ingress qdiscs to both devices, adds the two
  redirect filters and prints the extended result in the configuration's CNI
  version.
* `DEL` removes the ingress qdisc from the redirected device and deletes the
  tap. Devices or qdiscs that are already gone are not errors, and if the
  network namespace no longer exists there is nothing to do.
* `CHECK` fails unless the tap, both qdiscs and both filters are in place.
* `VERSION` prints the supported CNI versions: 0.3.0, 0.3.1, 0.4.0, 1.0.0 and
  1.1.0. Versions 0.1.0 and 0.2.0 are refused, as they lack plugin chaining.

`ADD` and `CHECK` require a `prevResult` in the configuration. On failure the
command prints a CNI error object (`cniVersion`, `code`, `msg`) on standard
output and exits with status 1.

Optional settings:

* `ownerUID` / `ownerGID` in the network configuration set the tap's owner
  (by default the effective user and group of the plugin).
* `CNI_ARGS` may carry `TC_REDIRECT_TAP_NAME`, `TC_REDIRECT_TAP_UID` and
  `TC_REDIRECT_TAP_GID`, e.g.
  `TC_REDIRECT_TAP_NAME=tap0;TC_REDIRECT_TAP_UID=1000;TC_REDIRECT_TAP_GID=1000`.
  These take precedence over `ownerUID` / `ownerGID`. Without a name the
  kernel chooses one.

## Calling it from Python

`tcredirecttap.plugin` exposes the same steps: `CmdArgs`, `new_plugin`,
`get_current_result`, `extract_args`, and `cmd_add`, `cmd_del`, `cmd_check`.
A `Plugin` holds any object implementing `tcredirecttap.netlink.NetlinkOps`
(the real one is `DefaultNetlinkOps`) and a namespace object with `path` and
`do(func)`, and offers `add()`, `delete()` and `check()`.

`tcredirecttap.netns.get_ns(path)` opens a network namespace; `NetNS.do(func)`
runs `func` inside it on the calling thread and switches back afterwards.

For tests, `tcredirecttap.mocks` provides `MockNetlinkOps`, which touches no
system state and raises whichever per-operation errors you configure, and
`MockNetNS`, whose `do` runs the callback in place.

## Turning a result into VM configuration

```python
from tcredirecttap.cnitypes import Result
from tcredirecttap.vmconf import static_network_conf_from

result = Result.from_dict(cni_result_dict)
conf = static_network_conf_from(result, "my-vm-id")

print(conf.tap_name, conf.netns_path, conf.vm_mtu)
print(conf.ip_boot_param())
# e.g. 10.0.0.2::10.0.0.1:255.255.255.0::eth0:off:1.1.1.1:8.8.8.8:
```

`static_network_conf_from` accepts a `Result` or a result dictionary, expects
exactly one IP on the VM's pseudo-interface, and reads the tap's MTU from
inside its network namespace. `ip_boot_param()` renders a value for the
kernel's `ip=` boot parameter; it cannot carry the MAC address, MTU, extra
routes, the resolver domain, search domains or options, and uses at most two
nameservers. `vm_if_name` is empty unless you set it, in which case the kernel
configures its default device.

## Helpers

* `tcredirecttap.cnitypes`: `Result`, `Interface`, `IPConfig`, `Route` and
  `DNS`. `Result.from_dict` reads any known CNI version and converts it to
  the current one; `Result.to_dict` writes the shape of the result's
  `cni_version`.
* `tcredirecttap.cniutil`: `interface_ips`, `filter_by_sandbox`,
  `ifaces_with_name` and `vm_tap_pair`.
* `tcredirecttap.versions.supported_versions()` lists the accepted CNI
  versions.
* `tcredirecttap.errors`: `PluginError` and its subclasses
  `LinkNotFoundError`, `QdiscNotFoundError`, `FilterNotFoundError`,
  `NoPreviousResultError` and `NSPathNotExistError`.

## What it does not do

It does not start or configure virtual machines; it only prepares the tap
device and describes, in the CNI result and in `StaticNetworkConf`, what the
VM should apply internally. It assigns no addresses itself and relies on the
previous plugin in the chain for them.

## Tests

```
pip install .[test]
pytest
```