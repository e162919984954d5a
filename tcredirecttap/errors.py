"""Errors raised while setting up, checking or removing a redirected tap device."""

import json


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class PluginError(Exception):
    """Base class for every error reported by the plugin."""


class QdiscNotFoundError(PluginError):
    """The expected ingress qdisc is not attached to a device."""

    def __init__(self, device: str = "") -> None:
        self.device = device
        super().__init__(f"did not find expected Qdisc on device {_quote(device)}")


class FilterNotFoundError(PluginError):
    """The expected redirect filter is not attached to a device."""

    def __init__(self, device: str = "") -> None:
        self.device = device
        super().__init__(f"did not find expected filter on device {_quote(device)}")


class LinkNotFoundError(PluginError):
    """No network device with the expected name exists."""

    def __init__(self, device: str = "") -> None:
        self.device = device
        super().__init__(
            f"did not find expected network device with name {_quote(device)}"
        )


class NoPreviousResultError(PluginError):
    """The plugin was invoked without the result of a previous plugin."""

    def __init__(self) -> None:
        super().__init__(
            "no previous result was found, was this plugin chained with a previous one?"
        )


class NSPathNotExistError(PluginError):
    """The network namespace path does not exist."""

    def __init__(self, path: str = "") -> None:
        self.path = path
        super().__init__(f"netns path {_quote(path)} does not exist")