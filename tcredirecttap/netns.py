"""Network namespaces opened by path, and running code inside them."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable
from typing import Any

from .errors import NSPathNotExistError, PluginError


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _current_thread_ns_path() -> str:
    return f"/proc/{os.getpid()}/task/{threading.get_native_id()}/ns/net"


class NetNS:
    """An open network namespace file."""

    def __init__(self, path: str, fd: int) -> None:
        self.path = path
        self.fd: int | None = fd

    def __enter__(self) -> NetNS:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self.fd is None

    def close(self) -> None:
        """Close the namespace file; closing twice does nothing."""
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None

    def do(self, func: Callable[[NetNS], Any]) -> Any:
        """Run func in this namespace on the calling thread and return its result.

        func receives the namespace the thread was in before; the thread is
        switched back to it afterwards, whether func succeeds or raises.
        """
        if self.fd is None:
            raise PluginError(f"cannot use closed netns {_quote(self.path)}")

        host = get_ns(_current_thread_ns_path())
        try:
            try:
                os.setns(self.fd, os.CLONE_NEWNET)
            except OSError as exc:
                raise PluginError(
                    f"error switching to ns {_quote(self.path)}: {exc}"
                ) from exc
            try:
                return func(host)
            finally:
                try:
                    os.setns(host.fd, os.CLONE_NEWNET)
                except OSError as exc:
                    raise PluginError(
                        f"failed to switch back to netns {_quote(host.path)}: {exc}"
                    ) from exc
        finally:
            host.close()


def get_ns(path: str) -> NetNS:
    """Open the network namespace at path.

    Raises NSPathNotExistError if nothing is at path, and PluginError if the
    file there is not a network namespace.
    """
    try:
        fd = os.open(path, os.O_RDONLY | os.O_CLOEXEC)
    except FileNotFoundError as exc:
        raise NSPathNotExistError(path) from exc
    except OSError as exc:
        raise PluginError(f"failed to open {_quote(path)}: {exc}") from exc

    try:
        target = os.readlink(f"/proc/self/fd/{fd}")
    except OSError as exc:
        os.close(fd)
        raise PluginError(f"failed to inspect {_quote(path)}: {exc}") from exc

    if not target.startswith("net:["):
        os.close(fd)
        raise PluginError(f"{_quote(path)} is not a network namespace")

    return NetNS(path, fd)