"""CNI specification versions known to the plugin."""

ALL_VERSIONS: tuple[str, ...] = (
    "0.1.0",
    "0.2.0",
    "0.3.0",
    "0.3.1",
    "0.4.0",
    "1.0.0",
    "1.1.0",
)

CURRENT_VERSION = "1.1.0"

LEGACY_VERSIONS = frozenset({"0.1.0", "0.2.0"})

# Versions before 0.3.0 have no support for plugin chaining.
_UNSUPPORTED = LEGACY_VERSIONS


def supported_versions() -> list[str]:
    """Return the CNI versions that support plugin chaining, oldest first."""
    return [v for v in ALL_VERSIONS if v not in _UNSUPPORTED]