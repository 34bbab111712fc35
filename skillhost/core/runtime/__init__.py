"""Runtime discovery, version checks and installation."""

from skillhost.core.runtime.bootstrap import (
    EnvironmentBootstrapper,
    RuntimeInfo,
    parse_version,
    version_at_least,
)

__all__ = [
    "EnvironmentBootstrapper",
    "RuntimeInfo",
    "parse_version",
    "version_at_least",
]
