"""
Package a function with the named helpers it calls, ship it, call it elsewhere.
"""

from deferpack.codec import dump, load, persist, restore
from deferpack.deferred import Deferred, defer_
from deferpack.discovery import discover
from deferpack.runtime.config import DeferConfig
from deferpack.runtime.errors import (
    ConfigError,
    DeferError,
    DependencyError,
    ReconstructionError,
    UnresolvedDependencyError,
    UnsupportedCallableError,
    ValidationError,
)

__all__ = [
    "ConfigError",
    "DeferConfig",
    "DeferError",
    "Deferred",
    "DependencyError",
    "ReconstructionError",
    "UnresolvedDependencyError",
    "UnsupportedCallableError",
    "ValidationError",
    "defer_",
    "discover",
    "dump",
    "load",
    "persist",
    "restore",
]
__version__ = "0.1.0"
