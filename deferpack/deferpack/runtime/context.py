from __future__ import annotations

import builtins
import importlib
import logging
import sys
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from deferpack.runtime.config import DeferConfig

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class AmbientContext:
    """
    The restoring side's own definitions, consulted only for names the package
    does not own.

    Layers are live mappings (module `__dict__`s), so definitions added after
    the package was materialized are still visible at call time.
    """

    layers: tuple[Mapping[str, Any], ...] = ()

    def lookup(self, name: str) -> Any:
        for layer in self.layers:
            value = layer.get(name, _MISSING)
            if value is not _MISSING:
                return value
        value = builtins.__dict__.get(name, _MISSING)
        if value is not _MISSING:
            return value
        raise KeyError(name)


def _module_namespace(name: str, *, allow_import: bool) -> Mapping[str, Any] | None:
    module = sys.modules.get(name)
    if module is None and allow_import:
        try:
            module = importlib.import_module(name)
        except ImportError as exc:
            logger.debug("Home module %s is not importable here: %s", name, exc)
            return None
    if module is None:
        return None
    return vars(module)


def build_ambient(
    home_modules: Iterable[str],
    *,
    config: DeferConfig,
    extra: Mapping[str, Any] | None = None,
) -> AmbientContext:
    """
    Assemble the ambient lookup chain: `extra`, home modules, `__main__`.
    Builtins are always consulted last by `AmbientContext.lookup`.
    """
    layers: list[Mapping[str, Any]] = []
    if extra is not None:
        layers.append(extra)

    for name in home_modules:
        if name == "__main__":
            continue
        namespace = _module_namespace(name, allow_import=config.import_home_modules)
        if namespace is not None:
            layers.append(namespace)

    if config.ambient_main:
        main = sys.modules.get("__main__")
        if main is not None:
            layers.append(vars(main))

    return AmbientContext(layers=tuple(layers))
