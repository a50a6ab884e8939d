from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping

from deferpack.runtime.errors import DependencyError
from deferpack.runtime.schemas import Spec, is_valid_name
from deferpack.runtime.source import describe_callable


class DependencyRegistry:
    """
    The explicit name -> representation table of a package.

    Names resolved inside the rebuilt callables are looked up here before the
    ambient environment is consulted. Anything not registered is ambient.
    """

    def __init__(self, *, reserved: str | None = None) -> None:
        self._specs: dict[str, Spec] = {}
        self._reserved = reserved

    def register(self, name: str, spec: Spec) -> None:
        if not isinstance(name, str) or not is_valid_name(name):
            raise DependencyError(f"Dependency name must be a Python identifier: {name!r}")
        if name == self._reserved:
            raise DependencyError(f"Dependency {name!r} shadows the target definition")
        if name in self._specs:
            raise DependencyError(f"Dependency already registered: {name!r}")
        self._specs[name] = spec

    def get(self, name: str) -> Spec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return list(self._specs.keys())

    def items(self) -> tuple[tuple[str, Spec], ...]:
        return tuple(self._specs.items())

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[str]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)


def build_registry(
    dependencies: Mapping[str, Callable[..., Any]],
    *,
    reserved: str | None = None,
) -> DependencyRegistry:
    """
    Build the registry for `defer_()` from live callables.

    `reserved` is the target's own definition name, which the package binds to
    the target itself.
    """
    reg = DependencyRegistry(reserved=reserved)
    for name, value in dependencies.items():
        if not callable(value):
            raise DependencyError(
                f"Dependency {name!r} must be callable, got {type(value).__name__}"
            )
        reg.register(name, describe_callable(value))
    return reg
