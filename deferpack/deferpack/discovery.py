from __future__ import annotations

import types
from typing import Any, Callable, Iterator

from deferpack.runtime.errors import UnsupportedCallableError


def _global_names(code: types.CodeType) -> Iterator[str]:
    # co_names also lists attribute names; those only match when the module
    # happens to define a function of the same name.
    yield from code.co_names
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            yield from _global_names(const)


def discover(target: Callable[..., Any]) -> dict[str, Callable[..., Any]]:
    """
    Find the functions `target` needs from its own module.

    Follows global names through the target and every function found, keeping
    plain functions defined in the target's module. Functions imported from
    other modules are left to the ambient environment.

    Usage:
        package = defer_(score, **discover(score))
    """
    if not isinstance(target, types.FunctionType):
        raise UnsupportedCallableError(f"Expected a Python function, got {type(target).__name__}")

    home = target.__module__
    found: dict[str, Callable[..., Any]] = {}
    queue: list[types.FunctionType] = [target]
    while queue:
        fn = queue.pop(0)
        namespace = fn.__globals__
        for name in _global_names(fn.__code__):
            if name in found:
                continue
            value = namespace.get(name)
            if value is target or not isinstance(value, types.FunctionType):
                continue
            if value.__module__ != home or value.__name__ == "<lambda>":
                continue
            found[name] = value
            queue.append(value)
    return found
