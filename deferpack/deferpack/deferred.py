"""
Deferred packages: a target function bundled with the named functions it calls.

Usage:
    def g_impl(x):
        return x * 2

    def f(x):
        return g(x) + 1

    package = defer_(f, g=g_impl)
    package(3)  # 7

Inside the package, `g` always means `g_impl`, whatever `g` happens to be in
the process that eventually calls it. Names the package does not own (library
functions, module constants) are looked up in that process's ambient
environment at call time.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from deferpack.runtime.config import DeferConfig, load_config
from deferpack.runtime.context import build_ambient
from deferpack.runtime.executor import CompiledPackage, compile_state, materialize
from deferpack.runtime.registry import build_registry
from deferpack.runtime.schemas import PackageState, Spec, state_to_payload, validate_payload
from deferpack.runtime.source import describe_function

logger = logging.getLogger(__name__)


class Deferred:
    """
    A self-contained, serializable package of a target and its dependencies.

    Immutable once built. The execution scope is materialized on the first call
    and reused afterwards; pickling drops it and ships only the payload.

    Materialization takes no lock. Concurrent first calls may each build a
    scope; every build is complete and equivalent, and the last one assigned
    is kept.
    """

    def __init__(
        self,
        state: PackageState,
        *,
        ambient: Mapping[str, Any] | None = None,
        config: DeferConfig | None = None,
    ) -> None:
        self._state = state
        self._ambient = ambient
        self._config = load_config(config)
        self._compiled: CompiledPackage = compile_state(state)
        self._entry: Callable[..., Any] | None = None

    @property
    def state(self) -> PackageState:
        return self._state

    @property
    def target_name(self) -> str:
        return self._state.target.name

    @property
    def dependencies(self) -> dict[str, Spec]:
        """Dependency name -> reconstructable representation (a copy)."""
        return dict(self._state.dependencies)

    @property
    def config(self) -> DeferConfig:
        return self._config

    def with_ambient(self, ambient: Mapping[str, Any]) -> "Deferred":
        """Return an independent package that consults `ambient` before other ambient layers."""
        return Deferred(self._state, ambient=ambient, config=self._config)

    def _materialize(self) -> Callable[..., Any]:
        if self._entry is None:
            ambient = build_ambient(
                self._state.home_modules(),
                config=self._config,
                extra=self._ambient,
            )
            self._entry = materialize(self._compiled, ambient)
        return self._entry

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._materialize()(*args, **kwargs)

    def __reduce__(self):
        return (_from_payload, (state_to_payload(self._state),))

    def __repr__(self) -> str:
        return f"Deferred({self.target_name}, dependencies={self._state.dependency_names()})"


def _from_payload(payload: Any) -> Deferred:
    return Deferred(validate_payload(payload))


def defer_(target: Callable[..., Any], /, **dependencies: Callable[..., Any]) -> Deferred:
    """
    Package `target` together with its named dependencies.

    Args:
        target: A plain Python function defined with `def`.
        **dependencies: `name=callable` for every function the target (or
            another dependency) refers to by `name`.

    Raises:
        UnsupportedCallableError: a callable has no reconstructable form.
        DependencyError: a dependency name or value is invalid.
    """
    target_spec = describe_function(target)
    registry = build_registry(dependencies, reserved=target_spec.name)
    state = PackageState(target=target_spec, dependencies=registry.items())
    logger.debug("Built package %s with dependencies %s", target_spec.name, registry.names())
    return Deferred(state)
