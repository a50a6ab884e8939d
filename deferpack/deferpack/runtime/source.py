"""
Turn live callables into reconstructable representations.

Python functions and classes are captured as their definition text, read with
`inspect.getsource()`. Nothing here executes that text; the executor does, and
only inside the package's own scope.
"""

from __future__ import annotations

import __future__
import ast
import importlib
import inspect
import sys
import textwrap
import types
from typing import Any, Callable

from deferpack.runtime.errors import UnsupportedCallableError
from deferpack.runtime.schemas import ImportSpec, SourceSpec, Spec

_DEFINITIONS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)

_FUTURE_FEATURES = [getattr(__future__, name) for name in __future__.all_feature_names]
_FUTURE_MASK = 0
for _feature in _FUTURE_FEATURES:
    # Mandatory features reuse ordinary code flags (e.g. CO_NESTED).
    _mandatory = _feature.getMandatoryRelease()
    if _mandatory is None or _mandatory > sys.version_info:
        _FUTURE_MASK |= _feature.compiler_flag


def _describe(obj: Any) -> str:
    qualname = getattr(obj, "__qualname__", None) or getattr(obj, "__name__", None)
    if qualname:
        return f"{type(obj).__name__} {qualname!r}"
    return repr(obj)


def read_definition(obj: Any) -> tuple[str, str]:
    """
    Return `(source, bound_name)` for a function or class.

    The source is dedented so nested definitions compile at top level.
    """
    try:
        raw = inspect.getsource(obj)
    except (OSError, TypeError) as exc:
        raise UnsupportedCallableError(f"Source is not available for {_describe(obj)}") from exc

    source = textwrap.dedent(raw)
    try:
        tree = ast.parse(source)
    except SyntaxError as exc:
        raise UnsupportedCallableError(
            f"Source of {_describe(obj)} is not a standalone definition"
        ) from exc

    if len(tree.body) != 1 or not isinstance(tree.body[0], _DEFINITIONS):
        raise UnsupportedCallableError(
            f"Source of {_describe(obj)} must be a single def or class statement"
        )
    return source, tree.body[0].name


def _module_future_flags(module_name: str | None) -> int:
    module = sys.modules.get(module_name) if module_name else None
    if module is None:
        return 0
    namespace = vars(module)
    flags = 0
    for name, feature in zip(__future__.all_feature_names, _FUTURE_FEATURES):
        if namespace.get(name) is feature:
            flags |= feature.compiler_flag
    return flags & _FUTURE_MASK


def _closure_of(fn: types.FunctionType) -> tuple[tuple[str, ...], tuple[Any, ...]]:
    names = fn.__code__.co_freevars
    if "__class__" in names:
        raise UnsupportedCallableError(
            f"{_describe(fn)} uses zero-argument super() and cannot leave its class"
        )

    values: list[Any] = []
    for name, cell in zip(names, fn.__closure__ or ()):
        try:
            values.append(cell.cell_contents)
        except ValueError as exc:
            raise UnsupportedCallableError(
                f"Closure variable {name!r} of {_describe(fn)} is unbound"
            ) from exc
    return tuple(names), tuple(values)


def resolve_reference(module: str, qualname: str) -> Any:
    """Import `module` and walk `qualname`. Raises ImportError / AttributeError."""
    obj: Any = importlib.import_module(module)
    for part in qualname.split("."):
        obj = getattr(obj, part)
    return obj


def _import_spec(obj: Any) -> ImportSpec:
    module = getattr(obj, "__module__", None)
    qualname = getattr(obj, "__qualname__", None) or getattr(obj, "__name__", None)
    if not isinstance(module, str) or not isinstance(qualname, str) or "<" in qualname:
        raise UnsupportedCallableError(f"{_describe(obj)} has no source and no import path")

    try:
        found = resolve_reference(module, qualname)
    except (ImportError, AttributeError) as exc:
        raise UnsupportedCallableError(
            f"{_describe(obj)} cannot be re-imported as {module}.{qualname}"
        ) from exc
    if found is not obj:
        raise UnsupportedCallableError(
            f"{module}.{qualname} does not refer to {_describe(obj)}"
        )
    return ImportSpec(module=module, qualname=qualname)


def describe_function(fn: Callable[..., Any]) -> SourceSpec:
    """Capture a plain Python function (closures included, lambdas excluded)."""
    if not isinstance(fn, types.FunctionType):
        raise UnsupportedCallableError(f"Expected a Python function, got {_describe(fn)}")
    if fn.__name__ == "<lambda>":
        raise UnsupportedCallableError(
            "Lambdas cannot be packaged; define the function with `def` instead"
        )

    # getsource() follows __wrapped__, so the text (decorators included)
    # belongs to the innermost function; take its closure too.
    source, name = read_definition(fn)
    original = inspect.unwrap(fn)
    if not isinstance(original, types.FunctionType):
        original = fn
    freevars, cells = _closure_of(original)
    return SourceSpec(
        name=name,
        source=source,
        module=fn.__module__,
        freevars=freevars,
        cells=cells,
        flags=original.__code__.co_flags & _FUTURE_MASK,
    )


def describe_callable(obj: Any) -> Spec:
    """
    Capture any supported dependency.

    - Python functions: by source.
    - Classes with source: by source.
    - Everything else (C builtins, extension types): by import reference.
    """
    if not callable(obj):
        raise UnsupportedCallableError(f"{_describe(obj)} is not callable")

    if isinstance(obj, types.FunctionType):
        return describe_function(obj)

    if isinstance(obj, type):
        try:
            source, name = read_definition(obj)
        except UnsupportedCallableError:
            return _import_spec(obj)
        return SourceSpec(
            name=name,
            source=source,
            module=obj.__module__,
            flags=_module_future_flags(obj.__module__),
        )

    return _import_spec(obj)
