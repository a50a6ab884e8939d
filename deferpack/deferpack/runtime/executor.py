from __future__ import annotations

import ast
import builtins
import collections
import hashlib
import inspect
import linecache
import logging
import textwrap
from dataclasses import dataclass
from types import CodeType
from typing import Any, Callable, Iterable, Iterator

from deferpack.runtime.context import AmbientContext
from deferpack.runtime.errors import ReconstructionError, UnresolvedDependencyError
from deferpack.runtime.schemas import ImportSpec, PackageState, SourceSpec, Spec
from deferpack.runtime.source import resolve_reference

logger = logging.getLogger(__name__)

SCOPE_NAME = "__deferpack__"

_FACTORY = "__deferpack_factory__"
_DEFINITIONS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


@dataclass(frozen=True)
class CompiledUnit:
    spec: Spec
    code: CodeType | None = None


@dataclass(frozen=True)
class CompiledPackage:
    state: PackageState
    target: CompiledUnit
    dependencies: tuple[tuple[str, CompiledUnit], ...]


class _Scope(dict):
    """
    Globals shared by every rebuilt callable of one package.

    Own entries are the package's dependencies and target. Any other name is
    looked up in the ambient environment when the code asks for it. Owned
    names that are not bound yet never fall through to the ambient layers.
    """

    def __init__(self, ambient: AmbientContext, owned: Iterable[str] = ()) -> None:
        super().__init__()
        self._ambient = ambient
        self._owned = frozenset(owned)

    def __missing__(self, name: str) -> Any:
        if name in self._owned:
            raise UnresolvedDependencyError(name, "not defined yet")
        try:
            return self._ambient.lookup(name)
        except KeyError:
            raise UnresolvedDependencyError(name) from None

    def is_pending(self, name: str) -> bool:
        return name in self._owned and not dict.__contains__(self, name)

    def seed(self, names: Iterable[str]) -> None:
        """
        Copy ambient values for `names` into the scope itself.

        Module and class bodies read globals without going through
        `__missing__`, so names they use at definition time must be present.
        Package-owned names and builtins are never seeded.
        """
        for name in names:
            if name in self or name in self._owned or name in builtins.__dict__:
                continue
            try:
                self[name] = self._ambient.lookup(name)
            except KeyError:
                continue


def _definition_time_names(code: CodeType) -> Iterator[str]:
    if not code.co_flags & inspect.CO_OPTIMIZED:
        yield from code.co_names
    for const in code.co_consts:
        if isinstance(const, CodeType):
            yield from _definition_time_names(const)


def _wrap_closure(spec: SourceSpec) -> str:
    # Free variables become parameters of a factory so the rebuilt
    # definition closes over fresh cells holding the captured values.
    params = ", ".join(spec.freevars)
    body = textwrap.indent(spec.source.rstrip("\n") + "\n", "    ")
    return f"def {_FACTORY}({params}):\n{body}    return {spec.name}\n"


def compile_unit(spec: Spec) -> CompiledUnit:
    if isinstance(spec, ImportSpec):
        return CompiledUnit(spec=spec)

    try:
        tree = ast.parse(spec.source)
    except SyntaxError as exc:
        raise ReconstructionError(f"Definition of {spec.name!r} does not parse: {exc}") from exc
    if (
        len(tree.body) != 1
        or not isinstance(tree.body[0], _DEFINITIONS)
        or tree.body[0].name != spec.name
    ):
        raise ReconstructionError(f"Source does not hold a single definition of {spec.name!r}")

    text = _wrap_closure(spec) if spec.freevars else spec.source
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    filename = f"<deferpack {spec.name} {digest}>"
    try:
        code = compile(text, filename, "exec", flags=spec.flags, dont_inherit=True)
    except (SyntaxError, ValueError) as exc:
        raise ReconstructionError(f"Cannot compile definition of {spec.name!r}: {exc}") from exc

    # Tracebacks and inspect.getsource() on rebuilt callables read from here.
    linecache.cache[filename] = (len(text), None, text.splitlines(True), filename)
    return CompiledUnit(spec=spec, code=code)


def compile_state(state: PackageState) -> CompiledPackage:
    """Compile every representation of a package without executing anything."""
    compiled = CompiledPackage(
        state=state,
        target=compile_unit(state.target),
        dependencies=tuple((name, compile_unit(spec)) for name, spec in state.dependencies),
    )
    logger.debug(
        "Compiled package %s with dependencies %s",
        state.target.name,
        state.dependency_names(),
    )
    return compiled


def _rebuild(unit: CompiledUnit, scope: _Scope, name: str) -> Any:
    spec = unit.spec
    if isinstance(spec, ImportSpec):
        try:
            return resolve_reference(spec.module, spec.qualname)
        except (ImportError, AttributeError) as exc:
            raise UnresolvedDependencyError(
                name, f"cannot import {spec.module}.{spec.qualname}"
            ) from exc

    scope.seed(n for n in _definition_time_names(unit.code) if n != spec.name)
    namespace: dict[str, Any] = {}
    try:
        exec(unit.code, scope, namespace)
    except UnresolvedDependencyError:
        raise
    except NameError as exc:
        missing = getattr(exc, "name", None)
        if not missing:
            raise
        raise UnresolvedDependencyError(missing, f"while defining {spec.name!r}") from exc
    if spec.freevars:
        return namespace[_FACTORY](*spec.cells)
    return namespace[spec.name]


def _aliases(compiled: CompiledPackage) -> dict[str, str]:
    """
    Definition names of dependencies registered under another name.

    Binding them lets an aliased dependency call itself by its own name. Names
    that clash with a dependency, the target or another definition are skipped.
    """
    keys = {name for name, _ in compiled.dependencies}
    keys.add(compiled.target.spec.name)
    counts = collections.Counter(
        unit.spec.name for _, unit in compiled.dependencies if isinstance(unit.spec, SourceSpec)
    )
    aliases: dict[str, str] = {}
    for key, unit in compiled.dependencies:
        spec = unit.spec
        if not isinstance(spec, SourceSpec) or spec.name == key:
            continue
        if spec.name in keys or counts[spec.name] > 1:
            continue
        aliases[spec.name] = key
    return aliases


def materialize(compiled: CompiledPackage, ambient: AmbientContext) -> Callable[..., Any]:
    """
    Build the package scope and return the rebuilt target bound to it.

    Every definition is tried in registration order. One that needs another
    package-owned name at definition time (a base class, a decorator, a
    default value) which is not bound yet is retried after the others, so
    registration order does not matter. Each pass must bind at least one
    definition; otherwise the last unresolved name is raised.
    """
    target_name = compiled.target.spec.name
    aliases = _aliases(compiled)
    owned = [name for name, _ in compiled.dependencies] + [target_name, *aliases]
    scope = _Scope(ambient, owned)
    scope["__name__"] = SCOPE_NAME
    scope["__builtins__"] = builtins

    bound_as = {key: alias for alias, key in aliases.items()}
    pending = [*compiled.dependencies, (target_name, compiled.target)]
    while pending:
        waiting: list[tuple[str, CompiledUnit]] = []
        blocked: UnresolvedDependencyError | None = None
        for name, unit in pending:
            try:
                value = _rebuild(unit, scope, name)
            except UnresolvedDependencyError as exc:
                if not scope.is_pending(exc.name):
                    raise
                waiting.append((name, unit))
                blocked = exc
                continue
            scope[name] = value
            if name in bound_as:
                scope[bound_as[name]] = value
        if blocked is not None and len(waiting) == len(pending):
            raise blocked
        pending = waiting

    logger.debug(
        "Materialized package %s (%d dependencies, %d ambient layers)",
        target_name,
        len(compiled.dependencies),
        len(ambient.layers),
    )
    return scope[target_name]
