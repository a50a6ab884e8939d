from __future__ import annotations

import keyword
from dataclasses import dataclass
from typing import Any, TypeAlias

from deferpack.runtime.errors import ValidationError


FORMAT = "deferpack/1"


# -----------------------------
# Helpers
# -----------------------------


def _require_dict(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError(f"Expected mapping at {path}, got {type(value).__name__}")
    return value


def _require_list(value: Any, path: str) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"Expected sequence at {path}, got {type(value).__name__}")
    return list(value)


def _require_str(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"Expected string at {path}, got {type(value).__name__}")
    return value


def _require_optional_str(value: Any, path: str) -> str | None:
    if value is None:
        return None
    return _require_str(value, path)


def _require_identifier(value: Any, path: str) -> str:
    name = _require_str(value, path)
    if not is_valid_name(name):
        raise ValidationError(f"Invalid identifier at {path}: {name!r}")
    return name


def _require_one_of(value: str, allowed: set[str], path: str) -> str:
    if value not in allowed:
        raise ValidationError(f"Invalid value at {path}: {value!r}. Allowed: {sorted(allowed)}")
    return value


def is_valid_name(name: str) -> bool:
    """Whether `name` can be bound as a global in the package scope."""
    return name.isidentifier() and not keyword.iskeyword(name)


# -----------------------------
# Reconstructable representations
# -----------------------------


@dataclass(frozen=True)
class SourceSpec:
    """
    A function or class rebuilt by executing its definition text.

    `name` is the name the definition binds (which may differ from the
    dependency name it is registered under). Closures carry their free variable
    names and captured values; values travel by value inside the payload.
    `flags` are the `__future__` compiler flags in effect where the definition
    was written.
    """

    name: str
    source: str
    module: str | None = None
    freevars: tuple[str, ...] = ()
    cells: tuple[Any, ...] = ()
    flags: int = 0

    kind = "source"


@dataclass(frozen=True)
class ImportSpec:
    """A callable without Python source, re-imported by reference on the restoring side."""

    module: str
    qualname: str

    kind = "import"


Spec: TypeAlias = SourceSpec | ImportSpec

_SPEC_KINDS = {SourceSpec.kind, ImportSpec.kind}


@dataclass(frozen=True)
class PackageState:
    target: SourceSpec
    dependencies: tuple[tuple[str, Spec], ...] = ()

    def dependency_names(self) -> list[str]:
        return [name for name, _ in self.dependencies]

    def home_modules(self) -> list[str]:
        """Modules the source definitions came from, target first, without duplicates."""
        seen: list[str] = []
        specs: list[Spec] = [self.target, *(spec for _, spec in self.dependencies)]
        for spec in specs:
            if not isinstance(spec, SourceSpec):
                continue
            if spec.module and spec.module not in seen:
                seen.append(spec.module)
        return seen


# -----------------------------
# Payload encoding
# -----------------------------


def spec_to_dict(spec: Spec) -> dict[str, Any]:
    if isinstance(spec, SourceSpec):
        return {
            "kind": spec.kind,
            "name": spec.name,
            "source": spec.source,
            "module": spec.module,
            "freevars": list(spec.freevars),
            "cells": list(spec.cells),
            "flags": spec.flags,
        }
    return {"kind": spec.kind, "module": spec.module, "qualname": spec.qualname}


def state_to_payload(state: PackageState) -> dict[str, Any]:
    return {
        "format": FORMAT,
        "target": spec_to_dict(state.target),
        "dependencies": [[name, spec_to_dict(spec)] for name, spec in state.dependencies],
    }


# -----------------------------
# Payload validation
# -----------------------------


def validate_spec(payload: Any, path: str) -> Spec:
    obj = _require_dict(payload, path)
    kind = _require_one_of(_require_str(obj.get("kind"), f"{path}.kind"), _SPEC_KINDS, f"{path}.kind")

    if kind == ImportSpec.kind:
        module = _require_str(obj.get("module"), f"{path}.module")
        qualname = _require_str(obj.get("qualname"), f"{path}.qualname")
        if not module or not qualname:
            raise ValidationError(f"Empty import reference at {path}")
        return ImportSpec(module=module, qualname=qualname)

    name = _require_identifier(obj.get("name"), f"{path}.name")
    source = _require_str(obj.get("source"), f"{path}.source")
    module = _require_optional_str(obj.get("module"), f"{path}.module")
    freevars = tuple(
        _require_identifier(v, f"{path}.freevars[{i}]")
        for i, v in enumerate(_require_list(obj.get("freevars", []), f"{path}.freevars"))
    )
    cells = tuple(_require_list(obj.get("cells", []), f"{path}.cells"))
    if len(freevars) != len(cells):
        raise ValidationError(
            f"{path}: freevars/cells length mismatch ({len(freevars)} != {len(cells)})"
        )
    flags = obj.get("flags", 0)
    if not isinstance(flags, int) or isinstance(flags, bool) or flags < 0:
        raise ValidationError(f"Expected non-negative integer at {path}.flags")
    return SourceSpec(
        name=name,
        source=source,
        module=module,
        freevars=freevars,
        cells=cells,
        flags=flags,
    )


def validate_payload(payload: Any) -> PackageState:
    """
    Validate a decoded payload and convert it into a `PackageState`.

    Only structure is checked here. Whether the source compiles is checked by
    the executor; whether ambient names exist is only known at call time.
    """
    obj = _require_dict(payload, "$")
    fmt = obj.get("format")
    if fmt != FORMAT:
        raise ValidationError(f"Unsupported payload format: {fmt!r} (expected {FORMAT!r})")

    target = validate_spec(obj.get("target"), "$.target")
    if not isinstance(target, SourceSpec):
        raise ValidationError("$.target must be a source definition")

    dependencies: list[tuple[str, Spec]] = []
    seen: set[str] = set()
    for i, entry in enumerate(_require_list(obj.get("dependencies", []), "$.dependencies")):
        pair = _require_list(entry, f"$.dependencies[{i}]")
        if len(pair) != 2:
            raise ValidationError(f"$.dependencies[{i}] must be a [name, spec] pair")
        name = _require_identifier(pair[0], f"$.dependencies[{i}][0]")
        if name in seen:
            raise ValidationError(f"Duplicate dependency name: {name!r}")
        if name == target.name:
            raise ValidationError(f"Dependency {name!r} shadows the target definition")
        seen.add(name)
        dependencies.append((name, validate_spec(pair[1], f"$.dependencies[{i}][1]")))

    return PackageState(target=target, dependencies=tuple(dependencies))
