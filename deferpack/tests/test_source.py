from __future__ import annotations

import math

import pytest

from deferpack.runtime.errors import DependencyError, UnsupportedCallableError, ValidationError
from deferpack.runtime.registry import DependencyRegistry, build_registry
from deferpack.runtime.schemas import ImportSpec, SourceSpec, validate_spec
from deferpack.runtime.source import describe_callable, describe_function


def plain(x):
    return x + 1


class Shape:
    sides = 0


def make_multiplier(factor):
    def multiply(x):
        return x * factor

    return multiply


def test_describe_plain_function():
    spec = describe_function(plain)
    assert spec.name == "plain"
    assert spec.source == "def plain(x):\n    return x + 1\n"
    assert spec.module == __name__
    assert spec.freevars == ()


def test_describe_closure_captures_cells():
    spec = describe_function(make_multiplier(3))
    assert spec.name == "multiply"
    assert spec.source.startswith("def multiply(x):")
    assert spec.freevars == ("factor",)
    assert spec.cells == (3,)


def test_describe_class_by_source():
    spec = describe_callable(Shape)
    assert isinstance(spec, SourceSpec)
    assert spec.name == "Shape"


def test_describe_builtins_by_reference():
    assert describe_callable(math.sqrt) == ImportSpec(module="math", qualname="sqrt")
    assert describe_callable(dict) == ImportSpec(module="builtins", qualname="dict")


def test_describe_rejects_unsupported():
    with pytest.raises(UnsupportedCallableError):
        describe_function(lambda: None)
    with pytest.raises(UnsupportedCallableError):
        describe_callable(Shape().__init__)
    with pytest.raises(UnsupportedCallableError):
        describe_function(math.sqrt)
    with pytest.raises(UnsupportedCallableError):
        describe_callable(42)


def test_registry_keeps_registration_order():
    reg = build_registry({"b": plain, "a": math.floor})
    assert reg.names() == ["b", "a"]
    assert "a" in reg and len(reg) == 2
    assert reg.get("a") == ImportSpec(module="math", qualname="floor")
    assert reg.get("missing") is None


def test_registry_rejects_bad_names():
    reg = DependencyRegistry(reserved="target")
    spec = describe_function(plain)
    reg.register("ok", spec)
    with pytest.raises(DependencyError):
        reg.register("ok", spec)
    with pytest.raises(DependencyError):
        reg.register("target", spec)
    with pytest.raises(DependencyError):
        reg.register("1st", spec)
    with pytest.raises(DependencyError):
        reg.register("lambda", spec)


def test_build_registry_rejects_non_callables():
    with pytest.raises(DependencyError):
        build_registry({"threshold": 0.5})


def test_validate_spec_happy_path():
    spec = validate_spec(
        {"kind": "source", "name": "f", "source": "def f():\n    pass\n", "flags": 0},
        "$",
    )
    assert spec == SourceSpec(name="f", source="def f():\n    pass\n")


def test_validate_spec_rejects_bad_shapes():
    with pytest.raises(ValidationError):
        validate_spec(["source"], "$")
    with pytest.raises(ValidationError):
        validate_spec({"kind": "bytecode"}, "$")
    with pytest.raises(ValidationError):
        validate_spec({"kind": "import", "module": "", "qualname": "x"}, "$")
    with pytest.raises(ValidationError):
        validate_spec({"kind": "source", "name": "f", "source": "", "flags": -1}, "$")
