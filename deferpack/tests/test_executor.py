from __future__ import annotations

import inspect

import pytest

from deferpack.runtime.context import AmbientContext, build_ambient
from deferpack.runtime.config import DeferConfig
from deferpack.runtime.errors import ReconstructionError, UnresolvedDependencyError
from deferpack.runtime.executor import SCOPE_NAME, compile_state, compile_unit, materialize
from deferpack.runtime.schemas import ImportSpec, PackageState, SourceSpec


def _materialize(target: SourceSpec, *dependencies, layers=()):
    state = PackageState(target=target, dependencies=tuple(dependencies))
    return materialize(compile_state(state), AmbientContext(layers=tuple(layers)))


def test_unowned_names_fall_back_to_ambient_layers():
    area = _materialize(
        SourceSpec(name="area", source="def area(r):\n    return PI * r * r\n"),
        layers=[{"PI": 3}],
    )
    assert area(2) == 12


def test_earlier_ambient_layers_win():
    pick = _materialize(
        SourceSpec(name="pick", source="def pick():\n    return VALUE\n"),
        layers=[{"VALUE": "first"}, {"VALUE": "second"}],
    )
    assert pick() == "first"


def test_builtins_are_ambient():
    count = _materialize(SourceSpec(name="count", source="def count(xs):\n    return len(xs)\n"))
    assert count([1, 2, 3]) == 3


def test_ambient_layers_are_read_at_call_time():
    layer: dict = {}
    late = _materialize(
        SourceSpec(name="late", source="def late():\n    return ADDED_LATER\n"),
        layers=[layer],
    )
    with pytest.raises(UnresolvedDependencyError):
        late()
    layer["ADDED_LATER"] = 1
    assert late() == 1


def test_dependencies_shadow_ambient_layers():
    run = _materialize(
        SourceSpec(name="run", source="def run(x):\n    return step(x)\n"),
        ("step", SourceSpec(name="increment", source="def increment(x):\n    return x + 1\n")),
        layers=[{"step": abs}],
    )
    assert run(-5) == -4


def test_import_references_are_resolved():
    run = _materialize(
        SourceSpec(name="run", source="def run(x):\n    return floor(x)\n"),
        ("floor", ImportSpec(module="math", qualname="floor")),
    )
    assert run(2.7) == 2


def test_rebuilt_callables_live_in_the_package_scope():
    run = _materialize(SourceSpec(name="run", source="def run():\n    return __name__\n"))
    assert run() == SCOPE_NAME
    assert run.__globals__["run"] is run


def test_rebuilt_source_is_inspectable():
    source = "def run():\n    return 1\n"
    run = _materialize(SourceSpec(name="run", source=source))
    assert inspect.getsource(run) == source


def test_decorators_resolve_in_package_scope():
    source = "@tag\ndef run():\n    return 1\n"
    tag = SourceSpec(
        name="tag",
        source="def tag(fn):\n    fn.tagged = True\n    return fn\n",
    )
    run = _materialize(SourceSpec(name="run", source=source), ("tag", tag))
    assert run.tagged is True


def test_compile_unit_rejects_mismatched_name():
    with pytest.raises(ReconstructionError):
        compile_unit(SourceSpec(name="run", source="def walk():\n    pass\n"))


def test_compile_unit_rejects_multiple_statements():
    with pytest.raises(ReconstructionError):
        compile_unit(SourceSpec(name="run", source="x = 1\ndef run():\n    pass\n"))


def test_build_ambient_orders_layers():
    cfg = DeferConfig(ambient_main=False)
    ctx = build_ambient(["math", "deferpack_no_such_module"], config=cfg, extra={"pi": "mine"})
    assert ctx.lookup("pi") == "mine"
    assert ctx.lookup("floor")(1.5) == 1
    assert ctx.lookup("len") is len
    with pytest.raises(KeyError):
        ctx.lookup("deferpack_nothing_here")


def test_definition_time_names_come_from_ambient():
    source = (
        "class Scaler:\n"
        "    factor = DEFAULT_FACTOR\n"
        "\n"
        "    def apply(self, x, bias=DEFAULT_BIAS):\n"
        "        return x * self.factor + bias\n"
    )
    scaler_cls = _materialize(
        SourceSpec(name="Scaler", source=source),
        layers=[{"DEFAULT_FACTOR": 3, "DEFAULT_BIAS": 1}],
    )
    assert scaler_cls().apply(2) == 7


def test_missing_definition_time_name_is_unresolved():
    with pytest.raises(UnresolvedDependencyError) as info:
        _materialize(SourceSpec(name="run", source="@nowhere\ndef run():\n    pass\n"))
    assert info.value.name == "nowhere"


def test_dependencies_may_be_listed_before_what_they_need():
    child = SourceSpec(
        name="Child",
        source="class Child(Base):\n    def value(self):\n        return super().value() + 1\n",
    )
    base = SourceSpec(name="Base", source="class Base:\n    def value(self):\n        return 1\n")
    run = _materialize(
        SourceSpec(name="run", source="def run():\n    return Child().value()\n"),
        ("Child", child),
        ("Base", base),
        layers=[{"Base": object}],
    )
    assert run() == 2


def test_decorator_registered_after_its_user():
    decorated = SourceSpec(name="step", source="@tag\ndef step():\n    return 1\n")
    tag = SourceSpec(name="tag", source="def tag(fn):\n    fn.tagged = True\n    return fn\n")
    run = _materialize(
        SourceSpec(name="run", source="def run():\n    return step.tagged\n"),
        ("step", decorated),
        ("tag", tag),
    )
    assert run() is True


def test_definition_cycle_is_unresolved():
    first = SourceSpec(name="First", source="class First(Second):\n    pass\n")
    second = SourceSpec(name="Second", source="class Second(First):\n    pass\n")
    with pytest.raises(UnresolvedDependencyError) as info:
        _materialize(
            SourceSpec(name="run", source="def run():\n    return First\n"),
            ("First", first),
            ("Second", second),
        )
    assert info.value.name in {"First", "Second"}


def test_aliased_dependency_sees_its_own_definition_name():
    countdown = SourceSpec(
        name="countdown",
        source="def countdown(n):\n    return 0 if n == 0 else step(n) + countdown(n - 1)\n",
    )
    step = SourceSpec(name="step", source="def step(n):\n    return n * 2\n")
    run = _materialize(
        SourceSpec(name="run", source="def run(n):\n    return cd(n)\n"),
        ("cd", countdown),
        ("step", step),
        layers=[{"countdown": lambda n: -1}],
    )
    assert run(3) == 12


def test_alias_clashing_with_a_dependency_name_is_not_bound():
    doubled = SourceSpec(name="tripled", source="def tripled(x):\n    return x * 2\n")
    tripled = SourceSpec(name="triple", source="def triple(x):\n    return x * 3\n")
    run = _materialize(
        SourceSpec(name="run", source="def run(x):\n    return double(x) + tripled(x)\n"),
        ("double", doubled),
        ("tripled", tripled),
    )
    assert run(1) == 5
