"""Mappers that compute values from a scope."""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from typing import Any

from flowdef.expression import ExpressionFactory


def _is_conditional(value: Any) -> bool:
    return isinstance(value, Mapping) and any(
        isinstance(k, str) and (k.startswith("@if") or k.startswith("@else")) for k in value
    )


def is_expr(value):
    """Tell whether a mapping value must be evaluated rather than copied."""
    if isinstance(value, str):
        return value.startswith("=")
    if _is_conditional(value):
        return True
    return isinstance(value, Mapping) and "mapping" in value


_IF = re.compile(r"@(?:else)?if\s*\((.*)\)\s*$", re.DOTALL)


class Mapper:
    """Applies a set of mappings to a scope."""

    def __init__(self, mappings: Mapping[str, Any], factory: ExpressionFactory) -> None:
        self._factory = factory
        self._mappings = {name: self._compile(value) for name, value in mappings.items()}

    def _compile(self, value: Any) -> Any:
        if isinstance(value, str) and value.startswith("="):
            return ("expr", self._factory.new_expr(value[1:]))
        if _is_conditional(value):
            branches = []
            for key, branch in value.items():
                match = _IF.match(key)
                condition = self._factory.new_expr(match.group(1)) if match else None
                branches.append((condition, self._compile(branch)))
            return ("cond", branches)
        if isinstance(value, Mapping) and "mapping" in value:
            return self._compile(value["mapping"])
        if isinstance(value, Mapping):
            return ("dict", {k: self._compile(v) for k, v in value.items()})
        if isinstance(value, list):
            return ("list", [self._compile(v) for v in value])
        return ("literal", value)

    def _run(self, compiled: Any, scope: Any) -> Any:
        kind, payload = compiled
        if kind == "expr":
            return payload.eval(scope)
        if kind == "cond":
            for condition, branch in payload:
                if condition is None or condition.eval(scope):
                    return self._run(branch, scope)
            return None
        if kind == "dict":
            return {k: self._run(v, scope) for k, v in payload.items()}
        if kind == "list":
            return [self._run(v, scope) for v in payload]
        return copy.deepcopy(payload)

    def apply(self, scope):
        return {name: self._run(c, scope) for name, c in self._mappings.items()}


class MapperFactory:
    """Creates mappers that evaluate expressions with a given resolver."""

    def __init__(self, resolver=None) -> None:
        self.expr_factory = ExpressionFactory(resolver)

    def new_mapper(self, mappings):
        return Mapper(mappings or {}, self.expr_factory)


class DefaultActivityOutputMapper:
    """Copies an activity's declared outputs into the flow's ``_A`` namespace."""

    def __init__(self, attr_ns: str, metadata: Any) -> None:
        self.attr_ns = attr_ns
        self.metadata = metadata

    def apply(self, scope):
        outputs = self.metadata.output
        if outputs is None:
            return None
        return {self.attr_ns + name: scope[name] for name in outputs if name in scope}


_factories: dict[str, MapperFactory] = {}


def set_mapper_factory(factory):
    """Install the shared mapper factory; ``None`` restores the default."""
    if factory is None:
        _factories.pop("mapper", None)
    else:
        _factories["mapper"] = factory


def get_mapper_factory():
    """Return the shared mapper factory, creating a default one if needed."""
    return _factories.setdefault("mapper", MapperFactory())


def new_default_activity_output_mapper(task):
    """Build the output mapper used when a task declares none."""
    return DefaultActivityOutputMapper(
        f"_A.{task.id}.", task.activity_config.activity.metadata
    )