"""Activities, their metadata, registration and value coercion."""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class ActivityMetadata:
    """Declared settings, inputs and outputs, each mapping a name to a type name."""

    settings: dict[str, str] = field(default_factory=dict)
    input: dict[str, str] | None = None
    output: dict[str, str] | None = None


@dataclass(frozen=True)
class ActivityDetails:
    """Flags describing special activities."""

    is_return: bool = False
    is_reply: bool = False


class Activity(abc.ABC):
    """A unit of work run by a flow task."""

    metadata: ActivityMetadata = ActivityMetadata()
    details: ActivityDetails | None = None
    ref: str = ""

    @abc.abstractmethod
    def eval(self, context: Any) -> bool:
        """Run the activity; return True when it is done."""


@dataclass
class InitContext:
    """What an activity factory receives when creating an instance."""

    settings: dict[str, Any] = field(default_factory=dict)
    mapper_factory: Any = None
    logger: Any = None
    name: str = ""


Factory = Callable[[InitContext], Any]


class ActivityRegistry:
    """Maps activity refs to activities and their factories."""

    def __init__(self) -> None:
        self._activities: dict[str, Any] = {}
        self._factories: dict[str, Factory] = {}

    def register(self, ref, activity, factory=None):
        if ref in self._activities:
            raise ValueError(f"activity already registered: {ref}")
        self._activities[ref] = activity
        if factory is not None:
            self._factories[ref] = factory
        try:
            activity.ref = ref
        except AttributeError:
            pass

    def get(self, ref):
        return self._activities.get(ref)

    def get_factory(self, ref):
        return self._factories.get(ref)

    def resolve_alias(self, alias):
        """Map ``#name`` to the registered ref whose last segment is ``name``."""
        name = alias[1:] if alias.startswith("#") else alias
        if name in self._activities:
            return name
        for ref in self._activities:
            if ref.rstrip("/").rsplit("/", 1)[-1] == name:
                return ref
        return None


_REGISTRY = ActivityRegistry()


def register_activity(ref, activity, factory=None):
    _REGISTRY.register(ref, activity, factory)


def get_activity(ref):
    return _REGISTRY.get(ref)


def get_activity_factory(ref):
    return _REGISTRY.get_factory(ref)


def resolve_alias(alias):
    return _REGISTRY.resolve_alias(alias)


_TRUE = {"1", "t", "true"}
_FALSE = {"0", "f", "false"}


def coerce_to_int(value):
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            try:
                return int(float(text))
            except ValueError:
                raise ValueError(f"unable to coerce '{value}' to int") from None
    raise ValueError(f"unable to coerce {type(value).__name__} to int")


def coerce_to_bool(value):
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if not text or text in _FALSE:
            return False
        if text in _TRUE:
            return True
        raise ValueError(f"unable to coerce '{value}' to bool")
    raise ValueError(f"unable to coerce {type(value).__name__} to bool")


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value) if value.strip() else 0.0
        except ValueError:
            raise ValueError(f"unable to coerce '{value}' to number") from None
    raise ValueError(f"unable to coerce {type(value).__name__} to number")


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _from_json(value: Any, kind: type) -> Any:
    if isinstance(value, kind):
        return value
    if value is None:
        return None
    if kind is list and isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, kind):
            return parsed
    raise ValueError(f"unable to coerce {value!r} to {kind.__name__}")


def coerce_to_type(value, type_name):
    """Convert ``value`` to the named data type."""
    kind = (type_name or "any").lower()
    if kind == "string":
        return _to_string(value)
    if kind in ("integer", "int", "int32", "int64"):
        return coerce_to_int(value)
    if kind in ("number", "float", "float32", "float64", "double"):
        return _to_float(value)
    if kind in ("boolean", "bool"):
        return coerce_to_bool(value)
    if kind in ("object", "params", "map"):
        return _from_json(value, dict)
    if kind == "array":
        return _from_json(value, list)
    if kind == "connection":
        if isinstance(value, (dict, str)):
            raise ValueError(f"unable to coerce {value!r} to connection")
        return value
    if kind in ("any", "bytes", "datetime"):
        return value
    raise ValueError(f"unsupported type '{type_name}'")