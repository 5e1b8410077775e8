"""Resolvers that look up values referenced in flow expressions and mappings."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any


class ResolveError(Exception):
    """Raised when a reference cannot be resolved."""


@dataclass(frozen=True)
class ResolverInfo:
    """Describes how a resolver's references are written."""

    is_static: bool = False
    uses_item_format: bool = False
    is_implicit: bool = False


_SEGMENT = re.compile(r"\.([^.\[]+)|\[([^\]]*)\]")


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def get_path_value(value: Any, path: str) -> Any:
    """Follow a path such as ``.a.b[0]`` or ``[key]`` into ``value``."""
    pos = 0
    current = value
    while pos < len(path):
        match = _SEGMENT.match(path, pos)
        if match is None:
            raise ResolveError(f"invalid path '{path}'")
        pos = match.end()
        key = match.group(1) if match.group(1) is not None else _unquote(match.group(2))
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(key)]
            except (ValueError, IndexError) as exc:
                raise ResolveError(f"invalid index '{key}' in path '{path}'") from exc
        elif hasattr(current, key):
            current = getattr(current, key)
        else:
            raise ResolveError(f"unable to evaluate path '{path}' on {type(current).__name__}")
    return current


def _lookup(scope: Mapping[str, Any] | None, name: str) -> tuple[Any, bool]:
    if scope is None or name not in scope:
        return None, False
    return scope[name], True


_STATIC = ResolverInfo(is_static=False, uses_item_format=False)
_DYNAMIC_ITEM = ResolverInfo(is_static=False, uses_item_format=True)
_IMPLICIT_ITEM = ResolverInfo(is_static=False, uses_item_format=True, is_implicit=True)


class FlowResolver:
    """Resolves ``$flow`` attributes."""

    info = _STATIC

    def resolve(self, scope, item_name, value_name):
        value, exists = _lookup(scope, value_name)
        if not exists:
            raise ResolveError(f"failed to resolve flow attr: '{value_name}', not found in flow")
        return value


class ActivityResolver:
    """Resolves ``$activity[name].value`` outputs."""

    info = _DYNAMIC_ITEM

    def resolve(self, scope, item_name, value_name):
        if value_name:
            value, exists = _lookup(scope, f"_A.{item_name}.{value_name}")
            if not exists:
                raise ResolveError(
                    f"failed to resolve activity attr: '{value_name}', "
                    f"not found in activity '{item_name}'"
                )
            return value
        value, exists = _lookup(scope, f"_A.{item_name}")
        if not exists:
            raise ResolveError(f"failed to resolve activity value: '{item_name}'")
        return value


class FlowContextResolver:
    """Resolves ``$flowctx[name]`` variables."""

    info = _DYNAMIC_ITEM

    def resolve(self, scope, item_name, value_name):
        value, exists = _lookup(scope, f"_fctx.{item_name}")
        if not exists:
            raise ResolveError(
                f"unknown flow context variable: '{item_name}'. supported flow context "
                "variables are 'FlowName', 'FlowId', 'ParentFlowName', 'ParentFlowId', "
                "'TraceId' and 'SpanId'"
            )
        return value


class ErrorResolver:
    """Resolves ``$error.code`` and ``$error[activity].code``."""

    info = _IMPLICIT_ITEM

    def resolve(self, scope, item_name, value_name):
        if not item_name:
            value, exists = _lookup(scope, "_E")
            if not exists:
                raise ResolveError("failed to resolve error, not found in flow")
        else:
            value, exists = _lookup(scope, f"_E.{item_name}")
            if not exists:
                raise ResolveError(
                    f"failed to resolve activity [{item_name}] error, not found in flow"
                )
        if not value_name:
            return value
        return get_path_value(value, "." + value_name)


class IteratorResolver:
    """Resolves ``$iteration[key]`` and ``$iteration[value]``."""

    info = _DYNAMIC_ITEM

    def resolve(self, scope, item_name, value_name):
        value, exists = _lookup(scope, "_W.iteration")
        if not exists:
            raise ResolveError("failed to resolve iteration value, not in an iterator")
        if value_name:
            return get_path_value(value, f".{item_name}.{value_name}")
        return get_path_value(value, "." + item_name)


class EnvResolver:
    """Resolves ``$env[NAME]`` from the process environment."""

    info = _STATIC

    def resolve(self, scope, item_name, value_name):
        return os.environ.get(value_name)


class ScopeResolver:
    """Resolves ``$.name`` directly from the scope."""

    info = _STATIC

    def resolve(self, scope, item_name, value_name):
        value, exists = _lookup(scope, value_name)
        if not exists:
            raise ResolveError(f"failed to resolve '{value_name}', not found in scope")
        return value


_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_PLAIN = re.compile(r"[^.\[]*")


def _take_name(text: str) -> tuple[str, str]:
    match = _PLAIN.match(text)
    return match.group(0), text[match.end():]


def _take_bracket(text: str) -> tuple[str, str]:
    close = text.find("]")
    if close < 0:
        raise ResolveError(f"unclosed bracket in '{text}'")
    return _unquote(text[1:close]), text[close + 1:]


class CompositeResolver:
    """Dispatches references such as ``$flow[x]`` to named resolvers."""

    def __init__(self, resolvers: Mapping[str, Any] | None = None) -> None:
        self._resolvers: dict[str, Any] = dict(resolvers or {})

    def register(self, name, resolver):
        self._resolvers[name] = resolver

    def resolve(self, reference, scope):
        ref = reference[1:] if reference.startswith("$") else reference
        item = value = ""
        if ref.startswith("."):
            resolver = self._get(".")
            value, rest = _take_name(ref[1:])
        else:
            match = _NAME.match(ref)
            if match is None:
                raise ResolveError(f"invalid reference '{reference}'")
            resolver = self._get(match.group(0))
            rest = ref[match.end():]
            if resolver.info.uses_item_format:
                if rest.startswith("["):
                    item, rest = _take_bracket(rest)
                if rest.startswith("."):
                    value, rest = _take_name(rest[1:])
            elif rest.startswith("["):
                value, rest = _take_bracket(rest)
            elif rest.startswith("."):
                value, rest = _take_name(rest[1:])
        result = resolver.resolve(scope, item, value)
        if rest:
            result = get_path_value(result, rest)
        return result

    def _get(self, name: str) -> Any:
        try:
            return self._resolvers[name]
        except KeyError:
            raise ResolveError(f"unsupported resolver '{name}'") from None


_DATA_RESOLVER = CompositeResolver(
    {
        ".": ScopeResolver(),
        "env": EnvResolver(),
        "iteration": IteratorResolver(),
        "activity": ActivityResolver(),
        "flowctx": FlowContextResolver(),
        "error": ErrorResolver(),
        "flow": FlowResolver(),
    }
)


def get_data_resolver():
    """Return the resolver used by flow definitions."""
    return _DATA_RESOLVER