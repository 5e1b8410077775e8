import pytest

from flowdef.resolve import (
    ActivityResolver,
    ErrorResolver,
    FlowResolver,
    IteratorResolver,
    ResolveError,
    get_data_resolver,
    get_path_value,
)


def test_flow_resolver():
    scope = {"key": "value"}
    resolver = FlowResolver()
    assert resolver.info.uses_item_format is False
    assert resolver.resolve(scope, "", "key") == "value"
    assert resolver.resolve(scope, "", "key") == "value"


def test_flow_resolver_missing():
    with pytest.raises(ResolveError):
        FlowResolver().resolve({}, "", "key")


def test_activity_resolver():
    scope = {"_A.testAct.test": "value", "_A.test2Act": "value"}
    resolver = ActivityResolver()
    assert resolver.info.uses_item_format is True
    assert resolver.resolve(scope, "testAct", "test") == "value"
    with pytest.raises(ResolveError):
        resolver.resolve(scope, "testAct", "val")
    assert resolver.resolve(scope, "test2Act", "") == "value"


def test_iterator_resolver():
    scope = {"_W.iteration": {"test": "value"}}
    resolver = IteratorResolver()
    assert resolver.info.uses_item_format is True
    assert resolver.resolve(scope, "test", "") == "value"


def test_iterator_outside_iteration():
    with pytest.raises(ResolveError):
        IteratorResolver().resolve({}, "index", "")


def test_error_resolver_paths():
    scope = {"_E": {"code": 7}, "_E.act": {"message": "boom"}}
    resolver = ErrorResolver()
    assert resolver.resolve(scope, "", "code") == 7
    assert resolver.resolve(scope, "act", "message") == "boom"


def test_composite_references():
    resolver = get_data_resolver()
    scope = {"aValue": "foo", "_A.act.out": {"x": [1, 2]}, "_W.iteration": {"index": 3}}
    assert resolver.resolve("$flow[aValue]", scope) == "foo"
    assert resolver.resolve("$flow.aValue", scope) == "foo"
    assert resolver.resolve("$activity[act].out.x[1]", scope) == 2
    assert resolver.resolve("$iteration[index]", scope) == 3
    assert resolver.resolve("$.aValue", scope) == "foo"


def test_unknown_resolver():
    with pytest.raises(ResolveError):
        get_data_resolver().resolve("$nope[x]", {})


def test_get_path_value():
    assert get_path_value({"a": {"b": ["x", "y"]}}, ".a.b[0]") == "x"
    assert get_path_value({"a": 1}, ".missing") is None