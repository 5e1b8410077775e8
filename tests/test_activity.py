import pytest

from flowdef.activity import (
    Activity,
    ActivityMetadata,
    ActivityRegistry,
    InitContext,
    coerce_to_bool,
    coerce_to_int,
    coerce_to_type,
)


class _LogActivity(Activity):
    def __init__(self):
        self.metadata = ActivityMetadata(input={"message": "string"})

    def eval(self, context):
        return True


def test_register_and_get():
    registry = ActivityRegistry()
    act = _LogActivity()
    registry.register("example/activity/log", act, None)
    assert registry.get("example/activity/log") is act
    assert act.ref == "example/activity/log"
    assert registry.get_factory("example/activity/log") is None
    assert registry.get("missing") is None


def test_duplicate_registration():
    registry = ActivityRegistry()
    registry.register("log", _LogActivity(), None)
    with pytest.raises(ValueError):
        registry.register("log", _LogActivity(), None)


def test_factory_and_alias():
    registry = ActivityRegistry()
    factory = lambda ctx: _LogActivity()
    registry.register("example/activity/log", _LogActivity(), factory)
    assert registry.get_factory("example/activity/log") is factory
    assert registry.resolve_alias("#log") == "example/activity/log"
    assert registry.resolve_alias("#other") is None
    created = registry.get_factory("example/activity/log")(InitContext(name="x"))
    assert created.eval(None) is True


def test_coerce_int_and_bool():
    assert coerce_to_int("42") == 42
    assert coerce_to_int(True) == 1
    assert coerce_to_bool("true") is True
    assert coerce_to_bool("") is False
    with pytest.raises(ValueError):
        coerce_to_int("abc")
    with pytest.raises(ValueError):
        coerce_to_bool("maybe")


def test_coerce_to_type_round_trips():
    assert coerce_to_type("5", "integer") == 5
    assert coerce_to_type('{"a": 1}', "object") == {"a": 1}
    assert coerce_to_type([1, 2], "array") == [1, 2]
    assert coerce_to_type(True, "string") == "true"
    assert coerce_to_type("x", "any") == "x"


def test_coerce_to_type_errors():
    with pytest.raises(ValueError):
        coerce_to_type("x", "unknown-type")
    with pytest.raises(ValueError):
        coerce_to_type({"id": "a"}, "connection")
    with pytest.raises(ValueError):
        coerce_to_type("not json", "object")