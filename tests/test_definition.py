import json

import pytest

from flowdef.activity import Activity, ActivityMetadata, register_activity
from flowdef.definition import (
    ActivityConfig,
    Definition,
    ErrorHandler,
    Link,
    LinkType,
    LoopConfig,
    Provider,
    RetryOnError,
    Task,
    get_expression_links,
)
from flowdef.expression import ExpressionFactory


class _Noop(Activity):
    def __init__(self, settings=None):
        self.metadata = ActivityMetadata(settings=settings or {})
        self.cleaned = 0
        self.received = None

    def eval(self, context):
        return True

    def cleanup(self):
        self.cleaned += 1


class _Reconfigurable(_Noop):
    def reconfigure(self, settings):
        self.received = dict(settings)


class _FailingReconfigure(_Noop):
    def reconfigure(self, settings):
        raise RuntimeError("boom")


_SINGLETON = _Noop()
register_activity("tests/definition/singleton", _SINGLETON)


def _two_task_def():
    d = Definition(name="flow")
    a = Task(id="a", name="A", definition=d)
    b = Task(id="b", name="B", definition=d)
    d.tasks = {"a": a, "b": b}
    link = Link(id=0, from_task=a, to_task=b, name="ab")
    a.to_links.append(link)
    b.from_links.append(link)
    d.links = {0: link}
    return d, a, b, link


def test_link_type_values_follow_source():
    assert [t.value for t in LinkType] == [0, 1, 2, 3, 4]
    assert LinkType(4) is LinkType.EXPR_OTHERWISE


def test_get_task_and_link():
    d, a, b, link = _two_task_def()
    assert d.get_task("a") is a
    assert d.get_task("missing") is None
    assert d.get_link(0) is link
    assert d.get_link(5) is None
    assert a.to_links == [link]
    assert b.from_links == [link]


def test_string_forms():
    d, a, b, link = _two_task_def()
    assert str(a) == "Task[a] 'A'"
    assert str(link) == "Link[0]:'ab' - [from:a, to:b]"


def test_get_attr():
    d = Definition(name="f", attrs={"x": 1})
    assert d.get_attr("x") == 1
    assert d.get_attr("y") is None


def test_activity_config_lookups():
    cfg = ActivityConfig(
        activity=_Noop(),
        settings={"s": "v"},
        outputs={"o": 3},
        input_schemas={"in": "schema-in"},
        output_schemas={"out": "schema-out"},
    )
    assert cfg.get_setting("s") == "v"
    assert cfg.get_setting("none") is None
    assert cfg.get_output("o") == 3
    assert cfg.get_output("x") is None
    assert cfg.get_input_schema("in") == "schema-in"
    assert cfg.get_output_schema("out") == "schema-out"
    assert cfg.get_input_schema("out") is None


def test_activity_config_without_optional_maps():
    cfg = ActivityConfig(activity=_Noop())
    assert cfg.get_output("o") is None
    assert cfg.get_output_schema("o") is None


def test_activity_config_ref_from_registered_activity():
    cfg = ActivityConfig(activity=_SINGLETON)
    assert cfg.ref == "tests/definition/singleton"


def test_retry_on_error_plain_values():
    retry = RetryOnError(count=1, interval=100)
    assert retry.count(None) == 1
    assert retry.interval(None) == 100


def test_retry_on_error_defaults_to_zero():
    retry = RetryOnError()
    assert retry.count(None) == 0
    assert retry.interval(None) == 0


def test_retry_on_error_expressions():
    factory = ExpressionFactory()
    retry = RetryOnError(count=factory.new_expr("$flow[n] + 1"), interval=factory.new_expr("$flow[s]"))
    scope = {"n": 2, "s": "500"}
    assert retry.count(scope) == 3
    assert retry.interval(scope) == 500


def test_retry_on_error_bad_value():
    with pytest.raises(ValueError):
        RetryOnError(count="many").count(None)


def test_loop_config_defaults():
    loop = LoopConfig(delay=5, accumulate=True)
    assert loop.delay == 5
    assert loop.accumulate is True
    assert loop.condition is None
    assert loop.apply_output_on_accumulate is False


def test_error_handler_get_task():
    t = Task(id="err")
    handler = ErrorHandler(tasks={"err": t})
    assert handler.get_task("err") is t
    assert handler.get_task("other") is None


def test_get_expression_links():
    factory = ExpressionFactory()
    d, a, b, link = _two_task_def()
    c = Task(id="c")
    expr_link = Link(id=1, from_task=a, to_task=c, link_type=LinkType.EXPRESSION,
                     expr=factory.new_expr("true"))
    d.tasks["c"] = c
    d.links[1] = expr_link
    e1, e2 = Task(id="e1"), Task(id="e2")
    eh_link = Link(id=2, from_task=e1, to_task=e2, link_type=LinkType.EXPRESSION)
    eh_dep = Link(id=3, from_task=e1, to_task=e2)
    d.error_handler = ErrorHandler(tasks={"e1": e1, "e2": e2}, links={2: eh_link, 3: eh_dep})
    assert get_expression_links(d) == [expr_link, eh_link]


def test_get_expression_links_none():
    d, *_ = _two_task_def()
    assert get_expression_links(d) == []


def test_cleanup_skips_singletons():
    created = _Noop()
    d = Definition(name="f")
    d.tasks = {
        "x": Task(id="x", activity_config=ActivityConfig(activity=created)),
        "y": Task(id="y", activity_config=ActivityConfig(activity=_SINGLETON)),
        "z": Task(id="z"),
    }
    d.cleanup()
    assert created.cleaned == 1
    assert _SINGLETON.cleaned == 0


def _reconfig_def(act, settings):
    d = Definition(name="f")
    d.tasks = {"t1": Task(id="t1", activity_config=ActivityConfig(activity=act, settings=settings))}
    return d


def test_reconfigure_applies_coerced_settings():
    act = _Reconfigurable(settings={"level": "integer"})
    d = _reconfig_def(act, {"level": 1})
    data = json.dumps({"tasks": [{"id": "t1", "activity": {"settings": {"level": "5"}}}]})
    d.reconfigure({"id": "flow:x", "data": data})
    assert act.received == {"level": 5}
    assert d.get_task("t1").activity_config.get_setting("level") == 5


def test_reconfigure_error_handler_tasks():
    act = _Reconfigurable()
    d = Definition(name="f")
    d.error_handler = ErrorHandler(
        tasks={"e": Task(id="e", activity_config=ActivityConfig(activity=act, settings={"a": 1}))}
    )
    data = json.dumps({"tasks": [], "errorHandler": {"tasks": [{"id": "e", "activity": {"settings": {"a": 2}}}]}})
    d.reconfigure({"id": "flow:y", "data": data.encode()})
    assert act.received == {"a": 2}


def test_reconfigure_skips_tasks_without_settings():
    act = _Reconfigurable()
    d = _reconfig_def(act, {})
    data = json.dumps({"tasks": [{"id": "t1", "activity": {"settings": {"a": 2}}}]})
    d.reconfigure({"id": "flow:z", "data": data})
    assert act.received is None


def test_reconfigure_activity_failure_is_logged_not_raised():
    act = _FailingReconfigure()
    d = _reconfig_def(act, {"a": 1})
    data = json.dumps({"tasks": [{"id": "t1", "activity": {"settings": {"a": 2}}}]})
    d.reconfigure({"id": "flow:w", "data": data})
    assert d.get_task("t1").activity_config.get_setting("a") == 2


def test_reconfigure_invalid_json():
    d = _reconfig_def(_Reconfigurable(), {"a": 1})
    with pytest.raises(ValueError, match="flow:bad"):
        d.reconfigure({"id": "flow:bad", "data": "{not json"})


def test_provider_subclass():
    class _Static(Provider):
        def get_flow(self, flow_uri):
            return {"uri": flow_uri}

    assert _Static().get_flow("res://flow:a") == {"uri": "res://flow:a"}
    with pytest.raises(TypeError):
        Provider()