# flowdef

`flowdef` builds flow definitions from their JSON description: tasks with
their activities, the links between tasks, loop and retry settings, and an
optional error handler. It also provides a small expression language, the
mappers that apply input mappings, and the resolvers that read data out of a
flow's scope.

## Installation

```
pip install .
```

Install the test extra to run the test suite:

```
pip install ".[test]"
pytest
```

## Loading a definition

Register the activities that your flows refer to, then parse the flow and
build a `Definition` from it. An activity is a subclass of
`flowdef.activity.Activity` that implements `eval` and may declare its
settings, inputs and outputs in an `ActivityMetadata`:

```python
from flowdef.activity import Activity, ActivityMetadata, register_activity
from flowdef.serialization import DefinitionRep, new_definition


class LogActivity(Activity):
    metadata = ActivityMetadata(input={"message": "string"}, output={})

    def eval(self, context):
        return True


register_activity("log", LogActivity(), None)

rep = DefinitionRep.from_json("""
{
  "name": "Demo Flow",
  "tasks": [
    {"id": "first", "name": "First", "activity": {"ref": "log", "input": {"message": "hello"}}},
    {"id": "second", "activity": {"ref": "log", "input": {"message": "=$flow[greeting]"}}}
  ],
  "links": [{"from": "first", "to": "second"}]
}
""")

definition = new_definition(rep)
print(definition.name)                 # Demo Flow
print(definition.get_task("first"))    # Task[first] 'First'
print(definition.get_link(0))          # Link[0]:'' - [from:first, to:second]
```

A definition that cannot be built raises `DefinitionError`, with a message
that names the task or link at fault. Activity refs starting with `#` are
resolved to the registered ref whose last path segment matches. A factory
passed to `register_activity` is called with an `InitContext` to create the
task's activity instance.

Links are numbered in the order they appear; error-handler links continue
the numbering. Link types are `default`/`dependency`, `expression`, `label`,
`error` and `exprOtherwise` (or `0` to `4`); expression links need a
`value`, compiled into `Link.expr`. `get_expression_links(definition)`
returns the expression links of a flow and its error handler.

Task settings such as `loopConfig`, `doWhile`, `condition`, `iterateOn`
(or `iterate`), `delay`, `accumulate` and `retryOnError` become a task's
`loop_config` (`LoopConfig`) and `retry_on_error` (`RetryOnError`, whose
`count(scope)` and `interval(scope)` evaluate expressions when needed).
Custom task types are checked against validators registered with
`register_model_validator`; `is_valid_task_type` answers whether a model
accepts a given type, and a model with no validator accepts none.

`Definition.reconfigure(config)` takes an object or mapping with `id` and
`data` (flow JSON) and passes new activity settings to activities that have
a `reconfigure` method. `Definition.cleanup()` calls `cleanup` on activity
instances created by factories.

## Resolving data

`get_data_resolver()` returns a `CompositeResolver` that understands
references such as `$flow[name]`, `$activity[task].field`, `$iteration[key]`,
`$error.code`, `$error[task].code`, `$flowctx[FlowName]`, `$env[NAME]` and
`$.name`, read from a mapping scope. Each resolver can also be used on its
own, for example `FlowResolver().resolve(scope, "", "key")`, and more can be
added with `CompositeResolver.register`. A value that cannot be found raises
`ResolveError`. `get_path_value(value, ".a.b[0]")` follows a path into
nested mappings and lists.

## Expressions and mappers

`ExpressionFactory.new_expr` compiles expressions with literals, `$`
references, comparison, arithmetic, `&&`, `||` and `!`; `Expr.eval(scope)`
evaluates them. `MapperFactory.new_mapper` builds a `Mapper` whose `apply`
evaluates `=`-prefixed values, `@if(...)`/`@else` conditional objects and
nested objects and lists. The shared factories are read with
`get_expr_factory` and `get_mapper_factory` and replaced with
`set_expr_factory` and `set_mapper_factory`.

## What it does not do

`flowdef` describes flows; it does not run them. There is no engine that
schedules tasks, follows links, loops or retries, no flow instances or
state recording, no sub-flow activity and no loading of flows from
resource URIs. `Provider` is only an abstract interface for supplying flow
representations by URI. Schemas given in an activity's `schemas` section
are stored as given and not validated.