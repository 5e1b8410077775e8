"""Building flow definitions from their serializable representation."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowdef.activity import (
    InitContext,
    coerce_to_bool,
    coerce_to_int,
    coerce_to_type,
    get_activity,
    get_activity_factory,
    resolve_alias,
)
from flowdef.definition import (
    ActivityConfig,
    Definition,
    ErrorHandler,
    Link,
    LinkType,
    LoopConfig,
    RetryOnError,
    Task,
)
from flowdef.expression import ExpressionFactory, get_expr_factory
from flowdef.mapper import get_mapper_factory, is_expr, new_default_activity_output_mapper
from flowdef.resolve import get_data_resolver

logger = logging.getLogger(__name__)


class DefinitionError(ValueError):
    """Raised when a flow representation cannot be turned into a definition."""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise DefinitionError(f"{what} must be an object, got {type(data).__name__}")
    return data


@dataclass
class LinkRep:
    """A link as it appears in flow JSON."""

    to_id: str
    from_id: str
    type: str = ""
    name: str = ""
    label: str = ""
    value: str = ""

    @classmethod
    def from_dict(cls, data):
        data = _require_mapping(data, "link")
        return cls(
            to_id=_text(data.get("to")),
            from_id=_text(data.get("from")),
            type=_text(data.get("type")),
            name=_text(data.get("name")),
            label=_text(data.get("label")),
            value=_text(data.get("value")),
        )


@dataclass
class TaskRep:
    """A task as it appears in flow JSON."""

    id: str
    type: str = ""
    name: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    activity: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data):
        data = _require_mapping(data, "task")
        activity = data.get("activity")
        return cls(
            id=_text(data.get("id")),
            type=_text(data.get("type")),
            name=_text(data.get("name")),
            settings=dict(data.get("settings") or {}),
            activity=dict(_require_mapping(activity, "activity")) if activity is not None else None,
        )


@dataclass
class ErrorHandlerRep:
    """The error handler section of flow JSON."""

    tasks: list[TaskRep] = field(default_factory=list)
    links: list[LinkRep] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        data = _require_mapping(data, "errorHandler")
        return cls(
            tasks=[TaskRep.from_dict(t) for t in data.get("tasks") or []],
            links=[LinkRep.from_dict(link) for link in data.get("links") or []],
        )


@dataclass
class DefinitionRep:
    """A whole flow as it appears in JSON."""

    name: str = ""
    model_id: str = ""
    explicit_reply: bool = False
    metadata: Any = None
    tasks: list[TaskRep] = field(default_factory=list)
    links: list[LinkRep] = field(default_factory=list)
    error_handler: ErrorHandlerRep | None = None

    @classmethod
    def from_dict(cls, data):
        data = _require_mapping(data, "flow")
        handler = data.get("errorHandler")
        return cls(
            name=_text(data.get("name")),
            model_id=_text(data.get("model")),
            explicit_reply=bool(data.get("explicitReply", False)),
            metadata=data.get("metadata"),
            tasks=[TaskRep.from_dict(t) for t in data.get("tasks") or []],
            links=[LinkRep.from_dict(link) for link in data.get("links") or []],
            error_handler=ErrorHandlerRep.from_dict(handler) if handler is not None else None,
        )

    @classmethod
    def from_json(cls, text):
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise DefinitionError(f"invalid flow JSON: {exc}") from exc
        return cls.from_dict(data)


_model_validators: dict[str, Any] = {}


def register_model_validator(model_id, validator):
    """Register what decides which task types a model supports.

    ``validator`` is either a callable taking a task type, or an object with an
    ``is_valid_task_type`` method.
    """
    _model_validators[model_id] = validator


def is_valid_task_type(model_id, task_type):
    """Tell whether the model accepts the task type; unknown models accept none."""
    validator = _model_validators.get(model_id)
    if validator is None:
        return False
    check = getattr(validator, "is_valid_task_type", validator)
    return bool(check(task_type))


def new_definition(rep):
    """Build a :class:`Definition` from a :class:`DefinitionRep`."""
    ef = get_expr_factory()
    definition = Definition(
        name=rep.name,
        model_id=rep.model_id,
        explicit_reply=rep.explicit_reply,
        metadata=rep.metadata,
    )

    for task_rep in rep.tasks:
        try:
            task = _create_task(definition, task_rep, ef)
        except Exception as exc:
            raise DefinitionError(
                f"error creating task [{task_rep.id}] in flow [{rep.name}]: {exc}"
            ) from exc
        definition.tasks[task.id] = task

    for link_id, link_rep in enumerate(rep.links):
        try:
            link = _create_link(definition.tasks, link_rep, link_id, ef)
        except Exception as exc:
            if link_rep.label:
                label = f"[{link_rep.from_id} -> {link_rep.to_id}] with label [{link_rep.label}]"
            else:
                label = f"[{link_rep.from_id} -> {link_rep.to_id}]"
            raise DefinitionError(
                f"error creating link {label} in flow [{rep.name}]: {exc}"
            ) from exc
        definition.links[link.id] = link

    if rep.error_handler is not None:
        handler = ErrorHandler()
        definition.error_handler = handler
        for task_rep in rep.error_handler.tasks:
            try:
                task = _create_task(definition, task_rep, ef)
            except Exception as exc:
                raise DefinitionError(
                    f"error creating task [{task_rep.id}] in flow [{rep.name}]'s "
                    f"error handler:{exc}"
                ) from exc
            handler.tasks[task.id] = task

        offset = len(rep.links)
        for index, link_rep in enumerate(rep.error_handler.links):
            try:
                link = _create_link(handler.tasks, link_rep, index + offset, ef)
            except Exception as exc:
                raise DefinitionError(
                    f"error creating link [{link_rep.name}] in flow [{rep.name}]'s "
                    f"error handler:{exc}"
                ) from exc
            handler.links[link.id] = link

    return definition


def _create_task(definition: Definition, rep: TaskRep, ef: ExpressionFactory) -> Task:
    task = Task(id=rep.id, name=rep.name, definition=definition)
    if rep.type:
        if not is_valid_task_type(definition.model_id, rep.type):
            raise DefinitionError("Unsupported task type: " + rep.type)
        task.type_id = rep.type

    task.loop_config = _loop_config(rep.settings, task.type_id, ef)
    task.retry_on_error = _retry_on_error(rep.settings, ef)
    task.settings_mapper = get_mapper_factory().new_mapper(rep.settings)

    if rep.activity is not None:
        cfg = _create_activity_config(task, rep.activity, ef)
        details = cfg.details
        if details is not None and (details.is_return or details.is_reply):
            definition.explicit_reply = True
        task.activity_config = cfg
    return task


def _resolve_setting(
    name: str, value: Any, md_settings: Mapping[str, str], ef: ExpressionFactory
) -> Any:
    original = value
    try:
        if isinstance(value, str) and value.startswith("="):
            value = ef.new_expr(value[1:]).eval(None)
        type_name = md_settings.get(name)
        if type_name:
            value = coerce_to_type(value, type_name)
    except Exception as exc:
        raise DefinitionError(
            f"unable to resolve setting [{name}]'s value [{original}]:{exc}"
        ) from exc
    return value


def _create_activity_config(
    task: Task, rep: Mapping[str, Any], ef: ExpressionFactory
) -> ActivityConfig:
    ref = _text(rep.get("ref"))
    act_type = _text(rep.get("type"))
    if not ref and act_type:
        logger.warning("activity configuration 'type' deprecated, use 'ref' in the future")
        ref = "#" + act_type
    if not ref:
        raise DefinitionError(f"activity ref not specified for task: {task.id}")
    if ref.startswith("#"):
        resolved = resolve_alias(ref)
        if resolved is None:
            raise DefinitionError(
                f"ref alias '{ref}' has no corresponding installed activity"
            )
        ref = resolved

    act = get_activity(ref)
    if act is None:
        raise DefinitionError(f"unable to find activity with ref [{ref}]")

    activity_logger = logging.getLogger(f"flowdef.activity.{ref}")
    cfg = ActivityConfig(
        activity=act,
        name=task.name,
        logger=activity_logger,
        details=getattr(act, "details", None),
        is_legacy=bool(getattr(act, "is_legacy", False)),
    )
    task.activity_config = cfg

    metadata = getattr(act, "metadata", None)
    md_settings = (getattr(metadata, "settings", None) or {}) if metadata else {}
    md_input = (getattr(metadata, "input", None) or {}) if metadata else {}
    md_output = (getattr(metadata, "output", None) or {}) if metadata else {}

    settings = rep.get("settings") or {}
    if settings:
        cfg.settings = {
            name: _resolve_setting(name, value, md_settings, ef)
            for name, value in settings.items()
        }

    mapper_factory = get_mapper_factory()
    factory = get_activity_factory(ref)
    if factory is not None:
        ctx = InitContext(
            settings=cfg.settings,
            mapper_factory=mapper_factory,
            logger=activity_logger,
            name=task.name,
        )
        created = factory(ctx)
        if not getattr(created, "ref", ""):
            try:
                created.ref = ref
            except AttributeError:
                pass
        cfg.activity = created

    inputs: dict[str, Any] = {}
    for name, value in (rep.get("input") or {}).items():
        if is_expr(value) or name not in md_input:
            inputs[name] = value
            continue
        type_name = md_input[name]
        try:
            inputs[name] = coerce_to_type(value, type_name)
        except ValueError as exc:
            if (
                str(type_name).lower() == "connection"
                and isinstance(value, Mapping)
                and "id" in value
                and "type" in value
            ):
                inputs[name] = value
                continue
            if os.environ.get("TEST_MODE") != "true":
                raise DefinitionError(
                    f"unable to convert input [{name}]'s value [{value}] "
                    f"to type [{type_name}]:{exc}"
                ) from exc
            logger.error("Activity initialization failed for %s", cfg.ref)
            inputs[name] = None
    cfg.input_mapper = mapper_factory.new_mapper(inputs)

    outputs: dict[str, Any] = {}
    for name, value in (rep.get("output") or {}).items():
        if is_expr(value) or name not in md_output:
            outputs[name] = value
            continue
        type_name = md_output[name]
        try:
            outputs[name] = coerce_to_type(value, type_name)
        except ValueError as exc:
            raise DefinitionError(
                f"unable to convert output [{name}]'s value [{value}] "
                f"to type [{type_name}]:{exc}"
            ) from exc
    if outputs:
        cfg.outputs = outputs

    if cfg.output_mapper is None:
        cfg.output_mapper = new_default_activity_output_mapper(task)

    schemas = rep.get("schemas")
    if schemas:
        if schemas.get("input") is not None:
            cfg.input_schemas = dict(schemas["input"])
        if schemas.get("output") is not None:
            cfg.output_schemas = dict(schemas["output"])

    return cfg


_LINK_TYPES = {
    "default": LinkType.DEPENDENCY,
    "dependency": LinkType.DEPENDENCY,
    "0": LinkType.DEPENDENCY,
    "expression": LinkType.EXPRESSION,
    "1": LinkType.EXPRESSION,
    "label": LinkType.LABEL,
    "2": LinkType.LABEL,
    "error": LinkType.ERROR,
    "3": LinkType.ERROR,
    "exprOtherwise": LinkType.EXPR_OTHERWISE,
    "4": LinkType.EXPR_OTHERWISE,
}


def _create_link(
    tasks: Mapping[str, Task], rep: LinkRep, link_id: int, ef: ExpressionFactory
) -> Link:
    link_type = LinkType.DEPENDENCY
    expr = None
    if rep.type:
        if rep.type in _LINK_TYPES:
            link_type = _LINK_TYPES[rep.type]
        else:
            logger.warning("Unsupported link type '%s', using default link", rep.type)
        if link_type == LinkType.EXPRESSION:
            if not rep.value:
                raise DefinitionError("expression value not set on link")
            try:
                expr = ef.new_expr(rep.value)
            except Exception as exc:
                raise DefinitionError(f"invalid expression [{rep.value}]: {exc}") from exc

    to_task = tasks.get(rep.to_id)
    if to_task is None:
        raise DefinitionError(f"Link[{link_id}]: ToTask '{rep.to_id}' not found")
    from_task = tasks.get(rep.from_id)
    if from_task is None:
        raise DefinitionError(f"Link[{link_id}]: FromTask '{rep.from_id}' not found")

    link = Link(
        id=link_id,
        from_task=from_task,
        to_task=to_task,
        link_type=link_type,
        name=rep.name,
        label=rep.label,
        value=rep.value,
        expr=expr,
    )
    to_task.from_links.append(link)
    from_task.to_links.append(link)
    return link


def _as_object(value: Any) -> Mapping[str, Any]:
    return coerce_to_type(value, "object") or {}


def _int_or_expr(value: Any, ef: ExpressionFactory, int_error: str) -> Any:
    if isinstance(value, str) and value.startswith("="):
        try:
            return ef.new_expr(value[1:])
        except Exception as exc:
            raise DefinitionError(f"compile retry on error condition error: {exc}") from exc
    try:
        return coerce_to_int(value)
    except ValueError:
        raise DefinitionError(int_error) from None


def _retry_on_error(settings: Mapping[str, Any], ef: ExpressionFactory) -> RetryOnError | None:
    if "retryOnError" not in settings:
        return None
    cfg = _as_object(settings["retryOnError"])
    count = cfg.get("count")
    interval = cfg.get("interval")
    if count is not None:
        count = _int_or_expr(count, ef, "retryOnError count must be int")
    if interval is not None:
        interval = _int_or_expr(interval, ef, "retryOnError interval must be int")
    return RetryOnError(count=count, interval=interval)


def _loop_config(
    settings: Mapping[str, Any], task_type: str, ef: ExpressionFactory
) -> LoopConfig | None:
    if "loopConfig" in settings:
        loop = _loop_config_def(settings["loopConfig"], ef)
    elif "doWhile" in settings:
        loop = _loop_config_def(settings["doWhile"], ef)
        if loop is not None and "accumulate" in settings:
            loop.accumulate = _to_bool(settings["accumulate"])
    else:
        loop = _loop_config_def(settings, ef)

    if loop is not None and task_type == "doWhile":
        loop.apply_output_on_accumulate = True
    return loop


def _to_bool(value: Any) -> bool:
    try:
        return coerce_to_bool(value)
    except ValueError:
        return False


def _strip_eq(text: str) -> str:
    return text[1:] if text.startswith("=") else text


def _loop_config_def(setting: Any, ef: ExpressionFactory) -> LoopConfig | None:
    cfg = _as_object(setting)
    loop = LoopConfig()

    if "condition" in cfg:
        condition = cfg["condition"]
        if not isinstance(condition, str):
            raise DefinitionError("loop condition must be a string")
        if condition:
            try:
                loop.condition = ef.new_expr(_strip_eq(condition))
            except Exception as exc:
                raise DefinitionError(f"compile loop condition error: {exc}") from exc

    iterate_on = cfg.get("iterateOn")
    if iterate_on is None:
        iterate_on = cfg.get("iterate")
    if iterate_on is not None:
        if isinstance(iterate_on, str):
            try:
                if not iterate_on:
                    raise DefinitionError("empty expression")
                loop.iterate_on = ef.new_expr(_strip_eq(iterate_on))
            except Exception as exc:
                raise DefinitionError(f"compile iterateOn error: {exc}") from exc
        else:
            loop.iterate_on = iterate_on

    delay = cfg.get("delay")
    if delay is not None:
        if isinstance(delay, str) and delay.startswith("="):
            try:
                delay = get_data_resolver().resolve(delay[1:], None)
            except Exception as exc:
                raise DefinitionError(f"unable to resolve loop delay: {exc}") from exc
        try:
            loop.delay = coerce_to_int(delay)
        except ValueError:
            raise DefinitionError("loop delay must be int") from None

    if "accumulate" in cfg:
        loop.accumulate = _to_bool(cfg["accumulate"])

    if loop.condition is None and loop.iterate_on is None:
        return None
    return loop