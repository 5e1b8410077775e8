"""The in-memory model of a flow: its tasks, links, loops and error handler."""

from __future__ import annotations

import abc
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from flowdef.activity import coerce_to_int, coerce_to_type, get_activity
from flowdef.expression import Expr, get_expr_factory

logger = logging.getLogger(__name__)


class LinkType(IntEnum):
    """The kinds of link between two tasks."""

    DEPENDENCY = 0
    EXPRESSION = 1
    LABEL = 2
    ERROR = 3
    EXPR_OTHERWISE = 4


@dataclass(eq=False)
class ActivityConfig:
    """How a task's activity is configured."""

    activity: Any
    name: str = ""
    logger: Any = None
    settings: dict[str, Any] = field(default_factory=dict)
    input_mapper: Any = None
    output_mapper: Any = None
    input_schemas: dict[str, Any] | None = None
    output_schemas: dict[str, Any] | None = None
    details: Any = None
    outputs: dict[str, Any] | None = None
    is_legacy: bool = False

    @property
    def ref(self) -> str:
        return getattr(self.activity, "ref", "")

    def get_input_schema(self, name):
        """Return the schema of the named input, or None."""
        return (self.input_schemas or {}).get(name)

    def get_output_schema(self, name):
        """Return the schema of the named output, or None."""
        return (self.output_schemas or {}).get(name)

    def get_output(self, name):
        """Return the configured value of the named output, or None."""
        return (self.outputs or {}).get(name)

    def get_setting(self, name):
        """Return the named setting, or None when it is not set."""
        return (self.settings or {}).get(name)


@dataclass(eq=False)
class LoopConfig:
    """How a task repeats: a condition, or a collection to iterate on."""

    condition: Expr | None = None
    iterate_on: Any = None
    accumulate: bool = False
    delay: int = 0
    apply_output_on_accumulate: bool = False


def _evaluate_int(value: Any, scope: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, Expr):
        value = value.eval(scope)
    return coerce_to_int(value)


class RetryOnError:
    """How often and how fast a failing task is retried.

    Either value may be a plain number or an :class:`Expr` evaluated against a scope.
    """

    def __init__(self, count: Any = None, interval: Any = None) -> None:
        self._count = count
        self._interval = interval

    def count(self, scope):
        """Return the number of retries."""
        return _evaluate_int(self._count, scope)

    def interval(self, scope):
        """Return the delay between retries."""
        return _evaluate_int(self._interval, scope)

    def __repr__(self) -> str:
        return f"RetryOnError(count={self._count!r}, interval={self._interval!r})"


@dataclass(eq=False)
class Task:
    """A step of a flow."""

    id: str
    name: str = ""
    type_id: str = ""
    definition: Definition | None = field(default=None, repr=False)
    activity_config: ActivityConfig | None = None
    is_scope: bool = False
    settings_mapper: Any = None
    loop_config: LoopConfig | None = None
    retry_on_error: RetryOnError | None = None
    to_links: list[Link] = field(default_factory=list, repr=False)
    from_links: list[Link] = field(default_factory=list, repr=False)

    def __str__(self) -> str:
        return f"Task[{self.id}] '{self.name}'"


@dataclass(eq=False)
class Link:
    """A directed connection from one task to another."""

    id: int
    from_task: Task = field(repr=False)
    to_task: Task = field(repr=False)
    link_type: LinkType = LinkType.DEPENDENCY
    name: str = ""
    label: str = ""
    value: str = ""
    expr: Expr | None = None
    definition: Definition | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return (
            f"Link[{self.id}]:'{self.name}' - "
            f"[from:{self.from_task.id}, to:{self.to_task.id}]"
        )


@dataclass(eq=False)
class ErrorHandler:
    """The tasks and links run when a flow fails."""

    tasks: dict[str, Task] = field(default_factory=dict)
    links: dict[int, Link] = field(default_factory=dict)

    def get_task(self, task_id):
        """Return the task with the given id, or None."""
        return self.tasks.get(task_id)


@dataclass(eq=False)
class Definition:
    """A flow: its attributes, tasks, links and error handler."""

    name: str
    model_id: str = ""
    explicit_reply: bool = False
    metadata: Any = None
    attrs: dict[str, Any] = field(default_factory=dict)
    tasks: dict[str, Task] = field(default_factory=dict)
    links: dict[int, Link] = field(default_factory=dict)
    error_handler: ErrorHandler | None = None

    def get_task(self, task_id):
        """Return the task with the given id, or None."""
        return self.tasks.get(task_id)

    def get_link(self, link_id):
        """Return the link with the given id, or None."""
        return self.links.get(link_id)

    def get_attr(self, name):
        """Return the named attribute, or None."""
        return (self.attrs or {}).get(name)

    def cleanup(self):
        """Release activities created for this flow's tasks."""
        for task_id, task in self.tasks.items():
            cfg = task.activity_config
            if cfg is None or cfg.activity is None:
                continue
            act = cfg.activity
            if get_activity(cfg.ref) is act:
                continue
            release = getattr(act, "cleanup", None)
            if not callable(release):
                continue
            try:
                release()
            except Exception as exc:  # an activity's failure must not stop the rest
                logger.warning("Error disposing activity '%s' : %s", task_id, exc)

    def reconfigure(self, config):
        """Apply new activity settings from a resource config holding flow JSON."""
        config_id, raw = _config_parts(config)
        try:
            rep = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"error loading flow resource with id '{config_id}': {exc}"
            ) from exc
        if not isinstance(rep, Mapping):
            raise ValueError(
                f"error loading flow resource with id '{config_id}': not an object"
            )

        _reconfigure_tasks(self.tasks, rep.get("tasks") or [])
        handler_rep = rep.get("errorHandler")
        if handler_rep and self.error_handler is not None:
            _reconfigure_tasks(self.error_handler.tasks, handler_rep.get("tasks") or [])


def _config_parts(config: Any) -> tuple[Any, Any]:
    if isinstance(config, Mapping):
        return config.get("id"), config.get("data")
    return getattr(config, "id", None), getattr(config, "data", None)


def _reconfigure_tasks(tasks: Mapping[str, Task], task_reps: list[Any]) -> None:
    for task_rep in task_reps:
        task = tasks.get(task_rep.get("id"))
        if task is None or task.activity_config is None or not task.activity_config.settings:
            continue
        try:
            _reconfigure_task(task, task_rep)
        except ValueError as exc:
            logger.error("%s", exc)


def _resolve_setting(name: str, value: Any, md_settings: Mapping[str, str]) -> Any:
    try:
        if isinstance(value, str) and value.startswith("="):
            value = get_expr_factory().new_expr(value[1:]).eval(None)
        if name in md_settings:
            value = coerce_to_type(value, md_settings[name])
    except Exception as exc:
        raise ValueError(
            f"unable to resolve setting [{name}]'s value [{value}]:{exc}"
        ) from exc
    return value


def _reconfigure_task(task: Task, task_rep: Mapping[str, Any]) -> None:
    cfg = task.activity_config
    act = cfg.activity
    apply = getattr(act, "reconfigure", None)
    if not callable(apply):
        return
    metadata = getattr(act, "metadata", None)
    md_settings = getattr(metadata, "settings", None) or {}
    new_settings = ((task_rep.get("activity") or {}).get("settings")) or {}
    for name, value in new_settings.items():
        cfg.settings[name] = _resolve_setting(name, value, md_settings)
    try:
        apply(cfg.settings)
    except Exception as exc:
        raise ValueError(
            f"failed to reconfigure activity [{task.id}] due to error:{exc}"
        ) from exc
    logger.info("Activity: %s successfully reconfigured", task.id)


class Provider(abc.ABC):
    """Supplies flow definition representations by URI."""

    @abc.abstractmethod
    def get_flow(self, flow_uri):
        """Return the definition representation for ``flow_uri``."""


def get_expression_links(definition):
    """Return the expression links of a flow and of its error handler."""
    links = [link for link in definition.links.values() if link.link_type == LinkType.EXPRESSION]
    if definition.error_handler is not None:
        links.extend(
            link
            for link in definition.error_handler.links.values()
            if link.link_type == LinkType.EXPRESSION
        )
    return links