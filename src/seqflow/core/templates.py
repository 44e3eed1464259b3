# src/seqflow/core/templates.py
"""Jinja2-based command templating.

A task command is a template over its declared inputs plus a read-only
`task` namespace (cpus, memory, key, ...). Nothing else is visible, so a
task body can only see configuration that was wired in as a channel.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError, meta
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from seqflow.contracts import Aggregate, TemplateError

# Names every template may use in addition to its inputs
BUILTIN_VARIABLES: frozenset[str] = frozenset({"task"})


def _shquote(value: Any) -> str:
    """Shell-quote a value; sequences and aggregates become space-separated words."""
    if isinstance(value, Aggregate):
        return " ".join(shlex.quote(p) for p in value.paths())
    if isinstance(value, list | tuple):
        return " ".join(_shquote(v) for v in value)
    return shlex.quote(str(value))


def _make_environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        undefined=StrictUndefined,  # Raise on undefined variables
        autoescape=False,  # Shell scripts, not HTML
        keep_trailing_newline=True,
    )
    env.filters["shquote"] = _shquote
    return env


class CommandTemplate:
    """Jinja2 command template for one task.

    Example:
        template = CommandTemplate(
            "fastqc -t {{ task.cpus }} {{ reads | shquote }}",
            task_id="fastqc",
        )
        template.check_variables(["reads"])
        script = template.render(reads=("a_R1.fq", "a_R2.fq"), task={"cpus": 2})
    """

    def __init__(self, template_string: str, *, task_id: str) -> None:
        """Initialize template.

        Raises:
            TemplateError: If template syntax is invalid
        """
        self.task_id = task_id
        self._template_string = template_string
        self._env = _make_environment()
        try:
            self._ast = self._env.parse(template_string)
            self._template = self._env.from_string(template_string)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Task '{task_id}': invalid command template: {e}") from e

    @property
    def source(self) -> str:
        return self._template_string

    def variables(self) -> set[str]:
        """Top-level variable names the template references."""
        return set(meta.find_undeclared_variables(self._ast))

    def check_variables(self, input_names: Iterable[str]) -> None:
        """Fail if the template references anything but inputs and builtins.

        Raises:
            TemplateError: If an unknown variable is referenced
        """
        known = set(input_names) | BUILTIN_VARIABLES
        unknown = sorted(self.variables() - known)
        if unknown:
            raise TemplateError(
                f"Task '{self.task_id}': command references undeclared variables {unknown}. "
                f"Declared inputs: {sorted(set(input_names))}"
            )

    def render(self, **variables: Any) -> str:
        """Render the command with concrete values.

        Raises:
            TemplateError: If rendering fails (undefined variable, sandbox violation, etc.)
        """
        try:
            return self._template.render(**variables)
        except UndefinedError as e:
            raise TemplateError(f"Task '{self.task_id}': undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Task '{self.task_id}': sandbox violation: {e}") from e
        except Exception as e:
            raise TemplateError(f"Task '{self.task_id}': template rendering failed: {e}") from e
