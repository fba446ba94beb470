"""Gating conditions evaluated against earlier stage results.

Supported forms::

    <stage>.status == 'success'
    <stage>.output.<path> <op> <literal>        op: == != > < >= <=
    <stage>.output.<path>.length <op> <number>

Expressions are parsed into a small AST instead of being passed to
``eval``. Anything that does not resolve evaluates to False so a pipeline
fails closed.
"""

from __future__ import annotations

import functools
import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Union

from stagecore.core.errors import StagecoreError

logger = logging.getLogger(__name__)

Operator = Literal["==", "!=", ">", "<", ">=", "<="]

_NAME = r"[A-Za-z_][\w-]*"
_SEGMENT = r"[\w$-]+"
_OP = r"==|!=|>=|<=|>|<"

_STATUS_RE = re.compile(
    rf"^\s*(?P<stage>{_NAME})\.status\s*(?P<op>==|!=)\s*(?P<literal>.+?)\s*$"
)
_OUTPUT_RE = re.compile(
    rf"^\s*(?P<stage>{_NAME})\.output\.(?P<path>{_SEGMENT}(?:\.{_SEGMENT})*)"
    rf"\s*(?P<op>{_OP})\s*(?P<literal>.+?)\s*$"
)
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}

_MISSING = object()


class ConditionSyntaxError(StagecoreError, ValueError):
    """Raised by ``parse_condition`` for text outside the supported grammar."""

    pass


@dataclass(frozen=True)
class StatusCondition:
    """``<stage>.status == '<literal>'``"""

    stage: str
    op: Operator
    value: str


@dataclass(frozen=True)
class OutputCondition:
    """``<stage>.output.<path> <op> <literal>``"""

    stage: str
    path: tuple[str, ...]
    op: Operator
    value: Any


@dataclass(frozen=True)
class LengthCondition:
    """``<stage>.output.<path>.length <op> <number>``"""

    stage: str
    path: tuple[str, ...]
    op: Operator
    value: int | float


Condition = Union[StatusCondition, OutputCondition, LengthCondition]


def _parse_literal(text: str, expression: str) -> Any:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    if text in ("true", "false"):
        return text == "true"
    if _NUMBER_RE.match(text):
        return float(text) if "." in text else int(text)
    raise ConditionSyntaxError(f"Invalid literal {text!r} in condition: {expression}")


@functools.lru_cache(maxsize=512)
def parse_condition(expression: str) -> Condition:
    """Parse a condition string into its AST node.

    Raises:
        ConditionSyntaxError: If the expression is not in the grammar.
    """
    match = _STATUS_RE.match(expression)
    if match:
        value = _parse_literal(match["literal"], expression)
        if not isinstance(value, str):
            raise ConditionSyntaxError(f"Status must be compared to a string: {expression}")
        return StatusCondition(stage=match["stage"], op=match["op"], value=value)

    match = _OUTPUT_RE.match(expression)
    if match:
        path = tuple(match["path"].split("."))
        value = _parse_literal(match["literal"], expression)
        if path[-1] == "length":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConditionSyntaxError(f"Length must be compared to a number: {expression}")
            return LengthCondition(stage=match["stage"], path=path[:-1], op=match["op"], value=value)
        return OutputCondition(stage=match["stage"], path=path, op=match["op"], value=value)

    raise ConditionSyntaxError(f"Unsupported condition: {expression}")


def _field(record: Any, name: str) -> Any:
    """Read ``status``/``output`` from a mapping or an object."""
    if isinstance(record, Mapping):
        return record.get(name, _MISSING)
    return getattr(record, name, _MISSING)


def resolve_path(value: Any, path: Iterable[str]) -> Any:
    """Walk a dotted path through mappings and sequences.

    Returns the module-level missing sentinel when any segment is absent.
    """
    for segment in path:
        if isinstance(value, Mapping):
            if segment not in value:
                return _MISSING
            value = value[segment]
        elif isinstance(value, Sequence) and not isinstance(value, str):
            if not (segment.isascii() and segment.isdigit()):
                return _MISSING
            index = int(segment)
            if index >= len(value):
                return _MISSING
            value = value[index]
        else:
            return _MISSING
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare(left: Any, op: str, right: Any) -> bool:
    """Compare two operands. Ordering requires numbers on both sides."""
    if op in ("==", "!="):
        if isinstance(left, bool) != isinstance(right, bool):
            equal = False
        else:
            equal = left == right
        return equal if op == "==" else not equal
    if not (_is_number(left) and _is_number(right)):
        return False
    return _ORDERING[op](left, right)


class ConditionEvaluator:
    """Evaluates gating conditions against a snapshot of stage results.

    The snapshot maps stage name to a result that has ``status`` and
    ``output``, either as mapping keys or as attributes. Evaluation never
    raises: syntax errors, unknown stages and unresolved paths all yield
    False.

    Example:
        evaluator = ConditionEvaluator()
        evaluator.evaluate("qa.output.score > 80", {"qa": {"status": "success", "output": {"score": 85}}})
    """

    def evaluate(self, expression: str, snapshot: Mapping[str, Any]) -> bool:
        try:
            condition = parse_condition(expression)
        except ConditionSyntaxError as e:
            logger.debug(f"Condition treated as false: {e}")
            return False
        return self.evaluate_condition(condition, snapshot)

    def evaluate_condition(self, condition: Condition, snapshot: Mapping[str, Any]) -> bool:
        record = snapshot.get(condition.stage)
        if record is None:
            return False

        if isinstance(condition, StatusCondition):
            status = _field(record, "status")
            if status is _MISSING:
                return False
            return compare(status, condition.op, condition.value)

        output = _field(record, "output")
        if output is _MISSING or output is None:
            return False
        resolved = resolve_path(output, condition.path)
        if resolved is _MISSING:
            return False

        if isinstance(condition, LengthCondition):
            if not isinstance(resolved, (list, tuple, str)):
                return False
            return compare(len(resolved), condition.op, condition.value)

        return compare(resolved, condition.op, condition.value)

    def evaluate_all(self, expressions: Iterable[str], snapshot: Mapping[str, Any]) -> bool:
        """True when every expression holds. An empty list holds."""
        return all(self.evaluate(expression, snapshot) for expression in expressions)

    def evaluate_any(self, expressions: Iterable[str], snapshot: Mapping[str, Any]) -> bool:
        """True when at least one expression holds. An empty list does not."""
        return any(self.evaluate(expression, snapshot) for expression in expressions)
