"""Assertion evaluation against a received response.

Each assertion yields an AssertionOutcome with a human-readable description.
A failing description always reads ``expected <x>, got <y>`` so report
consumers can show it as-is (e.g. ``expected 200, got 500``). An assertion
that cannot be evaluated (bad regex, non-numeric comparison) fails; it never
raises.
"""

from __future__ import annotations

import re
from typing import Any, Callable

import orjson

from .environment import ResolvedEnvironment
from .exceptions import ScriptError
from .models import Assertion, AssertionOutcome, ReportWarning, ResponseSnapshot
from .scripting import UNDEFINED, parse_literal, response_value

MAX_DISPLAY_CHARS = 200


def display(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        text = orjson.dumps(value).decode("utf-8")
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = str(value)
    if len(text) > MAX_DISPLAY_CHARS:
        return text[: MAX_DISPLAY_CHARS - 3] + "..."
    return text


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{display(value)} is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise ValueError(f"{display(value)} is not a number")


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected and type(actual) is not bool and type(expected) is not bool:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual is expected or display(actual) == display(expected)
    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        try:
            return _number(actual) == _number(expected)
        except ValueError:
            return False
    if isinstance(expected, str) and not isinstance(actual, str) and actual is not UNDEFINED:
        return display(actual) == expected
    return False


def _list_operand(raw: str) -> list[Any]:
    raw = raw.strip()
    if raw.startswith("[") and raw.endswith("]"):
        try:
            value = orjson.loads(raw)
            if isinstance(value, list):
                return value
        except orjson.JSONDecodeError:
            raw = raw[1:-1]
    return [parse_literal(part) for part in raw.split(",") if part.strip()]


def _length(value: Any) -> int:
    if isinstance(value, (str, list, dict)):
        return len(value)
    raise ValueError(f"{display(value)} has no length")


def _is_json(value: Any) -> bool:
    if isinstance(value, (dict, list)):
        return True
    if isinstance(value, str):
        try:
            return isinstance(orjson.loads(value), (dict, list))
        except orjson.JSONDecodeError:
            return False
    return False


def _is_empty(value: Any) -> bool:
    if value is None or value is UNDEFINED:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return display(expected) in actual
    if isinstance(actual, list):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, dict):
        return display(expected) in actual
    return False


def _between(actual: Any, raw: str) -> bool:
    bounds = _list_operand(raw)
    if len(bounds) != 2:
        raise ValueError(f"between expects two bounds, got {raw!r}")
    low, high = (_number(b) for b in bounds)
    return low <= _number(actual) <= high


# operator -> (check(actual, expected_raw, expected_value), phrase for "expected ..." )
_CHECKS: dict[str, tuple[Callable[[Any, str, Any], bool], Callable[[str, Any], str]]] = {
    "eq": (lambda a, r, e: _equals(a, e), lambda r, e: display(e)),
    "neq": (lambda a, r, e: not _equals(a, e), lambda r, e: f"not {display(e)}"),
    "gt": (lambda a, r, e: _number(a) > _number(e), lambda r, e: f"> {display(e)}"),
    "gte": (lambda a, r, e: _number(a) >= _number(e), lambda r, e: f">= {display(e)}"),
    "lt": (lambda a, r, e: _number(a) < _number(e), lambda r, e: f"< {display(e)}"),
    "lte": (lambda a, r, e: _number(a) <= _number(e), lambda r, e: f"<= {display(e)}"),
    "in": (lambda a, r, e: any(_equals(a, x) for x in _list_operand(r)), lambda r, e: f"one of {r}"),
    "notIn": (lambda a, r, e: not any(_equals(a, x) for x in _list_operand(r)), lambda r, e: f"none of {r}"),
    "contains": (lambda a, r, e: _contains(a, e), lambda r, e: f"to contain {display(e)}"),
    "notContains": (lambda a, r, e: not _contains(a, e), lambda r, e: f"not to contain {display(e)}"),
    "startsWith": (
        lambda a, r, e: isinstance(a, str) and a.startswith(display(e)),
        lambda r, e: f"to start with {display(e)}",
    ),
    "endsWith": (
        lambda a, r, e: isinstance(a, str) and a.endswith(display(e)),
        lambda r, e: f"to end with {display(e)}",
    ),
    "matches": (lambda a, r, e: re.search(display(e), display(a)) is not None, lambda r, e: f"to match {display(e)}"),
    "notMatches": (
        lambda a, r, e: re.search(display(e), display(a)) is None,
        lambda r, e: f"not to match {display(e)}",
    ),
    "between": (lambda a, r, e: _between(a, r), lambda r, e: f"between {r}"),
    "length": (lambda a, r, e: _length(a) == int(_number(e)), lambda r, e: f"length {display(e)}"),
    "isEmpty": (lambda a, r, e: _is_empty(a), lambda r, e: "empty"),
    "isNotEmpty": (lambda a, r, e: not _is_empty(a), lambda r, e: "not empty"),
    "isNull": (lambda a, r, e: a is None, lambda r, e: "null"),
    "isDefined": (lambda a, r, e: a is not UNDEFINED, lambda r, e: "defined"),
    "isUndefined": (lambda a, r, e: a is UNDEFINED, lambda r, e: "undefined"),
    "isTruthy": (lambda a, r, e: bool(a) and a is not UNDEFINED, lambda r, e: "truthy"),
    "isFalsy": (lambda a, r, e: not a, lambda r, e: "falsy"),
    "isJson": (lambda a, r, e: _is_json(a), lambda r, e: "JSON"),
    "isNumber": (lambda a, r, e: isinstance(a, (int, float)) and not isinstance(a, bool), lambda r, e: "a number"),
    "isString": (lambda a, r, e: isinstance(a, str), lambda r, e: "a string"),
    "isBoolean": (lambda a, r, e: isinstance(a, bool), lambda r, e: "a boolean"),
    "isArray": (lambda a, r, e: isinstance(a, list), lambda r, e: "an array"),
}


def evaluate_assertion(
    assertion: Assertion,
    response: ResponseSnapshot,
    resolved: ResolvedEnvironment,
    warnings: list[ReportWarning] | None = None,
) -> AssertionOutcome:
    """Evaluate one assertion. The expected operand may contain ``{{var}}`` placeholders."""
    check = _CHECKS.get(assertion.operator)
    if check is None:
        return AssertionOutcome(
            assertion=assertion,
            passed=False,
            description=f"unknown operator '{assertion.operator}' in {assertion.describe()}",
        )
    predicate, phrase = check
    expected_raw = resolved.interpolate(assertion.expected, warnings)
    expected = parse_literal(expected_raw)
    try:
        actual = response_value(response, assertion.target)
    except ScriptError as e:
        return AssertionOutcome(assertion=assertion, passed=False, description=f"invalid assertion: {e.message}")

    try:
        passed = bool(predicate(actual, expected_raw, expected))
    except (ValueError, TypeError, re.error) as e:
        return AssertionOutcome(
            assertion=assertion,
            passed=False,
            description=f"invalid assertion {assertion.describe()}: {e}",
            actual=display(actual),
        )
    if passed:
        description = f"{assertion.target} {assertion.operator} {expected_raw}".strip()
    else:
        description = f"expected {phrase(expected_raw, expected)}, got {display(actual)}"
    return AssertionOutcome(assertion=assertion, passed=passed, description=description, actual=display(actual))
