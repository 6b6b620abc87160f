"""Restricted pre-request / post-response hooks.

Hooks are not general-purpose code. A script is a list of statements, one per
line, drawn from a fixed capability set:

    bru.setVar("name", <expr>)      set a variable
    bru.setEnvVar("name", <expr>)   same as setVar; never touches the environment file
    req.setHeader("name", <expr>)   pre-request only

Expressions are literals (strings, numbers, true/false/null), response reads
(``res.status``, ``res.headers.x``, ``res.body.items[0].id``, ``res.responseTime``)
or variable reads (``bru.getVar("x")``, ``bru.getEnvVar("x")``,
``bru.getProcessEnv("X")``). Anything else is a ScriptError that fails the
request, never the run. Statements have no loops, so a hook always terminates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson

from .environment import ResolvedEnvironment
from .exceptions import ScriptError
from .logging_config import get_logger
from .models import ResponseSnapshot

logger = get_logger("scripting")


class _Undefined:
    """Marker for a response path that does not exist (distinct from JSON null)."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


class HookPhase(str, Enum):
    PRE_REQUEST = "pre-request"
    POST_RESPONSE = "post-response"


STATEMENT = re.compile(r"^(?P<call>bru\.setVar|bru\.setEnvVar|req\.setHeader)\s*\((?P<args>.*)\)\s*;?$")
VAR_READ = re.compile(r"""^bru\.(?P<fn>getVar|getEnvVar|getProcessEnv)\(\s*(?P<q>["'])(?P<name>[^"']+)(?P=q)\s*\)$""")
PATH_TOKEN = re.compile(r"""\.(?P<attr>[A-Za-z_$][\w$\-]*)|\[(?P<index>-?\d+)\]|\[(?P<q>["'])(?P<key>[^"']*)(?P=q)\]""")
NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")


def parse_body(response: ResponseSnapshot) -> Any:
    """Response body as JSON when it parses, otherwise the raw text."""
    text = response.body
    if not text:
        return text
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return text


def _walk(value: Any, path: str) -> Any:
    pos = 0
    while pos < len(path):
        m = PATH_TOKEN.match(path, pos)
        if not m:
            raise ScriptError(f"Invalid path segment in {path!r} at position {pos}")
        pos = m.end()
        if m.group("index") is not None:
            idx = int(m.group("index"))
            if isinstance(value, (list, str)) and -len(value) <= idx < len(value):
                value = value[idx]
            else:
                return UNDEFINED
            continue
        key = m.group("attr") if m.group("attr") is not None else m.group("key")
        if isinstance(value, dict):
            if key not in value:
                return UNDEFINED
            value = value[key]
        elif key == "length" and isinstance(value, (list, str)):
            value = len(value)
        else:
            return UNDEFINED
    return value


def response_value(response: ResponseSnapshot | None, expr: str) -> Any:
    """Read ``res...`` from a response. Missing paths give UNDEFINED."""
    if response is None:
        raise ScriptError(f"{expr!r} reads the response, which is not available yet")
    expr = expr.strip()
    if expr == "res":
        return parse_body(response)
    if not expr.startswith("res"):
        raise ScriptError(f"Not a response expression: {expr!r}")
    rest = expr[3:]
    m = PATH_TOKEN.match(rest)
    if not m:
        # Bruno shorthand: res("a.b") is not supported; everything else is an error
        raise ScriptError(f"Invalid response expression: {expr!r}")
    head = m.group("attr") or m.group("key")
    tail = rest[m.end():]
    if head == "status":
        root: Any = response.status
    elif head == "statusText":
        root = response.reason
    elif head == "responseTime":
        root = response.elapsed_ms
    elif head == "headers":
        if tail:
            hm = PATH_TOKEN.match(tail)
            if not hm or hm.group("index") is not None:
                raise ScriptError(f"Invalid header expression: {expr!r}")
            name = (hm.group("attr") or hm.group("key") or "").lower()
            value = response.headers.get(name, UNDEFINED)
            return _walk(value, tail[hm.end():]) if value is not UNDEFINED else UNDEFINED
        root = dict(response.headers)
    elif head == "body":
        root = parse_body(response)
    else:
        raise ScriptError(f"Unknown response property {head!r} in {expr!r}")
    return _walk(root, tail)


def parse_literal(text: str) -> Any:
    """Literal value: quoted string, number, true/false/null. Bare words stay strings."""
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        if text[0] == '"':
            try:
                return orjson.loads(text)
            except orjson.JSONDecodeError:
                return text[1:-1]
        return text[1:-1].replace("\\'", "'")
    if text == "true":
        return True
    if text == "false":
        return False
    if text == "null":
        return None
    if NUMBER.match(text):
        return float(text) if any(c in text for c in ".eE") else int(text)
    return text


def to_variable_string(value: Any) -> str:
    """Convert an evaluated value to the string stored in a variable."""
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode("utf-8")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass(slots=True)
class ScriptContext:
    """Capabilities a hook may use.

    ``target_vars`` receives every setVar: a request-local dict for pre-request
    hooks, the run's runtime variables for post-response hooks.
    """

    phase: HookPhase
    resolved: ResolvedEnvironment
    target_vars: dict[str, str]
    response: ResponseSnapshot | None = None
    request_headers: dict[str, str] = field(default_factory=dict)

    def get_var(self, name: str) -> str | None:
        if name in self.target_vars:
            return self.target_vars[name]
        return self.resolved.get(name)

    def set_var(self, name: str, value: Any) -> None:
        if not re.match(r"^[A-Za-z_][\w.\-]*$", name):
            raise ScriptError(f"Invalid variable name {name!r}")
        self.target_vars[name] = to_variable_string(value)
        logger.debug("%s hook set variable %s", self.phase.value, name)

    def set_header(self, name: str, value: Any) -> None:
        if self.phase is not HookPhase.PRE_REQUEST:
            raise ScriptError("req.setHeader is only available in pre-request hooks")
        self.request_headers[name] = to_variable_string(value)


def evaluate_expression(expr: str, ctx: ScriptContext) -> Any:
    """Evaluate one hook expression (literal, response read or variable read)."""
    expr = expr.strip()
    if expr == "res" or expr.startswith(("res.", "res[")):
        return response_value(ctx.response, expr)
    m = VAR_READ.match(expr)
    if m:
        name = m.group("name")
        if m.group("fn") == "getProcessEnv":
            return ctx.resolved.process_env.get(name, UNDEFINED)
        value = ctx.get_var(name)
        return UNDEFINED if value is None else value
    value = parse_literal(expr)
    if isinstance(value, str) and expr[:1] not in "\"'":
        raise ScriptError(f"Unsupported expression: {expr!r}")
    return value


def _split_args(args: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    for ch in args:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append("".join(current).strip())
    return parts


def run_script(source: str, ctx: ScriptContext) -> None:
    """Execute a hook script statement by statement.

    Raises:
        ScriptError: unsupported statement or expression, bad arguments
    """
    for line_no, raw_line in enumerate(source.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("//"):
            continue
        m = STATEMENT.match(line)
        if not m:
            raise ScriptError(
                f"Unsupported statement on line {line_no}: {line!r}",
                context={"phase": ctx.phase.value},
            )
        args = _split_args(m.group("args"))
        if len(args) != 2:
            raise ScriptError(
                f"{m.group('call')} expects 2 arguments on line {line_no}, got {len(args)}",
                context={"phase": ctx.phase.value},
            )
        name = parse_literal(args[0])
        if not isinstance(name, str) or args[0][:1] not in "\"'":
            raise ScriptError(f"First argument of {m.group('call')} must be a quoted name (line {line_no})")
        try:
            value = evaluate_expression(args[1], ctx)
        except ScriptError as e:
            raise e.with_context(line=line_no, phase=ctx.phase.value)
        if m.group("call") == "req.setHeader":
            ctx.set_header(name, value)
        else:
            ctx.set_var(name, value)


def run_vars_block(entries: dict[str, str], ctx: ScriptContext) -> None:
    """Apply a ``vars:post-response`` block: each value is an expression."""
    for name, expr in entries.items():
        ctx.set_var(name, evaluate_expression(expr, ctx))
