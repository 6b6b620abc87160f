"""Bru text format: request descriptors, environments and collection settings.

A Bru file is a sequence of top-level blocks::

    meta {
      name: Get fact
      seq: 1
    }

    get {
      url: {{baseUrl}}/fact
    }

    assert {
      res.status: eq 200
    }

Dictionary blocks hold ``key: value`` lines (``~`` prefix = disabled), text
blocks (bodies, scripts, docs) hold raw text indented by two spaces, array
blocks (``vars:secret [ ... ]``) hold comma separated names. Blocks this
module does not know are kept verbatim so files written by newer tools
survive a load/save cycle.

Parsing is pure: no variable resolution, no filesystem or network access.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePath

from .exceptions import MalformedDescriptorError
from .models import (
    Assertion,
    AuthMode,
    BodyMode,
    CollectionSettings,
    Environment,
    HttpMethod,
    KeyValue,
    RequestDescriptor,
)

INDENT = "  "
BLOCK_OPEN = re.compile(r"^(?P<tag>[A-Za-z][\w:.\-]*)\s*(?P<open>[{\[])\s*$")

METHOD_TAGS = frozenset(m.value for m in HttpMethod)
TEXT_BODY_TAGS = {
    "body:json": BodyMode.JSON,
    "body:text": BodyMode.TEXT,
    "body:xml": BodyMode.XML,
    "body:graphql": BodyMode.GRAPHQL,
}
AUTH_TAGS = {
    "auth:bearer": AuthMode.BEARER,
    "auth:basic": AuthMode.BASIC,
}
TEXT_TAGS = frozenset(
    {"script:pre-request", "script:post-response", "tests", "docs", *TEXT_BODY_TAGS}
)

# Operators that take no operand; listed so "isString" is not read as "eq isString".
UNARY_OPERATORS = frozenset(
    {
        "isEmpty", "isNotEmpty", "isNull", "isDefined", "isUndefined", "isTruthy",
        "isFalsy", "isJson", "isNumber", "isString", "isBoolean", "isArray",
    }
)
BINARY_OPERATORS = frozenset(
    {
        "eq", "neq", "gt", "gte", "lt", "lte", "in", "notIn", "contains", "notContains",
        "startsWith", "endsWith", "matches", "notMatches", "between", "length",
    }
)
OPERATORS = UNARY_OPERATORS | BINARY_OPERATORS


@dataclass(slots=True)
class _Block:
    tag: str
    bracket: str  # "{" or "["
    lines: list[str]
    line_no: int
    raw: str


def _split_blocks(text: str) -> list[_Block]:
    lines = text.splitlines()
    blocks: list[_Block] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if not line.strip():
            i += 1
            continue
        m = BLOCK_OPEN.match(line.rstrip())
        if not m:
            raise MalformedDescriptorError(
                f"Expected a block header on line {i + 1}, got {line.strip()!r}",
                field="syntax",
                context={"line": i + 1},
            )
        tag = m.group("tag")
        bracket = m.group("open")
        closer = "}" if bracket == "{" else "]"
        start = i
        body: list[str] = []
        i += 1
        while i < len(lines) and lines[i].rstrip() != closer:
            body.append(lines[i])
            i += 1
        if i >= len(lines):
            raise MalformedDescriptorError(
                f"Block '{tag}' opened on line {start + 1} is never closed",
                field=tag,
                context={"line": start + 1},
            )
        raw = "\n".join(lines[start : i + 1])
        blocks.append(_Block(tag=tag, bracket=bracket, lines=body, line_no=start + 1, raw=raw))
        i += 1
    return blocks


def _parse_dict(block: _Block) -> tuple[KeyValue, ...]:
    if block.bracket != "{":
        raise MalformedDescriptorError(f"Block '{block.tag}' must use braces", field=block.tag)
    entries: list[KeyValue] = []
    for offset, line in enumerate(block.lines, start=1):
        stripped = line.strip()
        if not stripped:
            continue
        enabled = True
        if stripped.startswith("~"):
            enabled = False
            stripped = stripped[1:].lstrip()
        key, sep, value = stripped.partition(":")
        key = key.strip()
        if not sep or not key:
            raise MalformedDescriptorError(
                f"Expected 'key: value' in block '{block.tag}', got {line.strip()!r}",
                field=block.tag,
                context={"line": block.line_no + offset},
            )
        entries.append(KeyValue(name=key, value=value.strip(), enabled=enabled))
    return tuple(entries)


def _parse_text(block: _Block) -> str:
    if block.bracket != "{":
        raise MalformedDescriptorError(f"Block '{block.tag}' must use braces", field=block.tag)
    out = []
    for line in block.lines:
        if line.startswith(INDENT):
            out.append(line[len(INDENT):])
        else:
            out.append(line.lstrip(" "))
    return "\n".join(out)


def _parse_array(block: _Block) -> tuple[str, ...]:
    if block.bracket != "[":
        raise MalformedDescriptorError(f"Block '{block.tag}' must use brackets", field=block.tag)
    names = []
    for part in ",".join(block.lines).split(","):
        name = part.strip()
        if name.startswith("~"):
            continue
        if name:
            names.append(name)
    return tuple(names)


def _parse_assertions(entries: tuple[KeyValue, ...]) -> tuple[Assertion, ...]:
    out: list[Assertion] = []
    for kv in entries:
        if not kv.name.startswith("res"):
            raise MalformedDescriptorError(
                f"Assertion target must start with 'res', got {kv.name!r}", field="assert"
            )
        operator, _, expected = kv.value.partition(" ")
        if operator in OPERATORS:
            expected = expected.strip()
        else:
            # Bare value: implicit equality
            operator, expected = "eq", kv.value
        if operator in BINARY_OPERATORS and not expected:
            raise MalformedDescriptorError(
                f"Assertion {kv.name!r} uses '{operator}' without an expected value", field="assert"
            )
        out.append(Assertion(target=kv.name, operator=operator, expected=expected, enabled=kv.enabled))
    return tuple(out)


def _single(seen: set[str], tag: str) -> None:
    if tag in seen:
        raise MalformedDescriptorError(f"Duplicate block '{tag}'", field=tag)
    seen.add(tag)


def parse_descriptor(text: str, source: str | None = None) -> RequestDescriptor:
    """Parse a request descriptor.

    Args:
        text: Bru file content
        source: Optional file name, used for the default request name and error context

    Raises:
        MalformedDescriptorError: naming the offending field
    """
    try:
        blocks = _split_blocks(text)
    except MalformedDescriptorError as e:
        raise e.with_context(source=source) if source else e

    seen: set[str] = set()
    meta: tuple[KeyValue, ...] = ()
    method_tag: str | None = None
    method_entries: tuple[KeyValue, ...] = ()
    headers: tuple[KeyValue, ...] = ()
    query: tuple[KeyValue, ...] = ()
    form: tuple[KeyValue, ...] = ()
    bodies: list[tuple[str, str]] = []
    auth_params: list[tuple[str, tuple[KeyValue, ...]]] = []
    assertions: tuple[Assertion, ...] = ()
    pre_vars: tuple[KeyValue, ...] = ()
    post_vars: tuple[KeyValue, ...] = ()
    texts: dict[str, str] = {}
    extensions: list[tuple[str, str]] = []

    try:
        for block in blocks:
            tag = block.tag
            if tag == "meta":
                _single(seen, tag)
                meta = _parse_dict(block)
            elif tag in METHOD_TAGS:
                if method_tag is not None:
                    raise MalformedDescriptorError(
                        f"More than one method block ('{method_tag}' and '{tag}')", field="method"
                    )
                method_tag = tag
                method_entries = _parse_dict(block)
            elif tag == "headers":
                _single(seen, tag)
                headers = _parse_dict(block)
            elif tag in ("params:query", "query"):
                _single(seen, "params:query")
                query = _parse_dict(block)
            elif tag == "body:form-urlencoded":
                _single(seen, tag)
                form = _parse_dict(block)
            elif tag in TEXT_BODY_TAGS:
                _single(seen, tag)
                bodies.append((TEXT_BODY_TAGS[tag].value, _parse_text(block)))
            elif tag in AUTH_TAGS:
                _single(seen, tag)
                auth_params.append((AUTH_TAGS[tag].value, _parse_dict(block)))
            elif tag == "assert":
                _single(seen, tag)
                assertions = _parse_assertions(_parse_dict(block))
            elif tag == "vars:pre-request":
                _single(seen, tag)
                pre_vars = _parse_dict(block)
            elif tag == "vars:post-response":
                _single(seen, tag)
                post_vars = _parse_dict(block)
            elif tag in TEXT_TAGS:
                _single(seen, tag)
                texts[tag] = _parse_text(block)
            else:
                extensions.append((tag, block.raw))

        if method_tag is None:
            raise MalformedDescriptorError("No method block (get, post, ...) found", field="method")

        meta_map = {kv.name: kv.value for kv in meta}
        name = meta_map.get("name") or (PurePath(source).stem if source else "")
        if not name:
            raise MalformedDescriptorError("Request has no name", field="meta.name")
        try:
            seq = int(meta_map.get("seq") or 0)
        except ValueError:
            raise MalformedDescriptorError(
                f"meta.seq must be an integer, got {meta_map.get('seq')!r}", field="meta.seq"
            ) from None

        method_map = {kv.name: kv.value for kv in method_entries}
        if "url" not in method_map:
            raise MalformedDescriptorError(f"Block '{method_tag}' has no url", field=f"{method_tag}.url")
        try:
            body_mode = BodyMode(method_map.get("body") or "none")
        except ValueError:
            raise MalformedDescriptorError(
                f"Unknown body mode {method_map.get('body')!r}", field=f"{method_tag}.body"
            ) from None
        try:
            auth_mode = AuthMode(method_map.get("auth") or "none")
        except ValueError:
            raise MalformedDescriptorError(
                f"Unknown auth mode {method_map.get('auth')!r}", field=f"{method_tag}.auth"
            ) from None
    except MalformedDescriptorError as e:
        raise e.with_context(source=source) if source else e

    return RequestDescriptor(
        name=name,
        method=HttpMethod(method_tag),
        url=method_map["url"],
        seq=seq,
        meta_type=meta_map.get("type") or "http",
        meta_extra=tuple(kv for kv in meta if kv.name not in ("name", "seq", "type")),
        headers=headers,
        query=query,
        body_mode=body_mode,
        bodies=tuple(bodies),
        form=form,
        auth_mode=auth_mode,
        auth_params=tuple(auth_params),
        assertions=assertions,
        pre_request_vars=pre_vars,
        post_response_vars=post_vars,
        pre_request_script=texts.get("script:pre-request"),
        post_response_script=texts.get("script:post-response"),
        tests=texts.get("tests"),
        docs=texts.get("docs"),
        extensions=tuple(extensions),
    )


# --- Serialization ---


def _kv_line(kv: KeyValue) -> str:
    prefix = "" if kv.enabled else "~"
    return f"{INDENT}{prefix}{kv.name}: {kv.value}".rstrip()


def _dict_block(tag: str, entries: tuple[KeyValue, ...] | list[KeyValue]) -> str:
    lines = [f"{tag} {{"]
    lines.extend(_kv_line(kv) for kv in entries)
    lines.append("}")
    return "\n".join(lines)


def _text_block(tag: str, text: str) -> str:
    lines = [f"{tag} {{"]
    if text:
        lines.extend(INDENT + line if line else "" for line in text.split("\n"))
    lines.append("}")
    return "\n".join(lines)


def serialize_descriptor(d: RequestDescriptor) -> str:
    """Write a descriptor back to Bru text. ``parse_descriptor`` reads it back unchanged."""
    meta = [KeyValue("name", d.name), KeyValue("type", d.meta_type), KeyValue("seq", str(d.seq))]
    meta.extend(d.meta_extra)
    out = [_dict_block("meta", meta)]
    out.append(
        _dict_block(
            d.method.value,
            [KeyValue("url", d.url), KeyValue("body", d.body_mode.value), KeyValue("auth", d.auth_mode.value)],
        )
    )
    if d.query:
        out.append(_dict_block("params:query", d.query))
    if d.headers:
        out.append(_dict_block("headers", d.headers))
    tag_for_auth = {mode.value: tag for tag, mode in AUTH_TAGS.items()}
    for mode, entries in d.auth_params:
        out.append(_dict_block(tag_for_auth[mode], entries))
    tag_for_body = {mode.value: tag for tag, mode in TEXT_BODY_TAGS.items()}
    for mode, text in d.bodies:
        out.append(_text_block(tag_for_body[mode], text))
    if d.form:
        out.append(_dict_block("body:form-urlencoded", d.form))
    if d.pre_request_vars:
        out.append(_dict_block("vars:pre-request", d.pre_request_vars))
    if d.post_response_vars:
        out.append(_dict_block("vars:post-response", d.post_response_vars))
    if d.assertions:
        out.append(
            _dict_block(
                "assert",
                [KeyValue(a.target, f"{a.operator} {a.expected}".strip(), a.enabled) for a in d.assertions],
            )
        )
    if d.pre_request_script is not None:
        out.append(_text_block("script:pre-request", d.pre_request_script))
    if d.post_response_script is not None:
        out.append(_text_block("script:post-response", d.post_response_script))
    if d.tests is not None:
        out.append(_text_block("tests", d.tests))
    if d.docs is not None:
        out.append(_text_block("docs", d.docs))
    out.extend(raw for _, raw in d.extensions)
    return "\n\n".join(out) + "\n"


# --- Environments and collection settings ---


def parse_environment(text: str, name: str) -> Environment:
    """Parse an environment file (``vars {}`` plus optional ``vars:secret []``).

    Raises:
        MalformedDescriptorError: on syntax errors or duplicate variable names
    """
    variables: tuple[KeyValue, ...] = ()
    secrets: tuple[str, ...] = ()
    try:
        for block in _split_blocks(text):
            if block.tag == "vars":
                variables = _parse_dict(block)
            elif block.tag == "vars:secret":
                secrets = _parse_array(block)
    except MalformedDescriptorError as e:
        raise e.with_context(environment=name)
    seen: set[str] = set()
    for kv in variables:
        if kv.name in seen:
            raise MalformedDescriptorError(
                f"Variable '{kv.name}' defined twice in environment '{name}'",
                field="vars",
                context={"environment": name},
            )
        seen.add(kv.name)
    return Environment(name=name, variables=variables, secret_names=frozenset(secrets))


def serialize_environment(env: Environment) -> str:
    out = [_dict_block("vars", env.variables)]
    if env.secret_names:
        names = sorted(env.secret_names)
        out.append("vars:secret [\n" + ",\n".join(INDENT + n for n in names) + "\n]")
    return "\n\n".join(out) + "\n"


def parse_collection_settings(text: str) -> CollectionSettings:
    """Parse ``collection.bru``: shared headers, auth and request variables."""
    headers: tuple[KeyValue, ...] = ()
    pre_vars: tuple[KeyValue, ...] = ()
    auth_mode = AuthMode.NONE
    auth_params: list[tuple[str, tuple[KeyValue, ...]]] = []
    for block in _split_blocks(text):
        if block.tag == "headers":
            headers = _parse_dict(block)
        elif block.tag == "vars:pre-request":
            pre_vars = _parse_dict(block)
        elif block.tag == "auth":
            mode = {kv.name: kv.value for kv in _parse_dict(block)}.get("mode", "none")
            try:
                auth_mode = AuthMode(mode)
            except ValueError:
                raise MalformedDescriptorError(f"Unknown auth mode {mode!r}", field="auth.mode") from None
        elif block.tag in AUTH_TAGS:
            auth_params.append((AUTH_TAGS[block.tag].value, _parse_dict(block)))
    return CollectionSettings(
        headers=headers, auth_mode=auth_mode, auth_params=tuple(auth_params), pre_request_vars=pre_vars
    )
