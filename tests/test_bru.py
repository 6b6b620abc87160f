"""Unit tests for the Bru parser and serializer."""

from __future__ import annotations

import pytest

from bruin.bru import (
    parse_collection_settings,
    parse_descriptor,
    parse_environment,
    serialize_descriptor,
    serialize_environment,
)
from bruin.exceptions import MalformedDescriptorError
from bruin.models import AuthMode, BodyMode, HttpMethod, KeyValue

FULL_REQUEST = """meta {
  name: Create user
  type: http
  seq: 3
}

post {
  url: {{baseUrl}}/users
  body: json
  auth: bearer
}

params:query {
  verbose: true
  ~debug: 1
}

headers {
  X-Request-Id: {{$guid}}
}

auth:bearer {
  token: {{token}}
}

body:json {
  {
    "name": "Tom",
    "tags": ["a", "b"]
  }
}

vars:pre-request {
  userName: Tom
}

vars:post-response {
  userId: res.body.id
}

assert {
  res.status: eq 201
  res.body.name: "Tom"
  res.body.id: isNumber
  ~res.body.tags: length 3
}

script:pre-request {
  req.setHeader("X-Trace", "on")
}

tests {
  test("created", function() {
    expect(res.status).to.equal(201);
  });
}

docs {
  Creates a user.
}

settings {
  encodeUrl: true
}
"""


def test_parse_full_descriptor() -> None:
    d = parse_descriptor(FULL_REQUEST)
    assert d.name == "Create user"
    assert d.seq == 3
    assert d.method is HttpMethod.POST
    assert d.url == "{{baseUrl}}/users"
    assert d.body_mode is BodyMode.JSON
    assert d.auth_mode is AuthMode.BEARER
    assert d.auth_entries() == {"token": "{{token}}"}
    assert d.query == (KeyValue("verbose", "true"), KeyValue("debug", "1", enabled=False))
    assert d.headers == (KeyValue("X-Request-Id", "{{$guid}}"),)
    assert d.body_text() == '{\n  "name": "Tom",\n  "tags": ["a", "b"]\n}'
    assert d.pre_request_vars == (KeyValue("userName", "Tom"),)
    assert d.post_response_vars == (KeyValue("userId", "res.body.id"),)
    assert d.pre_request_script == 'req.setHeader("X-Trace", "on")'
    assert d.docs == "Creates a user."
    assert d.has_hooks


def test_parse_assertions() -> None:
    d = parse_descriptor(FULL_REQUEST)
    ops = [(a.target, a.operator, a.expected, a.enabled) for a in d.assertions]
    assert ops == [
        ("res.status", "eq", "201", True),
        ("res.body.name", "eq", '"Tom"', True),
        ("res.body.id", "isNumber", "", True),
        ("res.body.tags", "length", "3", False),
    ]


def test_unknown_block_preserved_verbatim() -> None:
    d = parse_descriptor(FULL_REQUEST)
    assert d.extensions == (("settings", "settings {\n  encodeUrl: true\n}"),)
    assert "settings {\n  encodeUrl: true\n}" in serialize_descriptor(d)


def test_round_trip_full_descriptor() -> None:
    d = parse_descriptor(FULL_REQUEST)
    assert parse_descriptor(serialize_descriptor(d)) == d


def test_round_trip_minimal_descriptor() -> None:
    d = parse_descriptor("get {\n  url: https://example.com\n}\n", source="folder/ping.bru")
    assert d.name == "ping"
    assert parse_descriptor(serialize_descriptor(d)) == d


def test_round_trip_text_with_blank_lines_and_braces() -> None:
    text = "meta {\n  name: T\n}\n\npost {\n  url: http://x\n  body: text\n}\n\nbody:text {\n  a\n\n  }\n   b\n}\n"
    d = parse_descriptor(text)
    assert d.body_text() == "a\n\n}\n b"
    assert parse_descriptor(serialize_descriptor(d)) == d


def test_missing_method_names_field() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\n")
    assert exc.value.field == "method"


def test_two_method_blocks() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("get {\n  url: a\n}\npost {\n  url: b\n}\n", source="x.bru")
    assert exc.value.field == "method"


def test_bad_seq_names_field() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n  seq: first\n}\nget {\n  url: a\n}\n")
    assert exc.value.field == "meta.seq"


def test_missing_name_without_source() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("get {\n  url: a\n}\n")
    assert exc.value.field == "meta.name"


def test_unterminated_block_names_tag() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\nheaders {\n  A: b\n")
    assert exc.value.field == "headers"


def test_bad_dict_line_names_tag() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\nget {\n  url: a\n}\nheaders {\n  no colon here\n}\n")
    assert exc.value.field == "headers"


def test_assertion_target_must_read_response() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\nget {\n  url: a\n}\nassert {\n  status: eq 200\n}\n")
    assert exc.value.field == "assert"


def test_missing_url() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\nget {\n  body: none\n}\n")
    assert exc.value.field == "get.url"


def test_source_added_to_error_context() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_descriptor("meta {\n  name: x\n}\n", source="a/b.bru")
    assert exc.value.context["source"] == "a/b.bru"


def test_parse_environment_with_secrets() -> None:
    env = parse_environment("vars {\n  host: example.com\n  ~old: 1\n}\n\nvars:secret [\n  token,\n  password\n]\n", "prod")
    assert env.name == "prod"
    assert env.as_dict() == {"host": "example.com"}
    assert env.secret_names == frozenset({"token", "password"})
    assert parse_environment(serialize_environment(env), "prod") == env


def test_parse_environment_duplicate_name() -> None:
    with pytest.raises(MalformedDescriptorError) as exc:
        parse_environment("vars {\n  a: 1\n  a: 2\n}\n", "dev")
    assert exc.value.field == "vars"


def test_parse_collection_settings() -> None:
    settings = parse_collection_settings(
        "headers {\n  Accept: application/json\n}\n\nauth {\n  mode: basic\n}\n\n"
        "auth:basic {\n  username: u\n  password: p\n}\n\nvars:pre-request {\n  v: 1\n}\n"
    )
    assert settings.headers == (KeyValue("Accept", "application/json"),)
    assert settings.auth_mode is AuthMode.BASIC
    assert settings.auth_entries() == {"username": "u", "password": "p"}
    assert settings.pre_request_vars == (KeyValue("v", "1"),)
