"""Unit tests for the restricted hook interpreter."""

from __future__ import annotations

import pytest

from bruin.environment import resolve
from bruin.exceptions import ScriptError
from bruin.models import ResponseSnapshot
from bruin.scripting import (
    UNDEFINED,
    HookPhase,
    ScriptContext,
    evaluate_expression,
    parse_literal,
    response_value,
    run_script,
    run_vars_block,
)

RESPONSE = ResponseSnapshot(
    status=200,
    headers={"content-type": "application/json", "x-rate-limit": "10"},
    body='{"data": [{"id": 7, "breed": "Abyssinian"}], "total": 1, "ok": true}',
    elapsed_ms=12.5,
    reason="OK",
)


def _ctx(phase: HookPhase = HookPhase.POST_RESPONSE, target: dict | None = None) -> ScriptContext:
    return ScriptContext(
        phase=phase,
        resolved=resolve({"host": "example.com"}, {"HOME_DIR": "/home/ci"}),
        target_vars=target if target is not None else {},
        response=RESPONSE if phase is HookPhase.POST_RESPONSE else None,
    )


def test_response_value_paths() -> None:
    assert response_value(RESPONSE, "res.status") == 200
    assert response_value(RESPONSE, "res.statusText") == "OK"
    assert response_value(RESPONSE, "res.responseTime") == 12.5
    assert response_value(RESPONSE, "res.headers.content-type") == "application/json"
    assert response_value(RESPONSE, "res.headers['X-Rate-Limit']") == "10"
    assert response_value(RESPONSE, "res.body.data[0].breed") == "Abyssinian"
    assert response_value(RESPONSE, "res.body.data.length") == 1
    assert response_value(RESPONSE, "res.body.ok") is True


def test_response_value_missing_is_undefined() -> None:
    assert response_value(RESPONSE, "res.body.data[5].id") is UNDEFINED
    assert response_value(RESPONSE, "res.body.nope") is UNDEFINED
    assert response_value(RESPONSE, "res.headers.x-missing") is UNDEFINED


def test_response_value_text_body() -> None:
    text = ResponseSnapshot(status=200, body="plain text")
    assert response_value(text, "res.body") == "plain text"
    assert response_value(text, "res.body.length") == 10


def test_response_value_unknown_property() -> None:
    with pytest.raises(ScriptError):
        response_value(RESPONSE, "res.cookies")


def test_parse_literal() -> None:
    assert parse_literal('"a b"') == "a b"
    assert parse_literal("'x'") == "x"
    assert parse_literal("42") == 42
    assert parse_literal("-1.5") == -1.5
    assert parse_literal("true") is True
    assert parse_literal("null") is None
    assert parse_literal("bare") == "bare"


def test_post_response_script_sets_run_vars() -> None:
    target: dict[str, str] = {}
    run_script(
        '// keep the first breed\nbru.setVar("breedId", res.body.data[0].id);\nbru.setEnvVar("total", res.body.total)',
        _ctx(target=target),
    )
    assert target == {"breedId": "7", "total": "1"}


def test_get_var_and_process_env() -> None:
    target: dict[str, str] = {}
    ctx = _ctx(target=target)
    run_script('bru.setVar("h", bru.getVar("host"))\nbru.setVar("home", bru.getProcessEnv("HOME_DIR"))', ctx)
    assert target == {"h": "example.com", "home": "/home/ci"}


def test_pre_request_set_header() -> None:
    ctx = _ctx(HookPhase.PRE_REQUEST)
    run_script('req.setHeader("X-Trace", "on")', ctx)
    assert ctx.request_headers == {"X-Trace": "on"}


def test_set_header_rejected_after_response() -> None:
    with pytest.raises(ScriptError):
        run_script('req.setHeader("X-Trace", "on")', _ctx())


def test_pre_request_cannot_read_response() -> None:
    with pytest.raises(ScriptError):
        run_script('bru.setVar("s", res.status)', _ctx(HookPhase.PRE_REQUEST))


def test_unsupported_statement() -> None:
    with pytest.raises(ScriptError) as exc:
        run_script("while (true) {}", _ctx())
    assert exc.value.context["phase"] == "post-response"


def test_bare_word_expression_rejected() -> None:
    with pytest.raises(ScriptError):
        evaluate_expression("someGlobal", _ctx())


def test_wrong_argument_count() -> None:
    with pytest.raises(ScriptError):
        run_script('bru.setVar("only")', _ctx())


def test_vars_block_evaluates_expressions() -> None:
    target: dict[str, str] = {}
    run_vars_block({"status": "res.status", "label": '"fixed"'}, _ctx(target=target))
    assert target == {"status": "200", "label": "fixed"}
