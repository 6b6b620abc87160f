"""Unit tests for environment resolution."""

from __future__ import annotations

import pytest

from bruin.environment import (
    MAX_RESOLUTION_DEPTH,
    WARN_MISSING_PROCESS_ENV,
    WARN_UNDEFINED_VARIABLE,
    has_placeholders,
    resolve,
)
from bruin.exceptions import CyclicVariableReferenceError
from bruin.models import Environment, KeyValue


def _env(**variables: str) -> Environment:
    return Environment(name="test", variables=tuple(KeyValue(k, v) for k, v in variables.items()))


def test_resolve_recursive_reference() -> None:
    resolved = resolve(_env(host="catfact.ninja", baseUrl="https://{{host}}", factUrl="{{ baseUrl }}/fact"), {})
    assert resolved.get("factUrl") == "https://catfact.ninja/fact"
    assert not any(has_placeholders(v) for v in resolved.as_dict().values())
    assert resolved.warnings == ()


def test_self_reference_is_cyclic() -> None:
    with pytest.raises(CyclicVariableReferenceError) as exc:
        resolve(_env(a="{{a}}"), {})
    assert exc.value.variable == "a"


def test_mutual_reference_is_cyclic() -> None:
    with pytest.raises(CyclicVariableReferenceError):
        resolve(_env(a="x{{b}}", b="y{{c}}", c="{{a}}"), {})


def test_chain_within_depth_resolves() -> None:
    variables = {f"v{i}": f"{{{{v{i + 1}}}}}" for i in range(MAX_RESOLUTION_DEPTH)}
    variables[f"v{MAX_RESOLUTION_DEPTH}"] = "end"
    assert resolve(_env(**variables), {}).get("v0") == "end"


def test_chain_beyond_depth_fails() -> None:
    depth = MAX_RESOLUTION_DEPTH + 1
    variables = {f"v{i}": f"{{{{v{i + 1}}}}}" for i in range(depth)}
    variables[f"v{depth}"] = "end"
    with pytest.raises(CyclicVariableReferenceError):
        resolve(_env(**variables), {})


def test_depth_limit_independent_of_declaration_order() -> None:
    depth = MAX_RESOLUTION_DEPTH + 1
    variables = {f"v{i}": f"{{{{v{i + 1}}}}}" for i in range(depth)}
    variables[f"v{depth}"] = "end"
    reversed_order = dict(reversed(list(variables.items())))
    with pytest.raises(CyclicVariableReferenceError) as exc:
        resolve(_env(**reversed_order), {})
    assert exc.value.variable == "v0"

    within = {f"v{i}": f"{{{{v{i + 1}}}}}" for i in range(MAX_RESOLUTION_DEPTH)}
    within[f"v{MAX_RESOLUTION_DEPTH}"] = "end"
    assert resolve(_env(**dict(reversed(list(within.items())))), {}).get("v0") == "end"


def test_process_env_is_injected_not_ambient() -> None:
    resolved = resolve(_env(token="Bearer {{process.env.API_TOKEN}}"), {"API_TOKEN": "abc"})
    assert resolved.get("token") == "Bearer abc"


def test_missing_process_env_resolves_empty_with_warning() -> None:
    resolved = resolve(_env(token="{{process.env.NOT_SET_ANYWHERE}}"), {})
    assert resolved.get("token") == ""
    assert [w.code for w in resolved.warnings] == [WARN_MISSING_PROCESS_ENV]


def test_process_env_value_inserted_literally() -> None:
    resolved = resolve(_env(a="{{process.env.X}}", b="loop"), {"X": "{{b}}"})
    assert resolved.get("a") == "{{b}}"


def test_undefined_variable_warns() -> None:
    resolved = resolve(_env(url="{{base}}/x"), {})
    assert resolved.get("url") == "/x"
    assert [w.code for w in resolved.warnings] == [WARN_UNDEFINED_VARIABLE]


def test_precedence_environment_request_cli() -> None:
    env = _env(host="env-host", port="1", url="http://{{host}}:{{port}}")
    resolved = resolve(env, {}, request_vars={"host": "req-host", "port": "2"}, overrides={"port": "3"})
    assert resolved.get("url") == "http://req-host:3"


def test_runtime_vars_sit_between_environment_and_request() -> None:
    env = _env(token="env", id="env-id")
    resolved = resolve(env, {}, request_vars={"id": "req-id"}, runtime_vars={"token": "rt", "id": "rt-id"})
    assert resolved.get("token") == "rt"
    assert resolved.get("id") == "req-id"


def test_runtime_values_not_rescanned() -> None:
    resolved = resolve(_env(), {}, runtime_vars={"body": "{{not_a_var}}"})
    assert resolved.get("body") == "{{not_a_var}}"
    assert resolved.warnings == ()


def test_disabled_variables_ignored() -> None:
    env = Environment(name="e", variables=(KeyValue("a", "1", enabled=False),))
    assert resolve(env, {}).get("a") is None


def test_interpolate_and_dynamic_variables() -> None:
    resolved = resolve(_env(host="h"), {})
    assert resolved.interpolate("http://{{host}}/x") == "http://h/x"
    guid = resolved.interpolate("{{$guid}}")
    assert len(guid) == 36
    assert resolved.interpolate("{{$timestamp}}").isdigit()


def test_interpolate_records_undefined() -> None:
    resolved = resolve(_env(), {})
    warnings: list = []
    assert resolved.interpolate("a{{missing}}b", warnings) == "ab"
    assert warnings[0].code == WARN_UNDEFINED_VARIABLE


def test_secret_values_collected() -> None:
    env = Environment(
        name="e",
        variables=(KeyValue("token", "s3cret-{{suffix}}"), KeyValue("suffix", "x")),
        secret_names=frozenset({"token"}),
    )
    assert resolve(env, {}).secret_values == frozenset({"s3cret-x"})


def test_resolved_environment_is_immutable() -> None:
    resolved = resolve(_env(a="1"), {})
    with pytest.raises(TypeError):
        resolved.variables["a"] = "2"  # type: ignore[index]
